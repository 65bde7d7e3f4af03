from __future__ import annotations

import math
import os
import re
from typing import Any, Final

DEFAULT_CONCURRENCY: Final[int] = 3
MIN_CONCURRENCY: Final[int] = 1
MAX_CONCURRENCY: Final[int] = 8

_HEX_COLOR = re.compile(r"^#([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")


def read_str_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def read_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def read_bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return default


def sanitize_concurrency(value: Any, default: int = DEFAULT_CONCURRENCY) -> int:
    """Coerce a user supplied concurrency limit into ``[1, 8]``.

    Non-numeric input and values that round outside the range fall back to
    ``default`` instead of being clamped to the nearest bound.
    """
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    rounded = int(math.floor(number + 0.5))
    if rounded < MIN_CONCURRENCY or rounded > MAX_CONCURRENCY:
        return default
    return rounded


def normalize_color(value: Any, default: str) -> str:
    text = str(value or "").strip()
    if not _HEX_COLOR.match(text):
        return default
    if len(text) == 4:
        return "#" + "".join(ch * 2 for ch in text[1:]).lower()
    return text.lower()
