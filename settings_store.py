from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from config_utils import normalize_color, read_str_env, sanitize_concurrency

ChangeListener = Callable[[dict[str, tuple[Any, Any]]], None]

DEFAULT_TARGET_LANGUAGE = "zh-CN"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_API_BASE_URL = "https://api.openai.com"
DEFAULT_CAPTION_COLOR = "#b5e3ff"
DEFAULT_CAPTION_FONT_SIZE = 24
DISPLAY_MODES = ("stacked", "translation-only")


class JsonFileStore:
    """Key-value persistence backed by a single JSON document.

    Values written through ``set``/``remove`` are visible to ``get`` at once and
    are on disk when the call returns. Subscribers are told which keys changed
    as ``{key: (old_value, new_value)}``; a removed key reports ``None`` as the
    new value.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: dict[str, Any] = self._read()
        self._listeners: list[ChangeListener] = []

    @property
    def path(self) -> Path:
        return self._path

    def get(self, keys: Iterable[str] | str, defaults: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        names = [keys] if isinstance(keys, str) else list(keys)
        fallback = dict(defaults or {})
        result: dict[str, Any] = {}
        for name in names:
            if name in self._data:
                result[name] = self._data[name]
            elif name in fallback:
                result[name] = fallback[name]
        return result

    def set(self, values: Mapping[str, Any]) -> None:
        changes: dict[str, tuple[Any, Any]] = {}
        for key, value in values.items():
            previous = self._data.get(key)
            if key in self._data and previous == value:
                continue
            self._data[key] = value
            changes[key] = (previous, value)
        if not changes:
            return
        self._write()
        self._notify(changes)

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        previous = self._data.pop(key)
        self._write()
        self._notify({key: (previous, None)})

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, changes: dict[str, tuple[Any, Any]]) -> None:
        for listener in list(self._listeners):
            try:
                listener(changes)
            except Exception:  # noqa: BLE001 - listener boundary
                logging.exception("store_listener_failed keys=%s", ",".join(changes))

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            logging.warning("store_read_failed path=%s error=%s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self._path)


@dataclass(frozen=True)
class TranslatorSettings:
    target_language: str = DEFAULT_TARGET_LANGUAGE
    model: str = DEFAULT_MODEL
    api_base_url: str = DEFAULT_API_BASE_URL
    api_key: str = ""
    concurrency_limit: int = 3
    show_original: bool = True
    translate_transcript: bool = True
    display_mode: str = "stacked"
    caption_font_size: int = DEFAULT_CAPTION_FONT_SIZE
    caption_color: str = DEFAULT_CAPTION_COLOR

    @classmethod
    def from_env(cls) -> "TranslatorSettings":
        return cls(
            target_language=read_str_env("TARGET_LANGUAGE", DEFAULT_TARGET_LANGUAGE),
            model=read_str_env("TRANSLATION_MODEL", DEFAULT_MODEL),
            api_base_url=read_str_env("OPENAI_BASE_URL", DEFAULT_API_BASE_URL),
            api_key=read_str_env("OPENAI_API_KEY", ""),
            concurrency_limit=sanitize_concurrency(os.getenv("TRANSLATION_CONCURRENCY")),
        )

    def to_store(self) -> dict[str, Any]:
        return {
            store_key: getattr(self, attr)
            for store_key, attr in SETTING_KEYS.items()
        }


# Persisted (camelCase) key -> dataclass attribute.
SETTING_KEYS: dict[str, str] = {
    "targetLanguage": "target_language",
    "model": "model",
    "apiBaseUrl": "api_base_url",
    "apiKey": "api_key",
    "concurrencyLimit": "concurrency_limit",
    "showOriginal": "show_original",
    "translateTranscript": "translate_transcript",
    "displayMode": "display_mode",
    "captionFontSize": "caption_font_size",
    "captionColor": "caption_color",
}


def _coerce(attr: str, value: Any, fallback: TranslatorSettings) -> Any:
    default = getattr(fallback, attr)
    if attr == "concurrency_limit":
        return sanitize_concurrency(value)
    if attr in {"show_original", "translate_transcript"}:
        return value if isinstance(value, bool) else default
    if attr == "caption_color":
        return normalize_color(value, default)
    if attr == "caption_font_size":
        try:
            size = int(value)
        except (TypeError, ValueError):
            return default
        return size if size > 0 else default
    if attr == "display_mode":
        return value if value in DISPLAY_MODES else default
    text = value.strip() if isinstance(value, str) else ""
    if attr == "api_key":
        # An empty key is a valid "signed out" state.
        return text
    return text or default


def load_settings(store: JsonFileStore, defaults: Optional[TranslatorSettings] = None) -> TranslatorSettings:
    base = defaults or TranslatorSettings.from_env()
    stored = store.get(SETTING_KEYS.keys())
    return apply_setting_changes(base, stored)


def apply_setting_changes(settings: TranslatorSettings, values: Mapping[str, Any]) -> TranslatorSettings:
    """Return ``settings`` updated with persisted ``values`` (camelCase keys).

    Unknown keys are ignored; invalid values keep the current setting.
    """
    updates: dict[str, Any] = {}
    for key, value in values.items():
        attr = SETTING_KEYS.get(key)
        if attr is None or value is None:
            continue
        updates[attr] = _coerce(attr, value, settings)
    if not updates:
        return settings
    return replace(settings, **updates)
