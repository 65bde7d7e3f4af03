from __future__ import annotations

import json
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Optional


def _percentile(values: list[float], ratio: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    index = (len(ordered) - 1) * ratio
    lower = int(index)
    upper = min(lower + 1, len(ordered) - 1)
    if lower == upper:
        return ordered[lower]
    weight = index - lower
    return ordered[lower] * (1.0 - weight) + ordered[upper] * weight


class DiagnosticsReporter:
    """Diagnostic channel for the translation pipeline.

    Translation failures never reach the viewer; they land here as JSONL
    events plus a per-session summary.
    """

    def __init__(self, enabled: bool, output_path: str, summary_path: str, append_mode: bool = False) -> None:
        self._enabled = enabled
        self._output_path = Path(output_path)
        self._summary_path = Path(summary_path)
        self._append_mode = append_mode
        self._session_started_at: Optional[datetime] = None
        self._latencies: list[float] = []
        self._counts: Counter[str] = Counter()
        self._errors: Counter[str] = Counter()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_session(self) -> None:
        if not self._enabled:
            return
        self._session_started_at = datetime.now()
        self._latencies.clear()
        self._counts.clear()
        self._errors.clear()
        self._ensure_parent_dirs()
        if not self._append_mode:
            self._output_path.write_text("", encoding="utf-8")

    def record_translation(self, source_id: str, latency_s: float, cache_key: str = "") -> None:
        if not self._enabled:
            return
        self._latencies.append(latency_s)
        self._counts["translations"] += 1
        self._append_jsonl(
            {
                "event_type": "translation",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "source_id": source_id,
                "latency_s": round(latency_s, 4),
                "cache_key": cache_key,
            }
        )

    def record_error(self, stage: str, error: str, source_id: str = "") -> None:
        if not self._enabled:
            return
        self._counts["errors"] += 1
        self._errors[error] += 1
        self._append_jsonl(
            {
                "event_type": "error",
                "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
                "stage": stage,
                "error": error,
                "source_id": source_id,
            }
        )

    def record_event(self, event_type: str, **fields: Any) -> None:
        if event_type == "translation_error":
            self.record_error("sync", str(fields.get("error", "")), str(fields.get("source_id", "")))
            return
        if not self._enabled:
            return
        self._counts[event_type] += 1
        payload: dict[str, Any] = {
            "event_type": event_type,
            "recorded_at": datetime.now().isoformat(timespec="milliseconds"),
        }
        payload.update(fields)
        self._append_jsonl(payload)

    def snapshot(self) -> dict[str, float]:
        translations = self._counts["translations"]
        errors = self._counts["errors"]
        base = max(1, translations + errors)
        return {
            "avg_latency_s": (sum(self._latencies) / len(self._latencies)) if self._latencies else 0.0,
            "p95_latency_s": _percentile(self._latencies, 0.95),
            "error_rate_pct": (errors / base) * 100.0 if translations or errors else 0.0,
        }

    def finalize_session(self) -> dict[str, Any]:
        if not self._enabled:
            return {}
        now = datetime.now()
        started = self._session_started_at or now
        summary = {
            "session_started_at": started.isoformat(timespec="milliseconds"),
            "session_ended_at": now.isoformat(timespec="milliseconds"),
            "session_duration_s": max(0.0, (now - started).total_seconds()),
            "translations": self._counts["translations"],
            "cache_hits": self._counts["cache_hit"],
            "stale_results": self._counts["stale_result"],
            "error_events": self._counts["errors"],
            "errors_by_code": dict(self._errors),
            "latency_p50_s": _percentile(self._latencies, 0.50),
            "latency_p95_s": _percentile(self._latencies, 0.95),
            "latency_max_s": max(self._latencies) if self._latencies else 0.0,
        }
        self._write_summary(summary)
        logging.info("diagnostics_session_summary %s", summary)
        return summary

    def _ensure_parent_dirs(self) -> None:
        self._output_path.parent.mkdir(parents=True, exist_ok=True)
        self._summary_path.parent.mkdir(parents=True, exist_ok=True)

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        line = json.dumps(payload, ensure_ascii=False)
        with self._output_path.open("a", encoding="utf-8") as handle:
            handle.write(line)
            handle.write("\n")

    def _write_summary(self, summary: dict[str, Any]) -> None:
        self._ensure_parent_dirs()
        with self._summary_path.open("w", encoding="utf-8") as handle:
            json.dump(summary, handle, ensure_ascii=False, indent=2)
