from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Final, Optional, Protocol

CACHE_STORAGE_KEY: Final[str] = "live_translator.cache"
CACHE_TTL_SECONDS: Final[float] = 24 * 60 * 60
CACHE_SAVE_DEBOUNCE_SECONDS: Final[float] = 2.0


class SnapshotStore(Protocol):
    def get(self, keys: Any, defaults: Any = None) -> dict[str, Any]: ...

    def set(self, values: dict[str, Any]) -> None: ...

    def remove(self, key: str) -> None: ...


@dataclass
class CacheEntry:
    translation: str
    created_at: float


def build_cache_key(text: str, target_language: str, model: str, endpoint: str) -> str:
    # JSON array encoding keeps the key injective even if a part contains a separator.
    return json.dumps([target_language or "", model or "", endpoint or "", text or ""], ensure_ascii=False)


class TranslationCache:
    """In-memory translation memo with TTL and debounced snapshot persistence.

    Memory is authoritative. Snapshots go to the store at most once per
    debounce window; when no event loop is running the snapshot is written
    synchronously instead.
    """

    def __init__(
        self,
        store: Optional[SnapshotStore] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        save_debounce_seconds: float = CACHE_SAVE_DEBOUNCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._debounce = save_debounce_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._loaded = store is None
        self._save_handle: Optional[asyncio.TimerHandle] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def save_pending(self) -> bool:
        return self._save_handle is not None

    def load(self) -> int:
        """Restore fresh entries from the stored snapshot. Runs once."""
        if self._loaded:
            return 0
        restored = 0
        try:
            stored = self._store.get(CACHE_STORAGE_KEY) if self._store is not None else {}
            data = stored.get(CACHE_STORAGE_KEY)
            now = self._clock()
            if isinstance(data, dict):
                for key, raw in data.items():
                    if not isinstance(raw, dict):
                        continue
                    translation = raw.get("translation")
                    timestamp = raw.get("timestamp")
                    if not isinstance(translation, str) or isinstance(timestamp, bool):
                        continue
                    if not isinstance(timestamp, (int, float)):
                        continue
                    if now - timestamp > self._ttl:
                        continue
                    self._entries[key] = CacheEntry(translation=translation, created_at=float(timestamp))
                    restored += 1
        except Exception as exc:  # noqa: BLE001 - persisted data boundary
            logging.warning("cache_load_failed error=%s", exc)
        finally:
            self._loaded = True
        logging.debug("cache_loaded entries=%d", restored)
        return restored

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._entries[key]
            self._schedule_save()
            return None
        return entry.translation

    def put(self, key: str, translation: str) -> None:
        if not translation:
            return
        self._entries[key] = CacheEntry(translation=translation, created_at=self._clock())
        self._schedule_save()

    def clear(self) -> None:
        self._entries.clear()
        self._cancel_save()
        self._loaded = True
        if self._store is not None:
            self._store.remove(CACHE_STORAGE_KEY)

    def flush(self) -> None:
        self._cancel_save()
        self._save()

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self._ttl

    def _schedule_save(self) -> None:
        if self._store is None or not self._loaded:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save()
            return
        self._cancel_save()
        self._save_handle = loop.call_later(self._debounce, self._on_save_timer)

    def _cancel_save(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _on_save_timer(self) -> None:
        self._save_handle = None
        try:
            self._save()
        except Exception as exc:  # noqa: BLE001 - timer callback boundary
            logging.warning("cache_persist_failed error=%s", exc)

    def _save(self) -> None:
        if self._store is None or not self._loaded:
            return
        self.evict_expired()
        if not self._entries:
            self._store.remove(CACHE_STORAGE_KEY)
            return
        payload = {
            key: {"translation": entry.translation, "timestamp": entry.created_at}
            for key, entry in self._entries.items()
        }
        self._store.set({CACHE_STORAGE_KEY: payload})
        logging.debug("cache_persisted entries=%d", len(payload))
