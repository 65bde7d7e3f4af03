from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from caption_sync import CaptionSynchronizer, HistoryRing, PresentationSink, TranscriptSynchronizer
from diagnostics_reporter import DiagnosticsReporter
from settings_store import SETTING_KEYS, JsonFileStore, TranslatorSettings, apply_setting_changes, load_settings
from translation_cache import CACHE_STORAGE_KEY, TranslationCache, build_cache_key
from translation_scheduler import RequestParams, TranslationJob, TranslationScheduler
from translation_service import ChatTranslationAdapter, Fragment, TranslationError, normalize_endpoint

MAX_REQUEST_CONTEXT = 5
CAPTION_SOURCE_ID = "caption"

SettingsListener = Callable[[TranslatorSettings], None]


class EmptyInput(TranslationError):
    code = "EMPTY_TEXT"


class MissingCredentials(TranslationError):
    code = "MISSING_API_KEY"


@dataclass(frozen=True)
class TranslationResponse:
    success: bool
    translated_text: str = ""
    error: str = ""

    def as_message(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        if self.translated_text:
            return {"success": True, "translatedText": self.translated_text}
        return {"success": True}


class _NullSink:
    def render(self, source_id: str, original: str, translation: Optional[str]) -> None:
        return None

    def clear(self, source_id: str) -> None:
        return None


class TranslationPipeline:
    """Owns the cache, the scheduler, history rings and every live source.

    Hosts create one pipeline, ``await init()`` it, feed text through the
    synchronizers returned by :meth:`caption_source` and :attr:`transcript`,
    and ``await shutdown()`` on exit.
    """

    def __init__(
        self,
        store: JsonFileStore,
        sink: Optional[PresentationSink] = None,
        adapter: Optional[ChatTranslationAdapter] = None,
        diagnostics: Optional[DiagnosticsReporter] = None,
        defaults: Optional[TranslatorSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._sink: PresentationSink = sink or _NullSink()
        self._adapter = adapter or ChatTranslationAdapter()
        self._diagnostics = diagnostics
        self._defaults = defaults or TranslatorSettings.from_env()
        self.settings = self._defaults
        self.cache = TranslationCache(store, clock=clock)
        self.scheduler = TranslationScheduler(
            self._run_adapter,
            self.cache,
            self.settings.concurrency_limit,
            on_job_done=self._on_job_done,
        )
        self.caption_history = HistoryRing()
        self.transcript_history = HistoryRing()
        self.transcript = TranscriptSynchronizer(
            self,
            self._sink,
            history=self.transcript_history,
            events=diagnostics,
            concurrency_limit=self.settings.concurrency_limit,
        )
        self._sources: dict[str, CaptionSynchronizer] = {}
        self._settings_listeners: list[SettingsListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> None:
        if self._started:
            return
        self.settings = load_settings(self._store, self._defaults)
        self.scheduler.reopen()
        self.cache.load()
        self._apply_runtime_settings()
        self._unsubscribe = self._store.subscribe(self._on_store_change)
        self._started = True
        logging.info(
            "pipeline_started target=%s model=%s concurrency=%d cached=%d",
            self.settings.target_language,
            self.settings.model,
            self.settings.concurrency_limit,
            len(self.cache),
        )

    async def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for source_id in list(self._sources):
            self.release_source(source_id)
        await self.transcript.shutdown()
        await self.scheduler.shutdown()
        self.cache.flush()
        await self._adapter.close()
        self._started = False
        logging.info("pipeline_stopped")

    def on_settings_changed(self, listener: SettingsListener) -> None:
        self._settings_listeners.append(listener)

    def cache_key(self, text: str) -> str:
        settings = self.settings
        endpoint = normalize_endpoint(settings.api_base_url).url
        return build_cache_key(text, settings.target_language, settings.model, endpoint)

    def lookup(self, text: str) -> Optional[str]:
        if not text:
            return None
        if not self.cache.loaded:
            self.cache.load()
        return self.cache.get(self.cache_key(text))

    def submit(self, text: str, context: Sequence[str] = (), source_id: str = "") -> asyncio.Future[str]:
        if not text or not text.strip():
            raise EmptyInput()
        settings = self.settings
        if not settings.api_key:
            raise MissingCredentials()
        cached = self.lookup(text)
        if cached:
            done: asyncio.Future[str] = asyncio.get_running_loop().create_future()
            done.set_result(cached)
            return done
        params = RequestParams(
            api_key=settings.api_key,
            target_language=settings.target_language,
            model=settings.model,
            api_base_url=settings.api_base_url,
        )
        fragment = Fragment.create(text, context, source_id)
        return self.scheduler.submit(self.cache_key(text), fragment, params)

    async def translate(self, text: Optional[str], context: Optional[Sequence[Any]] = None) -> TranslationResponse:
        """Request boundary: never raises for translation failures."""
        cleaned = (text or "").strip() if isinstance(text, str) else ""
        lines = [line.strip() for line in (context or []) if isinstance(line, str) and line.strip()]
        try:
            future = self.submit(cleaned, lines[-MAX_REQUEST_CONTEXT:])
            translated = await asyncio.shield(future)
        except TranslationError as exc:
            return TranslationResponse(success=False, error=exc.code)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - request boundary
            logging.exception("translate_request_failed")
            return TranslationResponse(success=False, error=str(exc) or "TRANSLATION_FAILED")
        return TranslationResponse(success=True, translated_text=translated)

    async def clear_cache(self) -> TranslationResponse:
        try:
            self.cache.clear()
        except Exception as exc:  # noqa: BLE001 - command boundary
            logging.warning("cache_clear_failed error=%s", exc)
            return TranslationResponse(success=False, error=str(exc) or "CLEAR_FAILED")
        logging.info("cache_cleared")
        return TranslationResponse(success=True)

    def caption_source(self, source_id: str = CAPTION_SOURCE_ID) -> CaptionSynchronizer:
        source = self._sources.get(source_id)
        if source is None:
            source = CaptionSynchronizer(
                source_id,
                self,
                self._sink,
                history=self.caption_history,
                events=self._diagnostics,
            )
            self._sources[source_id] = source
            if source_id == CAPTION_SOURCE_ID:
                self.transcript.attach_caption(source)
        return source

    def release_source(self, source_id: str) -> None:
        source = self._sources.pop(source_id, None)
        if source is None:
            return
        source.close()
        if source_id == CAPTION_SOURCE_ID:
            self.transcript.attach_caption(None)

    async def _run_adapter(self, job: TranslationJob) -> str:
        params = job.params
        return await self._adapter.translate(
            job.fragment,
            params.api_key,
            params.target_language,
            params.model,
            params.api_base_url,
        )

    def _on_job_done(
        self,
        job: TranslationJob,
        translated: Optional[str],
        error: Optional[BaseException],
        latency_s: float,
    ) -> None:
        if isinstance(error, asyncio.CancelledError):
            return
        if error is not None:
            code = getattr(error, "code", type(error).__name__)
            logging.warning("translation_failed source=%s code=%s error=%s", job.fragment.source_id, code, error)
            if self._diagnostics is not None:
                self._diagnostics.record_error("adapter", str(code), job.fragment.source_id)
            return
        logging.debug("translation_done source=%s latency_s=%.3f", job.fragment.source_id, latency_s)
        if self._diagnostics is not None:
            self._diagnostics.record_translation(job.fragment.source_id, latency_s, job.cache_key)

    def _on_store_change(self, changes: dict[str, tuple[Any, Any]]) -> None:
        values: dict[str, Any] = {}
        for key, (_, new_value) in changes.items():
            if key == CACHE_STORAGE_KEY:
                continue
            attr = SETTING_KEYS.get(key)
            if attr is None:
                continue
            values[key] = getattr(self._defaults, attr) if new_value is None else new_value
        if not values:
            return
        self.settings = apply_setting_changes(self.settings, values)
        self._apply_runtime_settings()
        logging.info("settings_changed keys=%s", ",".join(sorted(values)))
        for listener in list(self._settings_listeners):
            listener(self.settings)

    def _apply_runtime_settings(self) -> None:
        self.scheduler.update_concurrency_limit(self.settings.concurrency_limit)
        self.transcript.set_concurrency_limit(self.settings.concurrency_limit)
        self.transcript.set_enabled(self.settings.translate_transcript)
