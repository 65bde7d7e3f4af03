from __future__ import annotations

import asyncio
import enum
import logging
import re
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import Any, Final, Optional, Protocol, Sequence

from config_utils import DEFAULT_CONCURRENCY, sanitize_concurrency

HISTORY_LIMIT: Final[int] = 80
CONTEXT_WINDOW: Final[int] = 3
TRANSCRIPT_THROTTLE_SECONDS: Final[float] = 0.08

_WHITESPACE = re.compile(r"\s+")


class PresentationSink(Protocol):
    def render(self, source_id: str, original: str, translation: Optional[str]) -> None: ...

    def clear(self, source_id: str) -> None: ...


class TranslationBackend(Protocol):
    def lookup(self, text: str) -> Optional[str]: ...

    def submit(self, text: str, context: Sequence[str], source_id: str = "") -> asyncio.Future[str]: ...


class SyncEvents(Protocol):
    def record_event(self, event_type: str, **fields: Any) -> None: ...


class SyncStatus(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    DISPLAYED = "displayed"


@dataclass
class SourceState:
    source_id: str
    last_accepted_text: str = ""
    request_epoch: int = 0
    rendered_translation: str = ""
    status: SyncStatus = SyncStatus.IDLE

    def accept(self, text: str) -> int:
        self.last_accepted_text = text
        self.request_epoch += 1
        self.rendered_translation = ""
        self.status = SyncStatus.PENDING
        return self.request_epoch

    def is_current(self, epoch: int) -> bool:
        return epoch == self.request_epoch

    def show(self, translation: str) -> None:
        self.rendered_translation = translation
        self.status = SyncStatus.DISPLAYED

    def go_idle(self) -> None:
        # Bumping the epoch keeps late results off a cleared source.
        self.last_accepted_text = ""
        self.rendered_translation = ""
        self.request_epoch += 1
        self.status = SyncStatus.IDLE


class HistoryRing:
    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self._items: deque[str] = deque(maxlen=limit)

    def __len__(self) -> int:
        return len(self._items)

    def append(self, text: str) -> None:
        if text:
            self._items.append(text)

    def recent(self, count: int = CONTEXT_WINDOW) -> list[str]:
        if count <= 0 or not self._items:
            return []
        return list(self._items)[-count:]

    def clear(self) -> None:
        self._items.clear()


def normalize_text(text: Optional[str]) -> str:
    return _WHITESPACE.sub(" ", text or "").strip()


def _error_code(error: BaseException) -> str:
    return str(getattr(error, "code", type(error).__name__))


class _NullEvents:
    def record_event(self, event_type: str, **fields: Any) -> None:
        return None


class CaptionSynchronizer:
    """Keeps one live caption source in step with its translation.

    Feed every observed text through :meth:`on_change`. A translation is
    rendered only if it belongs to the most recently accepted text.
    """

    def __init__(
        self,
        source_id: str,
        backend: TranslationBackend,
        sink: PresentationSink,
        history: Optional[HistoryRing] = None,
        events: Optional[SyncEvents] = None,
    ) -> None:
        self.source_id = source_id
        self.state = SourceState(source_id=source_id)
        self._backend = backend
        self._sink = sink
        self._history = history if history is not None else HistoryRing()
        self._events = events or _NullEvents()
        self._closed = False

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    def on_change(self, text: Optional[str]) -> None:
        if self._closed:
            return
        current = normalize_text(text)
        if not current:
            if self.state.last_accepted_text or self.state.status is not SyncStatus.IDLE:
                self.state.go_idle()
                self._sink.clear(self.source_id)
            return
        if current == self.state.last_accepted_text:
            return

        context = self._history.recent(CONTEXT_WINDOW)
        self._history.append(current)
        epoch = self.state.accept(current)
        self._sink.render(self.source_id, current, None)

        cached = self._backend.lookup(current)
        if cached:
            self._display(current, cached)
            self._events.record_event("cache_hit", source_id=self.source_id, epoch=epoch)
            return

        try:
            future = self._backend.submit(current, context, self.source_id)
        except Exception as exc:  # noqa: BLE001 - request rejected before scheduling
            self._events.record_event("translation_error", source_id=self.source_id, error=_error_code(exc))
            self._on_failure(epoch, current, exc)
            return
        future.add_done_callback(partial(self._on_result, epoch, current))

    def apply_if_current(self, original: str, translation: str) -> bool:
        """Render ``translation`` when this source still shows ``original`` untranslated."""
        if self._closed or not translation:
            return False
        if self.state.last_accepted_text != original or self.state.rendered_translation == translation:
            return False
        self._display(original, translation)
        return True

    def reset(self) -> None:
        had_content = bool(self.state.last_accepted_text)
        self.state = SourceState(source_id=self.source_id, request_epoch=self.state.request_epoch + 1)
        if had_content:
            self._sink.clear(self.source_id)

    def close(self) -> None:
        self.reset()
        self._closed = True

    def _on_result(self, epoch: int, original: str, future: asyncio.Future[str]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if self._closed:
            return
        if error is not None:
            self._on_failure(epoch, original, error)
            return
        if not self.state.is_current(epoch):
            self._events.record_event(
                "stale_result", source_id=self.source_id, epoch=epoch, current_epoch=self.state.request_epoch
            )
            return
        self._display(original, future.result())

    def _on_failure(self, epoch: int, original: str, error: BaseException) -> None:
        logging.warning(
            "caption_translation_failed source=%s code=%s error=%s", self.source_id, _error_code(error), error
        )
        if self.state.is_current(epoch) and self.state.last_accepted_text == original:
            # Original stays visible; the next change may retry the same text.
            self.state.last_accepted_text = ""
            self.state.status = SyncStatus.IDLE

    def _display(self, original: str, translation: str) -> None:
        output = translation.strip()
        self.state.show(output)
        self._sink.render(self.source_id, original, output or None)


@dataclass
class _TranscriptJob:
    line_id: str
    state: SourceState
    original: str
    context: list[str]
    epoch: int


class TranscriptSynchronizer:
    """Translates transcript lines through a throttled local queue.

    Each line is its own source. At most ``concurrency_limit`` lines are
    in flight, and every job keeps its slot for a short throttle delay after
    it completes so a burst of lines cannot monopolise the scheduler.
    """

    def __init__(
        self,
        backend: TranslationBackend,
        sink: PresentationSink,
        history: Optional[HistoryRing] = None,
        events: Optional[SyncEvents] = None,
        concurrency_limit: Any = DEFAULT_CONCURRENCY,
        throttle_seconds: float = TRANSCRIPT_THROTTLE_SECONDS,
        caption: Optional[CaptionSynchronizer] = None,
        id_prefix: str = "transcript:",
    ) -> None:
        self._backend = backend
        self._sink = sink
        self._history = history if history is not None else HistoryRing()
        self._events = events or _NullEvents()
        self._limit = sanitize_concurrency(concurrency_limit)
        self._throttle = throttle_seconds
        self._caption = caption
        self._prefix = id_prefix
        self._lines: dict[str, SourceState] = {}
        self._queue: deque[_TranscriptJob] = deque()
        self._tasks: set[asyncio.Task[None]] = set()
        self._active = 0
        self._enabled = True

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def line_state(self, line_id: str) -> Optional[SourceState]:
        return self._lines.get(line_id)

    def attach_caption(self, caption: Optional[CaptionSynchronizer]) -> None:
        self._caption = caption

    def set_concurrency_limit(self, limit: Any) -> None:
        self._limit = sanitize_concurrency(limit)
        self._pump()

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if not enabled:
            self.reset()

    def on_line(self, line_id: str, text: Optional[str]) -> None:
        if not self._enabled:
            return
        original = normalize_text(text)
        if not original:
            return
        state = self._lines.get(line_id)
        if state is None:
            state = SourceState(source_id=self._source_id(line_id))
            self._lines[line_id] = state
        if state.last_accepted_text == original:
            return

        context = self._history.recent(CONTEXT_WINDOW)
        self._history.append(original)
        epoch = state.accept(original)
        self._sink.render(state.source_id, original, None)

        cached = self._backend.lookup(original)
        if cached:
            self._display(state, original, cached)
            return
        self._queue.append(
            _TranscriptJob(line_id=line_id, state=state, original=original, context=context, epoch=epoch)
        )
        self._pump()

    def remove_line(self, line_id: str) -> None:
        state = self._lines.pop(line_id, None)
        if state is not None:
            self._sink.clear(state.source_id)

    def reset(self) -> None:
        self._queue.clear()
        for state in self._lines.values():
            self._sink.clear(state.source_id)
        self._lines.clear()

    async def shutdown(self) -> None:
        self._enabled = False
        self.reset()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _source_id(self, line_id: str) -> str:
        return f"{self._prefix}{line_id}"

    def _pump(self) -> None:
        while self._active < self._limit and self._queue:
            job = self._queue.popleft()
            self._active += 1
            task = asyncio.get_running_loop().create_task(self._run_job(job), name=f"transcript-{job.line_id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._active = max(0, self._active - 1)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logging.warning("transcript_job_failed error=%s", error)
        self._pump()

    async def _run_job(self, job: _TranscriptJob) -> None:
        try:
            if not self._is_current(job):
                return
            state = job.state
            cached = self._backend.lookup(job.original)
            if cached:
                self._display(state, job.original, cached)
                return
            try:
                future = self._backend.submit(job.original, job.context, state.source_id)
            except Exception as exc:  # noqa: BLE001 - request rejected before scheduling
                self._events.record_event("translation_error", source_id=state.source_id, error=_error_code(exc))
                self._on_job_failure(job, exc)
                return
            try:
                # Coalesced futures are shared; cancelling this job must not cancel them.
                translated = await asyncio.shield(future)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - per-line failure must not stop the queue
                self._on_job_failure(job, exc)
                return
            if not self._is_current(job):
                self._events.record_event("stale_result", source_id=state.source_id, epoch=job.epoch)
                return
            self._display(state, job.original, translated)
            if self._caption is not None:
                self._caption.apply_if_current(job.original, translated)
        finally:
            await asyncio.sleep(self._throttle)

    def _is_current(self, job: _TranscriptJob) -> bool:
        # A removed and re-added line gets a fresh state; jobs for the old one never apply.
        return self._lines.get(job.line_id) is job.state and job.state.is_current(job.epoch)

    def _on_job_failure(self, job: _TranscriptJob, error: BaseException) -> None:
        logging.warning(
            "transcript_translation_failed line=%s code=%s error=%s", job.line_id, _error_code(error), error
        )
        if self._is_current(job):
            job.state.last_accepted_text = ""
            job.state.status = SyncStatus.IDLE

    def _display(self, state: SourceState, original: str, translation: str) -> None:
        output = translation.strip()
        state.show(output)
        self._sink.render(state.source_id, original, output or None)
