from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable, Optional

from config_utils import DEFAULT_CONCURRENCY, sanitize_concurrency
from translation_cache import TranslationCache
from translation_service import Fragment


@dataclass(frozen=True)
class RequestParams:
    """Credentials and target captured when a job is submitted."""

    api_key: str
    target_language: str
    model: str
    api_base_url: str


@dataclass
class TranslationJob:
    cache_key: str
    fragment: Fragment
    params: RequestParams
    future: asyncio.Future[str]


TranslateFn = Callable[[TranslationJob], Awaitable[str]]
JobListener = Callable[[TranslationJob, Optional[str], Optional[BaseException], float], Any]


class TranslationScheduler:
    """Bounded-concurrency FIFO runner with in-flight request coalescing.

    The only component that invokes the translate function. All bookkeeping
    happens on the event loop thread, so no locks are taken.
    """

    def __init__(
        self,
        translate: TranslateFn,
        cache: TranslationCache,
        concurrency_limit: Any = DEFAULT_CONCURRENCY,
        on_job_done: Optional[JobListener] = None,
    ) -> None:
        self._translate = translate
        self._cache = cache
        self._limit = sanitize_concurrency(concurrency_limit)
        self._on_job_done = on_job_done
        self._queue: deque[TranslationJob] = deque()
        self._pending: dict[str, asyncio.Future[str]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._active = 0
        self._closed = False

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, cache_key: str) -> bool:
        return cache_key in self._pending

    def submit(self, cache_key: str, fragment: Fragment, params: RequestParams) -> asyncio.Future[str]:
        if self._closed:
            raise RuntimeError("scheduler is shut down")
        existing = self._pending.get(cache_key)
        if existing is not None:
            logging.debug("scheduler_coalesced key=%s", cache_key)
            return existing
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[cache_key] = future
        self._queue.append(TranslationJob(cache_key=cache_key, fragment=fragment, params=params, future=future))
        self._pump()
        return future

    def update_concurrency_limit(self, limit: Any) -> int:
        sanitized = sanitize_concurrency(limit)
        if sanitized != self._limit:
            logging.info("scheduler_concurrency_changed old=%d new=%d", self._limit, sanitized)
            self._limit = sanitized
            self._pump()
        return self._limit

    def reopen(self) -> None:
        self._closed = False

    async def shutdown(self) -> None:
        self._closed = True
        while self._queue:
            job = self._queue.popleft()
            self._pending.pop(job.cache_key, None)
            if not job.future.done():
                job.future.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def _pump(self) -> None:
        while not self._closed and self._active < self._limit and self._queue:
            job = self._queue.popleft()
            if job.future.done():
                # Cancelled by a caller while still queued.
                self._release_pending(job)
                continue
            self._active += 1
            task = asyncio.get_running_loop().create_task(self._run_job(job), name=f"translate-{id(job):x}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_job(self, job: TranslationJob) -> None:
        started = perf_counter()
        translated: Optional[str] = None
        error: Optional[BaseException] = None
        try:
            translated = await self._translate(job)
            self._cache.put(job.cache_key, translated)
            if not job.future.done():
                job.future.set_result(translated)
        except asyncio.CancelledError as exc:
            error = exc
            if not job.future.done():
                job.future.cancel()
            raise
        except Exception as exc:  # noqa: BLE001 - job boundary, surfaced through the future
            error = exc
            if not job.future.done():
                job.future.set_exception(exc)
        finally:
            self._release_pending(job)
            self._active = max(0, self._active - 1)
            if self._on_job_done is not None:
                try:
                    self._on_job_done(job, translated, error, perf_counter() - started)
                except Exception:  # noqa: BLE001 - listener boundary
                    logging.exception("scheduler_listener_failed key=%s", job.cache_key)
            self._pump()

    def _release_pending(self, job: TranslationJob) -> None:
        if self._pending.get(job.cache_key) is job.future:
            del self._pending[job.cache_key]
