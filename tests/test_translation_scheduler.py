from __future__ import annotations

import asyncio
import unittest

from translation_cache import TranslationCache
from translation_scheduler import RequestParams, TranslationJob, TranslationScheduler
from translation_service import Fragment, HttpError

_PARAMS = RequestParams(api_key="key", target_language="ja", model="m", api_base_url="")


class _FakeTranslate:
    def __init__(self, delay: float = 0.02, failures: frozenset[str] = frozenset()) -> None:
        self.delay = delay
        self.failures = failures
        self.calls: list[str] = []
        self.running = 0
        self.max_running = 0

    async def __call__(self, job: TranslationJob) -> str:
        self.calls.append(job.fragment.text)
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.running -= 1
        if job.fragment.text in self.failures:
            raise HttpError(500, "boom")
        return f"<{job.fragment.text}>"


class TranslationSchedulerTests(unittest.TestCase):
    def test_identical_keys_share_one_in_flight_call(self) -> None:
        translate = _FakeTranslate()
        cache = TranslationCache()

        async def scenario() -> tuple[str, str, bool]:
            scheduler = TranslationScheduler(translate, cache)
            first = scheduler.submit("k", Fragment.create("Hello"), _PARAMS)
            second = scheduler.submit("k", Fragment.create("Hello"), _PARAMS)
            same = first is second
            self.assertEqual(scheduler.pending_count, 1)
            results = await asyncio.gather(first, second)
            self.assertEqual(scheduler.pending_count, 0)
            return results[0], results[1], same

        first, second, same = asyncio.run(scenario())
        self.assertTrue(same)
        self.assertEqual((first, second), ("<Hello>", "<Hello>"))
        self.assertEqual(translate.calls, ["Hello"])
        self.assertEqual(cache.get("k"), "<Hello>")

    def test_never_exceeds_concurrency_limit(self) -> None:
        for limit in (1, 2, 8):
            with self.subTest(limit=limit):
                translate = _FakeTranslate(delay=0.01)

                async def scenario() -> None:
                    scheduler = TranslationScheduler(translate, TranslationCache(), concurrency_limit=limit)
                    futures = [scheduler.submit(f"k{i}", Fragment.create(f"t{i}"), _PARAMS) for i in range(12)]
                    self.assertLessEqual(scheduler.active_count, limit)
                    await asyncio.gather(*futures)

                asyncio.run(scenario())
                self.assertEqual(translate.max_running, limit)
                self.assertEqual(len(translate.calls), 12)

    def test_invalid_limits_fall_back_to_default(self) -> None:
        scheduler = TranslationScheduler(_FakeTranslate(), TranslationCache(), concurrency_limit=0)
        self.assertEqual(scheduler.concurrency_limit, 3)
        self.assertEqual(scheduler.update_concurrency_limit("abc"), 3)

    def test_jobs_are_released_in_fifo_order(self) -> None:
        translate = _FakeTranslate(delay=0.005)

        async def scenario() -> None:
            scheduler = TranslationScheduler(translate, TranslationCache(), concurrency_limit=1)
            futures = [scheduler.submit(f"k{i}", Fragment.create(f"t{i}"), _PARAMS) for i in range(5)]
            await asyncio.gather(*futures)

        asyncio.run(scenario())
        self.assertEqual(translate.calls, ["t0", "t1", "t2", "t3", "t4"])

    def test_failure_rejects_only_its_future_and_queue_keeps_draining(self) -> None:
        translate = _FakeTranslate(failures=frozenset({"bad"}))
        cache = TranslationCache()

        async def scenario() -> list[object]:
            scheduler = TranslationScheduler(translate, cache, concurrency_limit=1)
            futures = [
                scheduler.submit("k-bad", Fragment.create("bad"), _PARAMS),
                scheduler.submit("k-good", Fragment.create("good"), _PARAMS),
            ]
            return await asyncio.gather(*futures, return_exceptions=True)

        bad, good = asyncio.run(scenario())
        self.assertIsInstance(bad, HttpError)
        self.assertEqual(good, "<good>")
        self.assertIsNone(cache.get("k-bad"))

    def test_raising_the_limit_admits_queued_jobs_immediately(self) -> None:
        translate = _FakeTranslate(delay=0.05)

        async def scenario() -> None:
            scheduler = TranslationScheduler(translate, TranslationCache(), concurrency_limit=1)
            futures = [scheduler.submit(f"k{i}", Fragment.create(f"t{i}"), _PARAMS) for i in range(4)]
            await asyncio.sleep(0)
            self.assertEqual(scheduler.active_count, 1)
            self.assertEqual(scheduler.queued_count, 3)
            scheduler.update_concurrency_limit(4)
            self.assertEqual(scheduler.active_count, 4)
            self.assertEqual(scheduler.queued_count, 0)
            await asyncio.gather(*futures)

        asyncio.run(scenario())
        self.assertEqual(translate.max_running, 4)

    def test_cache_is_written_before_callers_see_the_result(self) -> None:
        cache = TranslationCache()
        seen: list[object] = []

        async def scenario() -> None:
            scheduler = TranslationScheduler(_FakeTranslate(), cache)
            future = scheduler.submit("k", Fragment.create("Hello"), _PARAMS)
            future.add_done_callback(lambda _: seen.append(cache.get("k")))
            await future

        asyncio.run(scenario())
        self.assertEqual(seen, ["<Hello>"])

    def test_shutdown_cancels_running_and_queued_jobs(self) -> None:
        translate = _FakeTranslate(delay=1.0)

        async def scenario() -> list[asyncio.Future[str]]:
            scheduler = TranslationScheduler(translate, TranslationCache(), concurrency_limit=1)
            futures = [scheduler.submit(f"k{i}", Fragment.create(f"t{i}"), _PARAMS) for i in range(3)]
            await asyncio.sleep(0)
            await scheduler.shutdown()
            self.assertEqual(scheduler.pending_count, 0)
            with self.assertRaises(RuntimeError):
                scheduler.submit("k9", Fragment.create("t9"), _PARAMS)
            return futures

        futures = asyncio.run(scenario())
        self.assertTrue(all(future.cancelled() for future in futures))


if __name__ == "__main__":
    unittest.main()
