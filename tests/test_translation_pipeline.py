from __future__ import annotations

import asyncio
import tempfile
import unittest
from pathlib import Path
from typing import Optional

from diagnostics_reporter import DiagnosticsReporter
from settings_store import JsonFileStore, TranslatorSettings
from translation_pipeline import CAPTION_SOURCE_ID, TranslationPipeline
from translation_service import EmptyResult, Fragment, HttpError

_TRANSLATIONS = {("zh-CN", "Hello"): "你好", ("ja", "Hello"): "こんにちは"}


class _FakeAdapter:
    def __init__(
        self,
        delays: Optional[dict[str, float]] = None,
        empty: frozenset[str] = frozenset(),
        failures: frozenset[str] = frozenset(),
    ) -> None:
        self.delays = delays or {}
        self.empty = empty
        self.failures = failures
        self.calls: list[tuple[str, tuple[str, ...], str]] = []
        self.running = 0
        self.max_running = 0
        self.closed = False

    async def translate(
        self,
        fragment: Fragment,
        api_key: str,
        target_language: str,
        model: str,
        api_base_url: str,
    ) -> str:
        self.calls.append((fragment.text, fragment.source_context, target_language))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(self.delays.get(fragment.text, 0.01))
        finally:
            self.running -= 1
        if fragment.text in self.empty:
            raise EmptyResult()
        if fragment.text in self.failures:
            raise HttpError(500, "upstream down")
        return _TRANSLATIONS.get((target_language, fragment.text), f"{target_language}:{fragment.text}")

    async def close(self) -> None:
        self.closed = True


class _RecordingSink:
    def __init__(self) -> None:
        self.rendered: list[tuple[str, str, Optional[str]]] = []

    def render(self, source_id: str, original: str, translation: Optional[str]) -> None:
        self.rendered.append((source_id, original, translation))

    def clear(self, source_id: str) -> None:
        self.rendered.append((source_id, "", None))

    def translations(self, source_id: str) -> list[str]:
        return [item[2] for item in self.rendered if item[0] == source_id and item[2]]


class TranslationPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.store = JsonFileStore(Path(self._tmpdir.name) / "store.json")
        self.defaults = TranslatorSettings(api_key="test-key")

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _pipeline(self, adapter: _FakeAdapter, sink: Optional[_RecordingSink] = None) -> TranslationPipeline:
        return TranslationPipeline(self.store, sink=sink, adapter=adapter, defaults=self.defaults)  # type: ignore[arg-type]

    def test_hello_is_translated_then_retranslated_after_language_change(self) -> None:
        adapter = _FakeAdapter()
        sink = _RecordingSink()

        async def scenario() -> None:
            pipeline = self._pipeline(adapter, sink)
            await pipeline.init()
            caption = pipeline.caption_source()
            caption.on_change("Hello")
            await asyncio.sleep(0.05)
            self.assertEqual(caption.state.rendered_translation, "你好")

            caption.on_change("")
            self.store.set({"targetLanguage": "ja"})
            caption.on_change("Hello")
            await asyncio.sleep(0.05)
            self.assertEqual(caption.state.rendered_translation, "こんにちは")
            await pipeline.shutdown()

        asyncio.run(scenario())
        self.assertEqual(adapter.calls, [("Hello", (), "zh-CN"), ("Hello", ("Hello",), "ja")])
        self.assertEqual(sink.translations(CAPTION_SOURCE_ID), ["你好", "こんにちは"])

    def test_rapid_changes_only_render_the_last_caption(self) -> None:
        adapter = _FakeAdapter(delays={"A": 0.2, "B": 0.2, "C": 0.05})
        sink = _RecordingSink()

        async def scenario() -> None:
            pipeline = self._pipeline(adapter, sink)
            await pipeline.init()
            caption = pipeline.caption_source()
            caption.on_change("A")
            await asyncio.sleep(0.02)
            caption.on_change("B")
            await asyncio.sleep(0.02)
            caption.on_change("C")
            await asyncio.sleep(0.3)
            # Superseded calls still complete and populate the cache.
            self.assertIsNotNone(pipeline.lookup("A"))
            await pipeline.shutdown()

        asyncio.run(scenario())
        self.assertEqual(sink.translations(CAPTION_SOURCE_ID), ["zh-CN:C"])

    def test_identical_requests_call_adapter_once(self) -> None:
        adapter = _FakeAdapter(delays={"Same": 0.05})

        async def scenario() -> list[dict[str, object]]:
            pipeline = self._pipeline(adapter)
            await pipeline.init()
            responses = await asyncio.gather(pipeline.translate("Same", []), pipeline.translate("Same", []))
            again = await pipeline.translate("Same", [])
            await pipeline.shutdown()
            return [response.as_message() for response in (*responses, again)]

        messages = asyncio.run(scenario())
        self.assertEqual(len(adapter.calls), 1)
        for message in messages:
            self.assertEqual(message, {"success": True, "translatedText": "zh-CN:Same"})

    def test_clear_cache_forces_a_new_adapter_call(self) -> None:
        adapter = _FakeAdapter()

        async def scenario() -> dict[str, object]:
            pipeline = self._pipeline(adapter)
            await pipeline.init()
            await pipeline.translate("Hello", [])
            cleared = await pipeline.clear_cache()
            self.assertIsNone(pipeline.lookup("Hello"))
            await pipeline.translate("Hello", [])
            await pipeline.shutdown()
            return cleared.as_message()

        cleared = asyncio.run(scenario())
        self.assertEqual(cleared, {"success": True})
        self.assertEqual(len(adapter.calls), 2)

    def test_request_errors_are_reported_as_codes(self) -> None:
        adapter = _FakeAdapter(empty=frozenset({"blank"}))

        async def scenario() -> list[dict[str, object]]:
            pipeline = self._pipeline(adapter)
            await pipeline.init()
            empty_text = await pipeline.translate("   ", [])
            empty_result = await pipeline.translate("blank", [])
            self.store.set({"apiKey": ""})
            missing_key = await pipeline.translate("Hello", [])
            await pipeline.shutdown()
            return [empty_text.as_message(), empty_result.as_message(), missing_key.as_message()]

        empty_text, empty_result, missing_key = asyncio.run(scenario())
        self.assertEqual(empty_text, {"success": False, "error": "EMPTY_TEXT"})
        self.assertEqual(empty_result, {"success": False, "error": "EMPTY_TRANSLATION"})
        self.assertEqual(missing_key, {"success": False, "error": "MISSING_API_KEY"})
        self.assertEqual([call[0] for call in adapter.calls], ["blank"])

    def test_request_context_is_trimmed_to_last_three_for_the_adapter(self) -> None:
        adapter = _FakeAdapter()

        async def scenario() -> None:
            pipeline = self._pipeline(adapter)
            await pipeline.init()
            await pipeline.translate("six", ["one", " two ", "", 3, "three", "four", "five"])
            await pipeline.shutdown()

        asyncio.run(scenario())
        self.assertEqual(adapter.calls[0][1], ("three", "four", "five"))

    def test_concurrency_setting_propagates_live(self) -> None:
        adapter = _FakeAdapter(delays={f"t{i}": 0.05 for i in range(6)})

        async def scenario() -> None:
            self.store.set({"concurrencyLimit": 1})
            pipeline = self._pipeline(adapter)
            await pipeline.init()
            self.assertEqual(pipeline.scheduler.concurrency_limit, 1)
            requests = [asyncio.ensure_future(pipeline.translate(f"t{i}", [])) for i in range(6)]
            await asyncio.sleep(0.01)
            self.store.set({"concurrencyLimit": "abc"})
            self.assertEqual(pipeline.scheduler.concurrency_limit, 3)
            self.assertEqual(pipeline.transcript.queued_count, 0)
            await asyncio.gather(*requests)
            await pipeline.shutdown()

        asyncio.run(scenario())
        self.assertEqual(adapter.max_running, 3)

    def test_cache_survives_pipeline_restart(self) -> None:
        adapter = _FakeAdapter()

        async def scenario() -> None:
            first = self._pipeline(adapter)
            await first.init()
            await first.translate("Hello", [])
            await first.shutdown()
            self.assertTrue(adapter.closed)

            second = self._pipeline(adapter)
            await second.init()
            self.assertEqual(second.lookup("Hello"), "你好")
            response = await second.translate("Hello", [])
            self.assertEqual(response.translated_text, "你好")
            await second.shutdown()

        asyncio.run(scenario())
        self.assertEqual(len(adapter.calls), 1)

    def test_each_failure_is_recorded_once_in_diagnostics(self) -> None:
        adapter = _FakeAdapter(failures=frozenset({"broken caption", "broken line"}))
        diagnostics = DiagnosticsReporter(
            True,
            str(Path(self._tmpdir.name) / "diagnostics.jsonl"),
            str(Path(self._tmpdir.name) / "diagnostics_summary.json"),
        )

        async def scenario() -> dict[str, object]:
            pipeline = TranslationPipeline(
                self.store, adapter=adapter, diagnostics=diagnostics, defaults=self.defaults  # type: ignore[arg-type]
            )
            await pipeline.init()
            diagnostics.start_session()
            pipeline.caption_source().on_change("broken caption")
            pipeline.transcript.on_line("0", "broken line")
            await asyncio.sleep(0.15)
            self.store.set({"apiKey": ""})
            pipeline.caption_source().on_change("no key")
            await pipeline.shutdown()
            return diagnostics.finalize_session()

        summary = asyncio.run(scenario())
        self.assertEqual(summary["error_events"], 3)
        self.assertEqual(summary["errors_by_code"], {"HTTP_500": 2, "MISSING_API_KEY": 1})

    def test_transcript_toggle_follows_setting(self) -> None:
        adapter = _FakeAdapter()
        sink = _RecordingSink()

        async def scenario() -> None:
            pipeline = self._pipeline(adapter, sink)
            await pipeline.init()
            pipeline.transcript.on_line("0", "first line")
            await asyncio.sleep(0.15)
            self.assertEqual(sink.translations("transcript:0"), ["zh-CN:first line"])
            self.store.set({"translateTranscript": False})
            self.assertFalse(pipeline.transcript.enabled)
            self.assertIsNone(pipeline.transcript.line_state("0"))
            await pipeline.shutdown()

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
