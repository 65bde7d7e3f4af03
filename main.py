from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv
from PyQt6.QtWidgets import QApplication
from qasync import QEventLoop

from config_utils import read_bool_env, read_str_env
from diagnostics_reporter import DiagnosticsReporter
from overlay_ui import OverlayWindow
from settings_store import JsonFileStore, TranslatorSettings
from source_watcher import CaptionFileWatcher, TranscriptFileWatcher
from translation_pipeline import CAPTION_SOURCE_ID, TranslationPipeline


class TranslatorController:
    """Wires file watchers, the translation pipeline and the overlay together."""

    def __init__(self, ui: OverlayWindow, store: JsonFileStore, diagnostics: Optional[DiagnosticsReporter] = None) -> None:
        self.ui = ui
        self.diagnostics = diagnostics or DiagnosticsReporter(
            enabled=read_bool_env("DIAGNOSTICS_ENABLED", True),
            output_path=read_str_env("DIAGNOSTICS_OUTPUT_PATH", "./reports/diagnostics.jsonl"),
            summary_path=read_str_env("DIAGNOSTICS_SUMMARY_PATH", "./reports/diagnostics_summary.json"),
            append_mode=read_bool_env("DIAGNOSTICS_APPEND_MODE", False),
        )
        self.pipeline = TranslationPipeline(store, sink=ui, diagnostics=self.diagnostics)
        self.pipeline.on_settings_changed(self._on_settings_changed)
        self.caption_watcher: Optional[CaptionFileWatcher] = None
        self.transcript_watcher: Optional[TranscriptFileWatcher] = None
        caption_path = read_str_env("CAPTION_SOURCE_PATH", "")
        transcript_path = read_str_env("TRANSCRIPT_SOURCE_PATH", "")
        if caption_path:
            self.caption_watcher = CaptionFileWatcher(
                caption_path,
                on_change=self._on_caption_text,
                on_reset=self._on_caption_reset,
            )
        if transcript_path:
            self.transcript_watcher = TranscriptFileWatcher(
                transcript_path,
                on_line=self.pipeline.transcript.on_line,
                on_remove=self.pipeline.transcript.remove_line,
                on_reset=self.pipeline.transcript.reset,
            )
        self.running = False
        self._toggle_task: Optional[asyncio.Task[None]] = None

        self.ui.toggle_listening.connect(self._on_toggle_listening)
        self.ui.clear_cache_requested.connect(self._on_clear_cache_requested)
        if self.caption_watcher is None and self.transcript_watcher is None:
            self.ui.set_status("Idle. Set CAPTION_SOURCE_PATH and/or TRANSCRIPT_SOURCE_PATH.")
        else:
            self.ui.set_status("Idle.")

    async def start(self) -> None:
        if self.running:
            return
        try:
            await self.pipeline.init()
            self.diagnostics.start_session()
            self.ui.apply_settings(self.pipeline.settings)
            for watcher in self._watchers():
                watcher.start()
        except Exception as exc:  # noqa: BLE001 - service startup boundary
            logging.exception("startup_failed")
            self.ui.set_status(f"Startup error: {exc}")
            self.ui.set_listening(False)
            return
        self.running = True
        if not self.pipeline.settings.api_key:
            self.ui.set_status("Watching sources. No API key configured; captions stay untranslated.")
        else:
            self.ui.set_status("Watching sources...")

    async def stop(self) -> None:
        if not self.running:
            self.ui.set_listening(False)
            return
        self.running = False
        for watcher in self._watchers():
            await watcher.stop()
        await self.pipeline.shutdown()
        self.diagnostics.finalize_session()
        self.ui.set_listening(False)
        self.ui.set_status("Stopped.")

    def shutdown_sync(self) -> None:
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()
        if self.running:
            self.pipeline.cache.flush()
            self.diagnostics.finalize_session()

    def _watchers(self) -> list:
        return [watcher for watcher in (self.caption_watcher, self.transcript_watcher) if watcher is not None]

    def _on_caption_text(self, text: str) -> None:
        self.pipeline.caption_source(CAPTION_SOURCE_ID).on_change(text)

    def _on_caption_reset(self) -> None:
        self.pipeline.release_source(CAPTION_SOURCE_ID)

    def _on_settings_changed(self, settings: TranslatorSettings) -> None:
        self.ui.apply_settings(settings)

    def _on_toggle_listening(self, should_listen: bool) -> None:
        self._schedule_toggle(should_listen)

    def _schedule_toggle(self, should_listen: bool) -> None:
        if self._toggle_task and not self._toggle_task.done():
            self._toggle_task.cancel()
        task = asyncio.create_task(
            self.start() if should_listen else self.stop(),
            name="toggle-listening",
        )
        self._toggle_task = task

        def _finalize(done_task: asyncio.Task[None]) -> None:
            if self._toggle_task is done_task:
                self._toggle_task = None
            try:
                done_task.result()
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001 - task boundary
                self.ui.set_status(f"Toggle error: {exc}")

        task.add_done_callback(_finalize)

    def _on_clear_cache_requested(self) -> None:
        task = asyncio.create_task(self.pipeline.clear_cache(), name="clear-cache")

        def _report(done_task: asyncio.Task) -> None:
            if done_task.cancelled():
                return
            error = done_task.exception()
            if error is not None:
                self.ui.set_status(f"Failed to clear cache: {error}")
                return
            response = done_task.result()
            if response.success:
                self.ui.set_status("Translation cache cleared.")
            else:
                self.ui.set_status(f"Failed to clear cache: {response.error}")

        task.add_done_callback(_report)


def main() -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")

    app = QApplication(sys.argv)
    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    store = JsonFileStore(read_str_env("SETTINGS_PATH", "./data/live_translator.json"))
    overlay = OverlayWindow(TranslatorSettings.from_env())
    controller = TranslatorController(overlay, store)
    app.aboutToQuit.connect(controller.shutdown_sync)
    overlay.show()
    if read_bool_env("AUTO_START", True):
        overlay.set_listening(True)
        controller._schedule_toggle(True)

    with loop:
        loop.run_forever()


if __name__ == "__main__":
    main()
