from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from config_utils import read_float_env


class _PollingFileWatcher:
    """Polls a text file and reports content that differs from the last read.

    Replacing the file (new inode) or deleting it counts as a source swap and
    triggers ``on_reset`` before any new content is reported.
    """

    def __init__(self, path: str | Path, poll_seconds: Optional[float] = None) -> None:
        self._path = Path(path)
        self._poll_seconds = poll_seconds or read_float_env("SOURCE_POLL_SECONDS", 0.25)
        self._identity: Optional[tuple[int, int]] = None
        self._last_text: Optional[str] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._poll_loop(), name=f"watch-{self._path.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def poll_once(self) -> None:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            if self._identity is not None:
                self._identity = None
                self._last_text = None
                self._handle_reset()
            return
        identity = (stat.st_dev, stat.st_ino)
        if self._identity is not None and identity != self._identity:
            self._last_text = None
            self._handle_reset()
        self._identity = identity
        text = self._path.read_text(encoding="utf-8", errors="replace")
        if text == self._last_text:
            return
        self._last_text = text
        self._handle_text(text)

    async def _poll_loop(self) -> None:
        while True:
            try:
                self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - watcher boundary
                logging.warning("source_poll_failed path=%s error=%s", self._path, exc)
            await asyncio.sleep(self._poll_seconds)

    def _handle_text(self, text: str) -> None:
        raise NotImplementedError

    def _handle_reset(self) -> None:
        raise NotImplementedError


class CaptionFileWatcher(_PollingFileWatcher):
    """The whole file is the active caption."""

    def __init__(
        self,
        path: str | Path,
        on_change: Callable[[str], None],
        on_reset: Callable[[], None],
        poll_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(path, poll_seconds)
        self._on_change = on_change
        self._on_reset = on_reset

    def _handle_text(self, text: str) -> None:
        self._on_change(text)

    def _handle_reset(self) -> None:
        logging.info("caption_source_replaced path=%s", self._path)
        self._on_reset()


class TranscriptFileWatcher(_PollingFileWatcher):
    """Each line of the file is one transcript cue, keyed by its line index."""

    def __init__(
        self,
        path: str | Path,
        on_line: Callable[[str, str], None],
        on_remove: Callable[[str], None],
        on_reset: Callable[[], None],
        poll_seconds: Optional[float] = None,
    ) -> None:
        super().__init__(path, poll_seconds)
        self._on_line = on_line
        self._on_remove = on_remove
        self._on_reset = on_reset
        self._lines: list[str] = []

    def _handle_text(self, text: str) -> None:
        lines = [line.strip() for line in text.splitlines()]
        for index, line in enumerate(lines):
            previous = self._lines[index] if index < len(self._lines) else None
            if line and line != previous:
                self._on_line(str(index), line)
            elif not line and previous:
                self._on_remove(str(index))
        for index in range(len(lines), len(self._lines)):
            if self._lines[index]:
                self._on_remove(str(index))
        self._lines = lines

    def _handle_reset(self) -> None:
        logging.info("transcript_source_replaced path=%s", self._path)
        self._lines = []
        self._on_reset()
