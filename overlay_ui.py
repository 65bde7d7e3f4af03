from __future__ import annotations

from typing import Optional

from PyQt6.QtCore import QPoint, Qt, pyqtSignal
from PyQt6.QtGui import QFont, QTextCursor
from PyQt6.QtWidgets import (
    QFrame,
    QHBoxLayout,
    QLabel,
    QPushButton,
    QSizeGrip,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from settings_store import TranslatorSettings

CAPTION_SOURCE_ID = "caption"
TRANSCRIPT_PREFIX = "transcript:"


class OverlayWindow(QWidget):
    """Presentation sink: renders the live caption and translated transcript.

    The pipeline calls :meth:`render` and :meth:`clear` by source id and never
    reads anything back.
    """

    DRAG_ZONE_HEIGHT = 56
    FONT_FAMILIES = ["Helvetica Neue", "Segoe UI", "Noto Sans", "Sans Serif"]

    toggle_listening = pyqtSignal(bool)
    clear_cache_requested = pyqtSignal()

    def __init__(self, settings: Optional[TranslatorSettings] = None) -> None:
        super().__init__()
        self._settings = settings or TranslatorSettings()
        self._drag_offset: Optional[QPoint] = None
        self._listening = False
        self._caption_original = ""
        self._caption_translation = ""
        self._transcript: dict[str, tuple[str, Optional[str]]] = {}

        self._build_ui()
        self._apply_window_style()
        self.apply_settings(self._settings)

    @property
    def caption_translation(self) -> str:
        return self._caption_translation

    @property
    def transcript_lines(self) -> dict[str, tuple[str, Optional[str]]]:
        return dict(self._transcript)

    def render(self, source_id: str, original: str, translation: Optional[str]) -> None:
        if source_id.startswith(TRANSCRIPT_PREFIX):
            self._transcript[source_id[len(TRANSCRIPT_PREFIX):]] = (original, translation)
            self._render_transcript()
            return
        self._caption_original = original
        self._caption_translation = (translation or "").strip()
        self._paint_caption()

    def clear(self, source_id: str) -> None:
        if source_id.startswith(TRANSCRIPT_PREFIX):
            if self._transcript.pop(source_id[len(TRANSCRIPT_PREFIX):], None) is not None:
                self._render_transcript()
            return
        self._caption_original = ""
        self._caption_translation = ""
        self._paint_caption()

    def set_listening(self, listening: bool) -> None:
        self._listening = listening
        self.start_stop_button.setText("Stop" if listening else "Start")

    def set_status(self, message: str) -> None:
        self.status_label.setText(message)

    def apply_settings(self, settings: TranslatorSettings) -> None:
        self._settings = settings
        self.translation_label.setFont(self._make_font(settings.caption_font_size, bold=True))
        self.original_label.setFont(self._make_font(max(10, int(settings.caption_font_size * 0.6))))
        self.translation_label.setStyleSheet(f"color: {settings.caption_color};")
        self.transcript_view.setVisible(settings.translate_transcript)
        self._paint_caption()
        self._render_transcript()

    def _hide_original(self) -> bool:
        return not self._settings.show_original or self._settings.display_mode == "translation-only"

    def _paint_caption(self) -> None:
        has_translation = bool(self._caption_translation)
        show_original = bool(self._caption_original) and not (self._hide_original() and has_translation)
        self.original_label.setText(self._caption_original if show_original else "")
        self.original_label.setVisible(show_original)
        self.translation_label.setText(self._caption_translation)
        self.translation_label.setVisible(has_translation)
        self.caption_box.setVisible(bool(self._caption_original))

    def _render_transcript(self) -> None:
        hide_original = self._hide_original()
        blocks: list[str] = []
        for line_id in sorted(self._transcript, key=self._line_sort_key):
            original, translation = self._transcript[line_id]
            if translation and hide_original:
                blocks.append(translation)
            elif translation:
                blocks.append(f"{original}\n  {translation}")
            else:
                blocks.append(original)
        should_scroll = self._is_user_at_bottom()
        self.transcript_view.setPlainText("\n".join(blocks))
        if should_scroll:
            cursor = self.transcript_view.textCursor()
            cursor.movePosition(QTextCursor.MoveOperation.End)
            self.transcript_view.setTextCursor(cursor)
            self.transcript_view.ensureCursorVisible()

    @staticmethod
    def _line_sort_key(line_id: str) -> tuple[int, str]:
        return (int(line_id), "") if line_id.isdigit() else (1 << 30, line_id)

    def _build_ui(self) -> None:
        root = QVBoxLayout(self)
        root.setContentsMargins(6, 6, 6, 6)

        panel = QFrame()
        panel.setObjectName("overlayPanel")
        root.addWidget(panel)

        layout = QVBoxLayout(panel)
        layout.setContentsMargins(12, 12, 12, 12)
        layout.setSpacing(8)

        controls = QHBoxLayout()
        controls.setSpacing(6)
        layout.addLayout(controls)

        self.start_stop_button = QPushButton("Start")
        self.start_stop_button.clicked.connect(self._on_start_stop_clicked)
        controls.addWidget(self.start_stop_button)

        clear_cache_button = QPushButton("Clear Cache")
        clear_cache_button.clicked.connect(self.clear_cache_requested.emit)
        controls.addWidget(clear_cache_button)

        minimize_button = QPushButton("Minimize")
        minimize_button.clicked.connect(self.showMinimized)
        controls.addWidget(minimize_button)
        controls.addStretch(1)

        self.caption_box = QFrame()
        self.caption_box.setObjectName("captionBox")
        caption_layout = QVBoxLayout(self.caption_box)
        caption_layout.setContentsMargins(18, 12, 18, 12)
        caption_layout.setSpacing(4)

        self.original_label = QLabel("")
        self.original_label.setObjectName("captionOriginal")
        self.original_label.setWordWrap(True)
        self.original_label.setAlignment(Qt.AlignmentFlag.AlignHCenter | Qt.AlignmentFlag.AlignVCenter)
        caption_layout.addWidget(self.original_label)

        self.translation_label = QLabel("")
        self.translation_label.setObjectName("captionTranslation")
        self.translation_label.setWordWrap(True)
        self.translation_label.setAlignment(Qt.AlignmentFlag.AlignHCenter | Qt.AlignmentFlag.AlignVCenter)
        caption_layout.addWidget(self.translation_label)
        self.caption_box.hide()
        layout.addWidget(self.caption_box)

        self.transcript_view = QTextEdit()
        self.transcript_view.setReadOnly(True)
        self.transcript_view.setAcceptRichText(False)
        self.transcript_view.setLineWrapMode(QTextEdit.LineWrapMode.WidgetWidth)
        self.transcript_view.setFont(self._make_font(13))
        layout.addWidget(self.transcript_view)

        self.status_label = QLabel("Idle")
        status_row = QHBoxLayout()
        status_row.addWidget(self.status_label)
        status_row.addStretch(1)
        self.size_grip = QSizeGrip(panel)
        status_row.addWidget(self.size_grip, alignment=Qt.AlignmentFlag.AlignBottom | Qt.AlignmentFlag.AlignRight)
        layout.addLayout(status_row)

    def _apply_window_style(self) -> None:
        self.setWindowTitle("Live Caption Translator")
        self.setWindowFlags(
            Qt.WindowType.FramelessWindowHint
            | Qt.WindowType.WindowStaysOnTopHint
            | Qt.WindowType.Tool
        )
        self.setAttribute(Qt.WidgetAttribute.WA_TranslucentBackground, True)
        self.setAttribute(Qt.WidgetAttribute.WA_ShowWithoutActivating, True)
        self.setMinimumSize(520, 200)
        self.resize(900, 340)

        self.setStyleSheet(
            """
            #overlayPanel {
                background-color: rgba(28, 28, 28, 180);
                border: 1px solid rgba(255, 255, 255, 48);
                border-radius: 12px;
            }
            #captionBox {
                background-color: rgba(0, 0, 0, 170);
                border-radius: 10px;
            }
            #captionOriginal {
                color: rgba(255, 255, 255, 230);
            }
            QTextEdit {
                background-color: rgba(43, 43, 43, 0);
                color: #2d7a2d;
                border: none;
                padding: 8px;
            }
            QLabel {
                color: white;
            }
            QPushButton {
                background-color: rgba(70, 70, 70, 220);
                color: white;
                border: 1px solid rgba(255, 255, 255, 50);
                border-radius: 8px;
                padding: 6px 9px;
            }
            """
        )

    def _is_user_at_bottom(self) -> bool:
        scrollbar = self.transcript_view.verticalScrollBar()
        return scrollbar.value() >= (scrollbar.maximum() - 2)

    def _on_start_stop_clicked(self) -> None:
        next_state = not self._listening
        self.set_listening(next_state)
        self.toggle_listening.emit(next_state)

    def mousePressEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if event.button() == Qt.MouseButton.LeftButton:
            local_pos = event.position().toPoint()
            if local_pos.y() <= self.DRAG_ZONE_HEIGHT:
                self._drag_offset = event.globalPosition().toPoint() - self.frameGeometry().topLeft()
                event.accept()

    def mouseMoveEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        if self._drag_offset is not None and event.buttons() & Qt.MouseButton.LeftButton:
            self.move(event.globalPosition().toPoint() - self._drag_offset)
            event.accept()

    def mouseReleaseEvent(self, event) -> None:  # noqa: N802 - Qt override naming
        self._drag_offset = None
        event.accept()

    @classmethod
    def _make_font(cls, point_size: int, bold: bool = False) -> QFont:
        font = QFont()
        font.setFamilies(cls.FONT_FAMILIES)
        font.setPointSize(point_size)
        font.setBold(bold)
        return font
