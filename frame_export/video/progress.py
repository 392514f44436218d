"""
Encoder progress parsing.

FFmpeg reports progress as human-readable status lines on stderr
(``frame=  120 fps= 58 q=23.0 size= ...``), separated by carriage returns
rather than newlines. The parser is the only place that knows this format.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional


@dataclass(frozen=True)
class ProgressEvent:
    """Encoder progress: frames processed so far out of the known total"""
    frame: int
    total: int

    def to_dict(self) -> dict:
        return {'frame': self.frame, 'total': self.total}


class FrameProgressParser:
    """Extract the frame counter from one line of encoder diagnostics."""

    FRAME_PATTERN = re.compile(r'frame=\s*(\d+)')

    def parse(self, line: str) -> Optional[int]:
        matches = self.FRAME_PATTERN.findall(line)
        if not matches:
            return None
        return int(matches[-1])


class LineSplitter:
    """
    Reassemble diagnostic lines from arbitrary stream chunks.

    Both ``\\r`` and ``\\n`` terminate a line; an unterminated tail is kept
    until the next chunk or ``flush()``.
    """

    _SEPARATORS = re.compile(r'[\r\n]+')

    def __init__(self):
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        data = self._pending + chunk
        parts = self._SEPARATORS.split(data)
        self._pending = parts.pop()
        return [p for p in parts if p.strip()]

    def flush(self) -> List[str]:
        rest, self._pending = self._pending, ""
        return [rest] if rest.strip() else []


class ProgressTracker:
    """
    Turn parsed frame numbers into strictly increasing ProgressEvents.

    Values are clamped to ``total`` and anything not greater than the last
    reported frame is dropped.
    """

    def __init__(
        self,
        total: int,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        parser: Optional[FrameProgressParser] = None
    ):
        self.total = total
        self.parser = parser or FrameProgressParser()
        self.on_progress = on_progress
        self.last_frame: Optional[int] = None
        self.events: List[ProgressEvent] = []

    def feed_line(self, line: str) -> Optional[ProgressEvent]:
        frame = self.parser.parse(line)
        if frame is None:
            return None

        frame = min(frame, self.total)
        if self.last_frame is not None and frame <= self.last_frame:
            return None

        self.last_frame = frame
        event = ProgressEvent(frame=frame, total=self.total)
        self.events.append(event)
        if self.on_progress:
            self.on_progress(event)
        return event


class DiagnosticTail:
    """Keep only the trailing characters of a long diagnostic stream."""

    def __init__(self, max_chars: int = 500, headroom: int = 4096):
        self.max_chars = max_chars
        self._limit = max_chars + headroom
        self._text = ""

    def append(self, text: str):
        self._text += text
        if len(self._text) > self._limit:
            self._text = self._text[-self.max_chars:]

    def tail(self, count: Optional[int] = None) -> str:
        return self._text[-(count or self.max_chars):]

    def __len__(self) -> int:
        return len(self._text)
