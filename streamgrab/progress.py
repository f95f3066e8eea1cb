from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"

DOWNLOADING_TEXT = "Downloading..."
FINALIZING_TEXT = "Merging/Finalizing..."
FINALIZING_PERCENT = 99.0

_ANSI_ESCAPE_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
_PERCENT_RE = re.compile(r"(?:^|\s|\[)(\d{1,3}(?:\.\d+)?)%")
_LINE_BREAK_RE = re.compile(rb"\r\n|\r|\n")
_FINALIZE_MARKERS = ("Merger", "Deleting original file")


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    percent: Optional[float] = None
    text: Optional[str] = None

    @classmethod
    def progress(cls, percent: float, text: str = DOWNLOADING_TEXT) -> "ProgressEvent":
        return cls(PROGRESS, float(percent), text)

    @classmethod
    def complete(cls, text: str = "Download complete!") -> "ProgressEvent":
        return cls(COMPLETE, 100.0, text)

    @classmethod
    def error(cls, text: str) -> "ProgressEvent":
        return cls(ERROR, None, text)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type}
        if self.percent is not None:
            payload["percent"] = self.percent
        if self.text is not None:
            payload["text"] = self.text
        return payload

    def to_sse(self) -> str:
        return f"data: {json.dumps(self.as_dict())}\n\n"


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE_RE.sub("", text)


def parse_line(line: str) -> List[ProgressEvent]:
    """Turn one complete output line into zero or more progress events.

    Only the last percentage on the line counts; earlier ones are ETA or
    fragment figures. A last value above 100 yields nothing.
    """
    clean = strip_ansi(line)
    events: List[ProgressEvent] = []

    matches = _PERCENT_RE.findall(clean)
    if matches:
        try:
            percent = float(matches[-1])
        except ValueError:
            percent = None
        if percent is not None and 0.0 <= percent <= 100.0:
            events.append(ProgressEvent.progress(percent))

    if any(marker in clean for marker in _FINALIZE_MARKERS):
        events.append(ProgressEvent.progress(FINALIZING_PERCENT, FINALIZING_TEXT))
    return events


class ProgressParser:
    """Reassembles lines from raw output chunks and parses each complete one."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._buffer = b""
        self._encoding = encoding

    def feed(self, chunk: bytes) -> List[ProgressEvent]:
        self._buffer += chunk
        *lines, self._buffer = _LINE_BREAK_RE.split(self._buffer)
        events: List[ProgressEvent] = []
        for raw in lines:
            # CRLF split across chunks leaves an empty line behind.
            if not raw:
                continue
            events.extend(parse_line(raw.decode(self._encoding, errors="replace")))
        return events

    def close(self) -> List[ProgressEvent]:
        # A partial trailing line is dropped rather than guessed at.
        self._buffer = b""
        return []
