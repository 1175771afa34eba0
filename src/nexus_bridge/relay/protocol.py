"""Line framing and classification for the child's stdout stream.

Terms used in this file:
- Protocol line: a JSON object carrying at least one of ``jsonrpc``,
  ``method``, ``result`` or ``error``. Key presence is enough.
- Diagnostic line: anything else the child printed on stdout.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from enum import Enum

PROTOCOL_KEYS: frozenset[str] = frozenset({"jsonrpc", "method", "result", "error"})


class LineKind(str, Enum):
    PROTOCOL = "protocol"
    NON_PROTOCOL = "non_protocol"
    NON_PARSEABLE = "non_parseable"


_TAGS = {
    LineKind.NON_PROTOCOL: "[NON-PROTOCOL]",
    LineKind.NON_PARSEABLE: "[NON-PARSEABLE]",
}


@dataclass(frozen=True)
class LineVerdict:
    kind: LineKind
    line: str

    @property
    def is_protocol(self) -> bool:
        return self.kind is LineKind.PROTOCOL

    def diagnostic(self) -> str:
        """Tagged form written to stderr for non-protocol lines."""
        return f"{_TAGS[self.kind]} {self.line}"


def classify_line(line: str) -> LineVerdict:
    try:
        message = json.loads(line)
    except (ValueError, RecursionError):
        return LineVerdict(LineKind.NON_PARSEABLE, line)
    if isinstance(message, dict) and PROTOCOL_KEYS.intersection(message):
        return LineVerdict(LineKind.PROTOCOL, line)
    return LineVerdict(LineKind.NON_PROTOCOL, line)


class LineBuffer:
    """Turn arbitrary byte chunks into complete, non-blank text lines.

    Only the trailing partial line is held between calls. Invalid UTF-8 is
    replaced rather than raised so malformed output never stops the relay.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        text = self._pending + self._decoder.decode(chunk)
        *complete, self._pending = text.split("\n")
        return _clean(complete)

    def flush(self) -> list[str]:
        """Return the unterminated tail at end of stream."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return _clean([tail])


def _clean(lines: list[str]) -> list[str]:
    cleaned = []
    for line in lines:
        if line.endswith("\r"):
            line = line[:-1]
        if line.strip():
            cleaned.append(line)
    return cleaned
