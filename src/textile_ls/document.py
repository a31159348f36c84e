"""In-memory text document with line/offset conversion."""

from __future__ import annotations

import bisect
from pathlib import Path

from .models import Position, Range


class TextDocument:
    """A versioned snapshot of a document's text.

    Lines are split on ``\\n``; a trailing ``\\r`` is treated as part of the
    line terminator, so positions never point inside a CRLF pair.
    """

    def __init__(self, uri: Path, text: str, version: int = 0):
        self.uri = uri
        self.text = text
        self.version = version
        self._line_offsets = [0]
        for index, char in enumerate(text):
            if char == "\n":
                self._line_offsets.append(index + 1)

    def __repr__(self) -> str:
        return f"TextDocument({str(self.uri)!r}, version={self.version})"

    @property
    def line_count(self) -> int:
        return len(self._line_offsets)

    def line_at(self, line: int) -> str:
        """Text of ``line`` without its terminator."""
        start = self._line_offsets[line]
        if line + 1 < len(self._line_offsets):
            end = self._line_offsets[line + 1] - 1
        else:
            end = len(self.text)
        return self.text[start:end].removesuffix("\r")

    def lines(self) -> list[str]:
        return [self.line_at(line) for line in range(self.line_count)]

    def offset_at(self, position: Position) -> int:
        """Convert a position to an offset, clamping to the document."""
        if position.line >= len(self._line_offsets):
            return len(self.text)
        line = max(position.line, 0)
        line_start = self._line_offsets[line]
        line_end = line_start + len(self.line_at(line))
        return min(line_start + max(position.character, 0), line_end)

    def position_at(self, offset: int) -> Position:
        offset = min(max(offset, 0), len(self.text))
        line = bisect.bisect_right(self._line_offsets, offset) - 1
        return Position(line, offset - self._line_offsets[line])

    def get_text(self, range: Range | None = None) -> str:
        if range is None:
            return self.text
        return self.text[self.offset_at(range.start) : self.offset_at(range.end)]
