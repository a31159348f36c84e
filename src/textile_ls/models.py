"""Pydantic models shared by the language service.

Positions and ranges are zero-based ``(line, character)`` pairs, the same
coordinates editors use. Links, references, diagnostics and edits are
frozen pydantic models so they can be cached, compared and serialized to
JSON by the CLI and MCP server.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, NamedTuple
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field


class Position(NamedTuple):
    line: int
    character: int

    def translate(self, line_delta: int = 0, character_delta: int = 0) -> Position:
        return Position(self.line + line_delta, self.character + character_delta)


class Range(NamedTuple):
    start: Position
    end: Position

    def contains(self, position: Position) -> bool:
        """True if ``position`` lies within the range, both ends inclusive."""
        return self.start <= position <= self.end

    def with_start(self, start: Position) -> Range:
        return Range(start, self.end)


def text_range(start_line: int, start_character: int, end_line: int, end_character: int) -> Range:
    """Shorthand for building a :class:`Range` from four coordinates."""
    return Range(Position(start_line, start_character), Position(end_line, end_character))


class Location(NamedTuple):
    uri: Path
    range: Range


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ─────────────────────────────────────────────────────────────────────────────
# Table of contents
# ─────────────────────────────────────────────────────────────────────────────


class TocEntry(_Frozen):
    """A single header of a document."""

    slug: str  # Unique within its document
    text: str  # Header text without the h1. signature
    level: int  # 1-6
    line: int
    section_location: Location  # Header line through the end of its section
    header_location: Location  # Whole header line
    header_text_location: Location  # Only the text after the signature


# ─────────────────────────────────────────────────────────────────────────────
# Links
# ─────────────────────────────────────────────────────────────────────────────


class ExternalHref(_Frozen):
    kind: Literal["external"] = "external"
    uri: str

    @property
    def target_key(self) -> tuple[str, str, str]:
        """Identity of the target: scheme, authority and path, ignoring fragment and query."""
        parts = urlsplit(self.uri)
        return parts.scheme.lower(), parts.netloc.lower(), parts.path or "/"


class InternalHref(_Frozen):
    kind: Literal["internal"] = "internal"
    path: Path  # Absolute, normalized
    fragment: str = ""  # Decoded text after '#'


class ReferenceHref(_Frozen):
    kind: Literal["reference"] = "reference"
    ref: str  # Name of a link definition in the same document


LinkHref = Annotated[ExternalHref | InternalHref | ReferenceHref, Field(discriminator="kind")]


class LinkSource(_Frozen):
    """Where a link was written and how its href text splits up."""

    resource: Path  # Document containing the link
    range: Range  # Whole link, including its text
    href_text: str  # Raw href as written
    path_text: str  # href_text without the '#fragment' part
    href_range: Range
    fragment_range: Range | None = None  # Text after '#', when present

    @property
    def path_range(self) -> Range:
        """The href up to (not including) the '#' separator."""
        if self.fragment_range is None:
            return self.href_range
        return Range(self.href_range.start, self.fragment_range.start.translate(character_delta=-1))


class InlineLink(_Frozen):
    kind: Literal["link"] = "link"
    source: LinkSource
    href: LinkHref


class LinkRef(_Frozen):
    text: str  # Definition name
    range: Range  # The name inside the brackets


class LinkDefinition(_Frozen):
    kind: Literal["definition"] = "definition"
    source: LinkSource
    ref: LinkRef
    href: Annotated[ExternalHref | InternalHref, Field(discriminator="kind")]


Link = Annotated[InlineLink | LinkDefinition, Field(discriminator="kind")]


# ─────────────────────────────────────────────────────────────────────────────
# References
# ─────────────────────────────────────────────────────────────────────────────


class LinkReference(_Frozen):
    kind: Literal["link"] = "link"
    is_trigger_location: bool
    is_definition: bool
    location: Location
    link: Link


class HeaderReference(_Frozen):
    kind: Literal["header"] = "header"
    is_trigger_location: bool
    is_definition: bool
    location: Location
    header_text: str
    header_text_location: Location


Reference = Annotated[LinkReference | HeaderReference, Field(discriminator="kind")]


# ─────────────────────────────────────────────────────────────────────────────
# Rename
# ─────────────────────────────────────────────────────────────────────────────


class RenamePreparation(_Frozen):
    range: Range
    placeholder: str


class TextEdit(_Frozen):
    range: Range
    new_text: str


class FileRename(_Frozen):
    old_uri: Path
    new_uri: Path


class WorkspaceEdit(BaseModel):
    """Text edits grouped per document, in insertion order, plus file renames."""

    text_edits: dict[Path, list[TextEdit]] = Field(default_factory=dict)
    file_renames: list[FileRename] = Field(default_factory=list)

    def replace(self, uri: Path, range: Range, new_text: str) -> None:
        self.text_edits.setdefault(uri, []).append(TextEdit(range=range, new_text=new_text))

    def rename_file(self, old_uri: Path, new_uri: Path) -> None:
        self.file_renames.append(FileRename(old_uri=old_uri, new_uri=new_uri))

    @property
    def edit_count(self) -> int:
        return sum(len(edits) for edits in self.text_edits.values())


# ─────────────────────────────────────────────────────────────────────────────
# Diagnostics
# ─────────────────────────────────────────────────────────────────────────────


DiagnosticCode = Literal["link.no-such-file", "link.no-such-header", "link.no-such-reference"]


class Diagnostic(_Frozen):
    range: Range
    message: str
    severity: Literal["warning", "error"]
    code: DiagnosticCode
    link: str  # Link text the diagnostic was raised for, usable as an ignore pattern
