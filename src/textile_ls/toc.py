"""Table of contents: the headers of a document, their slugs and sections."""

from __future__ import annotations

import logging
from pathlib import Path

from .document import TextDocument
from .models import Location, Position, Range, TocEntry, text_range
from .parser.slugify import slugify
from .parser.tokenizer import TextileTokenizer
from .workspace import Workspace
from .workspace_cache import WorkspaceInfoCache

log = logging.getLogger(__name__)


class TableOfContents:
    """Ordered headers of one document."""

    def __init__(self, entries: list[TocEntry]):
        self.entries = entries

    def __len__(self) -> int:
        return len(self.entries)

    @classmethod
    def create(cls, tokenizer: TextileTokenizer, document: TextDocument) -> TableOfContents:
        return cls(build_toc(tokenizer, document))

    def lookup(self, fragment: str) -> TocEntry | None:
        """First entry whose slug matches ``fragment`` once slugified."""
        slug = slugify(fragment)
        for entry in self.entries:
            if entry.slug == slug:
                return entry
        return None

    def entry_at_line(self, line: int) -> TocEntry | None:
        for entry in self.entries:
            if entry.line == line:
                return entry
        return None

    def slugs(self) -> frozenset[str]:
        return frozenset(entry.slug for entry in self.entries)


EMPTY_TOC = TableOfContents([])


def build_toc(tokenizer: TextileTokenizer, document: TextDocument) -> list[TocEntry]:
    """Build the entries of a document's table of contents.

    Duplicate slugs get a counter suffix in document order: three ``a``
    headers give ``a``, ``a-1``, ``a-2``. Only the base slug is counted, so
    a header literally named ``a-1`` may still collide with a suffixed one.
    """
    headers = []
    slug_counts: dict[str, int] = {}

    for token in tokenizer.tokenize(document).headers():
        line_number = token.start_line
        line = document.line_at(line_number)
        text = line[token.signature_length :].strip()

        slug = slugify(text)
        if slug in slug_counts:
            slug_counts[slug] += 1
            slug = slugify(f"{slug}-{slug_counts[slug]}")
        else:
            slug_counts[slug] = 0

        headers.append((token.level, line_number, slug, text, len(line), token.signature_length))

    entries = []
    for index, (level, line_number, slug, text, line_length, text_start) in enumerate(headers):
        end_line = document.line_count - 1
        for next_level, next_line, *_ in headers[index + 1 :]:
            if next_level <= level:
                end_line = next_line - 1
                break

        section = Range(
            Position(line_number, 0),
            Position(end_line, len(document.line_at(end_line))),
        )
        entries.append(
            TocEntry(
                slug=slug,
                text=text,
                level=level,
                line=line_number,
                section_location=Location(document.uri, section),
                header_location=Location(
                    document.uri, text_range(line_number, 0, line_number, line_length)
                ),
                header_text_location=Location(
                    document.uri,
                    text_range(line_number, min(text_start, line_length), line_number, line_length),
                ),
            )
        )
    return entries


class TableOfContentsProvider:
    """Tables of contents for workspace documents, cached per document version."""

    def __init__(self, tokenizer: TextileTokenizer, workspace: Workspace):
        self._tokenizer = tokenizer
        self._cache: WorkspaceInfoCache[TableOfContents] = WorkspaceInfoCache(
            workspace, self._compute
        )

    async def _compute(self, document: TextDocument) -> TableOfContents:
        return TableOfContents.create(self._tokenizer, document)

    async def get(self, uri: Path) -> TableOfContents:
        """Table of contents of ``uri``; empty if the document does not exist."""
        toc = await self._cache.get(uri)
        return toc if toc is not None else EMPTY_TOC

    async def get_for_document(self, document: TextDocument) -> TableOfContents:
        return await self._cache.get_for_document(document)

    def close(self) -> None:
        self._cache.close()
