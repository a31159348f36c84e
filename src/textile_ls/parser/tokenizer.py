"""Textile tokenizer.

Turns a document into a flat, position-annotated token tree:

- block tokens (headers, paragraphs, code/pre/notextile blocks, lists,
  tables...) carrying the source lines they span;
- link-shaped tokens (``"text":href``, ``["text":href]``, ``!src(alt)!``,
  ``!src!:href`` and ``[name]href`` definitions) carrying character
  offsets of the whole construct and of its href.

Link-shaped tokens inside code, pre and notextile blocks and inside
``@inline code@`` spans are never emitted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Literal

from ..document import TextDocument

log = logging.getLogger(__name__)


BlockKind = Literal[
    "header",
    "paragraph",
    "blockquote",
    "code",
    "pre",
    "notextile",
    "footnote",
    "list",
    "table",
]

LinkTokenKind = Literal["link", "image", "definition"]

# Blocks whose content is never scanned for links
NO_LINK_BLOCKS: frozenset[str] = frozenset({"code", "pre", "notextile"})

_BLOCK_KINDS: dict[str, BlockKind] = {
    "bq": "blockquote",
    "bc": "code",
    "pre": "pre",
    "notextile": "notextile",
    "p": "paragraph",
}

# h2(#id){color:red}[en]<. Title
_SIGNATURE = re.compile(
    r"^(h[1-6]|bq|bc|pre|notextile|p|fn\d+)"
    r"((?:\([^)\n]*\)|\{[^}\n]*\}|\[[^\]\n]*\]|<>|<|>|=)*)"
    r"(\.\.?)(?:[ \t]+|$)"
)
_LIST_ITEM = re.compile(r"^[*#]+[ \t]")
_TABLE_ROW = re.compile(r"^(?:\||table[^.\n]*\.[ \t]*$)")
_HTML_PRE_OPEN = re.compile(r"^<pre[\s>]", re.IGNORECASE)
_HTML_PRE_CLOSE = re.compile(r"</pre>", re.IGNORECASE)
_HTML_NOTEXTILE_OPEN = re.compile(r"^<notextile>", re.IGNORECASE)
_HTML_NOTEXTILE_CLOSE = re.compile(r"</notextile>", re.IGNORECASE)

# "text":href   or   ["text":href]
_LINK = re.compile(
    r'("(?!\s)((?:[^"]|"(?![\s:])[^\n"]+"(?!:))+)":)'
    r"((?:[^\s()]|\([^\s()]+\)|[()])+?)"
    r"(?=[!-.:-@\[\\\]-`{-~]+(?:\Z|\s)|\Z|\s)"
    r'|(\["([^\n]+?)":)((?:\[[a-z0-9]*\]|[^\]])+)\]'
)

# !(class)src (alt)!:href
_IMAGE = re.compile(
    r"(!(?!\s)((?:\([^)]+\)|\{[^}]+\}|\[[^\[\]]+\]|(?:<>|<|>|=)|[()]+)*(?:\.[^\n\S]|\.(?:[^./]))?)"
    r"([^!\s]+?) ?(?:\(((?:[^()]|\([^()]+\))+)\))?!)"
    r"(?::([^\s]+?(?=[!-.:-@\[\\\]-`{-~](?:\Z|\s)|\s|\Z)))?"
)

# [name]http://example.com   at the start of a line
_DEFINITION = re.compile(
    r"^(\[([^\]\n]+)\])((?:https?://|\.{0,2}/|#)\S+)(?:[^\S\n]*(?=\n)|$)",
    re.MULTILINE,
)

# @code@ spans, possibly over several lines
_INLINE_CODE = re.compile(
    r"(?:^|[^@])(@+)(?:.+?|.*?(?:(?:\r?\n).+?)*?)(?:\r?\n)?\1(?:$|[^@])",
    re.MULTILINE,
)


@dataclass(frozen=True)
class BlockToken:
    """A block of consecutive source lines."""

    kind: BlockKind
    start_line: int
    end_line: int  # Inclusive
    level: int = 0  # 1-6 for headers
    signature_length: int = 0  # Length of e.g. "h2(#id). " including trailing spaces


@dataclass(frozen=True)
class LinkToken:
    """A link-shaped inline construct, located by character offsets."""

    kind: LinkTokenKind
    start: int
    end: int
    href: str
    href_offset: int
    ref: str = ""  # Definition name, definitions only
    ref_offset: int = 0


@dataclass
class TokenTree:
    blocks: list[BlockToken] = field(default_factory=list)
    links: list[LinkToken] = field(default_factory=list)

    def headers(self) -> list[BlockToken]:
        return [block for block in self.blocks if block.kind == "header"]


class _NoLinkRanges:
    """Lines and inline spans where links are not recognized."""

    def __init__(self, document: TextDocument, blocks: list[BlockToken]):
        self._document = document
        self._lines: set[int] = set()
        for block in blocks:
            if block.kind in NO_LINK_BLOCKS:
                self._lines.update(range(block.start_line, block.end_line + 1))
        self._spans: list[tuple[int, int]] = [
            (match.start(), match.end()) for match in _INLINE_CODE.finditer(document.text)
        ]

    def contains(self, offset: int) -> bool:
        if self._document.position_at(offset).line in self._lines:
            return True
        return any(start <= offset <= end for start, end in self._spans)


class TextileTokenizer:
    """Tokenizes documents, caching the tree of the last document seen."""

    def __init__(self) -> None:
        self._cache_key: tuple | None = None
        self._cached: TokenTree | None = None

    def tokenize(self, document: TextDocument) -> TokenTree:
        key = (document.uri, document.version, document.text)
        if self._cached is not None and self._cache_key == key:
            return self._cached

        lines = document.lines()
        blocks = list(_tokenize_blocks(lines))
        tree = TokenTree(blocks=blocks, links=_tokenize_links(document, blocks))

        self._cache_key = key
        self._cached = tree
        log.debug("Tokenized %s: %d blocks, %d links", document.uri, len(blocks), len(tree.links))
        return tree


# ─────────────────────────────────────────────────────────────────────────────
# Blocks
# ─────────────────────────────────────────────────────────────────────────────


def _is_blank(line: str) -> bool:
    return not line.strip()


def _end_of_paragraph(lines: list[str], start: int) -> int:
    end = start
    while end + 1 < len(lines) and not _is_blank(lines[end + 1]):
        end += 1
    return end


def _end_of_extended_block(lines: list[str], start: int) -> int:
    """Extended blocks (``bc..``) run until a signature that follows a blank line."""
    end = start
    index = start + 1
    while index < len(lines):
        line = lines[index]
        if not _is_blank(line):
            if _is_blank(lines[index - 1]) and _SIGNATURE.match(line):
                break
            end = index
        index += 1
    return end


def _end_of_html_block(lines: list[str], start: int, closing: re.Pattern[str]) -> int:
    for index in range(start, len(lines)):
        if closing.search(lines[index]):
            return index
    return len(lines) - 1


def _tokenize_blocks(lines: list[str]):
    index = 0
    while index < len(lines):
        line = lines[index]
        if _is_blank(line):
            index += 1
            continue

        signature = _SIGNATURE.match(line)
        if signature:
            name = signature.group(1)
            extended = signature.group(3) == ".."
            end = (
                _end_of_extended_block(lines, index)
                if extended
                else _end_of_paragraph(lines, index)
            )
            if name.startswith("h"):
                yield BlockToken(
                    kind="header",
                    start_line=index,
                    end_line=end,
                    level=int(name[1]),
                    signature_length=signature.end(),
                )
            elif name.startswith("fn"):
                yield BlockToken(kind="footnote", start_line=index, end_line=end)
            else:
                yield BlockToken(kind=_BLOCK_KINDS[name], start_line=index, end_line=end)
        elif _HTML_PRE_OPEN.match(line):
            end = _end_of_html_block(lines, index, _HTML_PRE_CLOSE)
            yield BlockToken(kind="pre", start_line=index, end_line=end)
        elif _HTML_NOTEXTILE_OPEN.match(line):
            end = _end_of_html_block(lines, index, _HTML_NOTEXTILE_CLOSE)
            yield BlockToken(kind="notextile", start_line=index, end_line=end)
        else:
            end = _end_of_paragraph(lines, index)
            if _LIST_ITEM.match(line):
                kind: BlockKind = "list"
            elif _TABLE_ROW.match(line):
                kind = "table"
            else:
                kind = "paragraph"
            yield BlockToken(kind=kind, start_line=index, end_line=end)
        index = end + 1


# ─────────────────────────────────────────────────────────────────────────────
# Links
# ─────────────────────────────────────────────────────────────────────────────


def _tokenize_links(document: TextDocument, blocks: list[BlockToken]) -> list[LinkToken]:
    text = document.text
    no_links = _NoLinkRanges(document, blocks)
    tokens: list[LinkToken] = []

    def add(token: LinkToken) -> None:
        if not no_links.contains(token.href_offset):
            tokens.append(token)

    for match in _LINK.finditer(text):
        if match.group(1):
            add(
                LinkToken(
                    kind="link",
                    start=match.start(),
                    end=match.end(),
                    href=match.group(3),
                    href_offset=match.start() + len(match.group(1)),
                )
            )
        elif match.group(6):
            add(
                LinkToken(
                    kind="link",
                    start=match.start(),
                    end=match.end(),
                    href=match.group(6),
                    href_offset=match.start() + len(match.group(4)),
                )
            )

    for match in _IMAGE.finditer(text):
        add(
            LinkToken(
                kind="image",
                start=match.start(),
                end=match.end(),
                href=match.group(3),
                href_offset=match.start(3),
            )
        )
        if match.group(5):
            add(
                LinkToken(
                    kind="link",
                    start=match.start(),
                    end=match.end(),
                    href=match.group(5),
                    href_offset=match.start(5),
                )
            )

    for match in _DEFINITION.finditer(text):
        if no_links.contains(match.start()):
            continue
        tokens.append(
            LinkToken(
                kind="definition",
                start=match.start(),
                end=match.end(),
                href=match.group(3).strip(),
                href_offset=match.start(3),
                ref=match.group(2),
                ref_offset=match.start(2),
            )
        )

    return tokens
