"""Link extraction and classification.

Every link-shaped token of a document becomes a :class:`~textile_ls.models.InlineLink`
or :class:`~textile_ls.models.LinkDefinition` whose href is resolved to one of:

- ``external``: a URI with a scheme (``https://...``, ``mailto:...``);
- ``internal``: a workspace path, absolute or relative to the document,
  with an optional ``#fragment`` (a bare ``#fragment`` targets the document
  itself);
- ``reference``: a bare word naming a ``[name]href`` definition of the same
  document.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path
from typing import assert_never
from urllib.parse import unquote

from ..document import TextDocument
from ..models import (
    ExternalHref,
    InlineLink,
    InternalHref,
    Link,
    LinkDefinition,
    LinkRef,
    LinkSource,
    Range,
    ReferenceHref,
)
from .tokenizer import LinkToken, TextileTokenizer

log = logging.getLogger(__name__)

KNOWN_EXTERNAL_SCHEMES = ("http", "https", "mailto", "ftp", "ftps", "file", "data", "tel")

_KNOWN_SCHEME_PREFIX = tuple(f"{scheme}:" for scheme in KNOWN_EXTERNAL_SCHEMES)

# Two or more letters so Windows drive letters are not taken for schemes
_LOOKS_LIKE_URI = re.compile(r"^[a-z\-][a-z\-]+:", re.IGNORECASE)

# A reference name is a bare word: no path separators, no extension dots
_BARE_WORD = re.compile(r"^[^/\\.#:\s]+$")


def resolve_link(link: str, document_uri: Path, root: Path) -> ExternalHref | InternalHref | None:
    """Resolve the href text of a link written in ``document_uri``.

    Args:
        link: Raw href text.
        document_uri: Path of the document containing the link.
        root: Workspace root, used for links starting with ``/``.

    Returns:
        The resolved href, or None if the text cannot be a link target.
    """
    if not link:
        return None

    if link.lower().startswith(_KNOWN_SCHEME_PREFIX) or _LOOKS_LIKE_URI.match(link):
        return ExternalHref(uri=link)

    path_text, _, fragment = link.partition("#")
    path_text = path_text.partition("?")[0]
    path = unquote(path_text)

    if not path:
        target = document_uri
    elif path.startswith("/"):
        target = root / path.lstrip("/")
    else:
        target = document_uri.parent / path

    return InternalHref(path=Path(os.path.normpath(target)), fragment=unquote(fragment))


class LinkDefinitionSet:
    """Definitions of one document, by exact name. The first definition of a name wins."""

    def __init__(self, links: Iterable[Link]):
        self._map: dict[str, LinkDefinition] = {}
        for link in links:
            if link.kind == "definition" and link.ref.text not in self._map:
                self._map[link.ref.text] = link

    def __contains__(self, ref: str) -> bool:
        return ref in self._map

    def __len__(self) -> int:
        return len(self._map)

    def lookup(self, ref: str) -> LinkDefinition | None:
        return self._map.get(ref)


def _link_source(document: TextDocument, token: LinkToken, href_text: str) -> LinkSource:
    href_start = document.position_at(token.href_offset)
    href_end = document.position_at(token.href_offset + len(href_text))
    hash_index = href_text.find("#")
    fragment_range = None
    path_text = href_text
    if hash_index >= 0:
        fragment_range = Range(document.position_at(token.href_offset + hash_index + 1), href_end)
        path_text = href_text[:hash_index]
    return LinkSource(
        resource=document.uri,
        range=Range(document.position_at(token.start), document.position_at(token.end)),
        href_text=href_text,
        path_text=path_text,
        href_range=Range(href_start, href_end),
        fragment_range=fragment_range,
    )


class LinkComputer:
    """Stateless extractor of every link in a document."""

    def __init__(self, tokenizer: TextileTokenizer, root: Path):
        self._tokenizer = tokenizer
        self._root = root

    def get_all_links(self, document: TextDocument) -> list[Link]:
        links: list[Link] = []
        for token in self._tokenizer.tokenize(document).links:
            link = self._extract(document, token)
            if link is not None:
                links.append(link)

        definitions = LinkDefinitionSet(links)
        return [self._to_reference_link(link, definitions) for link in links]

    def _extract(self, document: TextDocument, token: LinkToken) -> Link | None:
        href = resolve_link(token.href, document.uri, self._root)
        if href is None:
            log.debug("Skipping unresolvable link %r in %s", token.href, document.uri)
            return None

        source = _link_source(document, token, token.href)
        if token.kind == "link" or token.kind == "image":
            return InlineLink(source=source, href=href)
        elif token.kind == "definition":
            ref_start = document.position_at(token.ref_offset)
            ref = LinkRef(
                text=token.ref,
                range=Range(ref_start, ref_start.translate(character_delta=len(token.ref))),
            )
            return LinkDefinition(source=source, ref=ref, href=href)
        else:
            assert_never(token.kind)

    @staticmethod
    def _to_reference_link(link: Link, definitions: LinkDefinitionSet) -> Link:
        if link.kind != "link" or link.href.kind != "internal":
            return link
        href_text = link.source.href_text
        if _BARE_WORD.match(href_text) and href_text in definitions:
            return InlineLink(source=link.source, href=ReferenceHref(ref=href_text))
        return link
