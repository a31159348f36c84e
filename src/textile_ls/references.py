"""Find-all-references across the documents of a workspace.

A query starts at a position in a document and returns every location
referring to the same thing:

- on a header line: the header and every link to its slug;
- on a reference name or a reference link: every use and the definition
  of that name in the same document;
- on an external link: every link to the same scheme, authority and path;
- on an internal link's fragment: the target header and every link to it;
- on an internal link's path: every link to the same file.

Each query checks its cancellation token after every ``await`` and returns
an empty list once cancelled, never a partial result.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path

from .concurrency import NOOP_TOKEN, CancellationToken
from .config import DEFAULT_EXTENSION
from .document import TextDocument
from .models import (
    HeaderReference,
    InternalHref,
    Link,
    LinkReference,
    Location,
    Position,
    Reference,
    TocEntry,
)
from .parser.links import LinkComputer
from .parser.slugify import slugify
from .parser.tokenizer import TextileTokenizer
from .toc import TableOfContentsProvider
from .workspace import Workspace
from .workspace_cache import WorkspaceInfoCache

log = logging.getLogger(__name__)


def looks_like_link_to_doc(href: InternalHref, target: Path, extension: str = DEFAULT_EXTENSION) -> bool:
    """True if ``href`` points at ``target``, directly or by omitting the extension."""
    if href.path == target:
        return True
    return href.path.suffix == "" and href.path.with_name(href.path.name + extension) == target


async def try_resolve_link_path(
    path: Path, workspace: Workspace, extension: str = DEFAULT_EXTENSION
) -> Path | None:
    """The existing file ``path`` refers to: itself, or itself plus the default extension."""
    if await workspace.path_exists(path):
        return path
    if path.suffix == "":
        with_extension = path.with_name(path.name + extension)
        if await workspace.path_exists(with_extension):
            return with_extension
    return None


def _header_reference(entry: TocEntry, is_trigger_location: bool) -> HeaderReference:
    return HeaderReference(
        is_trigger_location=is_trigger_location,
        is_definition=True,
        location=entry.header_location,
        header_text=entry.text,
        header_text_location=entry.header_text_location,
    )


def _is_same_link(a: Link, b: Link) -> bool:
    return a.source.resource == b.source.resource and a.source.href_range == b.source.href_range


class ReferencesProvider:
    """Computes references, keeping a cache of every document's links."""

    def __init__(
        self,
        tokenizer: TextileTokenizer,
        workspace: Workspace,
        toc_provider: TableOfContentsProvider,
    ):
        self._workspace = workspace
        self._toc_provider = toc_provider
        self._extension = workspace.extension
        self._link_computer = LinkComputer(tokenizer, workspace.root)
        self._link_cache: WorkspaceInfoCache[list[Link]] = WorkspaceInfoCache(
            workspace, self._compute_links
        )

    async def _compute_links(self, document: TextDocument) -> list[Link]:
        return self._link_computer.get_all_links(document)

    async def get_links(self, document: TextDocument) -> list[Link]:
        """Links of one document, from the shared cache."""
        return await self._link_cache.get_for_document(document)

    async def get_all_links(self) -> list[Link]:
        return [link for links in await self._link_cache.values() for link in links]

    def close(self) -> None:
        self._link_cache.close()

    # ── Queries ────────────────────────────────────────────────────────────

    async def get_references_at_position(
        self,
        document: TextDocument,
        position: Position,
        token: CancellationToken = NOOP_TOKEN,
    ) -> list[Reference]:
        log.debug("get_references_at_position: %s %s", document.uri, position)

        toc = await self._toc_provider.get_for_document(document)
        if token.is_cancellation_requested:
            return []

        header = toc.entry_at_line(position.line)
        if header is not None:
            return await self._get_references_to_header(document, header, token)
        return await self._get_references_to_link_at_position(document, position, token)

    async def get_references_to_file_in_workspace(
        self, resource: Path, token: CancellationToken = NOOP_TOKEN
    ) -> list[Reference]:
        log.debug("get_references_to_file_in_workspace: %s", resource)

        links = await self.get_all_links()
        if token.is_cancellation_requested:
            return []
        return list(self._find_links_to_file(resource, links, None))

    async def get_references_to_file_in_docs(
        self,
        resource: Path,
        documents: Iterable[TextDocument],
        token: CancellationToken = NOOP_TOKEN,
    ) -> list[Reference]:
        log.debug("get_references_to_file_in_docs: %s", resource)

        per_document = await self._link_cache.get_for_docs(documents)
        if token.is_cancellation_requested:
            return []
        links = [link for links in per_document for link in links]
        return list(self._find_links_to_file(resource, links, None))

    # ── Headers ────────────────────────────────────────────────────────────

    async def _get_references_to_header(
        self, document: TextDocument, header: TocEntry, token: CancellationToken
    ) -> list[Reference]:
        links = await self.get_all_links()
        if token.is_cancellation_requested:
            return []

        references: list[Reference] = [_header_reference(header, is_trigger_location=True)]
        for link in links:
            href = link.href
            if (
                href.kind == "internal"
                and href.fragment
                and looks_like_link_to_doc(href, document.uri, self._extension)
                and slugify(href.fragment) == header.slug
            ):
                references.append(
                    LinkReference(
                        is_trigger_location=False,
                        is_definition=False,
                        link=link,
                        location=Location(link.source.resource, link.source.href_range),
                    )
                )
        return references

    # ── Links ──────────────────────────────────────────────────────────────

    async def _get_references_to_link_at_position(
        self, document: TextDocument, position: Position, token: CancellationToken
    ) -> list[Reference]:
        doc_links = await self.get_links(document)
        if token.is_cancellation_requested:
            return []

        for link in doc_links:
            if link.kind == "definition" and link.ref.range.contains(position):
                return list(
                    self._get_references_to_link_reference(
                        doc_links, link.ref.text, Location(document.uri, link.ref.range)
                    )
                )
            if link.source.href_range.contains(position):
                return await self._get_references_to_link(link, position, token)
        return []

    async def _get_references_to_link(
        self, source_link: Link, trigger: Position, token: CancellationToken
    ) -> list[Reference]:
        all_links = await self.get_all_links()
        if token.is_cancellation_requested:
            return []

        href = source_link.href
        if href.kind == "reference":
            return list(
                self._get_references_to_link_reference(
                    all_links,
                    href.ref,
                    Location(source_link.source.resource, source_link.source.href_range),
                )
            )

        if href.kind == "external":
            return [
                LinkReference(
                    is_trigger_location=_is_same_link(source_link, link),
                    is_definition=False,
                    link=link,
                    location=Location(link.source.resource, link.source.href_range),
                )
                for link in all_links
                if link.href.kind == "external" and link.href.target_key == href.target_key
            ]

        resolved = await try_resolve_link_path(href.path, self._workspace, self._extension)
        if token.is_cancellation_requested:
            return []

        fragment_range = source_link.source.fragment_range
        if (
            resolved is not None
            and self._workspace.is_document_path(resolved)
            and href.fragment
            and fragment_range is not None
            and fragment_range.contains(trigger)
        ):
            return await self._get_references_to_fragment(
                source_link, href, resolved, all_links, token
            )

        # Triggered on the path: match the file, whatever the fragment
        return list(self._find_links_to_file(resolved or href.path, all_links, source_link))

    async def _get_references_to_fragment(
        self,
        source_link: Link,
        href: InternalHref,
        resolved: Path,
        all_links: list[Link],
        token: CancellationToken,
    ) -> list[Reference]:
        toc = await self._toc_provider.get(resolved)
        if token.is_cancellation_requested:
            return []

        references: list[Reference] = []
        entry = toc.lookup(href.fragment)
        if entry is not None:
            references.append(_header_reference(entry, is_trigger_location=False))

        slug = slugify(href.fragment)
        for link in all_links:
            if link.href.kind != "internal" or not looks_like_link_to_doc(
                link.href, resolved, self._extension
            ):
                continue
            if slugify(link.href.fragment) == slug:
                references.append(
                    LinkReference(
                        is_trigger_location=_is_same_link(source_link, link),
                        is_definition=False,
                        link=link,
                        location=Location(link.source.resource, link.source.href_range),
                    )
                )
        return references

    def _find_links_to_file(
        self, resource: Path, links: Iterable[Link], source_link: Link | None
    ) -> Iterator[LinkReference]:
        for link in links:
            if link.href.kind != "internal" or not looks_like_link_to_doc(
                link.href, resource, self._extension
            ):
                continue

            # A '#fragment' link only implicitly references its own file
            if link.source.href_text.startswith("#") and link.source.resource == resource:
                continue

            yield LinkReference(
                is_trigger_location=source_link is not None and _is_same_link(source_link, link),
                is_definition=False,
                link=link,
                location=Location(link.source.resource, link.source.path_range),
            )

    @staticmethod
    def _get_references_to_link_reference(
        links: Iterable[Link], ref_to_find: str, origin: Location
    ) -> Iterator[LinkReference]:
        for link in links:
            if link.kind == "definition":
                ref = link.ref.text
            elif link.href.kind == "reference":
                ref = link.href.ref
            else:
                continue

            if ref != ref_to_find or link.source.resource != origin.uri:
                continue

            if link.kind == "definition":
                is_trigger_location = origin.range == link.ref.range
            else:
                is_trigger_location = origin.range == link.source.href_range

            yield LinkReference(
                is_trigger_location=is_trigger_location,
                is_definition=link.kind == "definition",
                link=link,
                location=Location(origin.uri, link.source.path_range),
            )
