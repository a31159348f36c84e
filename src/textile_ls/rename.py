"""Rename headers, reference names, external links and linked files.

Renaming reuses the references of the position being renamed and picks one
of four strategies from the trigger reference:

- reference name: every ``[name]`` definition and shorthand use;
- external link: the href of every link to the same URL;
- header or fragment: the header text, and the slug in every fragment;
- file path: the file itself plus every link to it, keeping each link's
  root-relative or document-relative style.
"""

from __future__ import annotations

import logging
import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

from .concurrency import NOOP_TOKEN, CancellationToken
from .document import TextDocument
from .models import (
    HeaderReference,
    InternalHref,
    Position,
    Reference,
    RenamePreparation,
    WorkspaceEdit,
)
from .parser.slugify import slugify
from .references import ReferencesProvider, try_resolve_link_path
from .workspace import Workspace

log = logging.getLogger(__name__)

RENAME_NOT_SUPPORTED = "Rename not supported at location"

# Characters left alone by JavaScript's encodeURI
_URI_SAFE = ";,/?:@&=+$-_.!~*'()#"


class NotRenamableError(Exception):
    """Raised when rename is requested where nothing can be renamed."""

    def __init__(self, message: str = RENAME_NOT_SUPPORTED):
        self.message = message
        super().__init__(message)


@dataclass(frozen=True)
class _ReferencesAtPosition:
    uri: Path
    version: int
    position: Position
    references: list[Reference]
    trigger: Reference


def encode_link_path(path: str) -> str:
    """Percent-encode a link path, with ``/`` separators."""
    return quote(path.replace("\\", "/"), safe=_URI_SAFE)


def resolve_document_link(link: str, document_uri: Path, root: Path) -> Path:
    """Absolute path of ``link`` typed in ``document_uri``; ``/`` is the workspace root."""
    if link.startswith("/"):
        return Path(os.path.normpath(root / link.lstrip("/")))
    return Path(os.path.normpath(document_uri.parent / link))


class RenameProvider:
    """Prepares renames and computes their workspace edits."""

    def __init__(self, workspace: Workspace, references_provider: ReferencesProvider):
        self._workspace = workspace
        self._references = references_provider
        self._cached: _ReferencesAtPosition | None = None

    async def prepare_rename(
        self,
        document: TextDocument,
        position: Position,
        token: CancellationToken = NOOP_TOKEN,
    ) -> RenamePreparation | None:
        """Range to rename and its current text.

        Returns:
            The preparation, or None if cancelled.

        Raises:
            NotRenamableError: If nothing at ``position`` can be renamed.
        """
        info = await self._get_references(document, position, token)
        if token.is_cancellation_requested:
            return None
        if info is None or not info.references:
            raise NotRenamableError()

        trigger = info.trigger
        if trigger.kind == "header":
            return RenamePreparation(
                range=trigger.header_text_location.range, placeholder=trigger.header_text
            )

        link = trigger.link
        if link.kind == "definition" and link.ref.range.contains(position):
            return RenamePreparation(range=link.ref.range, placeholder=link.ref.text)

        if link.href.kind == "external":
            return RenamePreparation(
                range=link.source.href_range,
                placeholder=document.get_text(link.source.href_range),
            )

        fragment_range = link.source.fragment_range
        if fragment_range is not None and fragment_range.contains(position):
            declaration = _find_header_declaration(info.references)
            if declaration is not None:
                return RenamePreparation(range=fragment_range, placeholder=declaration.header_text)
            return RenamePreparation(range=fragment_range, placeholder=document.get_text(fragment_range))

        path_range = link.source.path_range
        return RenamePreparation(range=path_range, placeholder=unquote(document.get_text(path_range)))

    async def provide_rename_edits(
        self,
        document: TextDocument,
        position: Position,
        new_name: str,
        token: CancellationToken = NOOP_TOKEN,
    ) -> WorkspaceEdit | None:
        """Edits renaming what is at ``position`` to ``new_name``.

        Returns:
            The edit, possibly empty, or None when cancelled or nothing is renamable.
        """
        info = await self._get_references(document, position, token)
        if token.is_cancellation_requested or info is None or not info.references:
            return None

        trigger = info.trigger
        if trigger.kind == "header":
            return self._rename_fragment(info.references, new_name)

        link = trigger.link
        in_fragment = link.source.fragment_range is not None and link.source.fragment_range.contains(
            position
        )
        if (link.kind == "definition" and link.ref.range.contains(position)) or (
            link.href.kind == "reference"
        ):
            return self._rename_reference_links(info.references, new_name)
        if link.href.kind == "external":
            return self._rename_external_link(info.references, new_name)
        if in_fragment:
            return self._rename_fragment(info.references, new_name)
        if link.href.kind == "internal":
            edit = await self._rename_file_path(
                link.source.resource, link.href, info.references, new_name
            )
            if token.is_cancellation_requested:
                return None
            return edit
        return None

    # ── Strategies ─────────────────────────────────────────────────────────

    def _rename_reference_links(self, references: list[Reference], new_name: str) -> WorkspaceEdit:
        edit = WorkspaceEdit()
        for reference in references:
            if reference.kind != "link":
                continue
            link = reference.link
            if link.kind == "definition":
                edit.replace(link.source.resource, link.ref.range, new_name)
            else:
                edit.replace(
                    link.source.resource,
                    link.source.fragment_range or reference.location.range,
                    new_name,
                )
        return edit

    def _rename_external_link(self, references: list[Reference], new_name: str) -> WorkspaceEdit:
        edit = WorkspaceEdit()
        for reference in references:
            if reference.kind == "link":
                edit.replace(reference.link.source.resource, reference.location.range, new_name)
        return edit

    def _rename_fragment(self, references: list[Reference], new_name: str) -> WorkspaceEdit:
        slug = slugify(new_name)
        edit = WorkspaceEdit()
        for reference in references:
            if reference.kind == "header":
                edit.replace(reference.location.uri, reference.header_text_location.range, new_name)
                continue

            source = reference.link.source
            if source.fragment_range is None or reference.link.href.kind == "external":
                edit.replace(source.resource, source.fragment_range or reference.location.range, new_name)
            else:
                edit.replace(source.resource, source.fragment_range, slug)
        return edit

    async def _rename_file_path(
        self,
        trigger_document: Path,
        trigger_href: InternalHref,
        references: list[Reference],
        new_name: str,
    ) -> WorkspaceEdit:
        edit = WorkspaceEdit()
        root = self._workspace.root

        target = (
            await try_resolve_link_path(trigger_href.path, self._workspace, self._workspace.extension)
            or trigger_href.path
        )

        raw_new_path = resolve_document_link(new_name, trigger_document, root)
        new_path = raw_new_path
        # Keep the extension the old target had if the new name omits one
        if not raw_new_path.suffix and target.suffix:
            new_path = raw_new_path.with_name(raw_new_path.name + self._workspace.extension)

        if await self._workspace.path_exists(target):
            edit.rename_file(target, new_path)

        for reference in references:
            if reference.kind != "link":
                continue
            source = reference.link.source
            if source.href_text.startswith("/"):
                replacement = "/" + posixpath.relpath(raw_new_path.as_posix(), root.as_posix())
            else:
                replacement = posixpath.relpath(
                    raw_new_path.as_posix(), source.resource.parent.as_posix()
                )
                if new_name.startswith("./") and not replacement.startswith("../"):
                    replacement = "./" + replacement
            edit.replace(source.resource, source.path_range, encode_link_path(replacement))
        return edit

    # ── References cache ───────────────────────────────────────────────────

    async def _get_references(
        self, document: TextDocument, position: Position, token: CancellationToken
    ) -> _ReferencesAtPosition | None:
        cached = self._cached
        if (
            cached is not None
            and cached.uri == document.uri
            and cached.version == document.version
            and cached.position == position
        ):
            return cached

        references = await self._references.get_references_at_position(document, position, token)
        trigger = next((ref for ref in references if ref.is_trigger_location), None)
        if trigger is None:
            return None

        self._cached = _ReferencesAtPosition(
            uri=document.uri,
            version=document.version,
            position=position,
            references=references,
            trigger=trigger,
        )
        return self._cached


def _find_header_declaration(references: list[Reference]) -> HeaderReference | None:
    for reference in references:
        if reference.kind == "header" and reference.is_definition:
            return reference
    return None
