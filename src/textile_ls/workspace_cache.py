"""Per-document memoizing cache with version-aware invalidation.

Every derived, per-document value (tables of contents, link lists) goes
through :class:`WorkspaceInfoCache`: a value is computed at most once per
``(uri, version)``; concurrent requests for the same version share one
in-flight computation; a newer version replaces the entry and a deleted
document drops it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Generic, TypeVar

from .document import TextDocument
from .events import Subscription
from .workspace import Workspace

log = logging.getLogger(__name__)

T = TypeVar("T")


class _CacheEntry(Generic[T]):
    """``version`` plus either a pending future or its ready value."""

    __slots__ = ("version", "future")

    def __init__(self, version: int, future: asyncio.Future[T]):
        self.version = version
        self.future = future


class WorkspaceInfoCache(Generic[T]):
    """Cache of ``compute(document)`` results for the documents of a workspace."""

    def __init__(self, workspace: Workspace, compute: Callable[[TextDocument], Awaitable[T]]):
        self._workspace = workspace
        self._compute = compute
        self._entries: dict[Path, _CacheEntry[T]] = {}
        self._subscriptions: list[Subscription] = [
            workspace.on_did_change_document.subscribe(self._on_did_change_document),
            workspace.on_did_create_document.subscribe(self._on_did_change_document),
            workspace.on_did_delete_document.subscribe(self._on_did_delete_document),
        ]

    async def get(self, uri: Path) -> T | None:
        """Value for the current snapshot of ``uri``, or None if there is no such document."""
        document = await self._workspace.get_or_load_document(uri)
        if document is None:
            return None
        return await self.get_for_document(document)

    async def get_for_document(self, document: TextDocument) -> T:
        entry = self._entries.get(document.uri)
        if entry is None or entry.version != document.version:
            entry = self._start(document)
        return await asyncio.shield(entry.future)

    async def get_for_docs(self, documents: Iterable[TextDocument]) -> list[T]:
        return list(await asyncio.gather(*(self.get_for_document(doc) for doc in documents)))

    async def values(self) -> list[T]:
        """Values for every current document of the workspace, in workspace order.

        The workspace is listed on every call so documents created or edited
        since the last call are included.
        """
        return await self.get_for_docs(await self._workspace.get_all_documents())

    def entries(self) -> dict[Path, int]:
        """Cached uri -> version, for inspection."""
        return {uri: entry.version for uri, entry in self._entries.items()}

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        self._entries.clear()

    def _start(self, document: TextDocument) -> _CacheEntry[T]:
        log.debug("Computing %s for %s@%d", self._compute_name, document.uri, document.version)
        future = asyncio.ensure_future(self._compute(document))
        entry = _CacheEntry(document.version, future)
        self._entries[document.uri] = entry

        def forget_failure(done: asyncio.Future[T]) -> None:
            # A failed or cancelled computation must not stick
            if done.cancelled() or done.exception() is not None:
                if self._entries.get(document.uri) is entry:
                    del self._entries[document.uri]

        future.add_done_callback(forget_failure)
        return entry

    @property
    def _compute_name(self) -> str:
        return getattr(self._compute, "__qualname__", "value")

    def _on_did_change_document(self, document: TextDocument) -> None:
        entry = self._entries.get(document.uri)
        if entry is not None and entry.version != document.version:
            del self._entries[document.uri]

    def _on_did_delete_document(self, uri: Path) -> None:
        self._entries.pop(uri, None)
