"""Announce documents whose set of header slugs changed."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from .concurrency import BackgroundTasks, Delayer
from .config import DIAGNOSTIC_DELAY_SECONDS
from .document import TextDocument
from .events import Event, Subscription
from .toc import TableOfContentsProvider
from .workspace import Workspace

log = logging.getLogger(__name__)


class TableOfContentsWatcher:
    """Fires ``on_toc_changed`` when a document's slugs differ from the last ones seen.

    Slugs are compared as sets, so reordering headers or editing header text
    without changing its slug does not fire. Changes are debounced.
    """

    def __init__(
        self,
        workspace: Workspace,
        toc_provider: TableOfContentsProvider,
        delay: float = DIAGNOSTIC_DELAY_SECONDS,
    ):
        self._toc_provider = toc_provider
        self._slugs: dict[Path, frozenset[str]] = {}
        self._pending: dict[Path, None] = {}
        self._delayer = Delayer(delay)
        self._tasks = BackgroundTasks("toc watcher")
        self.on_toc_changed: Event[Path] = Event()
        self._subscriptions: list[Subscription] = [
            workspace.on_did_create_document.subscribe(self._on_did_create_document),
            workspace.on_did_change_document.subscribe(self._on_did_change_document),
            workspace.on_did_delete_document.subscribe(self._on_did_delete_document),
        ]

    async def prime(self, documents: Iterable[TextDocument]) -> None:
        """Record the current slugs of ``documents`` without firing."""
        for document in documents:
            toc = await self._toc_provider.get_for_document(document)
            self._slugs[document.uri] = toc.slugs()

    @property
    def is_triggered(self) -> bool:
        return self._delayer.is_triggered

    def pending_tasks(self) -> list:
        tasks = self._tasks.pending()
        if self._delayer.task is not None and not self._delayer.task.done():
            tasks.append(self._delayer.task)
        return tasks

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        self._delayer.cancel()
        self._tasks.cancel_all()

    def _on_did_create_document(self, document: TextDocument) -> None:
        self._tasks.spawn(self._update(document.uri))

    def _on_did_change_document(self, document: TextDocument) -> None:
        self._pending[document.uri] = None
        self._delayer.trigger(self._flush)

    def _on_did_delete_document(self, uri: Path) -> None:
        self._pending.pop(uri, None)
        self._slugs.pop(uri, None)

    async def _flush(self) -> None:
        pending = list(self._pending)
        self._pending.clear()
        for uri in pending:
            await self._update(uri)

    async def _update(self, uri: Path) -> None:
        toc = await self._toc_provider.get(uri)
        slugs = toc.slugs()
        previous = self._slugs.get(uri)
        self._slugs[uri] = slugs
        if previous is None or previous != slugs:
            log.debug("Table of contents changed: %s", uri)
            self.on_toc_changed.fire(uri)
