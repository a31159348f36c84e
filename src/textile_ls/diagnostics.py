"""Broken-link diagnostics.

:class:`DiagnosticComputer` validates one document:

- links to a header of the same document (``"text":#header``);
- links to files, and to headers in other files;
- reference links whose name has no definition.

:class:`DiagnosticManager` keeps the diagnostics of open documents up to
date. Edits are debounced, a newer request for a document cancels the one
in flight, and documents are revalidated when a file they link to appears
or disappears, when a linked document is deleted, or when the set of
headers of a linked document changes.
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path

from .concurrency import NOOP_TOKEN, BackgroundTasks, CancellationToken, Delayer, InflightTasks
from .config import (
    DIAGNOSTIC_DELAY_SECONDS,
    FILE_LINK_CONCURRENCY,
    DiagnosticConfiguration,
    DiagnosticLevel,
    DiagnosticOptions,
)
from .document import TextDocument
from .events import Event, Subscription
from .models import Diagnostic, InternalHref, Link, LinkSource, Range
from .parser.links import LinkDefinitionSet
from .references import ReferencesProvider
from .toc import TableOfContentsProvider
from .toc_watcher import TableOfContentsWatcher
from .workspace import FileChange, Workspace

log = logging.getLogger(__name__)


def matches_glob(text: str, pattern: str) -> bool:
    """Check if link text matches an ignore pattern.

    Supports:
    - ``*`` and ``?`` within a path segment: '/images/*.png'
    - ``**`` across segments: '/drafts/**', '**/*.pdf'

    Args:
        text: Link text as written (path or full href).
        pattern: Glob pattern from the ignore list.

    Returns:
        True if the whole text matches the pattern.
    """
    if "**" not in pattern:
        return fnmatchcase(text, pattern)

    regex = []
    index = 0
    while index < len(pattern):
        if pattern.startswith("**/", index):
            regex.append("(?:.*/)?")
            index += 3
        elif pattern.startswith("**", index):
            regex.append(".*")
            index += 2
        elif pattern[index] == "*":
            regex.append("[^/]*")
            index += 1
        elif pattern[index] == "?":
            regex.append("[^/]")
            index += 1
        else:
            regex.append(re.escape(pattern[index]))
            index += 1
    return re.fullmatch("".join(regex), text, re.DOTALL) is not None


def _severity(level: DiagnosticLevel):
    return None if level == "ignore" else level


def _is_ignored(options: DiagnosticOptions, text: str) -> bool:
    return any(matches_glob(text, pattern) for pattern in options.ignore_links)


def _hash_to_end(source: LinkSource) -> Range:
    """From the '#' of the href through the end of its fragment, or the whole href without one."""
    if source.fragment_range is None:
        return source.href_range
    return source.fragment_range.with_start(source.fragment_range.start.translate(character_delta=-1))


@dataclass
class DiagnosticsResult:
    diagnostics: list[Diagnostic] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)
    options: DiagnosticOptions | None = None


# ─────────────────────────────────────────────────────────────────────────────
# Computer
# ─────────────────────────────────────────────────────────────────────────────


class DiagnosticComputer:
    """Validates the links of a single document."""

    def __init__(
        self,
        workspace: Workspace,
        references_provider: ReferencesProvider,
        toc_provider: TableOfContentsProvider,
        file_link_concurrency: int = FILE_LINK_CONCURRENCY,
    ):
        self._workspace = workspace
        self._references = references_provider
        self._toc_provider = toc_provider
        self._file_link_concurrency = file_link_concurrency

    async def get_diagnostics(
        self,
        document: TextDocument,
        options: DiagnosticOptions,
        token: CancellationToken = NOOP_TOKEN,
    ) -> DiagnosticsResult:
        links = await self._references.get_links(document)
        if token.is_cancellation_requested:
            return DiagnosticsResult(links=links, options=options)

        file_diagnostics, own_header_diagnostics = await asyncio.gather(
            self._validate_file_links(document, options, links, token),
            self._validate_own_header_links(document, options, links, token),
        )
        diagnostics = [
            *file_diagnostics,
            *self._validate_reference_links(options, links),
            *own_header_diagnostics,
        ]
        diagnostics.sort(key=lambda diagnostic: diagnostic.range)
        return DiagnosticsResult(diagnostics=diagnostics, links=links, options=options)

    async def _validate_own_header_links(
        self,
        document: TextDocument,
        options: DiagnosticOptions,
        links: list[Link],
        token: CancellationToken,
    ) -> list[Diagnostic]:
        severity = _severity(options.validate_fragment_links)
        if severity is None:
            return []

        toc = await self._toc_provider.get_for_document(document)
        if token.is_cancellation_requested:
            return []

        diagnostics = []
        for link in links:
            href = link.href
            if (
                href.kind == "internal"
                and link.source.href_text.startswith("#")
                and href.path == document.uri
                and href.fragment
                and toc.lookup(href.fragment) is None
                and not _is_ignored(options, link.source.href_text)
            ):
                diagnostics.append(
                    Diagnostic(
                        range=link.source.href_range,
                        message=f"No header found: '{href.fragment}'",
                        severity=severity,
                        code="link.no-such-header",
                        link=link.source.href_text,
                    )
                )
        return diagnostics

    def _validate_reference_links(self, options: DiagnosticOptions, links: list[Link]) -> list[Diagnostic]:
        severity = _severity(options.validate_references)
        if severity is None:
            return []

        definitions = LinkDefinitionSet(links)
        return [
            Diagnostic(
                range=link.source.href_range,
                message=f"No link definition found: '{link.href.ref}'",
                severity=severity,
                code="link.no-such-reference",
                link=link.source.href_text,
            )
            for link in links
            if link.href.kind == "reference" and definitions.lookup(link.href.ref) is None
        ]

    async def _validate_file_links(
        self,
        document: TextDocument,
        options: DiagnosticOptions,
        links: list[Link],
        token: CancellationToken,
    ) -> list[Diagnostic]:
        file_severity = _severity(options.validate_file_links)
        fragment_severity = _severity(options.file_link_fragment_level)
        if file_severity is None and fragment_severity is None:
            return []

        # '#fragment' links are checked against this document's own headers
        links_by_path: dict[Path, list[Link]] = {}
        for link in links:
            if link.href.kind == "internal" and not link.source.href_text.startswith("#"):
                links_by_path.setdefault(link.href.path, []).append(link)
        if not links_by_path:
            return []

        semaphore = asyncio.Semaphore(self._file_link_concurrency)
        diagnostics: list[Diagnostic] = []

        async def validate(path: Path, path_links: list[Link]) -> None:
            async with semaphore:
                if token.is_cancellation_requested:
                    return
                target = await self._try_find_document(path)
                if token.is_cancellation_requested:
                    return

                if target is None:
                    if file_severity is None or await self._workspace.path_exists(path):
                        return
                    for link in path_links:
                        if _is_ignored(options, link.source.path_text):
                            continue
                        diagnostics.append(
                            Diagnostic(
                                range=link.source.href_range,
                                message=f"File does not exist at path: {path}",
                                severity=file_severity,
                                code="link.no-such-file",
                                link=link.source.path_text,
                            )
                        )
                    return

                fragment_links = [link for link in path_links if link.href.fragment]
                if fragment_severity is None or not fragment_links:
                    return
                toc = await self._toc_provider.get_for_document(target)
                if token.is_cancellation_requested:
                    return
                for link in fragment_links:
                    if (
                        toc.lookup(link.href.fragment) is None
                        and not _is_ignored(options, link.source.path_text)
                        and not _is_ignored(options, link.source.href_text)
                    ):
                        diagnostics.append(
                            Diagnostic(
                                range=_hash_to_end(link.source),
                                message=f"Header does not exist in file: {link.href.fragment}",
                                severity=fragment_severity,
                                code="link.no-such-header",
                                link=link.source.href_text,
                            )
                        )

        await asyncio.gather(*(validate(path, path_links) for path, path_links in links_by_path.items()))
        return diagnostics

    async def _try_find_document(self, path: Path) -> TextDocument | None:
        document = await self._workspace.get_or_load_document(path)
        if document is None and path.suffix == "":
            document = await self._workspace.get_or_load_document(
                path.with_name(path.name + self._workspace.extension)
            )
        return document


# ─────────────────────────────────────────────────────────────────────────────
# Reporters
# ─────────────────────────────────────────────────────────────────────────────


class DiagnosticReporter(ABC):
    """Where diagnostics of open documents are published."""

    @abstractmethod
    def set(self, uri: Path, diagnostics: list[Diagnostic]) -> None: ...

    @abstractmethod
    def delete(self, uri: Path) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...

    @abstractmethod
    def is_open(self, uri: Path) -> bool: ...

    @abstractmethod
    def get_open_documents(self) -> list[TextDocument]: ...


class InMemoryDiagnosticReporter(DiagnosticReporter):
    """Keeps the latest diagnostics per document.

    Args:
        workspace: Source of the open documents.
        open_paths: Documents considered open; None treats every known document as open.
        on_change: Called with the uri and its diagnostics after every ``set``.
    """

    def __init__(
        self,
        workspace: Workspace,
        open_paths: Iterable[Path] | None = None,
        on_change: Callable[[Path, list[Diagnostic]], None] | None = None,
    ):
        self._workspace = workspace
        self._open_paths = set(open_paths) if open_paths is not None else None
        self._on_change = on_change
        self.diagnostics: dict[Path, list[Diagnostic]] = {}
        self.set_counts: dict[Path, int] = {}

    def set(self, uri: Path, diagnostics: list[Diagnostic]) -> None:
        self.diagnostics[uri] = list(diagnostics)
        self.set_counts[uri] = self.set_counts.get(uri, 0) + 1
        if self._on_change is not None:
            self._on_change(uri, diagnostics)

    def delete(self, uri: Path) -> None:
        self.diagnostics.pop(uri, None)

    def clear(self) -> None:
        self.diagnostics.clear()

    def get(self, uri: Path) -> list[Diagnostic]:
        return self.diagnostics.get(uri, [])

    def is_open(self, uri: Path) -> bool:
        if self._open_paths is None:
            return self._workspace.has_document(uri)
        return uri in self._open_paths

    def get_open_documents(self) -> list[TextDocument]:
        return [doc for doc in self._workspace.known_documents() if self.is_open(doc.uri)]


# ─────────────────────────────────────────────────────────────────────────────
# Link target watcher
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class _WatchEntry:
    subscriptions: list[Subscription]
    documents: set[Path] = field(default_factory=set)


class LinkWatcher:
    """One file watch per distinct link target, shared by the documents linking to it."""

    def __init__(self, workspace: Workspace):
        self._workspace = workspace
        self._watchers: dict[Path, _WatchEntry] = {}
        self.on_did_change_linked_to_file: Event[list[Path]] = Event()

    @property
    def watched_targets(self) -> dict[Path, set[Path]]:
        """Target -> documents linking to it."""
        return {path: set(entry.documents) for path, entry in self._watchers.items()}

    def update_links_for_document(self, document: Path, links: Iterable[Link]) -> None:
        """Set the links of ``document``, adding and removing watches as needed."""
        targets = {link.href.path for link in links if isinstance(link.href, InternalHref)}

        for entry in self._watchers.values():
            entry.documents.discard(document)

        for target in targets:
            entry = self._watchers.get(target)
            if entry is None:
                entry = _WatchEntry(subscriptions=self._start_watching(target))
                self._watchers[target] = entry
            entry.documents.add(document)

        for target, entry in list(self._watchers.items()):
            if not entry.documents:
                log.debug("Stopped watching link target %s", target)
                for subscription in entry.subscriptions:
                    subscription.close()
                del self._watchers[target]

    def delete_document(self, document: Path) -> None:
        self.update_links_for_document(document, [])

    def close(self) -> None:
        for entry in self._watchers.values():
            for subscription in entry.subscriptions:
                subscription.close()
        self._watchers.clear()

    def _start_watching(self, target: Path) -> list[Subscription]:
        log.debug("Watching link target %s", target)

        def on_change(path: Path, change: FileChange) -> None:
            entry = self._watchers.get(target)
            if entry is not None:
                self.on_did_change_linked_to_file.fire(sorted(entry.documents))

        paths = [target]
        if target.suffix == "":
            paths.append(target.with_name(target.name + self._workspace.extension))
        return [self._workspace.watch_file(path, on_change) for path in paths]


# ─────────────────────────────────────────────────────────────────────────────
# Manager
# ─────────────────────────────────────────────────────────────────────────────


class DiagnosticManager:
    """Keeps diagnostics of the reporter's open documents current.

    Must be created while an event loop is running. ``ready`` completes once
    the initial validation of every open document is done.
    """

    def __init__(
        self,
        workspace: Workspace,
        computer: DiagnosticComputer,
        configuration: DiagnosticConfiguration,
        reporter: DiagnosticReporter,
        references_provider: ReferencesProvider,
        toc_provider: TableOfContentsProvider,
        delay: float = DIAGNOSTIC_DELAY_SECONDS,
    ):
        self._workspace = workspace
        self._computer = computer
        self._configuration = configuration
        self._reporter = reporter
        self._references = references_provider
        self._delay = delay

        self._pending: dict[Path, None] = {}
        self._delayer = Delayer(delay)
        self._inflight: InflightTasks[Path] = InflightTasks()
        self._tasks = BackgroundTasks("diagnostics")
        self._link_watcher = LinkWatcher(workspace)
        self._toc_watcher = TableOfContentsWatcher(workspace, toc_provider, delay)

        self._subscriptions: list[Subscription] = [
            configuration.on_did_change.subscribe(self._on_configuration_changed),
            workspace.on_did_create_document.subscribe(self._on_document_changed),
            workspace.on_did_change_document.subscribe(self._on_document_changed),
            workspace.on_did_delete_document.subscribe(self._on_document_deleted),
            self._link_watcher.on_did_change_linked_to_file.subscribe(self._on_linked_files_changed),
            self._toc_watcher.on_toc_changed.subscribe(self._on_toc_changed),
        ]

        self.ready: asyncio.Task = asyncio.ensure_future(self._initialize())

    @property
    def link_watcher(self) -> LinkWatcher:
        return self._link_watcher

    async def recompute_diagnostic_state(
        self, document: TextDocument, token: CancellationToken = NOOP_TOKEN
    ) -> DiagnosticsResult:
        options = self._configuration.get_options(document.uri)
        if not options.enabled:
            return DiagnosticsResult(options=options)
        return await self._computer.get_diagnostics(document, options, token)

    async def rebuild(self) -> None:
        """Drop every diagnostic and revalidate all open documents."""
        self._reporter.clear()
        self._pending.clear()
        self._inflight.clear()

        documents = self._reporter.get_open_documents()
        await self._toc_watcher.prime(documents)
        for document in documents:
            self._trigger(document.uri)

    async def wait_for_idle(self) -> None:
        """Wait until no validation is pending, debounced or running."""
        while True:
            busy = [
                *self._tasks.pending(),
                *self._inflight.tasks(),
                *self._toc_watcher.pending_tasks(),
            ]
            if self._delayer.task is not None and not self._delayer.task.done():
                busy.append(self._delayer.task)
            if busy:
                await asyncio.wait(busy)
                continue
            if self._delayer.is_triggered or self._toc_watcher.is_triggered:
                await asyncio.sleep(min(self._delay, 0.01))
                continue
            return

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()
        self._delayer.cancel()
        self._inflight.clear()
        self._tasks.cancel_all()
        self._link_watcher.close()
        self._toc_watcher.close()
        self._pending.clear()
        if not self.ready.done():
            self.ready.cancel()

    async def _initialize(self) -> None:
        await self.rebuild()
        await self.wait_for_idle()

    def _trigger(self, uri: Path) -> None:
        self._inflight.cancel(uri)
        self._pending[uri] = None
        self._delayer.trigger(self._recompute_pending)

    async def _recompute_pending(self) -> None:
        pending = list(self._pending)
        self._pending.clear()

        open_documents = {doc.uri: doc for doc in self._reporter.get_open_documents()}
        for uri in pending:
            document = open_documents.get(uri)
            if document is not None:
                self._inflight.start(uri, lambda token, doc=document: self._update(doc, token))

    async def _update(self, document: TextDocument, token: CancellationToken) -> None:
        state = await self.recompute_diagnostic_state(document, token)
        if token.is_cancellation_requested:
            return

        options = state.options
        watch_links = (
            options is not None and options.enabled and options.validate_file_links != "ignore"
        )
        self._link_watcher.update_links_for_document(document.uri, state.links if watch_links else [])
        self._reporter.set(document.uri, state.diagnostics)

    # ── Event handlers ─────────────────────────────────────────────────────

    def _on_configuration_changed(self, _: DiagnosticOptions) -> None:
        self._tasks.spawn(self.rebuild())

    def _on_document_changed(self, document: TextDocument) -> None:
        if self._reporter.is_open(document.uri):
            self._trigger(document.uri)

    def _on_document_deleted(self, uri: Path) -> None:
        self._pending.pop(uri, None)
        self._inflight.cancel(uri)
        self._link_watcher.delete_document(uri)
        self._reporter.delete(uri)
        self._tasks.spawn(self._revalidate_documents_linking_to(uri))

    def _on_linked_files_changed(self, documents: list[Path]) -> None:
        for uri in documents:
            if self._reporter.is_open(uri):
                self._trigger(uri)

    def _on_toc_changed(self, uri: Path) -> None:
        self._tasks.spawn(self._revalidate_documents_linking_to(uri))

    async def _revalidate_documents_linking_to(self, uri: Path) -> None:
        open_documents = self._reporter.get_open_documents()
        references = await self._references.get_references_to_file_in_docs(uri, open_documents)
        for referencing in dict.fromkeys(ref.location.uri for ref in references):
            if self._reporter.is_open(referencing):
                self._trigger(referencing)
