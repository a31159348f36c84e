"""Document sources: where documents come from and how their changes are announced.

Two implementations share the :class:`Workspace` interface:

- :class:`InMemoryWorkspace` holds documents handed to it directly (editor
  buffers, tests).
- :class:`FileSystemWorkspace` discovers ``*.textile`` files under a root
  directory and, once started, follows changes with a watchdog observer.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path
from stat import S_ISREG
from typing import Literal

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .concurrency import BackgroundTasks
from .config import (
    DEFAULT_EXTENSION,
    DOCUMENT_LOAD_CONCURRENCY,
    EXCLUDED_DIRECTORIES,
    WATCHER_DEBOUNCE_SECONDS,
)
from .document import TextDocument
from .events import Event, Subscription

logger = logging.getLogger(__name__)

FileChange = Literal["created", "deleted"]
FileWatchCallback = Callable[[Path, FileChange], None]


class Workspace(ABC):
    """Source of documents plus change, create and delete notifications."""

    def __init__(self, root: Path, extension: str = DEFAULT_EXTENSION):
        self.root = Path(os.path.normpath(root))
        self.extension = extension
        self.on_did_change_document: Event[TextDocument] = Event()
        self.on_did_create_document: Event[TextDocument] = Event()
        self.on_did_delete_document: Event[Path] = Event()
        self._file_watches: dict[Path, list[FileWatchCallback]] = {}

    @abstractmethod
    async def get_all_documents(self) -> list[TextDocument]:
        """All documents of the workspace, in a stable order."""

    @abstractmethod
    async def get_or_load_document(self, path: Path) -> TextDocument | None:
        """The current snapshot of the document at ``path``, or None."""

    @abstractmethod
    def known_documents(self) -> list[TextDocument]:
        """Documents already loaded, without touching the disk."""

    @abstractmethod
    def has_document(self, path: Path) -> bool:
        """True if ``path`` is a known document (without touching the disk)."""

    @abstractmethod
    async def path_exists(self, path: Path) -> bool:
        """True if a document, file or directory exists at ``path``."""

    @abstractmethod
    async def read_directory(self, path: Path) -> list[tuple[str, bool]]:
        """``(name, is_directory)`` for each entry of ``path``."""

    def is_document_path(self, path: Path) -> bool:
        return self.has_document(path) or path.suffix.lower() == self.extension

    def watch_file(self, path: Path, callback: FileWatchCallback) -> Subscription:
        """Call ``callback`` whenever a file at ``path`` is created or deleted."""
        path = Path(os.path.normpath(path))
        callbacks = self._file_watches.setdefault(path, [])
        callbacks.append(callback)

        def remove() -> None:
            callbacks.remove(callback)
            if not callbacks:
                del self._file_watches[path]

        return Subscription(remove)

    @property
    def watched_paths(self) -> set[Path]:
        return set(self._file_watches)

    def _notify_file_watchers(self, path: Path, change: FileChange) -> None:
        for callback in list(self._file_watches.get(path, ())):
            callback(path, change)


# ─────────────────────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────────────────────


def _with_normalized_uri(document: TextDocument) -> TextDocument:
    uri = Path(os.path.normpath(document.uri))
    if uri == document.uri:
        return document
    return TextDocument(uri, document.text, document.version)


class InMemoryWorkspace(Workspace):
    """Documents held in memory. Mutations bump versions and fire events."""

    def __init__(
        self,
        documents: Iterable[TextDocument] = (),
        root: Path = Path("/workspace"),
        extension: str = DEFAULT_EXTENSION,
    ):
        super().__init__(root, extension)
        self._documents: dict[Path, TextDocument] = {}
        for document in documents:
            document = _with_normalized_uri(document)
            self._documents[document.uri] = document

    def known_documents(self) -> list[TextDocument]:
        return list(self._documents.values())

    async def get_all_documents(self) -> list[TextDocument]:
        return list(self._documents.values())

    async def get_or_load_document(self, path: Path) -> TextDocument | None:
        return self._documents.get(Path(os.path.normpath(path)))

    def has_document(self, path: Path) -> bool:
        return Path(os.path.normpath(path)) in self._documents

    async def path_exists(self, path: Path) -> bool:
        path = Path(os.path.normpath(path))
        if path in self._documents:
            return True
        return any(path in document.uri.parents for document in self._documents.values())

    async def read_directory(self, path: Path) -> list[tuple[str, bool]]:
        path = Path(os.path.normpath(path))
        entries: dict[str, bool] = {}
        for uri in self._documents:
            if path not in uri.parents:
                continue
            relative = uri.relative_to(path).parts
            entries[relative[0]] = len(relative) > 1
        return sorted(entries.items())

    def create_document(self, document: TextDocument) -> None:
        document = _with_normalized_uri(document)
        if document.uri in self._documents:
            raise ValueError(f"Document already exists: {document.uri}")
        self._documents[document.uri] = document
        self.on_did_create_document.fire(document)
        self._notify_file_watchers(document.uri, "created")

    def update_document(self, document: TextDocument) -> None:
        """Replace a document, giving it a version newer than the one it replaces."""
        document = _with_normalized_uri(document)
        previous = self._documents.get(document.uri)
        if previous is not None and document.version <= previous.version:
            document = TextDocument(document.uri, document.text, previous.version + 1)
        self._documents[document.uri] = document
        self.on_did_change_document.fire(document)

    def delete_document(self, path: Path) -> None:
        path = Path(os.path.normpath(path))
        if self._documents.pop(path, None) is None:
            return
        self.on_did_delete_document.fire(path)
        self._notify_file_watchers(path, "deleted")


# ─────────────────────────────────────────────────────────────────────────────
# File system
# ─────────────────────────────────────────────────────────────────────────────


class DebouncedHandler(FileSystemEventHandler):
    """Watchdog handler batching changed paths onto the asyncio loop."""

    def __init__(
        self,
        callback: Callable[[set[Path]], None],
        loop: asyncio.AbstractEventLoop,
        debounce_seconds: float = WATCHER_DEBOUNCE_SECONDS,
    ):
        """Initialize the debounced handler.

        Args:
            callback: Called on the loop with the changed paths after the debounce.
            loop: Loop the callback runs on; watchdog events arrive on its own thread.
            debounce_seconds: Debounce window in seconds.
        """
        super().__init__()
        self._callback = callback
        self._loop = loop
        self._debounce_seconds = debounce_seconds
        self._pending: set[Path] = set()
        self._timer: asyncio.TimerHandle | None = None

    def _schedule_callback(self) -> None:
        """Restart the debounce timer. Runs on the loop thread."""
        if self._timer is not None:
            self._timer.cancel()

        def fire() -> None:
            self._timer = None
            if self._pending:
                paths = self._pending.copy()
                self._pending.clear()
                self._callback(paths)

        self._timer = self._loop.call_later(self._debounce_seconds, fire)

    def _add(self, path: Path) -> None:
        self._pending.add(path)
        self._schedule_callback()

    def _handle_path(self, raw: str | bytes) -> None:
        path = Path(os.fsdecode(raw))
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._add, path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._handle_path(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._handle_path(event.src_path)
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            self._handle_path(dest_path)


def _file_stamp(path: Path) -> tuple[int, int] | None:
    """Modification time and size of a regular file, or None if there is none."""
    try:
        stat = path.stat()
    except OSError:
        return None
    if not S_ISREG(stat.st_mode):
        return None
    return stat.st_mtime_ns, stat.st_size


class FileSystemWorkspace(Workspace):
    """Documents read from disk below ``root``."""

    def __init__(
        self,
        root: Path,
        extension: str = DEFAULT_EXTENSION,
        exclude: Iterable[str] = EXCLUDED_DIRECTORIES,
        debounce_seconds: float = WATCHER_DEBOUNCE_SECONDS,
    ):
        super().__init__(root, extension)
        self._exclude = frozenset(exclude)
        self._debounce_seconds = debounce_seconds
        self._documents: dict[Path, TextDocument] = {}
        self._stamps: dict[Path, tuple[int, int]] = {}
        self._observer: Observer | None = None
        self._reloads = BackgroundTasks("reload")

    def _discover(self) -> list[Path]:
        paths = []
        for path in sorted(self.root.rglob(f"*{self.extension}")):
            relative = path.relative_to(self.root).parts[:-1]
            if any(part in self._exclude for part in relative):
                continue
            if path.is_file():
                paths.append(path)
        return paths

    async def get_all_documents(self) -> list[TextDocument]:
        """Every document on disk, re-read where the file changed since it was loaded.

        Cached documents whose file disappeared are dropped, firing delete.
        """
        paths = await asyncio.to_thread(self._discover)
        discovered = set(paths)
        semaphore = asyncio.Semaphore(DOCUMENT_LOAD_CONCURRENCY)

        async def sync(path: Path) -> TextDocument | None:
            async with semaphore:
                return await self._sync(path)

        vanished = [path for path in self._documents if path not in discovered]
        await asyncio.gather(*(sync(path) for path in vanished))
        documents = await asyncio.gather(*(sync(path) for path in paths))
        return [document for document in documents if document is not None]

    async def get_or_load_document(self, path: Path) -> TextDocument | None:
        return await self._sync(Path(os.path.normpath(path)))

    def known_documents(self) -> list[TextDocument]:
        return list(self._documents.values())

    def has_document(self, path: Path) -> bool:
        return Path(os.path.normpath(path)) in self._documents

    async def path_exists(self, path: Path) -> bool:
        path = Path(os.path.normpath(path))
        if path in self._documents:
            return True
        return await asyncio.to_thread(path.exists)

    async def read_directory(self, path: Path) -> list[tuple[str, bool]]:
        def scan() -> list[tuple[str, bool]]:
            try:
                return sorted((child.name, child.is_dir()) for child in path.iterdir())
            except OSError as e:
                logger.debug(f"Cannot read directory {path}: {e}")
                return []

        return await asyncio.to_thread(scan)

    async def _sync(self, path: Path, force: bool = False) -> TextDocument | None:
        """Bring the snapshot of ``path`` in line with the file on disk.

        The file is re-read when its modification stamp moved, or always when
        ``force`` is set. Storing a new or changed snapshot fires create or
        change; a cached document whose file is gone is dropped and fires delete.
        """
        stamp = await asyncio.to_thread(_file_stamp, path)
        cached = self._documents.get(path)
        if stamp is None:
            if cached is not None:
                self._forget(path)
            return None
        if cached is not None and not force and self._stamps.get(path) == stamp:
            return cached
        return await self._load(path, stamp)

    async def _load(self, path: Path, stamp: tuple[int, int]) -> TextDocument | None:
        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Cannot load {path}: {e}")
            return None

        # Another load of the same path may have finished while reading
        cached = self._documents.get(path)
        self._stamps[path] = stamp
        if cached is not None and cached.text == text:
            return cached

        version = cached.version + 1 if cached is not None else 0
        document = TextDocument(path, text, version)
        self._documents[path] = document
        if cached is None:
            logger.debug(f"Document loaded: {path}")
            self.on_did_create_document.fire(document)
        else:
            logger.debug(f"Document changed on disk: {path} (version {version})")
            self.on_did_change_document.fire(document)
        return document

    def _forget(self, path: Path) -> None:
        del self._documents[path]
        self._stamps.pop(path, None)
        logger.debug(f"Document deleted: {path}")
        self.on_did_delete_document.fire(path)

    # ── Watching ───────────────────────────────────────────────────────────

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start following changes on disk. Must be called from the event loop."""
        if self._observer is not None:
            return

        handler = DebouncedHandler(
            callback=self.on_paths_changed,
            loop=asyncio.get_running_loop(),
            debounce_seconds=self._debounce_seconds,
        )
        observer = Observer()
        observer.schedule(handler, str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Started watching: {self.root}")

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        logger.info("Stopped file watcher")

    async def __aenter__(self) -> FileSystemWorkspace:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stop()

    def on_paths_changed(self, paths: set[Path]) -> None:
        """Apply a batch of changed paths reported by the watcher."""
        for path in sorted(paths):
            self._reloads.spawn(self.refresh_path(path))

    async def wait_for_reloads(self) -> None:
        while pending := self._reloads.pending():
            await asyncio.wait(pending)

    async def refresh_path(self, path: Path) -> None:
        """Re-read ``path`` and fire the matching document and file events."""
        path = Path(os.path.normpath(path))
        known = path in self._documents
        if known or path.suffix.lower() == self.extension:
            await self._sync(path, force=True)

        if not await asyncio.to_thread(path.exists):
            self._notify_file_watchers(path, "deleted")
        elif not known:
            self._notify_file_watchers(path, "created")
