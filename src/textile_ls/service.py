"""Language service facade.

This module wires the providers of one workspace together. The CLI and the
MCP server are thin wrappers around :class:`TextileLanguageService`; all
actual logic lives in the providers.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from .concurrency import NOOP_TOKEN, CancellationToken
from .config import DiagnosticConfiguration, LanguageServiceConfig, load_config
from .definitions import DefinitionProvider
from .diagnostics import DiagnosticComputer, DiagnosticManager, DiagnosticReporter
from .document import TextDocument
from .models import Diagnostic, Link, Location, Position, Reference, RenamePreparation, TocEntry, WorkspaceEdit
from .parser.tokenizer import TextileTokenizer
from .references import ReferencesProvider
from .rename import RenameProvider
from .toc import TableOfContentsProvider
from .workspace import FileSystemWorkspace, Workspace

log = logging.getLogger(__name__)


class DocumentNotFoundError(LookupError):
    """Raised when a path is not a document of the workspace."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Document not found: {path}")


class TextileLanguageService:
    """Every language feature for the documents of one workspace.

    Args:
        root: Workspace root directory.
        config: Configuration; loaded from ``root`` when omitted.
        workspace: Document source; a :class:`FileSystemWorkspace` on ``root`` when omitted.
    """

    def __init__(
        self,
        root: Path,
        config: LanguageServiceConfig | None = None,
        workspace: Workspace | None = None,
    ):
        self.config = config if config is not None else load_config(root)
        self.workspace = workspace or FileSystemWorkspace(
            Path(root).resolve(), extension=self.config.extension, exclude=self.config.exclude
        )
        self.tokenizer = TextileTokenizer()
        self.toc_provider = TableOfContentsProvider(self.tokenizer, self.workspace)
        self.references = ReferencesProvider(self.tokenizer, self.workspace, self.toc_provider)
        self.rename_provider = RenameProvider(self.workspace, self.references)
        self.definitions = DefinitionProvider(self.references)
        self.diagnostic_configuration = DiagnosticConfiguration(self.config.diagnostics)
        self.diagnostic_computer = DiagnosticComputer(
            self.workspace,
            self.references,
            self.toc_provider,
            file_link_concurrency=self.config.file_link_concurrency,
        )

    @property
    def root(self) -> Path:
        return self.workspace.root

    def resolve_path(self, path: str | Path) -> Path:
        """Absolute, symlink-free path of ``path``; relative paths start at the workspace root."""
        path = Path(path).expanduser()
        if not path.is_absolute():
            path = self.root / path
        return path.resolve()

    async def get_document(self, path: str | Path) -> TextDocument:
        """Load a document.

        Raises:
            DocumentNotFoundError: If no document exists at ``path``.
        """
        resolved = self.resolve_path(path)
        document = await self.workspace.get_or_load_document(resolved)
        if document is None:
            raise DocumentNotFoundError(resolved)
        return document

    async def get_all_documents(self) -> list[TextDocument]:
        return await self.workspace.get_all_documents()

    # ── Features ───────────────────────────────────────────────────────────

    async def toc(self, path: str | Path) -> list[TocEntry]:
        document = await self.get_document(path)
        return (await self.toc_provider.get_for_document(document)).entries

    async def links(self, path: str | Path) -> list[Link]:
        document = await self.get_document(path)
        return await self.references.get_links(document)

    async def references_at(
        self, path: str | Path, position: Position, token: CancellationToken = NOOP_TOKEN
    ) -> list[Reference]:
        document = await self.get_document(path)
        return await self.references.get_references_at_position(document, position, token)

    async def file_references(
        self, path: str | Path, token: CancellationToken = NOOP_TOKEN
    ) -> list[Reference]:
        resolved = self.resolve_path(path)
        return await self.references.get_references_to_file_in_workspace(resolved, token)

    async def definition(
        self, path: str | Path, position: Position, token: CancellationToken = NOOP_TOKEN
    ) -> Location | None:
        document = await self.get_document(path)
        return await self.definitions.provide_definition(document, position, token)

    async def prepare_rename(
        self, path: str | Path, position: Position, token: CancellationToken = NOOP_TOKEN
    ) -> RenamePreparation | None:
        document = await self.get_document(path)
        return await self.rename_provider.prepare_rename(document, position, token)

    async def rename(
        self,
        path: str | Path,
        position: Position,
        new_name: str,
        token: CancellationToken = NOOP_TOKEN,
    ) -> WorkspaceEdit | None:
        document = await self.get_document(path)
        return await self.rename_provider.provide_rename_edits(document, position, new_name, token)

    async def diagnostics(
        self, path: str | Path, token: CancellationToken = NOOP_TOKEN
    ) -> list[Diagnostic]:
        document = await self.get_document(path)
        options = self.diagnostic_configuration.get_options(document.uri)
        if not options.enabled:
            return []
        result = await self.diagnostic_computer.get_diagnostics(document, options, token)
        return result.diagnostics

    async def check(self, paths: Iterable[str | Path] = ()) -> dict[Path, list[Diagnostic]]:
        """Diagnostics for ``paths``, or for every document when none are given."""
        documents = await self.workspace.get_all_documents()
        selected = [await self.get_document(path) for path in paths] or documents

        results: dict[Path, list[Diagnostic]] = {}
        for document in selected:
            results[document.uri] = await self.diagnostics(document.uri)
        log.debug("Checked %d documents", len(results))
        return results

    def create_diagnostic_manager(
        self, reporter: DiagnosticReporter, delay: float | None = None
    ) -> DiagnosticManager:
        """Continuous diagnostics for ``reporter``'s open documents. Needs a running loop."""
        return DiagnosticManager(
            self.workspace,
            self.diagnostic_computer,
            self.diagnostic_configuration,
            reporter,
            self.references,
            self.toc_provider,
            delay=self.config.diagnostic_delay if delay is None else delay,
        )

    def close(self) -> None:
        self.references.close()
        self.toc_provider.close()
