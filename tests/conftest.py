"""Shared test fixtures for the textile-ls test suite.

Design:
- In-memory workspaces rooted at /workspace for provider tests
- Real directories under tmp_path for file system, edit and CLI tests
- Async tests are marked explicitly with @pytest.mark.asyncio
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from textile_ls.document import TextDocument
from textile_ls.parser.tokenizer import TextileTokenizer
from textile_ls.references import ReferencesProvider
from textile_ls.rename import RenameProvider
from textile_ls.toc import TableOfContentsProvider
from textile_ls.workspace import InMemoryWorkspace

WORKSPACE_ROOT = Path("/workspace")


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def workspace_path(*parts: str) -> Path:
    """Absolute path of a document in the in-memory workspace."""
    return WORKSPACE_ROOT.joinpath(*parts)


def make_doc(name: str, *lines: str, version: int = 0) -> TextDocument:
    """In-memory document made of ``lines`` joined with newlines."""
    return TextDocument(workspace_path(name), "\n".join(lines), version)


def write_doc(root: Path, relative: str, *lines: str) -> Path:
    """Write a document below ``root`` and return its path."""
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


class Providers:
    """Tokenizer, workspace and providers wired the way the language service does it."""

    def __init__(self, workspace: InMemoryWorkspace):
        self.workspace = workspace
        self.tokenizer = TextileTokenizer()
        self.toc = TableOfContentsProvider(self.tokenizer, workspace)
        self.references = ReferencesProvider(self.tokenizer, workspace, self.toc)
        self.rename = RenameProvider(workspace, self.references)

    def close(self) -> None:
        self.references.close()
        self.toc.close()


def make_providers(*documents: TextDocument) -> Providers:
    return Providers(InMemoryWorkspace(documents, root=WORKSPACE_ROOT))


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def restore_package_logger():
    """CLI commands configure the package logger; put it back after each test."""
    logger = logging.getLogger("textile_ls")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def tokenizer() -> TextileTokenizer:
    return TextileTokenizer()


@pytest.fixture
def tmp_root(tmp_path: Path, monkeypatch) -> Path:
    """Empty workspace directory; TEXTILE_LS_ROOT is cleared so lookups stay local."""
    monkeypatch.delenv("TEXTILE_LS_ROOT", raising=False)
    root = tmp_path.resolve() / "docs"
    root.mkdir()
    return root


@pytest.fixture
def docs(tmp_root):
    """A small documentation tree with one broken link."""
    write_doc(
        tmp_root,
        "index.textile",
        "h1. Welcome",  # 0
        "",
        '"Setup":guide/setup.textile#install',  # 2
        '"Missing":missing.textile',  # 3
        "",
        "[home]https://example.com",  # 5
        '"Home page":home',  # 6
    )
    write_doc(
        tmp_root,
        "guide/setup.textile",
        "h1. Install",  # 0
        "",
        '"Back":../index.textile#welcome',  # 2
    )
    return tmp_root
