"""FastMCP server for textile-ls.

This module provides MCP protocol wrappers around the language service.
All actual logic lives in the providers behind TextileLanguageService; this
file just handles MCP serialization. Lines and characters are 0-based.
"""

from __future__ import annotations

from fastmcp import FastMCP

from ._logging import configure_logging
from .config import get_workspace_root
from .models import Diagnostic, Position, Reference, RenamePreparation, TocEntry, WorkspaceEdit
from .service import TextileLanguageService

mcp = FastMCP(
    name="textile-ls",
    instructions=(
        "Language features for Textile (.textile) documents: headers, links, references, "
        "renames and broken-link diagnostics. Positions are 0-based line/character pairs."
    ),
)

_service: TextileLanguageService | None = None


def get_service() -> TextileLanguageService:
    """Language service for the workspace root, created on first use."""
    global _service
    if _service is None:
        _service = TextileLanguageService(get_workspace_root())
    return _service


# ─────────────────────────────────────────────────────────────────────────────
# MCP Tool Wrappers
# ─────────────────────────────────────────────────────────────────────────────


@mcp.tool(
    name="toc",
    description="List the headers of a document with their slugs, levels and locations.",
)
async def toc_tool(path: str) -> list[TocEntry]:
    """Table of contents of a document."""
    return await get_service().toc(path)


@mcp.tool(
    name="references",
    description=(
        "Find all references to the header or link at a position: the header and links to it, "
        "every link to the same URL or file, or every use of a [name] definition."
    ),
)
async def references_tool(path: str, line: int, character: int) -> list[Reference]:
    """References at a position."""
    return await get_service().references_at(path, Position(line, character))


@mcp.tool(
    name="prepare_rename",
    description="Check whether the symbol at a position can be renamed; returns its range and current text.",
)
async def prepare_rename_tool(path: str, line: int, character: int) -> RenamePreparation | None:
    """Range and placeholder for a rename; raises if nothing is renamable there."""
    return await get_service().prepare_rename(path, Position(line, character))


@mcp.tool(
    name="rename",
    description=(
        "Compute the edits renaming the header, reference, link or file at a position. "
        "Returns a workspace edit; nothing is written to disk."
    ),
)
async def rename_tool(path: str, line: int, character: int, new_name: str) -> WorkspaceEdit | None:
    """Workspace edit for a rename."""
    return await get_service().rename(path, Position(line, character), new_name)


@mcp.tool(
    name="diagnostics",
    description="Report broken links in a document: missing files, missing headers and undefined references.",
)
async def diagnostics_tool(path: str) -> list[Diagnostic]:
    """Link diagnostics of a document."""
    return await get_service().diagnostics(path)


def main():
    """Entry point for the MCP server."""
    configure_logging()
    mcp.run()


if __name__ == "__main__":
    main()
