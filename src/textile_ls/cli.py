#!/usr/bin/env python3
"""
txl: CLI for textile-ls

Usage:
    txl toc doc.textile                       # Headers and their slugs
    txl links doc.textile                     # Links found in a document
    txl refs doc.textile 12 8                 # References at line 12, column 8
    txl rename doc.textile 3 5 "New title"    # Preview a rename
    txl check                                 # Broken links in the workspace

LINE and COL are 1-based, as shown by editors.
"""

from __future__ import annotations

import asyncio
import difflib
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any, NoReturn

import click
from click.exceptions import ClickException, UsageError

from . import __version__ as TEXTILE_LS_VERSION
from .models import Diagnostic, Link, Location, Position, Range, Reference, WorkspaceEdit


def run_async(coro):
    """Run async function synchronously."""
    return asyncio.run(coro)


# ─────────────────────────────────────────────────────────────────────────────
# Output Formatting
# ─────────────────────────────────────────────────────────────────────────────


def format_table(rows: list[dict], columns: list[str], max_widths: dict | None = None) -> str:
    """Format rows as a simple table."""
    if not rows:
        return ""

    max_widths = max_widths or {}

    def cell(row: dict, col: str) -> str:
        val = str(row.get(col, ""))
        limit = max_widths.get(col, 60)
        if len(val) > limit:
            val = val[: limit - 3] + "..."
        return val

    widths = {col: max(len(col), *(len(cell(row, col)) for row in rows)) for col in columns}

    lines = [
        "  ".join(col.upper().ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    for row in rows:
        lines.append("  ".join(cell(row, col).ljust(widths[col]) for col in columns).rstrip())
    return "\n".join(lines)


def output(data, as_json: bool = False):
    """Output data as JSON or formatted text."""
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(data)


def _display_path(root: Path, path: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def _range_dict(range: Range) -> dict[str, int]:
    """1-based start and end of a range."""
    return {
        "start_line": range.start.line + 1,
        "start_col": range.start.character + 1,
        "end_line": range.end.line + 1,
        "end_col": range.end.character + 1,
    }


def _location_dict(root: Path, location: Location) -> dict[str, Any]:
    return {"path": _display_path(root, location.uri), **_range_dict(location.range)}


def _href_target(link: Link) -> str:
    href = link.href
    if href.kind == "external":
        return href.uri
    if href.kind == "reference":
        return f"[{href.ref}]"
    return f"{href.path}#{href.fragment}" if href.fragment else str(href.path)


def _reference_dict(root: Path, reference: Reference) -> dict[str, Any]:
    data = {
        "kind": reference.kind,
        **_location_dict(root, reference.location),
        "is_definition": reference.is_definition,
        "is_trigger": reference.is_trigger_location,
    }
    if reference.kind == "header":
        data["text"] = reference.header_text
    else:
        data["text"] = reference.link.source.href_text
    return data


def _diagnostic_dict(root: Path, uri: Path, diagnostic: Diagnostic) -> dict[str, Any]:
    return {
        "path": _display_path(root, uri),
        **_range_dict(diagnostic.range),
        "severity": diagnostic.severity,
        "code": diagnostic.code,
        "message": diagnostic.message,
        "link": diagnostic.link,
    }


def _edit_dict(root: Path, edit: WorkspaceEdit) -> dict[str, Any]:
    return {
        "text_edits": [
            {"path": _display_path(root, uri), **_range_dict(text_edit.range), "new_text": text_edit.new_text}
            for uri, text_edits in edit.text_edits.items()
            for text_edit in text_edits
        ],
        "file_renames": [
            {"old_path": _display_path(root, rename.old_uri), "new_path": _display_path(root, rename.new_uri)}
            for rename in edit.file_renames
        ],
    }


def _position(line: int, col: int) -> Position:
    return Position(line - 1, col - 1)


# ─────────────────────────────────────────────────────────────────────────────
# Error Handling
# ─────────────────────────────────────────────────────────────────────────────


def format_json_error(code: str, message: str, details: dict | None = None) -> str:
    """Format an error as JSON for --json-errors output."""
    error: dict[str, dict[str, object]] = {"error": {"code": code, "message": message}}
    if details:
        error["error"]["details"] = details
    return json.dumps(error)


def get_error_code_for_exception(exc: Exception) -> str:
    """Map exceptions to error codes."""
    from .config import ConfigurationError
    from .rename import NotRenamableError
    from .service import DocumentNotFoundError

    if isinstance(exc, DocumentNotFoundError):
        return "DOCUMENT_NOT_FOUND"
    elif isinstance(exc, NotRenamableError):
        return "NOT_RENAMABLE"
    elif isinstance(exc, ConfigurationError):
        return "INVALID_CONFIG"
    elif isinstance(exc, FileExistsError):
        return "FILE_EXISTS"
    elif isinstance(exc, click.MissingParameter):
        return "MISSING_ARGUMENT"
    elif isinstance(exc, click.BadParameter):
        return "INVALID_ARGUMENT"
    elif isinstance(exc, click.NoSuchOption):
        return "UNKNOWN_OPTION"
    elif isinstance(exc, UsageError):
        return "USAGE_ERROR"
    elif isinstance(exc, ClickException):
        return "CLI_ERROR"
    elif isinstance(exc, OSError):
        return "IO_ERROR"
    return "UNKNOWN_ERROR"


def _handle_error(ctx: click.Context, error: Exception, exit_code: int = 1) -> NoReturn:
    """Report ``error`` as text or, with --json-errors, as JSON, then exit."""
    json_errors = ctx.obj.get("json_errors", False) if ctx.obj else False
    message = str(error)
    if json_errors:
        click.echo(format_json_error(get_error_code_for_exception(error), message), err=True)
    else:
        click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code)


class JsonErrorGroup(click.Group):
    """Click group that formats errors as JSON when --json-errors is set.

    Also suggests the closest command name for typos.
    """

    def resolve_command(self, ctx, args):
        try:
            return super().resolve_command(ctx, args)
        except UsageError as e:
            cmd_name = args[0] if args else ""
            if cmd_name and "No such command" in str(e):
                matches = difflib.get_close_matches(cmd_name, self.list_commands(ctx), n=1, cutoff=0.6)
                if matches:
                    raise UsageError(f"No such command '{cmd_name}'. Did you mean '{matches[0]}'?")
            raise

    def main(
        self,
        args: Sequence[str] | None = None,
        prog_name: str | None = None,
        complete_var: str | None = None,
        standalone_mode: bool = True,
        **extra: Any,
    ) -> Any:
        """Catch errors raised while parsing arguments.

        --json-errors is accepted anywhere on the command line and moved to
        the front so Click parses it as a global flag.
        """
        argv = list(args) if args is not None else list(sys.argv[1:])
        if "--json-errors" not in argv:
            return super().main(args, prog_name, complete_var, standalone_mode, **extra)

        argv = ["--json-errors", *(a for a in argv if a != "--json-errors")]
        try:
            return super().main(argv, prog_name, complete_var, standalone_mode=False, **extra)
        except ClickException as e:
            click.echo(format_json_error(get_error_code_for_exception(e), e.format_message()), err=True)
            raise SystemExit(1)
        except click.exceptions.Abort:
            raise SystemExit(1)


def _get_service(ctx: click.Context):
    """Build the language service for the selected workspace root."""
    from .config import ConfigurationError, get_workspace_root
    from .service import TextileLanguageService

    root_option = ctx.obj.get("root") if ctx.obj else None
    root = Path(root_option).resolve() if root_option else get_workspace_root()
    try:
        return TextileLanguageService(root)
    except ConfigurationError as e:
        _handle_error(ctx, e)


# ─────────────────────────────────────────────────────────────────────────────
# Main CLI Group
# ─────────────────────────────────────────────────────────────────────────────


@click.group(cls=JsonErrorGroup)
@click.version_option(version=TEXTILE_LS_VERSION, prog_name="txl")
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False),
    envvar="TEXTILE_LS_ROOT",
    help="Workspace root (default: nearest directory with .textilels.yaml, else cwd)",
)
@click.option(
    "--json-errors",
    "json_errors",
    is_flag=True,
    help="Output errors as JSON (for programmatic use)",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    envvar="TEXTILE_LS_QUIET",
    help="Suppress warnings, show only errors and essential output",
)
@click.pass_context
def cli(ctx: click.Context, root: str | None, json_errors: bool, quiet: bool):
    """txl: links, references and renames for Textile documents.

    \b
    Inspect a document:
      txl toc doc.textile             # Headers, slugs and levels
      txl links doc.textile           # Every link and where it points

    \b
    Navigate (LINE and COL are 1-based):
      txl refs doc.textile 4 10       # Everything referring to what is at 4:10
      txl file-refs doc.textile       # Links to a file from the workspace
      txl definition doc.textile 7 3  # Where a [name] reference is defined

    \b
    Change:
      txl rename doc.textile 1 5 "New header"          # Preview edits
      txl rename doc.textile 9 12 other.textile --apply

    \b
    Validate:
      txl check                       # All documents; exit 1 on error-level issues
      txl watch                       # Revalidate as files change
    """
    from ._logging import configure_logging, set_quiet_mode

    configure_logging()

    ctx.ensure_object(dict)
    ctx.obj["root"] = root
    ctx.obj["json_errors"] = json_errors
    ctx.obj["quiet"] = quiet

    if quiet:
        set_quiet_mode(True)


# ─────────────────────────────────────────────────────────────────────────────
# Inspect
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("file", type=click.Path(resolve_path=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def toc(ctx: click.Context, file: str, as_json: bool):
    """Show the table of contents of FILE.

    \b
    Examples:
      txl toc guide.textile
      txl toc guide.textile --json
    """
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    try:
        entries = run_async(service.toc(file))
    except DocumentNotFoundError as e:
        _handle_error(ctx, e)

    rows = [
        {"line": entry.line + 1, "level": entry.level, "slug": entry.slug, "text": entry.text}
        for entry in entries
    ]
    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No headers found.")
    else:
        click.echo(format_table(rows, ["line", "level", "slug", "text"]))


@cli.command()
@click.argument("file", type=click.Path(resolve_path=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def links(ctx: click.Context, file: str, as_json: bool):
    """List the links of FILE.

    \b
    Examples:
      txl links guide.textile
      txl links guide.textile --json
    """
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    try:
        found = run_async(service.links(file))
    except DocumentNotFoundError as e:
        _handle_error(ctx, e)

    rows = []
    for link in found:
        row = {
            **_range_dict(link.source.href_range),
            "kind": link.kind if link.kind == "definition" else link.href.kind,
            "href": link.source.href_text,
            "target": _href_target(link),
        }
        if link.kind == "definition":
            row["ref"] = link.ref.text
        rows.append(row)

    if as_json:
        output(rows, as_json=True)
    elif not rows:
        click.echo("No links found.")
    else:
        table_rows = [
            {"at": f"{row['start_line']}:{row['start_col']}", "kind": row["kind"], "href": row["href"]}
            for row in rows
        ]
        click.echo(format_table(table_rows, ["at", "kind", "href"]))


# ─────────────────────────────────────────────────────────────────────────────
# Navigate
# ─────────────────────────────────────────────────────────────────────────────


def _print_references(root: Path, references: list[Reference], as_json: bool) -> None:
    rows = [_reference_dict(root, reference) for reference in references]
    if as_json:
        output(rows, as_json=True)
        return
    if not rows:
        click.echo("No references found.")
        return
    for row in rows:
        marker = " (definition)" if row["is_definition"] else ""
        click.echo(f"{row['path']}:{row['start_line']}:{row['start_col']}: {row['text']}{marker}")


@cli.command()
@click.argument("file", type=click.Path(resolve_path=True))
@click.argument("line", type=click.IntRange(min=1))
@click.argument("col", type=click.IntRange(min=1))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def refs(ctx: click.Context, file: str, line: int, col: int, as_json: bool):
    """Find references to the header or link at LINE:COL of FILE.

    \b
    Examples:
      txl refs guide.textile 1 5      # On a header: the header and links to it
      txl refs guide.textile 8 14     # On a link: every link to the same target
    """
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    try:
        references = run_async(service.references_at(file, _position(line, col)))
    except DocumentNotFoundError as e:
        _handle_error(ctx, e)
    _print_references(service.root, references, as_json)


@cli.command("file-refs")
@click.argument("file", type=click.Path(resolve_path=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def file_refs(ctx: click.Context, file: str, as_json: bool):
    """Find links to FILE from any document of the workspace.

    FILE does not have to exist, which helps find links to a deleted file.
    """
    service = _get_service(ctx)
    references = run_async(service.file_references(file))
    _print_references(service.root, references, as_json)


@cli.command()
@click.argument("file", type=click.Path(resolve_path=True))
@click.argument("line", type=click.IntRange(min=1))
@click.argument("col", type=click.IntRange(min=1))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def definition(ctx: click.Context, file: str, line: int, col: int, as_json: bool):
    """Show where the reference link at LINE:COL of FILE is defined."""
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    try:
        location = run_async(service.definition(file, _position(line, col)))
    except DocumentNotFoundError as e:
        _handle_error(ctx, e)

    if location is None:
        if as_json:
            output(None, as_json=True)
        else:
            click.echo("No definition found.")
        return

    data = _location_dict(service.root, location)
    if as_json:
        output(data, as_json=True)
    else:
        click.echo(f"{data['path']}:{data['start_line']}:{data['start_col']}")


# ─────────────────────────────────────────────────────────────────────────────
# Rename
# ─────────────────────────────────────────────────────────────────────────────


@cli.command()
@click.argument("file", type=click.Path(resolve_path=True))
@click.argument("line", type=click.IntRange(min=1))
@click.argument("col", type=click.IntRange(min=1))
@click.argument("new_name")
@click.option("--apply", "apply_edits", is_flag=True, help="Write the edits and renames to disk")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def rename(
    ctx: click.Context,
    file: str,
    line: int,
    col: int,
    new_name: str,
    apply_edits: bool,
    as_json: bool,
):
    """Rename the header, reference, link or file at LINE:COL of FILE.

    Without --apply the edits are only printed.

    \b
    Examples:
      txl rename guide.textile 1 5 "Getting started"
      txl rename guide.textile 12 9 ./setup.textile --apply
    """
    from .edits import apply_workspace_edit
    from .rename import NotRenamableError
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    position = _position(line, col)

    async def compute():
        preparation = await service.prepare_rename(file, position)
        edit = await service.rename(file, position, new_name)
        return preparation, edit

    try:
        preparation, edit = run_async(compute())
    except (DocumentNotFoundError, NotRenamableError) as e:
        _handle_error(ctx, e)

    edit = edit or WorkspaceEdit()
    data = {
        "placeholder": preparation.placeholder if preparation else None,
        **_edit_dict(service.root, edit),
        "applied": False,
    }

    if apply_edits:
        try:
            apply_workspace_edit(edit)
        except OSError as e:
            _handle_error(ctx, e)
        data["applied"] = True

    if as_json:
        output(data, as_json=True)
        return

    if not data["text_edits"] and not data["file_renames"]:
        click.echo("Nothing to rename.")
        return
    for text_edit in data["text_edits"]:
        click.echo(
            f"{text_edit['path']}:{text_edit['start_line']}:{text_edit['start_col']}: "
            f"-> {text_edit['new_text']}"
        )
    for file_rename in data["file_renames"]:
        click.echo(f"rename {file_rename['old_path']} -> {file_rename['new_path']}")
    if apply_edits:
        click.echo(f"Applied {edit.edit_count} edits and {len(edit.file_renames)} renames.")


# ─────────────────────────────────────────────────────────────────────────────
# Validate
# ─────────────────────────────────────────────────────────────────────────────


def _format_diagnostic(row: dict[str, Any]) -> str:
    return (
        f"{row['path']}:{row['start_line']}:{row['start_col']}: "
        f"{row['severity']}: {row['message']} [{row['code']}]"
    )


@cli.command()
@click.argument("files", nargs=-1, type=click.Path(resolve_path=True))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def check(ctx: click.Context, files: tuple[str, ...], as_json: bool):
    """Report broken links in FILES, or in every document.

    Exits with status 1 when any diagnostic is at error level.

    \b
    Examples:
      txl check
      txl check guide.textile setup.textile --json
    """
    from .service import DocumentNotFoundError

    service = _get_service(ctx)
    try:
        results = run_async(service.check(files))
    except DocumentNotFoundError as e:
        _handle_error(ctx, e)

    rows = [
        _diagnostic_dict(service.root, uri, diagnostic)
        for uri, diagnostics in sorted(results.items())
        for diagnostic in diagnostics
    ]
    if as_json:
        output(rows, as_json=True)
    elif rows:
        for row in rows:
            click.echo(_format_diagnostic(row))
    elif not ctx.obj.get("quiet"):
        click.echo(f"No problems found in {len(results)} documents.")

    if any(row["severity"] == "error" for row in rows):
        sys.exit(1)


@cli.command()
@click.pass_context
def watch(ctx: click.Context):
    """Validate every document, then revalidate as files change. Ctrl-C to stop."""
    from .diagnostics import InMemoryDiagnosticReporter

    service = _get_service(ctx)
    root = service.root

    def report(uri: Path, diagnostics: list[Diagnostic]) -> None:
        if not diagnostics:
            click.echo(f"{_display_path(root, uri)}: ok")
        for diagnostic in diagnostics:
            click.echo(_format_diagnostic(_diagnostic_dict(root, uri, diagnostic)))

    async def run() -> None:
        await service.workspace.get_all_documents()
        reporter = InMemoryDiagnosticReporter(service.workspace, on_change=report)
        async with service.workspace:
            manager = service.create_diagnostic_manager(reporter)
            try:
                await manager.ready
                click.echo(f"Watching {root} (Ctrl-C to stop)")
                await asyncio.Event().wait()
            finally:
                manager.close()
                service.close()

    try:
        run_async(run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


if __name__ == "__main__":
    cli()
