"""Apply workspace edits to text and to files on disk."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterable
from pathlib import Path

from .document import TextDocument
from .models import TextEdit, WorkspaceEdit

log = logging.getLogger(__name__)


def apply_text_edits(document: TextDocument, edits: Iterable[TextEdit]) -> str:
    """Text of ``document`` with non-overlapping ``edits`` applied.

    Edits are applied from the end of the document backwards so earlier
    offsets stay valid.
    """
    text = document.text
    spans = sorted(
        ((document.offset_at(edit.range.start), document.offset_at(edit.range.end), edit.new_text) for edit in edits),
        key=lambda span: (span[0], span[1]),
        reverse=True,
    )
    for start, end, new_text in spans:
        text = text[:start] + new_text + text[end:]
    return text


def atomic_write_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """Write to a temp file in the same directory, then replace ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.tmp-{uuid.uuid4().hex}"
    try:
        with open(tmp_path, "w", encoding=encoding, newline="") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def apply_workspace_edit(edit: WorkspaceEdit) -> list[Path]:
    """Write ``edit`` to disk: text edits first, then file renames.

    Returns:
        Paths written or created, in the order they were touched.

    Raises:
        OSError: If a file cannot be read, written or renamed.
        FileExistsError: If a rename target already exists.
    """
    # Nothing is written when a rename would overwrite a file
    for rename in edit.file_renames:
        if rename.new_uri.exists():
            raise FileExistsError(f"Rename target already exists: {rename.new_uri}")

    touched: list[Path] = []
    for uri, edits in edit.text_edits.items():
        with open(uri, encoding="utf-8", newline="") as f:
            document = TextDocument(uri, f.read())
        atomic_write_text(uri, apply_text_edits(document, edits))
        touched.append(uri)
        log.debug(f"Applied {len(edits)} edits to {uri}")

    for rename in edit.file_renames:
        rename.new_uri.parent.mkdir(parents=True, exist_ok=True)
        rename.old_uri.rename(rename.new_uri)
        touched.append(rename.new_uri)
        log.info(f"Renamed {rename.old_uri} -> {rename.new_uri}")

    return touched
