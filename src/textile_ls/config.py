"""Configuration management for textile-ls.

This module contains the configurable constants of the language service and
the per-workspace ``.textilels.yaml`` loader. Magic numbers are documented
here rather than scattered throughout the codebase.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .events import Event

log = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a workspace configuration file cannot be used."""

    def __init__(self, path: Path, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


# =============================================================================
# Constants
# =============================================================================

# Extension added to extension-less link targets and used for discovery
DEFAULT_EXTENSION = ".textile"

# Debounce window between an edit and diagnostics recomputation
DIAGNOSTIC_DELAY_SECONDS = 0.3

# Concurrent file-link validations per document
FILE_LINK_CONCURRENCY = 10

# Concurrent reads when loading every document of a workspace
DOCUMENT_LOAD_CONCURRENCY = 20

# Debounce window for batching filesystem watcher events
WATCHER_DEBOUNCE_SECONDS = 0.1

# Per-workspace configuration file, looked up at the workspace root
CONFIG_FILENAME = ".textilels.yaml"

# Directories never scanned for documents
EXCLUDED_DIRECTORIES = ("node_modules", ".git")


DiagnosticLevel = Literal["ignore", "warning", "error"]


class DiagnosticOptions(BaseModel):
    """Which link checks run and how loudly they report."""

    enabled: bool = True
    validate_file_links: DiagnosticLevel = "warning"
    validate_fragment_links: DiagnosticLevel = "warning"
    # None inherits validate_fragment_links
    validate_textile_file_link_fragments: DiagnosticLevel | None = None
    validate_references: DiagnosticLevel = "warning"
    ignore_links: list[str] = Field(default_factory=list)  # Glob patterns

    @property
    def file_link_fragment_level(self) -> DiagnosticLevel:
        return self.validate_textile_file_link_fragments or self.validate_fragment_links


class LanguageServiceConfig(BaseModel):
    """Contents of ``.textilels.yaml``."""

    extension: str = DEFAULT_EXTENSION
    diagnostic_delay: float = DIAGNOSTIC_DELAY_SECONDS
    file_link_concurrency: int = FILE_LINK_CONCURRENCY
    exclude: list[str] = Field(default_factory=lambda: list(EXCLUDED_DIRECTORIES))
    diagnostics: DiagnosticOptions = Field(default_factory=DiagnosticOptions)


def get_workspace_root(start: Path | None = None) -> Path:
    """Get the workspace root directory.

    Resolution order: ``TEXTILE_LS_ROOT``, the nearest ancestor of ``start``
    (default: cwd) holding a ``.textilels.yaml``, then ``start`` itself.
    """
    root = os.environ.get("TEXTILE_LS_ROOT")
    if root:
        return Path(root).resolve()

    start = (start or Path.cwd()).resolve()
    for candidate in (start, *start.parents):
        if (candidate / CONFIG_FILENAME).is_file():
            return candidate
    return start


def load_config(root: Path) -> LanguageServiceConfig:
    """Load the workspace configuration.

    Args:
        root: Workspace root directory.

    Returns:
        Parsed configuration, or defaults when no config file exists.

    Raises:
        ConfigurationError: If the file is unreadable, not YAML, or invalid.
    """
    path = root / CONFIG_FILENAME
    if not path.exists():
        return LanguageServiceConfig()

    try:
        raw: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(path, f"cannot read file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(path, f"invalid YAML: {e}") from e

    if raw is None:
        return LanguageServiceConfig()
    if not isinstance(raw, dict):
        raise ConfigurationError(path, "expected a mapping at the top level")

    try:
        config = LanguageServiceConfig.model_validate(raw)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(path, errors) from e

    log.debug("Loaded configuration from %s", path)
    return config


class DiagnosticConfiguration:
    """Current diagnostic options, with a change notification."""

    def __init__(self, options: DiagnosticOptions | None = None):
        self._options = options or DiagnosticOptions()
        self.on_did_change: Event[DiagnosticOptions] = Event()

    def get_options(self, uri: Path) -> DiagnosticOptions:
        return self._options

    def update(self, options: DiagnosticOptions) -> None:
        self._options = options
        self.on_did_change.fire(options)
