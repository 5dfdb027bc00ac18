"""
Azure DevOps to GitHub Migration Tool

Migrates Azure DevOps work items to GitHub issues with comments, labels and
assignees, tracking progress in a resumable checkpoint.
"""

from __future__ import annotations

# Package version
__version__ = "0.1.0"

from .cli import main
from .engine import MigrationEngine
from .exceptions import (
    ConfigError,
    ConnectionTestError,
    MarkupConversionError,
    MigrationCancelledError,
    MigrationError,
    SourceError,
    TargetError,
)
from .mapper import FieldMapper
from .utils import setup_logging

# Public API
__all__ = [
    "ConfigError",
    "ConnectionTestError",
    "FieldMapper",
    "MarkupConversionError",
    "MigrationCancelledError",
    "MigrationEngine",
    "MigrationError",
    "SourceError",
    "TargetError",
    "main",
    "setup_logging",
]
