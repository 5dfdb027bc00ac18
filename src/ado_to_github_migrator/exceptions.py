"""
Custom exception classes for the Azure DevOps to GitHub migration tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigError(MigrationError):
    """Raised when the configuration file is missing, malformed or incomplete."""


class ConnectionTestError(MigrationError):
    """Raised when the source or target system cannot be reached."""


class SourceError(MigrationError):
    """Raised when the Azure DevOps API returns an error."""


class TargetError(MigrationError):
    """Raised when the GitHub API returns an error."""


class MigrationCancelledError(MigrationError):
    """Raised when a run is interrupted before item processing starts."""


class MarkupConversionError(MigrationError):
    """Raised when HTML content cannot be converted to Markdown."""
