"""Protocols defining the contracts for source and target systems.

The migration architecture separates concerns into three components:

1. SourceClient: Retrieves work items and comments (Azure DevOps)
2. SinkClient: Creates issues, comments and labels (GitHub)
3. MigrationEngine: Orchestrates the flow, idempotency and progress tracking

This separation allows testing the engine with in-process fakes and keeps
source-specific API quirks out of the orchestration code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .models import CreatedRecord, ExistingRecord, IssueState, SourceComment, SourceItem, TargetComment, TargetRecord


class SourceClient(Protocol):
    """Protocol for retrieving data from the source system.

    Implementations raise a MigrationError subclass on failure. Paging and
    chunking of remote requests are the implementation's concern; the engine
    only sees fully materialized lists.
    """

    def test_connection(self) -> None:
        """Verify that the source can be queried.

        Raises:
            MigrationError: If the source is unreachable or access is denied
        """
        ...

    def fetch_items(self) -> list[SourceItem]:
        """Return every work item selected for migration, in migration order."""
        ...

    def fetch_comments(self, item_id: int) -> list[SourceComment]:
        """Return all comments of a work item in chronological order."""
        ...


class SinkClient(Protocol):
    """Protocol for creating records in the target system.

    The engine calls methods in this order for each work item:
    1. find_by_reference() - Detect records created by an earlier run
    2. create() - Create the issue
    3. create_comment() - Add migrated comments (optional)
    4. set_state() - Close the issue when the mapped state is closed

    In dry runs only ensure_labels_exist() is called.
    """

    def test_connection(self) -> None:
        """Verify that the target repository is accessible.

        Raises:
            MigrationError: If the target is unreachable or access is denied
        """
        ...

    def find_by_reference(self, item_id: int) -> list[ExistingRecord]:
        """Return existing records whose body references the given work item."""
        ...

    def create(self, record: TargetRecord) -> CreatedRecord:
        """Create a record and return its identity in the target."""
        ...

    def create_comment(self, record_id: int, comment: TargetComment) -> None:
        """Add a comment to an existing record."""
        ...

    def set_state(self, record_id: int, state: IssueState) -> None:
        """Open or close an existing record."""
        ...

    def ensure_labels_exist(self, labels: Sequence[str]) -> None:
        """Create any of the given labels that are missing, with a default colour."""
        ...
