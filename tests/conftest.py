"""
Pytest configuration and fixtures.

Integration tests fail when the code under test logs a warning; unit tests
do not. The fakes below implement the SourceClient and SinkClient protocols in
process and record every call so tests can assert which remote operations
the engine performed.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any

from typing_extensions import override

import pytest

from ado_to_github_migrator.config import FieldMappingConfig, MigrationConfig
from ado_to_github_migrator.exceptions import SourceError, TargetError
from ado_to_github_migrator.mapper import FieldMapper
from ado_to_github_migrator.models import (
    CreatedRecord,
    ExistingRecord,
    Identity,
    SourceComment,
    SourceItem,
)

if TYPE_CHECKING:
    from collections.abc import Generator, Sequence
    from pathlib import Path

    from ado_to_github_migrator.models import IssueState, TargetComment, TargetRecord


def make_item(item_id: int, **fields: Any) -> SourceItem:
    """Build a work item with a title and the given extra fields (keyed by reference name)."""
    base: dict[str, Any] = {
        "System.Title": f"Work item {item_id}",
        "System.WorkItemType": "Bug",
        "System.State": "Active",
    }
    base.update(fields)
    return SourceItem(
        id=item_id,
        url=f"https://dev.azure.com/org/project/_apis/wit/workItems/{item_id}",
        rev=1,
        fields=base,
    )


def make_comment(text: str, author: str = "Jane Doe", when: dt.datetime | None = None) -> SourceComment:
    return SourceComment(
        text=text,
        created_by=Identity(display_name=author),
        created_date=when or dt.datetime(2024, 1, 15, 10, 30, 45, tzinfo=dt.UTC),
    )


# Warning records logged by the code under test, per integration test node ID
_integration_warnings: dict[str, list[logging.LogRecord]] = {}


class _IntegrationWarningHandler(logging.Handler):
    def __init__(self, nodeid: str) -> None:
        super().__init__(level=logging.WARNING)
        self.nodeid: str = nodeid

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_warnings.setdefault(self.nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(request: pytest.FixtureRequest) -> Generator[None]:
    """Collect WARNING and above log records while an ``integration`` test runs.

    A real migration against healthy systems should not warn (missing token,
    unknown time zone, failed comment). Unit tests provoke warnings on purpose
    and are not checked.
    """
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    handler = _IntegrationWarningHandler(request.node.nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    outcome = yield
    report = outcome.get_result()
    if call.when != "call":
        return

    records = _integration_warnings.pop(item.nodeid, [])
    if records and report.outcome == "passed":
        report.outcome = "failed"
        report.longrepr = f"{len(records)} warning(s) logged during integration test:\n" + "\n".join(
            f"  - {r.levelname}: {r.getMessage()} ({r.name}:{r.lineno})" for r in records
        )


class FakeSource:
    """In-memory SourceClient."""

    def __init__(
        self,
        items: Sequence[SourceItem] = (),
        comments: dict[int, list[SourceComment]] | None = None,
    ) -> None:
        self.items: list[SourceItem] = list(items)
        self.comments: dict[int, list[SourceComment]] = comments or {}
        self.fail_connection: bool = False
        self.fail_fetch: bool = False
        self.fail_comments_for: set[int] = set()
        self.calls: list[tuple[str, Any]] = []

    def test_connection(self) -> None:
        self.calls.append(("test_connection", None))
        if self.fail_connection:
            msg = "unauthorized"
            raise SourceError(msg)

    def fetch_items(self) -> list[SourceItem]:
        self.calls.append(("fetch_items", None))
        if self.fail_fetch:
            msg = "WIQL query failed"
            raise SourceError(msg)
        return list(self.items)

    def fetch_comments(self, item_id: int) -> list[SourceComment]:
        self.calls.append(("fetch_comments", item_id))
        if item_id in self.fail_comments_for:
            msg = f"comments unavailable for {item_id}"
            raise SourceError(msg)
        return list(self.comments.get(item_id, []))


class FakeSink:
    """In-memory SinkClient that numbers created issues from 1."""

    def __init__(self) -> None:
        self.created: list[TargetRecord] = []
        self.comments: list[tuple[int, str]] = []
        self.states: list[tuple[int, str]] = []
        self.ensured_labels: list[list[str]] = []
        self.existing: dict[int, list[ExistingRecord]] = {}
        self.fail_connection: bool = False
        self.fail_create_for: set[int] = set()
        self.fail_search_for: set[int] = set()
        self.fail_comments: bool = False
        self.fail_set_state: bool = False
        self.fail_labels_containing: str | None = None
        self.calls: list[tuple[str, Any]] = []

    def test_connection(self) -> None:
        self.calls.append(("test_connection", None))
        if self.fail_connection:
            msg = "repository not found"
            raise TargetError(msg)

    def find_by_reference(self, item_id: int) -> list[ExistingRecord]:
        self.calls.append(("find_by_reference", item_id))
        if item_id in self.fail_search_for:
            msg = "search rate limit exceeded"
            raise TargetError(msg)
        return list(self.existing.get(item_id, []))

    def create(self, record: TargetRecord) -> CreatedRecord:
        self.calls.append(("create", record.source_id))
        if record.source_id in self.fail_create_for:
            msg = "validation failed"
            raise TargetError(msg)
        self.created.append(record)
        number = len(self.created)
        # Later searches find what this run created
        self.existing[record.source_id] = [ExistingRecord(number=number, url=f"https://github.com/o/r/issues/{number}")]
        return CreatedRecord(number=number, url=f"https://github.com/o/r/issues/{number}")

    def create_comment(self, record_id: int, comment: TargetComment) -> None:
        self.calls.append(("create_comment", record_id))
        if self.fail_comments:
            msg = "comment creation failed"
            raise TargetError(msg)
        self.comments.append((record_id, comment.body))

    def set_state(self, record_id: int, state: IssueState) -> None:
        self.calls.append(("set_state", record_id))
        if self.fail_set_state:
            msg = "cannot close issue"
            raise TargetError(msg)
        self.states.append((record_id, state))

    def ensure_labels_exist(self, labels: Sequence[str]) -> None:
        self.calls.append(("ensure_labels_exist", list(labels)))
        if self.fail_labels_containing is not None and self.fail_labels_containing in labels:
            msg = f"cannot create label {self.fail_labels_containing}"
            raise TargetError(msg)
        self.ensured_labels.append(list(labels))


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def field_mapping() -> FieldMappingConfig:
    return FieldMappingConfig(
        type_mapping={"bug": ["bug"], "user story": ["enhancement"]},
        priority_mapping={"1": ["priority:critical"], "2": ["priority:high"]},
        include_severity_label=True,
        include_area_path_label=True,
        time_zone="UTC",
    )


@pytest.fixture
def mapper(field_mapping: FieldMappingConfig) -> FieldMapper:
    return FieldMapper(field_mapping, {"jdoe@example.com": "janedoe"})


@pytest.fixture
def migration_config(tmp_path: Path) -> MigrationConfig:
    return MigrationConfig(
        batch_size=2,
        batch_delay=0.0,
        checkpoint_file=str(tmp_path / "migration_checkpoint.json"),
    )
