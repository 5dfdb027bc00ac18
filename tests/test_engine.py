"""Tests for the migration engine."""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING
from unittest.mock import Mock

import pytest
import requests
from conftest import FakeSink, FakeSource, make_comment, make_item

from ado_to_github_migrator.checkpoint import Checkpoint
from ado_to_github_migrator.config import GitHubConfig
from ado_to_github_migrator.engine import DEFAULT_BATCH_SIZE, MigrationEngine
from ado_to_github_migrator.exceptions import ConnectionTestError, MigrationCancelledError, MigrationError
from ado_to_github_migrator.github_utils import GitHubTarget
from ado_to_github_migrator.models import ExistingRecord

if TYPE_CHECKING:
    from pathlib import Path

    from ado_to_github_migrator.config import MigrationConfig
    from ado_to_github_migrator.mapper import FieldMapper


def _remote_item_calls(sink: FakeSink, item_id: int) -> list[str]:
    """Names of sink operations that referenced ``item_id``."""
    return [name for name, arg in sink.calls if arg == item_id and name in {"find_by_reference", "create"}]


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _engine(
    source: FakeSource,
    sink: FakeSink,
    mapper: FieldMapper,
    config: MigrationConfig,
    sleep: _RecordingSleep | None = None,
) -> MigrationEngine:
    return MigrationEngine(source, sink, mapper, config, sleep=sleep or _RecordingSleep())


@pytest.mark.unit
class TestDryRun:
    def test_label_failure_counts_as_failed_and_nothing_is_created(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource(
            [
                make_item(1),
                make_item(2, **{"System.Tags": "broken"}),
                make_item(3),
            ]
        )
        fake_sink.fail_labels_containing = "broken"
        config = migration_config.model_copy(update={"dry_run": True})

        report = _engine(source, fake_sink, mapper, config).run()

        assert report.dry_run
        assert report.total_items == 3
        assert report.successful_count == 2
        assert report.failed_count == 1
        assert report.skipped_count == 0
        assert report.errors == ["Work Item 2: cannot create label broken"]
        assert fake_sink.created == []
        assert not any(name in {"create", "create_comment", "set_state"} for name, _ in fake_sink.calls)

    def test_checkpoint_is_not_written(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig, tmp_path: Path
    ) -> None:
        config = migration_config.model_copy(update={"dry_run": True})

        _ = _engine(FakeSource([make_item(1)]), fake_sink, mapper, config).run()

        assert not (tmp_path / "migration_checkpoint.json").exists()


@pytest.mark.unit
class TestLiveRun:
    def test_creates_issue_with_comments_and_records_success(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(101)], comments={101: [make_comment("First"), make_comment("Second")]})

        report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.successful_count == 1
        assert [record.source_id for record in fake_sink.created] == [101]
        assert [number for number, _ in fake_sink.comments] == [1, 1]
        assert fake_sink.comments[0][1].endswith("First")
        mapping = report.mappings[0]
        assert (mapping.source_id, mapping.target_id, mapping.status) == (101, 1, "success")
        assert mapping.target_url == "https://github.com/o/r/issues/1"
        assert mapping.source_type == "Bug"
        assert report.end_time is not None

    def test_comments_skipped_when_disabled(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(101)], comments={101: [make_comment("First")]})
        config = migration_config.model_copy(update={"include_comments": False})

        _ = _engine(source, fake_sink, mapper, config).run()

        assert fake_sink.comments == []
        assert ("fetch_comments", 101) not in source.calls

    def test_comment_failure_keeps_item_successful(
        self,
        fake_sink: FakeSink,
        mapper: FieldMapper,
        migration_config: MigrationConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        source = FakeSource([make_item(7)], comments={7: [make_comment("Hello")]})
        fake_sink.fail_comments = True

        with caplog.at_level(logging.WARNING):
            report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.successful_count == 1
        assert report.failed_count == 0
        assert report.mappings[0].status == "success"
        assert report.mappings[0].error_message == ""
        assert any("comments for work item #7" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)

    def test_comment_fetch_failure_is_a_warning(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(7)])
        source.fail_comments_for = {7}

        report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.successful_count == 1
        assert report.errors == []

    def test_closed_item_is_closed_after_creation(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(5, **{"System.State": "Done"}), make_item(6)])

        _ = _engine(source, fake_sink, mapper, migration_config).run()

        assert fake_sink.states == [(1, "closed")]

    def test_close_failure_is_a_warning(
        self,
        fake_sink: FakeSink,
        mapper: FieldMapper,
        migration_config: MigrationConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        source = FakeSource([make_item(5, **{"System.State": "Closed"})])
        fake_sink.fail_set_state = True

        with caplog.at_level(logging.WARNING):
            report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.successful_count == 1
        assert any("Failed to close issue #1" in r.getMessage() for r in caplog.records)

    def test_create_failure_is_recorded_and_run_continues(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(1), make_item(2), make_item(3)])
        fake_sink.fail_create_for = {2}

        engine = _engine(source, fake_sink, mapper, migration_config)
        report = engine.run()

        assert (report.successful_count, report.failed_count, report.skipped_count) == (2, 1, 0)
        assert report.errors == ["Work Item 2: Failed to create GitHub issue: validation failed"]
        failed = [m for m in report.mappings if m.status == "failed"]
        assert [(m.source_id, m.target_id) for m in failed] == [(2, 0)]
        assert failed[0].error_message == "Failed to create GitHub issue: validation failed"
        assert engine.checkpoint.failed_items == {2}
        assert engine.checkpoint.processed_items == {1, 3}

    def test_search_failure_is_recorded_as_failed(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        fake_sink.fail_search_for = {4}

        report = _engine(FakeSource([make_item(4)]), fake_sink, mapper, migration_config).run()

        assert report.failed_count == 1
        assert report.errors[0].startswith("Work Item 4: Failed to search for existing issues")
        assert fake_sink.created == []

    def test_existing_issue_is_skipped(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(9)])
        second_sink = FakeSink()
        _ = _engine(source, second_sink, mapper, migration_config).run()
        fake_sink.existing = second_sink.existing

        report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.skipped_count == 1
        assert fake_sink.created == []
        mapping = report.mappings[0]
        assert (mapping.status, mapping.target_id, mapping.error_message) == ("skipped", 1, "Issue already exists")

    def test_counts_add_up_to_total(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        items = [make_item(item_id) for item_id in range(1, 8)]
        fake_sink.fail_create_for = {3}
        fake_sink.fail_search_for = {5}
        fake_sink.existing = {6: [ExistingRecord(number=99, url="https://github.com/o/r/issues/99")]}
        source = FakeSource(items)

        report = _engine(source, fake_sink, mapper, migration_config).run()

        assert report.processed_count == report.total_items == 7
        assert report.failed_count == 2
        assert report.skipped_count == 1
        assert report.successful_count == 4
        assert {m.status for m in report.mappings} == {"success", "failed", "skipped"}


@pytest.mark.unit
class TestTransportErrors:
    """Network failures raised inside the GitHub client stay per-item."""

    def test_connection_reset_fails_one_item_and_run_continues(
        self, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        repo = Mock()
        repo.create_issue.side_effect = [
            requests.exceptions.ConnectionError("reset by peer"),
            Mock(number=1, html_url="https://github.com/contoso/fabrikam/issues/1"),
        ]
        client = Mock()
        client.get_repo.return_value = repo
        client.search_issues.return_value = []
        target = GitHubTarget(GitHubConfig(owner="contoso", repository="fabrikam", token="t"), client=client)
        source = FakeSource([make_item(1), make_item(2)])

        engine = MigrationEngine(source, target, mapper, migration_config, sleep=_RecordingSleep())
        report = engine.run()

        assert (report.successful_count, report.failed_count) == (1, 1)
        assert report.errors[0].startswith("Work Item 1: Failed to create GitHub issue: Failed to create issue")
        assert "reset by peer" in report.errors[0]
        assert engine.checkpoint.processed_items == {2}
        with open(migration_config.checkpoint_file, encoding="utf-8") as f:
            assert json.load(f)["failed_items"] == [1]


@pytest.mark.unit
class TestResumeAndIdempotency:
    def test_resume_skips_checkpointed_items_without_remote_calls(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        saved = Checkpoint(last_processed_id=101, processed_items={101})
        saved.save(migration_config.checkpoint_file)
        config = migration_config.model_copy(update={"resume_from_checkpoint": True})

        report = _engine(FakeSource([make_item(101), make_item(102)]), fake_sink, mapper, config).run()

        assert _remote_item_calls(fake_sink, 101) == []
        assert _remote_item_calls(fake_sink, 102) == ["find_by_reference", "create"]
        assert report.skipped_count == 1
        assert report.successful_count == 1

    def test_missing_checkpoint_starts_fresh(
        self,
        fake_sink: FakeSink,
        mapper: FieldMapper,
        migration_config: MigrationConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        config = migration_config.model_copy(update={"resume_from_checkpoint": True})

        with caplog.at_level(logging.WARNING):
            report = _engine(FakeSource([make_item(1)]), fake_sink, mapper, config).run()

        assert report.successful_count == 1
        assert any("Failed to load checkpoint" in r.getMessage() for r in caplog.records)

    def test_checkpoint_saved_after_batches(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        _ = _engine(FakeSource([make_item(1), make_item(2), make_item(3)]), fake_sink, mapper, migration_config).run()

        with open(migration_config.checkpoint_file, encoding="utf-8") as f:
            data = json.load(f)
        assert data["processed_items"] == [1, 2, 3]
        assert data["last_processed_id"] == 3
        assert len(data["mappings"]) == 3

    def test_unwritable_checkpoint_is_a_warning(
        self,
        tmp_path: Path,
        fake_sink: FakeSink,
        mapper: FieldMapper,
        migration_config: MigrationConfig,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        config = migration_config.model_copy(update={"checkpoint_file": str(blocker / "checkpoint.json")})

        with caplog.at_level(logging.WARNING):
            report = _engine(FakeSource([make_item(1), make_item(2), make_item(3)]), fake_sink, mapper, config).run()

        assert report.successful_count == 3
        assert report.end_time is not None
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any("Failed to save checkpoint" in r.getMessage() for r in warnings)

    def test_second_run_creates_nothing(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(1), make_item(2)])
        config = migration_config.model_copy(update={"resume_from_checkpoint": True})

        first = _engine(source, fake_sink, mapper, config).run()
        second = _engine(source, fake_sink, mapper, config).run()

        assert first.successful_count == 2
        assert second.successful_count == 0
        assert second.skipped_count == 2
        assert len(fake_sink.created) == 2

    def test_second_run_without_checkpoint_relies_on_search(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(1), make_item(2)])

        _ = _engine(source, fake_sink, mapper, migration_config).run()
        second = _engine(source, fake_sink, mapper, migration_config).run()

        assert second.skipped_count == 2
        assert len(fake_sink.created) == 2


@pytest.mark.unit
class TestBatching:
    def test_delay_between_batches_only(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        sleep = _RecordingSleep()
        config = migration_config.model_copy(update={"batch_delay": 1.5})
        items = [make_item(item_id) for item_id in range(1, 6)]

        _ = _engine(FakeSource(items), fake_sink, mapper, config, sleep).run()

        # Batches of 2, 2, 1
        assert sleep.delays == [1.5, 1.5]

    def test_non_positive_batch_size_uses_default(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        engine = _engine(FakeSource(), fake_sink, mapper, migration_config.model_copy(update={"batch_size": 0}))
        assert engine.batch_size == DEFAULT_BATCH_SIZE

    def test_no_items(self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig) -> None:
        sleep = _RecordingSleep()

        report = _engine(FakeSource(), fake_sink, mapper, migration_config, sleep).run()

        assert report.total_items == 0
        assert report.processed_count == 0
        assert sleep.delays == []


@pytest.mark.unit
class TestFatalErrors:
    def test_source_connection_failure(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        source = FakeSource([make_item(1)])
        source.fail_connection = True

        with pytest.raises(ConnectionTestError, match="Azure DevOps connection failed: unauthorized"):
            _ = _engine(source, fake_sink, mapper, migration_config).run()

        assert ("fetch_items", None) not in source.calls

    def test_sink_connection_failure(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        fake_sink.fail_connection = True

        with pytest.raises(ConnectionTestError, match="GitHub connection failed: repository not found"):
            _ = _engine(FakeSource([make_item(1)]), fake_sink, mapper, migration_config).run()

    def test_fetch_failure(self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig) -> None:
        source = FakeSource([make_item(1)])
        source.fail_fetch = True

        with pytest.raises(MigrationError, match="Failed to retrieve work items: WIQL query failed"):
            _ = _engine(source, fake_sink, mapper, migration_config).run()

        assert fake_sink.created == []


@pytest.mark.unit
class TestCancellation:
    def test_cancel_before_start(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        event = threading.Event()
        event.set()

        with pytest.raises(MigrationCancelledError):
            _ = _engine(FakeSource([make_item(1)]), fake_sink, mapper, migration_config).run(event)

        assert fake_sink.calls == []

    def test_cancel_between_batches_finishes_current_batch(
        self, fake_sink: FakeSink, mapper: FieldMapper, migration_config: MigrationConfig
    ) -> None:
        event = threading.Event()
        items = [make_item(item_id) for item_id in range(1, 6)]

        def cancel_on_sleep(_seconds: float) -> None:
            event.set()

        engine = MigrationEngine(FakeSource(items), fake_sink, mapper, migration_config, sleep=cancel_on_sleep)
        report = engine.run(event)

        assert report.cancelled
        assert [record.source_id for record in fake_sink.created] == [1, 2]
        assert engine.checkpoint.processed_items == {1, 2}
