"""Migration engine that coordinates the source and sink clients.

Run Flow
--------
    INIT
      │ resume requested?
      ▼
    LOAD_CHECKPOINT   (failure: warning, continue with a fresh checkpoint)
      ▼
    TEST_CONNECTIONS  (failure: fatal, no item is touched)
      ▼
    FETCH_ITEMS       (failure: fatal)
      ▼
    DRY_RUN | LIVE_RUN
      ▼
    FINALIZE_REPORT

Dry runs map every item and make sure its labels exist in the target. They
never create issues and never touch the checkpoint.

Live runs process items in fixed-size batches. The checkpoint is saved after
each batch and a fixed delay separates non-empty batches.

Per-Item Flow
-------------
    ALREADY_PROCESSED?  checkpoint lookup, no remote calls   -> skipped
    DUPLICATE_IN_SINK?  search the target for a reference     -> skipped
    MAP                 field mapper, never fails
    CREATE              failure                               -> failed
    COMMENTS            best effort, warning only
    CLOSE               best effort, warning only             -> success

The two duplicate guards are independent: the search survives a lost
checkpoint, the checkpoint avoids a search for every known item.

Error Handling
--------------
- Connection test and fetch failures abort the run (MigrationError).
- Per-item failures are recorded in the report and the checkpoint; the run
  continues with the next item.
- Comment migration, closing, and checkpoint load/save failures are logged
  as warnings.
- Nothing is retried automatically.

Cancellation
------------
An optional threading.Event is checked between phases and between batches.
A batch in progress always completes.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Final

from .checkpoint import Checkpoint
from .exceptions import ConnectionTestError, MigrationCancelledError, MigrationError
from .models import MappingStatus, MigrationMapping, MigrationReport

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Sequence

    from .config import MigrationConfig
    from .mapper import FieldMapper
    from .models import SourceItem
    from .protocols import SinkClient, SourceClient

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE: Final[int] = 10


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class MigrationEngine:
    """Runs one migration from a source client to a sink client.

    Usage:
        source = AzureDevOpsSource(config.azure_devops)
        sink = GitHubTarget(config.github)
        mapper = FieldMapper(config.migration.field_mapping, config.migration.user_mapping)
        engine = MigrationEngine(source, sink, mapper, config.migration)
        report = engine.run()

    An engine instance owns its checkpoint and report exclusively and is meant
    for a single run.
    """

    _source: SourceClient
    _sink: SinkClient

    def __init__(
        self,
        source: SourceClient,
        sink: SinkClient,
        mapper: FieldMapper,
        config: MigrationConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._source = source
        self._sink = sink
        self.mapper: FieldMapper = mapper
        self.config: MigrationConfig = config
        self._sleep: Callable[[float], None] = sleep

        self.report: MigrationReport = MigrationReport(start_time=_now(), dry_run=config.dry_run)
        self.checkpoint: Checkpoint = Checkpoint(start_time=self.report.start_time)
        self.checkpoint_path: Path = Path(config.checkpoint_file)

    @property
    def batch_size(self) -> int:
        if self.config.batch_size <= 0:
            return DEFAULT_BATCH_SIZE
        return self.config.batch_size

    def run(self, cancel_event: threading.Event | None = None) -> MigrationReport:
        """Execute the migration and return its report.

        Raises:
            ConnectionTestError: If either system fails its connection test
            MigrationCancelledError: If cancelled before item processing starts
            MigrationError: If the work items cannot be retrieved
        """
        logger.info("Starting migration process...")

        if self.config.resume_from_checkpoint:
            self.load_checkpoint()

        self._raise_if_cancelled(cancel_event)
        self.test_connections()

        self._raise_if_cancelled(cancel_event)
        items = self._fetch_items()
        self.report.total_items = len(items)
        logger.info(f"Found {len(items)} work items to migrate")

        self._raise_if_cancelled(cancel_event)
        if self.config.dry_run:
            logger.info("DRY RUN MODE - No changes will be made")
            self._perform_dry_run(items)
        else:
            self._perform_migration(items, cancel_event)

        self.report.end_time = _now()
        return self.report

    @staticmethod
    def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            msg = "Migration cancelled before processing work items"
            raise MigrationCancelledError(msg)

    def test_connections(self) -> None:
        """Test both collaborators, raising ConnectionTestError on the first failure."""
        logger.info("Testing service connections...")

        try:
            self._source.test_connection()
        except MigrationError as e:
            msg = f"Azure DevOps connection failed: {e}"
            raise ConnectionTestError(msg) from e

        try:
            self._sink.test_connection()
        except MigrationError as e:
            msg = f"GitHub connection failed: {e}"
            raise ConnectionTestError(msg) from e

        logger.info("All connections successful")

    def _fetch_items(self) -> list[SourceItem]:
        try:
            return self._source.fetch_items()
        except MigrationError as e:
            msg = f"Failed to retrieve work items: {e}"
            raise MigrationError(msg) from e

    def _perform_dry_run(self, items: Sequence[SourceItem]) -> None:
        logger.info("Performing dry run...")

        for index, item in enumerate(items, start=1):
            logger.info(f"Processing work item {index}/{len(items)}: #{item.id} {item.title}")
            record = self.mapper.map_to_record(item)

            try:
                self._sink.ensure_labels_exist(record.labels)
            except MigrationError as e:
                logger.error(f"Label validation failed for work item #{item.id}: {e}")  # noqa: TRY400
                self.report.failed_count += 1
                self.report.errors.append(f"Work Item {item.id}: {e}")
                continue

            logger.info(f"Work item #{item.id} would be migrated as '{record.title}'")
            logger.debug(f"Labels: {record.labels}, assignees: {record.assignees}, state: {record.state}")
            self.report.successful_count += 1

        logger.info(
            f"Dry run completed: {self.report.successful_count} successful, {self.report.failed_count} failed"
        )

    def _perform_migration(self, items: Sequence[SourceItem], cancel_event: threading.Event | None) -> None:
        logger.info("Starting actual migration...")
        batch_size = self.batch_size

        for start in range(0, len(items), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Migration cancelled after {start} of {len(items)} work items")
                self.report.cancelled = True
                break

            batch = items[start : start + batch_size]
            logger.info(f"Processing batch {start + 1}-{start + len(batch)} of {len(items)}")

            self._process_batch(batch)
            self.save_checkpoint()

            if batch and start + batch_size < len(items):
                logger.debug("Applying rate limiting...")
                self._sleep(self.config.batch_delay)

        logger.info(
            f"Migration completed: {self.report.successful_count} successful, "
            f"{self.report.failed_count} failed, {self.report.skipped_count} skipped"
        )

    def _process_batch(self, batch: Sequence[SourceItem]) -> None:
        for item in batch:
            try:
                self._process_item(item)
            except MigrationError as e:
                logger.error(f"Failed to process work item #{item.id}: {e}")  # noqa: TRY400
                self._record_failure(item, str(e))

    def _process_item(self, item: SourceItem) -> None:
        if self.checkpoint.is_processed(item.id):
            logger.debug(f"Work item #{item.id} already processed, skipping")
            self.report.skipped_count += 1
            return

        logger.info(f"Processing work item #{item.id}: {item.title}")

        try:
            existing = self._sink.find_by_reference(item.id)
        except MigrationError as e:
            msg = f"Failed to search for existing issues: {e}"
            raise MigrationError(msg) from e

        if existing:
            logger.info(f"Issue #{existing[0].number} already exists for work item #{item.id}, skipping")
            self.report.skipped_count += 1
            self._record_mapping(
                item, existing[0].number, "skipped", "Issue already exists", target_url=existing[0].url
            )
            return

        record = self.mapper.map_to_record(item)

        try:
            created = self._sink.create(record)
        except MigrationError as e:
            msg = f"Failed to create GitHub issue: {e}"
            raise MigrationError(msg) from e

        if self.config.include_comments:
            try:
                self._migrate_comments(item, created.number)
            except MigrationError as e:
                logger.warning(f"Failed to migrate comments for work item #{item.id}: {e}")

        if record.state == "closed":
            try:
                self._sink.set_state(created.number, "closed")
            except MigrationError as e:
                logger.warning(f"Failed to close issue #{created.number}: {e}")

        self._record_success(item, created.number, created.url)

    def _migrate_comments(self, item: SourceItem, issue_number: int) -> None:
        comments = self._source.fetch_comments(item.id)
        if not comments:
            return

        logger.debug(f"Migrating {len(comments)} comments for work item #{item.id}")
        for comment in self.mapper.map_comments(comments):
            self._sink.create_comment(issue_number, comment)

    def _record_success(self, item: SourceItem, issue_number: int, issue_url: str) -> None:
        self.report.successful_count += 1
        self.checkpoint.mark_processed(item.id)
        self._record_mapping(item, issue_number, "success", target_url=issue_url)

    def _record_failure(self, item: SourceItem, error_message: str) -> None:
        self.report.failed_count += 1
        self.checkpoint.mark_failed(item.id)
        self.report.errors.append(f"Work Item {item.id}: {error_message}")
        self._record_mapping(item, 0, "failed", error_message)

    def _record_mapping(
        self,
        item: SourceItem,
        issue_number: int,
        status: MappingStatus,
        error_message: str = "",
        *,
        target_url: str = "",
    ) -> None:
        mapping = MigrationMapping(
            source_id=item.id,
            target_id=issue_number,
            migrated_at=_now(),
            status=status,
            error_message=error_message,
            source_type=item.work_item_type,
            target_url=target_url,
        )
        self.report.mappings.append(mapping)
        self.checkpoint.mappings.append(mapping)

    def load_checkpoint(self) -> bool:
        """Replace the fresh checkpoint with the saved one. Failures are warnings."""
        try:
            self.checkpoint = Checkpoint.load(self.checkpoint_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load checkpoint from {self.checkpoint_path}: {e}")
            return False

        logger.info(
            f"Loaded checkpoint: {len(self.checkpoint.processed_items)} processed items, "
            f"last ID {self.checkpoint.last_processed_id}"
        )
        return True

    def save_checkpoint(self) -> bool:
        """Persist the checkpoint. Failures are warnings."""
        try:
            self.checkpoint.save(self.checkpoint_path)
        except OSError as e:
            logger.warning(f"Failed to save checkpoint to {self.checkpoint_path}: {e}")
            return False
        return True
