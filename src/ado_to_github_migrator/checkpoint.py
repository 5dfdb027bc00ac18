"""Progress checkpoint and report persistence.

Both files are indented JSON. Writes go to a temporary file next to the target
which is then moved into place, so an interrupted write leaves the previous
file intact.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import MigrationMapping, MigrationReport

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class Checkpoint:
    """Resumable progress of a migration run.

    Owned by a single engine for the lifetime of a run.
    """

    last_processed_id: int = 0
    processed_items: set[int] = field(default_factory=set)
    failed_items: set[int] = field(default_factory=set)
    mappings: list[MigrationMapping] = field(default_factory=list)
    start_time: dt.datetime = field(default_factory=_now)
    last_update: dt.datetime | None = None

    def is_processed(self, item_id: int) -> bool:
        return item_id in self.processed_items

    def mark_processed(self, item_id: int) -> None:
        self.processed_items.add(item_id)
        self.failed_items.discard(item_id)
        self.last_processed_id = item_id
        self.last_update = _now()

    def mark_failed(self, item_id: int) -> None:
        self.failed_items.add(item_id)
        self.last_update = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_processed_id": self.last_processed_id,
            "processed_items": sorted(self.processed_items),
            "failed_items": sorted(self.failed_items),
            "mappings": [mapping.to_dict() for mapping in self.mappings],
            "start_time": self.start_time.isoformat(),
            "last_update": self.last_update.isoformat() if self.last_update else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        last_update = data.get("last_update")
        start_time = data.get("start_time")
        return cls(
            last_processed_id=int(data.get("last_processed_id") or 0),
            processed_items={int(item_id) for item_id in data.get("processed_items") or []},
            failed_items={int(item_id) for item_id in data.get("failed_items") or []},
            mappings=[MigrationMapping.from_dict(mapping) for mapping in data.get("mappings") or []],
            start_time=dt.datetime.fromisoformat(start_time) if start_time else _now(),
            last_update=dt.datetime.fromisoformat(last_update) if last_update else None,
        )

    @classmethod
    def load(cls, path: str | Path) -> Checkpoint:
        """Read a checkpoint file.

        Raises:
            OSError: If the file cannot be read
            ValueError: If the file is not a valid checkpoint
        """
        with Path(path).open(encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            msg = f"Checkpoint file {path} does not contain an object"
            raise ValueError(msg)
        try:
            return cls.from_dict(data)
        except (KeyError, TypeError) as e:
            msg = f"Malformed checkpoint file {path}: {e}"
            raise ValueError(msg) from e

    def save(self, path: str | Path) -> None:
        """Write the checkpoint, replacing any previous one.

        Raises:
            OSError: If the file cannot be written
        """
        write_json(Path(path), self.to_dict())


def write_json(path: Path, data: dict[str, Any]) -> None:
    """Atomically write ``data`` as indented JSON to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def default_report_path(report: MigrationReport) -> Path:
    return Path("reports") / f"migration_report_{report.start_time.strftime('%Y%m%d_%H%M%S')}.json"


def save_report(report: MigrationReport, path: str | Path | None = None) -> Path:
    """Write the run report and return where it went.

    Raises:
        OSError: If the file cannot be written
    """
    report_path = Path(path) if path else default_report_path(report)
    write_json(report_path, report.to_dict())
    logger.info(f"Migration report saved to {report_path}")
    return report_path
