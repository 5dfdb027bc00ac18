"""Data models exchanged between the source client, the mapper, the sink client
and the migration engine.

Source items keep their fields as an open mapping keyed by Azure DevOps field
reference name. Values arrive as whatever the REST API decoded them to, so the
accessors below return a typed value together with a presence flag instead of
coercing silently.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Final, Literal

FIELD_TITLE: Final[str] = "System.Title"
FIELD_DESCRIPTION: Final[str] = "System.Description"
FIELD_WORK_ITEM_TYPE: Final[str] = "System.WorkItemType"
FIELD_STATE: Final[str] = "System.State"
FIELD_ASSIGNED_TO: Final[str] = "System.AssignedTo"
FIELD_CREATED_BY: Final[str] = "System.CreatedBy"
FIELD_CREATED_DATE: Final[str] = "System.CreatedDate"
FIELD_TAGS: Final[str] = "System.Tags"
FIELD_AREA_PATH: Final[str] = "System.AreaPath"
FIELD_PRIORITY: Final[str] = "Microsoft.VSTS.Common.Priority"
FIELD_SEVERITY: Final[str] = "Microsoft.VSTS.Common.Severity"
FIELD_ACCEPTANCE_CRITERIA: Final[str] = "Microsoft.VSTS.Common.AcceptanceCriteria"
FIELD_REPRO_STEPS: Final[str] = "Microsoft.VSTS.TCM.ReproSteps"

IssueState = Literal["open", "closed"]
MappingStatus = Literal["success", "failed", "skipped"]


@dataclass(frozen=True)
class Identity:
    """A user reference as Azure DevOps embeds it in work items and comments."""

    display_name: str = ""
    email: str = ""
    unique_name: str = ""  # Login/alias, unique within the organization
    id: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> Identity:
        def text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        # Work item fields use "email"; comment authors only carry "uniqueName"
        return cls(
            display_name=text("displayName"),
            email=text("email"),
            unique_name=text("uniqueName"),
            id=text("id"),
        )


@dataclass(frozen=True)
class SourceComment:
    """A discussion entry on a work item."""

    text: str
    created_by: Identity
    created_date: dt.datetime
    id: int = 0


@dataclass(frozen=True)
class SourceItem:
    """A work item fetched from Azure DevOps.

    Attachments and relations are carried for completeness; the migration does
    not transfer them.
    """

    id: int
    url: str = ""
    rev: int = 0
    fields: dict[str, Any] = field(default_factory=dict)
    comments: tuple[SourceComment, ...] = ()
    attachments: tuple[dict[str, Any], ...] = ()
    relations: tuple[dict[str, Any], ...] = ()

    def field_text(self, name: str) -> tuple[str, bool]:
        """Return a field as text and whether it is present.

        Strings are returned verbatim. Integral numbers (e.g. Priority) are
        rendered as decimal text. Anything else counts as absent.
        """
        value = self.fields.get(name)
        if isinstance(value, str):
            return value, True
        if isinstance(value, bool):
            return "", False
        if isinstance(value, int):
            return str(value), True
        if isinstance(value, float) and value.is_integer():
            return str(int(value)), True
        return "", False

    def field_identity(self, name: str) -> Identity | None:
        value = self.fields.get(name)
        if isinstance(value, dict):
            return Identity.from_api(value)
        return None

    @property
    def title(self) -> str:
        return self.field_text(FIELD_TITLE)[0]

    @property
    def description(self) -> str:
        return self.field_text(FIELD_DESCRIPTION)[0]

    @property
    def work_item_type(self) -> str:
        return self.field_text(FIELD_WORK_ITEM_TYPE)[0]

    @property
    def state(self) -> str:
        return self.field_text(FIELD_STATE)[0]

    @property
    def assigned_to(self) -> Identity | None:
        return self.field_identity(FIELD_ASSIGNED_TO)

    @property
    def created_by(self) -> Identity | None:
        return self.field_identity(FIELD_CREATED_BY)

    @property
    def tags(self) -> list[str]:
        """Tags are a single semicolon-delimited string in Azure DevOps."""
        raw, present = self.field_text(FIELD_TAGS)
        if not present:
            return []
        return [part.strip() for part in raw.split(";") if part.strip()]


@dataclass
class TargetRecord:
    """A GitHub issue to be created."""

    title: str
    body: str
    state: IssueState
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    milestone: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    source_id: int = 0  # Originating work item ID


@dataclass
class TargetComment:
    """A comment on a GitHub issue."""

    body: str


@dataclass(frozen=True)
class ExistingRecord:
    """A GitHub issue found when searching for a work item reference."""

    number: int
    url: str = ""


@dataclass(frozen=True)
class CreatedRecord:
    """A GitHub issue as returned after creation."""

    number: int
    url: str = ""


def _format_datetime(value: dt.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: object) -> dt.datetime | None:
    if not isinstance(value, str) or not value:
        return None
    return dt.datetime.fromisoformat(value)


@dataclass
class MigrationMapping:
    """Outcome of processing one work item."""

    source_id: int
    target_id: int
    migrated_at: dt.datetime
    status: MappingStatus
    error_message: str = ""
    source_type: str = ""
    target_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source_id": self.source_id,
            "source_type": self.source_type,
            "target_id": self.target_id,
            "target_url": self.target_url,
            "migrated_at": _format_datetime(self.migrated_at),
            "status": self.status,
        }
        if self.error_message:
            data["error_message"] = self.error_message
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationMapping:
        migrated_at = _parse_datetime(data.get("migrated_at")) or dt.datetime.now(dt.UTC)
        return cls(
            source_id=int(data["source_id"]),
            target_id=int(data.get("target_id") or 0),
            migrated_at=migrated_at,
            status=data["status"],
            error_message=data.get("error_message") or "",
            source_type=data.get("source_type") or "",
            target_url=data.get("target_url") or "",
        )


@dataclass
class MigrationReport:
    """Summary of a migration run. This is the authoritative outcome ledger."""

    start_time: dt.datetime
    end_time: dt.datetime | None = None
    total_items: int = 0
    successful_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    mappings: list[MigrationMapping] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False
    cancelled: bool = False

    @property
    def processed_count(self) -> int:
        return self.successful_count + self.failed_count + self.skipped_count

    @property
    def duration(self) -> dt.timedelta | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": _format_datetime(self.start_time),
            "end_time": _format_datetime(self.end_time),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "total_work_items": self.total_items,
            "successful_count": self.successful_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "mappings": [mapping.to_dict() for mapping in self.mappings],
            "errors": list(self.errors),
        }
