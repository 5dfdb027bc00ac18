"""
Field mapping from Azure DevOps work items to GitHub issues.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import MarkupConversionError
from .markup import html_to_markdown
from .models import (
    FIELD_ACCEPTANCE_CRITERIA,
    FIELD_AREA_PATH,
    FIELD_PRIORITY,
    FIELD_REPRO_STEPS,
    FIELD_SEVERITY,
    IssueState,
    SourceComment,
    SourceItem,
    TargetComment,
    TargetRecord,
)

if TYPE_CHECKING:
    from .config import FieldMappingConfig

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

OPEN_STATES = frozenset({"new", "active", "approved", "committed", "in progress", "resolved"})
CLOSED_STATES = frozenset({"done", "closed", "removed"})

COMMENT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


class FieldMapper:
    """Maps work items and their comments to GitHub issues and comments.

    Mapping never fails: fields that cannot be mapped produce empty output,
    and markup conversion errors are logged and treated as empty content.
    """

    def __init__(
        self,
        field_mapping: FieldMappingConfig,
        user_mapping: Mapping[str, str] | None = None,
        *,
        converter: Callable[[str], str] = html_to_markdown,
    ) -> None:
        self.field_mapping: FieldMappingConfig = field_mapping
        self.user_mapping: Mapping[str, str] = user_mapping or {}
        self.converter: Callable[[str], str] = converter

    def map_to_record(self, item: SourceItem) -> TargetRecord:
        """Map a work item to the GitHub issue that represents it."""
        return TargetRecord(
            title=item.title,
            body=self._build_body(item),
            state=self.map_state(item.state),
            labels=self.map_labels(item),
            assignees=self.map_assignees(item),
            metadata={
                "original_id": item.id,
                "original_type": item.work_item_type,
                "original_url": item.url,
            },
            source_id=item.id,
        )

    def _build_body(self, item: SourceItem) -> str:
        body = f"> Issue imported from Azure DevOps [#{item.id}]({item.url})"
        body += "\n\n" + self.convert(item.description)

        acceptance_criteria, present = item.field_text(FIELD_ACCEPTANCE_CRITERIA)
        if present and acceptance_criteria:
            body += "\n\n## Acceptance Criteria\n" + self.convert(acceptance_criteria)

        repro_steps, present = item.field_text(FIELD_REPRO_STEPS)
        if present and repro_steps:
            body += "\n\n## Reproduction Steps\n" + self.convert(repro_steps)

        return body

    def map_state(self, source_state: str) -> IssueState:
        """Translate a work item state to an issue state.

        Configured translations are matched exactly; otherwise well-known
        state names are classified case-insensitively and anything unknown
        stays open.
        """
        configured = self.field_mapping.state_mapping.get(source_state)
        if configured is not None:
            return "closed" if configured.strip().lower() == "closed" else "open"

        lowered = source_state.lower()
        if lowered in OPEN_STATES:
            return "open"
        if lowered in CLOSED_STATES:
            return "closed"
        return "open"

    def map_labels(self, item: SourceItem) -> list[str]:
        labels: list[str] = []

        labels.extend(self.field_mapping.type_mapping.get(item.work_item_type.lower(), []))

        priority, present = item.field_text(FIELD_PRIORITY)
        if present:
            labels.extend(self.field_mapping.priority_mapping.get(priority, []))

        severity, present = item.field_text(FIELD_SEVERITY)
        if present and self.field_mapping.include_severity_label:
            labels.append(f"severity:{severity.lower()}")

        area_path, present = item.field_text(FIELD_AREA_PATH)
        if present and self.field_mapping.include_area_path_label:
            path_parts = area_path.split("\\")
            if len(path_parts) > 1:
                labels.append(f"area:{path_parts[-1].lower()}")

        labels.extend(tag.strip().lower() for tag in item.tags)

        return deduplicate_labels(labels)

    def map_assignees(self, item: SourceItem) -> list[str]:
        """Resolve the assigned user through the configured user mapping.

        Candidates are tried in order: unique name, email, display name. The
        first hit wins. There is no fallback when nothing matches.
        """
        assigned_to = item.assigned_to
        if assigned_to is None or not self.user_mapping:
            return []

        candidates = (
            assigned_to.unique_name.lower(),
            assigned_to.email.lower(),
            assigned_to.display_name.lower(),
        )
        for candidate in candidates:
            github_user = self.user_mapping.get(candidate)
            if github_user is not None:
                return [github_user]

        logger.debug(f"No GitHub user mapped for {assigned_to.display_name or assigned_to.unique_name}")
        return []

    def map_comments(self, comments: Sequence[SourceComment]) -> list[TargetComment]:
        """Map work item comments to issue comments, keeping their order."""
        if not comments:
            return []

        tz = self._comment_timezone()
        github_comments: list[TargetComment] = []
        for comment in comments:
            body = self.convert(comment.text)
            author = comment.created_by.display_name
            if author:
                timestamp = comment.created_date.astimezone(tz).strftime(COMMENT_TIMESTAMP_FORMAT)
                body = f"*Comment by {author} on {timestamp}:*\n\n{body}"
            github_comments.append(TargetComment(body=body))

        return github_comments

    def _comment_timezone(self) -> dt.tzinfo | None:
        """Return the configured time zone, or None for the local one."""
        try:
            return ZoneInfo(self.field_mapping.time_zone)
        except (ZoneInfoNotFoundError, ValueError, TypeError, OSError) as e:
            logger.warning(
                f"Unknown time zone '{self.field_mapping.time_zone}', using local time for comments: {e}"
            )
            return None

    def convert(self, content: str) -> str:
        """Convert rich text to Markdown, returning an empty string on failure."""
        if not content:
            return ""

        try:
            converted = self.converter(content)
        except MarkupConversionError:
            logger.exception("Failed to convert HTML content to Markdown")
            return ""

        return converted.strip()


def deduplicate_labels(labels: Sequence[str]) -> list[str]:
    """Drop empty and repeated labels, keeping the first occurrence."""
    seen: set[str] = set()
    result: list[str] = []
    for label in labels:
        if label and label not in seen:
            seen.add(label)
            result.append(label)
    return result
