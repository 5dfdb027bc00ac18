"""
Azure DevOps source client built on the work item tracking REST API.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Any, Final

import requests

from . import utils
from .exceptions import SourceError
from .models import Identity, SourceComment, SourceItem

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .config import AzureDevOpsConfig

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "ADO_TOKEN"  # noqa: S105
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "azure-devops/cli/token"  # noqa: S105

API_VERSION: Final[str] = "7.1"
COMMENTS_API_VERSION: Final[str] = "7.1-preview.4"
# Maximum number of IDs accepted by the work items batch endpoint
WORK_ITEM_BATCH_SIZE: Final[int] = 200
REQUEST_TIMEOUT: Final[int] = 60


def get_token(configured: str = "") -> str | None:
    """Get the PAT from config, env var ADO_TOKEN, or the default pass location."""
    token = utils.resolve_token(configured, _TOKEN_ENV_VAR, _DEFAULT_TOKEN_PASS_PATH)
    if token is None:
        logger.warning("No Azure DevOps token specified nor found")
    return token


def get_session(token: str | None) -> requests.Session:
    """Get a requests session authenticated with a personal access token."""
    session = requests.Session()
    if token:
        session.auth = ("", token)
    session.headers.update({"Accept": "application/json"})
    return session


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def build_default_query(project: str, work_item_types: Sequence[str], states: Sequence[str], area_paths: Sequence[str]) -> str:
    """Build the WIQL query used when neither IDs nor WIQL are configured."""
    query = f"SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = {_quote(project)}"

    if work_item_types:
        query += f" AND [System.WorkItemType] IN ({', '.join(_quote(t) for t in work_item_types)})"

    if states:
        query += f" AND [System.State] IN ({', '.join(_quote(s) for s in states)})"

    if area_paths:
        conditions = " OR ".join(f"[System.AreaPath] UNDER {_quote(path)}" for path in area_paths)
        query += f" AND ({conditions})"

    return query + " ORDER BY [System.Id]"


def _parse_timestamp(value: object) -> dt.datetime:
    if isinstance(value, str) and value:
        try:
            parsed = dt.datetime.fromisoformat(value)
        except ValueError:
            logger.debug(f"Unparsable timestamp from Azure DevOps: {value}")
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.UTC)
    return dt.datetime.fromtimestamp(0, dt.UTC)


class AzureDevOpsSource:
    """Retrieves work items and comments from an Azure DevOps project."""

    def __init__(self, config: AzureDevOpsConfig, *, session: requests.Session | None = None) -> None:
        self.config: AzureDevOpsConfig = config
        self.base_url: str = f"{config.organization_url.rstrip('/')}/{config.project}/_apis/wit"
        self.session: requests.Session = session or get_session(get_token(config.personal_access_token))

    def _request(self, method: str, path: str, *, api_version: str = API_VERSION, **kwargs: Any) -> dict[str, Any]:
        params = dict(kwargs.pop("params", None) or {})
        params["api-version"] = api_version
        url = f"{self.base_url}/{path}"
        try:
            response = self.session.request(method, url, params=params, timeout=REQUEST_TIMEOUT, **kwargs)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            msg = f"Azure DevOps request {method} {path} failed with HTTP {e.response.status_code}: {e}"
            raise SourceError(msg) from e
        except (requests.RequestException, ValueError) as e:
            msg = f"Azure DevOps request {method} {path} failed: {e}"
            raise SourceError(msg) from e

        if not isinstance(data, dict):
            msg = f"Unexpected response from Azure DevOps for {path}"
            raise SourceError(msg)
        return data

    def _execute_wiql(self, wiql: str) -> list[int]:
        data = self._request("POST", "wiql", json={"query": wiql})
        return [int(work_item["id"]) for work_item in data.get("workItems") or [] if "id" in work_item]

    def test_connection(self) -> None:
        logger.info("Testing Azure DevOps connection...")
        self._request("POST", "wiql", params={"$top": 1}, json={"query": build_default_query(self.config.project, [], [], [])})
        logger.info("Azure DevOps connection successful")

    def get_work_item_ids(self) -> list[int]:
        """Resolve the configured selection to work item IDs."""
        query = self.config.query
        if query.ids:
            return [int(item_id) for item_id in query.ids]
        if query.wiql:
            return self._execute_wiql(query.wiql)
        return self._execute_wiql(
            build_default_query(self.config.project, query.work_item_types, query.states, query.area_paths)
        )

    def fetch_items(self) -> list[SourceItem]:
        logger.info("Retrieving work items from Azure DevOps...")
        ids = self.get_work_item_ids()
        if not ids:
            logger.warning("No work items found matching the query")
            return []

        logger.info(f"Found {len(ids)} work items, retrieving details")
        items: list[SourceItem] = []
        for start in range(0, len(ids), WORK_ITEM_BATCH_SIZE):
            chunk = ids[start : start + WORK_ITEM_BATCH_SIZE]
            logger.debug(f"Retrieving work items {start + 1}-{start + len(chunk)}")
            data = self._request(
                "GET",
                "workitems",
                params={"ids": ",".join(str(item_id) for item_id in chunk), "$expand": "all", "errorPolicy": "omit"},
            )
            # errorPolicy=omit returns null for IDs that were deleted or are not visible
            items.extend(self._to_source_item(work_item) for work_item in data.get("value") or [] if work_item)

        return items

    @staticmethod
    def _to_source_item(data: dict[str, Any]) -> SourceItem:
        relations = [relation for relation in data.get("relations") or [] if isinstance(relation, dict)]
        attachments = [relation for relation in relations if relation.get("rel") == "AttachedFile"]
        return SourceItem(
            id=int(data["id"]),
            url=data.get("url") or "",
            rev=int(data.get("rev") or 0),
            fields=dict(data.get("fields") or {}),
            attachments=tuple(attachments),
            relations=tuple(relation for relation in relations if relation.get("rel") != "AttachedFile"),
        )

    def fetch_comments(self, item_id: int) -> list[SourceComment]:
        comments: list[SourceComment] = []
        params: dict[str, Any] = {"order": "asc"}
        while True:
            data = self._request(
                "GET", f"workItems/{item_id}/comments", api_version=COMMENTS_API_VERSION, params=params
            )
            comments.extend(
                SourceComment(
                    id=int(comment.get("id") or 0),
                    text=comment.get("text") or "",
                    created_by=Identity.from_api(comment.get("createdBy") or {}),
                    created_date=_parse_timestamp(comment.get("createdDate")),
                )
                for comment in data.get("comments") or []
            )
            token = data.get("continuationToken")
            if not token:
                break
            params = {"order": "asc", "continuationToken": token}

        return comments
