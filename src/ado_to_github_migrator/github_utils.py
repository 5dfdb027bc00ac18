from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Final

import requests
from github import Auth, Github, GithubException, UnknownObjectException

from . import utils
from .exceptions import ConfigError, TargetError
from .models import CreatedRecord, ExistingRecord

if TYPE_CHECKING:
    from collections.abc import Sequence

    from github.Repository import Repository

    from .config import GitHubConfig
    from .models import IssueState, TargetComment, TargetRecord

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "GITHUB_TOKEN"  # noqa: S105
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "github/cli/token"  # noqa: S105

DEFAULT_LABEL_COLOR: Final[str] = "e1e4e8"


def get_token(configured: str = "") -> str | None:
    """Get GitHub token from config, env var GITHUB_TOKEN, or the default pass location."""
    return utils.resolve_token(configured, _TOKEN_ENV_VAR, _DEFAULT_TOKEN_PASS_PATH)


def get_client(config: GitHubConfig) -> Github:
    """Get a GitHub client authenticated with a token or as a GitHub App installation."""
    auth: Auth.Auth
    if config.uses_app_auth:
        try:
            private_key = Path(config.app_certificate_path).read_text(encoding="utf-8")
        except OSError as e:
            msg = f"Cannot read GitHub App certificate {config.app_certificate_path}: {e}"
            raise ConfigError(msg) from e
        auth = Auth.AppInstallationAuth(Auth.AppAuth(config.app_id, private_key), config.installation_id)
    else:
        token = get_token(config.token)
        if not token:
            msg = "GitHub token or GitHub App certificate is required"
            raise ConfigError(msg)
        auth = Auth.Token(token)

    return Github(auth=auth, base_url=config.base_url or "https://api.github.com")


def _is_already_exists_error(exc: GithubException) -> bool:
    """Check if a GithubException is a 422 'already_exists' validation error."""
    if not isinstance(exc.data, dict):
        return False
    errors: object = exc.data.get("errors")
    if not isinstance(errors, list):
        return False
    return any(isinstance(e, dict) and e.get("code") == "already_exists" for e in errors)


class GitHubTarget:
    """Creates issues, comments and labels in a GitHub repository."""

    def __init__(self, config: GitHubConfig, *, client: Github | None = None) -> None:
        self.config: GitHubConfig = config
        self.client: Github = client or get_client(config)
        self._repo: Repository | None = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            try:
                self._repo = self.client.get_repo(self.config.repo_path)
            except (GithubException, requests.RequestException) as e:
                msg = f"Cannot access repository {self.config.repo_path}: {e}"
                raise TargetError(msg) from e
        return self._repo

    def test_connection(self) -> None:
        logger.info("Testing GitHub connection...")
        self._repo = None
        _ = self.repo
        logger.info("GitHub connection successful")

    def find_by_reference(self, item_id: int) -> list[ExistingRecord]:
        """Search for issues whose body contains the work item reference."""
        query = f'repo:{self.config.repo_path} "#{item_id}" in:body is:issue'
        try:
            return [ExistingRecord(number=issue.number, url=issue.html_url) for issue in self.client.search_issues(query)]
        except (GithubException, requests.RequestException) as e:
            msg = f"Failed to search for existing issues: {e}"
            raise TargetError(msg) from e

    def create(self, record: TargetRecord) -> CreatedRecord:
        logger.debug(f"Creating GitHub issue: {record.title}")
        try:
            if record.milestone is not None:
                issue = self.repo.create_issue(
                    title=record.title,
                    body=record.body,
                    labels=record.labels,
                    assignees=record.assignees,
                    milestone=self.repo.get_milestone(record.milestone),
                )
            else:
                issue = self.repo.create_issue(
                    title=record.title, body=record.body, labels=record.labels, assignees=record.assignees
                )
        except (GithubException, requests.RequestException) as e:
            msg = f"Failed to create issue: {e}"
            raise TargetError(msg) from e

        logger.info(f"Created GitHub issue #{issue.number} for work item #{record.source_id}")
        return CreatedRecord(number=issue.number, url=issue.html_url)

    def create_comment(self, record_id: int, comment: TargetComment) -> None:
        logger.debug(f"Creating comment on issue #{record_id}")
        try:
            self.repo.get_issue(record_id).create_comment(comment.body)
        except (GithubException, requests.RequestException) as e:
            msg = f"Failed to create comment on issue #{record_id}: {e}"
            raise TargetError(msg) from e

    def set_state(self, record_id: int, state: IssueState) -> None:
        logger.debug(f"Updating issue #{record_id} state to {state}")
        try:
            self.repo.get_issue(record_id).edit(state=state)
        except (GithubException, requests.RequestException) as e:
            msg = f"Failed to update issue #{record_id} state: {e}"
            raise TargetError(msg) from e

    def ensure_labels_exist(self, labels: Sequence[str]) -> None:
        """Create missing labels with the default colour."""
        for label in labels:
            try:
                self.repo.get_label(label)
                continue
            except UnknownObjectException:
                pass
            except (GithubException, requests.RequestException) as e:
                msg = f"Failed to validate label {label}: {e}"
                raise TargetError(msg) from e

            try:
                self.repo.create_label(name=label, color=DEFAULT_LABEL_COLOR, description=f"Label for {label}")
                logger.debug(f"Created label: {label}")
            except GithubException as e:
                if e.status == 422 and _is_already_exists_error(e):
                    # Created concurrently since get_label()
                    logger.debug(f"Label already existed: {label}")
                    continue
                msg = f"Failed to create missing label {label}: {e}"
                raise TargetError(msg) from e
            except requests.RequestException as e:
                msg = f"Failed to create missing label {label}: {e}"
                raise TargetError(msg) from e
