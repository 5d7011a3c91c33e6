"""GitHub access for PRGate via the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from config import PRGateConfig
from models import CommitState, IssueComment, PullRequestInfo
from subprocess_util import AuthenticationError, run_subprocess_with_retry

logger = logging.getLogger("prgate.github")

# GitHub rejects commit status descriptions longer than this.
MAX_STATUS_DESCRIPTION = 140


class GitHubError(RuntimeError):
    """Raised when a GitHub API call fails."""


class NotFoundError(GitHubError):
    """Raised when GitHub answers 404 for the requested resource."""


@runtime_checkable
class GitHubClient(Protocol):
    """The GitHub operations the reconciliation engine consumes."""

    async def list_open_pulls(self, repo: str) -> list[PullRequestInfo]: ...

    async def get_pull(self, repo: str, number: int) -> PullRequestInfo: ...

    async def list_comments(
        self, repo: str, number: int, since: datetime | None = None
    ) -> list[IssueComment]: ...

    async def create_status(
        self,
        repo: str,
        sha: str,
        state: CommitState,
        url: str,
        description: str,
        context: str,
    ) -> None: ...

    async def add_comment(self, repo: str, number: int, body: str) -> None: ...

    async def close_pull(self, repo: str, number: int) -> None: ...

    async def is_org_member(self, org: str, login: str) -> bool: ...


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _flatten_pages(raw: str) -> list[dict[str, Any]]:
    """Flatten ``gh api --paginate --slurp`` output (a list of pages)."""
    data = json.loads(raw) if raw else []
    items: list[dict[str, Any]] = []
    for page in data:
        if isinstance(page, list):
            items.extend(page)
        elif isinstance(page, dict):
            items.append(page)
    return items


class GhCliClient:
    """Implements :class:`GitHubClient` with ``gh api`` subprocess calls."""

    def __init__(self, config: PRGateConfig) -> None:
        self._config = config

    async def _api(self, *args: str) -> str:
        try:
            return await run_subprocess_with_retry(
                "gh",
                "api",
                *args,
                gh_token=self._config.gh_token,
                max_retries=self._config.gh_max_retries,
            )
        except AuthenticationError:
            raise
        except FileNotFoundError as exc:
            raise GitHubError(f"gh CLI not available: {exc}") from exc
        except RuntimeError as exc:
            if "HTTP 404" in str(exc):
                raise NotFoundError(str(exc)) from exc
            raise GitHubError(str(exc)) from exc

    async def _api_json(self, *args: str) -> Any:
        raw = await self._api(*args)
        try:
            return json.loads(raw) if raw else None
        except json.JSONDecodeError as exc:
            raise GitHubError(f"Invalid JSON from gh api {args[0]}: {exc}") from exc

    async def _api_pages(self, path: str) -> list[dict[str, Any]]:
        raw = await self._api(path, "--paginate", "--slurp")
        try:
            return _flatten_pages(raw)
        except json.JSONDecodeError as exc:
            raise GitHubError(f"Invalid JSON from gh api {path}: {exc}") from exc

    # --- reads ---

    async def list_open_pulls(self, repo: str) -> list[PullRequestInfo]:
        items = await self._api_pages(f"repos/{repo}/pulls?state=open&per_page=100")
        return [PullRequestInfo.model_validate(item) for item in items]

    async def get_pull(self, repo: str, number: int) -> PullRequestInfo:
        data = await self._api_json(f"repos/{repo}/pulls/{number}")
        if not isinstance(data, dict):
            raise GitHubError(f"Unexpected response for {repo}#{number}")
        return PullRequestInfo.model_validate(data)

    async def list_comments(
        self, repo: str, number: int, since: datetime | None = None
    ) -> list[IssueComment]:
        path = f"repos/{repo}/issues/{number}/comments?per_page=100"
        if since is not None:
            path += f"&since={_iso(since)}"
        items = await self._api_pages(path)
        return [IssueComment.model_validate(item) for item in items]

    async def is_org_member(self, org: str, login: str) -> bool:
        try:
            await self._api(f"orgs/{org}/members/{login}", "--silent")
        except NotFoundError:
            return False
        return True

    # --- writes ---

    async def create_status(
        self,
        repo: str,
        sha: str,
        state: CommitState,
        url: str,
        description: str,
        context: str,
    ) -> None:
        description = description[:MAX_STATUS_DESCRIPTION]
        if self._config.dry_run:
            logger.info(
                "[dry-run] Would set %s status on %s@%s: %s",
                state,
                repo,
                sha[:12],
                description,
            )
            return
        args = [
            "-X",
            "POST",
            f"repos/{repo}/statuses/{sha}",
            "-f",
            f"state={state.value}",
            "-f",
            f"description={description}",
            "-f",
            f"context={context}",
        ]
        if url:
            args += ["-f", f"target_url={url}"]
        await self._api(*args, "--silent")

    async def add_comment(self, repo: str, number: int, body: str) -> None:
        if self._config.dry_run:
            logger.info("[dry-run] Would comment on %s#%d: %s", repo, number, body)
            return
        await self._api(
            "-X",
            "POST",
            f"repos/{repo}/issues/{number}/comments",
            "-f",
            f"body={body}",
            "--silent",
        )

    async def close_pull(self, repo: str, number: int) -> None:
        if self._config.dry_run:
            logger.info("[dry-run] Would close %s#%d", repo, number)
            return
        await self._api(
            "-X",
            "PATCH",
            f"repos/{repo}/pulls/{number}",
            "-f",
            "state=closed",
            "--silent",
        )
