"""Shared test helpers for PRGate tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

from models import (
    BuildPhase,
    BuildRequest,
    BuildResult,
    CommitState,
    IssueComment,
    Mergeable,
    PullRequestInfo,
)

REPO = "acme/widgets"
T0 = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def at(minutes: int) -> datetime:
    """Return a timestamp *minutes* after :data:`T0`."""
    return T0 + timedelta(minutes=minutes)


class ConfigFactory:
    """Factory for PRGateConfig instances with a single watched repository."""

    @staticmethod
    def create(
        *,
        repo: str = REPO,
        admins: list[str] | None = None,
        whitelist: list[str] | None = None,
        orgs: list[str] | None = None,
        permit_all: bool = False,
        allow_org_members_as_admin: bool = False,
        trigger_phrase: str = "",
        only_trigger_phrase: bool = False,
        white_list_target_branches: list[str] | None = None,
        use_webhooks: bool = False,
        webhook_secret: str = "",
        build_command: str = "make test",
        repo_overrides: dict[str, Any] | None = None,
        use_comments: bool = False,
        mergeable_attempts: int = 5,
        mergeable_delay: float = 0.0,
        poll_interval: int = 60,
        backup_sweep_enabled: bool = False,
        request_for_testing_phrase: str = "Can one of the admins verify this patch?",
        dry_run: bool = False,
        gh_token: str = "",
        state_file: Path | None = None,
        extra_repos: list[dict[str, Any]] | None = None,
    ):
        """Create a PRGateConfig with test-friendly defaults."""
        from config import PRGateConfig

        repo_values: dict[str, Any] = {
            "name": repo,
            "admins": admins if admins is not None else ["admin"],
            "whitelist": whitelist if whitelist is not None else ["alice"],
            "orgs": orgs or [],
            "permit_all": permit_all,
            "allow_org_members_as_admin": allow_org_members_as_admin,
            "trigger_phrase": trigger_phrase,
            "only_trigger_phrase": only_trigger_phrase,
            "white_list_target_branches": white_list_target_branches or [],
            "use_webhooks": use_webhooks,
            "webhook_secret": webhook_secret,
            "build_command": build_command,
        }
        repo_values.update(repo_overrides or {})
        return PRGateConfig(
            repos=[repo_values, *(extra_repos or [])],
            use_comments=use_comments,
            mergeable_attempts=mergeable_attempts,
            mergeable_delay=mergeable_delay,
            poll_interval=poll_interval,
            backup_sweep_enabled=backup_sweep_enabled,
            request_for_testing_phrase=request_for_testing_phrase,
            dry_run=dry_run,
            gh_token=gh_token,
            state_file=state_file or Path("/tmp/prgate-test/state.json"),
        )


def make_pull(
    number: int = 42,
    *,
    sha: str = "a" * 40,
    author: str = "alice",
    title: str = "Fix the widget",
    body: str = "",
    base_ref: str = "main",
    head_ref: str = "feature",
    created_at: datetime = T0,
    updated_at: datetime | None = None,
    mergeable: Mergeable = Mergeable.TRUE,
    state: str = "open",
) -> PullRequestInfo:
    """Build a pull request in the flattened shape."""
    return PullRequestInfo(
        number=number,
        title=title,
        body=body,
        state=state,
        head_sha=sha,
        head_ref=head_ref,
        head_repo_url=f"https://github.com/{author}/widgets.git",
        base_sha="b" * 40,
        base_ref=base_ref,
        author=author,
        url=f"https://github.com/{REPO}/pull/{number}",
        created_at=created_at,
        updated_at=updated_at or created_at,
        mergeable=mergeable,
    )


def make_comment(
    body: str, author: str = "admin", *, minutes: int = 5, comment_id: int = 1
) -> IssueComment:
    """Build a comment created *minutes* after :data:`T0`."""
    ts = at(minutes)
    return IssueComment(
        id=comment_id, body=body, author=author, created_at=ts, updated_at=ts
    )


def pull_payload(number: int = 42, *, author: str = "alice", **fields: Any) -> dict:
    """Raw REST API shape of a pull request."""
    payload: dict[str, Any] = {
        "number": number,
        "title": "Fix the widget",
        "body": None,
        "state": "open",
        "html_url": f"https://github.com/{REPO}/pull/{number}",
        "user": {"login": author},
        "head": {
            "sha": "a" * 40,
            "ref": "feature",
            "repo": {"clone_url": f"https://github.com/{author}/widgets.git"},
        },
        "base": {"sha": "b" * 40, "ref": "main"},
        "created_at": "2024-05-01T12:00:00Z",
        "updated_at": "2024-05-01T12:00:00Z",
        "mergeable": None,
    }
    payload.update(fields)
    return payload


class FakeGitHub:
    """In-memory GitHub whose operations are AsyncMocks over plain dicts."""

    def __init__(self) -> None:
        self.pulls: dict[int, PullRequestInfo] = {}
        self.comments: dict[int, list[IssueComment]] = {}
        self.org_members: dict[str, set[str]] = {}
        self.statuses: list[dict[str, Any]] = []
        self.posted: list[tuple[int, str]] = []
        self.closed: list[int] = []
        # Mergeability answers returned by successive get_pull calls.
        self.mergeable_answers: list[Mergeable] = []

        self.list_open_pulls = AsyncMock(side_effect=self._list_open_pulls)
        self.get_pull = AsyncMock(side_effect=self._get_pull)
        self.list_comments = AsyncMock(side_effect=self._list_comments)
        self.create_status = AsyncMock(side_effect=self._create_status)
        self.add_comment = AsyncMock(side_effect=self._add_comment)
        self.close_pull = AsyncMock(side_effect=self._close_pull)
        self.is_org_member = AsyncMock(side_effect=self._is_org_member)

    # --- seeding ---

    def seed_pull(self, pull: PullRequestInfo) -> PullRequestInfo:
        self.pulls[pull.number] = pull
        return pull

    def seed_comment(self, number: int, comment: IssueComment) -> None:
        """Add *comment* to the thread and bump the PR's update time."""
        self.comments.setdefault(number, []).append(comment)
        pull = self.pulls.get(number)
        if (
            pull is not None
            and comment.updated_at is not None
            and (pull.updated_at is None or comment.updated_at > pull.updated_at)
        ):
            self.pulls[number] = pull.model_copy(
                update={"updated_at": comment.updated_at}
            )

    def push_commit(self, number: int, sha: str, minutes: int) -> None:
        self.pulls[number] = self.pulls[number].model_copy(
            update={"head_sha": sha, "updated_at": at(minutes)}
        )

    def close(self, number: int) -> None:
        self.pulls[number] = self.pulls[number].model_copy(update={"state": "closed"})

    # --- GitHubClient ---

    async def _list_open_pulls(self, repo: str) -> list[PullRequestInfo]:
        return [p for p in self.pulls.values() if p.state == "open"]

    async def _get_pull(self, repo: str, number: int) -> PullRequestInfo:
        from github_client import NotFoundError

        if number not in self.pulls:
            raise NotFoundError(f"HTTP 404: {repo}#{number}")
        pull = self.pulls[number]
        if self.mergeable_answers:
            pull = pull.model_copy(update={"mergeable": self.mergeable_answers.pop(0)})
        return pull

    async def _list_comments(
        self, repo: str, number: int, since: datetime | None = None
    ) -> list[IssueComment]:
        thread = self.comments.get(number, [])
        if since is None:
            return list(thread)
        return [c for c in thread if c.updated_at is None or c.updated_at >= since]

    async def _create_status(
        self,
        repo: str,
        sha: str,
        state: CommitState,
        url: str,
        description: str,
        context: str,
    ) -> None:
        self.statuses.append(
            {
                "repo": repo,
                "sha": sha,
                "state": state,
                "url": url,
                "description": description,
                "context": context,
            }
        )

    async def _add_comment(self, repo: str, number: int, body: str) -> None:
        self.posted.append((number, body))

    async def _close_pull(self, repo: str, number: int) -> None:
        self.closed.append(number)
        if number in self.pulls:
            self.close(number)

    async def _is_org_member(self, org: str, login: str) -> bool:
        return login in self.org_members.get(org, set())


class FakeHandle:
    """Build handle whose phase tests advance by hand."""

    def __init__(self, build_id: str, url: str = "") -> None:
        self.build_id = build_id
        self.url = url or f"https://ci.example.com/job/{build_id}"
        self.phase = BuildPhase.PENDING
        self.result: BuildResult | None = None
        self.cancelled = False

    def start(self) -> None:
        self.phase = BuildPhase.STARTED

    def finish(self, result: BuildResult = BuildResult.SUCCESS) -> None:
        self.phase = BuildPhase.FINISHED
        self.result = result

    async def cancel(self) -> bool:
        if self.phase in (BuildPhase.FINISHED, BuildPhase.CANCELLED):
            return False
        self.phase = BuildPhase.CANCELLED
        self.result = BuildResult.ABORTED
        self.cancelled = True
        return True


class FakeJobQueue:
    """Records build requests and hands out :class:`FakeHandle` objects."""

    def __init__(self, *, reject: bool = False) -> None:
        self.reject = reject
        self.requests: list[BuildRequest] = []
        self.handles: list[FakeHandle] = []

    async def enqueue(self, request: BuildRequest) -> FakeHandle | None:
        if self.reject:
            return None
        self.requests.append(request)
        handle = FakeHandle(str(len(self.requests)))
        self.handles.append(handle)
        return handle


def make_reconciler(
    config,
    *,
    github: FakeGitHub | None = None,
    queue: FakeJobQueue | None = None,
    state=None,
    bus=None,
    clock=None,
):
    """Build a RepositoryReconciler for the first configured repository."""
    from reconciler import RepositoryReconciler

    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return RepositoryReconciler(
        config,
        config.repos[0],
        github or FakeGitHub(),
        queue or FakeJobQueue(),
        state=state,
        bus=bus,
        sleep_fn=AsyncMock(),
        **kwargs,
    )
