"""Data models for PRGate."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# --- Enumerations ---


class Mergeable(StrEnum):
    """GitHub's asynchronously computed mergeability of a pull request."""

    UNKNOWN = "unknown"
    TRUE = "true"
    FALSE = "false"


class CommitState(StrEnum):
    """Commit status states accepted by the GitHub statuses API."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


class BuildPhase(StrEnum):
    """Lifecycle of an enqueued build as observed through its handle."""

    PENDING = "pending"
    STARTED = "started"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class BuildResult(StrEnum):
    """Outcome reported by a finished build."""

    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    ABORTED = "aborted"


class StatusReporterKind(StrEnum):
    """Where build status transitions are reported."""

    COMMIT_STATUS = "commit_status"
    NONE = "none"


class CommentAppenderKind(StrEnum):
    """Sections that may be appended to the post-build PR comment."""

    BUILD_RESULT_MESSAGE = "build_result_message"
    PUBLISH_URL = "publish_url"
    COMMENT_FILE = "comment_file"


# --- GitHub ---


def _login(user: Any) -> str:
    if isinstance(user, dict):
        return str(user.get("login") or "")
    return str(user or "")


def _normalise_mergeable(value: Any) -> Any:
    """Map the REST API's ``true``/``false``/``null`` onto :class:`Mergeable`."""
    if value is None:
        return Mergeable.UNKNOWN
    if isinstance(value, bool):
        return Mergeable.TRUE if value else Mergeable.FALSE
    return value


class PullRequestInfo(BaseModel):
    """A pull request as returned by the GitHub REST API.

    Accepts both the raw API shape (nested ``head``/``base``/``user``
    objects) and the flattened field names.
    """

    number: int
    title: str = ""
    body: str = ""
    state: str = "open"
    head_sha: str = ""
    head_ref: str = ""
    head_repo_url: str = ""
    base_sha: str = ""
    base_ref: str = ""
    author: str = ""
    author_email: str = ""
    url: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None
    mergeable: Mergeable = Mergeable.UNKNOWN

    @model_validator(mode="before")
    @classmethod
    def _flatten_api_shape(cls, data: Any) -> Any:
        """Flatten ``head``/``base``/``user`` objects from the REST payload."""
        if not isinstance(data, dict):
            return data
        flat = dict(data)
        head = flat.pop("head", None)
        if isinstance(head, dict):
            flat.setdefault("head_sha", head.get("sha") or "")
            flat.setdefault("head_ref", head.get("ref") or "")
            repo = head.get("repo") or {}
            flat.setdefault("head_repo_url", repo.get("clone_url") or "")
        base = flat.pop("base", None)
        if isinstance(base, dict):
            flat.setdefault("base_sha", base.get("sha") or "")
            flat.setdefault("base_ref", base.get("ref") or "")
        if "user" in flat:
            user = flat.pop("user")
            flat.setdefault("author", _login(user))
            if isinstance(user, dict) and user.get("email"):
                flat.setdefault("author_email", user["email"])
        if "html_url" in flat:
            flat.setdefault("url", flat.pop("html_url") or "")
        if flat.get("body") is None:
            flat["body"] = ""
        if "mergeable" in flat:
            flat["mergeable"] = _normalise_mergeable(flat["mergeable"])
        return flat

    @field_validator("author", mode="after")
    @classmethod
    def _lower_author(cls, v: str) -> str:
        return v.lower()


class IssueComment(BaseModel):
    """A comment on a pull request's conversation thread."""

    id: int = 0
    body: str = ""
    author: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_api_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        flat = dict(data)
        if "user" in flat:
            flat.setdefault("author", _login(flat.pop("user")))
        if flat.get("body") is None:
            flat["body"] = ""
        if flat.get("updated_at") is None and flat.get("created_at") is not None:
            flat["updated_at"] = flat["created_at"]
        return flat

    @field_validator("author", mode="after")
    @classmethod
    def _lower_author(cls, v: str) -> str:
        return v.lower()


# --- Tracked state ---


class TrackedPullRequest(BaseModel):
    """The locally tracked view of one open pull request.

    ``should_run``, ``triggered`` and ``mergeable`` are decision state for
    the current cycle and are never persisted.
    """

    number: int
    head_sha: str = ""
    base_sha: str = ""
    target: str = ""
    source: str = ""
    author: str = ""
    author_email: str = ""
    author_repo_url: str = ""
    title: str = ""
    body: str = ""
    url: str = ""
    updated_at: datetime | None = None
    accepted: bool = False
    last_build_id: str = ""

    mergeable: Mergeable = Field(default=Mergeable.UNKNOWN, exclude=True)
    should_run: bool = Field(default=False, exclude=True)
    triggered: bool = Field(default=False, exclude=True)
    comment_body: str = Field(default="", exclude=True)
    trigger_sender: str = Field(default="", exclude=True)

    @classmethod
    def from_remote(cls, remote: PullRequestInfo) -> TrackedPullRequest:
        """Start tracking *remote*, treating its creation time as last seen."""
        pull = cls(number=remote.number, head_sha=remote.head_sha)
        pull.refresh(remote)
        pull.updated_at = remote.created_at
        return pull

    def refresh(self, remote: PullRequestInfo) -> None:
        """Copy descriptive fields from *remote* (head SHA and timestamp excluded)."""
        self.title = remote.title
        self.body = remote.body
        self.target = remote.base_ref
        self.source = remote.head_ref
        self.base_sha = remote.base_sha
        self.author = remote.author
        self.author_email = remote.author_email or self.author_email
        self.author_repo_url = remote.head_repo_url
        self.url = remote.url
        self.mergeable = remote.mergeable

    def request_build(
        self, *, triggered: bool = False, sender: str = "", comment: str = ""
    ) -> None:
        """Mark a build decision as pending for the next dispatch gate."""
        self.should_run = True
        if triggered:
            self.triggered = True
        if sender:
            self.trigger_sender = sender
            self.comment_body = comment

    def clear_decision(self) -> None:
        """Drop any pending build decision."""
        self.should_run = False
        self.triggered = False

    def accept(self) -> None:
        """Clear the author for building and request a build."""
        self.accepted = True
        self.should_run = True


class RepoStateData(BaseModel):
    """Persisted state of one repository."""

    pulls: dict[str, TrackedPullRequest] = Field(default_factory=dict)
    whitelist: list[str] = Field(default_factory=list)


class StateData(BaseModel):
    """Top-level state document."""

    repos: dict[str, RepoStateData] = Field(default_factory=dict)
    last_updated: str | None = None


# --- Builds ---


class BuildRequest(BaseModel):
    """A parameterized build handed to the job queue."""

    repo: str
    pull_id: int
    head_sha: str
    ref: str
    merge: bool = False
    variables: dict[str, str] = Field(default_factory=dict)
    cause: str = ""
    description: str = ""


# --- Webhooks ---


class IssueCommentEvent(BaseModel):
    """An ``issue_comment`` webhook delivery."""

    action: str
    repo: str
    issue_number: int
    issue_state: str = "open"
    is_pull_request: bool = False
    comment: IssueComment


class PullRequestEvent(BaseModel):
    """A ``pull_request`` webhook delivery."""

    action: str
    repo: str
    number: int
    pull_request: PullRequestInfo
