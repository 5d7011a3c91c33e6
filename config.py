"""PRGate configuration via Pydantic."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from models import CommentAppenderKind, CommitState, StatusReporterKind

logger = logging.getLogger("prgate.config")

# Sentinel used in status/comment messages to suppress posting entirely.
NONE_SENTINEL = "--none--"


class StatusMessage(BaseModel):
    """A message bound to the commit state it applies to."""

    state: CommitState
    message: str


def _split_logins(v: Any) -> Any:
    """Accept whitespace-separated strings or lists; lower-case every login."""
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split()
    if isinstance(v, list | tuple | set):
        return [str(item).strip().lower() for item in v if str(item).strip()]
    return v


class RepoConfig(BaseModel):
    """Per-repository trigger configuration."""

    name: str = Field(description="GitHub repo (owner/name)")

    # Permissions
    admins: list[str] = Field(
        default_factory=list, description="Logins allowed to approve and whitelist"
    )
    whitelist: list[str] = Field(
        default_factory=list, description="Logins whose PRs are built automatically"
    )
    orgs: list[str] = Field(
        default_factory=list,
        description="Organizations whose members are treated as whitelisted",
    )
    permit_all: bool = Field(
        default=False, description="Build PRs from anyone without approval"
    )
    allow_org_members_as_admin: bool = Field(
        default=False,
        description="Treat members of whitelisted organizations as admins",
    )

    # Triggering
    trigger_phrase: str = Field(
        default="", description="Free-text phrase (substring) that requests a build"
    )
    only_trigger_phrase: bool = Field(
        default=False,
        description="Only build when explicitly requested with the trigger phrase",
    )
    white_list_target_branches: list[str] = Field(
        default_factory=list,
        description="Target branch regexes allowed to build (empty = all)",
    )
    use_webhooks: bool = Field(
        default=False, description="Drive this repo from webhook deliveries"
    )
    webhook_secret: str = Field(
        default="", description="Shared secret for webhook HMAC signatures"
    )
    cancel_builds_on_close: bool = Field(
        default=True, description="Cancel in-flight builds when a PR is closed"
    )

    # Build execution
    build_command: str = Field(
        default="", description="Shell command executed for each build"
    )
    build_workdir: Path | None = Field(
        default=None, description="Working directory for the build command"
    )
    unstable_exit_code: int = Field(
        default=2, description="Build command exit code reported as unstable"
    )
    build_description_template: str = Field(
        default="PR #$PRGATE_PULL_ID: $PRGATE_PULL_TITLE_SHORT",
        description="Description attached to each enqueued build",
    )

    # Status reporting
    status_reporter: StatusReporterKind = StatusReporterKind.COMMIT_STATUS
    status_context: str = Field(
        default="prgate", description="Commit status context"
    )
    status_url: str = Field(
        default="",
        description="Commit status target URL (empty = build URL, --none-- = no URL)",
    )
    triggered_status: str = Field(
        default="", description="Message posted when a build is triggered"
    )
    started_status: str = Field(
        default="", description="Message posted when a build starts"
    )
    completed_status: list[StatusMessage] = Field(
        default_factory=list, description="Messages posted when a build completes"
    )

    # Post-build comments
    comment_appenders: list[CommentAppenderKind] = Field(
        default_factory=list, description="Sections of the post-build PR comment"
    )
    result_messages: list[StatusMessage] = Field(
        default_factory=list, description="Per-state text for the result comment"
    )
    publish_url: str = Field(
        default="", description="URL announced in the result comment"
    )
    comment_file_path: str = Field(
        default="", description="File whose contents are posted after a build"
    )
    auto_close_failed_pull_requests: bool = Field(
        default=False, description="Close PRs whose build failed"
    )

    @field_validator("admins", "whitelist", "orgs", mode="before")
    @classmethod
    def _normalise_logins(cls, v: Any) -> Any:
        return _split_logins(v)

    @field_validator("white_list_target_branches", mode="before")
    @classmethod
    def _normalise_branches(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            v = v.splitlines()
        if isinstance(v, list | tuple):
            return [str(b).strip() for b in v if str(b).strip()]
        return v

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        v = v.strip()
        owner, _, repo = v.partition("/")
        if not owner or not repo or "/" in repo:
            raise ValueError(f"Repository name must be owner/name, got {v!r}")
        return v


class PRGateConfig(BaseModel):
    """Configuration for the PRGate service."""

    repos: list[RepoConfig] = Field(
        default_factory=list, description="Repositories to watch"
    )

    # Comment phrases (case-insensitive full-match regexes)
    retest_phrase: str = Field(
        default=r".*test\W+this\W+please.*",
        description="Comment regex asking to re-run a build",
    )
    whitelist_phrase: str = Field(
        default=r".*add\W+to\W+whitelist.*",
        description="Comment regex adding the PR author to the whitelist",
    )
    ok_to_test_phrase: str = Field(
        default=r".*ok\W+to\W+test.*",
        description="Comment regex approving a single PR for testing",
    )
    skip_build_phrase: str = Field(
        default=r".*\[skip\W+ci\].*",
        description="Newline-separated regexes that suppress a build",
    )
    request_for_testing_phrase: str = Field(
        default="Can one of the admins verify this patch?",
        description="Comment posted on PRs from unknown authors (empty = none)",
    )

    # Reporting
    use_comments: bool = Field(
        default=False,
        description="Fall back to a PR comment when posting a status fails",
    )
    unstable_as: CommitState = Field(
        default=CommitState.FAILURE,
        description="Commit state reported for unstable builds",
    )

    # Scheduling
    poll_interval: int = Field(
        default=300, ge=5, le=86_400, description="Seconds between reconciliations"
    )
    build_check_interval: int = Field(
        default=30, ge=1, le=3600, description="Seconds between build checks"
    )
    backup_sweep_enabled: bool = Field(
        default=False, description="Periodically reconcile webhook-driven repos"
    )
    backup_sweep_threshold: int = Field(
        default=2700, ge=60, description="Seconds of webhook quiet before a sweep"
    )
    backup_sweep_interval: int = Field(
        default=3600, ge=60, description="Minimum seconds between backup sweeps"
    )
    mergeable_attempts: int = Field(
        default=5, ge=1, le=20, description="Max mergeability queries per dispatch"
    )
    mergeable_delay: float = Field(
        default=1.0, ge=0, le=60, description="Seconds between mergeability queries"
    )
    max_concurrent_builds: int = Field(
        default=2, ge=1, le=64, description="Builds the local queue runs at once"
    )

    # Webhook ingress
    webhook_enabled: bool = Field(
        default=True, description="Serve the webhook endpoint"
    )
    webhook_host: str = Field(default="127.0.0.1", description="Webhook bind host")
    webhook_port: int = Field(
        default=5556, ge=1024, le=65535, description="Webhook bind port"
    )

    # Runtime
    state_file: Path = Field(
        default=Path("."), description="Path to the JSON state file"
    )
    config_file: Path | None = Field(
        default=None, description="JSON config file the values were loaded from"
    )
    gh_token: str = Field(
        default="",
        description="GitHub token for gh CLI auth (overrides shell GH_TOKEN)",
    )
    gh_max_retries: int = Field(
        default=3, ge=0, le=10, description="Max retry attempts for gh CLI calls"
    )
    dry_run: bool = Field(
        default=False, description="Log GitHub writes instead of performing them"
    )

    model_config = {"arbitrary_types_allowed": True}

    def repo(self, name: str) -> RepoConfig | None:
        """Return the configuration for *name* (case-insensitive), if watched."""
        wanted = name.lower()
        for repo in self.repos:
            if repo.name.lower() == wanted:
                return repo
        return None

    @property
    def webhook_repos(self) -> list[RepoConfig]:
        return [r for r in self.repos if r.use_webhooks]

    @model_validator(mode="after")
    def resolve_defaults(self) -> PRGateConfig:
        """Resolve paths and apply env var overrides.

        Environment variables (applied only while a field is at its default):
            PRGATE_GH_TOKEN       → gh_token
            PRGATE_STATE_FILE     → state_file
            PRGATE_POLL_INTERVAL  → poll_interval
            PRGATE_WEBHOOK_PORT   → webhook_port
            PRGATE_GH_MAX_RETRIES → gh_max_retries
            PRGATE_USE_COMMENTS   → use_comments
            PRGATE_REPOS          → repos (comma-separated owner/name)
        """
        if self.state_file == Path("."):
            env_state = os.environ.get("PRGATE_STATE_FILE", "")
            state_file = (
                Path(env_state) if env_state else Path.cwd() / ".prgate" / "state.json"
            )
            object.__setattr__(self, "state_file", state_file)

        # GitHub token: explicit value → PRGATE_GH_TOKEN → inherited GH_TOKEN
        if not self.gh_token:
            env_token = os.environ.get("PRGATE_GH_TOKEN", "")
            if env_token:
                object.__setattr__(self, "gh_token", env_token)

        if self.poll_interval == 300:  # still at default
            env_poll = os.environ.get("PRGATE_POLL_INTERVAL")
            if env_poll is not None:
                with contextlib.suppress(ValueError):
                    object.__setattr__(self, "poll_interval", int(env_poll))

        if self.webhook_port == 5556:  # still at default
            env_port = os.environ.get("PRGATE_WEBHOOK_PORT")
            if env_port is not None:
                with contextlib.suppress(ValueError):
                    object.__setattr__(self, "webhook_port", int(env_port))

        if self.gh_max_retries == 3:  # still at default
            env_retries = os.environ.get("PRGATE_GH_MAX_RETRIES")
            if env_retries is not None:
                with contextlib.suppress(ValueError):
                    object.__setattr__(self, "gh_max_retries", int(env_retries))

        if not self.use_comments:
            env_comments = os.environ.get("PRGATE_USE_COMMENTS", "")
            if env_comments.lower() in ("1", "true", "yes"):
                object.__setattr__(self, "use_comments", True)

        if not self.repos:
            env_repos = os.environ.get("PRGATE_REPOS", "")
            names = [part.strip() for part in env_repos.split(",") if part.strip()]
            if names:
                object.__setattr__(
                    self, "repos", [RepoConfig(name=name) for name in names]
                )

        return self


def load_config_file(path: Path | None) -> dict[str, Any]:
    """Load a JSON config file and return its contents as a dict.

    Returns an empty dict if the file is missing, unreadable, or invalid.
    """
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text())
        if not isinstance(data, dict):
            return {}
        return data
    except (FileNotFoundError, json.JSONDecodeError, OSError):
        logger.warning("Could not read config file %s", path)
        return {}

