"""Commit status reporting, status messages and post-build comments."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from build_variables import expand_macros
from config import NONE_SENTINEL, PRGateConfig, RepoConfig
from events import EventBus, EventType
from models import BuildResult, CommentAppenderKind, CommitState, StatusReporterKind

if TYPE_CHECKING:
    from github_client import GitHubClient

logger = logging.getLogger("prgate.status")

DEFAULT_COMPLETED_MESSAGE = "Build finished."
PUBLISH_URL_MESSAGE = "Build results will soon be (or already are) available at: "


def commit_state_for(
    result: BuildResult | None, unstable_as: CommitState
) -> CommitState:
    """Map a build result onto the commit state reported for it."""
    if result == BuildResult.SUCCESS:
        return CommitState.SUCCESS
    if result == BuildResult.UNSTABLE:
        return unstable_as
    return CommitState.FAILURE


def _commit_kind(merge: bool) -> str:
    return "merge commit" if merge else "original commit"


def triggered_message(
    repo: RepoConfig, merge: bool, variables: Mapping[str, str]
) -> str:
    if repo.triggered_status:
        return expand_macros(repo.triggered_status, variables)
    return f"Build triggered for {_commit_kind(merge)}."


def started_message(repo: RepoConfig, merge: bool, variables: Mapping[str, str]) -> str:
    if repo.started_status:
        return expand_macros(repo.started_status, variables)
    return f"Build started for {_commit_kind(merge)}."


def completed_message(
    repo: RepoConfig, state: CommitState, variables: Mapping[str, str]
) -> str:
    """Concatenate the configured messages for *state*, or the default text."""
    messages = [m.message for m in repo.completed_status if m.state == state]
    if not messages:
        return DEFAULT_COMPLETED_MESSAGE
    if any(m.strip() == NONE_SENTINEL for m in messages):
        return NONE_SENTINEL
    return expand_macros(" ".join(messages), variables)


def status_url_for(
    repo: RepoConfig, build_url: str, variables: Mapping[str, str]
) -> str:
    """Resolve the status target URL; ``--none--`` disables it."""
    if repo.status_url.strip() == NONE_SENTINEL:
        return ""
    if repo.status_url:
        return expand_macros(repo.status_url, variables)
    return build_url


def _read_comment_file(repo: RepoConfig, variables: Mapping[str, str]) -> str:
    if not repo.comment_file_path:
        return ""
    path = Path(expand_macros(repo.comment_file_path, variables))
    if not path.is_absolute() and repo.build_workdir is not None:
        path = repo.build_workdir / path
    try:
        content = path.read_text()
    except OSError as exc:
        logger.warning("Couldn't read comment file %s: %s", path, exc)
        return f"**Build comment file:** Couldn't read comment file {path.name}"
    if content.strip() == NONE_SENTINEL:
        return NONE_SENTINEL
    return f"**Build comment file:**\n\n{content.strip()}"


def result_comment(
    repo: RepoConfig,
    state: CommitState,
    build_url: str,
    variables: Mapping[str, str],
) -> str | None:
    """Compose the post-build comment from the enabled appenders.

    Returns ``None`` when no section has content or one of them asks
    for the comment to be suppressed.
    """
    sections: list[str] = []
    for kind in repo.comment_appenders:
        text = ""
        if kind == CommentAppenderKind.BUILD_RESULT_MESSAGE:
            text = "\n".join(
                m.message for m in repo.result_messages if m.state == state
            )
        elif kind == CommentAppenderKind.PUBLISH_URL:
            url = expand_macros(repo.publish_url, variables) or build_url
            if url:
                text = PUBLISH_URL_MESSAGE + url
        elif kind == CommentAppenderKind.COMMENT_FILE:
            text = _read_comment_file(repo, variables)
        if text.strip() == NONE_SENTINEL:
            return None
        if text.strip():
            sections.append(expand_macros(text.strip(), variables))
    if not sections:
        return None
    return "\n\n".join(sections)


class StatusReporter:
    """Posts commit statuses, falling back to a PR comment on failure.

    Reporting never raises: a failed status and a failed fallback comment
    are both logged and dropped.
    """

    def __init__(
        self,
        config: PRGateConfig,
        repo: RepoConfig,
        github: GitHubClient,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        self._github = github
        self._bus = bus

    @property
    def kind(self) -> StatusReporterKind:
        return self._repo.status_reporter

    async def report(
        self, pull_id: int, sha: str, state: CommitState, url: str, message: str
    ) -> bool:
        """Set the commit status of *sha*; return *True* if it was posted."""
        if self.kind == StatusReporterKind.NONE:
            return False
        if message.strip() == NONE_SENTINEL:
            logger.debug("Status for %s suppressed by configuration", sha[:12])
            return False
        try:
            await self._github.create_status(
                self._repo.name, sha, state, url, message, self._repo.status_context
            )
            logger.info(
                "Set %s status on %s: %s",
                state,
                sha[:12],
                message,
                extra={"repo": self._repo.name, "pr": pull_id, "sha": sha},
            )
            return True
        except RuntimeError as exc:
            logger.error(
                "Could not set commit status on %s: %s",
                sha[:12],
                exc,
                extra={"repo": self._repo.name, "pr": pull_id, "sha": sha},
            )
        if self._config.use_comments:
            await self._comment_fallback(pull_id, sha, state, url, message)
        return False

    async def _comment_fallback(
        self, pull_id: int, sha: str, state: CommitState, url: str, message: str
    ) -> None:
        body = f"[{state.value}] {message}"
        if url:
            body += f"\n{url}"
        try:
            await self._github.add_comment(self._repo.name, pull_id, body)
        except RuntimeError as exc:
            logger.error(
                "Could not post status fallback comment on #%d: %s",
                pull_id,
                exc,
                extra={"repo": self._repo.name, "pr": pull_id, "sha": sha},
            )
            return
        if self._bus is not None:
            await self._bus.emit(
                EventType.STATUS_FALLBACK,
                repo=self._repo.name,
                pr=pull_id,
                state=state.value,
            )
