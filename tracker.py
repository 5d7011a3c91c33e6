"""Per-pull-request state machine turning comments and commits into builds."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from build_variables import build_variables
from builds import BuildCoordinator
from config import PRGateConfig, RepoConfig
from models import IssueComment, Mergeable, PullRequestInfo, TrackedPullRequest
from permissions import PermissionPolicy
from phrases import PhrasePolicy

if TYPE_CHECKING:
    from github_client import GitHubClient
    from job_queue import BuildHandle

logger = logging.getLogger("prgate.tracker")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class TrackerContext:
    """Collaborators shared by every tracker of one repository."""

    config: PRGateConfig
    repo: RepoConfig
    github: GitHubClient
    phrases: PhrasePolicy
    permissions: PermissionPolicy
    builds: BuildCoordinator
    sleep_fn: SleepFn = field(default=asyncio.sleep)


def _comment_time(comment: IssueComment) -> datetime | None:
    return comment.updated_at or comment.created_at


def _is_newer(ts: datetime | None, since: datetime | None) -> bool:
    return since is None or ts is None or ts > since


class PullRequestTracker:
    """Tracks one open pull request and decides when it should build.

    A tracked pull request is either unaccepted (its author is not cleared
    for building) or accepted.  ``should_run`` and ``triggered`` carry a
    pending build decision until :meth:`try_build` dispatches or drops it.
    """

    def __init__(self, pull: TrackedPullRequest, ctx: TrackerContext) -> None:
        self._pull = pull
        self._ctx = ctx

    @property
    def pull(self) -> TrackedPullRequest:
        return self._pull

    @property
    def number(self) -> int:
        return self._pull.number

    @property
    def _repo_name(self) -> str:
        return self._ctx.repo.name

    def _extra(self) -> dict[str, object]:
        return {"repo": self._repo_name, "pr": self._pull.number}

    # --- discovery ---

    @classmethod
    async def discover(
        cls, remote: PullRequestInfo, ctx: TrackerContext
    ) -> PullRequestTracker:
        """Start tracking a pull request seen for the first time."""
        tracker = cls(TrackedPullRequest.from_remote(remote), ctx)
        pull = tracker.pull
        if await ctx.permissions.is_whitelisted(pull.author):
            pull.accept()
            logger.info(
                "Tracking #%d by whitelisted %s",
                pull.number,
                pull.author,
                extra=tracker._extra(),
            )
        else:
            logger.info(
                "Tracking #%d by %s, awaiting approval",
                pull.number,
                pull.author,
                extra=tracker._extra(),
            )
            await tracker._request_testing()
        return tracker

    async def _request_testing(self) -> None:
        phrase = self._ctx.config.request_for_testing_phrase
        if not phrase:
            return
        try:
            await self._ctx.github.add_comment(self._repo_name, self.number, phrase)
        except RuntimeError as exc:
            logger.error(
                "Could not ask for testing approval on #%d: %s",
                self.number,
                exc,
                extra=self._extra(),
            )

    # --- reconciliation ---

    def is_updated(self, remote: PullRequestInfo) -> bool:
        pull = self._pull
        if remote.head_sha != pull.head_sha:
            return True
        if remote.updated_at is None:
            return False
        return pull.updated_at is None or remote.updated_at > pull.updated_at

    async def check(self, remote: PullRequestInfo) -> BuildHandle | None:
        """Fold the latest remote view of the pull request into its state.

        Comments newer than the last seen update are applied oldest first.
        The last seen timestamp advances whether or not a build results, so
        the same comments are never evaluated twice.
        """
        pull = self._pull
        if self.is_updated(remote):
            since = pull.updated_at
            pull.refresh(remote)

            if not pull.accepted and await self._ctx.permissions.is_whitelisted(
                pull.author
            ):
                logger.info(
                    "Author of #%d has been whitelisted",
                    pull.number,
                    extra=self._extra(),
                )
                pull.accept()

            comments = await self._ctx.github.list_comments(
                self._repo_name, pull.number, since
            )
            fresh = [c for c in comments if _is_newer(_comment_time(c), since)]
            fresh.sort(key=lambda c: (_comment_time(c) is not None, _comment_time(c)))
            for comment in fresh:
                await self.apply_comment(comment)

            self._observe_head(remote)
            if remote.updated_at is not None:
                pull.updated_at = remote.updated_at
        return await self.try_build()

    async def handle_comment(self, comment: IssueComment) -> BuildHandle | None:
        """Apply a single delivered comment, then refresh the PR once."""
        await self.apply_comment(comment)
        remote = await self._ctx.github.get_pull(self._repo_name, self.number)
        pull = self._pull
        pull.refresh(remote)
        self._observe_head(remote)
        ts = _comment_time(comment)
        if ts is not None and (pull.updated_at is None or ts > pull.updated_at):
            pull.updated_at = ts
        return await self.try_build()

    def _observe_head(self, remote: PullRequestInfo) -> None:
        pull = self._pull
        if remote.head_sha == pull.head_sha:
            return
        logger.info(
            "New commit %s on #%d",
            remote.head_sha[:12],
            pull.number,
            extra={**self._extra(), "sha": remote.head_sha},
        )
        pull.head_sha = remote.head_sha
        if pull.accepted:
            pull.should_run = True

    # --- comments ---

    async def apply_comment(self, comment: IssueComment) -> bool:
        """Evaluate *comment* against the phrase rules.

        Rules are tried in priority order and the first that fires wins:
        whitelist-add, ok-to-test, retest, then the trigger phrase.  Only the
        trigger phrase marks the build as explicitly triggered.  Returns
        *True* if the comment changed state.
        """
        pull = self._pull
        phrases = self._ctx.phrases
        permissions = self._ctx.permissions
        sender = comment.author
        body = comment.body
        if not sender:
            return False

        if phrases.is_whitelist(body) and await permissions.is_admin(sender):
            if not await permissions.is_whitelisted(pull.author):
                permissions.add_whitelist(pull.author)
            pull.accept()
            pull.request_build(sender=sender, comment=body)
            logger.info(
                "%s whitelisted the author of #%d",
                sender,
                pull.number,
                extra=self._extra(),
            )
            return True

        if phrases.is_ok_to_test(body) and await permissions.is_admin(sender):
            pull.accept()
            pull.request_build(sender=sender, comment=body)
            logger.info(
                "%s approved #%d for testing", sender, pull.number, extra=self._extra()
            )
            return True

        if phrases.is_retest(body):
            return await self._request_from_comment(sender, body, triggered=False)
        if phrases.is_trigger(body):
            return await self._request_from_comment(sender, body, triggered=True)
        return False

    async def _request_from_comment(
        self, sender: str, body: str, *, triggered: bool
    ) -> bool:
        pull = self._pull
        permissions = self._ctx.permissions
        if await permissions.is_admin(sender) or (
            pull.accepted and await permissions.is_whitelisted(sender)
        ):
            pull.request_build(triggered=triggered, sender=sender, comment=body)
            logger.info(
                "%s requested a build of #%d",
                sender,
                pull.number,
                extra=self._extra(),
            )
            return True
        logger.debug(
            "Ignoring build request on #%d from %s",
            pull.number,
            sender,
            extra=self._extra(),
        )
        return False

    # --- dispatch ---

    async def try_build(self) -> BuildHandle | None:
        """Dispatch the pending build decision if every gate allows it."""
        pull = self._pull
        repo = self._ctx.repo
        if repo.only_trigger_phrase and not pull.triggered:
            pull.should_run = False
        if not pull.should_run:
            return None

        if not self._ctx.phrases.is_allowed_target_branch(pull.target):
            pull.triggered = False
            logger.debug(
                "Target branch %s of #%d is not whitelisted, not building",
                pull.target,
                pull.number,
                extra=self._extra(),
            )
            return None

        skip = self._ctx.phrases.skip_build_phrase(pull.title, pull.body)
        if skip is not None:
            logger.info(
                "Skipping build of #%d: matched skip phrase %r",
                pull.number,
                skip,
                extra=self._extra(),
            )
            pull.clear_decision()
            return None

        cause = self._cause()
        try:
            merge = await self.resolve_mergeable()
            handle = await self._ctx.builds.schedule(
                pull.number,
                pull.head_sha,
                merge,
                variables=build_variables(repo.name, pull, merge=merge),
                cause=cause,
            )
        finally:
            pull.clear_decision()
            pull.mergeable = Mergeable.UNKNOWN
        if handle is not None:
            pull.last_build_id = handle.build_id
        return handle

    def _cause(self) -> str:
        pull = self._pull
        if pull.trigger_sender:
            return f"{pull.trigger_sender} requested a build of #{pull.number}"
        return f"GitHub pull request #{pull.number} of commit {pull.head_sha[:12]}"

    async def resolve_mergeable(self) -> bool:
        """Resolve the mergeable tri-state, polling GitHub while it is unknown.

        GitHub is queried at most ``mergeable_attempts`` times.  Exhausted
        attempts or a failed query resolve to not mergeable.
        """
        pull = self._pull
        if pull.mergeable != Mergeable.UNKNOWN:
            return pull.mergeable == Mergeable.TRUE
        attempts = self._ctx.config.mergeable_attempts
        for attempt in range(1, attempts + 1):
            try:
                remote = await self._ctx.github.get_pull(self._repo_name, pull.number)
            except RuntimeError as exc:
                logger.error(
                    "Could not fetch mergeability of #%d: %s",
                    pull.number,
                    exc,
                    extra=self._extra(),
                )
                return False
            if remote.mergeable != Mergeable.UNKNOWN:
                pull.mergeable = remote.mergeable
                return remote.mergeable == Mergeable.TRUE
            if attempt < attempts:
                await self._ctx.sleep_fn(self._ctx.config.mergeable_delay)
        logger.warning(
            "Mergeability of #%d still unknown after %d queries, building the head",
            pull.number,
            attempts,
            extra=self._extra(),
        )
        return False
