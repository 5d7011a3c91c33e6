"""Full-snapshot reconciliation of one repository's open pull requests."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from builds import BuildCoordinator
from config import PRGateConfig, RepoConfig
from events import EventBus, EventType
from github_client import GitHubError
from models import (
    IssueCommentEvent,
    PullRequestEvent,
    PullRequestInfo,
    TrackedPullRequest,
)
from permissions import PermissionPolicy
from phrases import PhrasePolicy
from status import StatusReporter
from tracker import PullRequestTracker, SleepFn, TrackerContext

if TYPE_CHECKING:
    from github_client import GitHubClient
    from job_queue import JobQueue
    from state import StateTracker

logger = logging.getLogger("prgate.reconciler")

_CHECK_ACTIONS = frozenset({"opened", "reopened", "synchronize"})


class RepositoryReconciler:
    """Owns the tracked pull requests and live builds of one repository.

    Every entry point (poll sweep, build check, webhook event) runs under
    one lock, so the tracked map and the build map are never mutated
    concurrently.
    """

    def __init__(
        self,
        config: PRGateConfig,
        repo: RepoConfig,
        github: GitHubClient,
        queue: JobQueue,
        *,
        state: StateTracker | None = None,
        bus: EventBus | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._repo = repo
        self._github = github
        self._state = state
        self._bus = bus
        self._clock = clock
        self._lock = asyncio.Lock()

        self._permissions = PermissionPolicy(
            repo,
            github,
            whitelist=state.get_whitelist(repo.name) if state else (),
            on_whitelist_add=self._on_whitelist_add,
        )
        self._builds = BuildCoordinator(
            config,
            repo,
            queue,
            StatusReporter(config, repo, github, bus),
            github,
            bus,
        )
        self._ctx = TrackerContext(
            config=config,
            repo=repo,
            github=github,
            phrases=PhrasePolicy(config, repo),
            permissions=self._permissions,
            builds=self._builds,
            sleep_fn=sleep_fn,
        )
        stored = state.get_pulls(repo.name) if state else {}
        self._trackers: dict[int, PullRequestTracker] = {
            number: PullRequestTracker(pull, self._ctx)
            for number, pull in stored.items()
        }
        self.last_activity = clock()

    @property
    def name(self) -> str:
        return self._repo.name

    @property
    def repo(self) -> RepoConfig:
        return self._repo

    @property
    def builds(self) -> BuildCoordinator:
        return self._builds

    @property
    def permissions(self) -> PermissionPolicy:
        return self._permissions

    @property
    def pulls(self) -> dict[int, TrackedPullRequest]:
        return {number: t.pull for number, t in self._trackers.items()}

    def tracker(self, number: int) -> PullRequestTracker | None:
        return self._trackers.get(number)

    # --- persistence ---

    def _on_whitelist_add(self, login: str) -> None:
        if self._state is not None:
            self._state.add_whitelist(self._repo.name, login)

    def _persist(self) -> None:
        if self._state is None:
            return
        try:
            self._state.set_pulls(
                self._repo.name, [t.pull for t in self._trackers.values()]
            )
        except OSError:
            logger.exception("Could not persist state of %s", self._repo.name)

    def _touch(self) -> None:
        self.last_activity = self._clock()

    async def _report_error(self, message: str, **data: object) -> None:
        if self._bus is not None:
            await self._bus.emit(
                EventType.RECONCILE_ERROR, repo=self._repo.name, message=message, **data
            )

    # --- entry points ---

    async def reconcile(self) -> bool:
        """Diff the remote open pull requests against the tracked map.

        Returns *False* when the remote list could not be fetched, in which
        case nothing was changed.
        """
        async with self._lock:
            self._touch()
            try:
                remote_pulls = await self._github.list_open_pulls(self._repo.name)
            except GitHubError as exc:
                logger.error(
                    "Could not list open pull requests of %s: %s",
                    self._repo.name,
                    exc,
                    extra={"repo": self._repo.name},
                )
                await self._report_error(str(exc))
                return False

            remote_ids = {pr.number for pr in remote_pulls}
            for remote in sorted(remote_pulls, key=lambda pr: pr.number):
                try:
                    tracker = self._trackers.get(remote.number)
                    if tracker is None:
                        tracker = await self._track(remote)
                    await tracker.check(remote)
                except GitHubError as exc:
                    logger.error(
                        "Could not check #%d of %s: %s",
                        remote.number,
                        self._repo.name,
                        exc,
                        extra={"repo": self._repo.name, "pr": remote.number},
                    )
                    await self._report_error(str(exc), pr=remote.number)

            for number in sorted(set(self._trackers) - remote_ids):
                await self._forget(number)

            await self._builds.check()
            self._persist()
            return True

    async def check_builds(self) -> None:
        """Report on live builds without polling the pull request list."""
        async with self._lock:
            await self._builds.check()
            self._persist()

    async def handle_comment_event(self, event: IssueCommentEvent) -> None:
        """Apply a delivered comment to its pull request."""
        async with self._lock:
            self._touch()
            number = event.issue_number
            try:
                tracker = self._trackers.get(number)
                if tracker is None:
                    remote = await self._github.get_pull(self._repo.name, number)
                    if remote.state != "open":
                        return
                    # A fresh tracker scans the whole thread, this comment included.
                    tracker = await self._track(remote)
                    await tracker.check(remote)
                else:
                    await tracker.handle_comment(event.comment)
            except GitHubError as exc:
                logger.error(
                    "Could not handle comment on #%d of %s: %s",
                    number,
                    self._repo.name,
                    exc,
                    extra={"repo": self._repo.name, "pr": number},
                )
                await self._report_error(str(exc), pr=number)
            finally:
                self._persist()

    async def handle_pull_request_event(self, event: PullRequestEvent) -> None:
        """Track, re-check or forget a pull request after a delivery."""
        async with self._lock:
            self._touch()
            number = event.number
            if event.action == "closed":
                await self._forget(number)
                self._persist()
                return
            if event.action not in _CHECK_ACTIONS:
                logger.warning(
                    "Ignoring unsupported pull_request action %r on #%d",
                    event.action,
                    number,
                    extra={"repo": self._repo.name, "pr": number},
                )
                return
            try:
                tracker = self._trackers.get(number)
                if tracker is None:
                    tracker = await self._track(event.pull_request)
                await tracker.check(event.pull_request)
            except GitHubError as exc:
                logger.error(
                    "Could not check #%d of %s: %s",
                    number,
                    self._repo.name,
                    exc,
                    extra={"repo": self._repo.name, "pr": number},
                )
                await self._report_error(str(exc), pr=number)
            finally:
                self._persist()

    async def cancel_build(self, number: int) -> bool:
        async with self._lock:
            return await self._builds.cancel(number)

    # --- helpers ---

    async def _track(self, remote: PullRequestInfo) -> PullRequestTracker:
        tracker = await PullRequestTracker.discover(remote, self._ctx)
        self._trackers[remote.number] = tracker
        if self._bus is not None:
            await self._bus.emit(
                EventType.PR_TRACKED,
                repo=self._repo.name,
                pr=remote.number,
                author=tracker.pull.author,
                accepted=tracker.pull.accepted,
            )
        return tracker

    async def _forget(self, number: int) -> None:
        if self._trackers.pop(number, None) is None:
            return
        logger.info(
            "#%d of %s is no longer open, forgetting it",
            number,
            self._repo.name,
            extra={"repo": self._repo.name, "pr": number},
        )
        if self._repo.cancel_builds_on_close:
            await self._builds.cancel(number)
        if self._bus is not None:
            await self._bus.emit(EventType.PR_REMOVED, repo=self._repo.name, pr=number)
