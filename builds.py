"""Per-repository build bookkeeping: one live build per pull request."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from build_variables import expand_macros, merge_ref
from config import PRGateConfig, RepoConfig
from events import EventBus, EventType
from job_queue import BuildHandle, JobQueue
from models import BuildPhase, BuildRequest, BuildResult, CommitState
from status import (
    StatusReporter,
    commit_state_for,
    completed_message,
    result_comment,
    started_message,
    status_url_for,
    triggered_message,
)

if TYPE_CHECKING:
    from github_client import GitHubClient

logger = logging.getLogger("prgate.builds")


@dataclass
class LiveBuild:
    """A build handle plus what is needed to report on it."""

    handle: BuildHandle
    pull_id: int
    sha: str
    merge: bool
    variables: dict[str, str] = field(default_factory=dict)
    started_reported: bool = False


class BuildCoordinator:
    """Maps pull-request id to its in-flight build.

    Scheduling a build for a pull request that already has one cancels the
    old build first, so two builds never run for the same pull request.
    Callers serialize access per repository.
    """

    def __init__(
        self,
        config: PRGateConfig,
        repo: RepoConfig,
        queue: JobQueue,
        reporter: StatusReporter,
        github: GitHubClient,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        self._queue = queue
        self._reporter = reporter
        self._github = github
        self._bus = bus
        self._live: dict[int, LiveBuild] = {}

    def get(self, pull_id: int) -> LiveBuild | None:
        return self._live.get(pull_id)

    @property
    def live_count(self) -> int:
        return len(self._live)

    def _log_extra(self, live: LiveBuild) -> dict[str, object]:
        return {
            "repo": self._repo.name,
            "pr": live.pull_id,
            "sha": live.sha,
            "build": live.handle.build_id,
        }

    async def _emit(
        self, event_type: EventType, live: LiveBuild, **data: object
    ) -> None:
        if self._bus is not None:
            await self._bus.emit(
                event_type,
                repo=self._repo.name,
                pr=live.pull_id,
                sha=live.sha,
                build=live.handle.build_id,
                **data,
            )

    async def schedule(
        self,
        pull_id: int,
        commit_sha: str,
        use_merge_ref: bool,
        *,
        variables: dict[str, str] | None = None,
        cause: str = "",
    ) -> BuildHandle | None:
        """Enqueue a build of *pull_id*, replacing any build already in flight."""
        if pull_id in self._live:
            await self.cancel(pull_id)
            stuck = self._live.get(pull_id)
            if stuck is not None:
                logger.error(
                    "Build %s of #%d is still live, not scheduling another",
                    stuck.handle.build_id,
                    pull_id,
                    extra=self._log_extra(stuck),
                )
                return None

        variables = dict(variables or {})
        request = BuildRequest(
            repo=self._repo.name,
            pull_id=pull_id,
            head_sha=commit_sha,
            ref=merge_ref(pull_id) if use_merge_ref else commit_sha,
            merge=use_merge_ref,
            variables=variables,
            cause=cause,
            description=expand_macros(
                self._repo.build_description_template, variables
            ),
        )
        handle = await self._queue.enqueue(request)
        if handle is None:
            logger.error(
                "Job queue rejected the build of #%d at %s",
                pull_id,
                commit_sha[:12],
                extra={"repo": self._repo.name, "pr": pull_id, "sha": commit_sha},
            )
            return None

        live = LiveBuild(
            handle=handle,
            pull_id=pull_id,
            sha=commit_sha,
            merge=use_merge_ref,
            variables=variables,
        )
        self._live[pull_id] = live
        logger.info(
            "Scheduled build %s for #%d (%s)",
            handle.build_id,
            pull_id,
            request.ref,
            extra=self._log_extra(live),
        )
        await self._reporter.report(
            pull_id,
            commit_sha,
            CommitState.PENDING,
            status_url_for(self._repo, handle.url, variables),
            triggered_message(self._repo, use_merge_ref, variables),
        )
        await self._emit(
            EventType.BUILD_SCHEDULED, live, ref=request.ref, cause=cause
        )
        return handle

    async def check(self) -> None:
        """Report start and completion of every live build, once each."""
        for pull_id, live in list(self._live.items()):
            phase = live.handle.phase
            if phase == BuildPhase.CANCELLED:
                self._live.pop(pull_id, None)
                logger.info(
                    "Build %s was cancelled outside the coordinator",
                    live.handle.build_id,
                    extra=self._log_extra(live),
                )
                await self._emit(EventType.BUILD_CANCELLED, live)
                continue
            if phase == BuildPhase.STARTED and not live.started_reported:
                live.started_reported = True
                await self._on_started(live)
            elif phase == BuildPhase.FINISHED:
                self._live.pop(pull_id, None)
                await self._on_finished(live)

    async def cancel(self, pull_id: int) -> bool:
        """Cancel and forget the build of *pull_id*.

        Returns *True* only if a queued or running build was actually
        cancelled.  A handle whose cancel call fails stays tracked.
        """
        live = self._live.get(pull_id)
        if live is None:
            return False
        try:
            cancelled = await live.handle.cancel()
        except (RuntimeError, OSError) as exc:
            logger.error(
                "Could not cancel build %s: %s",
                live.handle.build_id,
                exc,
                extra=self._log_extra(live),
            )
            return False
        self._live.pop(pull_id, None)
        if cancelled:
            logger.info(
                "Cancelled build %s of #%d",
                live.handle.build_id,
                pull_id,
                extra=self._log_extra(live),
            )
            await self._emit(EventType.BUILD_CANCELLED, live)
        return cancelled

    async def _on_started(self, live: LiveBuild) -> None:
        logger.info(
            "Build %s of #%d started",
            live.handle.build_id,
            live.pull_id,
            extra=self._log_extra(live),
        )
        await self._reporter.report(
            live.pull_id,
            live.sha,
            CommitState.PENDING,
            status_url_for(self._repo, live.handle.url, live.variables),
            started_message(self._repo, live.merge, live.variables),
        )
        await self._emit(EventType.BUILD_STARTED, live)

    async def _on_finished(self, live: LiveBuild) -> None:
        result = live.handle.result
        state = commit_state_for(result, self._config.unstable_as)
        logger.info(
            "Build %s of #%d finished: %s",
            live.handle.build_id,
            live.pull_id,
            result,
            extra=self._log_extra(live),
        )
        build_url = live.handle.url
        await self._reporter.report(
            live.pull_id,
            live.sha,
            state,
            status_url_for(self._repo, build_url, live.variables),
            completed_message(self._repo, state, live.variables),
        )

        body = result_comment(self._repo, state, build_url, live.variables)
        if body:
            try:
                await self._github.add_comment(self._repo.name, live.pull_id, body)
            except RuntimeError as exc:
                logger.error(
                    "Could not post the result comment on #%d: %s",
                    live.pull_id,
                    exc,
                    extra=self._log_extra(live),
                )

        if (
            self._repo.auto_close_failed_pull_requests
            and result != BuildResult.SUCCESS
            and state == CommitState.FAILURE
        ):
            await self._close_failed(live)

        await self._emit(
            EventType.BUILD_FINISHED,
            live,
            result=result.value if result else None,
            state=state.value,
        )

    async def _close_failed(self, live: LiveBuild) -> None:
        try:
            pull = await self._github.get_pull(self._repo.name, live.pull_id)
            if pull.state != "open":
                return
            await self._github.close_pull(self._repo.name, live.pull_id)
            logger.info(
                "Closed #%d after a failed build",
                live.pull_id,
                extra=self._log_extra(live),
            )
        except RuntimeError as exc:
            logger.error(
                "Could not close #%d after a failed build: %s",
                live.pull_id,
                exc,
                extra=self._log_extra(live),
            )
