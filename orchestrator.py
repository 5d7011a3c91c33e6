"""Runs the reconciliation loops of every watched repository."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from config import PRGateConfig
from events import EventBus, EventType
from github_client import GhCliClient
from job_queue import CommandJobQueue
from reconciler import RepositoryReconciler
from state import StateTracker
from subprocess_util import AuthenticationError
from webhook import WebhookDispatcher, WebhookServer

if TYPE_CHECKING:
    from github_client import GitHubClient
    from job_queue import JobQueue
    from tracker import SleepFn

logger = logging.getLogger("prgate.orchestrator")


class PRGateOrchestrator:
    """Owns one reconciler per repository and drives them.

    Poll-mode repositories reconcile every ``poll_interval`` seconds.
    Webhook-mode repositories only check their builds on a short interval
    and fall back to a full reconciliation after a quiet period when the
    backup sweep is enabled.
    """

    def __init__(
        self,
        config: PRGateConfig,
        *,
        github: GitHubClient | None = None,
        queue: JobQueue | None = None,
        state: StateTracker | None = None,
        bus: EventBus | None = None,
        sleep_fn: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._github = github or GhCliClient(config)
        self._queue = queue or CommandJobQueue(config)
        self._state = state or StateTracker(config.state_file)
        self._bus = bus or EventBus()
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._running = False
        self._reconcilers: dict[str, RepositoryReconciler] = {
            repo.name: RepositoryReconciler(
                config,
                repo,
                self._github,
                self._queue,
                state=self._state,
                bus=self._bus,
                sleep_fn=sleep_fn,
                clock=clock,
            )
            for repo in config.repos
        }
        self._last_sweep: dict[str, float] = {
            name: clock() for name in self._reconcilers
        }
        self._dispatcher = WebhookDispatcher(self._reconcilers, self._bus)
        self._server: WebhookServer | None = None

    @property
    def reconcilers(self) -> dict[str, RepositoryReconciler]:
        return dict(self._reconcilers)

    @property
    def dispatcher(self) -> WebhookDispatcher:
        return self._dispatcher

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Run every repository loop until :meth:`stop` is called."""
        if not self._reconcilers:
            logger.warning("No repositories configured, nothing to watch")
            return
        self._stop_event.clear()
        self._running = True
        await self._publish_status("running")
        try:
            if self._config.webhook_enabled and self._config.webhook_repos:
                self._server = WebhookServer(
                    self._config, self._dispatcher, state=self._state, bus=self._bus
                )
                await self._server.start()
            await asyncio.gather(
                *(self._repo_loop(r) for r in self._reconcilers.values())
            )
        finally:
            if self._server is not None:
                await self._server.stop()
                self._server = None
            self._running = False
            await self._publish_status("stopped")

    async def run_once(self) -> dict[str, bool]:
        """Reconcile every repository once; return success per repository."""
        results: dict[str, bool] = {}
        for name, reconciler in self._reconcilers.items():
            results[name] = await reconciler.reconcile()
        return results

    async def stop(self) -> None:
        """Signal every loop to exit after its current iteration."""
        logger.info("Stopping PRGate")
        self._stop_event.set()

    async def _publish_status(self, status: str) -> None:
        await self._bus.emit(
            EventType.ORCHESTRATOR_STATUS,
            status=status,
            repos=sorted(self._reconcilers),
        )

    async def _repo_loop(self, reconciler: RepositoryReconciler) -> None:
        webhook_mode = reconciler.repo.use_webhooks
        interval = (
            self._config.build_check_interval
            if webhook_mode
            else self._config.poll_interval
        )
        while not self._stop_event.is_set():
            try:
                if webhook_mode:
                    await self._webhook_tick(reconciler)
                else:
                    await reconciler.reconcile()
            except AuthenticationError:
                raise
            except Exception:
                logger.exception(
                    "Loop iteration for %s failed, will retry next cycle",
                    reconciler.name,
                )
                await self._bus.emit(
                    EventType.ERROR,
                    message="Reconciliation loop error",
                    repo=reconciler.name,
                )
            await self._sleep_or_stop(interval)

    async def _webhook_tick(self, reconciler: RepositoryReconciler) -> None:
        await reconciler.check_builds()
        if self.needs_backup_sweep(reconciler):
            logger.info(
                "No webhook activity for %s in %ds, running a backup sweep",
                reconciler.name,
                self._config.backup_sweep_threshold,
            )
            self._last_sweep[reconciler.name] = self._clock()
            await reconciler.reconcile()

    def needs_backup_sweep(self, reconciler: RepositoryReconciler) -> bool:
        """Whether a webhook-driven repository is due a full reconciliation."""
        if not self._config.backup_sweep_enabled:
            return False
        if reconciler.builds.live_count:
            return False
        now = self._clock()
        quiet = now - reconciler.last_activity
        since_sweep = now - self._last_sweep.get(reconciler.name, 0.0)
        return (
            quiet >= self._config.backup_sweep_threshold
            and since_sweep >= self._config.backup_sweep_interval
        )

    async def _sleep_or_stop(self, seconds: int | float) -> None:
        """Sleep for *seconds*, waking early if stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
