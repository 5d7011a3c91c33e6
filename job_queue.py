"""Build execution interface and a local command-running implementation."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from config import PRGateConfig
from models import BuildPhase, BuildRequest, BuildResult
from subprocess_util import make_clean_env

logger = logging.getLogger("prgate.job_queue")

# Seconds to wait after SIGTERM before killing a cancelled build.
_TERMINATE_GRACE = 10.0
_OUTPUT_TAIL_CHARS = 20_000


@runtime_checkable
class BuildHandle(Protocol):
    """A two-phase handle: pending, then started, then finished with a result.

    Handles are polled; nothing blocks waiting for a transition.
    """

    build_id: str
    url: str

    @property
    def phase(self) -> BuildPhase: ...

    @property
    def result(self) -> BuildResult | None: ...

    async def cancel(self) -> bool:
        """Cancel the build; return *True* only if something was cancelled."""
        ...


@runtime_checkable
class JobQueue(Protocol):
    """Accepts build requests; ``None`` means the queue rejected the request."""

    async def enqueue(self, request: BuildRequest) -> BuildHandle | None: ...


class CommandBuild:
    """Handle for one execution of a repository's build command."""

    def __init__(self, request: BuildRequest, build_id: str, url: str = "") -> None:
        self.request = request
        self.build_id = build_id
        self.url = url
        self.output = ""
        self._phase = BuildPhase.PENDING
        self._result: BuildResult | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def phase(self) -> BuildPhase:
        return self._phase

    @property
    def result(self) -> BuildResult | None:
        return self._result

    @property
    def done(self) -> bool:
        return self._phase in (BuildPhase.FINISHED, BuildPhase.CANCELLED)

    def mark_started(self, proc: asyncio.subprocess.Process | None = None) -> None:
        if self._phase == BuildPhase.PENDING:
            self._phase = BuildPhase.STARTED
            self._proc = proc

    def mark_finished(self, result: BuildResult) -> None:
        if not self.done:
            self._phase = BuildPhase.FINISHED
            self._result = result

    def _mark_cancelled(self) -> None:
        self._phase = BuildPhase.CANCELLED
        self._result = BuildResult.ABORTED

    async def cancel(self) -> bool:
        if self.done:
            return False
        was_started = self._phase == BuildPhase.STARTED
        self._mark_cancelled()
        if not was_started:
            if self._task is not None:
                self._task.cancel()
            logger.info("Removed queued build %s", self.build_id)
            return True
        proc = self._proc
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=_TERMINATE_GRACE)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        logger.info("Interrupted running build %s", self.build_id)
        return True


class CommandJobQueue:
    """Runs each repository's ``build_command`` in a local shell.

    At most ``max_concurrent_builds`` commands run at once; the rest wait
    in the queue and report the pending phase.
    """

    def __init__(self, config: PRGateConfig) -> None:
        self._config = config
        self._semaphore = asyncio.Semaphore(config.max_concurrent_builds)
        self._ids = itertools.count(1)
        self._builds: dict[str, CommandBuild] = {}

    @property
    def builds(self) -> dict[str, CommandBuild]:
        return dict(self._builds)

    async def enqueue(self, request: BuildRequest) -> CommandBuild | None:
        repo = self._config.repo(request.repo)
        if repo is None or not repo.build_command:
            logger.error(
                "No build command configured for %s, cannot build #%d",
                request.repo,
                request.pull_id,
                extra={"repo": request.repo, "pr": request.pull_id},
            )
            return None
        build = CommandBuild(request, build_id=str(next(self._ids)))
        self._builds[build.build_id] = build
        build._task = asyncio.create_task(
            self._execute(
                build, repo.build_command, repo.build_workdir, repo.unstable_exit_code
            )
        )
        logger.info(
            "Queued build %s for %s#%d (%s)",
            build.build_id,
            request.repo,
            request.pull_id,
            request.ref,
            extra={
                "repo": request.repo,
                "pr": request.pull_id,
                "build": build.build_id,
            },
        )
        return build

    async def _execute(
        self,
        build: CommandBuild,
        command: str,
        workdir: Path | None,
        unstable_exit_code: int,
    ) -> None:
        try:
            async with self._semaphore:
                if build.done:
                    return
                env = make_clean_env(self._config.gh_token, build.request.variables)
                proc = await asyncio.create_subprocess_shell(
                    command,
                    cwd=str(workdir) if workdir is not None else None,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
                if build.done:
                    with contextlib.suppress(ProcessLookupError):
                        proc.terminate()
                    await proc.wait()
                    return
                build.mark_started(proc)
                stdout, _ = await proc.communicate()
                build.output = stdout.decode(errors="replace")[-_OUTPUT_TAIL_CHARS:]
                build.mark_finished(
                    _result_for(proc.returncode, unstable_exit_code)
                )
        except OSError:
            logger.exception("Build %s could not be started", build.build_id)
            build.mark_finished(BuildResult.FAILURE)
        finally:
            self._builds.pop(build.build_id, None)


def _result_for(returncode: int | None, unstable_exit_code: int) -> BuildResult:
    if returncode == 0:
        return BuildResult.SUCCESS
    if returncode == unstable_exit_code:
        return BuildResult.UNSTABLE
    return BuildResult.FAILURE
