"""Async subprocess helpers used for ``gh`` calls and build commands."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import random
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("prgate.subprocess")


class AuthenticationError(RuntimeError):
    """Raised when a subprocess fails due to GitHub authentication issues."""


class SubprocessTimeoutError(RuntimeError):
    """Raised when a subprocess exceeds its allowed execution time."""


@dataclass
class SimpleResult:
    """Captured output of a finished subprocess."""

    stdout: str = ""
    stderr: str = ""
    returncode: int = 0


_AUTH_PATTERNS = (
    "401",
    "not logged in",
    "authentication required",
    "bad credentials",
    "auth token",
)

_RETRYABLE_PATTERNS = (
    "rate limit",
    "timeout",
    "timed out",
    "connection",
    "502",
    "503",
    "504",
)
_NON_RETRYABLE_PATTERNS = ("401", "403", "404", "422")


def _is_auth_error(stderr: str) -> bool:
    """Check if stderr indicates a GitHub authentication failure."""
    stderr_lower = stderr.lower()
    return any(p in stderr_lower for p in _AUTH_PATTERNS)


def _is_retryable_error(stderr: str) -> bool:
    """Check if a subprocess error indicates a transient/retryable condition."""
    stderr_lower = stderr.lower()
    for pattern in _NON_RETRYABLE_PATTERNS:
        if pattern in stderr_lower:
            # 403 with "rate limit" IS retryable
            if pattern == "403" and "rate limit" in stderr_lower:
                continue
            return False
    return any(p in stderr_lower for p in _RETRYABLE_PATTERNS)


def make_clean_env(
    gh_token: str = "", extra: dict[str, str] | None = None
) -> dict[str, str]:
    """Build a subprocess env dict from the current environment.

    When *gh_token* is non-empty it is injected as ``GH_TOKEN``; *extra*
    entries are layered on top.
    """
    env = {**os.environ}
    if gh_token:
        env["GH_TOKEN"] = gh_token
    if extra:
        env.update(extra)
    return env


async def _run_simple(
    cmd: list[str],
    *,
    cwd: str | None,
    env: dict[str, str],
    timeout: float,
) -> SimpleResult:
    """Run *cmd* to completion, killing it if it exceeds *timeout*."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout
        )
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise
    return SimpleResult(
        stdout=stdout_bytes.decode(errors="replace").strip(),
        stderr=stderr_bytes.decode(errors="replace").strip(),
        returncode=proc.returncode if proc.returncode is not None else -1,
    )


async def run_subprocess(
    *cmd: str,
    cwd: Path | None = None,
    gh_token: str = "",
    timeout: float = 120.0,
) -> str:
    """Run a subprocess and return stripped stdout.

    Raises :class:`SubprocessTimeoutError` if the command exceeds *timeout* seconds.
    Raises :class:`AuthenticationError` when stderr looks like an auth failure.
    Raises :class:`RuntimeError` on any other non-zero exit.
    """
    env = make_clean_env(gh_token)
    try:
        result = await _run_simple(
            list(cmd),
            cwd=str(cwd) if cwd is not None else None,
            env=env,
            timeout=timeout,
        )
    except TimeoutError:
        raise SubprocessTimeoutError(
            f"Command {cmd!r} timed out after {timeout}s"
        ) from None
    if result.returncode != 0:
        msg = f"Command {cmd!r} failed (rc={result.returncode}): {result.stderr}"
        if _is_auth_error(result.stderr):
            raise AuthenticationError(msg)
        raise RuntimeError(msg)
    return result.stdout


async def run_subprocess_with_retry(
    *cmd: str,
    cwd: Path | None = None,
    gh_token: str = "",
    max_retries: int = 3,
    base_delay_seconds: float = 1.0,
    max_delay_seconds: float = 30.0,
    timeout: float = 120.0,
) -> str:
    """Run a subprocess with exponential backoff retry on transient errors.

    Retries on: rate-limit, timeout, connection errors, 502/503/504.
    Does NOT retry on: auth (401), forbidden (403 without rate-limit),
    not-found (404) or validation (422) failures.

    Raises :class:`RuntimeError` after all retries are exhausted.
    """
    last_error: RuntimeError | None = None
    for attempt in range(max_retries + 1):
        try:
            return await run_subprocess(
                *cmd, cwd=cwd, gh_token=gh_token, timeout=timeout
            )
        except RuntimeError as exc:
            if isinstance(exc, AuthenticationError):
                raise
            last_error = exc
            error_msg = str(exc)
            if attempt >= max_retries or not _is_retryable_error(error_msg):
                raise
            delay = min(base_delay_seconds * (2**attempt), max_delay_seconds)
            jitter = random.uniform(0, delay * 0.5)  # noqa: S311
            total_delay = delay + jitter
            logger.warning(
                "Retryable error (attempt %d/%d), retrying in %.1fs: %s",
                attempt + 1,
                max_retries,
                total_delay,
                error_msg[:200],
            )
            await asyncio.sleep(total_delay)
    assert last_error is not None  # noqa: S101
    raise last_error
