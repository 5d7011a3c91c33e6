"""Pytest configuration for PRGate tests."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

_ENV_OVERRIDES = (
    "PRGATE_GH_TOKEN",
    "PRGATE_STATE_FILE",
    "PRGATE_POLL_INTERVAL",
    "PRGATE_WEBHOOK_PORT",
    "PRGATE_GH_MAX_RETRIES",
    "PRGATE_USE_COMMENTS",
    "PRGATE_REPOS",
)


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep the developer's PRGATE_* variables out of config defaults."""
    for name in _ENV_OVERRIDES:
        if name in os.environ:
            monkeypatch.delenv(name)
    yield
