"""Persistence of tracked pull requests and runtime whitelist additions."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from file_util import atomic_write
from models import RepoStateData, StateData, TrackedPullRequest

logger = logging.getLogger("prgate.state")


class StateTracker:
    """JSON-file backed state so acceptance decisions survive restarts.

    Writes ``.prgate/state.json`` (or the configured path) after every
    mutation.
    """

    def __init__(self, state_file: Path) -> None:
        self._path = state_file
        self._data: StateData = StateData()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # --- persistence ---

    def load(self) -> dict[str, Any]:
        """Load state from disk, or initialise defaults."""
        if self._path.exists():
            try:
                loaded = json.loads(self._path.read_text())
                if not isinstance(loaded, dict):
                    raise ValueError("State file must contain a JSON object")
                self._data = StateData.model_validate(loaded)
                logger.info("State loaded from %s", self._path)
            except (json.JSONDecodeError, OSError, ValueError) as exc:
                logger.warning("Corrupt state file, resetting: %s", exc)
                self._data = StateData()
        return self._data.model_dump()

    def save(self) -> None:
        """Flush current state to disk atomically."""
        self._data.last_updated = datetime.now(UTC).isoformat()
        atomic_write(self._path, self._data.model_dump_json(indent=2))

    def reset(self) -> None:
        """Forget everything and persist the empty state."""
        self._data = StateData()
        self.save()

    def to_dict(self) -> dict[str, Any]:
        return self._data.model_dump(mode="json")

    def _repo(self, repo: str) -> RepoStateData:
        return self._data.repos.setdefault(repo.lower(), RepoStateData())

    # --- pull requests ---

    def get_pulls(self, repo: str) -> dict[int, TrackedPullRequest]:
        """Return ``{number: pull}`` for *repo* (copies, safe to mutate)."""
        stored = self._data.repos.get(repo.lower())
        if stored is None:
            return {}
        return {int(k): v.model_copy() for k, v in stored.pulls.items()}

    def set_pulls(self, repo: str, pulls: Iterable[TrackedPullRequest]) -> None:
        """Replace the tracked pulls of *repo* and persist."""
        self._repo(repo).pulls = {
            str(p.number): TrackedPullRequest.model_validate(p.model_dump())
            for p in pulls
        }
        self.save()

    # --- whitelist ---

    def get_whitelist(self, repo: str) -> list[str]:
        stored = self._data.repos.get(repo.lower())
        return list(stored.whitelist) if stored else []

    def add_whitelist(self, repo: str, login: str) -> None:
        """Record a runtime whitelist addition; entries are never removed."""
        whitelist = self._repo(repo).whitelist
        if login not in whitelist:
            whitelist.append(login)
            self.save()
