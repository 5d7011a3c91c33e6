"""Comment phrase matching, skip-build detection and branch filtering."""

from __future__ import annotations

import functools
import logging
import re

from config import PRGateConfig, RepoConfig

logger = logging.getLogger("prgate.phrases")

_FLAGS = re.IGNORECASE | re.DOTALL


@functools.lru_cache(maxsize=256)
def compile_phrase(pattern: str) -> re.Pattern[str] | None:
    """Compile *pattern* case-insensitively with ``.`` matching newlines.

    Returns ``None`` (matches nothing) when the pattern is empty or invalid.
    """
    if not pattern:
        return None
    try:
        return re.compile(pattern, _FLAGS)
    except re.error as exc:
        logger.error("Invalid phrase pattern %r: %s", pattern, exc)
        return None


def matches_phrase(pattern: str, text: str) -> bool:
    """Return *True* if the whole of *text* matches *pattern*."""
    compiled = compile_phrase(pattern)
    return compiled is not None and compiled.fullmatch(text) is not None


def contains_phrase(phrase: str, text: str) -> bool:
    """Case-insensitive substring check; an empty *phrase* never matches."""
    return bool(phrase) and phrase.lower() in text.lower()


def split_phrases(value: str) -> list[str]:
    """Split a newline-separated phrase list, dropping blank entries."""
    return [line.strip() for line in value.splitlines() if line.strip()]


class PhrasePolicy:
    """Classifies comment bodies and PR text against the configured phrases."""

    def __init__(self, config: PRGateConfig, repo: RepoConfig) -> None:
        self._config = config
        self._repo = repo

    def is_retest(self, body: str) -> bool:
        return matches_phrase(self._config.retest_phrase, body)

    def is_whitelist(self, body: str) -> bool:
        return matches_phrase(self._config.whitelist_phrase, body)

    def is_ok_to_test(self, body: str) -> bool:
        return matches_phrase(self._config.ok_to_test_phrase, body)

    def is_trigger(self, body: str) -> bool:
        return contains_phrase(self._repo.trigger_phrase, body)

    def skip_build_phrase(self, title: str, body: str) -> str | None:
        """Return the first skip-build phrase matching *title* or *body*."""
        for phrase in split_phrases(self._config.skip_build_phrase):
            if matches_phrase(phrase, title) or matches_phrase(phrase, body):
                return phrase
        return None

    def is_allowed_target_branch(self, branch: str) -> bool:
        """Return *True* if *branch* matches the target-branch whitelist.

        An empty whitelist allows every branch.
        """
        patterns = [p for p in self._repo.white_list_target_branches if p.strip()]
        if not patterns:
            return True
        return any(matches_phrase(p, branch) for p in patterns)
