"""Admin, whitelist and organization-membership checks for one repository."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from config import RepoConfig

if TYPE_CHECKING:
    from github_client import GitHubClient

logger = logging.getLogger("prgate.permissions")


class PermissionPolicy:
    """Decides who may approve builds and whose PRs build automatically.

    The whitelist only grows at runtime.  Additions are reported through
    *on_whitelist_add* so the caller can persist them.
    """

    def __init__(
        self,
        repo: RepoConfig,
        github: GitHubClient,
        *,
        whitelist: Iterable[str] = (),
        on_whitelist_add: Callable[[str], None] | None = None,
    ) -> None:
        self._repo = repo
        self._github = github
        self._admins = frozenset(repo.admins)
        self._whitelist: set[str] = set(repo.whitelist)
        self._added: list[str] = []
        for login in whitelist:
            self._remember(login.lower())
        self._on_whitelist_add = on_whitelist_add

    @property
    def whitelist(self) -> frozenset[str]:
        return frozenset(self._whitelist)

    @property
    def added(self) -> list[str]:
        """Logins whitelisted at runtime, in the order they were added."""
        return list(self._added)

    async def is_admin(self, login: str) -> bool:
        login = login.lower()
        if login in self._admins:
            return True
        if self._repo.allow_org_members_as_admin:
            return await self._in_whitelisted_org(login)
        return False

    async def is_whitelisted(self, login: str) -> bool:
        login = login.lower()
        if self._repo.permit_all:
            return True
        if login in self._whitelist or login in self._admins:
            return True
        return await self._in_whitelisted_org(login)

    def add_whitelist(self, login: str) -> bool:
        """Whitelist *login*; return *True* if it was not already present."""
        login = login.lower()
        if not login or login in self._whitelist:
            return False
        self._remember(login)
        logger.info(
            "Added %s to the whitelist of %s",
            login,
            self._repo.name,
            extra={"repo": self._repo.name},
        )
        if self._on_whitelist_add is not None:
            self._on_whitelist_add(login)
        return True

    def _remember(self, login: str) -> None:
        if login and login not in self._whitelist:
            self._whitelist.add(login)
            self._added.append(login)

    async def _in_whitelisted_org(self, login: str) -> bool:
        for org in self._repo.orgs:
            try:
                if await self._github.is_org_member(org, login):
                    return True
            except RuntimeError as exc:
                logger.error(
                    "Could not check %s membership in %s: %s", login, org, exc
                )
        return False
