"""Tests for permissions.py."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from github_client import GitHubError
from permissions import PermissionPolicy
from tests.helpers import ConfigFactory, FakeGitHub


def make_policy(github: FakeGitHub | None = None, **kwargs) -> PermissionPolicy:
    config = ConfigFactory.create(**kwargs)
    return PermissionPolicy(config.repos[0], github or FakeGitHub())


class TestIsAdmin:
    @pytest.mark.asyncio
    async def test_configured_admin(self) -> None:
        assert await make_policy().is_admin("admin") is True

    @pytest.mark.asyncio
    async def test_login_is_case_insensitive(self) -> None:
        assert await make_policy().is_admin("Admin") is True

    @pytest.mark.asyncio
    async def test_whitelisted_user_is_not_admin(self) -> None:
        assert await make_policy().is_admin("alice") is False

    @pytest.mark.asyncio
    async def test_org_members_are_not_admins_by_default(self) -> None:
        github = FakeGitHub()
        github.org_members["acme"] = {"carol"}
        policy = make_policy(github, orgs=["acme"])
        assert await policy.is_admin("carol") is False

    @pytest.mark.asyncio
    async def test_org_members_as_admins_when_enabled(self) -> None:
        github = FakeGitHub()
        github.org_members["acme"] = {"carol"}
        policy = make_policy(github, orgs=["acme"], allow_org_members_as_admin=True)
        assert await policy.is_admin("carol") is True


class TestIsWhitelisted:
    @pytest.mark.asyncio
    async def test_whitelisted_login(self) -> None:
        assert await make_policy().is_whitelisted("ALICE") is True

    @pytest.mark.asyncio
    async def test_admins_are_whitelisted(self) -> None:
        assert await make_policy().is_whitelisted("admin") is True

    @pytest.mark.asyncio
    async def test_unknown_login(self) -> None:
        assert await make_policy().is_whitelisted("mallory") is False

    @pytest.mark.asyncio
    async def test_permit_all(self) -> None:
        github = FakeGitHub()
        policy = make_policy(github, permit_all=True)
        assert await policy.is_whitelisted("mallory") is True
        github.is_org_member.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_org_member(self) -> None:
        github = FakeGitHub()
        github.org_members["acme"] = {"carol"}
        policy = make_policy(github, orgs=["other", "acme"])
        assert await policy.is_whitelisted("carol") is True

    @pytest.mark.asyncio
    async def test_org_lookup_failure_counts_as_not_member(self) -> None:
        github = FakeGitHub()
        github.is_org_member.side_effect = GitHubError("HTTP 500")
        policy = make_policy(github, orgs=["acme"])
        assert await policy.is_whitelisted("carol") is False


class TestAddWhitelist:
    @pytest.mark.asyncio
    async def test_adds_and_notifies(self) -> None:
        config = ConfigFactory.create()
        callback = MagicMock()
        policy = PermissionPolicy(
            config.repos[0], FakeGitHub(), on_whitelist_add=callback
        )

        assert policy.add_whitelist("Mallory") is True

        assert await policy.is_whitelisted("mallory") is True
        callback.assert_called_once_with("mallory")
        assert policy.added == ["mallory"]

    def test_adding_twice_is_a_no_op(self) -> None:
        config = ConfigFactory.create()
        callback = MagicMock()
        policy = PermissionPolicy(
            config.repos[0], FakeGitHub(), on_whitelist_add=callback
        )
        policy.add_whitelist("mallory")

        assert policy.add_whitelist("mallory") is False
        callback.assert_called_once()

    def test_configured_login_is_not_re_added(self) -> None:
        policy = make_policy()
        assert policy.add_whitelist("alice") is False
        assert policy.added == []

    def test_whitelist_only_grows(self) -> None:
        policy = make_policy()
        before = policy.whitelist
        policy.add_whitelist("mallory")
        policy.add_whitelist("mallory")
        assert before < policy.whitelist

    @pytest.mark.asyncio
    async def test_seeded_from_persisted_whitelist(self) -> None:
        config = ConfigFactory.create()
        policy = PermissionPolicy(
            config.repos[0], FakeGitHub(), whitelist=["Mallory"]
        )
        assert await policy.is_whitelisted("mallory") is True

    @pytest.mark.asyncio
    async def test_org_lookup_not_needed_for_whitelisted_login(self) -> None:
        github = FakeGitHub()
        github.is_org_member = AsyncMock(return_value=False)
        policy = make_policy(github, orgs=["acme"])
        await policy.is_whitelisted("alice")
        github.is_org_member.assert_not_awaited()
