"""Tests for webhook.py - payload parsing, dispatch and the HTTP endpoint."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from events import EventBus, EventType
from models import IssueCommentEvent, PullRequestEvent
from signature import compute_signature
from state import StateTracker
from tests.helpers import REPO, ConfigFactory, pull_payload
from webhook import (
    WEBHOOK_PATH,
    WebhookDispatcher,
    WebhookError,
    WebhookServer,
    decode_body,
    parse_webhook,
)

SECRET = "hook-secret"


def comment_payload(
    *,
    action: str = "created",
    number: int = 7,
    state: str = "open",
    is_pull: bool = True,
    body: str = "ok to test",
    login: str = "Admin",
    repo: str = REPO,
) -> dict:
    issue: dict = {"number": number, "state": state}
    if is_pull:
        issue["pull_request"] = {"url": f"https://api.github.com/repos/{repo}/pulls/7"}
    return {
        "action": action,
        "repository": {"full_name": repo},
        "issue": issue,
        "comment": {
            "id": 11,
            "body": body,
            "user": {"login": login},
            "created_at": "2024-05-01T12:05:00Z",
        },
    }


def pr_payload(action: str = "opened", number: int = 42) -> dict:
    return {
        "action": action,
        "number": number,
        "repository": {"full_name": REPO},
        "pull_request": pull_payload(number),
    }


def make_reconciler_mock(secret: str = SECRET) -> MagicMock:
    config = ConfigFactory.create(use_webhooks=True, webhook_secret=secret)
    reconciler = MagicMock()
    reconciler.name = REPO
    reconciler.repo = config.repos[0]
    reconciler.handle_comment_event = AsyncMock()
    reconciler.handle_pull_request_event = AsyncMock()
    return reconciler


# ---------------------------------------------------------------------------
# decode_body / parse_webhook
# ---------------------------------------------------------------------------


class TestDecodeBody:
    def test_json(self) -> None:
        assert decode_body(b'{"a": 1}', "application/json") == {"a": 1}

    def test_json_with_charset(self) -> None:
        body = b'{"a": 1}'
        assert decode_body(body, "application/json; charset=utf-8") == {"a": 1}

    def test_form_encoded_payload(self) -> None:
        body = urlencode({"payload": json.dumps({"a": 1})}).encode()
        assert decode_body(body, "application/x-www-form-urlencoded") == {"a": 1}

    def test_form_without_payload(self) -> None:
        with pytest.raises(WebhookError, match="payload"):
            decode_body(b"other=1", "application/x-www-form-urlencoded")

    def test_unsupported_content_type(self) -> None:
        with pytest.raises(WebhookError, match="Unsupported content type"):
            decode_body(b"<xml/>", "text/xml")

    def test_invalid_json(self) -> None:
        with pytest.raises(WebhookError, match="Invalid JSON"):
            decode_body(b"{nope", "application/json")

    def test_non_object_json(self) -> None:
        with pytest.raises(WebhookError, match="JSON object"):
            decode_body(b"[1]", "application/json")


class TestParseWebhook:
    def test_issue_comment(self) -> None:
        event = parse_webhook("issue_comment", comment_payload())
        assert isinstance(event, IssueCommentEvent)
        assert event.repo == REPO
        assert event.issue_number == 7
        assert event.is_pull_request is True
        assert event.comment.author == "admin"
        assert event.comment.body == "ok to test"

    def test_issue_comment_on_plain_issue(self) -> None:
        event = parse_webhook("issue_comment", comment_payload(is_pull=False))
        assert isinstance(event, IssueCommentEvent)
        assert event.is_pull_request is False

    def test_pull_request(self) -> None:
        event = parse_webhook("pull_request", pr_payload("synchronize"))
        assert isinstance(event, PullRequestEvent)
        assert event.action == "synchronize"
        assert event.pull_request.head_sha == "a" * 40

    def test_other_event_types_ignored(self) -> None:
        assert parse_webhook("push", {"ref": "refs/heads/main"}) is None

    def test_malformed_payload(self) -> None:
        with pytest.raises(WebhookError, match="Malformed issue_comment"):
            parse_webhook("issue_comment", {"action": "created"})


# ---------------------------------------------------------------------------
# WebhookDispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    def test_find_is_case_insensitive(self) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})
        assert dispatcher.find("ACME/Widgets") is reconciler
        assert dispatcher.find("acme/other") is None

    @pytest.mark.asyncio
    async def test_verify_rejection_emits_event(self) -> None:
        bus = EventBus()
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler}, bus)

        assert await dispatcher.verify(reconciler, b"{}", "sha1=bad") is False
        assert bus.get_history(EventType.WEBHOOK_REJECTED)

    @pytest.mark.asyncio
    async def test_verify_accepts_valid_signature(self) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})
        signature = compute_signature(b"{}", SECRET)
        assert await dispatcher.verify(reconciler, b"{}", signature) is True

    @pytest.mark.asyncio
    async def test_dispatch_comment(self) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})
        event = parse_webhook("issue_comment", comment_payload())

        await dispatcher.dispatch(event)

        reconciler.handle_comment_event.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            comment_payload(action="edited"),
            comment_payload(state="closed"),
            comment_payload(is_pull=False),
        ],
    )
    async def test_dispatch_ignores_irrelevant_comments(self, payload: dict) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})

        await dispatcher.dispatch(parse_webhook("issue_comment", payload))

        reconciler.handle_comment_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatch_pull_request(self) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})
        event = parse_webhook("pull_request", pr_payload())

        await dispatcher.dispatch(event)

        reconciler.handle_pull_request_event.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_dispatch_unknown_repository(self) -> None:
        reconciler = make_reconciler_mock()
        dispatcher = WebhookDispatcher({REPO: reconciler})
        event = parse_webhook("issue_comment", comment_payload(repo="acme/other"))

        await dispatcher.dispatch(event)

        reconciler.handle_comment_event.assert_not_awaited()


# ---------------------------------------------------------------------------
# HTTP endpoint
# ---------------------------------------------------------------------------


class Endpoint:
    """A TestClient for the webhook app backed by a mocked reconciler."""

    def __init__(self, tmp_path, secret: str = SECRET) -> None:
        self.reconciler = make_reconciler_mock(secret)
        self.bus = EventBus()
        self.state = StateTracker(tmp_path / "state.json")
        config = ConfigFactory.create(
            use_webhooks=True, webhook_secret=secret, state_file=self.state.path
        )
        dispatcher = WebhookDispatcher({REPO: self.reconciler}, self.bus)
        server = WebhookServer(config, dispatcher, state=self.state, bus=self.bus)
        self.client = TestClient(server.create_app())

    def post(
        self,
        event: str,
        payload: dict,
        *,
        secret: str | None = SECRET,
        content_type: str = "application/json",
    ):
        body = json.dumps(payload).encode()
        headers = {"X-GitHub-Event": event, "Content-Type": content_type}
        if secret:
            headers["X-Hub-Signature"] = compute_signature(body, secret)
        return self.client.post(WEBHOOK_PATH, content=body, headers=headers)


class TestEndpoint:
    def test_signed_comment_is_accepted_and_dispatched(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)

        response = endpoint.post("issue_comment", comment_payload())

        assert response.status_code == 202
        endpoint.reconciler.handle_comment_event.assert_awaited_once()

    def test_bad_signature_is_rejected(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)

        response = endpoint.post("issue_comment", comment_payload(), secret="wrong")

        assert response.status_code == 401
        endpoint.reconciler.handle_comment_event.assert_not_awaited()
        assert endpoint.bus.get_history(EventType.WEBHOOK_REJECTED)

    def test_missing_signature_is_rejected(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post("issue_comment", comment_payload(), secret=None)
        assert response.status_code == 401

    def test_no_secret_accepts_unsigned(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path, secret="")
        response = endpoint.post("pull_request", pr_payload(), secret=None)
        assert response.status_code == 202
        endpoint.reconciler.handle_pull_request_event.assert_awaited_once()

    def test_ping(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post("ping", {"zen": "Keep it simple."})
        assert response.json() == {"status": "pong"}

    def test_ignored_event_type(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post("push", {"ref": "refs/heads/main"})
        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_unknown_repository(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post(
            "issue_comment", comment_payload(repo="acme/other")
        )
        assert response.status_code == 404

    def test_malformed_payload(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post("issue_comment", {"action": "created"})
        assert response.status_code == 400

    def test_unsupported_content_type(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.post(
            "issue_comment", comment_payload(), content_type="text/plain"
        )
        assert response.status_code == 415

    def test_empty_body(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        response = endpoint.client.post(
            WEBHOOK_PATH, content=b"", headers={"X-GitHub-Event": "issue_comment"}
        )
        assert response.status_code == 400

    def test_form_encoded_delivery(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        body = urlencode({"payload": json.dumps(comment_payload())}).encode()
        response = endpoint.client.post(
            WEBHOOK_PATH,
            content=body,
            headers={
                "X-GitHub-Event": "issue_comment",
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Hub-Signature": compute_signature(body, SECRET),
            },
        )
        assert response.status_code == 202

    def test_health_and_read_api(self, tmp_path) -> None:
        endpoint = Endpoint(tmp_path)
        assert endpoint.client.get("/healthz").json() == {"status": "ok"}
        assert "repos" in endpoint.client.get("/api/state").json()
        endpoint.post("issue_comment", comment_payload(), secret="wrong")
        events = endpoint.client.get("/api/events").json()
        assert events[0]["type"] == "webhook_rejected"
