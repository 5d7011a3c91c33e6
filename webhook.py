"""Webhook ingress: payload interpretation, routing and the HTTP server."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from events import EventBus, EventType
from models import IssueComment, IssueCommentEvent, PullRequestEvent, PullRequestInfo
from signature import SignatureValidator

if TYPE_CHECKING:
    from config import PRGateConfig
    from reconciler import RepositoryReconciler
    from state import StateTracker

logger = logging.getLogger("prgate.webhook")

WEBHOOK_PATH = "/prgatehook/"

WebhookEvent = IssueCommentEvent | PullRequestEvent


class WebhookError(ValueError):
    """Raised when a delivery cannot be interpreted."""


def decode_body(body: bytes, content_type: str) -> dict[str, Any]:
    """Decode a JSON or form-encoded (``payload=``) delivery body."""
    media_type = content_type.split(";")[0].strip().lower()
    if media_type == "application/json":
        text = body.decode("utf-8", errors="replace")
    elif media_type == "application/x-www-form-urlencoded":
        form = parse_qs(body.decode("utf-8", errors="replace"))
        values = form.get("payload")
        if not values:
            raise WebhookError("Form delivery without a payload field")
        text = values[0]
    else:
        raise WebhookError(f"Unsupported content type {content_type!r}")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise WebhookError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise WebhookError("Payload must be a JSON object")
    return payload


def parse_webhook(event: str, payload: Mapping[str, Any]) -> WebhookEvent | None:
    """Interpret *payload* for the GitHub *event* type.

    Returns ``None`` for event types the engine does not consume.
    """
    if event not in ("issue_comment", "pull_request"):
        return None
    try:
        repo = payload["repository"]["full_name"]
        action = payload.get("action", "")
        if event == "issue_comment":
            issue = payload["issue"]
            return IssueCommentEvent(
                action=action,
                repo=repo,
                issue_number=issue["number"],
                issue_state=issue.get("state", "open"),
                is_pull_request=issue.get("pull_request") is not None,
                comment=IssueComment.model_validate(payload["comment"]),
            )
        return PullRequestEvent(
            action=action,
            repo=repo,
            number=payload["number"],
            pull_request=PullRequestInfo.model_validate(payload["pull_request"]),
        )
    except (KeyError, TypeError, ValidationError) as exc:
        raise WebhookError(f"Malformed {event} payload: {exc}") from exc


class WebhookDispatcher:
    """Routes verified deliveries to the reconciler of their repository."""

    def __init__(
        self,
        reconcilers: Mapping[str, RepositoryReconciler],
        bus: EventBus | None = None,
    ) -> None:
        self._reconcilers = {name.lower(): r for name, r in reconcilers.items()}
        self._bus = bus

    def find(self, repo: str) -> RepositoryReconciler | None:
        return self._reconcilers.get(repo.lower())

    async def verify(
        self, reconciler: RepositoryReconciler, body: bytes, signature: str | None
    ) -> bool:
        """Check *signature* against the repository secret, recording rejections."""
        if SignatureValidator.check(body, signature, reconciler.repo.webhook_secret):
            return True
        logger.warning(
            "Rejected delivery for %s: bad signature",
            reconciler.name,
            extra={"repo": reconciler.name},
        )
        if self._bus is not None:
            await self._bus.emit(
                EventType.WEBHOOK_REJECTED, repo=reconciler.name, reason="signature"
            )
        return False

    async def dispatch(self, event: WebhookEvent) -> None:
        """Hand *event* to its repository's reconciler."""
        reconciler = self.find(event.repo)
        if reconciler is None:
            logger.warning("Delivery for untracked repository %s", event.repo)
            return
        if isinstance(event, IssueCommentEvent):
            if event.action != "created":
                logger.debug("Ignoring comment action %r", event.action)
                return
            if event.issue_state != "open":
                logger.debug("Ignoring comment on closed #%d", event.issue_number)
                return
            if not event.is_pull_request:
                logger.debug("Ignoring comment on issue #%d", event.issue_number)
                return
            await reconciler.handle_comment_event(event)
        else:
            await reconciler.handle_pull_request_event(event)


class WebhookServer:
    """Serves the webhook endpoint and a small read-only API.

    Runs a uvicorn server in a background asyncio task so it shares the
    event loop with the reconciliation loops.
    """

    def __init__(
        self,
        config: PRGateConfig,
        dispatcher: WebhookDispatcher,
        *,
        state: StateTracker | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._state = state
        self._bus = bus
        self._server_task: asyncio.Task[None] | None = None

    def create_app(self) -> FastAPI:
        app = FastAPI(title="PRGate", docs_url=None, redoc_url=None)

        @app.post(WEBHOOK_PATH)
        async def receive(
            request: Request, background: BackgroundTasks
        ) -> JSONResponse:
            body = await request.body()
            if not body:
                return JSONResponse({"error": "empty body"}, status_code=400)
            event_type = request.headers.get("X-GitHub-Event", "")
            if event_type == "ping":
                return JSONResponse({"status": "pong"})
            content_type = request.headers.get("Content-Type", "application/json")
            try:
                payload = decode_body(body, content_type)
                event = parse_webhook(event_type, payload)
            except WebhookError as exc:
                status = 415 if "content type" in str(exc) else 400
                logger.warning("Unusable %s delivery: %s", event_type or "?", exc)
                return JSONResponse({"error": str(exc)}, status_code=status)
            if event is None:
                return JSONResponse({"status": "ignored", "event": event_type})

            reconciler = self._dispatcher.find(event.repo)
            if reconciler is None:
                return JSONResponse(
                    {"error": f"repository {event.repo} is not watched"},
                    status_code=404,
                )
            signature = request.headers.get("X-Hub-Signature")
            if not await self._dispatcher.verify(reconciler, body, signature):
                return JSONResponse({"error": "invalid signature"}, status_code=401)

            background.add_task(self._dispatcher.dispatch, event)
            return JSONResponse({"status": "accepted"}, status_code=202)

        @app.get("/api/state")
        async def get_state() -> JSONResponse:
            if self._state is None:
                return JSONResponse({})
            return JSONResponse(self._state.to_dict())

        @app.get("/api/events")
        async def get_events() -> JSONResponse:
            if self._bus is None:
                return JSONResponse([])
            return JSONResponse(
                [e.model_dump(mode="json") for e in self._bus.get_history()]
            )

        @app.get("/healthz")
        async def healthz() -> JSONResponse:
            return JSONResponse({"status": "ok"})

        return app

    async def start(self) -> None:
        """Start uvicorn in a background task."""
        import uvicorn

        app = self.create_app()
        config = uvicorn.Config(
            app,
            host=self._config.webhook_host,
            port=self._config.webhook_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(server.serve())
        logger.info(
            "Webhook endpoint listening on http://%s:%d%s",
            self._config.webhook_host,
            self._config.webhook_port,
            WEBHOOK_PATH,
        )

    async def stop(self) -> None:
        """Stop the server task."""
        if self._server_task and not self._server_task.done():
            self._server_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._server_task
        self._server_task = None
