"""HTTP (Events API) surface for the bridge.

Routes:
- GET  /healthz             liveness
- POST /slack/events        url_verification and event_callback envelopes
- POST /slack/interactions  form-encoded ``payload`` for button clicks

Every Slack request is verified with the v0 signing scheme. Work runs as a
background task so the 3-second ack deadline is met.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional
from urllib.parse import parse_qs

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, Field

from bridge_hub.events import EventRouter

logger = logging.getLogger(__name__)

SIGNATURE_VERSION = "v0"
REPLAY_WINDOW_S = 300


class SlackEnvelope(BaseModel):
    type: str
    token: Optional[str] = None
    challenge: Optional[str] = None
    team_id: Optional[str] = None
    event_id: Optional[str] = None
    event: dict[str, Any] = Field(default_factory=dict)


def compute_signature(secret: str, timestamp: str, body: bytes) -> str:
    base = f"{SIGNATURE_VERSION}:{timestamp}:".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    secret: str,
    timestamp: str | None,
    body: bytes,
    signature: str | None,
    *,
    now: float | None = None,
    tolerance_s: int = REPLAY_WINDOW_S,
) -> bool:
    """Check ``X-Slack-Signature`` and reject stale timestamps."""
    if not secret or not timestamp or not signature:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance_s:
        logger.warning("Rejected Slack request with stale timestamp %s", timestamp)
        return False
    return hmac.compare_digest(compute_signature(secret, timestamp, body), signature)


def create_app(router: EventRouter, signing_secret: str | None, *, lifespan: Any = None) -> FastAPI:
    app = FastAPI(title="Slack LLM Bridge", lifespan=lifespan)

    async def _verified_body(request: Request, timestamp: str | None, signature: str | None) -> bytes:
        body = await request.body()
        if signing_secret and not verify_slack_signature(signing_secret, timestamp, body, signature):
            raise HTTPException(status_code=401, detail="Invalid Slack signature")
        return body

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/slack/events")
    async def slack_events(
        request: Request,
        background: BackgroundTasks,
        x_slack_request_timestamp: Optional[str] = Header(default=None),
        x_slack_signature: Optional[str] = Header(default=None),
        x_slack_retry_num: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        body = await _verified_body(request, x_slack_request_timestamp, x_slack_signature)
        try:
            envelope = SlackEnvelope(**json.loads(body or b"{}"))
        except (ValueError, TypeError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid event body: {e}")

        if envelope.type == "url_verification":
            return {"challenge": envelope.challenge}
        if x_slack_retry_num:
            # The first delivery is already being processed.
            logger.info("Acking Slack retry #%s for %s", x_slack_retry_num, envelope.event_id)
            return {"ok": True}
        if envelope.type == "event_callback" and envelope.event:
            background.add_task(router.handle_event, envelope.event)
        return {"ok": True}

    @app.post("/slack/interactions")
    async def slack_interactions(
        request: Request,
        background: BackgroundTasks,
        x_slack_request_timestamp: Optional[str] = Header(default=None),
        x_slack_signature: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        body = await _verified_body(request, x_slack_request_timestamp, x_slack_signature)
        form = parse_qs(body.decode("utf-8"))
        raw = (form.get("payload") or [""])[0]
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Missing or invalid payload")
        background.add_task(router.handle_interaction, payload)
        return {"ok": True}

    return app
