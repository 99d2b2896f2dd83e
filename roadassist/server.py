"""
Relay server: call initiation, Bland webhook ingress, event polling and
the push socket.

Usage:
    roadassist serve
    # or
    uvicorn roadassist.server:app --host 0.0.0.0 --port 3002
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import uuid4

import structlog
from fastapi import FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from roadassist.bland_client import BlandClient, resolve_context
from roadassist.config import Settings, get_settings
from roadassist.errors import (
    IngestAuthError,
    IngestMalformedError,
    InvalidNumberError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from roadassist.event_log import EventLog, format_ts, parse_ts
from roadassist.events import CallEventType
from roadassist.fanout import EventFanout, Subscriber
from roadassist.ingress import SIGNATURE_HEADER, WebhookIngress
from roadassist.models import CallContext, utcnow
from roadassist.phone_utils import mask_phone

log = structlog.get_logger(__name__)


class InitiateCallRequest(BaseModel):
    phone_number: str = ""
    customer_name: Optional[str] = None
    location: Optional[str] = None
    vehicle: Optional[str] = None
    issue: Optional[str] = None
    image_summary: Optional[str] = None
    previous_issues: Optional[list[str]] = None
    last_service_date: Optional[str] = None
    membership: Optional[str] = None

    def context(self) -> CallContext:
        return CallContext(**self.model_dump(exclude={"phone_number"}))


class TranscriptInjectRequest(BaseModel):
    call_id: str = ""
    text: str = ""
    speaker: str = "ai"


def create_app(
    settings: Optional[Settings] = None,
    event_log: Optional[EventLog] = None,
    fanout: Optional[EventFanout] = None,
    call_client: Optional[BlandClient] = None,
) -> FastAPI:
    """Create the FastAPI app. Collaborators default to ones built from *settings*."""

    settings = settings or get_settings()
    event_log = event_log or EventLog(settings.event_log_path)
    fanout = fanout or EventFanout(settings.push_send_timeout_seconds)
    call_client = call_client or BlandClient(settings)
    ingress = WebhookIngress(settings, event_log, fanout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start up: open the event log. Shut down: close it and the Bland client."""
        await event_log.connect()
        log.info("server_started", event_log=str(settings.event_log_path), env=settings.environment)
        yield
        await call_client.close()
        await event_log.close()
        log.info("server_stopped")

    app = FastAPI(title="RoadAssist Relay", version="0.3.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        allow_credentials=True,
    )
    app.state.settings = settings
    app.state.event_log = event_log
    app.state.fanout = fanout
    app.state.call_client = call_client
    app.state.ingress = ingress

    # ── Health ────────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/health")
    async def api_health():
        return {
            "status": "ok",
            "message": "Server is running",
            "events": await event_log.count(),
            "subscribers": fanout.subscriber_count,
        }

    @app.get("/api/ping")
    async def ping():
        return {"pong": True, "timestamp": format_ts(utcnow())}

    @app.get("/webhook/health")
    async def webhook_health():
        return {
            "status": "ok",
            "message": "Bland webhook endpoint is ready",
            "signature_required": bool(settings.webhook_secret) or settings.is_production,
            "timestamp": format_ts(utcnow()),
        }

    # ─────────────────────────────────────────────────────────
    #   Call initiation
    # ─────────────────────────────────────────────────────────
    @app.post("/api/bland-call")
    async def initiate_call(body: InitiateCallRequest):
        if not body.phone_number.strip():
            raise HTTPException(status_code=400, detail={"error": "Phone number is required"})

        context = body.context()
        try:
            result = await call_client.initiate_call(body.phone_number, context)
        except InvalidNumberError as e:
            raise HTTPException(status_code=400, detail={"error": "Invalid phone number", "details": str(e)})
        except ProviderUnavailableError as e:
            raise HTTPException(status_code=503, detail={"error": "Failed to initiate call", "details": str(e)})
        except ProviderRejectedError as e:
            raise HTTPException(status_code=502, detail={"error": "Failed to initiate call", "details": str(e)})

        resolved = resolve_context(context)
        return {
            "callId": result.call_id,
            "status": result.provider_status or result.initial_phase.value,
            "message": "Call initiated successfully",
            "customerInfo": {
                "name": resolved.customer_name,
                "phone": mask_phone(body.phone_number),
                "vehicle": resolved.vehicle,
                "location": resolved.location,
                "issue": resolved.issue,
                "membershipLevel": resolved.membership,
            },
        }

    # ─────────────────────────────────────────────────────────
    #   Bland webhook
    # ─────────────────────────────────────────────────────────
    @app.post("/webhook")
    async def bland_webhook(
        request: Request,
        x_webhook_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
    ):
        body = await request.body()
        try:
            record = await ingress.receive(body, x_webhook_signature)
        except IngestAuthError as e:
            raise HTTPException(status_code=401, detail=str(e))
        except IngestMalformedError as e:
            raise HTTPException(status_code=400, detail=str(e))

        # Bland only needs a 200; processing problems must not trigger retries
        return {"success": record is not None}

    # ─────────────────────────────────────────────────────────
    #   Reconciliation poll
    # ─────────────────────────────────────────────────────────
    @app.get("/api/webhook-updates")
    async def webhook_updates(
        since: Optional[str] = Query(None),
        call_id: Optional[str] = Query(None, alias="callId"),
    ):
        since_ts: Optional[datetime] = None
        if since:
            try:
                since_ts = parse_ts(since)
            except ValueError:
                log.warning("poll_since_invalid", since=since)

        records = await event_log.query_since(since_ts, call_id)
        if records:
            watermark = format_ts(records[-1].received_at)
        else:
            watermark = format_ts(since_ts) if since_ts else None

        return {
            "webhooks": [r.model_dump(mode="json") for r in records],
            "watermark": watermark,
            "filters": {
                "callId": call_id,
                "since": format_ts(since_ts) if since_ts else None,
            },
        }

    # ─────────────────────────────────────────────────────────
    #   Push channel
    # ─────────────────────────────────────────────────────────
    @app.websocket("/ws/events")
    async def events_socket(websocket: WebSocket) -> None:
        subscriber_id = websocket.query_params.get("session_id") or str(uuid4())
        await websocket.accept()
        await fanout.subscribe(Subscriber(subscriber_id=subscriber_id, send=websocket.send_json))
        await websocket.send_json({"type": "subscribed", "subscriber_id": subscriber_id})
        try:
            while True:
                # Nothing is expected from the UI; reading detects the disconnect.
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await fanout.unsubscribe(subscriber_id)

    # ─────────────────────────────────────────────────────────
    #   Development tools
    # ─────────────────────────────────────────────────────────
    @app.post("/api/test-transcript-stream")
    async def test_transcript_stream(body: TranscriptInjectRequest):
        if settings.is_production:
            raise HTTPException(status_code=404, detail="Not found")
        if not body.call_id or not body.text:
            raise HTTPException(status_code=400, detail="Missing required fields")

        record = await ingress.accept(
            {
                "call_id": body.call_id,
                "event": CallEventType.TRANSCRIPT_PARTIAL.value,
                "transcript_segment": {
                    "speaker": body.speaker,
                    "text": body.text,
                    "timestamp": format_ts(utcnow()),
                },
            }
        )
        return {"success": record is not None, "event": record.model_dump(mode="json") if record else None}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "roadassist.server:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
