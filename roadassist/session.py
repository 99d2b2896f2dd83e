"""
A UI session replica: one ticket store fed by the push socket and the
reconciliation poller, plus the "request assistance" action.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import suppress
from typing import Any, Optional
from uuid import uuid4

import httpx
import structlog
import websockets
from websockets.exceptions import WebSocketException

from roadassist.config import Settings
from roadassist.models import CallContext, Customer, Ticket, WebhookEvent
from roadassist.poller import ReconciliationPoller
from roadassist.tickets import ApplyOutcome, TicketStore

log = structlog.get_logger(__name__)


def push_url(server_url: str, session_id: str) -> str:
    base = server_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/ws/events?session_id={session_id}"


class PushSubscriber:
    """Fast path: apply events from the server's push socket as they arrive."""

    def __init__(
        self,
        url: str,
        store: TicketStore,
        reconnect_seconds: float = 3.0,
    ):
        self.url = url
        self.store = store
        self.reconnect_seconds = reconnect_seconds
        self.connected = False

    def handle_message(self, message: Any) -> Optional[ApplyOutcome]:
        """Apply one push message; control frames and foreign payloads return None."""
        if isinstance(message, (str, bytes)):
            try:
                message = json.loads(message)
            except ValueError:
                log.warning("push_message_not_json")
                return None
        if not isinstance(message, dict) or "event" not in message:
            return None
        try:
            record = WebhookEvent.model_validate(message["event"])
        except ValueError as e:
            log.warning("push_message_invalid", error=str(e))
            return None
        try:
            return self.store.apply(record)
        except Exception as e:
            log.error("push_record_failed", call_id=record.call_id, seq=record.id, error=repr(e))
            return ApplyOutcome.FAILED

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                async with websockets.connect(self.url) as ws:
                    self.connected = True
                    log.info("push_connected", url=self.url)
                    async for raw in ws:
                        self.handle_message(raw)
            except (OSError, WebSocketException) as e:
                # Missed events are picked up by the poller.
                log.warning("push_disconnected", error=repr(e))
            finally:
                self.connected = False
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.reconnect_seconds)


class UISession:
    """
    Usage:
        session = UISession(settings)
        ticket = await session.request_assistance(customer, context)
        await session.run(stop)      # push + poll until stop is set
        await session.close()
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        store: Optional[TicketStore] = None,
        since: Optional[str] = None,
    ):
        self.settings = settings
        self.session_id = uuid4().hex[:12]
        self.http = http or httpx.AsyncClient(
            base_url=settings.server_url, timeout=settings.call_timeout_seconds
        )
        self.store = store or TicketStore()
        self.poller = ReconciliationPoller(
            self.http, self.store, settings.poll_interval_seconds, since=since
        )
        self.push = PushSubscriber(
            push_url(settings.server_url, self.session_id),
            self.store,
            settings.push_reconnect_seconds,
        )

    async def close(self) -> None:
        await self.http.aclose()

    async def track_call(self, call_id: str, customer: Optional[Customer] = None) -> Ticket:
        """Open a call ticket for an existing call and backfill its history."""
        ticket = self.store.create_call_ticket(customer or Customer(), call_id)
        await self.poller.backfill(call_id)
        return ticket

    async def request_assistance(self, customer: Customer, context: CallContext) -> Ticket:
        """
        Ask the server to call the customer and open the ticket.

        A call that fails to start still yields a ticket (fallback chat
        flow) whose call session is ``failed``.
        """
        body = {"phone_number": customer.phone, **context.model_dump(exclude_none=True)}
        try:
            resp = await self.http.post("/api/bland-call", json=body)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.error("assistance_request_failed", error=repr(e))
            return self.store.create_call_ticket(
                customer, setup_error=str(e), location=context.location or ""
            )

        if resp.status_code >= 400 or not data.get("callId"):
            detail = data.get("detail", data)
            log.error("call_setup_failed", status=resp.status_code, detail=detail)
            return self.store.create_call_ticket(
                customer, setup_error=json.dumps(detail), location=context.location or ""
            )

        ticket = self.store.create_call_ticket(
            customer, data["callId"], location=context.location or ""
        )
        await self.poller.backfill(data["callId"])
        return ticket

    async def run(self, stop: asyncio.Event) -> None:
        """Drive push and poll until *stop* is set."""
        tasks = [
            asyncio.create_task(self.push.run(stop)),
            asyncio.create_task(self.poller.run(stop)),
        ]
        await stop.wait()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
