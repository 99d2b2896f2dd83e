"""
Reconciliation poller: pull-based fallback for push events a session missed
(socket dropped, tab closed, event arrived before the ticket existed).
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog

from roadassist.models import WebhookEvent
from roadassist.tickets import ApplyOutcome, TicketStore

log = structlog.get_logger(__name__)


class ReconciliationPoller:
    """
    Fetch ``/api/webhook-updates`` since a watermark and merge into a store.

    The watermark only moves after a response has been fully applied, so a
    failed tick retries the same window on the next one. A single record
    that cannot be merged is logged and skipped.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        store: TicketStore,
        interval_seconds: float = 10.0,
        since: Optional[str] = None,
    ):
        self.http = http
        self.store = store
        self.interval_seconds = interval_seconds
        self.watermark: Optional[str] = since

    async def fetch(self, since: Optional[str], call_id: Optional[str] = None) -> dict:
        params = {}
        if since:
            params["since"] = since
        if call_id:
            params["callId"] = call_id
        resp = await self.http.get("/api/webhook-updates", params=params)
        resp.raise_for_status()
        return resp.json()

    def _apply(self, data: dict) -> list[ApplyOutcome]:
        outcomes = []
        for raw in data.get("webhooks", []):
            try:
                outcomes.append(self.store.apply(WebhookEvent.model_validate(raw)))
            except Exception as e:
                log.error("poll_record_failed", record=str(raw)[:200], error=repr(e))
                outcomes.append(ApplyOutcome.FAILED)
        return outcomes

    async def poll_once(self) -> Optional[list[ApplyOutcome]]:
        """One tick. Returns the apply outcomes, or None when the poll failed."""
        try:
            data = await self.fetch(self.watermark)
            outcomes = self._apply(data)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("poll_failed", since=self.watermark, error=repr(e))
            return None

        if data.get("watermark"):
            self.watermark = data["watermark"]
        if outcomes:
            log.info(
                "poll_applied",
                events=len(outcomes),
                applied=outcomes.count(ApplyOutcome.APPLIED),
                watermark=self.watermark,
            )
        return outcomes

    async def backfill(self, call_id: str) -> Optional[list[ApplyOutcome]]:
        """Fetch one call's whole history; the shared watermark is left alone."""
        try:
            data = await self.fetch(None, call_id)
            return self._apply(data)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("backfill_failed", call_id=call_id, error=repr(e))
            return None

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Tick every ``interval_seconds`` until *stop* is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            if self.store.tracked_call_ids():
                await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
