"""
In-memory ticket store: the single mutation point for call-driven ticket
changes. One store per UI session; both delivery paths (push and poll)
go through :meth:`TicketStore.apply`.
"""

from __future__ import annotations

import enum
import itertools
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from roadassist.errors import UnknownCallError
from roadassist.lifecycle import PHASE_TICKET_STATUS, replay
from roadassist.models import (
    CallPhase,
    CallSession,
    Customer,
    Message,
    MessageSender,
    Ticket,
    TicketStatus,
    WebhookEvent,
    utcnow,
)

log = structlog.get_logger(__name__)

CALL_CONNECTING_NOTE = (
    "I've initiated a call to assist you with your vehicle issue. Our AI agent is "
    "connecting with you now. Can you confirm if you're able to receive the call?"
)
CALL_FALLBACK_NOTE = (
    "I understand you're experiencing an issue with your vehicle. I'm here to help. "
    "Can you tell me if you hear any sounds when you try to start the car?"
)


class ApplyOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_CALL = "unknown_call"
    FAILED = "failed"


class TicketStore:
    """Owns every Ticket of one session and merges call events into them."""

    def __init__(self, first_ticket_number: int = 1001):
        self._tickets: dict[str, Ticket] = {}
        self._by_call: dict[str, str] = {}
        self._records: dict[str, dict[int, WebhookEvent]] = {}
        self._base_status: dict[str, TicketStatus] = {}
        self._numbers = itertools.count(first_ticket_number)
        self._message_ids = itertools.count(1)
        self._shown_at: dict[str, datetime] = {}
        self._last_stamp: Optional[datetime] = None
        self.selected_ticket_id: Optional[str] = None

    # ── Queries ─────────────────────────────────────────────────

    def get(self, ticket_id: str) -> Ticket:
        return self._tickets[ticket_id]

    def list_tickets(self) -> list[Ticket]:
        return list(self._tickets.values())

    def find_by_call_id(self, call_id: str) -> Optional[Ticket]:
        ticket_id = self._by_call.get(call_id)
        return self._tickets[ticket_id] if ticket_id else None

    def require_call(self, call_id: str) -> Ticket:
        ticket = self.find_by_call_id(call_id)
        if ticket is None:
            raise UnknownCallError(call_id)
        return ticket

    def tracked_call_ids(self) -> list[str]:
        return list(self._by_call)

    # ── Ticket operations ──────────────────────────────────────

    def create_ticket(
        self,
        customer: Customer,
        issue: str,
        category: str = "",
        *,
        priority: str = "medium",
        location: str = "",
        call_id: Optional[str] = None,
        call: Optional[CallSession] = None,
        first_message: str = "",
    ) -> Ticket:
        ticket = Ticket(
            id=f"T{next(self._numbers)}",
            customer=customer,
            issue=issue,
            category=category,
            priority=priority,
            location=location,
            call_id=call_id,
            call=call,
        )
        if call_id:
            if call_id in self._by_call:
                raise ValueError(f"Call {call_id} already tracked by {self._by_call[call_id]}")
            self._by_call[call_id] = ticket.id
            self._records.setdefault(call_id, {})
        self._tickets[ticket.id] = ticket
        self._base_status[ticket.id] = ticket.status
        self.selected_ticket_id = ticket.id

        if first_message:
            self.add_message(ticket.id, first_message, MessageSender.CUSTOMER)
        log.info("ticket_created", ticket_id=ticket.id, call_id=call_id)
        return ticket

    def create_call_ticket(
        self,
        customer: Customer,
        call_id: Optional[str] = None,
        *,
        setup_error: str = "",
        category: str = "Vehicle won't start",
        location: str = "",
    ) -> Ticket:
        """
        Open the ticket for an assistance request.

        With a ``call_id`` the ticket tracks the call from ``initiated``.
        Without one the call failed to start: the ticket is still created,
        its call session is ``failed`` and the AI takes over in chat.
        """
        issue = "Emergency roadside assistance"
        if call_id:
            issue += f" (Call ID: {call_id})"
            call = CallSession(call_id=call_id)
        else:
            call = CallSession(phase=CallPhase.FAILED, setup_error=setup_error)

        ticket = self.create_ticket(
            customer,
            issue,
            category,
            priority="high",
            location=location,
            call_id=call_id,
            call=call,
            first_message="I need emergency roadside assistance. My vehicle won't start.",
        )
        self.add_message(
            ticket.id,
            CALL_CONNECTING_NOTE if call_id else CALL_FALLBACK_NOTE,
            MessageSender.AI,
        )
        return ticket

    def add_message(self, ticket_id: str, content: str, sender: MessageSender) -> Message:
        message = Message(
            id=f"m{next(self._message_ids)}", content=content, sender=sender, timestamp=self._stamp()
        )
        self._tickets[ticket_id].messages.append(message)
        return message

    def update_status(self, ticket_id: str, status: TicketStatus) -> None:
        """Agent-driven status change; call phases still take precedence."""
        self._base_status[ticket_id] = status
        self._refresh_status(self._tickets[ticket_id])

    def select(self, ticket_id: Optional[str]) -> None:
        if ticket_id is not None and ticket_id not in self._tickets:
            raise KeyError(ticket_id)
        self.selected_ticket_id = ticket_id

    # ── Call event merge ───────────────────────────────────────

    def apply(self, record: WebhookEvent) -> ApplyOutcome:
        """
        Merge one logged webhook into the owning ticket.

        Idempotent: a record already seen (same sequence id) changes
        nothing, whichever path delivered it.
        """
        try:
            ticket = self.require_call(record.call_id)
        except UnknownCallError:
            log.warning("webhook_event_unknown_call", call_id=record.call_id, seq=record.id)
            return ApplyOutcome.UNKNOWN_CALL

        seen = self._records[record.call_id]
        if record.id in seen:
            return ApplyOutcome.DUPLICATE

        # The record joins the call only once its replay has succeeded
        merged = {**seen, record.id: record}
        session, call_messages = replay(record.call_id, merged.values())
        self._records[record.call_id] = merged
        ticket.call = session
        ticket.call_messages = [self._shown(m) for m in call_messages]
        self._refresh_status(ticket)

        log.info(
            "ticket_call_updated",
            ticket_id=ticket.id,
            call_id=record.call_id,
            event_type=record.event_type,
            phase=session.phase.value,
        )
        return ApplyOutcome.APPLIED

    def apply_many(self, records: Iterable[WebhookEvent]) -> list[ApplyOutcome]:
        return [self.apply(r) for r in records]

    def _refresh_status(self, ticket: Ticket) -> None:
        projected = PHASE_TICKET_STATUS.get(ticket.call.phase) if ticket.call else None
        ticket.status = projected or self._base_status[ticket.id]

    def _stamp(self) -> datetime:
        """Local clock for the ticket timeline, strictly increasing within the store."""
        now = utcnow()
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    def _shown(self, message: Message) -> Message:
        # Call messages join the timeline when this session first sees them,
        # not at the server's receipt time.
        stamp = self._shown_at.get(message.id)
        if stamp is None:
            stamp = self._shown_at[message.id] = self._stamp()
        return message.model_copy(update={"timestamp": stamp})
