"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_serializer

# Fixed-width so that lexical order in SQLite equals time order
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (``Z`` suffix accepted); naive means UTC."""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────
class CallPhase(str, enum.Enum):
    INITIATED = "initiated"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CallPhase.COMPLETED, CallPhase.FAILED)


class TicketStatus(str, enum.Enum):
    AI_AGENT_SUPPORT = "AI Agent Support"
    REQUIRES_HUMAN = "Requires Human"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class Speaker(str, enum.Enum):
    AGENT = "agent"
    CUSTOMER = "customer"


class MessageSender(str, enum.Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    AI = "ai"
    SYSTEM = "system"


# ── Call provider context ──────────────────────────────────────
class CallContext(BaseModel):
    """Descriptive context handed to the voice agent. Every field is optional."""
    customer_name: Optional[str] = None
    location: Optional[str] = None
    vehicle: Optional[str] = None
    issue: Optional[str] = None
    image_summary: Optional[str] = None
    previous_issues: Optional[list[str]] = None
    last_service_date: Optional[str] = None
    membership: Optional[str] = None


class CallInitResult(BaseModel):
    call_id: str
    initial_phase: CallPhase = CallPhase.INITIATED
    provider_status: str = ""


# ── Webhook log record ─────────────────────────────────────────
class WebhookEvent(BaseModel):
    """One received webhook, as stored in the append-only log."""
    id: int = Field(..., description="Log sequence number, receipt order")
    call_id: str
    event_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: datetime

    @field_serializer("received_at", when_used="json")
    def _serialize_received_at(self, value: datetime) -> str:
        return format_ts(value)


# ── Call session ───────────────────────────────────────────────
class TranscriptSegment(BaseModel):
    model_config = {"frozen": True}

    speaker: Speaker
    text: str
    timestamp: datetime

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.speaker.value, self.text, self.timestamp.isoformat())


class CallSession(BaseModel):
    call_id: Optional[str] = None
    phase: CallPhase = CallPhase.INITIATED
    transcript: list[TranscriptSegment] = Field(default_factory=list)
    setup_error: str = ""


# ── Tickets ────────────────────────────────────────────────────
class Customer(BaseModel):
    id: str = ""
    name: str = ""
    phone: str = ""
    vehicle: str = ""
    membership: str = ""


class Message(BaseModel):
    id: str
    content: str
    sender: MessageSender
    timestamp: datetime = Field(default_factory=utcnow)


class Ticket(BaseModel):
    id: str
    customer: Customer = Field(default_factory=Customer)
    issue: str = ""
    category: str = ""
    status: TicketStatus = TicketStatus.AI_AGENT_SUPPORT
    priority: str = "medium"
    location: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    messages: list[Message] = Field(default_factory=list)
    call_messages: list[Message] = Field(default_factory=list, description="Derived from call events")
    call_id: Optional[str] = None
    call: Optional[CallSession] = None

    def timeline(self) -> list[Message]:
        """Ticket messages and call-derived system messages, oldest first."""
        return sorted(self.messages + self.call_messages, key=lambda m: m.timestamp)
