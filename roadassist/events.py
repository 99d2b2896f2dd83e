"""
Provider webhook payloads -> typed call events.

Bland posts loosely typed JSON ``{call_id, event, transcript_segment?,
transcript?}``. Older payloads carry a ``status`` field instead of
``event``; both are accepted.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

import structlog

from roadassist.models import Speaker, TranscriptSegment, WebhookEvent, parse_ts

log = structlog.get_logger(__name__)


class CallEventType(str, enum.Enum):
    STARTED = "call.started"
    TRANSCRIPT_PARTIAL = "transcript.partial"
    IN_PROGRESS = "call.in_progress"
    COMPLETED = "call.completed"


# Legacy ``status`` values -> event types
_STATUS_TO_EVENT: dict[str, str] = {
    "started": CallEventType.STARTED.value,
    "in_progress": CallEventType.IN_PROGRESS.value,
    "in-progress": CallEventType.IN_PROGRESS.value,
    "completed": CallEventType.COMPLETED.value,
}

_SPEAKERS: dict[str, Speaker] = {
    "agent": Speaker.AGENT,
    "ai": Speaker.AGENT,
    "assistant": Speaker.AGENT,
    "customer": Speaker.CUSTOMER,
    "user": Speaker.CUSTOMER,
}


# ── Variants ────────────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class CallStarted:
    sequence: int
    received_at: datetime


@dataclass(frozen=True, slots=True)
class TranscriptPartial:
    sequence: int
    received_at: datetime
    segment: TranscriptSegment


@dataclass(frozen=True, slots=True)
class CallInProgress:
    sequence: int
    received_at: datetime


@dataclass(frozen=True, slots=True)
class CallCompleted:
    sequence: int
    received_at: datetime
    transcript: str = ""


@dataclass(frozen=True, slots=True)
class UnrecognizedEvent:
    sequence: int
    received_at: datetime
    event_type: str


CallEvent = Union[CallStarted, TranscriptPartial, CallInProgress, CallCompleted, UnrecognizedEvent]


# ── Parsing ─────────────────────────────────────────────────────
def event_type_of(payload: dict[str, Any]) -> str:
    """The payload's event tag, falling back to the legacy ``status`` field."""
    event = payload.get("event")
    if isinstance(event, str) and event:
        return event
    status = payload.get("status")
    if isinstance(status, str):
        return _STATUS_TO_EVENT.get(status.lower(), "")
    return ""


def parse_segment(raw: Any, fallback_ts: datetime) -> Optional[TranscriptSegment]:
    if not isinstance(raw, dict):
        return None
    text = raw.get("text")
    if not isinstance(text, str) or not text:
        return None

    speaker = _SPEAKERS.get(str(raw.get("speaker", "")).lower(), Speaker.AGENT)
    timestamp = fallback_ts
    if raw.get("timestamp"):
        try:
            timestamp = parse_ts(str(raw["timestamp"]))
        except ValueError:
            log.warning("transcript_segment_bad_timestamp", raw=raw.get("timestamp"))
    return TranscriptSegment(speaker=speaker, text=text, timestamp=timestamp)


def parse_call_event(record: WebhookEvent) -> CallEvent:
    """Map a logged webhook record to its typed variant."""
    payload = record.payload
    event_type = record.event_type or event_type_of(payload)
    seq, at = record.id, record.received_at

    if event_type == CallEventType.STARTED.value:
        return CallStarted(seq, at)
    if event_type == CallEventType.IN_PROGRESS.value:
        return CallInProgress(seq, at)
    if event_type == CallEventType.COMPLETED.value:
        transcript = payload.get("transcript") or payload.get("concatenated_transcript") or ""
        return CallCompleted(seq, at, transcript if isinstance(transcript, str) else "")
    if event_type == CallEventType.TRANSCRIPT_PARTIAL.value:
        segment = parse_segment(payload.get("transcript_segment"), at)
        if segment is None:
            log.warning("transcript_partial_without_segment", call_id=record.call_id, seq=seq)
            return UnrecognizedEvent(seq, at, event_type)
        return TranscriptPartial(seq, at, segment)
    return UnrecognizedEvent(seq, at, event_type)


def to_push_message(record: WebhookEvent) -> dict[str, Any]:
    """Normalized fanout message; ``event`` carries the full log record."""
    event = parse_call_event(record)
    message: dict[str, Any] = {
        "call_id": record.call_id,
        "event": record.model_dump(mode="json"),
    }
    if isinstance(event, TranscriptPartial):
        message["type"] = "transcript_update"
        message["transcript_segment"] = event.segment.model_dump(mode="json")
    elif isinstance(event, UnrecognizedEvent):
        message["type"] = "webhook_event"
    else:
        message["type"] = "status_update"
        message["status"] = record.event_type.removeprefix("call.")
    return message
