"""
Call lifecycle state machine.

    initiated -> started -> in_progress -> completed
    initiated -> failed          (setup error, no provider events)

Phases only move forward: an event whose transition is not allowed from
the current phase is ignored. Transcript segments are additive and are
accepted in every phase.
"""

from __future__ import annotations

from typing import Iterable

import structlog

from roadassist.events import (
    CallCompleted,
    CallEvent,
    CallInProgress,
    CallStarted,
    TranscriptPartial,
    UnrecognizedEvent,
    parse_call_event,
)
from roadassist.models import (
    CallPhase,
    CallSession,
    Message,
    MessageSender,
    TicketStatus,
    WebhookEvent,
)

log = structlog.get_logger(__name__)

IN_PROGRESS_NOTE = "AI agent is currently on a call with the customer..."

_NON_TERMINAL = frozenset({CallPhase.INITIATED, CallPhase.STARTED, CallPhase.IN_PROGRESS})

# event variant -> (allowed source phases, target phase)
_TRANSITIONS: dict[type, tuple[frozenset[CallPhase], CallPhase]] = {
    CallStarted: (frozenset({CallPhase.INITIATED}), CallPhase.STARTED),
    CallInProgress: (frozenset({CallPhase.INITIATED, CallPhase.STARTED}), CallPhase.IN_PROGRESS),
    CallCompleted: (_NON_TERMINAL, CallPhase.COMPLETED),
}

# Ticket status projection of a call phase; phases not listed leave it alone
PHASE_TICKET_STATUS: dict[CallPhase, TicketStatus] = {
    CallPhase.IN_PROGRESS: TicketStatus.IN_PROGRESS,
    CallPhase.COMPLETED: TicketStatus.RESOLVED,
}


def _completion_text(event: CallCompleted, session: CallSession) -> str:
    transcript = event.transcript
    if not transcript and session.transcript:
        transcript = "\n".join(f"{s.speaker.value}: {s.text}" for s in session.transcript)
    if transcript:
        return f"Call completed. Transcript: {transcript}"
    return "Call completed."


def advance(session: CallSession, event: CallEvent) -> list[Message]:
    """
    Apply one event to *session* in place.

    Returns the system messages the transition produces for the owning
    ticket (empty when the event is ignored or only extends the transcript).
    """
    if isinstance(event, TranscriptPartial):
        keys = {s.dedup_key for s in session.transcript}
        if event.segment.dedup_key not in keys:
            session.transcript.append(event.segment)
        return []

    if isinstance(event, UnrecognizedEvent):
        return []

    allowed, target = _TRANSITIONS[type(event)]
    if session.phase not in allowed:
        log.debug(
            "phase_transition_ignored",
            call_id=session.call_id,
            phase=session.phase.value,
            event_kind=type(event).__name__,
        )
        return []

    session.phase = target
    msg_id = f"call-{session.call_id}-{event.sequence}"
    if isinstance(event, CallInProgress):
        return [Message(id=msg_id, content=IN_PROGRESS_NOTE, sender=MessageSender.SYSTEM,
                        timestamp=event.received_at)]
    if isinstance(event, CallCompleted):
        return [Message(id=msg_id, content=_completion_text(event, session),
                        sender=MessageSender.SYSTEM, timestamp=event.received_at)]
    return []


def replay(call_id: str, records: Iterable[WebhookEvent]) -> tuple[CallSession, list[Message]]:
    """
    Rebuild a call's session from its log records.

    Records are folded in log-sequence order, so the result depends only
    on which records were seen, never on the order they were delivered.
    """
    session = CallSession(call_id=call_id)
    messages: list[Message] = []
    for record in sorted(records, key=lambda r: r.id):
        messages.extend(advance(session, parse_call_event(record)))
    return session, messages
