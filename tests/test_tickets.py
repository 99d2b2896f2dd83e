"""Tests for the ticket store's call-event merge."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from roadassist.lifecycle import IN_PROGRESS_NOTE
from roadassist.models import CallPhase, Customer, MessageSender, TicketStatus, WebhookEvent
from roadassist.tickets import CALL_FALLBACK_NOTE, ApplyOutcome, TicketStore

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
CUSTOMER = Customer(id="u1", name="Alex Johnson", phone="+15551234567", vehicle="BMW 3 Series")


def record(seq: int, event: str, call_id: str = "c1", **payload) -> WebhookEvent:
    return WebhookEvent(
        id=seq,
        call_id=call_id,
        event_type=event,
        payload={"call_id": call_id, "event": event, **payload},
        received_at=T0 + timedelta(seconds=seq),
    )


def partial(seq: int, speaker: str, text: str, ts: str) -> WebhookEvent:
    return record(
        seq, "transcript.partial", transcript_segment={"speaker": speaker, "text": text, "timestamp": ts}
    )


def full_call() -> list[WebhookEvent]:
    return [
        record(1, "call.started"),
        partial(2, "agent", "FormelD Road Assistance, how can I help?", "2026-10-19T09:00:02Z"),
        partial(3, "customer", "My car won't start", "2026-10-19T09:00:03Z"),
        record(4, "call.in_progress"),
        partial(5, "agent", "Help is on the way", "2026-10-19T09:00:05Z"),
        record(6, "call.completed", transcript="hello"),
    ]


def call_state(store: TicketStore, call_id: str = "c1"):
    ticket = store.find_by_call_id(call_id)
    return (
        ticket.status,
        ticket.call.model_dump(),
        [(m.id, m.content, m.sender) for m in ticket.call_messages],
    )


@pytest.fixture
def store():
    s = TicketStore()
    s.create_call_ticket(CUSTOMER, "c1")
    return s


def test_scenario_call_runs_to_resolution(store):
    ticket = store.find_by_call_id("c1")
    assert ticket.call.phase == CallPhase.INITIATED
    assert ticket.status == TicketStatus.AI_AGENT_SUPPORT

    store.apply(record(1, "call.started"))
    assert ticket.call.phase == CallPhase.STARTED
    assert ticket.status == TicketStatus.AI_AGENT_SUPPORT

    store.apply(record(2, "call.in_progress"))
    assert ticket.call.phase == CallPhase.IN_PROGRESS
    assert ticket.status == TicketStatus.IN_PROGRESS
    assert ticket.call_messages[-1].content == IN_PROGRESS_NOTE

    store.apply(record(3, "call.completed", transcript="hello"))
    assert ticket.call.phase == CallPhase.COMPLETED
    assert ticket.status == TicketStatus.RESOLVED
    last = ticket.timeline()[-1]
    assert last.sender == MessageSender.SYSTEM
    assert "hello" in last.content


@pytest.mark.parametrize("event", ["call.started", "call.in_progress", "call.completed", "call.unknown"])
def test_applying_same_event_twice_is_noop(store, event):
    first = store.apply(record(1, event, transcript="x"))
    once = call_state(store)
    second = store.apply(record(1, event, transcript="x"))

    assert first == ApplyOutcome.APPLIED
    assert second == ApplyOutcome.DUPLICATE
    assert call_state(store) == once


def test_transcript_partial_twice_is_noop(store):
    seg = partial(1, "agent", "Hello", "2026-10-19T09:00:01Z")
    store.apply(seg)
    store.apply(seg)
    assert len(store.find_by_call_id("c1").call.transcript) == 1


def test_redelivered_identical_segment_recorded_once(store):
    store.apply(partial(1, "customer", "I'm on the A10", "2026-10-19T09:00:01Z"))
    store.apply(partial(2, "customer", "I'm on the A10", "2026-10-19T09:00:01Z"))
    assert len(store.find_by_call_id("c1").call.transcript) == 1


def test_final_state_independent_of_delivery_paths():
    events = full_call()

    # Tab that saw every push in order
    live = TicketStore()
    live.create_call_ticket(CUSTOMER, "c1")
    live.apply_many(events)

    # Tab that missed pushes, then got everything again by poll, shuffled and duplicated
    flaky = TicketStore()
    flaky.create_call_ticket(CUSTOMER, "c1")
    flaky.apply_many([events[5], events[1]])
    replayed = events + events[2:4]
    random.Random(7).shuffle(replayed)
    flaky.apply_many(replayed)

    assert call_state(flaky) == call_state(live)


def test_regressing_event_does_not_reopen_ticket(store):
    store.apply(record(1, "call.completed", transcript="done"))
    store.apply(record(2, "call.in_progress"))
    store.apply(record(3, "call.started"))

    ticket = store.find_by_call_id("c1")
    assert ticket.call.phase == CallPhase.COMPLETED
    assert ticket.status == TicketStatus.RESOLVED
    assert len(ticket.call_messages) == 1


def test_unknown_call_is_dropped(store):
    before = len(store.list_tickets())
    outcome = store.apply(record(1, "call.completed", call_id="nobody"))

    assert outcome == ApplyOutcome.UNKNOWN_CALL
    assert len(store.list_tickets()) == before
    assert store.find_by_call_id("nobody") is None


def test_setup_failure_still_opens_ticket():
    store = TicketStore()
    ticket = store.create_call_ticket(CUSTOMER, setup_error="Bland AI unreachable")

    assert ticket.call_id is None
    assert ticket.call.phase == CallPhase.FAILED
    assert ticket.call.setup_error == "Bland AI unreachable"
    assert ticket.status == TicketStatus.AI_AGENT_SUPPORT
    assert ticket.messages[-1].content == CALL_FALLBACK_NOTE
    assert store.selected_ticket_id == ticket.id


def test_call_ticket_messages_and_ids():
    store = TicketStore()
    first = store.create_call_ticket(CUSTOMER, "c1")
    second = store.create_call_ticket(CUSTOMER, "c2")

    assert (first.id, second.id) == ("T1001", "T1002")
    assert "(Call ID: c1)" in first.issue
    assert [m.sender for m in first.messages] == [MessageSender.CUSTOMER, MessageSender.AI]


def test_same_call_cannot_be_tracked_twice(store):
    with pytest.raises(ValueError):
        store.create_call_ticket(CUSTOMER, "c1")


def test_manual_status_until_call_takes_over(store):
    ticket = store.find_by_call_id("c1")
    store.update_status(ticket.id, TicketStatus.REQUIRES_HUMAN)
    assert ticket.status == TicketStatus.REQUIRES_HUMAN

    store.apply(record(1, "call.started"))
    assert ticket.status == TicketStatus.REQUIRES_HUMAN

    store.apply(record(2, "call.in_progress"))
    assert ticket.status == TicketStatus.IN_PROGRESS


def test_timeline_interleaves_call_messages(store):
    ticket = store.find_by_call_id("c1")
    store.apply(record(1, "call.in_progress"))
    store.add_message(ticket.id, "Agent joined", MessageSender.AGENT)

    contents = [m.content for m in ticket.timeline()]
    assert IN_PROGRESS_NOTE in contents
    assert contents[-1] == "Agent joined"


def test_select_ticket(store):
    ticket = store.find_by_call_id("c1")
    store.select(None)
    assert store.selected_ticket_id is None
    store.select(ticket.id)
    assert store.selected_ticket_id == ticket.id
    with pytest.raises(KeyError):
        store.select("T9999")


def test_redelivered_completion_with_new_sequence_is_absorbed(store):
    assert store.apply(record(1, "call.completed", transcript="done")) == ApplyOutcome.APPLIED
    assert store.apply(record(2, "call.completed", transcript="done")) == ApplyOutcome.APPLIED

    ticket = store.find_by_call_id("c1")
    assert ticket.call.phase == CallPhase.COMPLETED
    assert ticket.status == TicketStatus.RESOLVED
    assert len(ticket.call_messages) == 1


def test_call_messages_append_after_existing_ticket_messages(store):
    ticket = store.find_by_call_id("c1")
    store.add_message(ticket.id, "Are you somewhere safe?", MessageSender.AGENT)

    # received by the server long before this session saw it
    store.apply(record(1, "call.in_progress"))
    assert ticket.timeline()[-1].content == IN_PROGRESS_NOTE

    stamp = ticket.call_messages[0].timestamp
    store.apply(partial(2, "agent", "Help is on the way", "2026-10-19T09:00:02Z"))
    assert ticket.call_messages[0].timestamp == stamp
    assert ticket.timeline()[-1].content == IN_PROGRESS_NOTE


def test_record_that_fails_to_merge_is_not_kept(store, monkeypatch):
    import roadassist.tickets as tickets_module

    real_replay = tickets_module.replay

    def exploding_replay(call_id, records):
        records = list(records)
        if any(r.event_type == "call.bogus" for r in records):
            raise RuntimeError("bad record")
        return real_replay(call_id, records)

    monkeypatch.setattr(tickets_module, "replay", exploding_replay)

    with pytest.raises(RuntimeError):
        store.apply(record(1, "call.bogus"))
    assert store.apply(record(2, "call.started")) == ApplyOutcome.APPLIED
    assert store.find_by_call_id("c1").call.phase == CallPhase.STARTED
