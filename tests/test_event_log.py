"""Tests for the append-only webhook event log."""

from datetime import datetime, timedelta, timezone

import pytest

from roadassist.event_log import EventLog, format_ts, parse_ts


@pytest.mark.asyncio
async def test_append_assigns_sequence_and_increasing_times(event_log):
    records = [
        await event_log.append("c1", "call.started", {"call_id": "c1", "event": "call.started"})
        for _ in range(20)
    ]

    ids = [r.id for r in records]
    assert ids == sorted(ids)
    assert len(set(ids)) == 20
    times = [r.received_at for r in records]
    assert all(a < b for a, b in zip(times, times[1:]))


@pytest.mark.asyncio
async def test_query_since_none_returns_everything_in_receipt_order(event_log):
    await event_log.append("c1", "call.started", {"call_id": "c1"})
    await event_log.append("c2", "call.started", {"call_id": "c2"})
    await event_log.append("c1", "call.completed", {"call_id": "c1", "transcript": "hi"})

    records = await event_log.query_since()
    assert [(r.call_id, r.event_type) for r in records] == [
        ("c1", "call.started"),
        ("c2", "call.started"),
        ("c1", "call.completed"),
    ]
    assert records[2].payload["transcript"] == "hi"


@pytest.mark.asyncio
async def test_query_since_is_strictly_after(event_log):
    first = await event_log.append("c1", "call.started", {"call_id": "c1"})
    second = await event_log.append("c1", "call.in_progress", {"call_id": "c1"})

    after_first = await event_log.query_since(first.received_at)
    assert [r.id for r in after_first] == [second.id]

    assert await event_log.query_since(second.received_at) == []


@pytest.mark.asyncio
async def test_query_since_filters_by_call(event_log):
    await event_log.append("c1", "call.started", {"call_id": "c1"})
    await event_log.append("c2", "call.started", {"call_id": "c2"})

    records = await event_log.query_since(call_id="c2")
    assert [r.call_id for r in records] == ["c2"]


@pytest.mark.asyncio
async def test_future_since_is_empty_not_error(event_log):
    await event_log.append("c1", "call.started", {"call_id": "c1"})
    future = datetime.now(timezone.utc) + timedelta(days=1)
    assert await event_log.query_since(future) == []


@pytest.mark.asyncio
async def test_reopen_keeps_records_and_ordering(settings):
    log = EventLog(settings.event_log_path)
    await log.connect()
    before = await log.append("c1", "call.started", {"call_id": "c1"})
    await log.close()

    reopened = EventLog(settings.event_log_path)
    await reopened.connect()
    try:
        assert await reopened.count() == 1
        assert await reopened.latest_received_at() == before.received_at
        after = await reopened.append("c1", "call.completed", {"call_id": "c1"})
        assert after.id > before.id
        assert after.received_at > before.received_at
    finally:
        await reopened.close()


def test_timestamp_round_trip_accepts_z_suffix():
    parsed = parse_ts("2026-10-19T08:30:00Z")
    assert parsed == datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)
    assert format_ts(parsed) == "2026-10-19T08:30:00.000000+00:00"


def test_naive_timestamps_are_utc():
    assert parse_ts("2026-10-19T08:30:00").tzinfo == timezone.utc


@pytest.mark.asyncio
async def test_record_json_uses_log_timestamp_format(event_log):
    record = await event_log.append("c1", "call.started", {"call_id": "c1"})
    dumped = record.model_dump(mode="json")
    assert dumped["received_at"] == format_ts(record.received_at)
    assert dumped["received_at"].endswith("+00:00")
    assert parse_ts(dumped["received_at"]) == record.received_at
