from datetime import timedelta

import pytest

from nudge.models.domain.nudge_domain import days_rounded_up
from nudge.services.cooldown_tracker import CooldownTracker


def _tracker(store, clock):
    return CooldownTracker(store, window=timedelta(days=14), clock=clock)


@pytest.mark.asyncio
async def test_never_nudged_is_allowed(store, clock):
    status = await _tracker(store, clock).check("u1", "acme")

    assert status.allowed is True
    assert status.retry_after is None


@pytest.mark.asyncio
async def test_just_inside_window_is_rejected(store, clock):
    tracker = _tracker(store, clock)
    await tracker.record("u1", "acme", target_name="Acme")

    clock.advance(days=14, seconds=-1)
    status = await tracker.check("u1", "acme")

    assert status.allowed is False
    assert status.retry_after == timedelta(seconds=1)
    assert status.retry_after_days == 1
    assert status.reason("Acme") == "You can nudge Acme again in 1 day"


@pytest.mark.asyncio
async def test_exactly_at_window_is_allowed(store, clock):
    tracker = _tracker(store, clock)
    await tracker.record("u1", "acme")

    clock.advance(days=14)

    assert (await tracker.check("u1", "acme")).allowed is True


@pytest.mark.asyncio
async def test_retry_after_rounds_up_to_days(store, clock):
    tracker = _tracker(store, clock)
    await tracker.record("u1", "acme")

    clock.advance(hours=1)
    status = await tracker.check("u1", "acme")

    assert status.retry_after_days == 14
    assert status.reason("Acme") == "You can nudge Acme again in 14 days"


@pytest.mark.asyncio
async def test_record_merges_and_counts_sends(store, clock):
    tracker = _tracker(store, clock)
    await tracker.record("u1", "acme", target_name="Acme", recipient="hr@acme.example")
    clock.advance(days=20)
    await tracker.record("u1", "acme")

    document = store.documents["nudges:u1:acme"]
    assert document["send_count"] == 2
    assert document["target_name"] == "Acme"
    assert document["recipient"] == "hr@acme.example"
    assert document["last_sent_at"] == clock.now.timestamp()


@pytest.mark.asyncio
async def test_history_most_recent_first(store, clock):
    tracker = _tracker(store, clock)
    await tracker.record("u1", "acme", target_name="Acme")
    clock.advance(days=1)
    await tracker.record("u1", "globex", target_name="Globex")
    await tracker.record("u2", "initech", target_name="Initech")

    history = await tracker.history("u1")

    assert [record.target_id for record in history] == ["globex", "acme"]


@pytest.mark.asyncio
async def test_storage_outage_fails_open(failing_store, clock):
    tracker = _tracker(failing_store, clock)

    assert (await tracker.check("u1", "acme")).allowed is True
    await tracker.record("u1", "acme")
    assert await tracker.history("u1") == []


def test_days_rounded_up():
    assert days_rounded_up(timedelta(0)) == 0
    assert days_rounded_up(timedelta(seconds=1)) == 1
    assert days_rounded_up(timedelta(days=13, hours=23)) == 14
    assert days_rounded_up(timedelta(days=2)) == 2
