"""
Tests for the webhook event log.
"""

import json

import pytest

from healforge.errors import StoreIntegrityError
from healforge.events import WebhookEventLog


@pytest.mark.asyncio
async def test_log_and_mark_processed(session_maker):
    """Events start unprocessed and are updated once handled."""
    log = WebhookEventLog(session_maker)

    event = await log.log("workflow_run", "completed", "octo", "widgets", json.dumps({"run_id": 1}))
    assert event.id is not None
    assert event.processed is False

    await log.mark_processed(event.id)

    recent = await log.recent()
    assert recent[0].id == event.id
    assert recent[0].processed is True
    assert recent[0].error is None


@pytest.mark.asyncio
async def test_mark_processed_records_error(session_maker):
    """A failed handler leaves its error text on the event."""
    log = WebhookEventLog(session_maker)
    event = await log.log("workflow_run", "completed", "octo", "widgets")

    await log.mark_processed(event.id, "RuntimeError: boom")

    (stored,) = await log.recent(1)
    assert stored.processed is True
    assert stored.error == "RuntimeError: boom"


@pytest.mark.asyncio
async def test_mark_processed_unknown_event(session_maker):
    """Marking a non-existent event is an integrity error."""
    log = WebhookEventLog(session_maker)

    with pytest.raises(StoreIntegrityError):
        await log.mark_processed(12345)


@pytest.mark.asyncio
async def test_recent_is_newest_first_and_limited(session_maker):
    """recent() returns at most limit events, newest first."""
    log = WebhookEventLog(session_maker)
    ids = [(await log.log("ping")).id for _ in range(4)]

    recent = await log.recent(limit=3)

    assert [e.id for e in recent] == list(reversed(ids))[:3]
