from datetime import datetime, timezone
from uuid import uuid4

import pytest

from usage_guard.modules.notifications.domain.notification_log import (
    NotificationLogEntry,
    NotificationLogStore,
)

PERIOD_START = datetime(2026, 3, 18, 0, 0, 0, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 3, 18, 14, 35, 20, tzinfo=timezone.utc)


def _entry(rule_id, period_start=PERIOD_START, actual=150000.0):
    return NotificationLogEntry(
        rule_id=rule_id,
        period_start=period_start,
        period_end=PERIOD_END,
        actual_value=actual,
        threshold_value=100000.0,
        metric_type="tokens",
        agent_name="my-agent",
    )


@pytest.mark.asyncio
async def test_record_then_has_entry(session_maker):
    store = NotificationLogStore(session_maker)
    rule_id = uuid4()

    assert await store.has_entry(rule_id, PERIOD_START) is False
    assert await store.record(_entry(rule_id)) is True
    assert await store.has_entry(rule_id, PERIOD_START) is True


@pytest.mark.asyncio
async def test_second_record_for_same_period_is_ignored(session_maker):
    store = NotificationLogStore(session_maker)
    rule_id = uuid4()

    assert await store.record(_entry(rule_id, actual=150000.0)) is True
    assert await store.record(_entry(rule_id, actual=999999.0)) is False


@pytest.mark.asyncio
async def test_entries_are_scoped_by_rule_and_period(session_maker):
    store = NotificationLogStore(session_maker)
    rule_id = uuid4()
    next_day = datetime(2026, 3, 19, 0, 0, 0, tzinfo=timezone.utc)

    await store.record(_entry(rule_id))

    assert await store.has_entry(rule_id, next_day) is False
    assert await store.has_entry(uuid4(), PERIOD_START) is False
    assert await store.record(_entry(rule_id, period_start=next_day)) is True
