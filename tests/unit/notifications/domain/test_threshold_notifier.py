import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from usage_guard.models.notification_rule import MetricType, TriggerType
from usage_guard.modules.notifications.domain.local_mode import LOCAL_EMAIL
from usage_guard.modules.notifications.domain.notification_log import NotificationLogStore
from usage_guard.modules.notifications.domain.notifier import (
    NotificationOutcome,
    RecipientResolver,
    ThresholdNotifier,
)
from usage_guard.modules.notifications.domain.periods import compute_period_boundaries
from usage_guard.modules.notifications.domain.rules import ThresholdRule

NOW = datetime(2026, 3, 18, 14, 35, 20, tzinfo=timezone.utc)


def _settings(mode="cloud", config_path="/nonexistent/config.json"):
    return SimpleNamespace(
        is_local_mode=mode == "local",
        LOCAL_CONFIG_PATH=str(config_path),
    )


def _rule(**overrides):
    values = dict(
        id=uuid4(),
        tenant_id="tenant-1",
        agent_id="agent-1",
        agent_name="my-agent",
        user_id="user-1",
        metric_type=MetricType.TOKENS,
        threshold=100000.0,
        period="day",
        trigger_type=TriggerType.BOTH,
    )
    values.update(overrides)
    return ThresholdRule(**values)


@pytest.fixture
def email_service():
    service = MagicMock()
    service.send_threshold_alert = AsyncMock(return_value=True)
    return service


@pytest.fixture
def log_store(session_maker):
    return NotificationLogStore(session_maker)


def _notifier(session_maker, log_store, email_service, settings=None):
    return ThresholdNotifier(
        log_store=log_store,
        email_service=email_service,
        recipients=RecipientResolver(session_maker, settings or _settings()),
    )


class TestRecipientResolver:
    @pytest.mark.asyncio
    async def test_account_email_is_the_fallback(self, session_maker, user_factory):
        await user_factory(email="owner@example.com")
        resolver = RecipientResolver(session_maker, _settings())
        assert await resolver.resolve("user-1") == "owner@example.com"

    @pytest.mark.asyncio
    async def test_override_wins_over_account_email(self, session_maker, user_factory):
        await user_factory(email="owner@example.com", notification_email="alerts@example.com")
        resolver = RecipientResolver(session_maker, _settings())
        assert await resolver.resolve("user-1") == "alerts@example.com"

    @pytest.mark.asyncio
    async def test_inactive_override_is_ignored(self, session_maker, user_factory):
        await user_factory(
            email="owner@example.com",
            notification_email="alerts@example.com",
            settings_active=False,
        )
        resolver = RecipientResolver(session_maker, _settings())
        assert await resolver.resolve("user-1") == "owner@example.com"

    @pytest.mark.asyncio
    async def test_local_config_used_in_local_mode(self, session_maker, user_factory, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"notificationEmail": "me@real.example"}))
        await user_factory(email=LOCAL_EMAIL)

        resolver = RecipientResolver(session_maker, _settings("local", config))
        assert await resolver.resolve("user-1") == "me@real.example"

    @pytest.mark.asyncio
    async def test_local_config_ignored_in_cloud_mode(self, session_maker, user_factory, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"notificationEmail": "me@real.example"}))
        await user_factory(email="owner@example.com")

        resolver = RecipientResolver(session_maker, _settings("cloud", config))
        assert await resolver.resolve("user-1") == "owner@example.com"

    @pytest.mark.asyncio
    async def test_placeholder_email_means_no_recipient(self, session_maker, user_factory):
        await user_factory(email=LOCAL_EMAIL)
        resolver = RecipientResolver(session_maker, _settings("local"))
        assert await resolver.resolve("user-1") is None

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_recipient(self, session_maker):
        resolver = RecipientResolver(session_maker, _settings())
        assert await resolver.resolve("ghost") is None


class TestThresholdNotifier:
    @pytest.mark.asyncio
    async def test_sends_and_logs_first_time(
        self, session_maker, log_store, email_service, user_factory
    ):
        await user_factory(email="owner@example.com")
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()
        boundaries = compute_period_boundaries(rule.period, NOW)

        outcome = await notifier.notify(rule, 150000.0, boundaries)

        assert outcome is NotificationOutcome.SENT
        assert outcome.completed
        to, alert = email_service.send_threshold_alert.await_args.args
        assert to == "owner@example.com"
        assert alert.agent_name == "my-agent"
        assert alert.metric_type == "tokens"
        assert alert.threshold == 100000.0
        assert alert.actual_value == 150000.0
        assert alert.period == "day"
        assert await log_store.has_entry(rule.id, boundaries.period_start)

    @pytest.mark.asyncio
    async def test_skips_when_already_notified(
        self, session_maker, log_store, email_service, user_factory
    ):
        await user_factory()
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()
        boundaries = compute_period_boundaries(rule.period, NOW)

        await notifier.notify(rule, 150000.0, boundaries)
        outcome = await notifier.notify(rule, 160000.0, boundaries)

        assert outcome is NotificationOutcome.DUPLICATE
        assert email_service.send_threshold_alert.await_count == 1

    @pytest.mark.asyncio
    async def test_logs_without_email_when_no_recipient(
        self, session_maker, log_store, email_service
    ):
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()
        boundaries = compute_period_boundaries(rule.period, NOW)

        outcome = await notifier.notify(rule, 150000.0, boundaries)

        assert outcome is NotificationOutcome.LOGGED_NO_EMAIL
        email_service.send_threshold_alert.assert_not_awaited()
        assert await log_store.has_entry(rule.id, boundaries.period_start)

    @pytest.mark.asyncio
    async def test_failed_send_writes_no_log(
        self, session_maker, log_store, email_service, user_factory
    ):
        await user_factory()
        email_service.send_threshold_alert.return_value = False
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()
        boundaries = compute_period_boundaries(rule.period, NOW)

        outcome = await notifier.notify(rule, 150000.0, boundaries)

        assert outcome is NotificationOutcome.SEND_FAILED
        assert not outcome.completed
        assert await log_store.has_entry(rule.id, boundaries.period_start) is False

    @pytest.mark.asyncio
    async def test_placeholder_user_is_logged_without_email(
        self, session_maker, log_store, email_service, user_factory
    ):
        await user_factory(email=LOCAL_EMAIL)
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()
        boundaries = compute_period_boundaries(rule.period, NOW)

        outcome = await notifier.notify(rule, 150000.0, boundaries)

        assert outcome is NotificationOutcome.LOGGED_NO_EMAIL
        email_service.send_threshold_alert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_errors_propagate(self, session_maker, email_service):
        log_store = MagicMock()
        log_store.has_entry = AsyncMock(side_effect=RuntimeError("db down"))
        notifier = _notifier(session_maker, log_store, email_service)
        rule = _rule()

        with pytest.raises(RuntimeError):
            await notifier.notify(rule, 1.0, compute_period_boundaries("day", NOW))
