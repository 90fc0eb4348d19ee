"""
Threshold Notifier - the notify-and-log protocol shared by the limit check
and the reconciliation sweep.

For a crossed rule in a given period:
1. Resolve a recipient (user override, local config in local mode, account email).
2. Send the alert when a recipient exists.
3. Record the notification log entry only when the send succeeded or there was
   nobody to send to. A failed send records nothing so the next sweep retries.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_guard.models.notification_settings import UserNotificationSettings
from usage_guard.models.user import User
from usage_guard.modules.notifications.domain.email_service import (
    EmailService,
    ThresholdAlert,
)
from usage_guard.modules.notifications.domain.local_mode import (
    is_placeholder_email,
    read_local_notification_email,
)
from usage_guard.modules.notifications.domain.notification_log import (
    NotificationLogEntry,
    NotificationLogStore,
)
from usage_guard.modules.notifications.domain.periods import (
    PeriodBoundaries,
    format_timestamp,
    utc_now,
)
from usage_guard.modules.notifications.domain.rules import ThresholdRule
from usage_guard.shared.core.config import get_settings
from usage_guard.shared.core.ops_metrics import THRESHOLD_NOTIFICATIONS

logger = structlog.get_logger()


class NotificationOutcome(str, Enum):
    SENT = "sent"
    LOGGED_NO_EMAIL = "logged_no_email"
    SEND_FAILED = "send_failed"
    DUPLICATE = "duplicate"

    @property
    def completed(self) -> bool:
        return self in (NotificationOutcome.SENT, NotificationOutcome.LOGGED_NO_EMAIL)


class RecipientResolver:
    """Pick the address a rule owner's threshold alerts go to."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Any = None,
    ) -> None:
        self._session_maker = session_maker
        self._settings = settings

    @property
    def settings(self) -> Any:
        return self._settings if self._settings is not None else get_settings()

    async def resolve(self, user_id: str) -> Optional[str]:
        override = await self._notification_override(user_id)
        if override and not is_placeholder_email(override):
            return override

        if self.settings.is_local_mode:
            local_email = read_local_notification_email(self.settings.LOCAL_CONFIG_PATH)
            if local_email and not is_placeholder_email(local_email):
                return local_email

        account_email = await self._account_email(user_id)
        if not account_email or is_placeholder_email(account_email):
            return None
        return account_email

    async def _notification_override(self, user_id: str) -> Optional[str]:
        stmt = select(UserNotificationSettings.notification_email).where(
            UserNotificationSettings.user_id == user_id,
            UserNotificationSettings.is_active.is_(True),
        )
        async with self._session_maker() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def _account_email(self, user_id: str) -> Optional[str]:
        stmt = select(User.email).where(User.id == user_id)
        async with self._session_maker() as session:
            return (await session.execute(stmt)).scalar_one_or_none()


class ThresholdNotifier:
    def __init__(
        self,
        log_store: NotificationLogStore,
        email_service: EmailService,
        recipients: RecipientResolver,
    ) -> None:
        self.log_store = log_store
        self.email_service = email_service
        self.recipients = recipients

    async def already_notified(
        self, rule: ThresholdRule, boundaries: PeriodBoundaries
    ) -> bool:
        return await self.log_store.has_entry(rule.id, boundaries.period_start)

    async def notify(
        self,
        rule: ThresholdRule,
        actual: float,
        boundaries: PeriodBoundaries,
        path: str = "hot",
        check_existing: bool = True,
    ) -> NotificationOutcome:
        """
        Run notify-and-log once for `rule` in the window `boundaries`.

        `check_existing=False` skips the log lookup for callers that have
        already done it. Exceptions from the stores propagate.
        """
        if check_existing and await self.already_notified(rule, boundaries):
            return self._finish(rule, boundaries, path, NotificationOutcome.DUPLICATE)

        sent_at = utc_now()
        email = await self.recipients.resolve(rule.user_id)
        sent = False
        if email:
            sent = await self.email_service.send_threshold_alert(
                email,
                ThresholdAlert(
                    agent_name=rule.agent_name,
                    metric_type=rule.metric_type.value,
                    threshold=rule.threshold,
                    actual_value=actual,
                    period=rule.period,
                    timestamp=format_timestamp(sent_at),
                ),
            )
            if not sent:
                return self._finish(
                    rule, boundaries, path, NotificationOutcome.SEND_FAILED
                )

        await self.log_store.record(
            NotificationLogEntry(
                rule_id=rule.id,
                period_start=boundaries.period_start,
                period_end=boundaries.period_end,
                actual_value=actual,
                threshold_value=rule.threshold,
                metric_type=rule.metric_type.value,
                agent_name=rule.agent_name,
                sent_at=sent_at,
            )
        )
        outcome = (
            NotificationOutcome.SENT if sent else NotificationOutcome.LOGGED_NO_EMAIL
        )
        return self._finish(rule, boundaries, path, outcome)

    def _finish(
        self,
        rule: ThresholdRule,
        boundaries: PeriodBoundaries,
        path: str,
        outcome: NotificationOutcome,
    ) -> NotificationOutcome:
        THRESHOLD_NOTIFICATIONS.labels(path=path, outcome=outcome.value).inc()
        log = logger.warning if outcome is NotificationOutcome.SEND_FAILED else logger.info
        log(
            "threshold_notification_" + outcome.value,
            rule_id=str(rule.id),
            agent_name=rule.agent_name,
            metric_type=rule.metric_type.value,
            period_start=boundaries.start_label,
            path=path,
        )
        return outcome
