"""
Notification Log - the durable "already notified" record.

At most one entry exists per `(rule_id, period_start)`; the unique constraint
on the table enforces it, and `record()` is an insert-or-ignore against it.
Entries are never updated or deleted here.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_guard.models.notification_log import NotificationLog
from usage_guard.shared.db.session import insert_ignore

logger = structlog.get_logger()

LOG_IDENTITY_COLUMNS = ("rule_id", "period_start")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass(frozen=True)
class NotificationLogEntry:
    rule_id: UUID
    period_start: datetime
    period_end: datetime
    actual_value: float
    threshold_value: float
    metric_type: str
    agent_name: str
    sent_at: datetime = field(default_factory=_utcnow)


class NotificationLogStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def has_entry(self, rule_id: UUID, period_start: datetime) -> bool:
        stmt = (
            select(NotificationLog.id)
            .where(
                NotificationLog.rule_id == rule_id,
                NotificationLog.period_start == period_start,
            )
            .limit(1)
        )
        async with self._session_maker() as session:
            return (await session.execute(stmt)).first() is not None

    async def record(self, entry: NotificationLogEntry) -> bool:
        """Insert the entry unless one already exists; True when written."""
        async with self._session_maker() as session:
            async with session.begin():
                written = await insert_ignore(
                    session, NotificationLog, asdict(entry), LOG_IDENTITY_COLUMNS
                )
        if not written:
            logger.info(
                "notification_log_duplicate_ignored",
                rule_id=str(entry.rule_id),
                period_start=str(entry.period_start),
            )
        return written
