from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Float, ForeignKey, String, UniqueConstraint, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from usage_guard.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotificationLog(Base):
    """One delivered (or undeliverable) threshold alert per rule and period."""

    __tablename__ = "notification_logs"
    __table_args__ = (
        UniqueConstraint(
            "rule_id", "period_start", name="uq_notification_logs_rule_period"
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    rule_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("notification_rules.id", ondelete="CASCADE"),
        nullable=False,
    )
    period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    actual_value: Mapped[float] = mapped_column(Float, nullable=False)
    threshold_value: Mapped[float] = mapped_column(Float, nullable=False)
    metric_type: Mapped[str] = mapped_column(String(16), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<NotificationLog rule={self.rule_id} period_start={self.period_start}>"
