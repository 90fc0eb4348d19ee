"""
Notification Rule Model.

A user-defined threshold on one agent's consumption over a recurring period.
`trigger_type` decides whether crossing it only notifies, blocks further work
through the limit check, or both.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    Numeric,
    Index,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from usage_guard.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricType(str, Enum):
    TOKENS = "tokens"
    COST = "cost"


class Period(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class TriggerType(str, Enum):
    NOTIFY = "notify"
    BLOCK = "block"
    BOTH = "both"


BLOCKING_TRIGGER_TYPES = (TriggerType.BLOCK, TriggerType.BOTH)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class NotificationRule(Base):
    __tablename__ = "notification_rules"
    __table_args__ = (
        Index("ix_notification_rules_tenant_agent", "tenant_id", "agent_name"),
        CheckConstraint("threshold > 0", name="threshold_positive"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metric_type: Mapped[MetricType] = mapped_column(
        SQLEnum(
            MetricType,
            name="notification_metric_type",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    threshold: Mapped[float] = mapped_column(
        Numeric(15, 6, asdecimal=False), nullable=False
    )
    # Stored as plain text: unrecognised periods are evaluated as "hour".
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    trigger_type: Mapped[TriggerType] = mapped_column(
        SQLEnum(
            TriggerType,
            name="notification_trigger_type",
            native_enum=False,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=TriggerType.NOTIFY,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<NotificationRule {self.id} {self.tenant_id}:{self.agent_name} "
            f"{self.metric_type}>={self.threshold}/{self.period}>"
        )
