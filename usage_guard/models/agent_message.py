"""
Agent Message Model.

Raw usage rows written by the ingest pipeline. The threshold engine only reads
them to aggregate consumption over a period window.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Index, Integer, Numeric, String, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from usage_guard.shared.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AgentMessage(Base):
    __tablename__ = "agent_messages"
    __table_args__ = (
        Index(
            "ix_agent_messages_tenant_agent_timestamp",
            "tenant_id",
            "agent_name",
            "timestamp",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    agent_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    model: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[Optional[float]] = mapped_column(
        Numeric(10, 6, asdecimal=False), nullable=True
    )
