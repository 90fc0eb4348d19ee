"""
Rule Store and Consumption Aggregator.

Read-only access to threshold rules and raw usage. Rules are returned in
creation order, which is the evaluation order of the limit check (first
crossed rule wins). Consumption is always computed fresh from `agent_messages`;
caching is the caller's concern.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_guard.models.agent_message import AgentMessage
from usage_guard.models.notification_rule import (
    BLOCKING_TRIGGER_TYPES,
    MetricType,
    NotificationRule,
    TriggerType,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class ThresholdRule:
    """Detached snapshot of an active rule, safe to cache across sessions."""

    id: UUID
    tenant_id: str
    agent_id: str
    agent_name: str
    user_id: str
    metric_type: MetricType
    threshold: float
    period: str
    trigger_type: TriggerType = TriggerType.NOTIFY

    @classmethod
    def from_model(cls, rule: NotificationRule) -> "ThresholdRule":
        return cls(
            id=rule.id,
            tenant_id=rule.tenant_id,
            agent_id=rule.agent_id,
            agent_name=rule.agent_name,
            user_id=rule.user_id,
            metric_type=MetricType(rule.metric_type),
            threshold=float(rule.threshold),
            period=rule.period,
            trigger_type=TriggerType(rule.trigger_type),
        )

    @property
    def blocks(self) -> bool:
        return self.trigger_type in BLOCKING_TRIGGER_TYPES


class NotificationRuleStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def list_active_block_rules(
        self, tenant_id: str, agent_name: str
    ) -> list[ThresholdRule]:
        """Active rules for one tenant+agent whose trigger blocks work."""
        stmt = (
            select(NotificationRule)
            .where(
                NotificationRule.tenant_id == tenant_id,
                NotificationRule.agent_name == agent_name,
                NotificationRule.is_active.is_(True),
                NotificationRule.trigger_type.in_(BLOCKING_TRIGGER_TYPES),
            )
            .order_by(NotificationRule.created_at.asc(), NotificationRule.id.asc())
        )
        return await self._fetch_rules(stmt)

    async def list_all_active_rules(self) -> list[ThresholdRule]:
        """Every active rule system-wide, any trigger type."""
        stmt = (
            select(NotificationRule)
            .where(NotificationRule.is_active.is_(True))
            .order_by(NotificationRule.created_at.asc(), NotificationRule.id.asc())
        )
        return await self._fetch_rules(stmt)

    async def get_consumption(
        self,
        tenant_id: str,
        agent_name: str,
        metric_type: MetricType | str,
        period_start: datetime,
        period_end: datetime,
    ) -> float:
        """Total tokens or cost for tenant+agent in `[period_start, period_end)`."""
        if MetricType(metric_type) is MetricType.TOKENS:
            total_expr = func.sum(AgentMessage.input_tokens + AgentMessage.output_tokens)
        else:
            total_expr = func.sum(AgentMessage.cost_usd)

        stmt = select(total_expr).where(
            AgentMessage.tenant_id == tenant_id,
            AgentMessage.agent_name == agent_name,
            AgentMessage.timestamp >= period_start,
            AgentMessage.timestamp < period_end,
        )
        async with self._session_maker() as session:
            total = (await session.execute(stmt)).scalar()
        return float(total) if total is not None else 0.0

    async def _fetch_rules(self, stmt: Any) -> list[ThresholdRule]:
        async with self._session_maker() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [ThresholdRule.from_model(row) for row in rows]
