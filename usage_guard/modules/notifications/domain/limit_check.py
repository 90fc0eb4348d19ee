"""
Limit Check Engine - the enforcement hot path.

`check_limits()` answers "is this tenant+agent over a blocking threshold right
now?" from two short-lived caches:

- rules:       key `tenant:agent`                         -> active block rules
- consumption: key `tenant:agent:metric:period_start`     -> aggregated total

A crossed rule triggers notify-and-log as a background task that the caller
never awaits; its failures are logged and never reach the caller. While one
is pending for a rule and window, further crossings do not start another.
Every fired ingest event clears the whole consumption cache, and rule changes
call `invalidate_cache()` for the affected tenant+agent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Optional
from uuid import UUID

import structlog

from usage_guard.models.notification_rule import MetricType
from usage_guard.modules.notifications.domain.notifier import ThresholdNotifier
from usage_guard.modules.notifications.domain.periods import (
    PeriodBoundaries,
    compute_period_boundaries,
)
from usage_guard.modules.notifications.domain.rules import (
    NotificationRuleStore,
    ThresholdRule,
)
from usage_guard.shared.core.cache import (
    KEY_SEPARATOR,
    LIMIT_CHECK_TTL_SECONDS,
    TTLCache,
    make_cache_key,
)
from usage_guard.shared.core.ingest_bus import IngestEventBus, IngestSubscription
from usage_guard.shared.core.ops_metrics import (
    LIMIT_CHECK_CACHE_INVALIDATIONS,
    LIMIT_EXCEEDED_DECISIONS,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class LimitExceeded:
    rule_id: UUID
    metric_type: MetricType
    threshold: float
    actual: float
    period: str


class LimitCheckService:
    def __init__(
        self,
        rule_store: NotificationRuleStore,
        notifier: ThresholdNotifier,
        ingest_bus: Optional[IngestEventBus] = None,
        ttl_seconds: float = LIMIT_CHECK_TTL_SECONDS,
    ) -> None:
        self.rule_store = rule_store
        self.notifier = notifier
        self.ingest_bus = ingest_bus
        self.rules_cache: TTLCache[list[ThresholdRule]] = TTLCache("rules", ttl_seconds)
        self.consumption_cache: TTLCache[float] = TTLCache("consumption", ttl_seconds)
        self._ingest_task: Optional[asyncio.Task[None]] = None
        self._notification_tasks: set[asyncio.Task] = set()
        # rule:period_start -> pending notify-and-log task
        self._inflight_notifications: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """Subscribe to the ingest bus so fired events clear consumption totals."""
        if self.ingest_bus is None or self._ingest_task is not None:
            return
        subscription = self.ingest_bus.all()
        self._ingest_task = asyncio.create_task(
            self._consume_ingest_events(subscription), name="limit-check-ingest"
        )

    async def stop(self) -> None:
        """Stop the ingest listener and cancel in-flight notification tasks."""
        tasks = list(self._notification_tasks)
        if self._ingest_task is not None:
            tasks.append(self._ingest_task)
            self._ingest_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._notification_tasks.clear()
        self._inflight_notifications.clear()

    async def check_limits(
        self, tenant_id: str, agent_name: str, now: Optional[datetime] = None
    ) -> Optional[LimitExceeded]:
        """Return the first crossed block rule for tenant+agent, or None."""
        rules = await self.rules_cache.get_or_load(
            make_cache_key(tenant_id, agent_name),
            lambda: self.rule_store.list_active_block_rules(tenant_id, agent_name),
        )
        if not rules:
            return None

        for rule in rules:
            boundaries = compute_period_boundaries(rule.period, now)
            actual = await self._cached_consumption(tenant_id, agent_name, rule, boundaries)
            if actual >= rule.threshold:
                LIMIT_EXCEEDED_DECISIONS.labels(
                    metric_type=rule.metric_type.value, period=rule.period
                ).inc()
                logger.info(
                    "limit_exceeded",
                    tenant_id=tenant_id,
                    agent_name=agent_name,
                    rule_id=str(rule.id),
                    metric_type=rule.metric_type.value,
                    threshold=rule.threshold,
                    actual=actual,
                    period=rule.period,
                )
                self._schedule_notification(rule, actual, boundaries)
                return LimitExceeded(
                    rule_id=rule.id,
                    metric_type=rule.metric_type,
                    threshold=rule.threshold,
                    actual=actual,
                    period=rule.period,
                )

        return None

    def invalidate_cache(self, tenant_id: str, agent_name: str) -> None:
        """Drop cached rules and consumption for one tenant+agent pair."""
        key = make_cache_key(tenant_id, agent_name)
        self.rules_cache.delete(key)
        removed = self.consumption_cache.delete_prefix(key + KEY_SEPARATOR)
        LIMIT_CHECK_CACHE_INVALIDATIONS.labels(trigger="rule_change").inc()
        logger.debug(
            "limit_check_cache_invalidated",
            tenant_id=tenant_id,
            agent_name=agent_name,
            consumption_entries=removed,
        )

    def clear_consumption_cache(self) -> None:
        removed = self.consumption_cache.clear()
        LIMIT_CHECK_CACHE_INVALIDATIONS.labels(trigger="ingest").inc()
        logger.debug("limit_check_consumption_cache_cleared", entries=removed)

    async def _cached_consumption(
        self,
        tenant_id: str,
        agent_name: str,
        rule: ThresholdRule,
        boundaries: PeriodBoundaries,
    ) -> float:
        key = make_cache_key(
            tenant_id, agent_name, rule.metric_type.value, boundaries.start_label
        )
        return await self.consumption_cache.get_or_load(
            key,
            lambda: self.rule_store.get_consumption(
                tenant_id,
                agent_name,
                rule.metric_type,
                boundaries.period_start,
                boundaries.period_end,
            ),
        )

    def _schedule_notification(
        self, rule: ThresholdRule, actual: float, boundaries: PeriodBoundaries
    ) -> None:
        # At most one notify-and-log per rule and window until the previous one finishes
        key = make_cache_key(rule.id, boundaries.start_label)
        if key in self._inflight_notifications:
            logger.debug(
                "limit_notification_already_pending",
                rule_id=str(rule.id),
                period_start=boundaries.start_label,
            )
            return
        task = asyncio.create_task(
            self.notifier.notify(rule, actual, boundaries, path="hot"),
            name=f"limit-notify-{rule.id}",
        )
        self._notification_tasks.add(task)
        self._inflight_notifications[key] = task
        task.add_done_callback(partial(self._on_notification_done, key))

    def _on_notification_done(self, key: str, task: asyncio.Task) -> None:
        self._notification_tasks.discard(task)
        if self._inflight_notifications.get(key) is task:
            del self._inflight_notifications[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "limit_notification_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _consume_ingest_events(self, subscription: IngestSubscription) -> None:
        try:
            async for user_id in subscription:
                logger.debug("limit_check_ingest_event", user_id=user_id)
                self.clear_consumption_cache()
        finally:
            subscription.close()
