"""
Threshold Sweep - the reconciliation (cold) path.

Evaluates every active rule against fresh consumption, bypassing the hot-path
caches, so a crossed threshold is eventually notified and logged even when no
limit check ran for it or a send failed earlier in the period.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

import structlog

from usage_guard.modules.notifications.domain.notifier import ThresholdNotifier
from usage_guard.modules.notifications.domain.periods import compute_period_boundaries
from usage_guard.modules.notifications.domain.rules import (
    NotificationRuleStore,
    ThresholdRule,
)
from usage_guard.shared.core.ops_metrics import (
    THRESHOLD_SWEEP_DURATION,
    THRESHOLD_SWEEP_RULE_ERRORS,
    THRESHOLD_SWEEP_RUNS,
)

logger = structlog.get_logger()


class ThresholdSweepService:
    def __init__(
        self, rule_store: NotificationRuleStore, notifier: ThresholdNotifier
    ) -> None:
        self.rule_store = rule_store
        self.notifier = notifier

    async def check_thresholds(self, now: Optional[datetime] = None) -> int:
        """
        Evaluate all active rules once, sequentially.

        Returns the number of rules whose notification completed in this run
        (sent, or logged without an address). A failing rule is logged and
        skipped; failing to list rules fails the whole run.
        """
        start = time.perf_counter()
        try:
            rules = await self.rule_store.list_all_active_rules()
        except Exception:
            THRESHOLD_SWEEP_RUNS.labels(status="failure").inc()
            logger.exception("threshold_sweep_rule_listing_failed")
            raise

        triggered = 0
        failed = 0
        for rule in rules:
            try:
                if await self._evaluate(rule, now):
                    triggered += 1
            except Exception as e:
                failed += 1
                THRESHOLD_SWEEP_RULE_ERRORS.inc()
                logger.error(
                    "threshold_sweep_rule_failed",
                    rule_id=str(rule.id),
                    agent_name=rule.agent_name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        duration = time.perf_counter() - start
        THRESHOLD_SWEEP_DURATION.observe(duration)
        THRESHOLD_SWEEP_RUNS.labels(status="success").inc()
        logger.info(
            "threshold_sweep_completed",
            rules=len(rules),
            triggered=triggered,
            failed=failed,
            duration_seconds=round(duration, 3),
        )
        return triggered

    async def _evaluate(self, rule: ThresholdRule, now: Optional[datetime]) -> bool:
        boundaries = compute_period_boundaries(rule.period, now)
        if await self.notifier.already_notified(rule, boundaries):
            return False

        actual = await self.rule_store.get_consumption(
            rule.tenant_id,
            rule.agent_name,
            rule.metric_type,
            boundaries.period_start,
            boundaries.period_end,
        )
        if actual < rule.threshold:
            return False

        outcome = await self.notifier.notify(
            rule, actual, boundaries, path="sweep", check_existing=False
        )
        return outcome.completed
