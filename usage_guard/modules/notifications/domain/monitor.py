"""
Threshold Monitor - wires the engine together for a host process.

Owns the ingest bus, the limit check hot path, the reconciliation sweep and
its scheduler, and starts/stops them in dependency order.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_guard.modules.notifications.domain.email_service import (
    EmailService,
    get_email_service,
)
from usage_guard.modules.notifications.domain.limit_check import (
    LimitCheckService,
    LimitExceeded,
)
from usage_guard.modules.notifications.domain.notification_log import (
    NotificationLogStore,
)
from usage_guard.modules.notifications.domain.notifier import (
    RecipientResolver,
    ThresholdNotifier,
)
from usage_guard.modules.notifications.domain.rules import NotificationRuleStore
from usage_guard.modules.notifications.domain.scheduler import ThresholdSweepScheduler
from usage_guard.modules.notifications.domain.sweep import ThresholdSweepService
from usage_guard.shared.core.config import get_settings
from usage_guard.shared.core.ingest_bus import IngestEventBus

logger = structlog.get_logger()


class ThresholdMonitor:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        settings: Any = None,
        email_service: Optional[EmailService] = None,
        ingest_bus: Optional[IngestEventBus] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.settings = settings if settings is not None else get_settings()
        self.ingest_bus = ingest_bus or IngestEventBus(
            debounce_seconds=self.settings.INGEST_DEBOUNCE_SECONDS
        )
        self.rule_store = NotificationRuleStore(session_maker)
        self.notifier = ThresholdNotifier(
            log_store=NotificationLogStore(session_maker),
            email_service=email_service or get_email_service(),
            recipients=RecipientResolver(session_maker, self.settings),
        )
        self.limit_check = LimitCheckService(
            self.rule_store,
            self.notifier,
            ingest_bus=self.ingest_bus,
            ttl_seconds=self.settings.LIMIT_CACHE_TTL_SECONDS,
        )
        self.sweep = ThresholdSweepService(self.rule_store, self.notifier)
        self.sweep_scheduler = ThresholdSweepScheduler(self.sweep, scheduler=scheduler)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.limit_check.start()
        if self.settings.THRESHOLD_SWEEP_ENABLED:
            self.sweep_scheduler.start(
                run_on_startup=self.settings.THRESHOLD_SWEEP_RUN_ON_STARTUP
            )
        else:
            logger.info("threshold_sweep_disabled")
        self._started = True
        logger.info("threshold_monitor_started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.sweep_scheduler.stop()
        self.ingest_bus.shutdown()
        await self.limit_check.stop()
        self._started = False
        logger.info("threshold_monitor_stopped")

    def record_ingest(self, user_id: str) -> None:
        """Ingest hook: signal that new usage was stored for user_id."""
        self.ingest_bus.emit(user_id)

    async def check_limits(
        self, tenant_id: str, agent_name: str, now: Optional[datetime] = None
    ) -> Optional[LimitExceeded]:
        return await self.limit_check.check_limits(tenant_id, agent_name, now)

    def invalidate_cache(self, tenant_id: str, agent_name: str) -> None:
        """Rule API hook: call after a rule for tenant+agent is created, changed or removed."""
        self.limit_check.invalidate_cache(tenant_id, agent_name)

    async def check_thresholds(self, now: Optional[datetime] = None) -> int:
        return await self.sweep.check_thresholds(now)

    def get_status(self) -> dict[str, Any]:
        return {
            "started": self._started,
            "pending_ingest_events": self.ingest_bus.pending_count,
            "sweep": self.sweep_scheduler.get_status(),
        }
