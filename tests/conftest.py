"""
Global pytest fixtures for the Usage Guard test suite.

Provides:
- Async SQLite in-memory engine with all tables created
- Session factory bound to that engine
- Factories for rules, users and usage rows
"""
import os

# Set test environment BEFORE any usage_guard imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["THRESHOLD_SWEEP_RUN_ON_STARTUP"] = "false"

from datetime import datetime, timezone
from typing import AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from usage_guard.models.agent_message import AgentMessage
from usage_guard.models.notification_rule import MetricType, NotificationRule, TriggerType
from usage_guard.models.notification_settings import UserNotificationSettings
from usage_guard.models.user import User
from usage_guard.shared.db.base import Base

# Fixed evaluation instant used across tests: Wednesday 2026-03-18 14:35:20 UTC
FIXED_NOW = datetime(2026, 3, 18, 14, 35, 20, tzinfo=timezone.utc)


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine) -> AsyncGenerator:
    yield async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


# ============================================================================
# Data Factories
# ============================================================================

@pytest.fixture
def rule_factory(session_maker):
    async def _create_rule(
        tenant_id: str = "tenant-1",
        agent_name: str = "my-agent",
        user_id: str = "user-1",
        metric_type: MetricType = MetricType.TOKENS,
        threshold: float = 100000,
        period: str = "day",
        trigger_type: TriggerType = TriggerType.BLOCK,
        is_active: bool = True,
        created_at: Optional[datetime] = None,
    ) -> NotificationRule:
        rule = NotificationRule(
            id=uuid4(),
            tenant_id=tenant_id,
            agent_id=f"agent-{agent_name}",
            agent_name=agent_name,
            user_id=user_id,
            metric_type=metric_type,
            threshold=threshold,
            period=period,
            trigger_type=trigger_type,
            is_active=is_active,
            created_at=created_at or datetime.now(timezone.utc),
        )
        async with session_maker() as session:
            session.add(rule)
            await session.commit()
        return rule

    return _create_rule


@pytest.fixture
def message_factory(session_maker):
    async def _create_message(
        timestamp: datetime,
        tenant_id: str = "tenant-1",
        agent_name: str = "my-agent",
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost_usd: Optional[float] = None,
        user_id: str = "user-1",
    ) -> AgentMessage:
        message = AgentMessage(
            tenant_id=tenant_id,
            agent_id=f"agent-{agent_name}",
            agent_name=agent_name,
            user_id=user_id,
            timestamp=timestamp,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost_usd,
        )
        async with session_maker() as session:
            session.add(message)
            await session.commit()
        return message

    return _create_message


@pytest.fixture
def user_factory(session_maker):
    async def _create_user(
        user_id: str = "user-1",
        email: str = "owner@example.com",
        notification_email: Optional[str] = None,
        settings_active: bool = True,
    ) -> User:
        user = User(id=user_id, email=email)
        async with session_maker() as session:
            session.add(user)
            if notification_email is not None:
                session.add(
                    UserNotificationSettings(
                        user_id=user_id,
                        notification_email=notification_email,
                        is_active=settings_active,
                    )
                )
            await session.commit()
        return user

    return _create_user


@pytest.fixture(autouse=True)
def set_testing_env():
    """Ensure TESTING is set for all tests."""
    os.environ["TESTING"] = "true"
    yield

