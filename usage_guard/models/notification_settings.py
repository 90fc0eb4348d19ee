"""
Notification Settings Model.
Stores the per-user alert address override.
"""

from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, ForeignKey, String, Uuid as PG_UUID
from sqlalchemy.orm import Mapped, mapped_column

from usage_guard.shared.db.base import Base


class UserNotificationSettings(Base):
    """Per-user notification preferences."""

    __tablename__ = "user_notification_settings"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,  # One settings record per user
        nullable=False,
    )

    # Takes precedence over the account email when set
    notification_email: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return f"<UserNotificationSettings user={self.user_id} active={self.is_active}>"
