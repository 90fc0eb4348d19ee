"""Single-user (local) install helpers."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()

# Placeholder account address of local installs; never a deliverable mailbox.
LOCAL_EMAIL = "local@usage-guard.local"

NOTIFICATION_EMAIL_KEY = "notificationEmail"


def is_placeholder_email(email: Optional[str]) -> bool:
    return (email or "").strip().lower() == LOCAL_EMAIL


def read_local_notification_email(config_path: str | Path) -> Optional[str]:
    """Return `notificationEmail` from the local JSON config, if present."""
    path = Path(config_path).expanduser()
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("local_config_unreadable", path=str(path), error=str(exc))
        return None
    if not isinstance(data, dict):
        return None
    email = data.get(NOTIFICATION_EMAIL_KEY)
    if isinstance(email, str) and email.strip():
        return email.strip()
    return None
