"""
Model package initializer.

Importing this package registers every ORM mapping on `Base.metadata`, so
`init_models()` and scripts that use the ORM see the full schema.
"""

# Import side-effects: register ORM mappings.
from usage_guard.models import (  # noqa: F401
    agent_message,
    notification_log,
    notification_rule,
    notification_settings,
    user,
)
