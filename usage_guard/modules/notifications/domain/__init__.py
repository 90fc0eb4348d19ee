from .email_service import EmailService, ThresholdAlert, get_email_service
from .limit_check import LimitCheckService, LimitExceeded
from .monitor import ThresholdMonitor
from .notification_log import NotificationLogEntry, NotificationLogStore
from .notifier import NotificationOutcome, RecipientResolver, ThresholdNotifier
from .periods import PeriodBoundaries, compute_period_boundaries
from .rules import NotificationRuleStore, ThresholdRule
from .scheduler import ThresholdSweepScheduler
from .sweep import ThresholdSweepService

__all__ = [
    "EmailService",
    "ThresholdAlert",
    "get_email_service",
    "LimitCheckService",
    "LimitExceeded",
    "ThresholdMonitor",
    "NotificationLogEntry",
    "NotificationLogStore",
    "NotificationOutcome",
    "RecipientResolver",
    "ThresholdNotifier",
    "PeriodBoundaries",
    "compute_period_boundaries",
    "NotificationRuleStore",
    "ThresholdRule",
    "ThresholdSweepScheduler",
    "ThresholdSweepService",
]
