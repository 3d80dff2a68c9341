"""MedStock — SQLAlchemy models."""
from medstock.models.expiry import (
    ALERT_TRANSITIONS,
    CHECK_RUN_TRANSITIONS,
    AlertSeverity,
    AlertStatus,
    AlertTierConfig,
    CheckRunStatus,
    CheckTrigger,
    ExpiryAlert,
    ExpiryCheckRun,
)
from medstock.models.inventory import BatchStatus, Product, ProductBatch
from medstock.models.quarantine import (
    QUARANTINE_TRANSITIONS,
    QuarantineAction,
    QuarantineActionLog,
    QuarantineCase,
    QuarantineStatus,
)

__all__ = [
    "Product", "ProductBatch", "BatchStatus",
    "AlertTierConfig", "ExpiryAlert", "ExpiryCheckRun",
    "AlertSeverity", "AlertStatus", "CheckRunStatus", "CheckTrigger",
    "ALERT_TRANSITIONS", "CHECK_RUN_TRANSITIONS",
    "QuarantineCase", "QuarantineActionLog", "QuarantineStatus", "QuarantineAction",
    "QUARANTINE_TRANSITIONS",
]
