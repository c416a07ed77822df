"""Utility modules for logging, auditing and retries."""
from .retry import with_retry, RETRYABLE_EXCEPTIONS
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)
from .audit_log import (
    AuditTrail,
    TransactionRecord,
    setup_audit_logging,
    get_recent_transactions,
)

__all__ = [
    "with_retry",
    "RETRYABLE_EXCEPTIONS",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
    "AuditTrail",
    "TransactionRecord",
    "setup_audit_logging",
    "get_recent_transactions",
]
