"""Audit logging for configuration transactions.

Every transaction that reaches a terminal state is written as one JSON line:
- Timestamped entry with the transaction id and outcome
- State history, change-set and findings
- Before/after configuration on failure (what was live, what was attempted)
- Separate audit log file, not propagated to the main logger
"""
import json
import logging
import os
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

audit_logger = logging.getLogger("netwarden.audit")

DEFAULT_AUDIT_DIR = "/var/log/netwarden"


def setup_audit_logging(log_dir: Optional[str] = None) -> Path:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to /var/log/netwarden

    Returns:
        Path of the audit log file
    """
    if log_dir is None:
        log_dir = os.environ.get("NETWARDEN_LOG_DIR", DEFAULT_AUDIT_DIR)

    Path(log_dir).mkdir(parents=True, exist_ok=True)
    audit_file = Path(log_dir) / "audit.log"

    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        audit_logger.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    # One JSON document per line
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.propagate = False

    return audit_file


@dataclass
class TransactionRecord:
    """Record of one configuration transaction."""
    timestamp: str
    transaction_id: str
    operation: str  # apply, dry_run, rollback
    user: str
    outcome: str
    state: str
    states: list[str] = field(default_factory=list)
    version_id: Optional[str] = None
    changes: list[dict] = field(default_factory=list)
    findings: list[dict] = field(default_factory=list)
    error: Optional[str] = None
    root_cause: Optional[str] = None
    requires_manual_intervention: bool = False
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    context: str = ""

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None)

    @classmethod
    def from_json(cls, json_str: str) -> "TransactionRecord":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class AuditTrail:
    """Write transaction records to the audit log."""

    def log_transaction(
        self,
        result,
        operation: str,
        user: Optional[str] = None,
        context: str = "",
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
    ) -> TransactionRecord:
        """Log a finished transaction.

        Args:
            result: The TransactionResult of the transaction
            operation: What was requested ("apply", "dry_run", "rollback")
            user: Who requested it
            context: Free-form description from the caller
            before_state: Live configuration before the change
            after_state: Configuration that was attempted

        Returns:
            The TransactionRecord that was logged
        """
        record = TransactionRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            transaction_id=result.transaction_id,
            operation=operation,
            user=user or "system",
            outcome=result.outcome.value,
            state=result.state.value,
            states=[s.value for s in result.states],
            version_id=result.version_id,
            changes=[c.to_dict() for c in result.changes],
            findings=[f.to_dict() for f in result.findings],
            error=result.error,
            root_cause=result.root_cause,
            requires_manual_intervention=result.requires_manual_intervention,
            before_state=before_state,
            after_state=after_state,
            context=context,
        )

        if record.requires_manual_intervention:
            audit_logger.critical(record.to_json())
        else:
            audit_logger.info(record.to_json())

        return record


def get_recent_transactions(
    log_file: Optional[str] = None,
    outcome: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[TransactionRecord]:
    """Read recent transactions from the audit log.

    Args:
        log_file: Path to audit log. Defaults to /var/log/netwarden/audit.log
        outcome: Filter by outcome (committed, rolled_back, failed, ...)
        operation: Filter by operation
        limit: Maximum number of records to return

    Returns:
        List of TransactionRecords, most recent first
    """
    if log_file is None:
        log_file = os.path.join(
            os.environ.get("NETWARDEN_LOG_DIR", DEFAULT_AUDIT_DIR), "audit.log"
        )

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = TransactionRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if outcome and record.outcome != outcome:
                continue
            if operation and record.operation != operation:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))
