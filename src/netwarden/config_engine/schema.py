"""Result types shared by the validators and the apply engine."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    """How serious a finding is. Only ERROR blocks an apply."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class FindingCategory(str, Enum):
    """Whether a finding is about the candidate or about the host."""
    CONFIGURATION = "configuration"
    ENVIRONMENT = "environment"


@dataclass
class Finding:
    """A single diagnostic, located at an interface and field where possible."""
    severity: Severity
    code: str
    message: str
    interface: Optional[str] = None
    field: Optional[str] = None
    category: FindingCategory = FindingCategory.CONFIGURATION
    stage: str = ""

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "interface": self.interface,
            "field": self.field,
            "category": self.category.value,
            "stage": self.stage,
        }

    def __str__(self) -> str:
        where = self.interface or "-"
        if self.field:
            where += f".{self.field}"
        return f"[{self.severity.value}] {where}: {self.message} ({self.code})"


# --- Validation Results ---

@dataclass
class ValidationResult:
    """Result of running the validation pipeline.

    ``stage`` is the last stage that ran: "syntax", "semantic" or "dry_run".
    """
    findings: list[Finding] = field(default_factory=list)
    stage: str = ""

    @property
    def errors(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def infos(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.INFO]

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def environment_error(self) -> bool:
        """True when validation could not complete because of the host, not the config."""
        return any(
            f.is_error and f.category == FindingCategory.ENVIRONMENT
            for f in self.findings
        )

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "stage": self.stage,
            "environment_error": self.environment_error,
            "findings": [f.to_dict() for f in self.findings],
        }


# --- Change-set ---

class ChangeType(str, Enum):
    """Type of change between two configurations.

    UPDATE replaces an interface whose kind changed; MODIFY changes fields
    of an interface in place.
    """
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MODIFY = "modify"


@dataclass
class ConfigChange:
    """One entry of a change-set."""
    change_type: ChangeType
    target: str
    description: str
    old_config: Optional[dict] = None
    new_config: Optional[dict] = None
    fields: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "change_type": self.change_type.value,
            "target": self.target,
            "description": self.description,
            "old_config": self.old_config,
            "new_config": self.new_config,
            "fields": list(self.fields),
        }


# --- Live state ---

@dataclass
class LiveInterfaceState:
    """What the kernel reports for one interface."""
    name: str
    admin_up: bool = False
    operstate: str = "UNKNOWN"
    addresses: list[str] = field(default_factory=list)  # CIDR
    mtu: Optional[int] = None


# --- Transactions ---

class TransactionState(str, Enum):
    """Lifecycle of an apply transaction."""
    PENDING = "pending"
    VALIDATING = "validating"
    VALIDATED = "validated"  # terminal for dry-run requests
    SNAPSHOTTING = "snapshotting"
    WRITING = "writing"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    TransactionState.VALIDATED,
    TransactionState.COMMITTED,
    TransactionState.ROLLED_BACK,
    TransactionState.FAILED,
})

ALLOWED_TRANSITIONS: dict[TransactionState, frozenset] = {
    TransactionState.PENDING: frozenset({TransactionState.VALIDATING, TransactionState.FAILED}),
    TransactionState.VALIDATING: frozenset({
        TransactionState.VALIDATED,
        TransactionState.SNAPSHOTTING,
        TransactionState.FAILED,
    }),
    TransactionState.SNAPSHOTTING: frozenset({TransactionState.WRITING, TransactionState.FAILED}),
    TransactionState.WRITING: frozenset({TransactionState.APPLYING, TransactionState.ROLLING_BACK}),
    TransactionState.APPLYING: frozenset({TransactionState.VERIFYING, TransactionState.ROLLING_BACK}),
    TransactionState.VERIFYING: frozenset({TransactionState.COMMITTED, TransactionState.ROLLING_BACK}),
    TransactionState.ROLLING_BACK: frozenset({TransactionState.ROLLED_BACK, TransactionState.FAILED}),
    TransactionState.VALIDATED: frozenset(),
    TransactionState.COMMITTED: frozenset(),
    TransactionState.ROLLED_BACK: frozenset(),
    TransactionState.FAILED: frozenset(),
}


class TransactionOutcome(str, Enum):
    """Why a transaction ended where it did."""
    COMMITTED = "committed"
    DRY_RUN = "dry_run"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"
    ENVIRONMENT_ERROR = "environment_error"
    ABORTED = "aborted"
    CANCELLED = "cancelled"
    BUSY = "busy"
    FAILED = "failed"


# --- Execution options and results ---

@dataclass
class ApplyOptions:
    """Options for an apply or rollback request."""
    dry_run: bool = False
    live_interfaces: Optional[set[str]] = None
    live_config: Any = None  # NetworkConfiguration; canonical model when None
    wait_for_lock: bool = True
    lock_timeout: Optional[float] = None  # settings.lock_timeout when None
    skip_validation: bool = False
    user: Optional[str] = None
    context: str = ""


@dataclass
class TransactionResult:
    """Externally published result of a transaction."""
    transaction_id: str
    outcome: TransactionOutcome
    state: TransactionState
    states: list[TransactionState] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    changes: list[ConfigChange] = field(default_factory=list)
    version_id: Optional[str] = None
    error: Optional[str] = None
    root_cause: Optional[str] = None
    requires_manual_intervention: bool = False
    before_state: Optional[dict] = None
    attempted_state: Optional[dict] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.outcome in (TransactionOutcome.COMMITTED, TransactionOutcome.DRY_RUN)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "transaction_id": self.transaction_id,
            "success": self.success,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "states": [s.value for s in self.states],
            "findings": [f.to_dict() for f in self.findings],
            "changes": [c.to_dict() for c in self.changes],
            "version_id": self.version_id,
            "error": self.error,
            "root_cause": self.root_cause,
            "requires_manual_intervention": self.requires_manual_intervention,
            "before_state": self.before_state,
            "attempted_state": self.attempted_state,
            "duration_ms": round(self.duration_ms, 2),
        }
