"""Config Engine - Transactional host network configuration.

The Config Engine takes a candidate configuration to a committed host state:
- Layered validation (syntax, semantic, tool dry-run) before anything changes
- Versioned snapshot of the live state before every mutation
- Atomic write, apply and verify, with automatic rollback on failure
- Change-set calculation for dry-run output and publishing

Usage:
    from netwarden.config_engine import ApplyEngine, ApplyOptions

    engine = ApplyEngine(load_settings())
    result = await engine.apply(candidate, ApplyOptions(dry_run=True))
    for finding in result.findings:
        print(finding)
"""

from .engine import ApplyEngine, InvalidTransitionError, Transaction, VerificationError
from .schema import (
    Severity,
    FindingCategory,
    Finding,
    ValidationResult,
    ChangeType,
    ConfigChange,
    LiveInterfaceState,
    TransactionState,
    TransactionOutcome,
    ApplyOptions,
    TransactionResult,
)
from .graph import DependencyGraph
from .syntax import SyntaxValidator
from .semantic import OverlapPolicy, SemanticValidator
from .dry_run import DryRunValidator
from .validator import ConfigValidator
from .diff import DiffEngine, summarize_changes
from .generator import InterfacesRenderer
from .executor import (
    IfupdownTool,
    InterfaceTool,
    ToolEnvironmentError,
    ToolResult,
    ToolTimeoutError,
)

__all__ = [
    # Main engine
    "ApplyEngine",
    "Transaction",
    "InvalidTransitionError",
    "VerificationError",
    # Schema classes
    "Severity",
    "FindingCategory",
    "Finding",
    "ValidationResult",
    "ChangeType",
    "ConfigChange",
    "LiveInterfaceState",
    "TransactionState",
    "TransactionOutcome",
    "ApplyOptions",
    "TransactionResult",
    # Components
    "DependencyGraph",
    "SyntaxValidator",
    "OverlapPolicy",
    "SemanticValidator",
    "DryRunValidator",
    "ConfigValidator",
    "DiffEngine",
    "summarize_changes",
    "InterfacesRenderer",
    # Host tool
    "IfupdownTool",
    "InterfaceTool",
    "ToolEnvironmentError",
    "ToolResult",
    "ToolTimeoutError",
]
