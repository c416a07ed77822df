"""Transactional apply engine.

Drives a candidate configuration through:
1. Validating - syntax, semantic and dry-run layers (no lock, no mutation)
2. Snapshotting - save the live configuration as a new version
3. Writing - atomically write the materialized candidate
4. Applying - have the tool bring the host to the new state
5. Verifying - confirm the live state matches, with bounded retries
6. Committed - or, on any failure in 3-5, RollingBack to the snapshot

Steps 2-6 run under the host lock and, once started, always reach a
terminal state even if the caller goes away.
"""
import asyncio
import copy
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..config.schema import AddressMethod, NetworkConfiguration, parse_cidr
from ..config.settings import Settings
from ..config_store.lock import BusyError, HostLock
from ..config_store.store import (
    LATEST,
    StoreError,
    Version,
    VersionRecord,
    VersionStore,
    atomic_write_bytes,
)
from ..utils.audit_log import AuditTrail, setup_audit_logging
from ..utils.logging_config import timed_section
from ..utils.retry import with_retry
from .diff import DiffEngine, summarize_changes
from .dry_run import DryRunValidator
from .executor import IfupdownTool, InterfaceTool, ToolEnvironmentError
from .generator import InterfacesRenderer
from .schema import (
    ALLOWED_TRANSITIONS,
    ApplyOptions,
    ConfigChange,
    Finding,
    TransactionOutcome,
    TransactionResult,
    TransactionState,
    ValidationResult,
)
from .semantic import OverlapPolicy, SemanticValidator
from .validator import ConfigValidator

logger = logging.getLogger(__name__)

CURRENT = "current"


class InvalidTransitionError(Exception):
    """A transaction was asked to move to a state it cannot reach."""
    pass


class VerificationError(Exception):
    """The live state does not match the applied configuration."""
    pass


class _StepFailed(Exception):
    """A mutating step failed; the transaction has to roll back."""

    def __init__(self, step: str, reason: str):
        super().__init__(f"{step}: {reason}")
        self.step = step
        self.reason = reason


@dataclass
class Transaction:
    """In-flight state of one apply or rollback."""
    id: str
    operation: str
    candidate: NetworkConfiguration
    artifact: Optional[bytes] = None
    state: TransactionState = TransactionState.PENDING
    states: list[TransactionState] = field(default_factory=lambda: [TransactionState.PENDING])
    findings: list[Finding] = field(default_factory=list)
    changes: list[ConfigChange] = field(default_factory=list)
    version: Optional[Version] = None
    before: Optional[NetworkConfiguration] = None
    error: Optional[str] = None
    root_cause: Optional[str] = None
    started: float = field(default_factory=time.perf_counter)

    @classmethod
    def begin(cls, operation: str, candidate: NetworkConfiguration, artifact: Optional[bytes] = None) -> "Transaction":
        # The candidate is copied so nothing the caller does later can change it
        return cls(
            id=uuid.uuid4().hex[:16],
            operation=operation,
            candidate=copy.deepcopy(candidate),
            artifact=artifact,
        )

    def transition(self, new_state: TransactionState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Transaction {self.id}: cannot go from {self.state.value} to {new_state.value}"
            )
        logger.info(f"Transaction {self.id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.states.append(new_state)


class ApplyEngine:
    """
    Validate, apply and roll back host network configurations.

    Usage:
        engine = ApplyEngine(load_settings())
        result = await engine.apply(candidate)
        if result.outcome == TransactionOutcome.ROLLED_BACK:
            print(result.root_cause)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        tool: Optional[InterfaceTool] = None,
        store: Optional[VersionStore] = None,
        lock: Optional[HostLock] = None,
        audit: Optional[AuditTrail] = None,
        publisher: Optional[Callable[[TransactionResult], Any]] = None,
    ):
        """
        Initialize the engine.

        Args:
            settings: Paths, timeouts and policies (defaults when None)
            tool: Host tool; ifupdown2 when None
            store: Version store; created under settings.base_dir when None
            lock: Host lock; created at settings.lock_file when None
            audit: Audit trail for finished transactions; when None and
                settings.log_dir is set, audit logging is set up there
            publisher: Called with every committed TransactionResult; may be async
        """
        self.settings = settings or Settings()
        self.tool = tool or IfupdownTool.from_settings(self.settings)
        self.store = store or VersionStore(self.settings.base_dir)
        self.lock = lock or HostLock(self.settings.lock_file)
        if audit is None and self.settings.log_dir:
            setup_audit_logging(self.settings.log_dir)
        self.audit = audit or AuditTrail()
        self.publisher = publisher

        self.renderer = InterfacesRenderer()
        self.diff_engine = DiffEngine()
        self.validator = ConfigValidator(
            semantic=SemanticValidator(OverlapPolicy.from_settings(self.settings)),
            dry_run=DryRunValidator(
                self.tool,
                required=self.settings.dry_run_required,
                timeout=self.settings.dry_run_timeout,
            ),
            renderer=self.renderer,
        )
        self._inflight: set[asyncio.Task] = set()

    # === Public API ===

    async def validate(
        self,
        config: NetworkConfiguration,
        live_interfaces: Optional[set[str]] = None,
    ) -> ValidationResult:
        """Run the validation pipeline only. Never takes the host lock."""
        live = await self._live_interfaces(live_interfaces)
        return await self.validator.validate(config, live)

    async def apply(
        self,
        config: NetworkConfiguration,
        options: Optional[ApplyOptions] = None,
    ) -> TransactionResult:
        """
        Apply a candidate configuration transactionally.

        Args:
            config: Candidate configuration; the caller's object is never modified
            options: Dry-run, lock waiting, live-state overrides, audit context

        Returns:
            TransactionResult; ``outcome`` says how it ended
        """
        options = options or ApplyOptions()
        operation = "dry_run" if options.dry_run else "apply"
        txn = Transaction.begin(operation, config)
        logger.info(f"{'DRY RUN: ' if options.dry_run else ''}Starting transaction {txn.id}")
        return await self._execute(txn, options)

    async def rollback(
        self,
        version: str = CURRENT,
        options: Optional[ApplyOptions] = None,
    ) -> TransactionResult:
        """
        Bring back an earlier version as a new forward transaction.

        Args:
            version: A version id, "latest", or "current" (the version saved by
                the last committed transaction, falling back to "latest")
            options: As for ``apply``

        Returns:
            TransactionResult of the rollback transaction

        Raises:
            VersionNotFoundError: If the requested version does not exist
        """
        options = options or ApplyOptions()

        # The current pointer is only read under the host lock
        try:
            await self.lock.acquire(self._lock_timeout(options))
        except BusyError as e:
            return TransactionResult(
                transaction_id=uuid.uuid4().hex[:16],
                outcome=TransactionOutcome.BUSY,
                state=TransactionState.FAILED,
                states=[TransactionState.PENDING, TransactionState.FAILED],
                error=str(e),
            )
        try:
            target = self.store.load(self._resolve_target(version))
        finally:
            await self.lock.release()

        try:
            artifact = target.file_bytes(self.settings.interfaces_path)
        except KeyError:
            artifact = None
        if artifact is None:
            logger.info(f"Version {target.id} has no captured interfaces file; rendering its model")

        txn = Transaction.begin("rollback", target.configuration, artifact)
        logger.info(f"Starting transaction {txn.id}: rollback to version {target.id}")
        return await self._execute(txn, options)

    def list_versions(self) -> list[VersionRecord]:
        """Stored versions, newest first."""
        return self.store.records()

    def status(self) -> dict:
        """Version pointers and whether a transaction is in flight."""
        versions = self.store.list()
        return {
            "current_version": self.store.get_current(),
            "latest_version": versions[-1][0] if versions else None,
            "version_count": len(versions),
            "transaction_in_progress": self.lock.locked,
        }

    # === Transaction driver ===

    async def _execute(self, txn: Transaction, options: ApplyOptions) -> TransactionResult:
        try:
            early = await self._validate_phase(txn, options)
            if early is not None:
                return early
            if options.dry_run:
                return self._finish_dry_run(txn, options)
            await self.lock.acquire(self._lock_timeout(options))
        except BusyError as e:
            logger.warning(f"Transaction {txn.id} rejected: {e}")
            txn.error = str(e)
            txn.transition(TransactionState.FAILED)
            return self._finish(txn, TransactionOutcome.BUSY, options)
        except asyncio.CancelledError:
            logger.warning(f"Transaction {txn.id} cancelled before any change was made")
            txn.error = "Cancelled"
            txn.transition(TransactionState.FAILED)
            self._finish(txn, TransactionOutcome.CANCELLED, options)
            raise

        # From here on the transaction runs to a terminal state even if the
        # caller is cancelled; shield() keeps the task alive.
        task = asyncio.ensure_future(self._run_locked(txn, options))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"Caller cancelled transaction {txn.id}; it will still run to completion")
            raise

    async def _validate_phase(self, txn: Transaction, options: ApplyOptions) -> Optional[TransactionResult]:
        """Validate; returns a result when the transaction ends here."""
        txn.transition(TransactionState.VALIDATING)

        if options.skip_validation:
            logger.warning(f"Transaction {txn.id}: validation skipped on request")
        else:
            live = await self._live_interfaces(options.live_interfaces)
            content = txn.artifact.decode("utf-8", errors="replace") if txn.artifact is not None else None
            async with timed_section("validating", subject=txn.id):
                validation = await self.validator.validate(txn.candidate, live, content=content)
            txn.findings = validation.findings

            if not validation.valid:
                if validation.environment_error:
                    outcome = TransactionOutcome.ENVIRONMENT_ERROR
                else:
                    outcome = TransactionOutcome.REJECTED
                txn.error = "; ".join(str(f) for f in validation.errors[:5])
                logger.info(f"Transaction {txn.id} {outcome.value}: {txn.error}")
                txn.transition(TransactionState.FAILED)
                return self._finish(txn, outcome, options)

            if validation.warnings:
                logger.info(f"Transaction {txn.id}: {len(validation.warnings)} warning(s)")

        if txn.artifact is None:
            txn.artifact = self.renderer.render(txn.candidate).encode("utf-8")
        return None

    def _finish_dry_run(self, txn: Transaction, options: ApplyOptions) -> TransactionResult:
        try:
            txn.before = self._live_model(options)
        except StoreError as e:
            logger.warning(f"Cannot read canonical configuration for dry-run diff: {e}")
            txn.before = NetworkConfiguration()
        txn.changes = self.diff_engine.calculate(txn.before, txn.candidate)
        logger.info(summarize_changes(txn.changes))
        txn.transition(TransactionState.VALIDATED)
        return self._finish(txn, TransactionOutcome.DRY_RUN, options)

    async def _run_locked(self, txn: Transaction, options: ApplyOptions) -> TransactionResult:
        try:
            return await self._transact(txn, options)
        finally:
            await self.lock.release()

    async def _transact(self, txn: Transaction, options: ApplyOptions) -> TransactionResult:
        # Step 1: Snapshot
        txn.transition(TransactionState.SNAPSHOTTING)
        try:
            txn.before = self._live_model(options)
            txn.changes = self.diff_engine.calculate(txn.before, txn.candidate)
            txn.version = self.store.save(
                txn.before,
                self.settings.captured_files,
                description=f"before {txn.operation} {txn.id}",
            )
        except (StoreError, OSError) as e:
            logger.error(f"Transaction {txn.id} aborted: snapshot failed: {e}")
            txn.error = f"Snapshot failed: {e}"
            txn.transition(TransactionState.FAILED)
            return self._finish(txn, TransactionOutcome.ABORTED, options)

        logger.info(f"Transaction {txn.id}: {len(txn.changes)} change(s), snapshot {txn.version.id}")

        try:
            # Step 2: Write
            txn.transition(TransactionState.WRITING)
            self._write_artifact(txn)

            # Step 3: Apply
            txn.transition(TransactionState.APPLYING)
            async with timed_section("applying", subject=txn.id):
                await self._apply_step(txn)

            # Step 4: Verify
            txn.transition(TransactionState.VERIFYING)
            async with timed_section("verifying", subject=txn.id):
                await self._verify_step(txn)
        except _StepFailed as failure:
            return await self._roll_back(txn, failure, options)

        # Step 5: Commit
        try:
            self.store.save_canonical(txn.candidate)
            self.store.set_current(txn.version.id)
        except (StoreError, OSError) as e:
            logger.error(f"Transaction {txn.id} applied, but version bookkeeping failed: {e}")
            txn.error = f"Version bookkeeping failed: {e}"
        self._prune_versions()
        txn.transition(TransactionState.COMMITTED)

        result = self._finish(txn, TransactionOutcome.COMMITTED, options)
        await self._publish(result)
        return result

    def _prune_versions(self) -> None:
        if not self.settings.max_versions:
            return
        try:
            self.store.prune(max_versions=self.settings.max_versions)
        except (StoreError, OSError) as e:
            logger.warning(f"Version pruning failed: {e}")

    def _write_artifact(self, txn: Transaction) -> None:
        path = self.settings.interfaces_path
        try:
            atomic_write_bytes(path, txn.artifact)
        except OSError as e:
            raise _StepFailed("writing", f"Could not write {path}: {e}") from e
        logger.info(f"Wrote {len(txn.artifact)} bytes to {path}")

    async def _apply_step(self, txn: Transaction) -> None:
        try:
            result = await self.tool.apply(timeout=self.settings.apply_timeout)
        except ToolEnvironmentError as e:
            raise _StepFailed("applying", str(e)) from e
        if not result.success:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            raise _StepFailed(
                "applying",
                f"{self.tool.name} exited with status {result.returncode}: {detail[:500]}",
            )

    async def _verify_step(self, txn: Transaction) -> None:
        interval = self.settings.verify_interval
        check = with_retry(
            max_attempts=self.settings.verify_attempts,
            min_wait=interval,
            max_wait=interval * 4,
            exceptions=(VerificationError, ToolEnvironmentError),
        )(self._check_live_state)

        try:
            await asyncio.wait_for(check(txn.candidate), self.settings.verify_timeout)
        except asyncio.TimeoutError:
            raise _StepFailed(
                "verifying", f"Live state did not converge within {self.settings.verify_timeout}s",
            ) from None
        except (VerificationError, ToolEnvironmentError) as e:
            raise _StepFailed("verifying", str(e)) from e

    async def _check_live_state(self, candidate: NetworkConfiguration) -> None:
        """Every auto interface exists, is up, and carries its static addresses."""
        live = await self.tool.live_state(timeout=self.settings.verify_timeout)
        problems = []

        for name in candidate.auto:
            state = live.get(name)
            if state is None:
                problems.append(f"{name} does not exist")
                continue
            if not state.admin_up:
                problems.append(f"{name} is not up")

            iface = candidate.get(name)
            if iface is None or iface.method != AddressMethod.STATIC:
                continue
            present = {str(parse_cidr(a)) for a in state.addresses if parse_cidr(a) is not None}
            for address in iface.addresses:
                if str(parse_cidr(address)) not in present:
                    problems.append(f"{name} is missing address {address}")

        if problems:
            raise VerificationError("; ".join(problems))

    async def _roll_back(self, txn: Transaction, failure: _StepFailed, options: ApplyOptions) -> TransactionResult:
        txn.root_cause = f"{failure.step}: {failure.reason}"
        txn.error = f"Failed while {failure.step}: {failure.reason}"
        logger.error(
            f"Transaction {txn.id} failed while {failure.step}: {failure.reason}; "
            f"rolling back to version {txn.version.id}"
        )
        txn.transition(TransactionState.ROLLING_BACK)

        try:
            async with timed_section("rolling_back", subject=txn.id):
                self.store.restore_files(txn.version)
                result = await self.tool.apply(timeout=self.settings.apply_timeout)
            if not result.success:
                detail = result.stderr.strip() or "no output"
                raise _StepFailed(
                    "rolling_back", f"{self.tool.name} exited with status {result.returncode}: {detail[:500]}",
                )
        except (StoreError, ToolEnvironmentError, _StepFailed) as e:
            reason = e.reason if isinstance(e, _StepFailed) else str(e)
            logger.critical(
                f"Rollback of transaction {txn.id} FAILED: {reason}. "
                f"Host network state is unknown and needs manual intervention. "
                f"Last good version: {txn.version.id}. Original failure: {txn.root_cause}"
            )
            txn.error = f"Rollback failed: {reason}"
            txn.transition(TransactionState.FAILED)
            return self._finish(txn, TransactionOutcome.FAILED, options, requires_manual_intervention=True)

        txn.transition(TransactionState.ROLLED_BACK)
        logger.warning(f"Transaction {txn.id} rolled back to version {txn.version.id}")
        return self._finish(txn, TransactionOutcome.ROLLED_BACK, options)

    def _finish(
        self,
        txn: Transaction,
        outcome: TransactionOutcome,
        options: ApplyOptions,
        requires_manual_intervention: bool = False,
    ) -> TransactionResult:
        failed = outcome in (TransactionOutcome.ROLLED_BACK, TransactionOutcome.FAILED)
        before = txn.before.to_dict() if failed and txn.before is not None else None
        attempted = txn.candidate.to_dict() if failed else None

        result = TransactionResult(
            transaction_id=txn.id,
            outcome=outcome,
            state=txn.state,
            states=list(txn.states),
            findings=list(txn.findings),
            changes=list(txn.changes),
            version_id=txn.version.id if txn.version else None,
            error=txn.error,
            root_cause=txn.root_cause,
            requires_manual_intervention=requires_manual_intervention,
            before_state=before,
            attempted_state=attempted,
            duration_ms=(time.perf_counter() - txn.started) * 1000,
        )
        self.audit.log_transaction(
            result,
            operation=txn.operation,
            user=options.user,
            context=options.context,
            before_state=before,
            after_state=attempted,
        )
        return result

    async def _publish(self, result: TransactionResult) -> None:
        if self.publisher is None:
            return
        try:
            published = self.publisher(result)
            if inspect.isawaitable(published):
                await published
        except Exception as e:
            # The host is already committed; a lost notification is not a failure
            logger.warning(f"Failed to publish change-set for {result.transaction_id}: {e}")

    # === Helpers ===

    def _lock_timeout(self, options: ApplyOptions) -> Optional[float]:
        if not options.wait_for_lock:
            return 0
        if options.lock_timeout is not None:
            return options.lock_timeout
        return self.settings.lock_timeout

    def _live_model(self, options: ApplyOptions) -> NetworkConfiguration:
        if options.live_config is not None:
            return copy.deepcopy(options.live_config)
        return self.store.load_canonical() or NetworkConfiguration()

    async def _live_interfaces(self, supplied: Optional[set[str]]) -> set[str]:
        if supplied is not None:
            return set(supplied)
        try:
            live = await self.tool.live_state(timeout=self.settings.dry_run_timeout)
        except ToolEnvironmentError as e:
            logger.warning(f"Cannot read live interfaces, dependency checks use the configuration only: {e}")
            return set()
        return set(live)

    def _resolve_target(self, version: str) -> str:
        if version == CURRENT:
            return self.store.get_current() or self.store.resolve(LATEST)
        return self.store.resolve(version)
