"""Tests for the transactional apply engine."""
import asyncio
from dataclasses import replace

import pytest

from netwarden.config import Bridge, Interface, NetworkConfiguration
from netwarden.config_engine import (
    ApplyEngine,
    ApplyOptions,
    ChangeType,
    InterfacesRenderer,
    InvalidTransitionError,
    ToolEnvironmentError,
    ToolTimeoutError,
    Transaction,
    TransactionOutcome,
    TransactionState,
)
from netwarden.config_store import LATEST, StoreError, VersionNotFoundError

from conftest import failed, up

S = TransactionState


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestTransaction:
    """Tests for the state machine."""

    def test_legal_transitions(self, prior_config):
        txn = Transaction.begin("apply", prior_config)
        txn.transition(S.VALIDATING)
        txn.transition(S.VALIDATED)

        assert txn.states == [S.PENDING, S.VALIDATING, S.VALIDATED]

    def test_illegal_transition_raises(self, prior_config):
        txn = Transaction.begin("apply", prior_config)
        with pytest.raises(InvalidTransitionError):
            txn.transition(S.COMMITTED)

    def test_terminal_state_is_final(self, prior_config):
        txn = Transaction.begin("apply", prior_config)
        txn.transition(S.FAILED)
        with pytest.raises(InvalidTransitionError):
            txn.transition(S.VALIDATING)

    def test_candidate_is_copied(self, prior_config):
        txn = Transaction.begin("apply", prior_config)
        prior_config.interfaces.append(Interface("eth9"))

        assert "eth9" not in txn.candidate


class TestApply:
    """End-to-end apply scenarios."""

    @pytest.mark.asyncio
    async def test_bridge_committed(self, engine, tool, settings, prior_config, vmbr0_config):
        """Adding vmbr0 over eth0 commits with one Create change."""
        original = settings.interfaces_path.read_bytes()
        tool.bring_up(vmbr0_config)

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.COMMITTED
        assert result.success
        assert result.states == [
            S.PENDING, S.VALIDATING, S.SNAPSHOTTING, S.WRITING, S.APPLYING, S.VERIFYING, S.COMMITTED,
        ]
        assert [(c.change_type, c.target) for c in result.changes] == [(ChangeType.CREATE, "vmbr0")]

        assert settings.interfaces_path.read_text() == InterfacesRenderer().render(vmbr0_config)
        version = engine.store.load(result.version_id)
        assert version.file_bytes(settings.interfaces_path) == original
        assert version.configuration == prior_config
        assert engine.store.get_current() == result.version_id
        assert engine.store.load_canonical() == vmbr0_config
        assert tool.calls.count("apply") == 1

    @pytest.mark.asyncio
    async def test_result_dict_shape(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))
        data = result.to_dict()

        assert data["outcome"] == "committed"
        assert data["state"] == "committed"
        assert data["changes"][0]["change_type"] == "create"
        assert data["before_state"] is None
        assert data["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_canonical_model_used_as_live_model(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        engine.store.save_canonical(prior_config)

        result = await engine.apply(vmbr0_config)

        assert [c.target for c in result.changes] == ["vmbr0"]

    @pytest.mark.asyncio
    async def test_second_apply_of_same_config_has_no_changes(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        result = await engine.apply(vmbr0_config)

        assert result.outcome == TransactionOutcome.COMMITTED
        assert result.changes == []

    @pytest.mark.asyncio
    async def test_publisher_receives_committed_result(self, settings, tool, prior_config, vmbr0_config):
        published = []

        async def publish(result):
            published.append(result)

        engine = ApplyEngine(settings, tool=tool, publisher=publish)
        tool.bring_up(vmbr0_config)
        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert published == [result]

    @pytest.mark.asyncio
    async def test_failing_publisher_does_not_change_outcome(self, settings, tool, prior_config, vmbr0_config):
        def publish(result):
            raise RuntimeError("bus down")

        engine = ApplyEngine(settings, tool=tool, publisher=publish)
        tool.bring_up(vmbr0_config)
        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.COMMITTED


class TestValidationPhase:
    """Transactions that end before anything is touched."""

    @pytest.mark.asyncio
    async def test_dry_run_reports_changes_without_mutation(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()

        result = await engine.apply(vmbr0_config, ApplyOptions(dry_run=True, live_config=prior_config))

        assert result.outcome == TransactionOutcome.DRY_RUN
        assert result.state == S.VALIDATED
        assert [c.target for c in result.changes] == ["vmbr0"]
        assert "apply" not in tool.calls
        assert settings.interfaces_path.read_bytes() == original
        assert engine.store.list() == []

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, engine, tool, settings):
        original = settings.interfaces_path.read_bytes()
        config = NetworkConfiguration(interfaces=[Interface("eth0"), Interface("eth0")])

        result = await engine.apply(config)

        assert result.outcome == TransactionOutcome.REJECTED
        assert result.state == S.FAILED
        assert [f.code for f in result.findings if f.is_error] == ["duplicate-name"]
        assert "check" not in tool.calls
        assert settings.interfaces_path.read_bytes() == original
        assert engine.store.list() == []

    @pytest.mark.asyncio
    async def test_dry_run_tool_rejection(self, engine, tool, vmbr0_config):
        tool.check_result = failed(1, "error: vmbr0: bridge port eth0 is busy")

        result = await engine.apply(vmbr0_config)

        assert result.outcome == TransactionOutcome.REJECTED
        assert result.findings[-1].stage == "dry_run"

    @pytest.mark.asyncio
    async def test_missing_tool_is_environment_error(self, engine, tool, vmbr0_config):
        tool.check_error = ToolEnvironmentError("Cannot run /sbin/ifup: No such file or directory")

        result = await engine.apply(vmbr0_config)

        assert result.outcome == TransactionOutcome.ENVIRONMENT_ERROR
        assert result.outcome != TransactionOutcome.REJECTED
        assert "apply" not in tool.calls

    @pytest.mark.asyncio
    async def test_live_state_failure_falls_back_to_config(self, engine, tool, prior_config, vmbr0_config):
        tool.live_error = ToolEnvironmentError("ip not found")

        result = await engine.validate(vmbr0_config)

        assert result.valid

    @pytest.mark.asyncio
    async def test_validate_uses_supplied_live_names(self, engine):
        config = NetworkConfiguration(
            interfaces=[Interface("vmbr0", kind=Bridge(ports=["eno1"]))],
        )
        assert (await engine.validate(config, live_interfaces={"eno1"})).valid
        assert not (await engine.validate(config, live_interfaces=set())).valid

    @pytest.mark.asyncio
    async def test_snapshot_failure_aborts(self, engine, tool, settings, vmbr0_config, monkeypatch):
        original = settings.interfaces_path.read_bytes()

        def broken_save(*args, **kwargs):
            raise StoreError("disk full")

        monkeypatch.setattr(engine.store, "save", broken_save)
        result = await engine.apply(vmbr0_config)

        assert result.outcome == TransactionOutcome.ABORTED
        assert result.state == S.FAILED
        assert "apply" not in tool.calls
        assert settings.interfaces_path.read_bytes() == original
        assert not engine.lock.locked


class TestRollback:
    """Automatic rollback on apply and verification failures."""

    @pytest.mark.asyncio
    async def test_apply_failure_restores_files_bit_for_bit(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        tool.bring_up(vmbr0_config)
        tool.apply_results = [failed(1, "error: vmbr0: cannot add port")]

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.ROLLED_BACK
        assert result.states[-3:] == [S.APPLYING, S.ROLLING_BACK, S.ROLLED_BACK]
        assert "applying" in result.root_cause
        assert settings.interfaces_path.read_bytes() == original
        assert tool.calls.count("apply") == 2
        assert engine.store.get_current() is None
        assert engine.store.load_canonical() is None
        assert result.before_state == prior_config.to_dict()
        assert result.attempted_state == vmbr0_config.to_dict()

    @pytest.mark.asyncio
    async def test_apply_timeout_triggers_rollback(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        tool.apply_results = [ToolTimeoutError("/sbin/ifreload did not finish within 120s")]

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.ROLLED_BACK
        assert "did not finish" in result.root_cause

    @pytest.mark.asyncio
    async def test_verification_failure_rolls_back(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        tool.live = {"lo": up("lo"), "eth0": up("eth0"), "vmbr0": up("vmbr0")}  # address missing

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.ROLLED_BACK
        assert S.VERIFYING in result.states
        assert "vmbr0 is missing address 192.168.1.10/24" in result.root_cause
        assert settings.interfaces_path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_verification_retries_until_converged(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        converging = dict(tool.live)
        converging["vmbr0"] = up("vmbr0")
        # validation read, then one not-yet-converged verification read
        tool.live_sequence = [dict(tool.live), converging]

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.COMMITTED
        assert tool.calls.count("live_state") == 3

    @pytest.mark.asyncio
    async def test_failed_rollback_requires_manual_intervention(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        tool.apply_results = [failed(1), failed(1, "error: lo: kernel said no")]

        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        assert result.outcome == TransactionOutcome.FAILED
        assert result.state == S.FAILED
        assert result.requires_manual_intervention
        assert result.before_state == prior_config.to_dict()
        assert result.attempted_state == vmbr0_config.to_dict()
        assert "Rollback failed" in result.error
        assert not engine.lock.locked


class TestConcurrency:
    """Host lock and cancellation behaviour."""

    @pytest.mark.asyncio
    async def test_no_wait_apply_is_busy(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        tool.apply_delay = 0.2

        first = asyncio.create_task(engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config)))
        await _wait_for(lambda: engine.lock.locked)

        second = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config, wait_for_lock=False))

        assert second.outcome == TransactionOutcome.BUSY
        assert second.version_id is None
        assert (await first).outcome == TransactionOutcome.COMMITTED
        assert len(engine.store.list()) == 1

    @pytest.mark.asyncio
    async def test_waiting_applies_run_one_after_another(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        tool.apply_delay = 0.05

        results = await asyncio.gather(
            engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config)),
            engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config)),
        )

        assert [r.outcome for r in results] == [TransactionOutcome.COMMITTED] * 2
        assert len(engine.store.list()) == 2

    @pytest.mark.asyncio
    async def test_lock_wait_timeout_is_busy(self, engine, tool, vmbr0_config):
        await engine.lock.acquire(1)
        try:
            result = await engine.apply(vmbr0_config, ApplyOptions(lock_timeout=0.05))
        finally:
            await engine.lock.release()

        assert result.outcome == TransactionOutcome.BUSY

    @pytest.mark.asyncio
    async def test_cancel_during_validation(self, engine, tool, settings, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        tool.check_delay = 5

        task = asyncio.create_task(engine.apply(vmbr0_config))
        await _wait_for(lambda: "check" in tool.calls)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.store.list() == []
        assert settings.interfaces_path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_cancel_after_snapshot_runs_to_completion(self, engine, tool, prior_config, vmbr0_config):
        tool.bring_up(vmbr0_config)
        tool.apply_delay = 0.1

        task = asyncio.create_task(engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config)))
        await _wait_for(lambda: "apply" in tool.calls)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        inflight = list(engine._inflight)
        assert inflight
        result = (await asyncio.gather(*inflight))[0]

        assert result.outcome == TransactionOutcome.COMMITTED
        assert engine.store.load_canonical() == vmbr0_config
        assert not engine.lock.locked


class TestOperatorRollback:
    """Rollback to a stored version."""

    @pytest.mark.asyncio
    async def test_rollback_current_restores_previous_file(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        tool.bring_up(vmbr0_config)
        applied = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        result = await engine.rollback()

        assert result.outcome == TransactionOutcome.COMMITTED
        assert settings.interfaces_path.read_bytes() == original
        assert engine.store.load_canonical() == prior_config
        assert [(c.change_type, c.target) for c in result.changes] == [(ChangeType.DELETE, "vmbr0")]

        # a new forward version; nothing older is removed
        ids = [vid for vid, _ in engine.store.list()]
        assert ids == [applied.version_id, result.version_id]
        assert engine.store.get_current() == result.version_id

    @pytest.mark.asyncio
    async def test_rollback_to_explicit_version(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        tool.bring_up(vmbr0_config)
        applied = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))

        result = await engine.rollback(applied.version_id)

        assert result.outcome == TransactionOutcome.COMMITTED
        assert settings.interfaces_path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_rollback_without_pointer_uses_latest(self, engine, tool, settings, prior_config, vmbr0_config):
        original = settings.interfaces_path.read_bytes()
        engine.store.save(prior_config, settings.captured_files)
        tool.bring_up(vmbr0_config)
        settings.interfaces_path.write_text("auto eth0\niface eth0 inet dhcp\n")

        result = await engine.rollback()

        assert result.outcome == TransactionOutcome.COMMITTED
        assert settings.interfaces_path.read_bytes() == original

    @pytest.mark.asyncio
    async def test_rollback_unknown_version(self, engine):
        with pytest.raises(VersionNotFoundError):
            await engine.rollback("20000101T000000000000Z")
        with pytest.raises(VersionNotFoundError):
            await engine.rollback()
        assert not engine.lock.locked


class TestStatus:
    """Tests for listing and status."""

    @pytest.mark.asyncio
    async def test_status_and_versions(self, engine, tool, prior_config, vmbr0_config):
        assert engine.status()["version_count"] == 0

        tool.bring_up(vmbr0_config)
        result = await engine.apply(vmbr0_config, ApplyOptions(live_config=prior_config))
        status = engine.status()

        assert status["current_version"] == result.version_id
        assert status["latest_version"] == result.version_id
        assert status["transaction_in_progress"] is False
        assert [r.id for r in engine.list_versions()] == [result.version_id]


class TestVersionHistory:
    """Versions written by successive applies."""

    def _grow(self, config, name):
        return NetworkConfiguration(
            interfaces=list(config.interfaces) + [Interface(name)],
            auto=list(config.auto),
        )

    @pytest.mark.asyncio
    async def test_latest_after_three_applies(self, engine, tool, prior_config, vmbr0_config):
        second = self._grow(vmbr0_config, "eth1")
        third = self._grow(second, "eth2")
        engine.store.save_canonical(prior_config)

        results = []
        for config in (vmbr0_config, second, third):
            tool.bring_up(config)
            results.append(await engine.apply(config))

        assert [r.outcome for r in results] == [TransactionOutcome.COMMITTED] * 3
        assert engine.store.resolve(LATEST) == results[2].version_id
        assert engine.store.load(LATEST).id == results[2].version_id
        assert engine.store.restore(LATEST) == second
        assert engine.store.load_canonical() == third

    @pytest.mark.asyncio
    async def test_old_versions_pruned_after_commit(self, settings, tool, prior_config, vmbr0_config):
        engine = ApplyEngine(replace(settings, max_versions=2), tool=tool)
        second = self._grow(vmbr0_config, "eth1")
        third = self._grow(second, "eth2")
        engine.store.save_canonical(prior_config)

        results = []
        for config in (vmbr0_config, second, third):
            tool.bring_up(config)
            results.append(await engine.apply(config))

        ids = [vid for vid, _ in engine.store.list()]
        assert ids == [results[1].version_id, results[2].version_id]
        assert engine.store.get_current() == results[2].version_id

    @pytest.mark.asyncio
    async def test_pruning_disabled(self, settings, tool, prior_config, vmbr0_config):
        engine = ApplyEngine(replace(settings, max_versions=None), tool=tool)
        second = self._grow(vmbr0_config, "eth1")
        engine.store.save_canonical(prior_config)

        for config in (vmbr0_config, second, vmbr0_config):
            tool.bring_up(config)
            await engine.apply(config)

        assert engine.status()["version_count"] == 3
