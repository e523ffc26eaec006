"""Tests for the generic lifecycle engine: polling bound, failures, cancel, scheduling."""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from casper_ops.config import OrchestratorConfig
from casper_ops.deployment import DeploymentRequest
from casper_ops.errors import (
    AllEndpointsUnavailable,
    InsufficientBalance,
    InvalidPayload,
    PreconditionFailed,
    RemoteError,
    UnknownOperation,
)
from casper_ops.lifecycle import LifecycleOrchestrator
from casper_ops.models import OperationKind, Stage, utcnow

from conftest import OWNER, BrokenRecorder


CODE = b"\x00asm" + b"\x01" * 996


def deployment_request(**overrides):
    fields = {'owner_key': OWNER, 'code': CODE, 'name': "Token"}
    fields.update(overrides)
    return DeploymentRequest(**fields)


async def start_deployment(orchestrator, **overrides):
    return await orchestrator.start(OperationKind.DEPLOYMENT, deployment_request(**overrides))


@pytest_asyncio.fixture
async def fast_orchestrator(fast_config, chain, sepolia, ledger, activity):
    orch = LifecycleOrchestrator(fast_config, chain, ledger, activity=activity,
                                 chain_clients={'sepolia': sepolia})
    yield orch
    await orch.shutdown()


# --- start ---

@pytest.mark.asyncio
async def test_start_persists_first_pending_stage(orchestrator, ledger, activity):
    op = await start_deployment(orchestrator)
    assert op.stage == Stage.PENDING
    assert op.attempts == 0
    assert op.terminal_at is None
    assert ledger.get(op.id).stage == Stage.PENDING
    assert activity.kinds() == ["deployment_initiated"]


@pytest.mark.asyncio
async def test_rejected_request_leaves_no_ledger_entry(orchestrator, chain, ledger, activity):
    chain.balance_motes = 0
    with pytest.raises(InsufficientBalance):
        await start_deployment(orchestrator)
    with pytest.raises(InvalidPayload):
        await start_deployment(orchestrator, name="")
    assert ledger.list_all() == []
    assert activity.items == []


@pytest.mark.asyncio
async def test_degraded_balance_cannot_satisfy_precondition(orchestrator, chain, ledger):
    chain.balance_degraded = True
    with pytest.raises(PreconditionFailed):
        await start_deployment(orchestrator)
    assert ledger.list_all() == []


@pytest.mark.asyncio
async def test_degraded_balance_accepted_in_sandbox(chain, ledger):
    chain.balance_degraded = True
    config = OrchestratorConfig(poll_interval_ms=60_000, jitter_ratio=0.0, sandbox=True)
    orch = LifecycleOrchestrator(config, chain, ledger)
    try:
        op = await start_deployment(orch)
        assert op.stage == Stage.PENDING
    finally:
        await orch.shutdown()


@pytest.mark.asyncio
async def test_unknown_kind_rejected(orchestrator):
    with pytest.raises(InvalidPayload):
        await orchestrator.start("swap", deployment_request())


# --- poll bound ---

@pytest.mark.asyncio
async def test_always_pending_times_out_after_exactly_max_attempts(orchestrator, chain, activity):
    op = await start_deployment(orchestrator)

    for expected in range(1, 5):
        polled = await orchestrator.poll(op.id)
        assert polled.stage == Stage.PENDING
        assert polled.attempts == expected

    final = await orchestrator.poll(op.id)
    assert final.stage == Stage.FAILED
    assert final.attempts == 5
    assert final.error.startswith("PollingTimeout")
    assert final.result is None
    assert final.terminal_at is not None
    assert len(chain.status_calls) == 5
    assert activity.kinds()[-1] == "deployment_failed"


@pytest.mark.asyncio
async def test_poll_on_terminal_operation_is_noop(orchestrator, chain):
    chain.answer = "succeeded"
    op = await start_deployment(orchestrator)
    done = await orchestrator.poll(op.id)
    assert done.stage == Stage.SUCCEEDED

    again = await orchestrator.poll(op.id)
    assert again.stage == Stage.SUCCEEDED
    assert again.attempts == done.attempts
    assert again.terminal_at == done.terminal_at
    assert len(chain.status_calls) == 1


@pytest.mark.asyncio
async def test_connectivity_failures_count_toward_bound(orchestrator, chain):
    chain.answer = AllEndpointsUnavailable("info_get_deploy", ["primary: ClientConnectionError"])
    op = await start_deployment(orchestrator)
    for _ in range(5):
        op = await orchestrator.poll(op.id)
    assert op.stage == Stage.FAILED
    assert op.error.startswith("PollingTimeout")
    assert "All RPC endpoints failed" in op.error


@pytest.mark.asyncio
async def test_connectivity_failure_then_success(orchestrator, chain):
    chain.answer = AllEndpointsUnavailable("info_get_deploy", [])
    op = await start_deployment(orchestrator)
    op = await orchestrator.poll(op.id)
    assert op.stage == Stage.PENDING and op.attempts == 1

    chain.answer = "succeeded"
    op = await orchestrator.poll(op.id)
    assert op.stage == Stage.SUCCEEDED
    assert op.attempts == 2


@pytest.mark.asyncio
async def test_remote_error_fails_immediately(orchestrator, chain):
    chain.answer = RemoteError(-32602, "invalid deploy hash")
    op = await start_deployment(orchestrator)
    op = await orchestrator.poll(op.id)
    assert op.stage == Stage.FAILED
    assert op.attempts == 1
    assert op.error.startswith("RemoteError")


@pytest.mark.asyncio
async def test_remote_failure_distinct_from_timeout(orchestrator, chain):
    chain.answer = "failed"
    op = await start_deployment(orchestrator)
    op = await orchestrator.poll(op.id)
    assert op.stage == Stage.FAILED
    assert op.error == "ExecutionFailed: Out of gas"
    assert not op.error.startswith("PollingTimeout")


@pytest.mark.asyncio
async def test_unexpected_error_fails_operation(orchestrator, chain):
    chain.answer = ValueError("garbled execution result")
    op = await start_deployment(orchestrator)
    op = await orchestrator.poll(op.id)
    assert op.stage == Stage.FAILED
    assert op.error.startswith("InternalError")


@pytest.mark.asyncio
async def test_wall_clock_bound_forces_timeout(chain, ledger):
    config = OrchestratorConfig(poll_interval_ms=60_000, jitter_ratio=0.0,
                                max_attempts=100, max_poll_seconds=30)
    orch = LifecycleOrchestrator(config, chain, ledger)
    try:
        op = await start_deployment(orch)
        ledger.update(op.id, {'stage_entered_at': utcnow() - timedelta(seconds=31)})
        op = await orch.poll(op.id)
        assert op.stage == Stage.FAILED
        assert op.attempts == 1
        assert op.error.startswith("PollingTimeout")
    finally:
        await orch.shutdown()


@pytest.mark.asyncio
async def test_poll_unknown_handle(orchestrator):
    with pytest.raises(UnknownOperation):
        await orchestrator.poll("missing")
    with pytest.raises(UnknownOperation):
        orchestrator.get_status("missing")
    with pytest.raises(UnknownOperation):
        await orchestrator.cancel("missing")
    assert "missing" not in orchestrator._locks


@pytest.mark.asyncio
async def test_locks_released_once_terminal(orchestrator, chain):
    pending = await start_deployment(orchestrator)
    await orchestrator.poll(pending.id)
    assert pending.id in orchestrator._locks

    chain.answer = "succeeded"
    done = await start_deployment(orchestrator)
    assert (await orchestrator.poll(done.id)).stage == Stage.SUCCEEDED
    assert done.id not in orchestrator._locks

    await orchestrator.cancel(pending.id)
    assert pending.id not in orchestrator._locks

    # a terminal operation can still be polled and cancelled
    assert (await orchestrator.poll(done.id)).stage == Stage.SUCCEEDED
    assert (await orchestrator.cancel(done.id)).stage == Stage.SUCCEEDED
    assert orchestrator._locks == {}


@pytest.mark.asyncio
async def test_concurrent_polls_are_serialised(orchestrator, chain):
    chain.answer = "succeeded"
    op = await start_deployment(orchestrator)
    first, second = await asyncio.gather(orchestrator.poll(op.id), orchestrator.poll(op.id))
    assert first.stage == second.stage == Stage.SUCCEEDED
    assert len(chain.status_calls) == 1
    assert orchestrator.get_status(op.id).attempts == 1


@pytest.mark.asyncio
async def test_activity_failure_does_not_break_lifecycle(config, chain, ledger):
    chain.answer = "succeeded"
    orch = LifecycleOrchestrator(config, chain, ledger, activity=BrokenRecorder())
    try:
        op = await start_deployment(orch)
        op = await orch.poll(op.id)
        assert op.stage == Stage.SUCCEEDED
    finally:
        await orch.shutdown()


# --- cancel / subscribe ---

@pytest.mark.asyncio
async def test_cancel_moves_to_failed_and_stops_polling(orchestrator, chain):
    op = await start_deployment(orchestrator)
    cancelled = await orchestrator.cancel(op.id, "user abort")
    assert cancelled.stage == Stage.FAILED
    assert cancelled.error == "Cancelled: user abort"
    assert op.id not in orchestrator._tasks

    again = await orchestrator.cancel(op.id)
    assert again.error == "Cancelled: user abort"

    polled = await orchestrator.poll(op.id)
    assert polled.attempts == 0
    assert chain.status_calls == []


@pytest.mark.asyncio
async def test_subscribe_receives_transitions(orchestrator, chain):
    queue = orchestrator.subscribe()
    chain.answer = "succeeded"
    op = await start_deployment(orchestrator)
    await orchestrator.poll(op.id)

    stages = [queue.get_nowait().stage for _ in range(queue.qsize())]
    assert stages == [Stage.PENDING, Stage.SUCCEEDED]

    orchestrator.unsubscribe(queue)
    await orchestrator.cancel((await start_deployment(orchestrator)).id)
    assert queue.empty()


# --- scheduling ---

def test_backoff_delay_grows_and_caps(chain, ledger):
    config = OrchestratorConfig(poll_interval_ms=100, backoff_multiplier=2.0,
                                max_poll_interval_ms=1000, jitter_ratio=0.0)
    orch = LifecycleOrchestrator(config, chain, ledger)
    assert [orch._next_delay(n) for n in range(6)] == pytest.approx([0.1, 0.2, 0.4, 0.8, 1.0, 1.0])


def test_fixed_interval_without_backoff(chain, ledger):
    config = OrchestratorConfig(poll_interval_ms=5000, jitter_ratio=0.0)
    orch = LifecycleOrchestrator(config, chain, ledger)
    assert {orch._next_delay(n) for n in range(10)} == {5.0}


def test_jitter_stays_within_ratio(chain, ledger):
    config = OrchestratorConfig(poll_interval_ms=1000, jitter_ratio=0.2)
    orch = LifecycleOrchestrator(config, chain, ledger)
    for _ in range(50):
        assert 0.8 <= orch._next_delay(0) <= 1.2


@pytest.mark.asyncio
async def test_background_polling_reaches_success(fast_orchestrator, chain):
    chain.answer = "succeeded"
    op = await start_deployment(fast_orchestrator)
    await asyncio.wait_for(fast_orchestrator.wait_idle(op.id), timeout=5)
    assert fast_orchestrator.get_status(op.id).stage == Stage.SUCCEEDED


@pytest.mark.asyncio
async def test_background_polling_times_out(fast_orchestrator, chain):
    op = await start_deployment(fast_orchestrator)
    await asyncio.wait_for(fast_orchestrator.wait_idle(op.id), timeout=5)
    final = fast_orchestrator.get_status(op.id)
    assert final.stage == Stage.FAILED
    assert final.attempts == 5
    assert final.error.startswith("PollingTimeout")


@pytest.mark.asyncio
async def test_shutdown_leaves_stages_untouched(orchestrator):
    op = await start_deployment(orchestrator)
    await orchestrator.shutdown()
    assert orchestrator._tasks == {}
    assert orchestrator.get_status(op.id).stage == Stage.PENDING


@pytest.mark.asyncio
async def test_resume_picks_up_unfinished_operations(config, fast_config, chain, ledger):
    first = LifecycleOrchestrator(config, chain, ledger)
    op = await start_deployment(first)
    await first.shutdown()

    chain.answer = "succeeded"
    second = LifecycleOrchestrator(fast_config, chain, ledger)
    try:
        assert second.resume() == 1
        await asyncio.wait_for(second.wait_idle(op.id), timeout=5)
        assert second.get_status(op.id).stage == Stage.SUCCEEDED
    finally:
        await second.shutdown()
