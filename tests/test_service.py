"""Tests for the OperationService facade."""

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from casper_ops.config import OrchestratorConfig
from casper_ops.errors import LockNotElapsed, UnknownOperation
from casper_ops.ledger import SQLiteOperationLedger
from casper_ops.lifecycle import LifecycleOrchestrator
from casper_ops.models import OperationKind, Stage, utcnow
from casper_ops.service import OperationService

from conftest import EVM_ADDRESS, OWNER, VALIDATOR_KEY


@pytest.fixture
def service(orchestrator):
    return OperationService(orchestrator)


# --- deployment ---

@pytest.mark.asyncio
async def test_start_deployment_returns_quote(service, config):
    response = await service.start_deployment(OWNER, b"\x00" * 50_000, "Token")
    assert response['estimated_cost'] == 2_550_000_000
    assert response['estimated_cost_cspr'] == Decimal("2.55")
    assert response['tracking_url'].startswith(config.explorer_url + "/deploy/")

    status = service.get_deployment_status(response['handle'])
    assert status.stage == Stage.PENDING


@pytest.mark.asyncio
async def test_deployment_status_rejects_other_kinds(service):
    response = await service.start_stake(OWNER, VALIDATOR_KEY, "100", 30)
    with pytest.raises(UnknownOperation):
        service.get_deployment_status(response['handle'])


def test_estimate_deployment(service):
    estimate = service.estimate_deployment(b"\x00" * 1_000)
    assert estimate == {
        'size_bytes': 1_000,
        'estimated_cost': 2_501_000_000,
        'estimated_cost_cspr': Decimal("2.501"),
    }


# --- staking ---

@pytest.mark.asyncio
async def test_start_stake_returns_projection(service):
    response = await service.start_stake(OWNER, VALIDATOR_KEY, "1000", 30)
    apy = response['apy']
    assert 5.0 <= apy <= 15.0
    assert float(response['estimated_annual_reward']) == pytest.approx(1000 * apy / 100)
    assert float(response['estimated_daily_reward']) == pytest.approx(1000 * apy / 100 / 365, abs=1e-8)
    assert response['end_date'] - utcnow() > timedelta(days=29)


@pytest.mark.asyncio
async def test_withdraw_stake(service, chain, ledger):
    response = await service.start_stake(OWNER, VALIDATOR_KEY, "1000", 30)
    handle = response['handle']

    with pytest.raises(LockNotElapsed):
        await service.withdraw_stake(handle, OWNER)

    chain.answer = "succeeded"
    await service.orchestrator.poll(handle)
    op = ledger.get(handle)
    past = utcnow() - timedelta(days=31)
    ledger.update(handle, {'payload': replace(op.payload, start_date=past,
                                              end_date=past + timedelta(days=30))})

    assert await service.withdraw_stake(handle, OWNER) == {'accepted': True, 'stage': 'unstaking'}


@pytest.mark.asyncio
async def test_list_validators_fills_apy(service):
    validators = await service.list_validators()
    assert all(5.0 <= v.apy <= 15.0 for v in validators)


@pytest.mark.asyncio
async def test_network_staking_stats_counts_active_validators(service):
    stats = await service.network_staking_stats()
    assert stats['total_validators'] == 1
    assert stats['total_staked'] == pytest.approx(50_000)
    assert stats['synthetic'] is False


@pytest.mark.asyncio
async def test_staking_summary(service, chain):
    first = await service.start_stake(OWNER, VALIDATOR_KEY, "1000", 30)
    await service.start_stake(OWNER, VALIDATOR_KEY, "500", 30)
    chain.overrides[service.get_status(first['handle']).payload.delegate_hash] = "succeeded"
    await service.orchestrator.poll(first['handle'])

    summary = service.staking_summary(OWNER)
    assert summary['total_staked'] == pytest.approx(1000)
    assert summary['active_positions'] == 1
    assert summary['pending_positions'] == 1


# --- bridge ---

@pytest.mark.asyncio
async def test_start_bridge_returns_fee(service):
    response = await service.start_bridge(OWNER, 'casper-test', 'sepolia', "100", EVM_ADDRESS)
    assert response['fee'] == Decimal("0.5")
    assert response['net_amount'] == Decimal("99.5")
    assert service.bridge_stats()['pending_transfers'] == 1
    assert service.bridge_stats(OWNER)['total_transfers'] == 1


def test_estimate_bridge_fee(service):
    quote = service.estimate_bridge_fee("100", 'sepolia')
    assert Decimal(quote['fee']) == Decimal("0.75")
    assert Decimal(quote['net_amount']) == Decimal("99.25")
    assert Decimal(quote['total_cost']) == Decimal("100.75")


def test_supported_chains(service):
    chains = service.supported_chains()
    assert [c['id'] for c in chains] == ['casper-test', 'sepolia']
    assert chains[0]['native'] is True


# --- generic ---

@pytest.mark.asyncio
async def test_list_and_cancel(service):
    response = await service.start_deployment(OWNER, b"wasm", "Token")
    await service.start_stake(OWNER, VALIDATOR_KEY, "100", 30)

    assert len(service.list_operations(OWNER)) == 2
    assert len(service.list_operations(OWNER, OperationKind.DEPLOYMENT)) == 1

    cancelled = await service.cancel(response['handle'])
    assert cancelled.stage == Stage.FAILED
    assert service.get_status(response['handle']).error.startswith("Cancelled")


@pytest.mark.asyncio
async def test_create_wires_sqlite_storage(tmp_path):
    config = OrchestratorConfig(ledger_path=str(tmp_path / "ops.db"))
    async with OperationService.create(config) as service:
        assert isinstance(service.ledger, SQLiteOperationLedger)
        assert service.list_operations(OWNER) == []


@pytest.mark.asyncio
async def test_entering_service_resumes_unfinished_operations(config, fast_config, chain, ledger):
    first = OperationService(LifecycleOrchestrator(config, chain, ledger))
    response = await first.start_deployment(OWNER, b"wasm", "Token")
    await first.orchestrator.shutdown()

    chain.answer = "succeeded"
    async with OperationService(LifecycleOrchestrator(fast_config, chain, ledger)) as service:
        await asyncio.wait_for(service.orchestrator.wait_idle(response['handle']), timeout=5)
        assert service.get_status(response['handle']).stage == Stage.SUCCEEDED
