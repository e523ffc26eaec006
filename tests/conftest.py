"""Shared fixtures: a scriptable fake chain client and in-memory collaborators."""

import pytest
import pytest_asyncio

from casper_ops.activity import InMemoryActivityRecorder
from casper_ops.chain_client import account_hash
from casper_ops.config import OrchestratorConfig
from casper_ops.economics import EconomicsCalculator
from casper_ops.ledger import InMemoryOperationLedger
from casper_ops.lifecycle import LifecycleOrchestrator
from casper_ops.models import BalanceResult, OperationStatus, Validator, ValidatorSet


OWNER = "01" + "ab" * 32
OTHER_OWNER = "02" + "cd" * 33
VALIDATOR_KEY = "01" + "11" * 32
INACTIVE_VALIDATOR_KEY = "01" + "22" * 32
EVM_ADDRESS = "0x" + "ab" * 20


class FakeChainClient:
    """Stands in for ChainClient; answers are set per test."""

    def __init__(self):
        self.balance_motes = 1_000_000 * 1_000_000_000
        self.balance_degraded = False
        self.validators = [
            Validator(public_key=VALIDATOR_KEY, total_stake_motes=50_000_000_000_000,
                      commission_percent=10, is_active=True, delegators_count=3),
            Validator(public_key=INACTIVE_VALIDATOR_KEY, total_stake_motes=1_000_000_000_000,
                      commission_percent=5, is_active=False),
        ]
        self.validators_synthetic = False
        self.answer = "pending"  # 'pending' | 'succeeded' | 'failed' | Exception instance
        self.overrides = {}
        self.status_calls = []
        self.balance_calls = []

    async def get_balance(self, public_key_hex):
        self.balance_calls.append(public_key_hex)
        if self.balance_degraded:
            return BalanceResult(public_key_hex, account_hash(public_key_hex), 0,
                                 degraded=True, reason="all endpoints down")
        return BalanceResult(public_key_hex, account_hash(public_key_hex), self.balance_motes)

    async def get_validators(self):
        return ValidatorSet(
            [Validator(**vars(v)) for v in self.validators],
            synthetic=self.validators_synthetic,
            reason="auction unavailable" if self.validators_synthetic else None,
        )

    async def get_operation_status(self, handle):
        self.status_calls.append(handle)
        answer = self.overrides.get(handle, self.answer)
        if isinstance(answer, Exception):
            raise answer
        if answer == "succeeded":
            return OperationStatus.succeeded(handle, cost_motes=2_400_000_000, block_ref="block-1")
        if answer == "failed":
            return OperationStatus.failed(handle, "Out of gas", block_ref="block-1")
        return OperationStatus.pending(handle)

    async def close(self):
        pass


class BrokenRecorder(InMemoryActivityRecorder):
    def record(self, kind, description, status, metadata=None):
        raise RuntimeError("activity store offline")


@pytest.fixture
def config():
    # Long interval: background polls never fire, tests drive poll() directly
    return OrchestratorConfig(
        poll_interval_ms=60_000,
        max_attempts=5,
        jitter_ratio=0.0,
        max_poll_seconds=None,
    )


@pytest.fixture
def fast_config():
    return OrchestratorConfig(
        poll_interval_ms=1,
        max_poll_interval_ms=5,
        max_attempts=5,
        jitter_ratio=0.0,
        max_poll_seconds=None,
    )


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def sepolia():
    return FakeChainClient()


@pytest.fixture
def ledger():
    return InMemoryOperationLedger()


@pytest.fixture
def activity():
    return InMemoryActivityRecorder()


@pytest.fixture
def economics(config):
    return EconomicsCalculator(config)


@pytest_asyncio.fixture
async def orchestrator(config, chain, sepolia, ledger, activity):
    orch = LifecycleOrchestrator(
        config, chain, ledger,
        activity=activity,
        chain_clients={'sepolia': sepolia},
    )
    yield orch
    await orch.shutdown()
