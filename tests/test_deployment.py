"""Tests for the deployment lifecycle."""

import base64

import pytest

from casper_ops.deployment import DeploymentRequest, decode_code
from casper_ops.errors import InsufficientBalance, InvalidPayload
from casper_ops.models import OperationKind, Stage

from conftest import OWNER


CODE = b"\x00" * 50_000


async def deploy(orchestrator, code=CODE, name="Token", owner_key=OWNER):
    return await orchestrator.start(OperationKind.DEPLOYMENT,
                                    DeploymentRequest(owner_key=owner_key, code=code, name=name))


# --- code decoding ---

def test_decode_code_accepts_base64():
    assert decode_code(base64.b64encode(b"wasm").decode()) == b"wasm"


@pytest.mark.parametrize("code", [b"", "", "!!not-base64!!", 12345])
def test_decode_code_rejects_bad_input(code):
    with pytest.raises(InvalidPayload) as exc_info:
        decode_code(code)
    assert exc_info.value.field == 'code'


# --- start ---

@pytest.mark.asyncio
async def test_deployment_priced_from_code_size(orchestrator, chain):
    op = await deploy(orchestrator)
    assert op.payload.code_size_bytes == 50_000
    assert op.payload.estimated_cost_motes == 2_550_000_000
    assert len(op.payload.deploy_hash) == 64
    assert chain.balance_calls == [OWNER]


@pytest.mark.asyncio
async def test_balance_must_cover_estimated_cost(orchestrator, chain):
    chain.balance_motes = 2_549_999_999
    with pytest.raises(InsufficientBalance) as exc_info:
        await deploy(orchestrator)
    assert exc_info.value.required_motes == 2_550_000_000


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides,field", [
    ({'owner_key': "03" + "ab" * 32}, 'owner_key'),
    ({'owner_key': "01" + "ab" * 31}, 'owner_key'),
    ({'name': "   "}, 'name'),
    ({'name': "x" * 101}, 'name'),
    ({'code': b""}, 'code'),
])
async def test_invalid_deployment_requests(orchestrator, ledger, overrides, field):
    with pytest.raises(InvalidPayload) as exc_info:
        await deploy(orchestrator, **overrides)
    assert exc_info.value.field == field
    assert ledger.list_all() == []


@pytest.mark.asyncio
async def test_secp256k1_owner_accepted(orchestrator):
    op = await deploy(orchestrator, owner_key="02" + "CD" * 33)
    assert op.owner_key == "02" + "cd" * 33


# --- polling ---

@pytest.mark.asyncio
async def test_successful_deployment_sets_result(orchestrator, chain, activity, config):
    op = await deploy(orchestrator)
    chain.answer = "succeeded"
    done = await orchestrator.poll(op.id)

    assert done.stage == Stage.SUCCEEDED
    assert done.error is None
    assert done.result.block_ref == "block-1"
    assert done.result.gas_used_motes == 2_400_000_000
    assert done.result.explorer_link == config.explorer_deploy_url(op.payload.deploy_hash)
    assert activity.kinds() == ["deployment_initiated", "contract_deployed"]
    assert chain.status_calls == [op.payload.deploy_hash]


@pytest.mark.asyncio
async def test_failed_deployment_records_reason(orchestrator, chain, activity):
    op = await deploy(orchestrator)
    chain.answer = "failed"
    done = await orchestrator.poll(op.id)

    assert done.stage == Stage.FAILED
    assert done.result is None
    assert "Out of gas" in done.error
    assert activity.items[-1].kind == "deployment_failed"
    assert activity.items[-1].status == "failed"
