"""
Deployment lifecycle: created -> pending -> succeeded | failed
"""

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Optional, Union

from loguru import logger

from .errors import EXECUTION_FAILED, InvalidPayload
from .lifecycle import (
    ActivityEvent,
    LifecycleDefinition,
    Transition,
    new_tx_hash,
    validate_public_key,
)
from .models import (
    DeploymentPayload,
    DeploymentResult,
    Operation,
    OperationKind,
    OperationState,
    Stage,
)


MAX_CONTRACT_NAME_LENGTH = 100


@dataclass
class DeploymentRequest:
    owner_key: str
    code: Union[bytes, str]  # raw wasm bytes or base64 text
    name: str


def decode_code(code: Union[bytes, str]) -> bytes:
    """Contract code as bytes; strings are treated as base64"""
    if isinstance(code, (bytes, bytearray)):
        data = bytes(code)
    elif isinstance(code, str):
        try:
            data = base64.b64decode(code.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise InvalidPayload('code', "must be bytes or valid base64")
    else:
        raise InvalidPayload('code', "must be bytes or valid base64")

    if not data:
        raise InvalidPayload('code', "contract code is empty")
    return data


class DeploymentLifecycle(LifecycleDefinition):
    kind = OperationKind.DEPLOYMENT
    label = "Deployment"
    first_stage = Stage.PENDING
    success_stage = Stage.SUCCEEDED
    graph = {
        Stage.CREATED: frozenset({Stage.PENDING, Stage.FAILED}),
        Stage.PENDING: frozenset({Stage.PENDING, Stage.SUCCEEDED, Stage.FAILED}),
    }
    polled_stages = frozenset({Stage.PENDING})

    async def prepare(self, request: DeploymentRequest) -> DeploymentPayload:
        validate_public_key('owner_key', request.owner_key)

        name = (request.name or "").strip()
        if not name:
            raise InvalidPayload('name', "contract name is required")
        if len(name) > MAX_CONTRACT_NAME_LENGTH:
            raise InvalidPayload('name', f"must be at most {MAX_CONTRACT_NAME_LENGTH} characters")

        code = decode_code(request.code)
        cost = self.economics.estimate_deploy_cost(len(code))

        await self.require_balance(request.owner_key, cost)

        logger.info(f"Deployment of {name} priced at {cost:,} motes ({len(code):,} bytes)")
        return DeploymentPayload(
            contract_name=name,
            code_size_bytes=len(code),
            code_hash=hashlib.sha256(code).hexdigest(),
            deploy_hash=new_tx_hash(),
            estimated_cost_motes=cost,
        )

    def initiated_event(self, operation: Operation) -> ActivityEvent:
        payload: DeploymentPayload = operation.payload
        return ActivityEvent(
            kind="deployment_initiated",
            description=f"Deploying {payload.contract_name} to {self.config.chain_name}",
            status="pending",
            metadata={'deploy_hash': payload.deploy_hash,
                      'estimated_cost_motes': str(payload.estimated_cost_motes)},
        )

    def failure_event(self, operation: Operation, error: str) -> ActivityEvent:
        return ActivityEvent(
            kind="deployment_failed",
            description=f"Contract deployment failed: {error}",
            status="failed",
            metadata={'deploy_hash': operation.payload.deploy_hash, 'error': error},
        )

    async def step(self, operation: Operation) -> Optional[Transition]:
        payload: DeploymentPayload = operation.payload
        status = await self.client.get_operation_status(payload.deploy_hash)

        if status.state == OperationState.PENDING:
            return None

        if status.state == OperationState.FAILED:
            error = f"{EXECUTION_FAILED}: {status.reason}"
            return Transition(stage=Stage.FAILED, error=error,
                              event=self.failure_event(operation, error))

        explorer_link = self.config.explorer_deploy_url(payload.deploy_hash)
        logger.info(f"✓ Contract {payload.contract_name} deployed: {explorer_link}")
        return Transition(
            stage=Stage.SUCCEEDED,
            result=DeploymentResult(
                block_ref=status.block_ref,
                gas_used_motes=status.cost_motes,
                explorer_link=explorer_link,
            ),
            event=ActivityEvent(
                kind="contract_deployed",
                description=f"Successfully deployed {payload.contract_name} to {self.config.chain_name}",
                status="success",
                metadata={'deploy_hash': payload.deploy_hash, 'block_ref': status.block_ref,
                          'gas_used_motes': status.cost_motes},
            ),
        )
