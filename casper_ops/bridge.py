"""
Bridge lifecycle

created -> initiated -> locked -> minting -> completed, failed from any
non-terminal stage.

initiated: waiting for the lock transaction on the source chain
locked:    lock confirmed; the mint is submitted on the next poll
minting:   waiting for the mint transaction on the destination chain

Status for each chain is read from the orchestrator's status source for
that chain (the native chain client, or an injected client per foreign
chain).
"""

import re
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Union

from loguru import logger

from .economics import cspr_to_motes
from .errors import EXECUTION_FAILED, InvalidPayload, PreconditionFailed
from .lifecycle import (
    ActivityEvent,
    LifecycleDefinition,
    Transition,
    new_tx_hash,
    validate_public_key,
)
from .models import (
    BridgePayload,
    BridgeResult,
    Operation,
    OperationKind,
    OperationState,
    Stage,
)
from .staking import parse_amount


EVM_ADDRESS_RE = re.compile(r'^0x[0-9a-fA-F]{40}$')
TOKEN_RE = re.compile(r'^[A-Z0-9]{1,12}$')


@dataclass
class BridgeRequest:
    owner_key: str
    source_chain: str
    dest_chain: str
    amount_cspr: Union[Decimal, int, float, str]
    destination_address: Optional[str] = None
    token: str = "CSPR"


class BridgeLifecycle(LifecycleDefinition):
    kind = OperationKind.BRIDGE
    label = "Bridge"
    first_stage = Stage.INITIATED
    success_stage = Stage.COMPLETED
    graph = {
        Stage.CREATED: frozenset({Stage.INITIATED, Stage.FAILED}),
        Stage.INITIATED: frozenset({Stage.INITIATED, Stage.LOCKED, Stage.FAILED}),
        Stage.LOCKED: frozenset({Stage.MINTING, Stage.FAILED}),
        Stage.MINTING: frozenset({Stage.MINTING, Stage.COMPLETED, Stage.FAILED}),
    }
    polled_stages = frozenset({Stage.INITIATED, Stage.LOCKED, Stage.MINTING})

    def _destination_address(self, request: BridgeRequest) -> str:
        address = request.destination_address
        if request.dest_chain == self.config.native_chain:
            if address is None:
                return request.owner_key.lower()
            return validate_public_key('destination_address', address)

        if not address:
            raise InvalidPayload('destination_address', f"required when bridging to {request.dest_chain}")
        if not EVM_ADDRESS_RE.match(address):
            raise InvalidPayload('destination_address', "expected 0x followed by 40 hex characters")
        return address

    async def prepare(self, request: BridgeRequest) -> BridgePayload:
        validate_public_key('owner_key', request.owner_key)

        supported = self.config.supported_chains
        if request.source_chain not in supported:
            raise InvalidPayload('source_chain', f"unsupported chain (supported: {', '.join(supported)})")
        if request.dest_chain not in supported:
            raise InvalidPayload('dest_chain', f"unsupported chain (supported: {', '.join(supported)})")
        if request.source_chain == request.dest_chain:
            raise InvalidPayload('dest_chain', "must differ from source chain")

        amount = parse_amount('amount_cspr', request.amount_cspr)
        if amount < self.config.min_bridge:
            raise InvalidPayload('amount_cspr', f"minimum bridge amount is {self.config.min_bridge}")
        if amount > self.config.max_bridge:
            raise InvalidPayload('amount_cspr', f"maximum bridge amount is {self.config.max_bridge}")

        token = (request.token or "").upper()
        if not TOKEN_RE.match(token):
            raise InvalidPayload('token', "invalid token symbol")

        destination = self._destination_address(request)

        for chain in (request.source_chain, request.dest_chain):
            if self.orchestrator.status_source(chain) is None:
                raise PreconditionFailed(f"No status source configured for chain {chain}")

        if request.source_chain == self.config.native_chain:
            await self.require_balance(request.owner_key, cspr_to_motes(amount))

        fee = self.economics.bridge_fee(amount, request.source_chain)
        logger.info(
            f"Bridge {amount} {token} {request.source_chain} -> {request.dest_chain}: "
            f"fee {fee.fee}, net {fee.net_amount}"
        )

        return BridgePayload(
            source_chain=request.source_chain,
            dest_chain=request.dest_chain,
            amount_cspr=amount,
            fee=fee.fee,
            net_amount=fee.net_amount,
            token=token,
            source_tx_hash=new_tx_hash(),
            destination_address=destination,
        )

    def initiated_event(self, operation: Operation) -> ActivityEvent:
        payload: BridgePayload = operation.payload
        return ActivityEvent(
            kind="bridge_initiated",
            description=f"Initiated bridge transfer of {payload.amount_cspr} {payload.token} to {payload.dest_chain}",
            status="pending",
            metadata={'source_chain': payload.source_chain, 'dest_chain': payload.dest_chain,
                      'source_tx_hash': payload.source_tx_hash},
        )

    def failure_event(self, operation: Operation, error: str) -> ActivityEvent:
        payload: BridgePayload = operation.payload
        return ActivityEvent(
            kind="bridge_failed",
            description=f"Bridge transfer of {payload.amount_cspr} {payload.token} failed: {error}",
            status="failed",
            metadata={'source_chain': payload.source_chain, 'dest_chain': payload.dest_chain,
                      'error': error},
        )

    def _execution_failed(self, operation: Operation, reason: Optional[str]) -> Transition:
        error = f"{EXECUTION_FAILED}: {reason}"
        return Transition(stage=Stage.FAILED, error=error, event=self.failure_event(operation, error))

    async def step(self, operation: Operation) -> Optional[Transition]:
        payload: BridgePayload = operation.payload

        if operation.stage == Stage.INITIATED:
            source = self.orchestrator.status_source(payload.source_chain)
            status = await source.get_operation_status(payload.source_tx_hash)
            if status.state == OperationState.PENDING:
                return None
            if status.state == OperationState.FAILED:
                return self._execution_failed(operation, status.reason)
            return Transition(
                stage=Stage.LOCKED,
                event=ActivityEvent(
                    kind="bridge_locked",
                    description=f"Tokens locked on {payload.source_chain}",
                    status="pending",
                    metadata={'source_tx_hash': payload.source_tx_hash, 'block_ref': status.block_ref},
                ),
            )

        if operation.stage == Stage.LOCKED:
            dest_tx_hash = new_tx_hash()
            return Transition(
                stage=Stage.MINTING,
                payload=replace(payload, dest_tx_hash=dest_tx_hash),
                event=ActivityEvent(
                    kind="bridge_minting",
                    description=f"Lock confirmed, minting {payload.net_amount} {payload.token} on {payload.dest_chain}",
                    status="pending",
                    metadata={'dest_tx_hash': dest_tx_hash},
                ),
            )

        dest = self.orchestrator.status_source(payload.dest_chain)
        status = await dest.get_operation_status(payload.dest_tx_hash)
        if status.state == OperationState.PENDING:
            return None
        if status.state == OperationState.FAILED:
            return self._execution_failed(operation, status.reason)

        logger.info(f"✓ Bridge transfer completed: {payload.net_amount} {payload.token} received")
        return Transition(
            stage=Stage.COMPLETED,
            result=BridgeResult(
                dest_tx_hash=payload.dest_tx_hash,
                received_amount=payload.net_amount,
                block_ref=status.block_ref,
            ),
            event=ActivityEvent(
                kind="bridge_completed",
                description=f"Bridge transfer completed: {payload.net_amount} {payload.token} received",
                status="success",
                metadata={'dest_tx_hash': payload.dest_tx_hash, 'block_ref': status.block_ref},
            ),
        )
