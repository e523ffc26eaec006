"""
Stake lifecycle

created -> pending -> active -> unstaking -> completed, failed from any
non-terminal stage. 'active' is a resting stage: nothing is polled until a
withdrawal is requested.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from loguru import logger

from .economics import cspr_to_motes
from .errors import EXECUTION_FAILED, InvalidPayload, LockNotElapsed, PreconditionFailed
from .lifecycle import (
    ActivityEvent,
    LifecycleDefinition,
    Transition,
    new_tx_hash,
    validate_public_key,
)
from .models import (
    Operation,
    OperationKind,
    OperationState,
    Stage,
    StakePayload,
    StakeResult,
    utcnow,
)


SECONDS_PER_DAY = 86400


@dataclass
class StakeRequest:
    owner_key: str
    validator_key: str
    amount_cspr: Union[Decimal, int, float, str]
    lock_days: int


def parse_amount(field_name: str, value) -> Decimal:
    if isinstance(value, bool):
        raise InvalidPayload(field_name, "must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidPayload(field_name, "must be a number")
    if not amount.is_finite() or amount <= 0:
        raise InvalidPayload(field_name, "must be a positive number")
    return amount


class StakeLifecycle(LifecycleDefinition):
    kind = OperationKind.STAKE
    label = "Stake"
    first_stage = Stage.PENDING
    success_stage = Stage.COMPLETED
    graph = {
        Stage.CREATED: frozenset({Stage.PENDING, Stage.FAILED}),
        Stage.PENDING: frozenset({Stage.PENDING, Stage.ACTIVE, Stage.FAILED}),
        Stage.ACTIVE: frozenset({Stage.UNSTAKING, Stage.FAILED}),
        Stage.UNSTAKING: frozenset({Stage.UNSTAKING, Stage.COMPLETED, Stage.FAILED}),
    }
    polled_stages = frozenset({Stage.PENDING, Stage.UNSTAKING})

    async def prepare(self, request: StakeRequest) -> StakePayload:
        validate_public_key('owner_key', request.owner_key)
        validator_key = validate_public_key('validator_key', request.validator_key)

        amount = parse_amount('amount_cspr', request.amount_cspr)
        if amount < self.config.min_stake_cspr:
            raise InvalidPayload('amount_cspr', f"minimum stake is {self.config.min_stake_cspr} CSPR")

        lock_days = request.lock_days
        if isinstance(lock_days, bool) or not isinstance(lock_days, int):
            raise InvalidPayload('lock_days', "must be a whole number of days")
        if not self.config.min_lock_days <= lock_days <= self.config.max_lock_days:
            raise InvalidPayload(
                'lock_days',
                f"must be between {self.config.min_lock_days} and {self.config.max_lock_days} days",
            )

        validators = await self.client.get_validators()
        if validators.synthetic:
            if not self.config.sandbox:
                raise PreconditionFailed(f"Validator list unavailable: {validators.reason}")
            logger.warning("⚠ Sandbox mode: staking against synthetic validator list")

        validator = validators.find(validator_key)
        if validator is None:
            raise InvalidPayload('validator_key', "validator not found")
        if not validator.is_active:
            raise PreconditionFailed(f"Validator {validator_key[:10]}... is not active")

        await self.require_balance(request.owner_key, cspr_to_motes(amount))

        apy = self.economics.validator_apy(validator)
        start_date = utcnow()
        logger.info(f"Stake of {amount} CSPR for {lock_days} days at {apy:.2f}% APY accepted")

        return StakePayload(
            validator_key=validator_key,
            amount_cspr=amount,
            lock_days=lock_days,
            apy=apy,
            start_date=start_date,
            end_date=start_date + timedelta(days=lock_days),
            delegate_hash=new_tx_hash(),
        )

    def initiated_event(self, operation: Operation) -> ActivityEvent:
        payload: StakePayload = operation.payload
        return ActivityEvent(
            kind="stake_initiated",
            description=f"Initiating stake of {payload.amount_cspr} CSPR for {payload.lock_days} days",
            status="pending",
            metadata={'validator': payload.validator_key, 'delegate_hash': payload.delegate_hash},
        )

    def failure_event(self, operation: Operation, error: str) -> ActivityEvent:
        return ActivityEvent(
            kind="stake_failed",
            description=f"Staking operation failed: {error}",
            status="failed",
            metadata={'validator': operation.payload.validator_key, 'error': error},
        )

    def request_withdrawal(self, operation: Operation, owner_key: Optional[str],
                           now: datetime) -> Transition:
        """active -> unstaking; the lock period is checked before anything else changes"""
        payload: StakePayload = operation.payload

        if owner_key is not None and owner_key.lower() != operation.owner_key:
            raise PreconditionFailed("Not authorized to withdraw this position")
        if now < payload.end_date:
            raise LockNotElapsed(payload.end_date)
        if operation.stage != Stage.ACTIVE:
            raise PreconditionFailed(f"Cannot withdraw position with status: {operation.stage.value}")

        return Transition(
            stage=Stage.UNSTAKING,
            payload=replace(payload, undelegate_hash=new_tx_hash(), withdraw_requested_at=now),
            event=ActivityEvent(
                kind="unstake_initiated",
                description="Initiating withdrawal of staking position",
                status="pending",
                metadata={'validator': payload.validator_key},
            ),
        )

    def accumulated_rewards(self, payload: StakePayload, until: datetime):
        days_staked = max(int((until - payload.start_date).total_seconds() // SECONDS_PER_DAY), 0)
        rewards = self.economics.staking_yield(payload.amount_cspr, payload.apy, days_staked)
        return days_staked, rewards

    async def step(self, operation: Operation) -> Optional[Transition]:
        payload: StakePayload = operation.payload

        if operation.stage == Stage.PENDING:
            status = await self.client.get_operation_status(payload.delegate_hash)
            if status.state == OperationState.PENDING:
                return None
            if status.state == OperationState.FAILED:
                error = f"{EXECUTION_FAILED}: {status.reason}"
                return Transition(stage=Stage.FAILED, error=error,
                                  event=self.failure_event(operation, error))

            logger.info(f"✓ Delegation of {payload.amount_cspr} CSPR confirmed")
            return Transition(
                stage=Stage.ACTIVE,
                event=ActivityEvent(
                    kind="stake_confirmed",
                    description=f"Staked {payload.amount_cspr} CSPR with validator for {payload.lock_days} days",
                    status="success",
                    metadata={'validator': payload.validator_key, 'block_ref': status.block_ref},
                ),
            )

        status = await self.client.get_operation_status(payload.undelegate_hash)
        if status.state == OperationState.PENDING:
            return None
        if status.state == OperationState.FAILED:
            error = f"{EXECUTION_FAILED}: {status.reason}"
            return Transition(stage=Stage.FAILED, error=error,
                              event=self.failure_event(operation, error))

        days_staked, rewards = self.accumulated_rewards(
            payload, payload.withdraw_requested_at or utcnow())

        logger.info(f"✓ Withdrew {payload.amount_cspr} CSPR + {rewards} CSPR rewards")
        return Transition(
            stage=Stage.COMPLETED,
            result=StakeResult(
                principal_cspr=payload.amount_cspr,
                accumulated_rewards_cspr=rewards,
                days_staked=days_staked,
                block_ref=status.block_ref,
            ),
            event=ActivityEvent(
                kind="stake_withdrawn",
                description=f"Withdrew {payload.amount_cspr} CSPR + {rewards:.4f} CSPR rewards",
                status="success",
                metadata={'validator': payload.validator_key, 'rewards': str(rewards)},
            ),
        )
