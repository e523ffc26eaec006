"""
Operation Reports

Dashboard aggregates built with pandas over ledger snapshots: per-owner
staking summary, bridge transfer statistics and network staking stats.
Figures are floats for presentation; the ledger keeps exact values.
"""

from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd
from loguru import logger

from .economics import EconomicsCalculator, motes_to_cspr
from .models import Operation, OperationKind, Stage, ValidatorSet, utcnow


BRIDGE_IN_FLIGHT = (Stage.CREATED.value, Stage.INITIATED.value, Stage.LOCKED.value, Stage.MINTING.value)
TOP_VALIDATORS = 5

OPERATION_COLUMNS = [
    'id', 'kind', 'owner_key', 'stage', 'amount_cspr', 'apy', 'fee',
    'start_date', 'created_at', 'terminal_at', 'attempts', 'error',
]


def operations_frame(operations: List[Operation]) -> pd.DataFrame:
    """One row per operation with the fields reports aggregate on"""
    rows = []
    for op in operations:
        payload = op.payload
        rows.append({
            'id': op.id,
            'kind': op.kind.value,
            'owner_key': op.owner_key,
            'stage': op.stage.value,
            'amount_cspr': float(getattr(payload, 'amount_cspr', 0) or 0),
            'apy': float(getattr(payload, 'apy', 0) or 0),
            'fee': float(getattr(payload, 'fee', 0) or 0),
            'start_date': getattr(payload, 'start_date', None),
            'created_at': op.created_at,
            'terminal_at': op.terminal_at,
            'attempts': op.attempts,
            'error': op.error,
        })
    return pd.DataFrame(rows, columns=OPERATION_COLUMNS)


def staking_summary(operations: List[Operation], economics: EconomicsCalculator,
                    now: Optional[datetime] = None) -> Dict:
    """
    Summary of an owner's stake positions

    Totals cover active positions only; rewards are accrued to `now`.
    """
    now = now or utcnow()
    df = operations_frame([op for op in operations if op.kind == OperationKind.STAKE])

    active = df[df['stage'] == Stage.ACTIVE.value]
    pending = df[df['stage'] == Stage.PENDING.value]

    total_rewards = 0.0
    for op in operations:
        if op.kind == OperationKind.STAKE and op.stage == Stage.ACTIVE:
            elapsed_days = max(int((now - op.payload.start_date).total_seconds() // 86400), 0)
            total_rewards += float(economics.staking_yield(op.payload.amount_cspr, op.payload.apy, elapsed_days))

    return {
        'total_staked': float(active['amount_cspr'].sum()) if not active.empty else 0.0,
        'total_rewards': total_rewards,
        'average_apy': float(active['apy'].mean()) if not active.empty else 0.0,
        'active_positions': len(active),
        'pending_positions': len(pending),
        'unstaking_positions': int((df['stage'] == Stage.UNSTAKING.value).sum()),
        'completed_positions': int((df['stage'] == Stage.COMPLETED.value).sum()),
    }


def bridge_stats(operations: List[Operation]) -> Dict:
    """Transfer counts, volume, fees and average completion time in seconds"""
    df = operations_frame([op for op in operations if op.kind == OperationKind.BRIDGE])

    if df.empty:
        return {
            'total_transfers': 0,
            'total_volume_cspr': 0.0,
            'total_fees': 0.0,
            'completed_transfers': 0,
            'failed_transfers': 0,
            'pending_transfers': 0,
            'success_rate': 0.0,
            'avg_completion_seconds': 0,
        }

    completed = df[df['stage'] == Stage.COMPLETED.value]
    failed = df[df['stage'] == Stage.FAILED.value]
    pending = df[df['stage'].isin(BRIDGE_IN_FLIGHT)]

    avg_completion = 0
    if not completed.empty:
        durations = (
            pd.to_datetime(completed['terminal_at'], utc=True)
            - pd.to_datetime(completed['created_at'], utc=True)
        ).dt.total_seconds()
        avg_completion = int(round(durations.mean()))

    finished = len(completed) + len(failed)
    logger.debug(f"Bridge stats over {len(df)} transfers ({len(pending)} in flight)")
    return {
        'total_transfers': len(df),
        'total_volume_cspr': float(df['amount_cspr'].sum()),
        'total_fees': float(completed['fee'].sum()),
        'completed_transfers': len(completed),
        'failed_transfers': len(failed),
        'pending_transfers': len(pending),
        'success_rate': (len(completed) / finished * 100) if finished > 0 else 0.0,
        'avg_completion_seconds': avg_completion,
    }


def network_staking_stats(validators: ValidatorSet, economics: EconomicsCalculator) -> Dict:
    """Active validator count, total stake and average APY; top validators by stake"""
    rows = [
        {
            'public_key': v.public_key,
            'total_stake_cspr': float(motes_to_cspr(v.total_stake_motes)),
            'commission_percent': float(v.commission_percent),
            'delegators_count': v.delegators_count,
            'apy': v.apy if v.apy is not None else economics.validator_apy(v),
        }
        for v in validators
        if v.is_active
    ]
    df = pd.DataFrame(rows, columns=['public_key', 'total_stake_cspr', 'commission_percent',
                                     'delegators_count', 'apy'])

    if df.empty:
        return {
            'total_validators': 0,
            'total_staked': 0.0,
            'average_apy': 0.0,
            'top_validators': [],
            'synthetic': validators.synthetic,
        }

    top = df.sort_values('total_stake_cspr', ascending=False).head(TOP_VALIDATORS)
    return {
        'total_validators': len(df),
        'total_staked': float(df['total_stake_cspr'].sum()),
        'average_apy': float(df['apy'].mean()),
        'top_validators': top.to_dict('records'),
        'synthetic': validators.synthetic,
    }
