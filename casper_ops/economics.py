"""
Economics Calculator

Pure pricing functions for deployments, staking and bridging. No I/O.

Motes are integers throughout; CSPR amounts are Decimal and only turned
into human-readable units at presentation time.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Tuple, Union

from .config import MOTES_PER_CSPR, OrchestratorConfig
from .models import Validator


Number = Union[int, float, str, Decimal]

FEE_QUANTUM = Decimal("0.000001")  # bridge fees are truncated to 6 decimals
CSPR_QUANTUM = Decimal("0.000000001")  # 1 mote
DAYS_PER_YEAR = Decimal(365)

# Stake-size bonus on top of the commission-adjusted APY
MAX_STAKE_BONUS = 0.02
STAKE_BONUS_DIVISOR = 10_000_000_000


def motes_to_cspr(motes: int) -> Decimal:
    return (Decimal(int(motes)) / MOTES_PER_CSPR).quantize(CSPR_QUANTUM)


def cspr_to_motes(amount: Number) -> int:
    return int((Decimal(str(amount)) * MOTES_PER_CSPR).to_integral_value(rounding=ROUND_DOWN))


@dataclass(frozen=True)
class BridgeFee:
    fee: Decimal
    net_amount: Decimal
    fee_percent: Decimal

    def to_dict(self) -> Dict:
        return {
            'fee': str(self.fee),
            'net_amount': str(self.net_amount),
            'fee_percent': str(self.fee_percent),
        }


class EconomicsCalculator:
    """
    Gas, APY, yield and bridge-fee arithmetic

    All constants come from OrchestratorConfig so the same calculator can be
    used for testnet defaults or custom networks.
    """

    def __init__(self, config: OrchestratorConfig):
        self.base_cost_motes = config.deploy_base_cost_motes
        self.per_byte_motes = config.deploy_per_byte_motes
        self.inflation_rate = config.inflation_rate
        self.scaling_factor = config.apy_scaling_factor
        self.apy_band: Tuple[float, float] = config.apy_band
        self.bridge_fee_percent: Dict[str, Decimal] = dict(config.bridge_fee_percent)

    def estimate_deploy_cost(self, payload_size_bytes: int) -> int:
        """Deployment gas in motes: base + size * per-byte rate"""
        if payload_size_bytes < 0:
            raise ValueError("Payload size cannot be negative")
        return self.base_cost_motes + int(payload_size_bytes) * self.per_byte_motes

    def validator_apy(self, validator: Validator) -> float:
        """
        Delegator APY offered by a validator, in percent

        inflation * (1 - commission/100) * scaling, plus a small stake-size
        bonus, clamped into the configured band. Commission outside [0, 100]
        is clamped first and a non-finite commission counts as 100, so the
        result never leaves the band.
        """
        commission = float(validator.commission_percent)
        if not math.isfinite(commission):
            commission = 100.0
        commission = min(max(commission, 0.0), 100.0)
        delegator_rate = self.inflation_rate * (1 - commission / 100)

        stake_cspr = validator.total_stake_motes / MOTES_PER_CSPR
        if not math.isfinite(stake_cspr):
            stake_cspr = 0.0
        stake_bonus = min(MAX_STAKE_BONUS, max(stake_cspr, 0) / STAKE_BONUS_DIVISOR)

        apy = delegator_rate * self.scaling_factor + stake_bonus

        low, high = self.apy_band
        if not math.isfinite(apy):
            return low
        return min(max(apy, low), high)

    def staking_yield(self, amount_cspr: Number, apy_percent: Number, elapsed_days: Number) -> Decimal:
        """Simple (non-compounding) daily accrual in CSPR"""
        days = Decimal(str(elapsed_days))
        if days <= 0:
            return Decimal(0)

        amount = Decimal(str(amount_cspr))
        apy = Decimal(str(apy_percent))
        reward = amount * apy / 100 * days / DAYS_PER_YEAR
        return reward.quantize(CSPR_QUANTUM, rounding=ROUND_DOWN)

    def estimated_annual_reward(self, amount_cspr: Number, apy_percent: Number) -> Decimal:
        return (Decimal(str(amount_cspr)) * Decimal(str(apy_percent)) / 100).quantize(
            CSPR_QUANTUM, rounding=ROUND_DOWN)

    def estimated_daily_reward(self, amount_cspr: Number, apy_percent: Number) -> Decimal:
        return self.staking_yield(amount_cspr, apy_percent, 1)

    def bridge_fee(self, amount_cspr: Number, source_chain: str) -> BridgeFee:
        """Fee is a configured percentage of the amount keyed by source chain"""
        if source_chain not in self.bridge_fee_percent:
            raise ValueError(f"No bridge fee configured for chain {source_chain}")

        amount = Decimal(str(amount_cspr))
        if amount < 0:
            raise ValueError("Bridge amount cannot be negative")

        fee_percent = self.bridge_fee_percent[source_chain]
        fee = (amount * fee_percent / 100).quantize(FEE_QUANTUM, rounding=ROUND_DOWN)
        net_amount = max(amount - fee, Decimal(0))

        return BridgeFee(fee=fee, net_amount=net_amount, fee_percent=fee_percent)
