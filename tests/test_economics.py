"""Tests for EconomicsCalculator pricing arithmetic."""

from decimal import Decimal

import pytest

from casper_ops.economics import EconomicsCalculator, cspr_to_motes, motes_to_cspr
from casper_ops.models import Validator


def make_validator(commission, stake_motes=50_000_000_000_000):
    return Validator(public_key="01" + "11" * 32, total_stake_motes=stake_motes,
                     commission_percent=commission, is_active=True)


# --- Deploy cost ---

def test_deploy_cost_for_50kb(economics):
    assert economics.estimate_deploy_cost(50_000) == 2_550_000_000


def test_deploy_cost_empty_payload_is_base(economics):
    assert economics.estimate_deploy_cost(0) == 2_500_000_000


def test_deploy_cost_is_exact_for_large_payloads(economics):
    size = 10 ** 12
    assert economics.estimate_deploy_cost(size) == 2_500_000_000 + size * 1_000


def test_deploy_cost_strictly_increasing(economics):
    costs = [economics.estimate_deploy_cost(size) for size in (0, 1, 2, 1_000, 50_000, 10 ** 7)]
    assert all(a < b for a, b in zip(costs, costs[1:]))
    assert costs[0] > 0


def test_deploy_cost_rejects_negative_size(economics):
    with pytest.raises(ValueError):
        economics.estimate_deploy_cost(-1)


# --- Validator APY ---

def test_apy_for_ten_percent_commission(economics):
    apy = economics.validator_apy(make_validator(10))
    # 0.02 * 0.9 * 400 = 7.2, plus stake bonus min(0.02, 50000/1e10)
    assert apy == pytest.approx(7.2 + 50_000 / 10_000_000_000)
    assert 5.0 <= apy <= 15.0


def test_apy_non_increasing_in_commission(economics):
    apys = [economics.validator_apy(make_validator(c)) for c in range(0, 101, 5)]
    assert all(a >= b for a, b in zip(apys, apys[1:]))


@pytest.mark.parametrize("commission", [-50, 0, 1, 50, 99, 100, 250, float("nan"), float("inf"), float("-inf")])
def test_apy_always_within_band(economics, commission):
    apy = economics.validator_apy(make_validator(commission, stake_motes=10 ** 30))
    assert 5.0 <= apy <= 15.0


def test_zero_commission_is_honoured(economics):
    # 0.02 * 400 = 8.0 rather than falling back to a default commission
    assert economics.validator_apy(make_validator(0, stake_motes=0)) == pytest.approx(8.0)


def test_nan_commission_treated_as_full_commission(economics):
    assert economics.validator_apy(make_validator(float("nan"), stake_motes=0)) == 5.0


def test_full_commission_clamps_to_floor(economics):
    assert economics.validator_apy(make_validator(100, stake_motes=0)) == 5.0


# --- Staking yield ---

def test_yield_zero_for_non_positive_days(economics):
    assert economics.staking_yield(1000, 8, 0) == 0
    assert economics.staking_yield(1000, 8, -3) == 0


def test_yield_simple_daily_accrual(economics):
    assert economics.staking_yield(1000, Decimal("7.3"), 365) == Decimal("73.000000000")
    assert economics.staking_yield(3650, 10, 1) == Decimal("1.000000000")


def test_annual_and_daily_reward(economics):
    assert economics.estimated_annual_reward(1000, Decimal("7.5")) == Decimal("75.000000000")
    assert economics.estimated_daily_reward(3650, 10) == Decimal("1.000000000")


# --- Bridge fee ---

def test_bridge_fee_half_percent(economics):
    quote = economics.bridge_fee(100, 'casper-test')
    assert quote.fee == Decimal("0.5")
    assert quote.net_amount == Decimal("99.5")
    assert quote.fee_percent == Decimal("0.5")


def test_bridge_fee_truncates_to_six_decimals(economics):
    quote = economics.bridge_fee(Decimal("0.1234567"), 'sepolia')
    # 0.1234567 * 0.75% = 0.00092592525 -> 0.000925
    assert quote.fee == Decimal("0.000925")
    assert quote.fee + quote.net_amount == Decimal("0.1234567")


@pytest.mark.parametrize("amount", ["0.1", "0.123457", "1", "99.999999", "2500.5", "10000"])
@pytest.mark.parametrize("chain", ["casper-test", "sepolia"])
def test_bridge_net_is_amount_minus_fee(economics, amount, chain):
    quote = economics.bridge_fee(amount, chain)
    assert quote.fee >= 0
    assert quote.net_amount >= 0
    assert quote.net_amount == Decimal(amount) - quote.fee


def test_bridge_fee_net_never_negative(config):
    config.bridge_fee_percent['casper-test'] = Decimal("100")
    quote = EconomicsCalculator(config).bridge_fee(5, 'casper-test')
    assert quote.net_amount == 0


def test_bridge_fee_unknown_chain(economics):
    with pytest.raises(ValueError):
        economics.bridge_fee(10, 'dogechain')


# --- Unit conversion ---

def test_motes_cspr_conversion():
    assert cspr_to_motes("2.5") == 2_500_000_000
    assert motes_to_cspr(2_550_000_000) == Decimal("2.55")
    assert cspr_to_motes(motes_to_cspr(123_456_789)) == 123_456_789
