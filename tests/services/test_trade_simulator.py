import random
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from analysis.models import (
    ArbitrageOpportunity,
    Direction,
    ExecutionOutcome,
    ExecutionPriority,
    FailureReason,
    GasFees,
    MarketMakingSignal,
    RiskScore,
    StrategyType,
    VolatilityCategory,
)
from config import AppConfig
from services.trade_simulator import TradeSimulator

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
TWO_GWEI = GasFees(base_fee=Decimal('0.0000000015'), priority_fee=Decimal('0.0000000005'))


class ScriptedRandom:
    """Gaussian draws land on the mean; uniform draws come from a script."""

    def __init__(self, uniforms):
        self._uniforms = list(uniforms)
        self.draws = 0

    def random(self):
        self.draws += 1
        return self._uniforms.pop(0)

    def gauss(self, mu, sigma):
        self.draws += 1
        return mu


def _opportunity(category=VolatilityCategory.LOW):
    return ArbitrageOpportunity(
        id='opp-1',
        pair='WETH/USDC',
        direction=Direction.BUY_DEX_SELL_CEX,
        trade_size=Decimal('0.1'),
        dex_price_spot=Decimal('3000'),
        dex_price_effective=Decimal('3000.0003'),
        cex_price=Decimal('3010'),
        spread_pct=Decimal('0.33'),
        price_impact_pct=Decimal('0.00001'),
        gross_profit=Decimal('0.99997'),
        gas_cost=Decimal('0'),
        slippage_estimate=Decimal('0.1505'),
        net_profit=Decimal('0.84947'),
        roi=Decimal('0.28'),
        priority=ExecutionPriority.LOW,
        validation_flags={},
        volatility_category=category,
        created_at=NOW,
    )


def _signal():
    return MarketMakingSignal(
        id='sig-1',
        pair='WETH/USDC',
        strategy=StrategyType.TIGHT_SPREAD,
        fair_value=Decimal('3000'),
        bid=Decimal('2995.5'),
        ask=Decimal('3004.5'),
        bid_size=Decimal('0.5'),
        ask_size=Decimal('0.4'),
        spread_bps=Decimal('30'),
        range_lower=Decimal('2985'),
        range_upper=Decimal('3015'),
        skew_fraction=Decimal('0'),
        volatility_category=VolatilityCategory.LOW,
        risk_score=Decimal('10'),
        rationale='test',
        created_at=NOW,
    )


@pytest.fixture
def config():
    return AppConfig(rpc_url='http://localhost:8545')


def test_same_seed_replays_identical_outcomes(config):
    seeded = config._replace(simulation_seed=7)
    first = TradeSimulator(seeded)
    second = TradeSimulator(seeded)
    for _ in range(20):
        a = first.simulate(_opportunity(VolatilityCategory.HIGH), pool_reserve=Decimal('100'), gas_fees=TWO_GWEI)
        b = second.simulate(_opportunity(VolatilityCategory.HIGH), pool_reserve=Decimal('100'), gas_fees=TWO_GWEI)
        assert (a.outcome, a.gas_price, a.slippage_bps, a.latency_ms, a.gas_used, a.realized_profit) == (
            b.outcome, b.gas_price, b.slippage_bps, b.latency_ms, b.gas_used, b.realized_profit
        )


def test_opportunity_fill_nets_gas_and_slippage(config):
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.99]))
    execution = simulator.simulate(_opportunity(), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI)

    assert execution.outcome is ExecutionOutcome.SUCCESS
    assert execution.ref_kind == 'opportunity'
    assert execution.gas_price == Decimal('2')
    # 0.1 / 1000 of the pool is 1 bps of impact on top of the 5 bps base.
    assert execution.slippage_bps == Decimal('6')
    assert execution.latency_ms == 100
    assert execution.gas_used == 156000
    gas_cost = Decimal(156000) * Decimal('2') / Decimal(10) ** 9 * Decimal('3010')
    slippage_cost = Decimal('0.1') * Decimal('3010') * Decimal('6') / 10000
    expected = (Decimal('0.99997') - gas_cost - slippage_cost).quantize(Decimal('0.00000001'))
    assert execution.realized_profit == expected
    assert execution.position_delta == 0


def test_gas_above_ceiling_fails(config):
    expensive = GasFees(base_fee=Decimal('0.0000001'), priority_fee=Decimal('0'))
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.99]))
    execution = simulator.simulate(_opportunity(), pool_reserve=Decimal('1000'), gas_fees=expensive)
    assert execution.outcome is ExecutionOutcome.FAILED
    assert execution.failure_reason is FailureReason.GAS_PRICE_EXCEEDED
    assert execution.realized_profit == 0


def test_slippage_above_tolerance_still_costs_gas(config):
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.99]))
    execution = simulator.simulate(_opportunity(), pool_reserve=Decimal('1'), gas_fees=TWO_GWEI)
    assert execution.failure_reason is FailureReason.SLIPPAGE_EXCEEDED
    assert execution.realized_profit < 0


def test_network_failure_draw(config):
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.0]))
    execution = simulator.simulate(_opportunity(), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI)
    assert execution.failure_reason is FailureReason.SIMULATED_NETWORK_FAILURE
    assert not execution.succeeded


def test_risk_ceiling_short_circuits_without_drawing(config):
    rng = ScriptedRandom([])
    simulator = TradeSimulator(config, rng=rng)
    risk = RiskScore(Decimal('1'), Decimal('1'), Decimal('1'), Decimal('90'), Decimal('0'))
    execution = simulator.simulate(_opportunity(), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI, risk=risk)
    assert execution.failure_reason is FailureReason.RISK_CEILING_EXCEEDED
    assert rng.draws == 0


def test_signal_bid_fill_grows_position(config):
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.1, 0.99]))
    execution = simulator.simulate(_signal(), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI)
    assert execution.ref_kind == 'signal'
    assert execution.succeeded
    assert execution.position_delta == Decimal('0.5')


def test_signal_ask_fill_reduces_position(config):
    simulator = TradeSimulator(config, rng=ScriptedRandom([0.9, 0.99]))
    execution = simulator.simulate(_signal(), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI)
    assert execution.position_delta == Decimal('-0.4')


def test_per_call_rng_overrides_default(config):
    simulator = TradeSimulator(config, rng=random.Random(1))
    execution = simulator.simulate(_opportunity(), ScriptedRandom([0.0]), pool_reserve=Decimal('1000'), gas_fees=TWO_GWEI)
    assert execution.failure_reason is FailureReason.SIMULATED_NETWORK_FAILURE
