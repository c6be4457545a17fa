"""Paper execution of arbitrage opportunities and market-making quotes."""
from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Union

from analysis.models import (
    ArbitrageOpportunity,
    ExecutionOutcome,
    FailureReason,
    GasFees,
    MarketMakingSignal,
    RiskScore,
    SimulatedExecution,
    VolatilityCategory,
)
from analysis.volatility import VOLATILITY_FACTORS
from config import AppConfig
from constants import SIMULATED_GAS_USED, WEI_PER_GWEI

SimulationTarget = Union[ArbitrageOpportunity, MarketMakingSignal]

BASE_LATENCY_MS = 100
LATENCY_ADDON_MS: Dict[VolatilityCategory, int] = {
    VolatilityCategory.LOW: 0,
    VolatilityCategory.MODERATE: 50,
    VolatilityCategory.HIGH: 150,
    VolatilityCategory.EXTREME: 300,
}
BASE_SLIPPAGE_BPS = 5.0
SLIPPAGE_ADDON_BPS: Dict[VolatilityCategory, float] = {
    VolatilityCategory.LOW: 0.0,
    VolatilityCategory.MODERATE: 10.0,
    VolatilityCategory.HIGH: 25.0,
    VolatilityCategory.EXTREME: 50.0,
}
BASE_FAILURE_RATE = 0.02
FAILURE_RATE_PER_STEP = 0.01
GAS_PRESSURE_FAILURE_RATE = 0.01
GAS_PRICE_VOLATILITY = 0.25

_PROFIT_QUANTUM = Decimal('0.00000001')


def _to_decimal(value: float, places: int = 9) -> Decimal:
    return Decimal(str(round(value, places)))


class TradeSimulator:
    """Samples gas, slippage, latency and failures for a would-be trade.

    Never submits anything. All randomness comes from the injected
    ``random.Random`` so a fixed seed replays identical outcomes.
    """

    def __init__(self, config: AppConfig, rng: Optional[random.Random] = None) -> None:
        self.config = config
        self.rng = rng or random.Random(config.simulation_seed)
        self.logger = logging.getLogger(__name__)

    def simulate(
        self,
        target: SimulationTarget,
        rng: Optional[random.Random] = None,
        *,
        pool_reserve: Decimal,
        gas_fees: GasFees,
        risk: Optional[RiskScore] = None,
    ) -> SimulatedExecution:
        rng = rng or self.rng
        now = datetime.now(timezone.utc)
        is_signal = isinstance(target, MarketMakingSignal)
        ref_kind = 'signal' if is_signal else 'opportunity'

        if risk is not None and risk.composite > self.config.risk_hold_ceiling:
            self.logger.info("Refusing to simulate %s %s: risk %.1f above ceiling", ref_kind, target.id, risk.composite)
            return SimulatedExecution(
                ref_id=target.id,
                ref_kind=ref_kind,
                gas_used=0,
                gas_price=Decimal('0'),
                slippage_bps=Decimal('0'),
                latency_ms=0,
                outcome=ExecutionOutcome.FAILED,
                realized_profit=Decimal('0'),
                created_at=now,
                failure_reason=FailureReason.RISK_CEILING_EXCEEDED,
            )

        category = target.volatility_category
        factor = float(VOLATILITY_FACTORS[category])

        # Draw order is fixed so that a seed maps to one outcome.
        bid_filled = rng.random() < 0.5 if is_signal else False
        mean_gwei = float(gas_fees.total * WEI_PER_GWEI)
        gas_gwei = max(0.0, rng.gauss(mean_gwei, mean_gwei * GAS_PRICE_VOLATILITY * factor))

        if is_signal:
            size = target.bid_size if bid_filled else target.ask_size
            reference_price = target.fair_value
        else:
            size = target.trade_size
            reference_price = target.cex_price
        impact_bps = float(size / pool_reserve * 10000) if pool_reserve > 0 else 10000.0
        mean_slippage = impact_bps + BASE_SLIPPAGE_BPS + SLIPPAGE_ADDON_BPS[category]
        slippage = max(0.0, rng.gauss(mean_slippage, mean_slippage * 0.3 * factor))

        mean_latency = BASE_LATENCY_MS + LATENCY_ADDON_MS[category]
        latency_ms = max(1, int(rng.gauss(mean_latency, mean_latency * 0.2)))

        max_gas = float(self.config.max_gas_price_gwei)
        failure_rate = (
            BASE_FAILURE_RATE
            + FAILURE_RATE_PER_STEP * category.step
            + GAS_PRESSURE_FAILURE_RATE * min(1.0, gas_gwei / max_gas if max_gas > 0 else 1.0)
        )
        network_failed = rng.random() < failure_rate
        gas_used = max(1, int(rng.gauss(SIMULATED_GAS_USED, SIMULATED_GAS_USED * 0.03)))

        gas_price = _to_decimal(gas_gwei)
        slippage_bps = _to_decimal(slippage, 4)
        gas_cost = Decimal(gas_used) * gas_price / WEI_PER_GWEI * reference_price
        notional = size * reference_price
        slippage_cost = notional * slippage_bps / 10000

        failure: Optional[FailureReason] = None
        realized = Decimal('0')
        position_delta = Decimal('0')
        if gas_price > self.config.max_gas_price_gwei:
            failure = FailureReason.GAS_PRICE_EXCEEDED
        elif slippage_bps > self.config.slippage_tolerance_bps:
            failure = FailureReason.SLIPPAGE_EXCEEDED
            # A reverted swap still pays for gas.
            realized = -gas_cost
        elif network_failed:
            failure = FailureReason.SIMULATED_NETWORK_FAILURE
        elif is_signal:
            edge = (target.fair_value - target.bid) if bid_filled else (target.ask - target.fair_value)
            realized = edge * size - gas_cost - slippage_cost
            position_delta = size if bid_filled else -size
        else:
            realized = target.gross_profit - gas_cost - slippage_cost

        execution = SimulatedExecution(
            ref_id=target.id,
            ref_kind=ref_kind,
            gas_used=gas_used,
            gas_price=gas_price,
            slippage_bps=slippage_bps,
            latency_ms=latency_ms,
            outcome=ExecutionOutcome.FAILED if failure else ExecutionOutcome.SUCCESS,
            realized_profit=realized.quantize(_PROFIT_QUANTUM),
            created_at=now,
            failure_reason=failure,
            position_delta=position_delta,
        )
        if failure:
            self.logger.info("[Simulated] %s %s failed: %s", ref_kind, target.id, failure.value)
        else:
            self.logger.info(
                "[Simulated] %s %s filled | gas=%s gwei slippage=%s bps latency=%sms profit=%s",
                ref_kind,
                target.id,
                gas_price,
                slippage_bps,
                latency_ms,
                execution.realized_profit,
            )
        return execution
