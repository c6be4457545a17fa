#!/usr/bin/env python3
"""Market-making strategy selection and quote construction."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Dict, Optional, Tuple

from analysis.models import (
    InventoryState,
    MarketMakingSignal,
    RiskScore,
    StrategyType,
    VolatilityCategory,
    VolatilityContext,
    VolatilityTrend,
)
from config import AppConfig
from constants import MAX_SPREAD_BPS, MIN_SPREAD_BPS, QUOTE_SIZE_FRACTION

logger = logging.getLogger(__name__)

RANGE_BANDS: Dict[VolatilityCategory, Decimal] = {
    VolatilityCategory.LOW: Decimal('0.005'),
    VolatilityCategory.MODERATE: Decimal('0.01'),
    VolatilityCategory.HIGH: Decimal('0.02'),
    VolatilityCategory.EXTREME: Decimal('0.03'),
}

PRICE_QUANTUM = Decimal('0.000001')
SIZE_QUANTUM = Decimal('0.0001')

_BPS = Decimal('10000')
_SKEW_BASE_ADJUST = Decimal('0.1')
_SKEW_SCALE_ADJUST = Decimal('0.4')
_REDUCE_SIDE_FACTOR = Decimal('1.5')
_GROW_SIDE_FACTOR = Decimal('0.3')
_RISK_DOWNSIZE_FACTOR = Decimal('0.5')


def select_strategy(
    skew_fraction: Decimal,
    category: VolatilityCategory,
    trend: VolatilityTrend,
    rebalance_threshold: Decimal,
) -> StrategyType:
    """Resolve the strategy tag: inventory first, then volatility, trend, and calm/wide defaults."""
    if abs(skew_fraction) > rebalance_threshold:
        return StrategyType.INVENTORY_MANAGEMENT
    if category is VolatilityCategory.EXTREME:
        return StrategyType.VOLATILITY_ADAPTIVE
    if trend in (VolatilityTrend.INCREASING, VolatilityTrend.DECREASING):
        return StrategyType.TREND_FOLLOWING
    if category is VolatilityCategory.LOW:
        return StrategyType.TIGHT_SPREAD
    return StrategyType.WIDE_SPREAD


def skew_adjustment(skew_fraction: Decimal) -> Decimal:
    """Fraction by which each half-spread is tightened or widened, 10% to 50%."""
    if skew_fraction == 0:
        return Decimal('0')
    return _SKEW_BASE_ADJUST + _SKEW_SCALE_ADJUST * abs(skew_fraction)


class MarketMakingEngine:
    def __init__(self, config: AppConfig):
        self.config = config

    def working_spread_bps(self, context: VolatilityContext) -> Decimal:
        spread = self.config.base_spread_bps * context.spread_multiplier
        return max(MIN_SPREAD_BPS, min(MAX_SPREAD_BPS, spread))

    def quote(
        self,
        fair_value: Decimal,
        inventory: InventoryState,
        context: VolatilityContext,
        risk: RiskScore,
        now: Optional[datetime] = None,
    ) -> Optional[MarketMakingSignal]:
        """Build a two-sided quote, or return None to hold."""
        if fair_value <= 0:
            logger.warning("Holding: fair value %s is not positive", fair_value)
            return None

        category = context.category
        if category is VolatilityCategory.EXTREME and risk.composite > self.config.risk_hold_ceiling:
            logger.info(
                "Holding: extreme volatility with composite risk %.1f above ceiling %s",
                risk.composite,
                self.config.risk_hold_ceiling,
            )
            return None

        band = RANGE_BANDS[category]
        range_lower = fair_value * (1 - band)
        range_upper = fair_value * (1 + band)

        working_bps = self.working_spread_bps(context)
        half_spread = working_bps / _BPS / 2
        skew = inventory.skew_fraction
        adjust = skew_adjustment(skew)
        if skew > 0:
            bid_half, ask_half = half_spread * (1 + adjust), half_spread * (1 - adjust)
        elif skew < 0:
            bid_half, ask_half = half_spread * (1 - adjust), half_spread * (1 + adjust)
        else:
            bid_half = ask_half = half_spread

        bid = max(range_lower, fair_value * (1 - bid_half)).quantize(PRICE_QUANTUM, rounding=ROUND_FLOOR)
        ask = min(range_upper, fair_value * (1 + ask_half)).quantize(PRICE_QUANTUM, rounding=ROUND_CEILING)

        strategy = select_strategy(skew, category, context.trend, self.config.rebalance_threshold)
        bid_size, ask_size = self._sizes(strategy, inventory, context, risk)

        rationale = (
            f"{strategy.value}: {category.value} volatility ({context.trend.value}), "
            f"skew {skew:+.2f}, risk {risk.composite:.1f}"
        )
        if context.above_threshold:
            rationale += "; short-window volatility above alert threshold"

        signal = MarketMakingSignal(
            id=uuid.uuid4().hex,
            pair=context.pair,
            strategy=strategy,
            fair_value=fair_value,
            bid=bid,
            ask=ask,
            bid_size=bid_size,
            ask_size=ask_size,
            spread_bps=(ask - bid) / fair_value * _BPS,
            range_lower=range_lower,
            range_upper=range_upper,
            skew_fraction=skew,
            volatility_category=category,
            risk_score=risk.composite,
            rationale=rationale,
            created_at=now or datetime.now(timezone.utc),
        )
        logger.debug("Quote %s bid=%s ask=%s", strategy.value, bid, ask)
        return signal

    def _sizes(
        self,
        strategy: StrategyType,
        inventory: InventoryState,
        context: VolatilityContext,
        risk: RiskScore,
    ) -> Tuple[Decimal, Decimal]:
        base = inventory.max_position * QUOTE_SIZE_FRACTION * context.size_multiplier
        if risk.composite > self.config.risk_downsize_threshold:
            base *= _RISK_DOWNSIZE_FACTOR
        bid_size = ask_size = base

        if strategy is StrategyType.INVENTORY_MANAGEMENT:
            if inventory.position > 0:
                bid_size, ask_size = base * _GROW_SIDE_FACTOR, base * _REDUCE_SIDE_FACTOR
            elif inventory.position < 0:
                bid_size, ask_size = base * _REDUCE_SIDE_FACTOR, base * _GROW_SIDE_FACTOR

        # Never quote past the position limit or the risk-recommended size.
        bid_room = max(Decimal('0'), inventory.max_position - inventory.position)
        ask_room = max(Decimal('0'), inventory.max_position + inventory.position)
        bid_size = min(bid_size, bid_room, risk.recommended_max_size).quantize(SIZE_QUANTUM, rounding=ROUND_FLOOR)
        ask_size = min(ask_size, ask_room, risk.recommended_max_size).quantize(SIZE_QUANTUM, rounding=ROUND_FLOOR)
        return bid_size, ask_size
