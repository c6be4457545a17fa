"""Composite risk scoring from inventory, liquidity and volatility exposure."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Tuple

from analysis.models import InventoryState, RiskScore, VolatilityCategory, VolatilityContext

VOLATILITY_RISK_WEIGHTS: Dict[VolatilityCategory, Decimal] = {
    VolatilityCategory.LOW: Decimal('0.1'),
    VolatilityCategory.MODERATE: Decimal('0.4'),
    VolatilityCategory.HIGH: Decimal('0.7'),
    VolatilityCategory.EXTREME: Decimal('1.0'),
}

_ZERO = Decimal('0')
_ONE = Decimal('1')
_THIRD = _ONE / 3
DEFAULT_WEIGHTS: Tuple[Decimal, Decimal, Decimal] = (_THIRD, _THIRD, _ONE - 2 * _THIRD)


def _clamp_unit(value: Decimal) -> Decimal:
    return max(_ZERO, min(_ONE, value))


class RiskScorer:
    def __init__(self, weights: Tuple[Decimal, Decimal, Decimal] = DEFAULT_WEIGHTS) -> None:
        if any(w < 0 for w in weights):
            raise ValueError("risk weights must be non-negative")
        if sum(weights) <= 0:
            raise ValueError("risk weights must not all be zero")
        self.weights = weights

    def score(
        self,
        inventory: InventoryState,
        trade_size: Decimal,
        pool_reserve: Decimal,
        context: VolatilityContext,
    ) -> RiskScore:
        if inventory.max_position > 0:
            inventory_risk = _clamp_unit(abs(inventory.position) / inventory.max_position)
        else:
            inventory_risk = _ONE
        if pool_reserve > 0:
            liquidity_risk = _clamp_unit(trade_size / pool_reserve)
        else:
            liquidity_risk = _ONE
        volatility_risk = VOLATILITY_RISK_WEIGHTS[context.category]

        w_inv, w_liq, w_vol = self.weights
        weighted = (w_inv * inventory_risk + w_liq * liquidity_risk + w_vol * volatility_risk) / sum(self.weights)
        composite = max(_ZERO, min(Decimal('100'), weighted * 100))

        headroom = _ONE - composite / 100
        return RiskScore(
            inventory_risk=inventory_risk,
            liquidity_risk=liquidity_risk,
            volatility_risk=volatility_risk,
            composite=composite,
            recommended_max_size=inventory.max_position * context.size_multiplier * headroom,
        )
