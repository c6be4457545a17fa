#!/usr/bin/env python3
"""DEX vs CEX arbitrage detection with layered validation."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional, Tuple, Union

from analysis.models import (
    ArbitrageOpportunity,
    Direction,
    ExecutionPriority,
    GasFees,
    PriceSnapshot,
    RejectedOpportunity,
    RejectionReason,
    Source,
    VolatilityCategory,
    VolatilityContext,
)
from analysis.volatility import VOLATILITY_FACTORS
from config import AppConfig
from constants import MIN_BASE_RESERVE, MIN_QUOTE_RESERVE

logger = logging.getLogger(__name__)

DetectionResult = Union[ArbitrageOpportunity, RejectedOpportunity]

_BPS = Decimal('10000')
_HUNDRED = Decimal('100')

# Evaluation order doubles as rejection precedence.
VALIDATION_LAYERS: Tuple[Tuple[str, RejectionReason], ...] = (
    ('price_sanity', RejectionReason.PRICE_SANITY_FAILED),
    ('liquidity', RejectionReason.LIQUIDITY_INSUFFICIENT),
    ('gas_economics', RejectionReason.UNPROFITABLE),
    ('volatility_guard', RejectionReason.VOLATILITY_GUARD_TRIGGERED),
)


def effective_price(
    reserve_base: Decimal,
    reserve_quote: Decimal,
    trade_size: Decimal,
    buy_base: bool,
    fee_bps: Decimal = Decimal('0'),
) -> Optional[Decimal]:
    """Average execution price (quote per base) of a constant-product swap.

    Returns None when the trade cannot be filled against the reserves.
    """
    if reserve_base <= 0 or reserve_quote <= 0 or trade_size <= 0:
        return None
    fee_factor = 1 - fee_bps / _BPS
    if buy_base:
        if trade_size >= reserve_base:
            return None
        quote_in = reserve_quote * trade_size / ((reserve_base - trade_size) * fee_factor)
        return quote_in / trade_size
    amount_in = trade_size * fee_factor
    quote_out = reserve_quote * amount_in / (reserve_base + amount_in)
    return quote_out / trade_size


class OpportunityDetector:
    def __init__(self, config: AppConfig):
        self.config = config
        # Last price per source that passed sanity, with its snapshot time.
        self._references: Dict[Source, Tuple[Decimal, datetime]] = {}

    @property
    def references(self) -> Dict[Source, Decimal]:
        return {source: price for source, (price, _) in self._references.items()}

    def evaluate(
        self,
        dex: PriceSnapshot,
        cex: PriceSnapshot,
        gas_fees: GasFees,
        context: VolatilityContext,
        now: Optional[datetime] = None,
    ) -> DetectionResult:
        """Compare the latest DEX and CEX snapshots and return an opportunity or a rejection."""
        now = now or datetime.now(timezone.utc)
        cfg = self.config
        pair = dex.pair

        stale = self._staleness_detail(dex, cex, now)
        if stale:
            return self._reject(pair, RejectionReason.STALE_SNAPSHOT, stale, now)

        if dex.reserve_in is None or dex.reserve_out is None:
            return self._reject(pair, RejectionReason.LIQUIDITY_INSUFFICIENT, "DEX snapshot carries no reserves", now)

        cex_price = cex.price
        spot = dex.price
        if spot <= 0 or cex_price <= 0:
            return self._reject(pair, RejectionReason.PRICE_SANITY_FAILED, "non-positive price", now)

        # Runs before the spread gates so the reference follows the market on quiet cycles too.
        if cfg.safety_checks_enabled:
            sanity = self._check_price_sanity(spot, cex_price, now)
            if sanity[0]:
                self._references[Source.DEX] = (spot, dex.timestamp)
                self._references[Source.CEX] = (cex_price, cex.timestamp)
        else:
            sanity = (True, "skipped")

        if spot == cex_price:
            return self._reject(pair, RejectionReason.BELOW_THRESHOLD, "venues agree", now, spread_pct=Decimal('0'))

        buy_on_dex = spot < cex_price
        direction = Direction.BUY_DEX_SELL_CEX if buy_on_dex else Direction.BUY_CEX_SELL_DEX
        dex_effective = effective_price(dex.reserve_in, dex.reserve_out, cfg.trade_size, buy_on_dex, cfg.pool_fee_bps)
        if dex_effective is None:
            return self._reject(
                pair, RejectionReason.LIQUIDITY_INSUFFICIENT, "trade size exhausts pool reserves", now, direction=direction
            )

        spread_pct = abs(dex_effective - cex_price) / cex_price * _HUNDRED
        if (dex_effective < cex_price) != buy_on_dex:
            return self._reject(
                pair,
                RejectionReason.BELOW_THRESHOLD,
                "pool impact consumes the spread",
                now,
                direction=direction,
                spread_pct=spread_pct,
            )
        if spread_pct < cfg.min_spread_pct:
            return self._reject(
                pair,
                RejectionReason.BELOW_THRESHOLD,
                f"spread {spread_pct:.4f}% < {cfg.min_spread_pct}%",
                now,
                direction=direction,
                spread_pct=spread_pct,
            )

        gross_profit = cfg.trade_size * abs(cex_price - dex_effective)
        gas_cost = gas_fees.total * cfg.gas_units * cex_price
        slippage_bps = cfg.slippage_estimate_bps * VOLATILITY_FACTORS[context.category]
        slippage_estimate = cfg.trade_size * cex_price * slippage_bps / _BPS
        net_profit = gross_profit - gas_cost - slippage_estimate

        checks: Dict[str, Tuple[bool, str]] = {'price_sanity': sanity}
        if cfg.safety_checks_enabled:
            checks['liquidity'] = self._check_liquidity(dex.reserve_in, dex.reserve_out)
        else:
            checks['liquidity'] = (True, "skipped")
        checks['gas_economics'] = (
            net_profit >= cfg.min_profit,
            f"net {net_profit:.4f} vs min {cfg.min_profit} (gas {gas_cost:.4f}, slippage {slippage_estimate:.4f})",
        )
        checks['volatility_guard'] = self._check_volatility_guard(net_profit, context)

        flags = {name: passed for name, (passed, _) in checks.items()}

        for name, reason in VALIDATION_LAYERS:
            passed, detail = checks[name]
            if not passed:
                return self._reject(
                    pair,
                    reason,
                    detail,
                    now,
                    direction=direction,
                    spread_pct=spread_pct,
                    net_profit=net_profit,
                    flags=flags,
                )

        opportunity = ArbitrageOpportunity(
            id=uuid.uuid4().hex,
            pair=pair,
            direction=direction,
            trade_size=cfg.trade_size,
            dex_price_spot=spot,
            dex_price_effective=dex_effective,
            cex_price=cex_price,
            spread_pct=spread_pct,
            price_impact_pct=abs(dex_effective - spot) / spot * _HUNDRED,
            gross_profit=gross_profit,
            gas_cost=gas_cost,
            slippage_estimate=slippage_estimate,
            net_profit=net_profit,
            roi=net_profit / (cfg.trade_size * cex_price) * _HUNDRED,
            priority=self._priority(net_profit),
            validation_flags=flags,
            volatility_category=context.category,
            created_at=now,
        )
        logger.info(
            "Opportunity %s %s net=%.4f roi=%.4f%%",
            opportunity.direction.value,
            pair,
            net_profit,
            opportunity.roi,
        )
        return opportunity

    def _staleness_detail(self, dex: PriceSnapshot, cex: PriceSnapshot, now: datetime) -> Optional[str]:
        skew = abs((dex.timestamp - cex.timestamp).total_seconds())
        if skew > self.config.max_snapshot_skew:
            return f"DEX/CEX snapshots {skew:.1f}s apart (max {self.config.max_snapshot_skew}s)"
        for snapshot in (dex, cex):
            age = (now - snapshot.timestamp).total_seconds()
            if age > self.config.price_staleness:
                return f"{snapshot.source.value} snapshot is {age:.1f}s old"
        return None

    def _check_price_sanity(self, dex_price: Decimal, cex_price: Decimal, now: datetime) -> Tuple[bool, str]:
        bound = self.config.max_price_deviation_pct
        venue_gap = abs(dex_price - cex_price) / cex_price * _HUNDRED
        if venue_gap > bound:
            return False, f"DEX/CEX differ by {venue_gap:.2f}% (max {bound}%)"
        for source, price in ((Source.DEX, dex_price), (Source.CEX, cex_price)):
            if source not in self._references:
                continue
            reference, observed_at = self._references[source]
            # An expired reference no longer constrains the price.
            if (now - observed_at).total_seconds() > self.config.sanity_reference_max_age:
                continue
            deviation = abs(price - reference) / reference * _HUNDRED
            if deviation > bound:
                return False, f"{source.value} moved {deviation:.2f}% from reference {reference}"
        return True, "ok"

    def _check_liquidity(self, reserve_base: Decimal, reserve_quote: Decimal) -> Tuple[bool, str]:
        if reserve_base < MIN_BASE_RESERVE or reserve_quote < MIN_QUOTE_RESERVE:
            return False, f"pool reserves too thin ({reserve_base} base / {reserve_quote} quote)"
        limit = reserve_base * self.config.max_pool_fraction
        if self.config.trade_size > limit:
            return False, f"trade size {self.config.trade_size} exceeds {limit:.4f} ({self.config.max_pool_fraction:%} of reserves)"
        return True, "ok"

    def _check_volatility_guard(self, net_profit: Decimal, context: VolatilityContext) -> Tuple[bool, str]:
        if context.category is not VolatilityCategory.EXTREME:
            return True, "ok"
        required = self.config.min_profit * context.spread_multiplier
        if net_profit > required:
            return True, "extreme volatility, profit clears scaled threshold"
        return False, f"extreme volatility requires net > {required}"

    def _priority(self, net_profit: Decimal) -> ExecutionPriority:
        min_profit = self.config.min_profit
        if net_profit >= min_profit * 10:
            return ExecutionPriority.IMMEDIATE
        if net_profit >= min_profit * 5:
            return ExecutionPriority.HIGH
        if net_profit >= min_profit * 2:
            return ExecutionPriority.MEDIUM
        return ExecutionPriority.LOW

    def _reject(
        self,
        pair: str,
        reason: RejectionReason,
        detail: str,
        now: datetime,
        *,
        direction: Optional[Direction] = None,
        spread_pct: Optional[Decimal] = None,
        net_profit: Optional[Decimal] = None,
        flags: Optional[Dict[str, bool]] = None,
    ) -> RejectedOpportunity:
        logger.info("Rejected %s: %s (%s)", pair, reason.value, detail)
        return RejectedOpportunity(
            id=uuid.uuid4().hex,
            pair=pair,
            reason=reason,
            detail=detail,
            created_at=now,
            direction=direction,
            spread_pct=spread_pct,
            net_profit=net_profit,
            validation_flags=dict(flags or {}),
        )
