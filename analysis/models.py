#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional


class Source(str, Enum):
    DEX = 'DEX'
    CEX = 'CEX'


class Direction(str, Enum):
    BUY_DEX_SELL_CEX = 'BuyDexSellCex'
    BUY_CEX_SELL_DEX = 'BuyCexSellDex'


class VolatilityCategory(str, Enum):
    LOW = 'Low'
    MODERATE = 'Moderate'
    HIGH = 'High'
    EXTREME = 'Extreme'

    @property
    def step(self) -> int:
        return _CATEGORY_ORDER.index(self)


_CATEGORY_ORDER = [
    VolatilityCategory.LOW,
    VolatilityCategory.MODERATE,
    VolatilityCategory.HIGH,
    VolatilityCategory.EXTREME,
]


class VolatilityTrend(str, Enum):
    INCREASING = 'Increasing'
    DECREASING = 'Decreasing'
    STABLE = 'Stable'
    VOLATILE = 'Volatile'


class RejectionReason(str, Enum):
    STALE_SNAPSHOT = 'StaleSnapshot'
    BELOW_THRESHOLD = 'BelowThreshold'
    PRICE_SANITY_FAILED = 'PriceSanityFailed'
    LIQUIDITY_INSUFFICIENT = 'LiquidityInsufficient'
    UNPROFITABLE = 'Unprofitable'
    VOLATILITY_GUARD_TRIGGERED = 'VolatilityGuardTriggered'


class ExecutionPriority(str, Enum):
    IMMEDIATE = 'Immediate'
    HIGH = 'High'
    MEDIUM = 'Medium'
    LOW = 'Low'


class StrategyType(str, Enum):
    TIGHT_SPREAD = 'TightSpread'
    WIDE_SPREAD = 'WideSpread'
    INVENTORY_MANAGEMENT = 'InventoryManagement'
    TREND_FOLLOWING = 'TrendFollowing'
    VOLATILITY_ADAPTIVE = 'VolatilityAdaptive'


class ExecutionOutcome(str, Enum):
    SUCCESS = 'Success'
    FAILED = 'Failed'


class FailureReason(str, Enum):
    GAS_PRICE_EXCEEDED = 'GasPriceExceeded'
    SLIPPAGE_EXCEEDED = 'SlippageExceeded'
    SIMULATED_NETWORK_FAILURE = 'SimulatedNetworkFailure'
    RISK_CEILING_EXCEEDED = 'RiskCeilingExceeded'


class BreakerStatus(str, Enum):
    CLOSED = 'Closed'
    OPEN = 'Open'
    HALF_OPEN = 'HalfOpen'


@dataclass(frozen=True)
class PriceSnapshot:
    """A timestamped price observation from one venue.

    For DEX snapshots ``reserve_in`` is the base (WETH) reserve and
    ``reserve_out`` the quote (USD stable) reserve, both decimal-adjusted.
    """
    source: Source
    pair: str
    price: Decimal
    timestamp: datetime
    sequence: int
    reserve_in: Optional[Decimal] = None
    reserve_out: Optional[Decimal] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class GasFees:
    """EIP-1559 fee components in native units (ETH) per gas unit."""
    base_fee: Decimal
    priority_fee: Decimal

    @property
    def total(self) -> Decimal:
        return self.base_fee + self.priority_fee


@dataclass(frozen=True)
class VolatilityContext:
    pair: str
    window_stats: Dict[str, Optional[Decimal]]
    sample_counts: Dict[str, int]
    category: VolatilityCategory
    trend: VolatilityTrend
    spread_multiplier: Decimal
    size_multiplier: Decimal
    above_threshold: bool = False


@dataclass(frozen=True)
class ArbitrageOpportunity:
    """A validated DEX/CEX price discrepancy."""
    id: str
    pair: str
    direction: Direction
    trade_size: Decimal
    dex_price_spot: Decimal
    dex_price_effective: Decimal
    cex_price: Decimal
    spread_pct: Decimal
    price_impact_pct: Decimal
    gross_profit: Decimal
    gas_cost: Decimal
    slippage_estimate: Decimal
    net_profit: Decimal
    roi: Decimal
    priority: ExecutionPriority
    validation_flags: Dict[str, bool]
    volatility_category: VolatilityCategory
    created_at: datetime


@dataclass(frozen=True)
class RejectedOpportunity:
    id: str
    pair: str
    reason: RejectionReason
    detail: str
    created_at: datetime
    direction: Optional[Direction] = None
    spread_pct: Optional[Decimal] = None
    net_profit: Optional[Decimal] = None
    validation_flags: Dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True)
class InventoryState:
    position: Decimal
    max_position: Decimal

    @property
    def skew_fraction(self) -> Decimal:
        if self.max_position <= 0:
            return Decimal('0')
        skew = self.position / self.max_position
        return max(Decimal('-1'), min(Decimal('1'), skew))

    def with_fill(self, delta: Decimal) -> 'InventoryState':
        return replace(self, position=self.position + delta)


@dataclass(frozen=True)
class RiskScore:
    inventory_risk: Decimal
    liquidity_risk: Decimal
    volatility_risk: Decimal
    composite: Decimal
    recommended_max_size: Decimal


@dataclass(frozen=True)
class MarketMakingSignal:
    id: str
    pair: str
    strategy: StrategyType
    fair_value: Decimal
    bid: Decimal
    ask: Decimal
    bid_size: Decimal
    ask_size: Decimal
    spread_bps: Decimal
    range_lower: Decimal
    range_upper: Decimal
    skew_fraction: Decimal
    volatility_category: VolatilityCategory
    risk_score: Decimal
    rationale: str
    created_at: datetime


@dataclass(frozen=True)
class SimulatedExecution:
    ref_id: str
    ref_kind: str
    gas_used: int
    gas_price: Decimal
    slippage_bps: Decimal
    latency_ms: int
    outcome: ExecutionOutcome
    realized_profit: Decimal
    created_at: datetime
    failure_reason: Optional[FailureReason] = None
    position_delta: Decimal = Decimal('0')

    @property
    def succeeded(self) -> bool:
        return self.outcome is ExecutionOutcome.SUCCESS


@dataclass(frozen=True)
class CircuitBreakerState:
    name: str
    status: BreakerStatus
    consecutive_failures: int
    opened_at: Optional[float]
    cooldown: float
