"""Rolling multi-timeframe volatility tracking."""
from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from decimal import Decimal, localcontext
from typing import Deque, Dict, Mapping, Optional, Tuple

from analysis.models import (
    PriceSnapshot,
    Source,
    VolatilityCategory,
    VolatilityContext,
    VolatilityTrend,
)
from constants import (
    DEFAULT_VOLATILITY_SPREAD_MULTIPLIER,
    DEFAULT_VOLATILITY_THRESHOLD_PCT,
    MEDIUM_WINDOW,
    MIN_WINDOW_SAMPLES,
    SHORT_WINDOW,
    TREND_NOISE_FLOOR,
    TREND_VOLATILE_RATIO,
    VOLATILITY_WINDOWS,
)

logger = logging.getLogger(__name__)

# Upper bounds (exclusive) in percent; anything at or above the last is Extreme.
CATEGORY_BREAKPOINTS: Tuple[Tuple[Decimal, VolatilityCategory], ...] = (
    (Decimal('2'), VolatilityCategory.LOW),
    (Decimal('5'), VolatilityCategory.MODERATE),
    (Decimal('10'), VolatilityCategory.HIGH),
)

VOLATILITY_FACTORS: Dict[VolatilityCategory, Decimal] = {
    VolatilityCategory.LOW: Decimal('1.0'),
    VolatilityCategory.MODERATE: Decimal('1.5'),
    VolatilityCategory.HIGH: Decimal('2.0'),
    VolatilityCategory.EXTREME: Decimal('3.0'),
}

SIZE_MULTIPLIERS: Dict[VolatilityCategory, Decimal] = {
    VolatilityCategory.LOW: Decimal('1.0'),
    VolatilityCategory.MODERATE: Decimal('0.8'),
    VolatilityCategory.HIGH: Decimal('0.5'),
    VolatilityCategory.EXTREME: Decimal('0.25'),
}

_MIN_MULTIPLIER = Decimal('1.0')
_MAX_MULTIPLIER = Decimal('3.0')
_SUM_PRECISION = 60


def categorize(volatility_pct: Decimal) -> VolatilityCategory:
    """Map a percent volatility onto its category."""
    for upper, category in CATEGORY_BREAKPOINTS:
        if volatility_pct < upper:
            return category
    return VolatilityCategory.EXTREME


class VolatilityWindow:
    """Time-bounded price window with running sums for O(1) statistics."""

    def __init__(self, name: str, length_seconds: int) -> None:
        self.name = name
        self.length = timedelta(seconds=length_seconds)
        self._samples: Deque[Tuple[datetime, Decimal]] = deque()
        self._sum = Decimal(0)
        self._sum_sq = Decimal(0)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def latest_timestamp(self) -> Optional[datetime]:
        return self._samples[-1][0] if self._samples else None

    @property
    def oldest_timestamp(self) -> Optional[datetime]:
        return self._samples[0][0] if self._samples else None

    def add(self, timestamp: datetime, price: Decimal) -> bool:
        if self._samples and timestamp < self._samples[-1][0]:
            return False
        self._samples.append((timestamp, price))
        with localcontext() as ctx:
            ctx.prec = _SUM_PRECISION
            self._sum += price
            self._sum_sq += price * price
        self.evict(timestamp)
        return True

    def evict(self, now: datetime) -> int:
        bound = now - self.length
        removed = 0
        with localcontext() as ctx:
            ctx.prec = _SUM_PRECISION
            while self._samples and self._samples[0][0] < bound:
                _, price = self._samples.popleft()
                self._sum -= price
                self._sum_sq -= price * price
                removed += 1
        if not self._samples:
            self._sum = Decimal(0)
            self._sum_sq = Decimal(0)
        return removed

    def volatility_pct(self) -> Optional[Decimal]:
        """Population standard deviation over mean, in percent."""
        count = len(self._samples)
        if count < MIN_WINDOW_SAMPLES:
            return None
        with localcontext() as ctx:
            ctx.prec = _SUM_PRECISION
            mean = self._sum / count
            if mean <= 0:
                return None
            variance = self._sum_sq / count - mean * mean
            if variance < 0:
                variance = Decimal(0)
            result = variance.sqrt() / mean * 100
        return +result


class VolatilityAnalyzer:
    """Maintains per-pair windows and derives a VolatilityContext on demand.

    Only snapshots from ``reference_source`` are observed so that the gap
    between venues is not counted as price movement.
    """

    def __init__(
        self,
        *,
        high_spread_multiplier: Decimal = DEFAULT_VOLATILITY_SPREAD_MULTIPLIER,
        volatility_threshold: Decimal = DEFAULT_VOLATILITY_THRESHOLD_PCT,
        reference_source: Source = Source.CEX,
        windows: Mapping[str, int] = VOLATILITY_WINDOWS,
        noise_floor: Decimal = TREND_NOISE_FLOOR,
    ) -> None:
        self._window_lengths = dict(windows)
        self._windows: Dict[str, Dict[str, VolatilityWindow]] = {}
        self._reference_source = reference_source
        self._volatility_threshold = volatility_threshold
        self._noise_floor = noise_floor
        self._spread_multipliers = dict(VOLATILITY_FACTORS)
        self._spread_multipliers[VolatilityCategory.HIGH] = max(
            _MIN_MULTIPLIER, min(_MAX_MULTIPLIER, high_spread_multiplier)
        )

    def _windows_for(self, pair: str) -> Dict[str, VolatilityWindow]:
        windows = self._windows.get(pair)
        if windows is None:
            windows = {
                name: VolatilityWindow(name, length)
                for name, length in self._window_lengths.items()
            }
            self._windows[pair] = windows
        return windows

    def observe(self, snapshot: PriceSnapshot) -> bool:
        if snapshot.source is not self._reference_source:
            return False
        if snapshot.price <= 0:
            logger.debug("Ignoring non-positive price for %s: %s", snapshot.pair, snapshot.price)
            return False
        accepted = False
        for window in self._windows_for(snapshot.pair).values():
            accepted = window.add(snapshot.timestamp, snapshot.price) or accepted
        if not accepted:
            logger.debug("Ignoring out-of-order snapshot #%s for %s", snapshot.sequence, snapshot.pair)
        return accepted

    def context(self, pair: str, now: Optional[datetime] = None) -> VolatilityContext:
        windows = self._windows_for(pair)
        stats: Dict[str, Optional[Decimal]] = {}
        counts: Dict[str, int] = {}
        for name, window in windows.items():
            if now is not None:
                window.evict(now)
            stats[name] = window.volatility_pct()
            counts[name] = len(window)

        available = [categorize(stat) for stat in stats.values() if stat is not None]
        if not available:
            category = VolatilityCategory.LOW
        else:
            category = max(available, key=lambda c: c.step)

        short_stat = stats.get(SHORT_WINDOW)
        return VolatilityContext(
            pair=pair,
            window_stats=stats,
            sample_counts=counts,
            category=category,
            trend=self._trend(short_stat, stats.get(MEDIUM_WINDOW)),
            spread_multiplier=self._spread_multipliers[category],
            size_multiplier=SIZE_MULTIPLIERS[category],
            above_threshold=short_stat is not None and short_stat > self._volatility_threshold,
        )

    def _trend(self, short: Optional[Decimal], medium: Optional[Decimal]) -> VolatilityTrend:
        if short is None or medium is None or medium == 0:
            return VolatilityTrend.STABLE
        ratio = short / medium
        if ratio > TREND_VOLATILE_RATIO:
            return VolatilityTrend.VOLATILE
        if ratio > 1 + self._noise_floor:
            return VolatilityTrend.INCREASING
        if ratio < 1 - self._noise_floor:
            return VolatilityTrend.DECREASING
        return VolatilityTrend.STABLE
