"""Session counters and feed health for the console summary."""
from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from analysis.models import (
    ArbitrageOpportunity,
    CircuitBreakerState,
    BreakerStatus,
    MarketMakingSignal,
    RejectedOpportunity,
    SimulatedExecution,
)
from constants import FEED_HEALTH_MAX_AGE_SECONDS, MAX_CONSECUTIVE_CYCLE_ERRORS


@dataclass
class SessionStats:
    started_at: float = field(default_factory=time.time)
    cycles: int = 0
    cycle_errors: int = 0
    consecutive_cycle_errors: int = 0
    opportunities: int = 0
    rejections: Counter = field(default_factory=Counter)
    signals: int = 0
    strategies: Counter = field(default_factory=Counter)
    holds: int = 0
    simulations_succeeded: int = 0
    simulation_failures: Counter = field(default_factory=Counter)
    simulated_profit: Decimal = Decimal('0')
    adapter_errors: Counter = field(default_factory=Counter)
    best_net_profit: Optional[Decimal] = None
    volatility_alerts: int = 0

    def record_cycle(self, error: Optional[BaseException] = None) -> None:
        self.cycles += 1
        if error is None:
            self.consecutive_cycle_errors = 0
        else:
            self.cycle_errors += 1
            self.consecutive_cycle_errors += 1

    def record_detection(self, result) -> None:
        if isinstance(result, ArbitrageOpportunity):
            self.opportunities += 1
            if self.best_net_profit is None or result.net_profit > self.best_net_profit:
                self.best_net_profit = result.net_profit
        elif isinstance(result, RejectedOpportunity):
            self.rejections[result.reason.value] += 1

    def record_signal(self, signal: Optional[MarketMakingSignal]) -> None:
        if signal is None:
            self.holds += 1
            return
        self.signals += 1
        self.strategies[signal.strategy.value] += 1

    def record_execution(self, execution: SimulatedExecution) -> None:
        if execution.succeeded:
            self.simulations_succeeded += 1
        else:
            self.simulation_failures[execution.failure_reason.value if execution.failure_reason else 'Unknown'] += 1
        self.simulated_profit += execution.realized_profit

    def record_volatility_alert(self) -> None:
        self.volatility_alerts += 1

    def record_adapter_error(self, source: str) -> None:
        self.adapter_errors[source] += 1

    @property
    def simulations(self) -> int:
        return self.simulations_succeeded + sum(self.simulation_failures.values())

    @property
    def simulation_success_rate(self) -> Optional[float]:
        total = self.simulations
        return self.simulations_succeeded / total * 100 if total else None

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at

    def render(self) -> List[str]:
        uptime_str = time.strftime('%H:%M:%S', time.gmtime(self.uptime_seconds))
        lines = [
            f"Uptime: {uptime_str} | Cycles: {self.cycles} (errors: {self.cycle_errors})",
            f"Opportunities: {self.opportunities} | Rejections: {sum(self.rejections.values())}",
        ]
        if self.rejections:
            lines.append("  " + ", ".join(f"{reason}={count}" for reason, count in self.rejections.most_common()))
        if self.best_net_profit is not None:
            lines.append(f"Best net profit: ${self.best_net_profit:.4f}")
        lines.append(f"Signals: {self.signals} | Holds: {self.holds}")
        if self.strategies:
            lines.append("  " + ", ".join(f"{name}={count}" for name, count in self.strategies.most_common()))
        if self.simulations:
            lines.append(
                f"Simulations: {self.simulations} | Success: {self.simulation_success_rate:.1f}% | "
                f"Simulated P&L: ${self.simulated_profit:.4f}"
            )
            if self.simulation_failures:
                lines.append("  " + ", ".join(f"{reason}={count}" for reason, count in self.simulation_failures.most_common()))
        if self.volatility_alerts:
            lines.append(f"Volatility alerts: {self.volatility_alerts}")
        if self.adapter_errors:
            lines.append("Adapter errors: " + ", ".join(f"{src}={count}" for src, count in sorted(self.adapter_errors.items())))
        return lines


@dataclass
class HealthReport:
    dex_age_seconds: Optional[float]
    cex_age_seconds: Optional[float]
    breakers: Dict[str, CircuitBreakerState]
    consecutive_cycle_errors: int
    uptime_seconds: float

    @staticmethod
    def _feed_ok(age: Optional[float]) -> bool:
        return age is not None and age <= FEED_HEALTH_MAX_AGE_SECONDS

    @property
    def dex_healthy(self) -> bool:
        return self._feed_ok(self.dex_age_seconds)

    @property
    def cex_healthy(self) -> bool:
        return self._feed_ok(self.cex_age_seconds)

    @property
    def healthy(self) -> bool:
        return (
            self.dex_healthy
            and self.cex_healthy
            and self.consecutive_cycle_errors < MAX_CONSECUTIVE_CYCLE_ERRORS
            and all(state.status is BreakerStatus.CLOSED for state in self.breakers.values())
        )

    def render(self) -> str:
        def _age(age: Optional[float]) -> str:
            return "never" if age is None else f"{age:.0f}s ago"

        breakers = ", ".join(f"{name}={state.status.value}" for name, state in sorted(self.breakers.items()))
        return (
            f"Health: {'OK' if self.healthy else 'DEGRADED'} | DEX {_age(self.dex_age_seconds)} | "
            f"CEX {_age(self.cex_age_seconds)} | breakers: {breakers or 'none'}"
        )


def snapshot_age(timestamp: Optional[datetime], now: Optional[datetime] = None) -> Optional[float]:
    if timestamp is None:
        return None
    now = now or datetime.now(timezone.utc)
    return max(0.0, (now - timestamp).total_seconds())
