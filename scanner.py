# scanner.py
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, TypeVar

from analysis.detector import DetectionResult, OpportunityDetector
from analysis.inventory import InventoryLedger
from analysis.market_making import MarketMakingEngine
from analysis.models import (
    ArbitrageOpportunity,
    GasFees,
    MarketMakingSignal,
    PriceSnapshot,
    RejectedOpportunity,
    RiskScore,
    SimulatedExecution,
    VolatilityContext,
)
from analysis.risk import RiskScorer
from analysis.volatility import VolatilityAnalyzer
from config import AppConfig
from constants import (
    C_BLUE,
    C_GREEN,
    C_RED,
    C_RESET,
    C_YELLOW,
    CEX_POLL_INTERVAL_SECONDS,
    DEX_POLL_INTERVAL_SECONDS,
    SHORT_WINDOW,
)
from errors import AdapterError, CircuitOpenError, RetryCancelled, RetryExhausted
from reports.session_stats import HealthReport, SessionStats, snapshot_age
from services.cex_client import CexPriceClient
from services.circuit_breaker import CircuitBreaker
from services.pool_client import PoolClient
from services.retry import RetryPolicy, call_with_retry, interruptible_sleep
from services.trade_simulator import TradeSimulator
from storage import JsonlRecordWriter

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class PriceBoard:
    """Latest value per feed. Each slot has exactly one writer: its poller."""
    dex: Optional[PriceSnapshot] = None
    cex: Optional[PriceSnapshot] = None
    gas_fees: Optional[GasFees] = None


@dataclass
class CycleResult:
    detection: DetectionResult
    context: VolatilityContext
    risk: RiskScore
    signal: Optional[MarketMakingSignal] = None
    executions: List[SimulatedExecution] = field(default_factory=list)


class SignalScanner:
    def __init__(
        self,
        config: AppConfig,
        pool_client: PoolClient,
        cex_client: CexPriceClient,
        writer: JsonlRecordWriter,
        *,
        simulator: Optional[TradeSimulator] = None,
        ledger: Optional[InventoryLedger] = None,
        stop_event: Optional[asyncio.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.pool_client = pool_client
        self.cex_client = cex_client
        self.writer = writer
        self.board = PriceBoard()
        self.analyzer = VolatilityAnalyzer(
            high_spread_multiplier=config.volatility_spread_multiplier,
            volatility_threshold=config.volatility_threshold,
        )
        self.detector = OpportunityDetector(config)
        self.scorer = RiskScorer(config.risk_weights)
        self.engine = MarketMakingEngine(config)
        if simulator is None and config.execution_simulation_enabled:
            simulator = TradeSimulator(config)
        self.simulator = simulator
        self.ledger = ledger or InventoryLedger(config.max_position)
        self.stats = SessionStats()
        self.stop_event = stop_event or asyncio.Event()
        self.retry_policy = RetryPolicy.from_config(config)
        self.dex_breaker = CircuitBreaker(
            'dex-rpc', threshold=config.breaker_threshold, cooldown=config.breaker_cooldown, clock=clock
        )
        self.cex_breaker = CircuitBreaker(
            'cex-api', threshold=config.breaker_threshold, cooldown=config.breaker_cooldown, clock=clock
        )

    def stop(self) -> None:
        if not self.stop_event.is_set():
            print(f"\n{C_YELLOW}Shutdown requested; stopping pollers...{C_RESET}")
        self.stop_event.set()

    async def start(self):
        """Runs both pollers and the detection loop until stop() is called."""
        tasks = [
            asyncio.create_task(self._poll_dex(), name='dex-poller'),
            asyncio.create_task(self._poll_cex(), name='cex-poller'),
            asyncio.create_task(self._run_main_loop(), name='detection-loop'),
        ]
        try:
            await self.stop_event.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._print_summary()

    async def _guarded(
        self,
        breaker: CircuitBreaker,
        operation: Callable[[], Awaitable[T]],
        description: str,
    ) -> Optional[T]:
        """Run an adapter call through retry + breaker; failures are logged and yield None."""
        try:
            return await call_with_retry(
                operation,
                policy=self.retry_policy,
                breaker=breaker,
                description=description,
                stop_event=self.stop_event,
            )
        except CircuitOpenError as exc:
            logger.debug("%s skipped: %s", description, exc)
        except (AdapterError, RetryExhausted) as exc:
            self.stats.record_adapter_error(breaker.name)
            logger.warning("%s failed: %s", description, exc)
            print(f"{C_RED}{description} failed: {exc}{C_RESET}")
        return None

    async def _poll_dex(self):
        try:
            while not self.stop_event.is_set():
                snapshot = await self._guarded(self.dex_breaker, self.pool_client.fetch_snapshot, 'DEX reserves')
                if snapshot is not None:
                    self.board.dex = snapshot
                fees = await self._guarded(self.dex_breaker, self.pool_client.fetch_gas_fees, 'DEX gas fees')
                if fees is not None:
                    self.board.gas_fees = fees
                if await interruptible_sleep(DEX_POLL_INTERVAL_SECONDS, self.stop_event):
                    break
        except RetryCancelled:
            logger.info("DEX poller cancelled during backoff")

    async def _poll_cex(self):
        try:
            while not self.stop_event.is_set():
                snapshot = await self._guarded(self.cex_breaker, self.cex_client.fetch_snapshot, 'CEX ticker')
                if snapshot is not None:
                    self.board.cex = snapshot
                    self.analyzer.observe(snapshot)
                if await interruptible_sleep(CEX_POLL_INTERVAL_SECONDS, self.stop_event):
                    break
        except RetryCancelled:
            logger.info("CEX poller cancelled during backoff")

    async def _run_main_loop(self):
        """The detection loop; no per-cycle error stops it."""
        while not self.stop_event.is_set():
            try:
                await self.run_cycle()
                self.stats.record_cycle()
            except Exception as e:
                logger.exception("Detection cycle failed")
                print(f"{C_RED}Error during detection cycle: {e}{C_RESET}")
                self.stats.record_cycle(e)

            if self.stats.cycles % self.config.stats_interval == 0:
                self._print_summary()
            if await interruptible_sleep(self.config.interval, self.stop_event):
                break

    async def run_cycle(self, now: Optional[datetime] = None) -> Optional[CycleResult]:
        """One pass over the latest snapshots: detect, score, quote and optionally simulate."""
        dex, cex, gas_fees = self.board.dex, self.board.cex, self.board.gas_fees
        if dex is None or cex is None or gas_fees is None:
            print(f"{C_YELLOW}Waiting for price feeds (DEX: {'ok' if dex else 'pending'}, "
                  f"CEX: {'ok' if cex else 'pending'}, gas: {'ok' if gas_fees else 'pending'})...{C_RESET}")
            return None

        now = now or datetime.now(timezone.utc)
        context = self.analyzer.context(self.config.pair, now)
        if context.above_threshold:
            self.stats.record_volatility_alert()
            short_stat = context.window_stats.get(SHORT_WINDOW)
            logger.warning(
                "%s volatility %.2f%% over %s exceeds alert threshold %s%%",
                self.config.pair, short_stat, SHORT_WINDOW, self.config.volatility_threshold,
            )
            print(
                f"{C_YELLOW}[VOL] {SHORT_WINDOW} volatility {short_stat:.2f}% above "
                f"{self.config.volatility_threshold}% ({context.category.value}){C_RESET}"
            )
        detection = self.detector.evaluate(dex, cex, gas_fees, context, now)
        self.stats.record_detection(detection)
        if isinstance(detection, ArbitrageOpportunity):
            await self.writer.write('opportunities', 'opportunity', detection)
            self._print_opportunity(detection)
        else:
            await self.writer.write('opportunities', 'rejection', detection)
            self._print_rejection(detection)

        inventory = self.ledger.snapshot()
        risk = self.scorer.score(inventory, self.config.trade_size, dex.reserve_in or 0, context)
        result = CycleResult(detection=detection, context=context, risk=risk)

        if self.config.market_making_enabled:
            signal = self.engine.quote(cex.price, inventory, context, risk, now)
            self.stats.record_signal(signal)
            result.signal = signal
            if signal is not None:
                await self.writer.write('signals', 'signal', signal)
                print(
                    f"{C_BLUE}[MM]{C_RESET} {signal.strategy.value} bid {signal.bid:.2f} / ask {signal.ask:.2f} "
                    f"({signal.spread_bps:.1f} bps, risk {signal.risk_score:.1f})"
                )
            else:
                print(f"{C_YELLOW}[MM] Holding: {context.category.value} volatility, risk {risk.composite:.1f}{C_RESET}")

        if self.simulator is not None:
            targets = []
            if isinstance(detection, ArbitrageOpportunity):
                targets.append(detection)
            if result.signal is not None:
                targets.append(result.signal)
            for target in targets:
                execution = self.simulator.simulate(
                    target,
                    pool_reserve=dex.reserve_in or 0,
                    gas_fees=gas_fees,
                    risk=risk,
                )
                await self.ledger.apply(execution)
                await self.writer.write('executions', 'execution', execution)
                self.stats.record_execution(execution)
                result.executions.append(execution)
        return result

    def health(self) -> HealthReport:
        now = datetime.now(timezone.utc)
        return HealthReport(
            dex_age_seconds=snapshot_age(self.board.dex.timestamp if self.board.dex else None, now),
            cex_age_seconds=snapshot_age(self.board.cex.timestamp if self.board.cex else None, now),
            breakers={b.name: b.snapshot() for b in (self.dex_breaker, self.cex_breaker)},
            consecutive_cycle_errors=self.stats.consecutive_cycle_errors,
            uptime_seconds=self.stats.uptime_seconds,
        )

    def _print_opportunity(self, opp: ArbitrageOpportunity):
        print(
            f"{C_GREEN}[ARB] {opp.direction.value} {opp.pair} | DEX {opp.dex_price_effective:.4f} vs CEX {opp.cex_price:.4f} "
            f"| spread {opp.spread_pct:.3f}% | net ${opp.net_profit:.4f} (ROI {opp.roi:.3f}%) | {opp.priority.value}{C_RESET}"
        )

    def _print_rejection(self, rejection: RejectedOpportunity):
        spread = f" spread {rejection.spread_pct:.3f}%" if rejection.spread_pct is not None else ""
        print(f"{C_YELLOW}[ARB] rejected: {rejection.reason.value}{spread} ({rejection.detail}){C_RESET}")

    def _print_summary(self):
        print("\n" + "=" * 50)
        print(f"{C_BLUE}Session summary{C_RESET}")
        for line in self.stats.render():
            print(line)
        print(self.health().render())
        inventory = self.ledger.snapshot()
        print(f"Inventory: {inventory.position} / {inventory.max_position} ETH")
        print("=" * 50)
