from datetime import datetime, timedelta, timezone
from decimal import Decimal

from analysis.models import (
    BreakerStatus,
    CircuitBreakerState,
    ExecutionOutcome,
    FailureReason,
    RejectedOpportunity,
    RejectionReason,
    SimulatedExecution,
)
from reports.session_stats import HealthReport, SessionStats, snapshot_age

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _execution(outcome, profit, reason=None):
    return SimulatedExecution(
        ref_id='x',
        ref_kind='opportunity',
        gas_used=156000,
        gas_price=Decimal('2'),
        slippage_bps=Decimal('6'),
        latency_ms=100,
        outcome=outcome,
        realized_profit=Decimal(profit),
        created_at=NOW,
        failure_reason=reason,
    )


def _breaker(name, status=BreakerStatus.CLOSED):
    return CircuitBreakerState(name=name, status=status, consecutive_failures=0, opened_at=None, cooldown=30)


def test_counters_and_rendered_summary():
    stats = SessionStats()
    stats.record_cycle()
    stats.record_cycle(RuntimeError('boom'))
    stats.record_detection(
        RejectedOpportunity(id='r', pair='WETH/USDC', reason=RejectionReason.UNPROFITABLE, detail='', created_at=NOW)
    )
    stats.record_signal(None)
    stats.record_execution(_execution(ExecutionOutcome.SUCCESS, '0.75'))
    stats.record_execution(_execution(ExecutionOutcome.FAILED, '-0.25', FailureReason.SLIPPAGE_EXCEEDED))
    stats.record_adapter_error('cex-api')

    assert stats.cycles == 2
    assert stats.consecutive_cycle_errors == 1
    assert stats.rejections['Unprofitable'] == 1
    assert stats.holds == 1
    assert stats.simulations == 2
    assert stats.simulation_success_rate == 50.0
    assert stats.simulated_profit == Decimal('0.50')

    text = "\n".join(stats.render())
    assert 'Unprofitable=1' in text
    assert 'SlippageExceeded=1' in text
    assert 'cex-api=1' in text

    stats.record_cycle()
    assert stats.consecutive_cycle_errors == 0


def test_health_report_flags_stale_feeds_and_open_breakers():
    healthy = HealthReport(
        dex_age_seconds=2.0,
        cex_age_seconds=1.0,
        breakers={'dex-rpc': _breaker('dex-rpc'), 'cex-api': _breaker('cex-api')},
        consecutive_cycle_errors=0,
        uptime_seconds=60,
    )
    assert healthy.healthy
    assert 'Health: OK' in healthy.render()

    stale = HealthReport(None, 1.0, {}, 0, 60)
    assert not stale.dex_healthy
    assert 'DEX never' in stale.render()

    tripped = HealthReport(2.0, 1.0, {'cex-api': _breaker('cex-api', BreakerStatus.OPEN)}, 0, 60)
    assert not tripped.healthy
    assert 'cex-api=Open' in tripped.render()


def test_snapshot_age():
    assert snapshot_age(None, NOW) is None
    assert snapshot_age(NOW - timedelta(seconds=12), NOW) == 12.0
    assert snapshot_age(NOW + timedelta(seconds=3), NOW) == 0.0
