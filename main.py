#!/usr/bin/env python3
import asyncio
import logging
import signal
import sys

import aiohttp
from dotenv import load_dotenv

import constants
from config import AppConfig, load_config
from errors import AdapterError, CircuitOpenError, ConfigurationError, RetryExhausted
from scanner import SignalScanner
from services.cex_client import CexPriceClient
from services.pool_client import PoolClient
from services.retry import RetryPolicy, call_with_retry
from storage import JsonlRecordWriter


async def run(config: AppConfig) -> int:
    """Validate the data sources, then run the scanner until shutdown. Returns the exit code."""
    async with aiohttp.ClientSession(headers={'User-Agent': constants.HTTP_USER_AGENT}) as session:
        pool_client = PoolClient(
            session,
            rpc_url=config.rpc_url,
            pool_address=config.pool_address,
            pair=config.pair,
            timeout=constants.DEFAULT_REQUEST_TIMEOUT_SECONDS,
        )
        cex_client = CexPriceClient(session, config.pair, timeout=constants.DEFAULT_REQUEST_TIMEOUT_SECONDS)
        policy = RetryPolicy.from_config(config)
        writer = JsonlRecordWriter(config.output_dir)
        scanner = SignalScanner(config, pool_client, cex_client, writer)

        print(f"Validating pool {constants.C_BLUE}{config.pool_address}{constants.C_RESET}...")
        try:
            await call_with_retry(
                pool_client.validate_pool, policy=policy, breaker=scanner.dex_breaker, description='pool validation'
            )
            first_quote = await call_with_retry(
                cex_client.fetch_snapshot, policy=policy, breaker=scanner.cex_breaker, description='CEX connectivity'
            )
        except (AdapterError, CircuitOpenError, RetryExhausted) as exc:
            print(f"{constants.C_RED}Initialization failed: {exc}{constants.C_RESET}")
            return 1
        print(f"{constants.C_GREEN}Pool validated; CEX {config.pair} at {first_quote.price}.{constants.C_RESET}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scanner.stop)
            except NotImplementedError:  # pragma: no cover - platform dependent
                pass

        _print_banner(config)
        await scanner.start()
    return 0


def _print_banner(config: AppConfig) -> None:
    print("\n" + "=" * 50)
    print(f"Monitoring {config.pair} | trade size {config.trade_size} ETH | min profit ${config.min_profit}")
    print(f"Safety checks: {'on' if config.safety_checks_enabled else 'OFF'} | "
          f"Market making: {'on' if config.market_making_enabled else 'off'} | "
          f"Execution simulation: {'on' if config.execution_simulation_enabled else 'off'}")
    print(f"Output: {config.output_dir}/ | Ctrl+C to stop")
    print("=" * 50)


def main() -> None:
    """The main synchronous entry point for the application."""
    load_dotenv()
    try:
        config = load_config()
    except ConfigurationError as exc:
        print(f"{constants.C_RED}Configuration error: {exc}{constants.C_RESET}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if config.show_records:
        writer = JsonlRecordWriter(config.output_dir)
        records = asyncio.run(writer.fetch_recent(config.records_kind, config.records_limit))
        _print_records(records, config.records_kind, config.records_limit)
        return

    try:
        exit_code = asyncio.run(run(config))
    except KeyboardInterrupt:
        exit_code = 0
    if exit_code:
        sys.exit(exit_code)


_RECORD_COLUMNS = {
    'opportunities': [
        ("Seq", lambda r: str(r.get("sequence", ""))),
        ("Time (UTC)", lambda r: _format_time(r.get("created_at"))),
        ("Type", lambda r: r.get("record_type", "")),
        ("Direction", lambda r: r.get("direction") or "-"),
        ("Reason", lambda r: r.get("reason") or "-"),
        ("Spread %", lambda r: _format_decimal(r.get("spread_pct"), 3)),
        ("Net $", lambda r: _format_decimal(r.get("net_profit"), 4)),
    ],
    'signals': [
        ("Seq", lambda r: str(r.get("sequence", ""))),
        ("Time (UTC)", lambda r: _format_time(r.get("created_at"))),
        ("Strategy", lambda r: r.get("strategy", "")),
        ("Bid", lambda r: _format_decimal(r.get("bid"), 2)),
        ("Ask", lambda r: _format_decimal(r.get("ask"), 2)),
        ("Spread bps", lambda r: _format_decimal(r.get("spread_bps"), 1)),
        ("Risk", lambda r: _format_decimal(r.get("risk_score"), 1)),
    ],
    'executions': [
        ("Seq", lambda r: str(r.get("sequence", ""))),
        ("Time (UTC)", lambda r: _format_time(r.get("created_at"))),
        ("Kind", lambda r: r.get("ref_kind", "")),
        ("Outcome", lambda r: r.get("outcome", "")),
        ("Reason", lambda r: r.get("failure_reason") or "-"),
        ("Gas gwei", lambda r: _format_decimal(r.get("gas_price"), 4)),
        ("Slip bps", lambda r: _format_decimal(r.get("slippage_bps"), 1)),
        ("Latency", lambda r: f"{r.get('latency_ms', '-')}ms"),
        ("Profit $", lambda r: _format_decimal(r.get("realized_profit"), 4)),
    ],
}


def _format_time(value: str | None) -> str:
    if not value:
        return "N/A"
    return value.replace("T", " ")[:19]


def _format_decimal(value, places: int) -> str:
    if value is None:
        return "-"
    try:
        return f"{float(value):.{places}f}"
    except (TypeError, ValueError):
        return str(value)


def _print_records(records: list[dict], kind: str, limit: int) -> None:
    heading = f"Showing up to {limit} {kind} records"
    print(heading)
    print("=" * len(heading))

    if not records:
        print("No records found.")
        return

    columns = _RECORD_COLUMNS[kind]
    headers = [name for name, _ in columns]
    rows = [[fmt(record) for _, fmt in columns] for record in records]
    widths = [len(h) for h in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))

    def _format_line(row: list[str]) -> str:
        return "  ".join(cell.ljust(widths[idx]) for idx, cell in enumerate(row))

    print(_format_line(headers))
    print("  ".join('-' * w for w in widths))
    for row in rows:
        print(_format_line(row))


if __name__ == "__main__":
    main()
