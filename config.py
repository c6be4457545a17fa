#!/usr/bin/env python3
import os
import argparse
from decimal import Decimal, InvalidOperation
from typing import NamedTuple, Optional, Sequence, Tuple

import constants
from errors import ConfigurationError

_THIRD = Decimal(1) / 3


class AppConfig(NamedTuple):
    """Typed configuration object."""
    rpc_url: Optional[str] = None
    pool_address: str = constants.DEFAULT_POOL_ADDRESS
    pair: str = constants.PAIR_NAME
    trade_size: Decimal = constants.DEFAULT_TRADE_SIZE
    min_profit: Decimal = constants.DEFAULT_MIN_PROFIT
    min_spread_pct: Decimal = constants.DEFAULT_MIN_SPREAD_PCT
    pool_fee_bps: Decimal = Decimal('0')
    slippage_estimate_bps: Decimal = constants.DEFAULT_SLIPPAGE_ESTIMATE_BPS
    max_price_deviation_pct: Decimal = constants.MAX_PRICE_DEVIATION_PCT
    max_pool_fraction: Decimal = constants.MAX_POOL_FRACTION
    gas_units: int = constants.GAS_UNITS_PER_SWAP
    base_spread_bps: Decimal = constants.DEFAULT_BASE_SPREAD_BPS
    max_position: Decimal = constants.DEFAULT_MAX_POSITION
    rebalance_threshold: Decimal = constants.DEFAULT_REBALANCE_THRESHOLD
    risk_downsize_threshold: Decimal = constants.RISK_DOWNSIZE_THRESHOLD
    risk_hold_ceiling: Decimal = constants.RISK_HOLD_CEILING
    risk_weights: Tuple[Decimal, Decimal, Decimal] = (_THIRD, _THIRD, 1 - 2 * _THIRD)
    volatility_threshold: Decimal = constants.DEFAULT_VOLATILITY_THRESHOLD_PCT
    volatility_spread_multiplier: Decimal = constants.DEFAULT_VOLATILITY_SPREAD_MULTIPLIER
    market_making_enabled: bool = True
    execution_simulation_enabled: bool = False
    simulation_seed: Optional[int] = None
    max_gas_price_gwei: Decimal = constants.DEFAULT_GAS_PRICE_GWEI
    slippage_tolerance_bps: Decimal = constants.DEFAULT_SLIPPAGE_TOLERANCE_BPS
    safety_checks_enabled: bool = True
    breaker_threshold: int = constants.DEFAULT_BREAKER_THRESHOLD
    breaker_cooldown: float = constants.DEFAULT_BREAKER_COOLDOWN_SECONDS
    retry_max_attempts: int = constants.DEFAULT_RETRY_ATTEMPTS
    retry_base_delay_ms: int = constants.DEFAULT_RETRY_BASE_DELAY_MS
    max_snapshot_skew: float = constants.DEFAULT_MAX_SNAPSHOT_SKEW_SECONDS
    price_staleness: float = constants.PRICE_STALENESS_SECONDS
    sanity_reference_max_age: float = constants.SANITY_REFERENCE_MAX_AGE_SECONDS
    interval: float = constants.DEFAULT_SCAN_INTERVAL_SECONDS
    stats_interval: int = constants.STATS_EVERY_CYCLES
    output_dir: str = constants.DEFAULT_OUTPUT_DIR
    log_level: str = 'INFO'
    show_records: bool = False
    records_kind: str = 'opportunities'
    records_limit: int = 10


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _parse_decimal(option: str, raw: str) -> Decimal:
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise ConfigurationError(f"{option}: '{raw}' is not a valid number") from None
    if not value.is_finite():
        raise ConfigurationError(f"{option}: '{raw}' is not a finite number")
    return value


def _parse_int(option: str, raw: str) -> int:
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ConfigurationError(f"{option}: '{raw}' is not a valid integer") from None


def _require_positive(option: str, value):
    if value <= 0:
        raise ConfigurationError(f"{option} must be positive (got {value})")
    return value


def _clamp(option: str, value: Decimal, low: Optional[Decimal], high: Optional[Decimal]) -> Decimal:
    clamped = value
    if low is not None and clamped < low:
        clamped = low
    if high is not None and clamped > high:
        clamped = high
    if clamped != value:
        print(f"{constants.C_YELLOW}{option}={value} out of range; using {clamped}.{constants.C_RESET}")
    return clamped


def _parse_weights(raw: str) -> Tuple[Decimal, Decimal, Decimal]:
    parts = [p for p in str(raw).split(',') if p.strip()]
    if len(parts) != 3:
        raise ConfigurationError("--risk-weights expects three comma-separated values (inventory,liquidity,volatility)")
    weights = tuple(_parse_decimal('--risk-weights', p) for p in parts)
    if any(w < 0 for w in weights):
        raise ConfigurationError("--risk-weights must be non-negative")
    if abs(sum(weights) - 1) > Decimal('0.001'):
        raise ConfigurationError(f"--risk-weights must sum to 1 (got {sum(weights)})")
    return weights


def _resolve_rpc_url(cli_value: Optional[str]) -> Optional[str]:
    if cli_value:
        return cli_value
    rpc_url = os.environ.get(constants.RPC_URL_ENV_VAR)
    if rpc_url:
        return rpc_url
    api_key = os.environ.get(constants.ALCHEMY_API_KEY_ENV_VAR)
    if api_key:
        return constants.ALCHEMY_BASE_RPC_TEMPLATE.format(api_key=api_key)
    return None


def load_config(argv: Optional[Sequence[str]] = None) -> AppConfig:
    """
    Parses command-line arguments and environment variables into a configuration object.

    Raises ConfigurationError when a value cannot be used.
    """
    env = os.environ.get
    parser = argparse.ArgumentParser(
        description="Monitor a Base WETH/USD pool against Binance, emitting arbitrage and market-making signals.",
        epilog="Example: ./main.py --trade-size 0.2 --min-profit 1.00 --simulate-execution --seed 7"
    )
    # --- Data sources ---
    parser.add_argument('--rpc-url', type=str, help=f'JSON-RPC endpoint for Base (env: {constants.RPC_URL_ENV_VAR} or {constants.ALCHEMY_API_KEY_ENV_VAR}).')
    parser.add_argument('--pool-address', default=env(constants.POOL_ADDRESS_ENV_VAR, constants.DEFAULT_POOL_ADDRESS), help='Constant-product WETH/USD pool to monitor.')

    # --- Arbitrage ---
    parser.add_argument('--trade-size', default=env(constants.TRADE_SIZE_ENV_VAR, str(constants.DEFAULT_TRADE_SIZE)), help='Trade size in ETH (default: 0.1).')
    parser.add_argument('--min-profit', default=env(constants.MIN_PROFIT_ENV_VAR, str(constants.DEFAULT_MIN_PROFIT)), help='Minimum net profit in USD (default: 0.50).')
    parser.add_argument('--min-spread-pct', default=env(constants.MIN_SPREAD_PCT_ENV_VAR, str(constants.DEFAULT_MIN_SPREAD_PCT)), help='Minimum DEX/CEX spread percentage (default: 0.05).')
    parser.add_argument('--pool-fee-bps', default='0', help='Swap fee charged by the pool in bps (default: 0).')
    parser.add_argument('--max-gas-price-gwei', default=env(constants.MAX_GAS_PRICE_ENV_VAR, str(constants.DEFAULT_GAS_PRICE_GWEI)), help='Maximum gas price in gwei (default: 50).')
    parser.add_argument('--slippage-tolerance-bps', default=env(constants.SLIPPAGE_TOLERANCE_ENV_VAR, str(constants.DEFAULT_SLIPPAGE_TOLERANCE_BPS)), help='Maximum tolerated slippage in bps (default: 50).')
    parser.add_argument('--disable-safety-checks', action='store_true', help='Skip price sanity and liquidity validation.')
    parser.add_argument('--max-snapshot-skew', default=env(constants.MAX_SNAPSHOT_SKEW_ENV_VAR, str(constants.DEFAULT_MAX_SNAPSHOT_SKEW_SECONDS)), help='Max seconds between DEX and CEX snapshots (default: 5).')

    # --- Market making ---
    parser.add_argument('--disable-market-making', action='store_true', help='Do not generate market-making quotes.')
    parser.add_argument('--base-spread-bps', default=env(constants.BASE_SPREAD_BPS_ENV_VAR, str(constants.DEFAULT_BASE_SPREAD_BPS)), help='Base quoting spread in bps (default: 30).')
    parser.add_argument('--max-position', default=env(constants.MAX_POSITION_ENV_VAR, str(constants.DEFAULT_MAX_POSITION)), help='Maximum absolute inventory in ETH (default: 5.0).')
    parser.add_argument('--rebalance-threshold', default=env(constants.REBALANCE_THRESHOLD_ENV_VAR, str(constants.DEFAULT_REBALANCE_THRESHOLD)), help='Inventory skew fraction that forces rebalancing (default: 0.5).')
    parser.add_argument('--risk-weights', default='', help='Inventory,liquidity,volatility risk weights summing to 1 (default: equal thirds).')
    parser.add_argument('--volatility-threshold', default=env(constants.VOLATILITY_THRESHOLD_ENV_VAR, str(constants.DEFAULT_VOLATILITY_THRESHOLD_PCT)), help='Short-window volatility percentage that raises an advisory (default: 5.0).')
    parser.add_argument('--volatility-spread-multiplier', default=env(constants.VOLATILITY_SPREAD_MULTIPLIER_ENV_VAR, str(constants.DEFAULT_VOLATILITY_SPREAD_MULTIPLIER)), help='Spread multiplier under High volatility (default: 2.0).')

    # --- Simulation ---
    parser.add_argument('--simulate-execution', action='store_true', help='Simulate execution of opportunities and quotes (no funds are moved).')
    parser.add_argument('--seed', default=env(constants.SIMULATION_SEED_ENV_VAR), help='Seed for the execution simulator.')

    # --- Reliability ---
    parser.add_argument('--breaker-threshold', default=env(constants.BREAKER_THRESHOLD_ENV_VAR, str(constants.DEFAULT_BREAKER_THRESHOLD)), help='Consecutive failures before a circuit opens (default: 5).')
    parser.add_argument('--breaker-cooldown', default=env(constants.BREAKER_COOLDOWN_ENV_VAR, str(constants.DEFAULT_BREAKER_COOLDOWN_SECONDS)), help='Seconds an open circuit waits before probing (default: 30).')
    parser.add_argument('--retry-attempts', default=env(constants.RETRY_ATTEMPTS_ENV_VAR, str(constants.DEFAULT_RETRY_ATTEMPTS)), help='Attempts per adapter call (default: 3).')
    parser.add_argument('--retry-base-delay-ms', default=env(constants.RETRY_BASE_DELAY_ENV_VAR, str(constants.DEFAULT_RETRY_BASE_DELAY_MS)), help='Initial retry backoff in milliseconds (default: 100).')

    # --- Runtime / output ---
    parser.add_argument('--interval', default=env(constants.SCAN_INTERVAL_ENV_VAR, str(constants.DEFAULT_SCAN_INTERVAL_SECONDS)), help='Seconds between detection cycles (default: 2).')
    parser.add_argument('--stats-interval', type=int, default=constants.STATS_EVERY_CYCLES, help='Print session statistics every N cycles (default: 30).')
    parser.add_argument('--output-dir', default=env(constants.OUTPUT_DIR_ENV_VAR, constants.DEFAULT_OUTPUT_DIR), help='Directory for JSONL output (default: output).')
    parser.add_argument('--log-level', default=env(constants.LOG_LEVEL_ENV_VAR, 'INFO'), help='Logging level (default: INFO).')
    parser.add_argument('--show-records', action='store_true', help='Display recent output records and exit.')
    parser.add_argument('--records-kind', choices=sorted(constants.OUTPUT_LAYOUT.keys()), default='opportunities', help='Record type for --show-records.')
    parser.add_argument('--records-limit', type=int, default=10, help='Number of records for --show-records (default: 10).')

    args = parser.parse_args(argv)

    rpc_url = _resolve_rpc_url(args.rpc_url)
    if not rpc_url and not args.show_records:
        raise ConfigurationError(
            f"{constants.RPC_URL_ENV_VAR} (or {constants.ALCHEMY_API_KEY_ENV_VAR}) environment variable not set and --rpc-url not given."
        )

    trade_size = _clamp('--trade-size', _parse_decimal('--trade-size', args.trade_size), constants.MIN_TRADE_SIZE, constants.MAX_TRADE_SIZE)
    min_profit = _clamp('--min-profit', _parse_decimal('--min-profit', args.min_profit), constants.MIN_PROFIT_FLOOR, None)
    base_spread = _clamp('--base-spread-bps', _parse_decimal('--base-spread-bps', args.base_spread_bps), constants.MIN_SPREAD_BPS, constants.MAX_SPREAD_BPS)
    max_gas = _clamp('--max-gas-price-gwei', _require_positive('--max-gas-price-gwei', _parse_decimal('--max-gas-price-gwei', args.max_gas_price_gwei)), None, constants.MAX_GAS_PRICE_GWEI)
    slippage_tolerance = _clamp('--slippage-tolerance-bps', _require_positive('--slippage-tolerance-bps', _parse_decimal('--slippage-tolerance-bps', args.slippage_tolerance_bps)), None, constants.MAX_SLIPPAGE_BPS)
    spread_multiplier = _clamp('--volatility-spread-multiplier', _parse_decimal('--volatility-spread-multiplier', args.volatility_spread_multiplier), Decimal('1.0'), Decimal('3.0'))

    rebalance_threshold = _parse_decimal('--rebalance-threshold', args.rebalance_threshold)
    if not Decimal('0') < rebalance_threshold <= Decimal('1'):
        raise ConfigurationError(f"--rebalance-threshold must be in (0, 1] (got {rebalance_threshold})")

    pool_fee = _parse_decimal('--pool-fee-bps', args.pool_fee_bps)
    if not Decimal('0') <= pool_fee < Decimal('10000'):
        raise ConfigurationError(f"--pool-fee-bps must be in [0, 10000) (got {pool_fee})")

    pool_address = str(args.pool_address).strip().lower()
    if not (pool_address.startswith('0x') and len(pool_address) == 42):
        raise ConfigurationError(f"--pool-address '{args.pool_address}' is not a valid address")

    seed = _parse_int('--seed', args.seed) if args.seed not in (None, '') else None
    weights = _parse_weights(args.risk_weights) if args.risk_weights else AppConfig().risk_weights

    return AppConfig(
        rpc_url=rpc_url,
        pool_address=pool_address,
        trade_size=trade_size,
        min_profit=min_profit,
        min_spread_pct=_require_positive('--min-spread-pct', _parse_decimal('--min-spread-pct', args.min_spread_pct)),
        pool_fee_bps=pool_fee,
        base_spread_bps=base_spread,
        max_position=_require_positive('--max-position', _parse_decimal('--max-position', args.max_position)),
        rebalance_threshold=rebalance_threshold,
        risk_weights=weights,
        volatility_threshold=_require_positive('--volatility-threshold', _parse_decimal('--volatility-threshold', args.volatility_threshold)),
        volatility_spread_multiplier=spread_multiplier,
        market_making_enabled=_env_flag(constants.MARKET_MAKING_ENABLED_ENV_VAR, True) and not args.disable_market_making,
        execution_simulation_enabled=args.simulate_execution or _env_flag(constants.EXECUTION_SIMULATION_ENV_VAR, False),
        simulation_seed=seed,
        max_gas_price_gwei=max_gas,
        slippage_tolerance_bps=slippage_tolerance,
        safety_checks_enabled=_env_flag(constants.SAFETY_CHECKS_ENV_VAR, True) and not args.disable_safety_checks,
        breaker_threshold=_require_positive('--breaker-threshold', _parse_int('--breaker-threshold', args.breaker_threshold)),
        breaker_cooldown=float(_require_positive('--breaker-cooldown', _parse_decimal('--breaker-cooldown', args.breaker_cooldown))),
        retry_max_attempts=_require_positive('--retry-attempts', _parse_int('--retry-attempts', args.retry_attempts)),
        retry_base_delay_ms=_require_positive('--retry-base-delay-ms', _parse_int('--retry-base-delay-ms', args.retry_base_delay_ms)),
        max_snapshot_skew=float(_require_positive('--max-snapshot-skew', _parse_decimal('--max-snapshot-skew', args.max_snapshot_skew))),
        interval=float(_require_positive('--interval', _parse_decimal('--interval', args.interval))),
        stats_interval=max(1, args.stats_interval),
        output_dir=args.output_dir,
        log_level=str(args.log_level).upper(),
        show_records=args.show_records,
        records_kind=args.records_kind,
        records_limit=args.records_limit,
    )
