#!/usr/bin/env python3
from decimal import Decimal
from typing import Dict

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
BINANCE_API_BASE_URL = 'https://api.binance.com/api/v3'
BINANCE_SYMBOL = 'ETHUSDC'
ALCHEMY_BASE_RPC_TEMPLATE = 'https://base-mainnet.g.alchemy.com/v2/{api_key}'
HTTP_USER_AGENT = 'DexCexSignalEngine/1.0'

# --- Environment Variable Names ---
RPC_URL_ENV_VAR = 'RPC_URL'
ALCHEMY_API_KEY_ENV_VAR = 'ALCHEMY_API_KEY'
POOL_ADDRESS_ENV_VAR = 'POOL_ADDRESS'
TRADE_SIZE_ENV_VAR = 'TRADE_SIZE_ETH'
MIN_PROFIT_ENV_VAR = 'MIN_PROFIT_USD'
MIN_SPREAD_PCT_ENV_VAR = 'MIN_SPREAD_PCT'
BASE_SPREAD_BPS_ENV_VAR = 'BASE_SPREAD_BPS'
MAX_POSITION_ENV_VAR = 'MAX_POSITION_SIZE_ETH'
REBALANCE_THRESHOLD_ENV_VAR = 'REBALANCE_THRESHOLD'
VOLATILITY_THRESHOLD_ENV_VAR = 'VOLATILITY_THRESHOLD'
VOLATILITY_SPREAD_MULTIPLIER_ENV_VAR = 'VOLATILITY_SPREAD_MULTIPLIER'
MARKET_MAKING_ENABLED_ENV_VAR = 'ENABLE_MARKET_MAKING'
EXECUTION_SIMULATION_ENV_VAR = 'ENABLE_EXECUTION_SIMULATION'
SIMULATION_SEED_ENV_VAR = 'SIMULATION_SEED'
MAX_GAS_PRICE_ENV_VAR = 'MAX_GAS_PRICE_GWEI'
SLIPPAGE_TOLERANCE_ENV_VAR = 'SLIPPAGE_TOLERANCE_BPS'
SAFETY_CHECKS_ENV_VAR = 'ENABLE_SAFETY_CHECKS'
BREAKER_THRESHOLD_ENV_VAR = 'CIRCUIT_BREAKER_THRESHOLD'
BREAKER_COOLDOWN_ENV_VAR = 'CIRCUIT_BREAKER_COOLDOWN_SECS'
RETRY_ATTEMPTS_ENV_VAR = 'RETRY_MAX_ATTEMPTS'
RETRY_BASE_DELAY_ENV_VAR = 'RETRY_BASE_DELAY_MS'
MAX_SNAPSHOT_SKEW_ENV_VAR = 'MAX_SNAPSHOT_SKEW_SECS'
SCAN_INTERVAL_ENV_VAR = 'SCAN_INTERVAL_SECS'
OUTPUT_DIR_ENV_VAR = 'OUTPUT_DIR'
LOG_LEVEL_ENV_VAR = 'LOG_LEVEL'

# --- Chain Configuration (Base) ---
CHAIN_ID = 8453
PAIR_NAME = 'WETH/USDC'
WETH_ADDRESS = '0x4200000000000000000000000000000000000006'
USDC_ADDRESS = '0x833589fcd6edb6e08f4c7c32d4f71b54bda02913'
USDBC_ADDRESS = '0xd9aaec86b65d86f6a7b5b1b0c42ffa531710b6ca'
USD_STABLE_ADDRESSES = (USDC_ADDRESS, USDBC_ADDRESS)

# Aerodrome volatile pools (constant product).
POOL_ADDRESSES: Dict[str, str] = {
    'vAMM-WETH/USDbC': '0xb4885bc63399bf5518b994c1d0c153334ee579d0',
    'WETH/USDC': '0xcdac0d6c6c59727a65f871236188350531885c43',
}
DEFAULT_POOL_ADDRESS = POOL_ADDRESSES['vAMM-WETH/USDbC']

# --- Gas Configuration ---
GAS_UNITS_PER_SWAP = 150000
SIMULATED_GAS_USED = 156000
DEFAULT_GAS_PRICE_GWEI = Decimal('50')
MAX_GAS_PRICE_GWEI = Decimal('200')
WEI_PER_GWEI = Decimal(10) ** 9
WEI_PER_ETH = Decimal(10) ** 18

# --- Trading Limits ---
DEFAULT_TRADE_SIZE = Decimal('0.1')
MIN_TRADE_SIZE = Decimal('0.01')
MAX_TRADE_SIZE = Decimal('10')
DEFAULT_MIN_PROFIT = Decimal('0.50')
MIN_PROFIT_FLOOR = Decimal('0.10')
DEFAULT_MIN_SPREAD_PCT = Decimal('0.05')
DEFAULT_SLIPPAGE_TOLERANCE_BPS = Decimal('50')
MAX_SLIPPAGE_BPS = Decimal('100')
DEFAULT_SLIPPAGE_ESTIMATE_BPS = Decimal('5')
MAX_POOL_FRACTION = Decimal('0.01')
MIN_BASE_RESERVE = Decimal('0.1')
MIN_QUOTE_RESERVE = Decimal('100')

# --- Safety Checks ---
PRICE_STALENESS_SECONDS = 10
SANITY_REFERENCE_MAX_AGE_SECONDS = 60
DEFAULT_MAX_SNAPSHOT_SKEW_SECONDS = 5
MAX_PRICE_DEVIATION_PCT = Decimal('10')
CEX_MIN_VALID_PRICE = Decimal('100')
CEX_MAX_VALID_PRICE = Decimal('100000')

# --- Market Making ---
DEFAULT_BASE_SPREAD_BPS = Decimal('30')
MIN_SPREAD_BPS = Decimal('10')
MAX_SPREAD_BPS = Decimal('200')
DEFAULT_MAX_POSITION = Decimal('5.0')
DEFAULT_REBALANCE_THRESHOLD = Decimal('0.5')
QUOTE_SIZE_FRACTION = Decimal('0.1')
RISK_DOWNSIZE_THRESHOLD = Decimal('60')
RISK_HOLD_CEILING = Decimal('80')

# --- Volatility ---
VOLATILITY_WINDOWS: Dict[str, int] = {
    '5m': 300,
    '30m': 1800,
    '1h': 3600,
}
SHORT_WINDOW = '5m'
MEDIUM_WINDOW = '30m'
MIN_WINDOW_SAMPLES = 2
DEFAULT_VOLATILITY_THRESHOLD_PCT = Decimal('5.0')
DEFAULT_VOLATILITY_SPREAD_MULTIPLIER = Decimal('2.0')
TREND_VOLATILE_RATIO = Decimal('1.2')
TREND_NOISE_FLOOR = Decimal('0.05')

# --- Reliability ---
DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_COOLDOWN_SECONDS = 30.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_MS = 100
DEFAULT_RETRY_MAX_DELAY_SECONDS = 5.0
DEFAULT_RETRY_JITTER_SECONDS = 0.1
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0

# --- Scheduling / Health ---
DEFAULT_SCAN_INTERVAL_SECONDS = 2.0
DEX_POLL_INTERVAL_SECONDS = 2.0
CEX_POLL_INTERVAL_SECONDS = 1.0
FEED_HEALTH_MAX_AGE_SECONDS = 30
MAX_CONSECUTIVE_CYCLE_ERRORS = 10
STATS_EVERY_CYCLES = 30

# --- Output ---
DEFAULT_OUTPUT_DIR = 'output'
OUTPUT_LAYOUT: Dict[str, tuple] = {
    'opportunities': ('opportunities', 'arbitrage'),
    'signals': ('market_making', 'signals'),
    'executions': ('executions', 'trades'),
}
