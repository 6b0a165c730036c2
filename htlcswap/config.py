"""
Runtime configuration for htlcswap.

Settings come from HTLCSWAP_* environment variables. A chain gets an adapter
only when its HTLC deployment (EVM/Tron contract, TON code) or network
(BTC) is configured.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .core import Chain
from .chains.btc import BTCClient, BTCConfig
from .chains.evm import EVMClient, EVMConfig
from .chains.ton import TONClient, TONConfig
from .chains.tron import TronClient, TronConfig
from .htlc.base import ChainAdapter
from .htlc.btc import BTCAdapter
from .htlc.evm import EVMAdapter
from .htlc.ton import TONAdapter
from .htlc.tron import TronAdapter
from .swap.executor import SwapConfig
from .swap.monitor import MonitorConfig

log = logging.getLogger(__name__)

ENV_PREFIX = "HTLCSWAP_"


def _env(name: str, default: str = "") -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = _env(name)
    return float(value) if value else default


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if not value:
        return default
    return value.lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """All settings for one coordinator process."""
    db_path: str = "~/.htlcswap/orders.json"
    btc: Optional[BTCConfig] = None
    evm: Optional[EVMConfig] = None
    tron: Optional[TronConfig] = None
    ton: Optional[TONConfig] = None
    swap: SwapConfig = field(default_factory=SwapConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)


def load_settings() -> Settings:
    """Build Settings from the environment."""
    settings = Settings(db_path=_env("DB_PATH", Settings.db_path))

    btc_network = _env("BTC_NETWORK")
    if btc_network or _env("BTC_API"):
        settings.btc = BTCConfig(
            network=btc_network or "testnet",
            api_url=_env("BTC_API"),
            wif=_env("BTC_WIF"),
            fee_rate=_env_int("BTC_FEE_RATE", 0),
            required_confirmations=_env_int("BTC_CONFIRMATIONS", 6),
        )

    if _env("EVM_HTLC"):
        settings.evm = EVMConfig(
            network=_env("EVM_NETWORK", "sepolia"),
            rpc_url=_env("EVM_RPC"),
            chain_id=_env_int("EVM_CHAIN_ID", 11155111),
            htlc_contract=_env("EVM_HTLC"),
            private_key=_env("EVM_KEY"),
            required_confirmations=_env_int("EVM_CONFIRMATIONS", 12),
        )

    if _env("TRON_HTLC"):
        settings.tron = TronConfig(
            network=_env("TRON_NETWORK", "nile"),
            api_url=_env("TRON_API"),
            api_key=_env("TRON_API_KEY"),
            htlc_contract=_env("TRON_HTLC"),
            private_key=_env("TRON_KEY"),
            required_confirmations=_env_int("TRON_CONFIRMATIONS", 19),
        )

    if _env("TON_HTLC_CODE"):
        settings.ton = TONConfig(
            network=_env("TON_NETWORK", "testnet"),
            api_url=_env("TON_API"),
            api_key=_env("TON_API_KEY"),
            mnemonic=_env("TON_MNEMONIC"),
            htlc_code_boc=_env("TON_HTLC_CODE"),
        )

    swap = settings.swap
    swap.src_timeout = _env_int("SRC_TIMEOUT", swap.src_timeout)
    swap.dst_timeout = _env_int("DST_TIMEOUT", swap.dst_timeout)
    swap.min_timelock_gap = _env_int("MIN_TIMELOCK_GAP", swap.min_timelock_gap)
    swap.spread_percent = _env_float("SPREAD_PERCENT", swap.spread_percent)
    for chain in Chain:
        address = _env(f"RESOLVER_{chain.name}")
        if address:
            swap.resolver_addresses[chain.value] = address

    monitor = settings.monitor
    monitor.poll_interval = _env_float("POLL_INTERVAL", monitor.poll_interval)
    monitor.call_timeout = _env_float("CALL_TIMEOUT", monitor.call_timeout)
    monitor.max_concurrent = _env_int("MAX_CONCURRENT", monitor.max_concurrent)
    monitor.retry_attempts = _env_int("RETRY_ATTEMPTS", monitor.retry_attempts)
    monitor.max_tx_misses = _env_int("MAX_TX_MISSES", monitor.max_tx_misses)
    monitor.auto_fund_destination = _env_bool("AUTO_FUND_DST", monitor.auto_fund_destination)
    return settings


def build_adapters(settings: Settings) -> Dict[str, ChainAdapter]:
    """One adapter per configured chain."""
    adapters: Dict[str, ChainAdapter] = {}
    if settings.btc:
        adapters[Chain.BITCOIN.value] = BTCAdapter(BTCClient(settings.btc))
    if settings.evm:
        adapters[Chain.ETHEREUM.value] = EVMAdapter(EVMClient(settings.evm))
    if settings.tron:
        adapters[Chain.TRON.value] = TronAdapter(TronClient(settings.tron))
    if settings.ton:
        adapters[Chain.TON.value] = TONAdapter(TONClient(settings.ton))
    log.info(f"Chain adapters: {', '.join(adapters) or 'none'}")
    return adapters


def close_adapters(adapters: Dict[str, ChainAdapter]) -> None:
    for adapter in adapters.values():
        client = getattr(adapter, "client", None)
        close = getattr(client, "close", None)
        if close is not None:
            close()
