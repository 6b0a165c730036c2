"""
htlcswap - Cross-Chain HTLC Atomic Swap Coordinator

Two parties lock funds on two chains under the same SHA256 hashlock. The
destination leg expires first, so whoever reveals the secret on the
destination leaves time to redeem the source, and a stalled swap always
refunds. Supported chains: Bitcoin (P2WSH), Ethereum (HTLC contract),
Tron (HTLC contract on TVM), TON (per-swap contract).

Usage:
    from htlcswap import load_settings, build_adapters
    from htlcswap import OrderMonitor, SwapExecutor, JSONOrderStore

    settings = load_settings()
    adapters = build_adapters(settings)
    store = JSONOrderStore(path)
    monitor = OrderMonitor(adapters, store, settings.monitor)
    executor = SwapExecutor(adapters, monitor, store, settings.swap)

    order, secret = await executor.create_order(
        "bitcoin", "ethereum", "BTC", "ETH", "0.01", recipient_address=user_eth,
        refund_address=user_btc,
    )
    subscription = monitor.get_subscription(order.id)
"""

from .core import (
    Chain,
    OrderPhase,
    HTLCParams,
    ContractRef,
    HTLCStatus,
    TransactionStatus,
    generate_secret,
    hash_secret,
    verify_reveal,
    new_hashlock,
    validate_timelocks,
)
from .errors import (
    SwapError,
    ValidationError,
    OrderNotFoundError,
    AdapterError,
    HashMismatchError,
    ExpiredError,
    NotYetExpiredError,
    AlreadyRedeemedError,
    AlreadyRefundedError,
)

from .htlc.base import ChainAdapter
from .swap.orders import Order
from .swap.monitor import OrderMonitor, MonitorConfig, Subscription
from .swap.tracker import TransactionTracker
from .swap.store import OrderStore, MemoryOrderStore, JSONOrderStore
from .swap.executor import SwapExecutor, SwapConfig
from .config import Settings, load_settings, build_adapters

__version__ = "0.1.0"
__all__ = [
    # Core types
    "Chain",
    "OrderPhase",
    "HTLCParams",
    "ContractRef",
    "HTLCStatus",
    "TransactionStatus",
    # Secrets
    "generate_secret",
    "hash_secret",
    "verify_reveal",
    "new_hashlock",
    "validate_timelocks",
    # Errors
    "SwapError",
    "ValidationError",
    "OrderNotFoundError",
    "AdapterError",
    "HashMismatchError",
    "ExpiredError",
    "NotYetExpiredError",
    "AlreadyRedeemedError",
    "AlreadyRefundedError",
    # Swap
    "ChainAdapter",
    "Order",
    "OrderMonitor",
    "MonitorConfig",
    "Subscription",
    "TransactionTracker",
    "OrderStore",
    "MemoryOrderStore",
    "JSONOrderStore",
    "SwapExecutor",
    "SwapConfig",
    # Config
    "Settings",
    "load_settings",
    "build_adapters",
]
