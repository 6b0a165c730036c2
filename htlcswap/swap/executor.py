"""
Swap executor: the entry point for callers.

Validates a swap request, builds both HTLC legs with cascaded timelocks,
persists the order and hands it to the Order Monitor. The executor never
mutates an order after creation; the monitor task owns it.
"""

import asyncio
import logging
import uuid
from decimal import Decimal, InvalidOperation
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Mapping, Tuple, Union

from ..core import (
    HTLCParams, RATES_USD, HTLC_TIMEOUT_SRC, HTLC_TIMEOUT_DST, TIMELOCK_MIN_GAP_SECONDS,
    get_token, to_base_units, new_hashlock, normalize_hex32, validate_timelocks, now,
)
from ..errors import ChainNotConfiguredError, OrderNotFoundError, ValidationError
from ..htlc.base import ChainAdapter
from .monitor import OrderMonitor
from .orders import Order
from .store import OrderStore

log = logging.getLogger(__name__)


@dataclass
class SwapConfig:
    """Order creation parameters."""
    src_timeout: int = HTLC_TIMEOUT_SRC             # Seconds until source leg expiry
    dst_timeout: int = HTLC_TIMEOUT_DST             # Must be shorter than src_timeout
    min_timelock_gap: int = TIMELOCK_MIN_GAP_SECONDS
    spread_percent: float = 0.5
    rates_usd: Dict[str, float] = field(default_factory=lambda: dict(RATES_USD))
    # Counter-party address per chain; defaults to the coordinator's own key
    resolver_addresses: Dict[str, str] = field(default_factory=dict)


class SwapExecutor:
    """Creates orders and performs the initiator-side actions."""

    def __init__(self, adapters: Mapping[str, ChainAdapter], monitor: OrderMonitor,
                 store: OrderStore, config: Optional[SwapConfig] = None):
        self.adapters = dict(adapters)
        self.monitor = monitor
        self.store = store
        self.config = config or SwapConfig()
        # Generated secrets stay in memory only, until the order is terminal
        self._secrets: Dict[str, str] = {}

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise ChainNotConfiguredError(f"Chain not configured: {chain}", chain=chain)
        return adapter

    def _resolver_address(self, chain: str) -> str:
        address = self.config.resolver_addresses.get(chain) or self._adapter(chain).wallet_address()
        if not address:
            raise ChainNotConfiguredError(f"No resolver address for {chain}", chain=chain)
        return address

    # =========================================================================
    # Quotes
    # =========================================================================

    def quote(self, from_token: str, to_token: str, from_amount: int) -> int:
        """
        Destination amount for `from_amount` (base units) at the reference rates,
        minus the spread.
        """
        src = get_token(from_token)
        dst = get_token(to_token)
        try:
            rate_from = Decimal(str(self.config.rates_usd[src.symbol]))
            rate_to = Decimal(str(self.config.rates_usd[dst.symbol]))
        except KeyError as e:
            raise ValidationError(f"No rate for {e.args[0]}")
        spread = Decimal(1) - Decimal(str(self.config.spread_percent)) / 100
        value = Decimal(from_amount) / (Decimal(10) ** src.decimals) * rate_from / rate_to * spread
        return int(value * (Decimal(10) ** dst.decimals))

    # =========================================================================
    # Orders
    # =========================================================================

    async def create_order(self, from_chain: str, to_chain: str, from_token: str, to_token: str,
                           amount: Union[str, int, float], recipient_address: str,
                           refund_address: Optional[str] = None,
                           to_amount: Optional[int] = None,
                           hashlock: Optional[str] = None) -> Tuple[Order, Optional[str]]:
        """
        Create and start monitoring a swap order.

        Args:
            amount: Source amount in display units (e.g. "0.01" BTC)
            recipient_address: Receives the destination leg
            refund_address: Source leg sender, refunded after expiry.
                Defaults to the coordinator's source-chain wallet.
            to_amount: Destination amount in base units; quoted if omitted
            hashlock: Caller-held secret hash; generated if omitted

        Returns:
            (order, secret_hex) - secret_hex is None when the caller supplied the hashlock

        Raises:
            ValidationError: bad pair, amount, address or timelocks
            ChainNotConfiguredError: no adapter for a chain
        """
        if from_chain == to_chain:
            raise ValidationError("Source and destination chains must differ")
        src_adapter = self._adapter(from_chain)
        dst_adapter = self._adapter(to_chain)
        src_token = get_token(from_token, from_chain)
        dst_token = get_token(to_token, to_chain)

        try:
            from_amount = to_base_units(amount, src_token.decimals)
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {amount}")
        if from_amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        if to_amount is None:
            to_amount = self.quote(src_token.symbol, dst_token.symbol, from_amount)
        if to_amount <= 0:
            raise ValidationError(f"Destination amount must be positive, got {to_amount}")

        if not dst_adapter.validate_address(recipient_address):
            raise ValidationError(f"Invalid {to_chain} recipient address: {recipient_address}")
        refund_address = refund_address or src_adapter.wallet_address()
        if not refund_address:
            raise ValidationError(f"refund_address is required for {from_chain}")
        if not src_adapter.validate_address(refund_address):
            raise ValidationError(f"Invalid {from_chain} refund address: {refund_address}")

        secret = None
        if hashlock:
            hashlock = normalize_hex32(hashlock, "hashlock")
        else:
            secret, hashlock = new_hashlock()

        created = now()
        src_timelock = created + self.config.src_timeout
        dst_timelock = created + self.config.dst_timeout
        validate_timelocks(src_timelock, dst_timelock, created, self.config.min_timelock_gap)

        src_params = HTLCParams(
            hashlock=hashlock,
            timelock=src_timelock,
            sender=refund_address,
            receiver=self._resolver_address(from_chain),
            amount=from_amount,
            chain=from_chain,
        )
        dst_params = HTLCParams(
            hashlock=hashlock,
            timelock=dst_timelock,
            sender=self._resolver_address(to_chain),
            receiver=recipient_address,
            amount=to_amount,
            chain=to_chain,
        )
        src_ref = src_adapter.create_htlc(src_params)
        dst_ref = dst_adapter.create_htlc(dst_params)

        order = Order(
            id=f"order_{uuid.uuid4().hex[:12]}",
            from_chain=from_chain,
            to_chain=to_chain,
            from_token=src_token.symbol,
            to_token=dst_token.symbol,
            from_amount=from_amount,
            to_amount=to_amount,
            hashlock=hashlock,
            src_htlc=src_params,
            dst_htlc=dst_params,
            src_ref=src_ref,
            dst_ref=dst_ref,
            created_at=created,
            expires_at=src_timelock,
            updated_at=created,
        )
        if secret:
            self._secrets[order.id] = secret
        await asyncio.to_thread(self.store.save, order)
        subscription = self.monitor.start_monitoring(order)
        if secret:
            subscription.on(self._release_secret)
        log.info(f"Created order {order.id}: {from_amount} {src_token.symbol} -> "
                 f"{to_amount} {dst_token.symbol}, src HTLC {src_ref.key}, dst HTLC {dst_ref.key}")
        return order, secret

    def _release_secret(self, event: Dict) -> None:
        if event["type"] == "completed":
            self._secrets.pop(event["orderId"], None)

    def held_secret(self, order_id: str) -> Optional[str]:
        """Secret generated for a live order, if this process still holds it."""
        return self._secrets.get(order_id)

    def get_order(self, order_id: str) -> Order:
        order = self.monitor.get_order(order_id) or self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_orders(self, include_archived: bool = True) -> List[Order]:
        orders = []
        for stored in self.store.list(include_archived=include_archived):
            orders.append(self.monitor.get_order(stored.id) or stored)
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    def cancel_monitoring(self, order_id: str) -> bool:
        self.get_order(order_id)
        return self.monitor.stop_monitoring(order_id)

    async def resume(self) -> int:
        """Re-monitor every active order in the store (server startup)."""
        count = 0
        for order in self.store.list_active():
            if order.is_terminal:
                continue
            self.monitor.start_monitoring(order)
            count += 1
        if count:
            log.info(f"Resumed monitoring for {count} orders")
        return count

    # =========================================================================
    # Initiator actions
    # =========================================================================

    async def redeem_destination(self, order_id: str, secret: Optional[str] = None,
                                 recipient: Optional[str] = None) -> str:
        """
        Reveal the secret by redeeming the destination leg.

        The monitor picks the reveal up and redeems the source leg.

        Raises:
            HashMismatchError: secret does not open the hashlock (phase unchanged)
            ExpiredError: destination leg already expired
        """
        order = self.get_order(order_id)
        if order.is_terminal:
            raise ValidationError(f"Order {order_id} is already {order.phase.value}")
        secret = secret or self.held_secret(order_id)
        if not secret:
            raise ValidationError("Secret required to redeem")
        adapter = self._adapter(order.to_chain)
        tx_hash = await asyncio.to_thread(
            adapter.redeem, order.dst_ref, secret, recipient or order.dst_ref.receiver
        )
        log.info(f"Order {order_id}: destination redeem sent {tx_hash}")
        self.monitor.poke(order_id)
        return tx_hash

    async def fund_source(self, order_id: str) -> str:
        """Fund the source leg from the coordinator's own key."""
        order = self.get_order(order_id)
        if order.is_terminal:
            raise ValidationError(f"Order {order_id} is already {order.phase.value}")
        adapter = self._adapter(order.from_chain)
        tx_hash = await asyncio.to_thread(adapter.fund, order.src_ref, order.src_ref.amount)
        log.info(f"Order {order_id}: source funding sent {tx_hash}")
        self.monitor.poke(order_id)
        return tx_hash
