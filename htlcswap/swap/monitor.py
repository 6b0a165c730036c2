"""
Order Monitor.

One asyncio task per order polls both legs, feeds the tracker, runs due
on-chain actions and advances the state machine. Subscribers get
status_update / error / completed events.

Control flow is one-way: Monitor -> Adapter -> Tracker -> State Machine ->
events.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set

from ..core import OrderPhase, HTLCStatus, normalize_hex32
from ..errors import (
    ChainNotConfiguredError, MissingKeyError, NotYetExpiredError,
    AlreadyRedeemedError, AlreadyRefundedError, ExpiredError, HashMismatchError,
    is_transient,
)
from ..htlc.base import ChainAdapter, secret_matches
from .orders import (
    Order, TX_KEYS, TX_LEG, TX_SRC, TX_DST, TX_SRC_REDEEM, TX_DST_REDEEM,
    TX_SRC_REFUND, TX_DST_REFUND,
)
from .state import Action, Observation, apply, evaluate, due_actions, fail
from .store import OrderStore
from .tracker import TransactionTracker

log = logging.getLogger(__name__)


@dataclass
class MonitorConfig:
    """Order Monitor configuration."""
    poll_interval: float = 5.0          # Seconds between ticks
    call_timeout: float = 10.0          # Per adapter call
    max_concurrent: int = 32            # Ticks running at once
    retry_attempts: int = 3             # Per read call, transient errors only
    backoff_base: float = 1.0
    backoff_max: float = 10.0
    stream_close_delay: float = 1.0     # SSE close after `completed`
    max_tx_misses: int = 12             # Polls before an unseen tx is failed
    auto_fund_destination: bool = False


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Subscription
# =============================================================================

class Subscription:
    """
    Event fan-out for one order.

    Callbacks registered with `on` run synchronously on emit; `listen()`
    gives an async iterator that ends when the subscription closes.
    """

    def __init__(self, order_id: str):
        self.order_id = order_id
        self.closed = False
        self.last_event: Optional[Dict[str, Any]] = None
        self._handlers: List[Callable[[Dict[str, Any]], None]] = []
        self._queues: List[asyncio.Queue] = []

    def on(self, handler: Callable[[Dict[str, Any]], None]):
        self._handlers.append(handler)
        return handler

    def off(self, handler: Callable[[Dict[str, Any]], None]) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: Dict[str, Any]) -> None:
        if self.closed:
            return
        self.last_event = event
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                log.error(f"Subscriber for {self.order_id} raised on {event['type']}: {e}")
        for queue in list(self._queues):
            queue.put_nowait(event)

    def listen(self) -> "Listener":
        """Queue is registered now, so no event emitted after this call is missed."""
        queue: asyncio.Queue = asyncio.Queue()
        if self.closed:
            queue.put_nowait(None)
        self._queues.append(queue)
        return Listener(self, queue)

    def _detach(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for queue in list(self._queues):
            queue.put_nowait(None)


class Listener:
    """Async iterator over one subscription's events. Ends on close."""

    def __init__(self, subscription: Subscription, queue: asyncio.Queue):
        self._subscription = subscription
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self

    async def __anext__(self) -> Dict[str, Any]:
        event = await self._queue.get()
        if event is None:
            self._subscription._detach(self._queue)
            raise StopAsyncIteration
        return event

    async def aclose(self) -> None:
        self._subscription._detach(self._queue)


@dataclass
class _Entry:
    order: Order
    subscription: Subscription
    wake: asyncio.Event
    task: Optional[asyncio.Task] = None
    skipped: Set[Action] = field(default_factory=set)
    failures: int = 0


# =============================================================================
# Monitor
# =============================================================================

class OrderMonitor:
    """Supervises one polling task per active order."""

    def __init__(self, adapters: Mapping[str, ChainAdapter], store: OrderStore,
                 config: Optional[MonitorConfig] = None,
                 tracker: Optional[TransactionTracker] = None,
                 clock: Callable[[], float] = time.time):
        self.adapters = dict(adapters)
        self.store = store
        self.config = config or MonitorConfig()
        self.tracker = tracker or TransactionTracker(self.adapters, self.config.max_tx_misses)
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None

    # =========================================================================
    # Registry
    # =========================================================================

    def start_monitoring(self, order: Order) -> Subscription:
        """
        Start the polling task for an order. Must run inside the event loop.

        Idempotent: a second call for the same id returns the existing
        subscription and does not start another task.
        """
        with self._lock:
            entry = self._entries.get(order.id)
            if entry is not None:
                return entry.subscription
            subscription = Subscription(order.id)
            if order.is_terminal:
                subscription.close()
                return subscription
            entry = _Entry(order=order, subscription=subscription, wake=asyncio.Event())
            self._entries[order.id] = entry
            entry.task = asyncio.get_running_loop().create_task(self._run(entry))
        log.info(f"Monitoring order {order.id} ({order.from_chain} -> {order.to_chain}, {order.phase.value})")
        return subscription

    def stop_monitoring(self, order_id: str) -> bool:
        """Cancel an order's task. Safe on unknown or stopped ids."""
        with self._lock:
            entry = self._entries.pop(order_id, None)
        if entry is None:
            return False
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        entry.subscription.close()
        log.info(f"Stopped monitoring order {order_id}")
        return True

    def get_subscription(self, order_id: str) -> Optional[Subscription]:
        with self._lock:
            entry = self._entries.get(order_id)
        return entry.subscription if entry else None

    def get_order(self, order_id: str) -> Optional[Order]:
        """Live order owned by a running task, if any."""
        with self._lock:
            entry = self._entries.get(order_id)
        return entry.order if entry else None

    def is_monitoring(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._entries

    def active_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def poke(self, order_id: str) -> None:
        """Run the next tick now instead of after the poll interval."""
        with self._lock:
            entry = self._entries.get(order_id)
        if entry is not None:
            entry.wake.set()

    async def shutdown(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            entry.task.cancel()
            entry.subscription.close()
        await asyncio.gather(*(e.task for e in entries), return_exceptions=True)
        log.info(f"Order monitor stopped ({len(entries)} tasks cancelled)")

    def _release(self, entry: _Entry) -> None:
        with self._lock:
            if self._entries.get(entry.order.id) is entry:
                del self._entries[entry.order.id]

    # =========================================================================
    # Loop
    # =========================================================================

    def _backoff(self, attempt: int) -> float:
        return min(self.config.backoff_max, self.config.backoff_base * 2 ** (attempt - 1))

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.max_concurrent)
        return self._semaphore

    async def _run(self, entry: _Entry) -> None:
        order = entry.order
        try:
            while not order.is_terminal:
                delay = self.config.poll_interval
                try:
                    async with self._get_semaphore():
                        await self._tick(entry)
                    entry.failures = 0
                except Exception as e:
                    if is_transient(e):
                        entry.failures += 1
                        delay = max(delay, self._backoff(entry.failures))
                        log.warning(f"Order {order.id}: transient error (#{entry.failures}), "
                                    f"next tick in {delay:.1f}s: {e}")
                    else:
                        log.error(f"Order {order.id}: unrecoverable error: {e}")
                        await self._fail(entry, str(e) or type(e).__name__)
                if order.is_terminal:
                    break
                await self._sleep(entry, delay)
            await self._finish(entry)
        except asyncio.CancelledError:
            log.info(f"Order {order.id}: monitor task cancelled")
            raise
        finally:
            self._release(entry)

    async def _sleep(self, entry: _Entry, delay: float) -> None:
        try:
            await asyncio.wait_for(entry.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        entry.wake.clear()

    async def _call(self, fn: Callable, *args, retry: bool = True):
        """Blocking adapter call in a worker thread, bounded by call_timeout."""
        attempts = max(1, self.config.retry_attempts) if retry else 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.config.call_timeout)
            except Exception as e:
                if attempt >= attempts or not is_transient(e):
                    raise
                delay = self._backoff(attempt)
                log.warning(f"{getattr(fn, '__name__', 'call')} failed ({e or type(e).__name__}), "
                            f"retry {attempt}/{attempts - 1} in {delay:.1f}s")
                await asyncio.sleep(delay)

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise ChainNotConfiguredError(f"No adapter for chain {chain}", chain=chain)
        return adapter

    # =========================================================================
    # Tick
    # =========================================================================

    async def _tick(self, entry: _Entry) -> None:
        order = entry.order
        before = order.to_dict()
        src_adapter = self._adapter(order.from_chain)
        dst_adapter = self._adapter(order.to_chain)

        src_status, dst_status, src_now, dst_now = await asyncio.gather(
            self._call(src_adapter.get_status, order.src_ref),
            self._call(dst_adapter.get_status, order.dst_ref),
            self._call(src_adapter.chain_time),
            self._call(dst_adapter.chain_time),
        )
        obs = Observation(
            now=int(self.clock()), src=src_status, dst=dst_status,
            src_expired=src_adapter.is_expired(src_now, order.src_ref.timelock),
            dst_expired=dst_adapter.is_expired(dst_now, order.dst_ref.timelock),
        )
        self._record_txs(order, src_status, dst_status)

        if dst_status.revealed_secret and not order.secret:
            if secret_matches(dst_status.revealed_secret, order.hashlock):
                order.secret = normalize_hex32(dst_status.revealed_secret)
                log.info(f"Order {order.id}: secret revealed on {order.to_chain}, redeeming source")
                if Action.REDEEM_SRC in due_actions(order, obs, skip=entry.skipped):
                    await self._run_action(entry, Action.REDEEM_SRC)
            else:
                log.warning(f"Order {order.id}: revealed secret does not match hashlock")
                obs.secret_mismatch = True

        if not order.is_terminal:
            await self._observe_txs(order, obs)
            for action in due_actions(order, obs, self.config.auto_fund_destination, entry.skipped):
                if order.is_terminal:
                    break
                await self._run_action(entry, action)

        while True:
            step = evaluate(order, obs)
            if step is None:
                break
            target, reason = step
            if target is OrderPhase.FAILED and not order.error:
                order.error = reason
            apply(order, target, reason, at=obs.now)
            self._emit(entry, "status_update")

        if order.to_dict() != before:
            order.updated_at = obs.now
            await self._save(order)

    def _record_txs(self, order: Order, src: HTLCStatus, dst: HTLCStatus) -> None:
        seen = {
            TX_SRC: src.funding_tx,
            TX_SRC_REDEEM: src.redeem_tx,
            TX_SRC_REFUND: src.refund_tx,
            TX_DST: dst.funding_tx,
            TX_DST_REDEEM: dst.redeem_tx,
            TX_DST_REFUND: dst.refund_tx,
        }
        for key, tx_hash in seen.items():
            current = order.tx_hashes.get(key)
            if not tx_hash or tx_hash == current:
                continue
            if current:
                # Our broadcast handle differs from what the chain shows
                self.tracker.forget(self.tracker.handle_for(current, order.leg_chain(TX_LEG[key])))
            order.tx_hashes[key] = tx_hash

    async def _observe_txs(self, order: Order, obs: Observation) -> None:
        confirmed: Dict[str, bool] = {}
        for key in TX_KEYS:
            tx_hash = order.tx_hashes.get(key)
            if not tx_hash:
                continue
            handle = self.tracker.track(tx_hash, order.leg_chain(TX_LEG[key]))
            status = await self._call(self.tracker.poll, handle)
            if status.failed:
                log.warning(f"Order {order.id}: {key} tx {tx_hash} failed, clearing")
                order.tx_hashes[key] = None
                self.tracker.forget(handle)
                continue
            confirmed[key] = status.confirmed

        def settled(key: str, seen_on_chain: bool) -> bool:
            # No hash known: trust the contract state
            if order.tx_hashes.get(key):
                return confirmed.get(key, False)
            return seen_on_chain

        src, dst = obs.src, obs.dst
        obs.src_funding_confirmed = settled(TX_SRC, src.funded) or src.redeemed or src.refunded
        obs.dst_funding_confirmed = settled(TX_DST, dst.funded) or dst.redeemed or dst.refunded
        obs.src_redeem_confirmed = src.redeemed and settled(TX_SRC_REDEEM, src.redeemed)
        obs.src_refund_confirmed = src.refunded and settled(TX_SRC_REFUND, src.refunded)
        obs.dst_refund_confirmed = dst.refunded and settled(TX_DST_REFUND, dst.refunded)

    # =========================================================================
    # Actions
    # =========================================================================

    async def _run_action(self, entry: _Entry, action: Action) -> None:
        order = entry.order
        src_adapter = self._adapter(order.from_chain)
        dst_adapter = self._adapter(order.to_chain)
        try:
            if action is Action.REDEEM_SRC:
                tx_hash = await self._call(src_adapter.redeem, order.src_ref, order.secret,
                                           order.src_ref.receiver, retry=False)
                key = TX_SRC_REDEEM
            elif action is Action.REFUND_SRC:
                tx_hash = await self._call(src_adapter.refund, order.src_ref, order.src_ref.sender, retry=False)
                key = TX_SRC_REFUND
            elif action is Action.REFUND_DST:
                tx_hash = await self._call(dst_adapter.refund, order.dst_ref, order.dst_ref.sender, retry=False)
                key = TX_DST_REFUND
            else:
                tx_hash = await self._call(dst_adapter.fund, order.dst_ref, order.dst_ref.amount, retry=False)
                key = TX_DST
        except MissingKeyError as e:
            entry.skipped.add(action)
            log.info(f"Order {order.id}: {action.value} left to the key holder ({e})")
            return
        except NotYetExpiredError as e:
            log.info(f"Order {order.id}: {action.value} waiting for chain time: {e}")
            return
        except (AlreadyRedeemedError, AlreadyRefundedError) as e:
            log.info(f"Order {order.id}: {action.value} not needed: {e}")
            return
        except ExpiredError as e:
            # Chain time moved past the timelock; the refund path takes over
            log.warning(f"Order {order.id}: {action.value} too late: {e}")
            return
        except HashMismatchError as e:
            log.error(f"Order {order.id}: {action.value} rejected: {e}")
            await self._fail(entry, str(e))
            return

        order.tx_hashes[key] = tx_hash
        self.tracker.track(tx_hash, order.leg_chain(TX_LEG[key]))
        log.info(f"Order {order.id}: {action.value} sent {tx_hash}")

    # =========================================================================
    # Events
    # =========================================================================

    def _emit(self, entry: _Entry, event_type: str) -> None:
        order = entry.order
        event: Dict[str, Any] = {"type": event_type, "orderId": order.id}
        if event_type == "error":
            event["error"] = order.error
        else:
            event["status"] = order.to_status()
        event["timestamp"] = _timestamp()
        entry.subscription.emit(event)

    async def _save(self, order: Order) -> None:
        await asyncio.to_thread(self.store.save, order)

    async def _fail(self, entry: _Entry, error: str) -> None:
        order = entry.order
        if order.is_terminal:
            return
        fail(order, error, at=int(self.clock()))
        self._emit(entry, "status_update")
        await self._save(order)

    async def _finish(self, entry: _Entry) -> None:
        order = entry.order
        await self._save(order)
        if order.phase is OrderPhase.FAILED:
            self._emit(entry, "error")
        self._emit(entry, "completed")
        await asyncio.to_thread(self.store.archive, order.id)
        for key in TX_KEYS:
            tx_hash = order.tx_hashes.get(key)
            if tx_hash:
                self.tracker.forget(self.tracker.handle_for(tx_hash, order.leg_chain(TX_LEG[key])))
        entry.subscription.close()
        log.info(f"Order {order.id} finished: {order.phase.value} ({order.progress()}%)")
