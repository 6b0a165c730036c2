#!/usr/bin/env python3
"""
Order Monitor Tests

Full swaps against in-memory chains:

1. Happy path: fund both legs, reveal on destination, auto-redeem source
2. Source-only funding refunds after expiry
3. Wrong secret submitted by the initiator is rejected, order later refunds
   A reveal that cannot reach the source leg before its timelock refunds it
4. Wrong secret seen on-chain fails the order
5. Transient RPC errors are retried, fatal ones fail the order
6. Store writes run in worker threads
7. Registry: idempotent start, stop
"""

import sys
import os
import asyncio
import threading
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.core import OrderPhase
from htlcswap.errors import HashMismatchError, TransientAdapterError
from htlcswap.swap.executor import SwapExecutor
from htlcswap.swap.monitor import MonitorConfig, OrderMonitor
from htlcswap.swap.store import MemoryOrderStore

from fakes import FakeClock, FakeChainAdapter

TIMEOUT = 5.0


class ThreadRecordingStore(MemoryOrderStore):
    """Remembers which thread each save ran on."""

    def __init__(self):
        super().__init__()
        self.save_threads = []

    def save(self, order):
        self.save_threads.append(threading.get_ident())
        super().save(order)


class MonitorTestBase(unittest.IsolatedAsyncioTestCase):

    auto_fund = False
    store_class = MemoryOrderStore

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.src = FakeChainAdapter("bitcoin", self.clock, wallet="bitcoin:resolver")
        self.dst = FakeChainAdapter("ethereum", self.clock, wallet="ethereum:resolver")
        adapters = {"bitcoin": self.src, "ethereum": self.dst}
        self.store = self.store_class()
        self.monitor = OrderMonitor(
            adapters, self.store,
            MonitorConfig(poll_interval=0.01, backoff_base=0, backoff_max=0,
                          call_timeout=2.0, auto_fund_destination=self.auto_fund),
            clock=self.clock,
        )
        self.executor = SwapExecutor(adapters, self.monitor, self.store)

    async def asyncTearDown(self):
        await self.monitor.shutdown()

    async def create(self):
        order, secret = await self.executor.create_order(
            "bitcoin", "ethereum", "BTC", "ETH", "0.01",
            recipient_address="ethereum:alice",
            refund_address="bitcoin:alice",
        )
        self.events = []
        self.monitor.get_subscription(order.id).on(self.events.append)
        return order, secret

    async def wait_for(self, predicate, what: str):
        deadline = asyncio.get_running_loop().time() + TIMEOUT
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                self.fail(f"Timed out waiting for {what}")
            await asyncio.sleep(0.01)

    async def wait_for_phase(self, order_id: str, phase: OrderPhase):
        await self.wait_for(lambda: self.executor.get_order(order_id).phase is phase, phase.value)
        return self.executor.get_order(order_id)

    async def wait_finished(self, order_id: str):
        await self.wait_for(lambda: not self.monitor.is_monitoring(order_id), "monitor exit")
        return self.executor.get_order(order_id)

    def event_types(self):
        return [e["type"] for e in self.events]


class TestHappyPath(MonitorTestBase):

    async def test_completed(self):
        order, secret = await self.create()
        self.assertIsNotNone(secret)

        # Initiator funds the source leg
        self.src.deposit(order.src_ref)
        await self.wait_for_phase(order.id, OrderPhase.SRC_FUNDED)

        # Resolver funds the destination leg
        self.dst.deposit(order.dst_ref)
        await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)

        # Initiator reveals the secret on the destination chain
        await self.executor.redeem_destination(order.id)
        done = await self.wait_finished(order.id)

        self.assertIs(done.phase, OrderPhase.COMPLETED)
        self.assertEqual(done.progress(), 100)
        self.assertEqual(done.secret, secret)
        self.assertIsNone(done.error)
        self.assertIsNone(self.executor.held_secret(order.id))

        # The source leg was redeemed with the same secret
        src_contract = self.src.contracts[order.src_ref.key]
        self.assertTrue(src_contract["redeemed"])
        self.assertEqual(src_contract["secret"], secret)
        self.assertEqual(done.tx_hashes["src_redeem"], src_contract["redeem_tx"])

        self.assertEqual(self.event_types()[-1], "completed")
        self.assertNotIn("error", self.event_types())
        progress = [e["status"]["progress"] for e in self.events]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[-1], 100)

        # Archived and still readable
        self.assertEqual(self.store.list_active(), [])
        self.assertIs(self.store.get(order.id).phase, OrderPhase.COMPLETED)

    async def test_confirmations_gate_funding(self):
        self.src.initial_confirmations = 0
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        await asyncio.sleep(0.1)
        self.assertIs(self.executor.get_order(order.id).phase, OrderPhase.CREATED)
        self.src.mine()
        await self.wait_for_phase(order.id, OrderPhase.SRC_FUNDED)


class TestAutoFund(MonitorTestBase):

    auto_fund = True

    async def test_resolver_funds_destination(self):
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        funded = await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)
        self.assertIn(funded.tx_hashes["dst"], self.dst.sent)
        self.assertEqual(self.dst.contracts[order.dst_ref.key]["amount"], order.to_amount)


class TestRefunds(MonitorTestBase):

    async def test_source_refunded_after_expiry(self):
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        await self.wait_for_phase(order.id, OrderPhase.SRC_FUNDED)

        # Resolver never shows up
        self.clock.advance(order.dst_htlc.timelock - self.clock() + 1)
        await asyncio.sleep(0.05)
        self.assertIs(self.executor.get_order(order.id).phase, OrderPhase.SRC_FUNDED)

        self.clock.advance(order.src_htlc.timelock - self.clock())
        done = await self.wait_finished(order.id)
        self.assertIs(done.phase, OrderPhase.REFUNDED_SRC)
        self.assertEqual(done.progress(), 40)
        self.assertTrue(self.src.contracts[order.src_ref.key]["refunded"])

    async def test_wrong_secret_from_initiator(self):
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        self.dst.deposit(order.dst_ref)
        await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)

        with self.assertRaises(HashMismatchError):
            await self.executor.redeem_destination(order.id, secret="11" * 32)
        await asyncio.sleep(0.05)
        current = self.executor.get_order(order.id)
        self.assertIs(current.phase, OrderPhase.DST_FUNDED)
        self.assertFalse(self.dst.contracts[order.dst_ref.key]["redeemed"])

        # Nobody redeems: destination refunds first, then source
        self.clock.advance(order.dst_htlc.timelock - self.clock())
        await self.wait_for(lambda: self.dst.contracts[order.dst_ref.key]["refunded"], "dst refund")
        self.assertIs(self.executor.get_order(order.id).phase, OrderPhase.DST_FUNDED)

        self.clock.advance(order.src_htlc.timelock - self.clock())
        done = await self.wait_finished(order.id)
        self.assertIs(done.phase, OrderPhase.REFUNDED_SRC)

    async def test_revealed_secret_but_source_expired_refunds(self):
        order, secret = await self.create()
        self.src.deposit(order.src_ref)
        self.dst.deposit(order.dst_ref)
        await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)

        # Source redeem keeps failing until the source timelock passes
        stuck = TransientAdapterError("mempool full", chain="bitcoin")
        with patch.object(self.src, "_redeem", side_effect=stuck) as redeem:
            await self.executor.redeem_destination(order.id)
            await self.wait_for(lambda: self.executor.get_order(order.id).secret == secret, "reveal")
            await self.wait_for(lambda: redeem.call_count >= 2, "redeem retries")
            self.clock.advance(order.src_htlc.timelock - self.clock())
            done = await self.wait_finished(order.id)

        self.assertIs(done.phase, OrderPhase.REFUNDED_SRC)
        self.assertIsNone(done.error)
        self.assertEqual(done.progress(), 80)
        self.assertIsNone(self.executor.held_secret(order.id))
        src_contract = self.src.contracts[order.src_ref.key]
        self.assertTrue(src_contract["refunded"])
        self.assertFalse(src_contract["redeemed"])
        self.assertEqual(self.event_types()[-1], "completed")
        self.assertNotIn("error", self.event_types())

    async def test_redeem_while_chain_time_lags_local_clock(self):
        order, secret = await self.create()
        self.src.deposit(order.src_ref)
        self.dst.deposit(order.dst_ref)
        await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)

        # The chain's median time stays an hour behind the source timelock
        lagging = order.src_htlc.timelock - 3600
        stuck = TransientAdapterError("node syncing", chain="bitcoin")
        with patch.object(self.src, "chain_time", return_value=lagging):
            with patch.object(self.src, "_redeem", side_effect=stuck):
                await self.executor.redeem_destination(order.id)
                await self.wait_for(lambda: self.executor.get_order(order.id).secret == secret, "reveal")
                self.clock.advance(order.src_htlc.timelock + 60 - self.clock())
                await asyncio.sleep(0.05)
                self.assertIs(self.executor.get_order(order.id).phase, OrderPhase.DST_FUNDED)
                self.assertFalse(self.src.contracts[order.src_ref.key]["refunded"])
            done = await self.wait_finished(order.id)

        self.assertIs(done.phase, OrderPhase.COMPLETED)
        self.assertTrue(self.src.contracts[order.src_ref.key]["redeemed"])


class TestFailures(MonitorTestBase):

    async def test_wrong_secret_on_chain(self):
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        self.dst.deposit(order.dst_ref)
        await self.wait_for_phase(order.id, OrderPhase.DST_FUNDED)

        self.dst.force_redeem(order.dst_ref, "22" * 32)
        done = await self.wait_finished(order.id)
        self.assertIs(done.phase, OrderPhase.FAILED)
        self.assertIn("does not match", done.error)
        self.assertEqual(done.progress(), 80)
        self.assertEqual(self.event_types()[-2:], ["error", "completed"])
        self.assertFalse(self.src.contracts[order.src_ref.key]["redeemed"])

    async def test_transient_errors_retried(self):
        order, _ = await self.create()
        self.src.failures.extend(TransientAdapterError("rate limited", chain="bitcoin") for _ in range(5))
        self.src.deposit(order.src_ref)
        current = await self.wait_for_phase(order.id, OrderPhase.SRC_FUNDED)
        self.assertEqual(self.src.failures, [])
        self.assertIsNone(current.error)

    async def test_unrecoverable_error_fails_order(self):
        order, _ = await self.create()
        self.src.failures.append(RuntimeError("node exploded"))
        done = await self.wait_finished(order.id)
        self.assertIs(done.phase, OrderPhase.FAILED)
        self.assertEqual(done.error, "node exploded")
        self.assertEqual(self.event_types(), ["status_update", "error", "completed"])
        error_event = self.events[1]
        self.assertEqual(error_event["error"], "node exploded")
        self.assertEqual(error_event["orderId"], order.id)

    async def test_unfunded_order_fails_at_expiry(self):
        order, _ = await self.create()
        self.assertIsNotNone(self.executor.held_secret(order.id))
        self.clock.advance(order.src_htlc.timelock - self.clock())
        done = await self.wait_finished(order.id)
        self.assertIs(done.phase, OrderPhase.FAILED)
        self.assertEqual(done.progress(), 20)
        self.assertIsNone(self.executor.held_secret(order.id))


class TestPersistence(MonitorTestBase):

    store_class = ThreadRecordingStore

    async def test_writes_run_off_the_event_loop(self):
        loop_thread = threading.get_ident()
        order, _ = await self.create()
        self.src.deposit(order.src_ref)
        await self.wait_for(lambda: self.store.get(order.id).phase is OrderPhase.SRC_FUNDED, "saved phase")
        self.assertGreaterEqual(len(self.store.save_threads), 2)
        self.assertNotIn(loop_thread, self.store.save_threads)


class TestRegistry(MonitorTestBase):

    async def test_start_is_idempotent(self):
        order, _ = await self.create()
        first = self.monitor.get_subscription(order.id)
        again = self.monitor.start_monitoring(self.store.get(order.id))
        self.assertIs(again, first)
        self.assertEqual(self.monitor.active_count(), 1)

    async def test_stop(self):
        order, _ = await self.create()
        self.assertFalse(self.monitor.stop_monitoring("order_missing"))
        self.assertTrue(self.monitor.stop_monitoring(order.id))
        self.assertFalse(self.monitor.is_monitoring(order.id))
        self.assertFalse(self.monitor.stop_monitoring(order.id))
        self.assertTrue(self.monitor.get_subscription(order.id) is None)

    async def test_terminal_order_not_monitored(self):
        order, _ = await self.create()
        self.monitor.stop_monitoring(order.id)
        stored = self.store.get(order.id)
        stored.phase = OrderPhase.FAILED
        subscription = self.monitor.start_monitoring(stored)
        self.assertTrue(subscription.closed)
        self.assertFalse(self.monitor.is_monitoring(order.id))

    async def test_listener_gets_events(self):
        order, _ = await self.create()
        subscription = self.monitor.get_subscription(order.id)
        events = subscription.listen()
        self.src.failures.append(RuntimeError("boom"))
        received = [event["type"] async for event in events]
        self.assertEqual(received, ["status_update", "error", "completed"])

    async def test_resume(self):
        order, _ = await self.create()
        await self.monitor.shutdown()
        self.assertEqual(self.monitor.active_count(), 0)
        self.assertEqual(await self.executor.resume(), 1)
        self.assertTrue(self.monitor.is_monitoring(order.id))


if __name__ == "__main__":
    unittest.main()
