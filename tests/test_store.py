#!/usr/bin/env python3
"""
Order Store Tests

1. Save / get / list
2. Archive keeps terminal orders readable
3. JSON file survives a reload
"""

import sys
import os
import json
import shutil
import tempfile
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.core import OrderPhase
from htlcswap.swap.state import apply, fail
from htlcswap.swap.store import MemoryOrderStore, JSONOrderStore

from fakes import FakeClock, FakeChainAdapter, make_order

NOW = 1_700_000_000


class StoreTestBase(unittest.TestCase):

    def setUp(self):
        clock = FakeClock(NOW)
        self.src = FakeChainAdapter("bitcoin", clock)
        self.dst = FakeChainAdapter("ton", clock)

    def order(self, order_id: str):
        order, _ = make_order(self.src, self.dst, NOW, order_id=order_id)
        return order


class TestMemoryOrderStore(StoreTestBase):

    def test_save_and_get(self):
        store = MemoryOrderStore()
        order = self.order("order_a")
        store.save(order)
        loaded = store.get("order_a")
        self.assertEqual(loaded.to_dict(), order.to_dict())
        self.assertIsNot(loaded, order)
        self.assertIsNone(store.get("order_missing"))

    def test_records_are_copies(self):
        store = MemoryOrderStore()
        order = self.order("order_a")
        store.save(order)
        apply(order, OrderPhase.SRC_FUNDED)
        self.assertIs(store.get("order_a").phase, OrderPhase.CREATED)

    def test_archive(self):
        store = MemoryOrderStore()
        live, done = self.order("order_live"), self.order("order_done")
        fail(done, "boom")
        store.save(live)
        store.save(done)
        store.archive("order_done")

        self.assertEqual([o.id for o in store.list_active()], ["order_live"])
        self.assertEqual(sorted(o.id for o in store.list()), ["order_done", "order_live"])
        self.assertEqual(store.get("order_done").error, "boom")
        # Unknown ids are ignored
        store.archive("order_missing")

    def test_save_after_archive_updates_archive(self):
        store = MemoryOrderStore()
        order = self.order("order_a")
        store.save(order)
        store.archive(order.id)
        order.error = "late"
        store.save(order)
        self.assertEqual(store.list_active(), [])
        self.assertEqual(store.get(order.id).error, "late")


class TestJSONOrderStore(StoreTestBase):

    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "nested", "orders.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_reload(self):
        store = JSONOrderStore(self.path)
        order = self.order("order_a")
        apply(order, OrderPhase.SRC_FUNDED, "funded", NOW + 10)
        order.tx_hashes["src"] = "bitcoin-tx-1"
        store.save(order)
        store.save(self.order("order_b"))
        store.archive("order_b")

        again = JSONOrderStore(self.path)
        loaded = again.get("order_a")
        self.assertIs(loaded.phase, OrderPhase.SRC_FUNDED)
        self.assertEqual(loaded.tx_hashes["src"], "bitcoin-tx-1")
        self.assertEqual(loaded.src_ref.to_dict(), order.src_ref.to_dict())
        self.assertEqual([o.id for o in again.list_active()], ["order_a"])
        self.assertIsNotNone(again.get("order_b"))

    def test_file_layout(self):
        store = JSONOrderStore(self.path)
        store.save(self.order("order_a"))
        with open(self.path) as f:
            data = json.load(f)
        self.assertEqual(set(data), {"active", "archived"})
        self.assertIn("order_a", data["active"])
        # No temp files left behind
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["orders.json"])

    def test_missing_file_is_empty(self):
        store = JSONOrderStore(self.path)
        self.assertEqual(store.list(), [])
        self.assertFalse(os.path.exists(self.path))


if __name__ == "__main__":
    unittest.main()
