#!/usr/bin/env python3
"""
Bitcoin HTLC Adapter Tests

1. Script encoding (push_int, BIP-199 layout)
2. P2WSH address derivation and party addresses
3. Status from Esplora (funded, redeemed witness, refunded)
4. Confirmations and median-time expiry
5. Key ownership checks
"""

import sys
import os
import json
import unittest

import base58
import bech32
import httpx
from bitcoin import SelectParams
from bitcoin.core import Hash160
from bitcoin.wallet import CBitcoinSecret

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.chains.btc import BTCClient, BTCConfig
from htlcswap.core import HTLCParams, new_hashlock
from htlcswap.errors import (
    ExpiredError, MissingKeyError, NotYetExpiredError, TransientAdapterError, ValidationError,
)
from htlcswap.htlc.btc import (
    BTCAdapter, create_htlc_script, push_int, sha256,
    OP_IF, OP_ELSE, OP_SHA256, OP_CHECKSIG, OP_EQUALVERIFY,
)

TIMELOCK = 1_700_000_000
ALICE_PKH = bytes([0x01] * 20)
BOB_PKH = bytes([0x02] * 20)
ALICE = bech32.encode("tb", 0, ALICE_PKH)
BOB = bech32.encode("tb", 0, BOB_PKH)


class FakeEsplora:
    """MockTransport handler: path -> (status, body)."""

    def __init__(self):
        self.routes = {}
        self.posted = []

    def set(self, path: str, body, status: int = 200):
        self.routes[path] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/api"):]
        if request.method == "POST":
            self.posted.append(request.content.decode())
        status, body = self.routes.get(path, (404, "not found"))
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=str(body))


class BTCTestBase(unittest.TestCase):

    wif = ""

    def setUp(self):
        SelectParams("testnet")
        self.esplora = FakeEsplora()
        config = BTCConfig(network="testnet", api_url="https://esplora.test/api",
                           wif=self.wif, fee_rate=2, required_confirmations=3)
        self.client = BTCClient(config, transport=httpx.MockTransport(self.esplora))
        self.adapter = BTCAdapter(self.client)
        self.secret, self.hashlock = new_hashlock()

    def tearDown(self):
        self.client.close()

    def make_ref(self, sender: str = ALICE, receiver: str = BOB, amount: int = 100_000):
        return self.adapter.create_htlc(HTLCParams(self.hashlock, TIMELOCK, sender, receiver, amount, "bitcoin"))

    def fund_on_chain(self, ref, txid: str = "aa" * 32, value: int = 100_000):
        self.esplora.set(f"/address/{ref.address}/txs", [
            {"txid": txid, "vout": [
                {"scriptpubkey_address": BOB, "value": 5_000},
                {"scriptpubkey_address": ref.address, "value": value},
            ]},
        ])
        self.esplora.set(f"/tx/{txid}/outspend/1", {"spent": False})
        return txid

    def spend_on_chain(self, funding_txid: str, witness, spend_txid: str = "bb" * 32):
        self.esplora.set(f"/tx/{funding_txid}/outspend/1", {"spent": True, "txid": spend_txid, "vin": 0})
        self.esplora.set(f"/tx/{spend_txid}", {"txid": spend_txid, "vin": [{"witness": witness}]})

    def set_median_time(self, mediantime: int):
        self.esplora.set("/blocks/tip/hash", "cc" * 32)
        self.esplora.set(f"/block/{'cc' * 32}", {"mediantime": mediantime, "timestamp": mediantime + 600})


class TestScript(unittest.TestCase):

    def test_push_int(self):
        self.assertEqual(push_int(0), b"\x00")
        self.assertEqual(push_int(16), b"\x60")
        self.assertEqual(push_int(128), b"\x02\x80\x00")
        self.assertEqual(push_int(TIMELOCK), b"\x04" + TIMELOCK.to_bytes(4, "little"))

    def test_layout(self):
        _, hashlock = new_hashlock()
        script = create_htlc_script(hashlock, ALICE_PKH, BOB_PKH, TIMELOCK)
        self.assertEqual(script[:3], bytes([OP_IF, OP_SHA256, 0x20]))
        self.assertEqual(script[3:35], bytes.fromhex(hashlock))
        self.assertEqual(script[-2:], bytes([OP_EQUALVERIFY, OP_CHECKSIG]))
        else_at = script.index(bytes([OP_ELSE]), 35)
        self.assertIn(ALICE_PKH, script[:else_at])
        self.assertIn(BOB_PKH, script[else_at:])


class TestCreate(BTCTestBase):

    def test_p2wsh_address(self):
        ref = self.make_ref()
        script = bytes.fromhex(ref.extra["witness_script"])
        self.assertEqual(ref.address, bech32.encode("tb", 0, sha256(script)))
        self.assertTrue(ref.address.startswith("tb1q"))
        self.assertEqual(ref.key, ref.address)
        # Redeem path pays the receiver, refund path the sender
        self.assertEqual(script, create_htlc_script(self.hashlock, BOB_PKH, ALICE_PKH, TIMELOCK))

    def test_deterministic(self):
        self.assertEqual(self.make_ref(), self.make_ref())

    def test_p2pkh_party(self):
        legacy = base58.b58encode_check(b"\x6f" + ALICE_PKH).decode()
        self.assertEqual(self.adapter.address_to_pkh(legacy), ALICE_PKH)
        ref = self.make_ref(sender=legacy)
        self.assertEqual(ref.address, self.make_ref().address)

    def test_rejects_block_height_timelock(self):
        with self.assertRaises(ValidationError):
            self.adapter.create_htlc(HTLCParams(self.hashlock, 850_000, ALICE, BOB, 1000))

    def test_rejects_script_hash_party(self):
        p2wsh = bech32.encode("tb", 0, bytes(32))
        with self.assertRaises(ValidationError):
            self.make_ref(receiver=p2wsh)

    def test_validate_address(self):
        self.assertTrue(self.adapter.validate_address(ALICE))
        self.assertFalse(self.adapter.validate_address(bech32.encode("bc", 0, ALICE_PKH)))
        self.assertFalse(self.adapter.validate_address("not-an-address"))
        self.assertFalse(self.adapter.validate_address(""))


class TestStatus(BTCTestBase):

    def test_unfunded(self):
        ref = self.make_ref()
        self.esplora.set(f"/address/{ref.address}/txs", [])
        status = self.adapter.get_status(ref)
        self.assertFalse(status.exists)
        self.assertFalse(status.funded)

    def test_underfunded_output_ignored(self):
        ref = self.make_ref()
        self.fund_on_chain(ref, value=99_999)
        self.assertFalse(self.adapter.get_status(ref).funded)

    def test_funded(self):
        ref = self.make_ref()
        txid = self.fund_on_chain(ref)
        status = self.adapter.get_status(ref)
        self.assertTrue(status.exists and status.funded)
        self.assertEqual(status.funding_tx, txid)
        self.assertEqual(status.amount, 100_000)
        self.assertFalse(status.redeemed or status.refunded)

    def test_redeemed_reveals_secret(self):
        ref = self.make_ref()
        txid = self.fund_on_chain(ref)
        self.spend_on_chain(txid, ["30" * 71, "02" * 33, self.secret, "01", ref.extra["witness_script"]])
        status = self.adapter.get_status(ref)
        self.assertTrue(status.redeemed)
        self.assertEqual(status.redeem_tx, "bb" * 32)
        self.assertEqual(status.revealed_secret, self.secret)

    def test_refunded(self):
        ref = self.make_ref()
        txid = self.fund_on_chain(ref)
        self.spend_on_chain(txid, ["30" * 71, "02" * 33, "", ref.extra["witness_script"]])
        status = self.adapter.get_status(ref)
        self.assertTrue(status.refunded)
        self.assertFalse(status.redeemed)
        self.assertIsNone(status.revealed_secret)

    def test_rate_limited(self):
        ref = self.make_ref()
        self.esplora.set(f"/address/{ref.address}/txs", "slow down", status=429)
        with self.assertRaises(TransientAdapterError):
            self.adapter.get_status(ref)


class TestConfirmations(BTCTestBase):

    def test_unknown(self):
        self.assertFalse(self.adapter.get_confirmations("dd" * 32).found)

    def test_mempool(self):
        self.esplora.set(f"/tx/{'dd' * 32}/status", {"confirmed": False})
        info = self.adapter.get_confirmations("dd" * 32)
        self.assertTrue(info.found)
        self.assertEqual(info.confirmations, 0)

    def test_depth(self):
        self.esplora.set(f"/tx/{'dd' * 32}/status", {"confirmed": True, "block_height": 100})
        self.esplora.set("/blocks/tip/height", "105")
        self.assertEqual(self.adapter.get_confirmations("dd" * 32).confirmations, 6)
        self.assertEqual(self.adapter.required_confirmations(), 3)


class TestExpiry(BTCTestBase):

    def test_redeem_after_expiry(self):
        ref = self.make_ref()
        self.set_median_time(TIMELOCK + 1)
        with self.assertRaises(ExpiredError):
            self.adapter.redeem(ref, self.secret, BOB)

    def test_refund_at_timelock_not_final(self):
        # CLTV needs median time strictly past the locktime
        ref = self.make_ref()
        self.fund_on_chain(ref)
        self.set_median_time(TIMELOCK)
        with self.assertRaises(NotYetExpiredError):
            self.adapter.refund(ref, ALICE)


class TestKeys(BTCTestBase):

    def test_no_wif(self):
        self.assertIsNone(self.adapter.wallet_address())
        with self.assertRaises(MissingKeyError):
            self.adapter.fund(self.make_ref(), 100_000)

    def test_key_must_control_receiver(self):
        self.client.config.wif = str(CBitcoinSecret.from_secret_bytes(b"\x11" * 32))
        ref = self.make_ref()
        self.fund_on_chain(ref)
        self.set_median_time(TIMELOCK - 3600)
        with self.assertRaises(MissingKeyError):
            self.adapter.redeem(ref, self.secret, BOB)


class TestRedeemBroadcast(BTCTestBase):

    def setUp(self):
        SelectParams("testnet")
        self.key = CBitcoinSecret.from_secret_bytes(b"\x22" * 32)
        self.wif = str(self.key)
        super().setUp()
        self.resolver = bech32.encode("tb", 0, Hash160(self.key.pub))

    def test_wallet_address(self):
        self.assertEqual(self.adapter.wallet_address(), self.resolver)

    def test_redeem_pushes_secret(self):
        ref = self.make_ref(receiver=self.resolver)
        self.fund_on_chain(ref)
        self.set_median_time(TIMELOCK - 3600)
        self.esplora.set("/tx", "ee" * 32)

        txid = self.adapter.redeem(ref, self.secret, self.resolver)
        self.assertEqual(txid, "ee" * 32)
        raw = self.esplora.posted[-1]
        self.assertIn(self.secret, raw)
        self.assertIn(ref.extra["witness_script"], raw)


if __name__ == "__main__":
    unittest.main()
