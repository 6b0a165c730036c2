#!/usr/bin/env python3
"""
EVM HTLC Adapter Tests

1. Contract id derivation matches the contract
2. Status from getContract + logs, secret from withdraw calldata
3. Confirmations from receipts
4. Signing key checks, refund rules
"""

import sys
import os
import unittest
from unittest.mock import MagicMock, patch

from eth_account import Account
from web3 import Web3

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from htlcswap.chains.evm import EVMClient, EVMConfig
from htlcswap.core import HTLCParams, new_hashlock
from htlcswap.errors import (
    AdapterError, AlreadyRedeemedError, ExpiredError, MissingKeyError, NotYetExpiredError,
)
from htlcswap.htlc.evm import EVMAdapter, compute_contract_id, event_topic, EVENT_WITHDRAW, ZERO_ADDRESS

TIMELOCK = 1_700_000_000
HTLC_CONTRACT = "0x" + "c0" * 20
KEY = "0x" + "11" * 32
RESOLVER = Account.from_key(KEY).address
ALICE = Web3.to_checksum_address("0x" + "a1" * 20)


class EVMTestBase(unittest.TestCase):

    private_key = ""

    def setUp(self):
        self.web3 = MagicMock()
        config = EVMConfig(htlc_contract=HTLC_CONTRACT, private_key=self.private_key, required_confirmations=12)
        self.client = EVMClient(config, web3=self.web3)
        self.adapter = EVMAdapter(self.client)
        self.contract = MagicMock()
        self.adapter._contract = self.contract
        self.secret, self.hashlock = new_hashlock()

    def make_ref(self, sender: str = RESOLVER, receiver: str = ALICE):
        return self.adapter.create_htlc(HTLCParams(self.hashlock, TIMELOCK, sender, receiver, 10 ** 16, "ethereum"))

    def set_contract(self, sender=RESOLVER, amount=10 ** 16, withdrawn=False, refunded=False):
        self.contract.functions.getContract.return_value.call.return_value = (
            bytes.fromhex(self.hashlock), ALICE, sender, TIMELOCK, amount, withdrawn, refunded,
        )


class TestContractId(EVMTestBase):

    def test_matches_solidity_keccak(self):
        expected = Web3.solidity_keccak(
            ["address", "address", "bytes32", "uint256"],
            [RESOLVER, ALICE, bytes.fromhex(self.hashlock), TIMELOCK],
        )
        got = compute_contract_id(
            bytes.fromhex(RESOLVER[2:]), bytes.fromhex(ALICE[2:]), bytes.fromhex(self.hashlock), TIMELOCK,
        )
        self.assertEqual(got, expected)

    def test_create_htlc(self):
        ref = self.make_ref(sender=RESOLVER.lower())
        self.assertEqual(ref.address, Web3.to_checksum_address(HTLC_CONTRACT))
        self.assertEqual(ref.sender, RESOLVER)
        self.assertEqual(ref.key, ref.contract_id)
        self.assertEqual(ref, self.make_ref())
        other = self.adapter.create_htlc(HTLCParams(self.hashlock, TIMELOCK + 1, RESOLVER, ALICE, 1))
        self.assertNotEqual(other.contract_id, ref.contract_id)

    def test_requires_contract(self):
        with self.assertRaises(AdapterError):
            EVMAdapter(EVMClient(EVMConfig(), web3=MagicMock()))

    def test_validate_address(self):
        self.assertTrue(self.adapter.validate_address(ALICE))
        self.assertTrue(self.adapter.validate_address(ALICE.lower()))
        self.assertFalse(self.adapter.validate_address("a1" * 20))
        self.assertFalse(self.adapter.validate_address("0x1234"))


class TestStatus(EVMTestBase):

    def test_missing(self):
        ref = self.make_ref()
        self.set_contract(sender=ZERO_ADDRESS, amount=0)
        status = self.adapter.get_status(ref)
        self.assertFalse(status.exists)
        self.web3.eth.get_logs.assert_not_called()

    def test_funded(self):
        ref = self.make_ref()
        self.set_contract()
        self.web3.eth.block_number = 60_000
        self.web3.eth.get_logs.return_value = [{"transactionHash": b"\x01" * 32}]
        status = self.adapter.get_status(ref)
        self.assertTrue(status.funded)
        self.assertEqual(status.funding_tx, "0x" + "01" * 32)
        query = self.web3.eth.get_logs.call_args[0][0]
        self.assertEqual(query["fromBlock"], 10_000)
        self.assertEqual(query["topics"][1], ref.contract_id)

    def test_withdrawn_reveals_secret(self):
        ref = self.make_ref()
        self.set_contract(withdrawn=True)
        self.web3.eth.block_number = 100
        self.web3.eth.get_logs.return_value = [{"transactionHash": b"\x02" * 32}]
        self.web3.eth.get_transaction.return_value = {"input": "0xdeadbeef"}
        self.contract.decode_function_input.return_value = (
            MagicMock(), {"_contractId": b"", "_preimage": bytes.fromhex(self.secret)},
        )
        status = self.adapter.get_status(ref)
        self.assertTrue(status.redeemed)
        self.assertEqual(status.redeem_tx, "0x" + "02" * 32)
        self.assertEqual(status.revealed_secret, self.secret)
        topics = [c[0][0]["topics"][0] for c in self.web3.eth.get_logs.call_args_list]
        self.assertIn(event_topic(EVENT_WITHDRAW), topics)

    def test_refunded(self):
        ref = self.make_ref()
        self.set_contract(refunded=True)
        self.web3.eth.block_number = 100
        self.web3.eth.get_logs.return_value = [{"transactionHash": b"\x03" * 32}]
        status = self.adapter.get_status(ref)
        self.assertTrue(status.refunded)
        self.assertEqual(status.refund_tx, "0x" + "03" * 32)
        self.assertIsNone(status.revealed_secret)


class TestConfirmations(EVMTestBase):

    def test_pending(self):
        with patch.object(self.client, "get_receipt", return_value=None), \
                patch.object(self.client, "is_pending", return_value=True):
            info = self.adapter.get_confirmations("0xab")
        self.assertTrue(info.found)
        self.assertEqual(info.confirmations, 0)

    def test_reverted(self):
        with patch.object(self.client, "get_receipt", return_value={"status": 0, "blockNumber": 5}):
            self.assertTrue(self.adapter.get_confirmations("0xab").failed)

    def test_depth(self):
        self.web3.eth.block_number = 111
        with patch.object(self.client, "get_receipt", return_value={"status": 1, "blockNumber": 100}):
            self.assertEqual(self.adapter.get_confirmations("0xab").confirmations, 12)


class TestNoKey(EVMTestBase):

    def test_fund(self):
        self.assertIsNone(self.adapter.wallet_address())
        with self.assertRaises(MissingKeyError):
            self.adapter.fund(self.make_ref(), 10 ** 16)


class TestWithKey(EVMTestBase):

    private_key = "11" * 32

    def test_wallet_address(self):
        self.assertEqual(self.adapter.wallet_address(), RESOLVER)

    def test_fund_checks_sender(self):
        with self.assertRaises(MissingKeyError):
            self.adapter.fund(self.make_ref(sender=ALICE, receiver=RESOLVER), 10 ** 16)

    def test_fund(self):
        ref = self.make_ref()
        with patch.object(self.client, "send_contract_tx", return_value="0xfeed") as send:
            self.assertEqual(self.adapter.fund(ref, 10 ** 16), "0xfeed")
        self.assertEqual(send.call_args.kwargs["value"], 10 ** 16)
        self.contract.functions.newContract.assert_called_once_with(
            bytes.fromhex(self.hashlock), ALICE, TIMELOCK,
        )

    def test_redeem_sends_withdraw(self):
        ref = self.make_ref()
        self.set_contract()
        self.web3.eth.block_number = 100
        self.web3.eth.get_logs.return_value = []
        self.web3.eth.get_block.return_value = {"timestamp": TIMELOCK - 60}
        with patch.object(self.client, "send_contract_tx", return_value="0xbeef"):
            self.assertEqual(self.adapter.redeem(ref, self.secret, ALICE), "0xbeef")
        self.contract.functions.withdraw.assert_called_once_with(
            bytes.fromhex(ref.contract_id[2:]), bytes.fromhex(self.secret),
        )

    def test_redeem_after_expiry(self):
        ref = self.make_ref()
        self.web3.eth.get_block.return_value = {"timestamp": TIMELOCK}
        with self.assertRaises(ExpiredError):
            self.adapter.redeem(ref, self.secret, ALICE)

    def test_refund_after_withdraw_rejected(self):
        ref = self.make_ref()
        self.set_contract(withdrawn=True)
        self.web3.eth.block_number = 100
        self.web3.eth.get_logs.return_value = []
        for timestamp in (TIMELOCK - 60, TIMELOCK, TIMELOCK + 60):
            self.web3.eth.get_block.return_value = {"timestamp": timestamp}
            with patch.object(self.client, "send_contract_tx") as send:
                with self.assertRaises(AlreadyRedeemedError):
                    self.adapter.refund(ref, RESOLVER)
            send.assert_not_called()
        self.contract.functions.refund.assert_not_called()

    def test_refund_waits_for_timelock(self):
        ref = self.make_ref()
        self.set_contract()
        self.web3.eth.block_number = 100
        self.web3.eth.get_logs.return_value = []
        self.web3.eth.get_block.return_value = {"timestamp": TIMELOCK - 1}
        with self.assertRaises(NotYetExpiredError):
            self.adapter.refund(ref, RESOLVER)
        # Contract refund requires timelock <= block.timestamp
        self.web3.eth.get_block.return_value = {"timestamp": TIMELOCK}
        with patch.object(self.client, "send_contract_tx", return_value="0xdead"):
            self.assertEqual(self.adapter.refund(ref, RESOLVER), "0xdead")
        self.contract.functions.refund.assert_called_once_with(bytes.fromhex(ref.contract_id[2:]))


if __name__ == "__main__":
    unittest.main()
