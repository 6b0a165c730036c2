"""
EVM HTLC adapter for htlcswap.

Interacts with a native-ETH HTLC contract:

    newContract(bytes32 hashlock, address recipient, uint256 locktime) payable
    withdraw(bytes32 contractId, bytes32 preimage)
    refund(bytes32 contractId)
    getContract(bytes32 contractId) -> (hashlock, recipient, sender, locktime,
                                        amount, withdrawn, refunded)

contractId = keccak256(abi.encodePacked(sender, recipient, hashlock, locktime)),
so the id is known before the funding transaction is sent. The preimage is
not stored by the contract; it is read back from the withdraw calldata.
"""

import logging
from typing import Optional, Dict, List

from eth_abi.packed import encode_packed
from web3 import Web3

from ..core import HTLCParams, ContractRef, HTLCStatus, TxInfo, Chain
from ..chains.evm import EVMClient
from ..errors import AdapterError, MissingKeyError
from .base import ChainAdapter

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40

# HTLC ABI (minimal)
HTLC_ABI = [
    {
        "name": "newContract",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "_hashlock", "type": "bytes32"},
            {"name": "_recipient", "type": "address"},
            {"name": "_locktime", "type": "uint256"}
        ],
        "outputs": [{"name": "contractId", "type": "bytes32"}]
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_contractId", "type": "bytes32"},
            {"name": "_preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getContract",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_contractId", "type": "bytes32"}],
        "outputs": [
            {"name": "hashlock", "type": "bytes32"},
            {"name": "recipient", "type": "address"},
            {"name": "sender", "type": "address"},
            {"name": "locktime", "type": "uint256"},
            {"name": "amount", "type": "uint256"},
            {"name": "withdrawn", "type": "bool"},
            {"name": "refunded", "type": "bool"}
        ]
    },
]

EVENT_NEW = "HTLCNew(bytes32,address,address,uint256,uint256)"
EVENT_WITHDRAW = "HTLCWithdraw(bytes32)"
EVENT_REFUND = "HTLCRefund(bytes32)"


def compute_contract_id(sender20: bytes, recipient20: bytes, hashlock: bytes, locktime: int) -> bytes:
    """
    Contract id as the HTLC contract derives it.

    Args:
        sender20: 20-byte sender account
        recipient20: 20-byte recipient account
        hashlock: 32-byte hashlock
        locktime: Unix timestamp

    Returns:
        32-byte contract id
    """
    packed = encode_packed(
        ["address", "address", "bytes32", "uint256"],
        [sender20, recipient20, hashlock, locktime],
    )
    return Web3.keccak(packed)


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


class EVMAdapter(ChainAdapter):
    """Ethereum HTLC adapter over web3."""

    chain = Chain.ETHEREUM.value
    tokens = frozenset({"ETH"})

    def __init__(self, client: EVMClient):
        super().__init__(client.config.required_confirmations)
        self.client = client
        if not client.config.htlc_contract:
            raise AdapterError("EVM HTLC contract address not configured", chain=self.chain)
        self.contract_address = Web3.to_checksum_address(client.config.htlc_contract)
        self._contract = None

    @property
    def contract(self):
        if self._contract is None:
            self._contract = self.client.web3.eth.contract(address=self.contract_address, abi=HTLC_ABI)
        return self._contract

    def wallet_address(self) -> Optional[str]:
        return self.client.address

    def validate_address(self, address: str) -> bool:
        return bool(address) and address.startswith("0x") and Web3.is_address(address)

    # =========================================================================
    # Capability set
    # =========================================================================

    def create_htlc(self, params: HTLCParams) -> ContractRef:
        hashlock = self._check_params(params)
        contract_id = compute_contract_id(
            bytes.fromhex(params.sender[2:]),
            bytes.fromhex(params.receiver[2:]),
            bytes.fromhex(hashlock),
            params.timelock,
        )
        ref = ContractRef(
            chain=self.chain,
            address=self.contract_address,
            hashlock=hashlock,
            timelock=params.timelock,
            amount=params.amount,
            sender=Web3.to_checksum_address(params.sender),
            receiver=Web3.to_checksum_address(params.receiver),
            contract_id=Web3.to_hex(contract_id),
        )
        log.info(f"EVM HTLC id {ref.contract_id}, timelock={params.timelock}")
        return ref

    def fund(self, ref: ContractRef, amount: int) -> str:
        account = self.client.require_account()
        if account.address.lower() != ref.sender.lower():
            raise MissingKeyError(f"Configured EVM key is not the HTLC sender {ref.sender}", chain=self.chain)
        fn = self.contract.functions.newContract(
            bytes.fromhex(ref.hashlock), ref.receiver, ref.timelock
        )
        tx_hash = self.client.send_contract_tx(fn, value=amount)
        log.info(f"Funded EVM HTLC {ref.contract_id} with {amount} wei: {tx_hash}")
        return tx_hash

    def _find_log_tx(self, signature: str, contract_id: str) -> Optional[str]:
        w3 = self.client.web3
        from_block = max(0, w3.eth.block_number - self.client.config.log_lookback_blocks)
        logs: List[Dict] = w3.eth.get_logs({
            "address": self.contract_address,
            "fromBlock": from_block,
            "toBlock": "latest",
            "topics": [event_topic(signature), contract_id],
        })
        if not logs:
            return None
        return Web3.to_hex(logs[0]["transactionHash"])

    def _preimage_from_tx(self, tx_hash: str) -> Optional[str]:
        tx = self.client.web3.eth.get_transaction(tx_hash)
        _fn, args = self.contract.decode_function_input(tx["input"])
        preimage = args.get("_preimage")
        return preimage.hex() if preimage is not None else None

    def get_status(self, ref: ContractRef) -> HTLCStatus:
        (hashlock, recipient, sender, locktime,
         amount, withdrawn, refunded) = self.contract.functions.getContract(
            bytes.fromhex(ref.contract_id[2:])
        ).call()

        if sender == ZERO_ADDRESS:
            return HTLCStatus(exists=False)

        status = HTLCStatus(
            exists=True,
            funded=amount > 0,
            amount=amount,
            redeemed=withdrawn,
            refunded=refunded,
        )
        status.funding_tx = self._find_log_tx(EVENT_NEW, ref.contract_id)
        if withdrawn:
            status.redeem_tx = self._find_log_tx(EVENT_WITHDRAW, ref.contract_id)
            if status.redeem_tx:
                status.revealed_secret = self._preimage_from_tx(status.redeem_tx)
        if refunded:
            status.refund_tx = self._find_log_tx(EVENT_REFUND, ref.contract_id)
        return status

    def get_confirmations(self, tx_hash: str) -> TxInfo:
        receipt = self.client.get_receipt(tx_hash)
        if receipt is None:
            return TxInfo(found=self.client.is_pending(tx_hash))
        if receipt["status"] == 0:
            return TxInfo(found=True, failed=True)
        head = self.client.get_block_number()
        return TxInfo(found=True, confirmations=max(0, head - receipt["blockNumber"] + 1))

    def chain_time(self) -> int:
        return self.client.get_block_timestamp()

    # =========================================================================
    # Spends
    # =========================================================================

    def _redeem(self, ref: ContractRef, secret_hex: str, recipient: str, status: HTLCStatus) -> str:
        # withdraw pays the recipient fixed at creation; `recipient` is informational
        fn = self.contract.functions.withdraw(
            bytes.fromhex(ref.contract_id[2:]), bytes.fromhex(secret_hex)
        )
        return self.client.send_contract_tx(fn)

    def _refund(self, ref: ContractRef, sender: str, status: HTLCStatus) -> str:
        fn = self.contract.functions.refund(bytes.fromhex(ref.contract_id[2:]))
        return self.client.send_contract_tx(fn)
