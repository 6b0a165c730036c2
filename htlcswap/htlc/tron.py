"""
Tron HTLC adapter for htlcswap.

The same HTLC contract as on EVM, deployed on TVM. Solidity `address` is the
20-byte account id (the base58 address without its 0x41 prefix), so the
contract id derives exactly as on Ethereum.
"""

import logging
from typing import Optional

from eth_abi import encode, decode
from web3 import Web3

from ..core import HTLCParams, ContractRef, HTLCStatus, TxInfo, Chain
from ..chains.tron import TronClient, address_body, is_valid_address
from ..errors import AdapterError, MissingKeyError
from .base import ChainAdapter
from .evm import compute_contract_id

log = logging.getLogger(__name__)

SEL_NEW = "newContract(bytes32,address,uint256)"
SEL_WITHDRAW = "withdraw(bytes32,bytes32)"
SEL_REFUND = "refund(bytes32)"
SEL_GET = "getContract(bytes32)"

GET_CONTRACT_TYPES = ["bytes32", "address", "address", "uint256", "uint256", "bool", "bool"]
ZERO_BODY = "0x" + "0" * 40


class TronAdapter(ChainAdapter):
    """Tron HTLC adapter over TronGrid."""

    chain = Chain.TRON.value
    tokens = frozenset({"TRX"})

    def __init__(self, client: TronClient):
        super().__init__(client.config.required_confirmations)
        self.client = client
        if not client.config.htlc_contract:
            raise AdapterError("Tron HTLC contract address not configured", chain=self.chain)
        self.contract_address = client.config.htlc_contract

    def wallet_address(self) -> Optional[str]:
        return self.client.address

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_valid_address(address)

    # =========================================================================
    # Capability set
    # =========================================================================

    def create_htlc(self, params: HTLCParams) -> ContractRef:
        hashlock = self._check_params(params)
        contract_id = compute_contract_id(
            address_body(params.sender),
            address_body(params.receiver),
            bytes.fromhex(hashlock),
            params.timelock,
        )
        ref = ContractRef(
            chain=self.chain,
            address=self.contract_address,
            hashlock=hashlock,
            timelock=params.timelock,
            amount=params.amount,
            sender=params.sender,
            receiver=params.receiver,
            contract_id=Web3.to_hex(contract_id),
        )
        log.info(f"Tron HTLC id {ref.contract_id}, timelock={params.timelock}")
        return ref

    def fund(self, ref: ContractRef, amount: int) -> str:
        if self.client.address != ref.sender:
            raise MissingKeyError(f"Configured Tron key is not the HTLC sender {ref.sender}", chain=self.chain)
        parameter = encode(
            ["bytes32", "address", "uint256"],
            [bytes.fromhex(ref.hashlock), address_body(ref.receiver), ref.timelock],
        )
        tx_id = self.client.trigger(self.contract_address, SEL_NEW, parameter.hex(), call_value=amount)
        log.info(f"Funded Tron HTLC {ref.contract_id} with {amount} sun: {tx_id}")
        return tx_id

    def _contract_id_bytes(self, ref: ContractRef) -> bytes:
        return bytes.fromhex(ref.contract_id[2:])

    def _find_event_tx(self, event_name: str, ref: ContractRef) -> Optional[str]:
        wanted = ref.contract_id[2:].lower()
        for event in self.client.get_contract_events(self.contract_address, event_name):
            value = str(event.get("result", {}).get("contractId", "")).lower()
            if value.startswith("0x"):
                value = value[2:]
            if value == wanted:
                return event.get("transaction_id")
        return None

    def _preimage_from_tx(self, tx_id: str) -> Optional[str]:
        tx = self.client.get_transaction(tx_id)
        contracts = tx.get("raw_data", {}).get("contract", [])
        if not contracts:
            return None
        data = contracts[0].get("parameter", {}).get("value", {}).get("data", "")
        # 4-byte selector then (bytes32 contractId, bytes32 preimage)
        if len(data) < 8 + 128:
            return None
        _contract_id, preimage = decode(["bytes32", "bytes32"], bytes.fromhex(data[8:8 + 128]))
        return preimage.hex()

    def get_status(self, ref: ContractRef) -> HTLCStatus:
        raw = self.client.call_constant(
            self.contract_address, SEL_GET, encode(["bytes32"], [self._contract_id_bytes(ref)]).hex()
        )
        (hashlock, recipient, sender, locktime,
         amount, withdrawn, refunded) = decode(GET_CONTRACT_TYPES, raw)

        if sender.lower() == ZERO_BODY:
            return HTLCStatus(exists=False)

        status = HTLCStatus(
            exists=True,
            funded=amount > 0,
            amount=amount,
            redeemed=withdrawn,
            refunded=refunded,
        )
        status.funding_tx = self._find_event_tx("HTLCNew", ref)
        if withdrawn:
            status.redeem_tx = self._find_event_tx("HTLCWithdraw", ref)
            if status.redeem_tx:
                status.revealed_secret = self._preimage_from_tx(status.redeem_tx)
        if refunded:
            status.refund_tx = self._find_event_tx("HTLCRefund", ref)
        return status

    def get_confirmations(self, tx_hash: str) -> TxInfo:
        info = self.client.get_transaction_info(tx_hash)
        if not info:
            return TxInfo(found=bool(self.client.get_transaction(tx_hash)))
        receipt_result = info.get("receipt", {}).get("result")
        if info.get("result") == "FAILED" or receipt_result not in (None, "SUCCESS"):
            return TxInfo(found=True, failed=True)
        head = self.client.get_block_number()
        return TxInfo(found=True, confirmations=max(0, head - int(info["blockNumber"]) + 1))

    def chain_time(self) -> int:
        return self.client.get_block_timestamp()

    # =========================================================================
    # Spends
    # =========================================================================

    def _redeem(self, ref: ContractRef, secret_hex: str, recipient: str, status: HTLCStatus) -> str:
        parameter = encode(["bytes32", "bytes32"], [self._contract_id_bytes(ref), bytes.fromhex(secret_hex)])
        return self.client.trigger(self.contract_address, SEL_WITHDRAW, parameter.hex())

    def _refund(self, ref: ContractRef, sender: str, status: HTLCStatus) -> str:
        parameter = encode(["bytes32"], [self._contract_id_bytes(ref)])
        return self.client.trigger(self.contract_address, SEL_REFUND, parameter.hex())

