"""
TON HTLC adapter for htlcswap.

Each swap leg is its own contract. Its address is the hash of
StateInit(code, data), so it is known before deployment; the funding
message deploys the contract and locks the value in one step.

Data cell:
    hashlock:uint256 timelock:uint64 sender:MsgAddress receiver:MsgAddress amount:Coins

Messages:
    redeem  op=0x1 query_id:uint64 secret:uint256
    refund  op=0x2 query_id:uint64

Get method `get_htlc_state` returns (state, secret); state 0 active,
1 redeemed, 2 refunded.
"""

import base64
import logging
import time
from typing import Optional

from tonsdk.boc import Cell, begin_cell
from tonsdk.utils import Address

from ..core import HTLCParams, ContractRef, HTLCStatus, TxInfo, Chain
from ..chains.ton import TONClient, cell_from_b64
from ..errors import AdapterError, MissingKeyError
from .base import ChainAdapter

log = logging.getLogger(__name__)

OP_REDEEM = 0x1
OP_REFUND = 0x2

STATE_ACTIVE = 0
STATE_REDEEMED = 1
STATE_REFUNDED = 2


def build_data_cell(hashlock: str, timelock: int, sender: str, receiver: str, amount: int) -> Cell:
    return (
        begin_cell()
        .store_uint(int(hashlock, 16), 256)
        .store_uint(timelock, 64)
        .store_address(Address(sender))
        .store_address(Address(receiver))
        .store_coins(amount)
        .end_cell()
    )


def build_state_init(code: Cell, data: Cell) -> Cell:
    # split_depth:0 special:0 code:1 data:1 library:0
    return begin_cell().store_uint(0b00110, 5).store_ref(code).store_ref(data).end_cell()


def b64_to_hex(value: str) -> str:
    return base64.b64decode(value).hex()


class TONAdapter(ChainAdapter):
    """TON HTLC adapter over toncenter."""

    chain = Chain.TON.value
    tokens = frozenset({"TON"})

    def __init__(self, client: TONClient):
        super().__init__(client.config.required_confirmations)
        self.client = client
        if not client.config.htlc_code_boc:
            raise AdapterError("TON HTLC contract code not configured", chain=self.chain)
        self.code = cell_from_b64(client.config.htlc_code_boc)

    def wallet_address(self) -> Optional[str]:
        return self.client.address

    def validate_address(self, address: str) -> bool:
        if not address:
            return False
        try:
            Address(address)
        except Exception:
            return False
        return True

    def _state_init(self, ref: ContractRef) -> Cell:
        data = build_data_cell(ref.hashlock, ref.timelock, ref.sender, ref.receiver, ref.amount)
        return build_state_init(self.code, data)

    # =========================================================================
    # Capability set
    # =========================================================================

    def create_htlc(self, params: HTLCParams) -> ContractRef:
        hashlock = self._check_params(params)
        data = build_data_cell(hashlock, params.timelock, params.sender, params.receiver, params.amount)
        state_init = build_state_init(self.code, data)
        raw = Address(f"0:{state_init.bytes_hash().hex()}")
        address = raw.to_string(True, True, True)
        log.info(f"TON HTLC: {address}, timelock={params.timelock}")
        return ContractRef(
            chain=self.chain,
            address=address,
            hashlock=hashlock,
            timelock=params.timelock,
            amount=params.amount,
            sender=params.sender,
            receiver=params.receiver,
        )

    def fund(self, ref: ContractRef, amount: int) -> str:
        wallet = self.client.address
        if wallet is None or Address(wallet).to_string(False) != Address(ref.sender).to_string(False):
            raise MissingKeyError(f"Configured TON wallet is not the HTLC sender {ref.sender}", chain=self.chain)
        msg_hash = self.client.transfer(
            ref.address,
            amount + self.client.config.deploy_fee,
            state_init=self._state_init(ref),
        )
        log.info(f"Funded TON HTLC {ref.address} with {amount} nanoton: {msg_hash}")
        return msg_hash

    def get_status(self, ref: ContractRef) -> HTLCStatus:
        if self.client.get_address_state(ref.address) != "active":
            return HTLCStatus(exists=False)

        stack = self.client.run_get_method(ref.address, "get_htlc_state")
        state = int(stack[0][1], 16)
        txs = self.client.get_transactions(ref.address)

        status = HTLCStatus(exists=True, funded=True, amount=ref.amount)
        if txs:
            # Newest first; the deploy is the oldest
            status.funding_tx = b64_to_hex(txs[-1]["transaction_id"]["hash"])
        latest = b64_to_hex(txs[0]["transaction_id"]["hash"]) if txs else None
        if state == STATE_REDEEMED:
            status.redeemed = True
            status.redeem_tx = latest
            status.revealed_secret = f"{int(stack[1][1], 16):064x}"
        elif state == STATE_REFUNDED:
            status.refunded = True
            status.refund_tx = latest
        return status

    def get_confirmations(self, tx_hash: str) -> TxInfo:
        txs = self.client.find_transactions(tx_hash)
        if not txs:
            return TxInfo(found=False)
        description = txs[0].get("description", {})
        aborted = description.get("aborted", False)
        compute = description.get("compute_ph", {})
        failed = aborted or compute.get("success") is False
        # Single-slot finality: included means final
        return TxInfo(found=True, confirmations=0 if failed else 1, failed=failed)

    def chain_time(self) -> int:
        return self.client.get_time()

    # =========================================================================
    # Spends
    # =========================================================================

    def _message(self, op: int, secret_hex: str = "") -> Cell:
        body = begin_cell().store_uint(op, 32).store_uint(int(time.time() * 1000), 64)
        if secret_hex:
            body = body.store_uint(int(secret_hex, 16), 256)
        return body.end_cell()

    def _redeem(self, ref: ContractRef, secret_hex: str, recipient: str, status: HTLCStatus) -> str:
        return self.client.transfer(ref.address, self.client.config.message_fee,
                                    payload=self._message(OP_REDEEM, secret_hex))

    def _refund(self, ref: ContractRef, sender: str, status: HTLCStatus) -> str:
        return self.client.transfer(ref.address, self.client.config.message_fee,
                                    payload=self._message(OP_REFUND))
