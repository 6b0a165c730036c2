"""
TON client for htlcswap.

Uses toncenter HTTP API: v2 for account state, get-methods and sendBoc,
v3 for looking up transactions by message hash. Wallet signing via tonsdk.
"""

import base64
import logging
import threading
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import httpx
from tonsdk.boc import Cell
from tonsdk.contract.wallet import Wallets, WalletVersionEnum
from tonsdk.utils import bytes_to_b64str

from ..errors import AdapterError, MissingKeyError, TransientAdapterError

log = logging.getLogger(__name__)


TONCENTER_ENDPOINTS = {
    "mainnet": "https://toncenter.com/api",
    "testnet": "https://testnet.toncenter.com/api",
}


@dataclass
class TONConfig:
    """TON configuration."""
    network: str = "testnet"
    api_url: str = ""
    api_key: str = ""
    mnemonic: str = ""              # 24 words, wallet v4r2
    htlc_code_boc: str = ""         # base64 BOC of the HTLC contract code
    deploy_fee: int = 50_000_000    # nanoton attached on top of the locked amount
    message_fee: int = 50_000_000   # nanoton for redeem/refund messages
    timeout: float = 10.0
    required_confirmations: int = 1


class TONClient:
    """toncenter HTTP client plus a v4r2 wallet."""

    def __init__(self, config: TONConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.api_url = (config.api_url or TONCENTER_ENDPOINTS.get(config.network, "")).rstrip("/")
        headers = {"X-API-Key": config.api_key} if config.api_key else {}
        self._http = httpx.Client(
            base_url=self.api_url, timeout=config.timeout, headers=headers, transport=transport
        )
        self._send_lock = threading.Lock()
        self.wallet = None
        if config.mnemonic:
            _mnemonics, _pub, _priv, self.wallet = Wallets.from_mnemonics(
                config.mnemonic.split(), WalletVersionEnum.v4r2, 0
            )

    def close(self):
        self._http.close()

    @property
    def address(self) -> Optional[str]:
        if self.wallet is None:
            return None
        return self.wallet.address.to_string(True, True, True)

    def _unwrap(self, path: str, resp: httpx.Response) -> Any:
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientAdapterError(f"toncenter {path}: HTTP {resp.status_code}", chain="ton")
        data = resp.json()
        if isinstance(data, dict) and data.get("ok") is False:
            raise AdapterError(f"toncenter {path}: {data.get('error')}", chain="ton")
        if resp.status_code != 200:
            raise AdapterError(f"toncenter {path}: HTTP {resp.status_code}", chain="ton")
        return data.get("result", data) if isinstance(data, dict) else data

    def _get(self, path: str, params: Optional[Dict] = None) -> Any:
        try:
            resp = self._http.get(path, params=params)
        except httpx.TransportError as e:
            raise TransientAdapterError(f"toncenter {path}: {e}", chain="ton")
        return self._unwrap(path, resp)

    def _post(self, path: str, payload: Dict) -> Any:
        try:
            resp = self._http.post(path, json=payload)
        except httpx.TransportError as e:
            raise TransientAdapterError(f"toncenter {path}: {e}", chain="ton")
        return self._unwrap(path, resp)

    # =========================================================================
    # Account state
    # =========================================================================

    def get_address_state(self, address: str) -> str:
        """'active', 'uninitialized' or 'frozen'."""
        return self._get("/v2/getAddressState", {"address": address})

    def get_balance(self, address: str) -> int:
        return int(self._get("/v2/getAddressBalance", {"address": address}))

    def get_transactions(self, address: str, limit: int = 20) -> List[Dict]:
        return self._get("/v2/getTransactions", {"address": address, "limit": limit})

    def run_get_method(self, address: str, method: str, stack: Optional[List] = None) -> List:
        result = self._post("/v2/runGetMethod", {"address": address, "method": method, "stack": stack or []})
        if result.get("exit_code", 0) != 0:
            raise AdapterError(f"{method} exit code {result['exit_code']}", chain="ton")
        return result.get("stack", [])

    def get_seqno(self) -> int:
        if self.wallet is None:
            raise MissingKeyError("TON mnemonic not configured", chain="ton")
        stack = self.run_get_method(self.address, "seqno")
        return int(stack[0][1], 16) if stack else 0

    def get_time(self) -> int:
        """Last masterchain block generation time."""
        info = self._get("/v3/masterchainInfo")
        return int(info["last"]["gen_utime"])

    def find_transactions(self, tx_or_msg_hash: str) -> List[Dict]:
        """Look up by transaction hash, then by inbound message hash."""
        data = self._get("/v3/transactions", {"hash": tx_or_msg_hash})
        if data.get("transactions"):
            return data["transactions"]
        data = self._get("/v3/transactionsByMessage", {"msg_hash": tx_or_msg_hash, "direction": "in"})
        return data.get("transactions", [])

    # =========================================================================
    # Sending
    # =========================================================================

    def send_boc(self, boc: bytes) -> None:
        self._post("/v2/sendBoc", {"boc": bytes_to_b64str(boc)})

    def transfer(self, to_address: str, amount: int, payload: Optional[Cell] = None,
                 state_init: Optional[Cell] = None) -> str:
        """
        Send an internal message from the wallet.

        Returns:
            Hash of the external message (hex), used as the tx handle
        """
        if self.wallet is None:
            raise MissingKeyError("TON mnemonic not configured", chain="ton")
        with self._send_lock:
            seqno = self.get_seqno()
            query = self.wallet.create_transfer_message(
                to_addr=to_address,
                amount=amount,
                seqno=seqno,
                payload=payload,
                state_init=state_init,
            )
            message = query["message"]
            self.send_boc(message.to_boc(False))
        msg_hash = message.bytes_hash().hex()
        log.info(f"TON message sent: {msg_hash} (seqno {seqno})")
        return msg_hash


def cell_from_b64(boc_b64: str) -> Cell:
    return Cell.one_from_boc(base64.b64decode(boc_b64))
