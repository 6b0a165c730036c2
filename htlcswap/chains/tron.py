"""
Tron client for htlcswap.

Uses the TronGrid HTTP API (/wallet/* and /v1/*). Transactions are built
by the node (triggersmartcontract), signed locally over txID with secp256k1
and broadcast.
"""

import hashlib
import logging
import threading
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import base58
import httpx
from ecdsa import SigningKey, VerifyingKey, SECP256k1
from ecdsa.util import sigencode_string_canonize, sigdecode_string
from Crypto.Hash import keccak

from ..errors import AdapterError, MissingKeyError, TransientAdapterError

log = logging.getLogger(__name__)


TRONGRID_ENDPOINTS = {
    "mainnet": "https://api.trongrid.io",
    "shasta": "https://api.shasta.trongrid.io",
    "nile": "https://nile.trongrid.io",
}

ADDRESS_PREFIX = 0x41


@dataclass
class TronConfig:
    """Tron configuration."""
    network: str = "nile"
    api_url: str = ""
    api_key: str = ""
    htlc_contract: str = ""         # HTLC contract deployment (base58)
    private_key: str = ""           # hex
    fee_limit: int = 100_000_000    # sun
    timeout: float = 10.0
    required_confirmations: int = 19


# =============================================================================
# Address helpers
# =============================================================================

def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def to_hex_address(address: str) -> str:
    """Base58check T-address -> 41-prefixed hex."""
    if address.startswith("41") and len(address) == 42:
        return address.lower()
    raw = base58.b58decode_check(address)
    return raw.hex()


def to_base58_address(hex_address: str) -> str:
    """41-prefixed (or 0x/20-byte) hex -> base58check T-address."""
    text = hex_address[2:] if hex_address.startswith("0x") else hex_address
    raw = bytes.fromhex(text)
    if len(raw) == 20:
        raw = bytes([ADDRESS_PREFIX]) + raw
    return base58.b58encode_check(raw).decode()


def address_body(address: str) -> bytes:
    """20-byte account id (what solidity sees as `address` on TVM)."""
    return bytes.fromhex(to_hex_address(address))[1:]


def is_valid_address(address: str) -> bool:
    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        return False
    return len(raw) == 21 and raw[0] == ADDRESS_PREFIX


def address_from_private_key(private_key_hex: str) -> str:
    sk = SigningKey.from_string(bytes.fromhex(private_key_hex), curve=SECP256k1)
    pub = sk.get_verifying_key().to_string()        # 64 bytes, x||y
    return to_base58_address(keccak256(pub)[-20:].hex())


def sign_txid(txid_hex: str, private_key_hex: str) -> str:
    """
    Recoverable secp256k1 signature over txID: r || s || v (v in {0, 1}).
    """
    digest = bytes.fromhex(txid_hex)
    sk = SigningKey.from_string(bytes.fromhex(private_key_hex), curve=SECP256k1)
    sig = sk.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_string_canonize
    )
    own = sk.get_verifying_key().to_string()
    candidates = VerifyingKey.from_public_key_recovery_with_digest(
        sig, digest, curve=SECP256k1, hashfunc=hashlib.sha256, sigdecode=sigdecode_string
    )
    for recid, vk in enumerate(candidates):
        if vk.to_string() == own:
            return (sig + bytes([recid])).hex()
    raise AdapterError("Could not derive recovery id for signature", chain="tron")


# =============================================================================
# Client
# =============================================================================

class TronClient:
    """TronGrid HTTP client."""

    def __init__(self, config: TronConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.api_url = (config.api_url or TRONGRID_ENDPOINTS.get(config.network, "")).rstrip("/")
        headers = {"TRON-PRO-API-KEY": config.api_key} if config.api_key else {}
        self._http = httpx.Client(
            base_url=self.api_url, timeout=config.timeout, headers=headers, transport=transport
        )
        self._send_lock = threading.Lock()
        self.address = address_from_private_key(config.private_key) if config.private_key else None

    def close(self):
        self._http.close()

    def _post(self, path: str, payload: Dict) -> Dict:
        try:
            resp = self._http.post(path, json=payload)
        except httpx.TransportError as e:
            raise TransientAdapterError(f"TronGrid {path}: {e}", chain="tron")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientAdapterError(f"TronGrid {path}: HTTP {resp.status_code}", chain="tron")
        if resp.status_code != 200:
            raise AdapterError(f"TronGrid {path}: HTTP {resp.status_code} {resp.text[:200]}", chain="tron")
        return resp.json()

    def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        try:
            resp = self._http.get(path, params=params)
        except httpx.TransportError as e:
            raise TransientAdapterError(f"TronGrid {path}: {e}", chain="tron")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientAdapterError(f"TronGrid {path}: HTTP {resp.status_code}", chain="tron")
        if resp.status_code != 200:
            raise AdapterError(f"TronGrid {path}: HTTP {resp.status_code}", chain="tron")
        return resp.json()

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    def get_now_block(self) -> Dict:
        return self._post("/wallet/getnowblock", {})

    def get_block_number(self) -> int:
        return int(self.get_now_block()["block_header"]["raw_data"]["number"])

    def get_block_timestamp(self) -> int:
        """Latest block time in seconds (TronGrid reports milliseconds)."""
        return int(self.get_now_block()["block_header"]["raw_data"]["timestamp"]) // 1000

    def get_transaction(self, txid: str) -> Dict:
        """Empty dict if the node does not know the transaction."""
        return self._post("/wallet/gettransactionbyid", {"value": txid})

    def get_transaction_info(self, txid: str) -> Dict:
        """Empty dict while the transaction is not yet in a block."""
        return self._post("/wallet/gettransactioninfobyid", {"value": txid})

    def get_contract_events(self, contract: str, event_name: str, limit: int = 200) -> List[Dict]:
        data = self._get(f"/v1/contracts/{contract}/events",
                         params={"event_name": event_name, "limit": limit, "order_by": "block_timestamp,desc"})
        return data.get("data", [])

    # =========================================================================
    # Contract calls
    # =========================================================================

    def call_constant(self, contract: str, selector: str, parameter_hex: str) -> bytes:
        """Read-only contract call. Returns the raw ABI-encoded result."""
        owner = self.address or contract
        result = self._post("/wallet/triggerconstantcontract", {
            "owner_address": to_hex_address(owner),
            "contract_address": to_hex_address(contract),
            "function_selector": selector,
            "parameter": parameter_hex,
        })
        if not result.get("result", {}).get("result"):
            raise AdapterError(f"Constant call {selector} failed: {result.get('result')}", chain="tron")
        outputs = result.get("constant_result") or [""]
        return bytes.fromhex(outputs[0])

    def trigger(self, contract: str, selector: str, parameter_hex: str, call_value: int = 0) -> str:
        """
        Build, sign and broadcast a state-changing contract call.

        Returns:
            txID (hex)
        """
        if not self.address:
            raise MissingKeyError("Tron private key not configured", chain="tron")

        with self._send_lock:
            built = self._post("/wallet/triggersmartcontract", {
                "owner_address": to_hex_address(self.address),
                "contract_address": to_hex_address(contract),
                "function_selector": selector,
                "parameter": parameter_hex,
                "fee_limit": self.config.fee_limit,
                "call_value": call_value,
            })
            if not built.get("result", {}).get("result"):
                raise AdapterError(f"triggersmartcontract {selector} rejected: {built.get('result')}",
                                   chain="tron")
            tx = built["transaction"]
            tx["signature"] = [sign_txid(tx["txID"], self.config.private_key)]
            sent = self._post("/wallet/broadcasttransaction", tx)

        if not sent.get("result"):
            message = sent.get("message", "")
            try:
                message = bytes.fromhex(message).decode(errors="replace")
            except ValueError:
                pass
            raise AdapterError(f"Broadcast failed: {sent.get('code')} {message}", chain="tron")

        log.info(f"Tron tx sent: {tx['txID']}")
        return tx["txID"]
