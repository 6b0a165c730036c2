"""
Bitcoin client for htlcswap.

Talks to an Esplora REST API (blockstream.info / mempool.space compatible).
"""

import logging
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

import httpx

from ..errors import AdapterError, TransientAdapterError

log = logging.getLogger(__name__)


ESPLORA_ENDPOINTS = {
    "mainnet": "https://blockstream.info/api",
    "testnet": "https://blockstream.info/testnet/api",
    "signet": "https://mempool.space/signet/api",
}


@dataclass
class BTCConfig:
    """Bitcoin configuration."""
    network: str = "testnet"        # mainnet, testnet, signet, regtest
    api_url: str = ""
    wif: str = ""                   # Coordinator key (fund/redeem/refund)
    fee_rate: int = 0               # sat/vB, 0 = use /fee-estimates
    fee_target_blocks: int = 6
    timeout: float = 10.0
    required_confirmations: int = 6


class BTCClient:
    """
    Esplora HTTP client.

    All methods are blocking; the monitor runs them in worker threads.
    """

    def __init__(self, config: BTCConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.api_url = (config.api_url or ESPLORA_ENDPOINTS.get(config.network, "")).rstrip("/")
        self._http = httpx.Client(
            base_url=self.api_url,
            timeout=config.timeout,
            transport=transport,
        )

    def close(self):
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self._http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientAdapterError(f"Esplora {method} {path}: {e}", chain="bitcoin")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientAdapterError(
                f"Esplora {method} {path}: HTTP {resp.status_code}", chain="bitcoin"
            )
        return resp

    def _get_json(self, path: str) -> Any:
        resp = self._request("GET", path)
        if resp.status_code != 200:
            raise AdapterError(f"Esplora GET {path}: HTTP {resp.status_code} {resp.text[:200]}",
                               chain="bitcoin")
        return resp.json()

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    def get_tip_height(self) -> int:
        return int(self._request("GET", "/blocks/tip/height").text.strip())

    def get_median_time(self) -> int:
        """Median time past of the tip block (what CLTV compares against)."""
        tip_hash = self._request("GET", "/blocks/tip/hash").text.strip()
        block = self._get_json(f"/block/{tip_hash}")
        return int(block.get("mediantime") or block["timestamp"])

    def estimate_fee_rate(self) -> int:
        """Fee rate in sat/vB."""
        if self.config.fee_rate:
            return self.config.fee_rate
        estimates = self._get_json("/fee-estimates")
        rate = estimates.get(str(self.config.fee_target_blocks))
        if rate is None and estimates:
            rate = min(estimates.values())
        return max(1, int(round(rate or 1)))

    # =========================================================================
    # Address / UTXO
    # =========================================================================

    def get_address_txs(self, address: str) -> List[Dict]:
        return self._get_json(f"/address/{address}/txs")

    def get_utxos(self, address: str) -> List[Dict]:
        """UTXOs as [{txid, vout, value, status}]."""
        return self._get_json(f"/address/{address}/utxo")

    # =========================================================================
    # Transaction Operations
    # =========================================================================

    def get_tx(self, txid: str) -> Optional[Dict]:
        resp = self._request("GET", f"/tx/{txid}")
        if resp.status_code == 404 or resp.status_code == 400:
            return None
        if resp.status_code != 200:
            raise AdapterError(f"Esplora GET /tx/{txid}: HTTP {resp.status_code}", chain="bitcoin")
        return resp.json()

    def get_tx_status(self, txid: str) -> Optional[Dict]:
        """{confirmed, block_height, ...} or None if unknown to the node."""
        resp = self._request("GET", f"/tx/{txid}/status")
        if resp.status_code == 404 or resp.status_code == 400:
            return None
        if resp.status_code != 200:
            raise AdapterError(f"Esplora tx status {txid}: HTTP {resp.status_code}", chain="bitcoin")
        return resp.json()

    def get_outspend(self, txid: str, vout: int) -> Dict:
        """{spent, txid?, vin?, status?}"""
        return self._get_json(f"/tx/{txid}/outspend/{vout}")

    def broadcast(self, raw_tx_hex: str) -> str:
        """Broadcast a raw transaction, returns txid."""
        resp = self._request("POST", "/tx", content=raw_tx_hex)
        if resp.status_code != 200 and "non-final" in resp.text:
            # Locktime not yet reached by median time past
            raise TransientAdapterError(f"Broadcast non-final: {resp.text[:200]}", chain="bitcoin")
        if resp.status_code != 200:
            raise AdapterError(f"Broadcast rejected: {resp.text[:300]}", chain="bitcoin")
        txid = resp.text.strip()
        log.info(f"BTC broadcast: {txid}")
        return txid
