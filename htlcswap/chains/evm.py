"""
EVM client for htlcswap.

Thin wrapper around web3.py: connection, signing and sending with a
per-client nonce lock so concurrent orders never reuse a nonce.
"""

import logging
import threading
from typing import Optional, Dict, Any
from dataclasses import dataclass

from web3 import Web3
from web3.exceptions import TransactionNotFound
from eth_account import Account

from ..errors import MissingKeyError

log = logging.getLogger(__name__)


# RPC endpoints
RPC_ENDPOINTS = {
    "sepolia": "https://ethereum-sepolia-rpc.publicnode.com",
    "mainnet": "https://ethereum-rpc.publicnode.com",
}


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    network: str = "sepolia"
    rpc_url: str = ""
    chain_id: int = 11155111            # Sepolia
    htlc_contract: str = ""             # HashedTimelock deployment
    private_key: str = ""               # For signing (optional)
    gas_limit: int = 300000
    gas_price_multiplier: float = 1.1
    log_lookback_blocks: int = 50000
    required_confirmations: int = 12


class EVMClient:
    """web3 connection plus a signing account."""

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self.rpc_url = config.rpc_url or RPC_ENDPOINTS.get(config.network, "")
        self._web3 = web3
        self._nonce_lock = threading.Lock()
        self.account = None
        if config.private_key:
            key = config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self.account = Account.from_key(key)

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.rpc_url))
        return self._web3

    @property
    def address(self) -> Optional[str]:
        return self.account.address if self.account else None

    def require_account(self):
        if self.account is None:
            raise MissingKeyError("EVM private key not configured", chain="ethereum")
        return self.account

    # =========================================================================
    # Blockchain Info
    # =========================================================================

    def get_block_number(self) -> int:
        return self.web3.eth.block_number

    def get_block_timestamp(self) -> int:
        return int(self.web3.eth.get_block("latest")["timestamp"])

    def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def is_pending(self, tx_hash: str) -> bool:
        try:
            self.web3.eth.get_transaction(tx_hash)
            return True
        except TransactionNotFound:
            return False

    # =========================================================================
    # Sending
    # =========================================================================

    def send_contract_tx(self, fn, value: int = 0) -> str:
        """
        Build, sign and send a contract call.

        Args:
            fn: Bound contract function (contract.functions.X(...))
            value: Wei to attach

        Returns:
            Transaction hash (0x hex)
        """
        account = self.require_account()
        w3 = self.web3
        with self._nonce_lock:
            nonce = w3.eth.get_transaction_count(account.address, 'pending')
            gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)
            tx = fn.build_transaction({
                'from': account.address,
                'value': value,
                'nonce': nonce,
                'gas': self.config.gas_limit,
                'gasPrice': gas_price,
                'chainId': self.config.chain_id,
            })
            signed = account.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = Web3.to_hex(tx_hash)
        log.info(f"EVM tx sent: {tx_hex}")
        return tx_hex
