"""
Chain clients for htlcswap.

Each client wraps one node/indexer API and the coordinator's signing key:
- BTC: Esplora REST
- EVM: web3.py JSON-RPC
- Tron: TronGrid HTTP
- TON: toncenter HTTP
"""

from .btc import BTCClient, BTCConfig
from .evm import EVMClient, EVMConfig
from .tron import TronClient, TronConfig
from .ton import TONClient, TONConfig

__all__ = [
    "BTCClient", "BTCConfig",
    "EVMClient", "EVMConfig",
    "TronClient", "TronConfig",
    "TONClient", "TONConfig",
]
