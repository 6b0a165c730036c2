"""
HTLC (Hash Time-Locked Contract) adapters, one per chain.

All adapters implement ChainAdapter so the Order Monitor stays
chain-agnostic:
- BTC: native script in a P2WSH output (CLTV on median time past)
- EVM: shared HashedTimelock contract, one contract id per swap
- Tron: the same contract on TVM
- TON: one contract per swap, address derived from its StateInit
"""

from .base import ChainAdapter
from .btc import BTCAdapter
from .evm import EVMAdapter
from .tron import TronAdapter
from .ton import TONAdapter

__all__ = ["ChainAdapter", "BTCAdapter", "EVMAdapter", "TronAdapter", "TONAdapter"]
