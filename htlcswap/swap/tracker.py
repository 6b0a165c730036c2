"""
Transaction confirmation tracker.

Counts confirmations per tracked tx against the chain's finality depth.
A tx leaves the active set once confirmed or failed; its final status is
kept so later lookups still answer.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from ..core import TransactionStatus, TxState
from ..errors import ChainNotConfiguredError
from ..htlc.base import ChainAdapter

log = logging.getLogger(__name__)


@dataclass
class _Tracked:
    status: TransactionStatus
    misses: int = 0


class TransactionTracker:
    """
    Confirmation tracker shared by all orders.

    Handles are "<chain>:<tx_hash>", so tracking the same tx twice is a no-op.
    """

    def __init__(self, adapters: Mapping[str, ChainAdapter], max_misses: int = 12):
        self.adapters = adapters
        self.max_misses = max_misses
        self._lock = threading.Lock()
        self._active: Dict[str, _Tracked] = {}
        self._finished: Dict[str, TransactionStatus] = {}

    @staticmethod
    def handle_for(tx_hash: str, chain: str) -> str:
        return f"{chain}:{tx_hash}"

    def track(self, tx_hash: str, chain: str) -> str:
        handle = self.handle_for(tx_hash, chain)
        with self._lock:
            if handle in self._active or handle in self._finished:
                return handle
            adapter = self.adapters.get(chain)
            if adapter is None:
                raise ChainNotConfiguredError(f"No adapter for chain {chain}", chain=chain)
            self._active[handle] = _Tracked(TransactionStatus(
                hash=tx_hash,
                chain=chain,
                required_confirmations=adapter.required_confirmations(),
            ))
        log.debug(f"Tracking {handle}")
        return handle

    def poll(self, handle: str) -> TransactionStatus:
        """
        Refresh one tx from its chain.

        Blocking (adapter network call); the monitor runs it in a worker thread.

        Raises:
            KeyError: unknown handle
        """
        with self._lock:
            done = self._finished.get(handle)
            if done is not None:
                return done
            entry = self._active[handle]
            tx_hash = entry.status.hash
            chain = entry.status.chain
            required = entry.status.required_confirmations

        info = self.adapters[chain].get_confirmations(tx_hash)

        with self._lock:
            if handle not in self._active:
                # Untracked while we were polling
                return self._finished.get(handle) or entry.status
            if info.failed:
                state = TxState.FAILED
            elif not info.found:
                entry.misses += 1
                state = TxState.FAILED if entry.misses >= self.max_misses else TxState.PENDING
            else:
                entry.misses = 0
                state = TxState.CONFIRMED if info.confirmations >= required else TxState.PENDING

            status = TransactionStatus(
                hash=tx_hash,
                chain=chain,
                confirmations=info.confirmations,
                required_confirmations=required,
                status=state,
            )
            entry.status = status
            if state is not TxState.PENDING:
                del self._active[handle]
                self._finished[handle] = status

        if state is TxState.FAILED:
            log.warning(f"Transaction {handle} failed")
        elif state is TxState.CONFIRMED:
            log.info(f"Transaction {handle} confirmed ({info.confirmations}/{required})")
        return status

    def status(self, handle: str) -> Optional[TransactionStatus]:
        """Last known status without a network call."""
        with self._lock:
            if handle in self._finished:
                return self._finished[handle]
            entry = self._active.get(handle)
            return entry.status if entry else None

    def confirmations(self, handle: str) -> int:
        status = self.status(handle)
        return status.confirmations if status else 0

    def is_active(self, handle: str) -> bool:
        with self._lock:
            return handle in self._active

    def untrack(self, handle: str) -> None:
        """Stop tracking. Safe on unknown handles."""
        with self._lock:
            self._active.pop(handle, None)

    def forget(self, handle: str) -> None:
        """Drop a handle and its final status."""
        with self._lock:
            self._active.pop(handle, None)
            self._finished.pop(handle, None)
