"""
Chain adapter interface.

Every chain exposes the same HTLC capability set so the Order Monitor stays
chain-agnostic. Adapters hold no per-order state; everything they need comes
in the ContractRef. Protocol checks (hash, expiry, settled) live here once;
subclasses implement the chain-specific `_redeem` / `_refund` sends.
"""

import logging
from abc import ABC, abstractmethod
from typing import FrozenSet, Optional

from ..core import (
    HTLCParams, ContractRef, HTLCStatus, TxInfo,
    hash_secret, verify_reveal, normalize_hex32, REQUIRED_CONFIRMATIONS,
)
from ..errors import (
    ValidationError, HashMismatchError, ExpiredError, NotYetExpiredError,
    AlreadyRedeemedError, AlreadyRefundedError,
)

log = logging.getLogger(__name__)


class ChainAdapter(ABC):
    """HTLC primitives for one chain."""

    chain: str = ""
    tokens: FrozenSet[str] = frozenset()

    def __init__(self, required_confirmations: int = 0):
        self._required_confirmations = required_confirmations or REQUIRED_CONFIRMATIONS.get(self.chain, 1)

    # =========================================================================
    # Capability set
    # =========================================================================

    @abstractmethod
    def create_htlc(self, params: HTLCParams) -> ContractRef:
        """Compute (or deploy) the HTLC. Deterministic for identical params."""

    @abstractmethod
    def fund(self, ref: ContractRef, amount: int) -> str:
        """Lock `amount` into the HTLC. Returns tx hash."""

    @abstractmethod
    def get_status(self, ref: ContractRef) -> HTLCStatus:
        """Read-only contract state."""

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """Chain-specific address format check."""

    @abstractmethod
    def get_confirmations(self, tx_hash: str) -> TxInfo:
        """Confirmation depth of a transaction."""

    @abstractmethod
    def chain_time(self) -> int:
        """Current time as the chain's timelock check sees it."""

    def wallet_address(self) -> Optional[str]:
        """Address of the coordinator key on this chain, if one is configured."""
        return None

    def required_confirmations(self) -> int:
        return self._required_confirmations

    def is_expired(self, chain_now: int, timelock: int) -> bool:
        # HashedTimelock: withdraw requires timelock > block.timestamp,
        # refund requires timelock <= block.timestamp. BTC overrides (CLTV on MTP).
        return chain_now >= timelock

    def redeem(self, ref: ContractRef, secret: str, recipient: str) -> str:
        """
        Redeem the HTLC with the secret.

        Raises:
            HashMismatchError: SHA256(secret) != ref.hashlock
            ExpiredError: chain time is at or past the timelock
            AlreadyRedeemedError / AlreadyRefundedError: leg already settled
        """
        if not verify_reveal(secret, ref.hashlock):
            raise HashMismatchError(
                f"{self.chain}: secret does not match hashlock {ref.hashlock[:16]}..."
            )
        chain_now = self.chain_time()
        if self.is_expired(chain_now, ref.timelock):
            raise ExpiredError(
                f"{self.chain}: HTLC expired at {ref.timelock} (chain time {chain_now})"
            )
        status = self.get_status(ref)
        if status.redeemed:
            raise AlreadyRedeemedError(f"{self.chain}: HTLC {ref.key} already redeemed")
        if status.refunded:
            raise AlreadyRefundedError(f"{self.chain}: HTLC {ref.key} already refunded")
        if not status.funded:
            raise ValidationError(f"{self.chain}: HTLC {ref.key} is not funded")

        tx_hash = self._redeem(ref, normalize_hex32(secret, "secret"), recipient, status)
        log.info(f"{self.chain}: redeemed {ref.key} tx={tx_hash}")
        return tx_hash

    def refund(self, ref: ContractRef, sender: str) -> str:
        """
        Refund the HTLC to its sender after expiry.

        Raises:
            AlreadyRedeemedError: counter-party already redeemed
            AlreadyRefundedError: already refunded
            NotYetExpiredError: chain time is before the timelock
        """
        status = self.get_status(ref)
        if status.redeemed:
            raise AlreadyRedeemedError(f"{self.chain}: HTLC {ref.key} already redeemed")
        if status.refunded:
            raise AlreadyRefundedError(f"{self.chain}: HTLC {ref.key} already refunded")
        chain_now = self.chain_time()
        if not self.is_expired(chain_now, ref.timelock):
            raise NotYetExpiredError(
                f"{self.chain}: HTLC {ref.key} expires at {ref.timelock}, "
                f"chain time {chain_now} ({ref.timelock - chain_now}s left)"
            )
        if not status.funded:
            raise ValidationError(f"{self.chain}: HTLC {ref.key} is not funded")

        tx_hash = self._refund(ref, sender, status)
        log.info(f"{self.chain}: refunded {ref.key} tx={tx_hash}")
        return tx_hash

    @abstractmethod
    def _redeem(self, ref: ContractRef, secret_hex: str, recipient: str, status: HTLCStatus) -> str:
        """Chain-specific redeem send."""

    @abstractmethod
    def _refund(self, ref: ContractRef, sender: str, status: HTLCStatus) -> str:
        """Chain-specific refund send."""

    # =========================================================================
    # Helpers
    # =========================================================================

    def _check_params(self, params: HTLCParams) -> str:
        """Validate common params, return normalized hashlock hex."""
        hashlock = normalize_hex32(params.hashlock, "hashlock")
        if params.amount <= 0:
            raise ValidationError(f"Amount must be positive, got {params.amount}")
        if params.timelock <= 0:
            raise ValidationError(f"Invalid timelock {params.timelock}")
        for label, addr in (("sender", params.sender), ("receiver", params.receiver)):
            if not self.validate_address(addr):
                raise ValidationError(f"Invalid {self.chain} {label} address: {addr}")
        return hashlock


def secret_matches(secret_hex: str, hashlock_hex: str) -> bool:
    """Like verify_reveal, but False for malformed secrets read off-chain."""
    try:
        return hash_secret(secret_hex).hex() == normalize_hex32(hashlock_hex)
    except (ValueError, TypeError):
        return False
