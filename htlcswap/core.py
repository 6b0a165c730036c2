"""
Core types and secret/hashlock utilities for htlcswap.
"""

import hashlib
import hmac
import secrets
import time
from decimal import Decimal
from enum import Enum
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, Union

from .errors import InvalidSecretLengthError, ValidationError

SECRET_SIZE = 32


class Chain(str, Enum):
    """Supported chains."""
    BITCOIN = "bitcoin"
    ETHEREUM = "ethereum"
    TON = "ton"
    TRON = "tron"


class OrderPhase(Enum):
    """Order lifecycle phases."""
    CREATED = "created"             # Both HTLCs computed, waiting for source funding
    SRC_FUNDED = "srcFunded"        # Source funding confirmed
    DST_CREATED = "dstCreated"      # Counter-party HTLC exists on destination
    DST_FUNDED = "dstFunded"        # Destination funding confirmed
    COMPLETED = "completed"         # Destination redeemed, source redeem confirmed
    REFUNDED_SRC = "refundedSrc"    # Source leg refunded after expiry
    REFUNDED_DST = "refundedDst"    # Destination leg refunded after expiry
    FAILED = "failed"               # Protocol violation or unrecoverable error


TERMINAL_PHASES = frozenset({
    OrderPhase.COMPLETED,
    OrderPhase.REFUNDED_SRC,
    OrderPhase.REFUNDED_DST,
    OrderPhase.FAILED,
})


class TxState(Enum):
    """Confirmation state of a tracked transaction."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class HTLCParams:
    """Parameters for one leg of a swap."""
    hashlock: str           # SHA256 hash (hex, 64 chars)
    timelock: int           # Absolute unix timestamp
    sender: str             # Funder, can refund after timelock
    receiver: str           # Can redeem with the secret
    amount: int             # Smallest unit (sats, wei, nanoton, sun)
    chain: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HTLCParams":
        return cls(
            hashlock=data["hashlock"],
            timelock=int(data["timelock"]),
            sender=data["sender"],
            receiver=data["receiver"],
            amount=int(data["amount"]),
            chain=data.get("chain", ""),
        )


@dataclass(frozen=True)
class ContractRef:
    """
    Handle to one deployed or pre-computed HTLC.

    `address` is where funds are locked (P2WSH address, TON contract
    address, or the shared HTLC contract on EVM/Tron). `contract_id` is the
    per-swap id inside a shared contract, or empty.
    """
    chain: str
    address: str
    hashlock: str
    timelock: int
    amount: int
    sender: str
    receiver: str
    contract_id: str = ""
    extra: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    @property
    def key(self) -> str:
        return self.contract_id or self.address

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContractRef":
        return cls(
            chain=data["chain"],
            address=data["address"],
            hashlock=data["hashlock"],
            timelock=int(data["timelock"]),
            amount=int(data["amount"]),
            sender=data["sender"],
            receiver=data["receiver"],
            contract_id=data.get("contract_id", ""),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class HTLCStatus:
    """Read-only on-chain state of one HTLC."""
    exists: bool = False
    funded: bool = False
    funding_tx: Optional[str] = None
    amount: int = 0
    redeemed: bool = False
    redeem_tx: Optional[str] = None
    refunded: bool = False
    refund_tx: Optional[str] = None
    revealed_secret: Optional[str] = None   # hex, only after redeem

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TxInfo:
    """What a chain reports about a single transaction."""
    found: bool = False
    confirmations: int = 0
    failed: bool = False


@dataclass
class TransactionStatus:
    """Tracked transaction, owned by the TransactionTracker."""
    hash: str
    chain: str
    confirmations: int = 0
    required_confirmations: int = 1
    status: TxState = TxState.PENDING

    @property
    def confirmed(self) -> bool:
        return self.status is TxState.CONFIRMED

    @property
    def failed(self) -> bool:
        return self.status is TxState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "chain": self.chain,
            "confirmations": self.confirmations,
            "requiredConfirmations": self.required_confirmations,
            "status": self.status.value,
        }


# =============================================================================
# Secret / Hashlock
# =============================================================================

SecretLike = Union[bytes, str]


def _to_bytes(value: SecretLike) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        try:
            return bytes.fromhex(text)
        except ValueError:
            raise ValidationError(f"Not valid hex: {value[:16]}...")
    raise TypeError(f"Expected bytes or hex string, got {type(value).__name__}")


def generate_secret() -> bytes:
    """Generate a cryptographically secure 32-byte secret."""
    return secrets.token_bytes(SECRET_SIZE)


def hash_secret(secret: SecretLike) -> bytes:
    """SHA256(secret). Deterministic."""
    return hashlib.sha256(_to_bytes(secret)).digest()


def verify_reveal(secret: SecretLike, hashlock: SecretLike) -> bool:
    """
    Verify that SHA256(secret) == hashlock.

    Args:
        secret: 32-byte secret (bytes or hex)
        hashlock: Expected SHA256 hash (bytes or hex)

    Returns:
        True if the secret opens the hashlock

    Raises:
        InvalidSecretLengthError: secret is not exactly 32 bytes
    """
    secret_bytes = _to_bytes(secret)
    if len(secret_bytes) != SECRET_SIZE:
        raise InvalidSecretLengthError(len(secret_bytes))
    expected = _to_bytes(hashlock)
    return hmac.compare_digest(hashlib.sha256(secret_bytes).digest(), expected)


def new_hashlock() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    secret = generate_secret()
    return secret.hex(), hash_secret(secret).hex()


def normalize_hex32(value: str, what: str = "value") -> str:
    """Lowercase 64-char hex without 0x prefix. Raises ValidationError."""
    raw = _to_bytes(value)
    if len(raw) != 32:
        raise ValidationError(f"{what} must be 32 bytes, got {len(raw)}")
    return raw.hex()


# =============================================================================
# Tokens
# =============================================================================

@dataclass(frozen=True)
class Token:
    symbol: str
    chain: Chain
    decimals: int


TOKENS: Dict[str, Token] = {
    "BTC": Token("BTC", Chain.BITCOIN, 8),
    "ETH": Token("ETH", Chain.ETHEREUM, 18),
    "TON": Token("TON", Chain.TON, 9),
    "TRX": Token("TRX", Chain.TRON, 6),
}

# Mock USD reference rates used for quoting
RATES_USD = {
    "BTC": 43000.0,
    "ETH": 2600.0,
    "TON": 2.4,
    "TRX": 0.105,
}


def get_token(symbol: str, chain: Optional[str] = None) -> Token:
    token = TOKENS.get(symbol.upper())
    if token is None:
        raise ValidationError(f"Unsupported token: {symbol}")
    if chain is not None and token.chain.value != chain:
        raise ValidationError(f"Token {symbol} is not native to {chain}")
    return token


def to_base_units(amount: Union[int, float, str], decimals: int) -> int:
    """Convert a display amount to the smallest unit."""
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(amount: int, decimals: int) -> float:
    return amount / (10 ** decimals)


# =============================================================================
# Constants
# =============================================================================

# Finality depth per chain
REQUIRED_CONFIRMATIONS = {
    Chain.BITCOIN.value: 6,
    Chain.ETHEREUM.value: 12,
    Chain.TON.value: 1,
    Chain.TRON.value: 19,
}

# Default HTLC timeouts (seconds from order creation)
HTLC_TIMEOUT_SRC = 24 * 3600
HTLC_TIMEOUT_DST = 12 * 3600

# Min gap between destination and source expiry
TIMELOCK_MIN_GAP_SECONDS = 1800

PROGRESS_MILESTONES = ("orderCreated", "srcFunded", "dstCreated", "dstFunded", "completed")


def now() -> int:
    return int(time.time())


def validate_timelocks(src_timelock: int, dst_timelock: int,
                       current_time: Optional[int] = None,
                       min_gap: int = TIMELOCK_MIN_GAP_SECONDS) -> bool:
    """
    Validate the cross-leg timelock ordering.

    The destination leg must expire strictly before the source leg, leaving
    the initiator at least `min_gap` seconds to refund the source.

    Returns:
        True if valid

    Raises:
        ValidationError: If ordering is violated
    """
    current_time = now() if current_time is None else current_time

    if dst_timelock >= src_timelock:
        raise ValidationError(
            f"Destination timelock ({dst_timelock}) must expire before "
            f"source timelock ({src_timelock})"
        )
    if dst_timelock <= current_time:
        raise ValidationError(
            f"Destination timelock ({dst_timelock}) already passed (now={current_time})"
        )
    gap = src_timelock - dst_timelock
    if gap < min_gap:
        raise ValidationError(
            f"Timelock gap {gap}s < minimum {min_gap}s"
        )
    return True
