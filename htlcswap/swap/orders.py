"""
Order aggregate for htlcswap.

One Order owns both legs of a swap. It is created by the executor and then
mutated only by its monitor task.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from ..core import (
    HTLCParams, ContractRef, OrderPhase, TERMINAL_PHASES, PROGRESS_MILESTONES, now,
)

# Keys of Order.tx_hashes
TX_SRC = "src"
TX_DST = "dst"
TX_SRC_REDEEM = "src_redeem"
TX_DST_REDEEM = "dst_redeem"
TX_SRC_REFUND = "src_refund"
TX_DST_REFUND = "dst_refund"
TX_KEYS = (TX_SRC, TX_DST, TX_SRC_REDEEM, TX_DST_REDEEM, TX_SRC_REFUND, TX_DST_REFUND)

# Which leg each tx key belongs to
TX_LEG = {
    TX_SRC: "src",
    TX_DST: "dst",
    TX_SRC_REDEEM: "src",
    TX_DST_REDEEM: "dst",
    TX_SRC_REFUND: "src",
    TX_DST_REFUND: "dst",
}


def _empty_tx_hashes() -> Dict[str, Optional[str]]:
    return {key: None for key in TX_KEYS}


def _initial_milestones() -> Dict[str, bool]:
    milestones = {name: False for name in PROGRESS_MILESTONES}
    milestones["orderCreated"] = True
    return milestones


@dataclass
class Order:
    """Cross-chain swap order."""
    id: str
    from_chain: str
    to_chain: str
    from_token: str
    to_token: str
    from_amount: int                # Base units on from_chain
    to_amount: int                  # Base units on to_chain
    hashlock: str
    src_htlc: HTLCParams
    dst_htlc: HTLCParams
    src_ref: ContractRef
    dst_ref: ContractRef

    phase: OrderPhase = OrderPhase.CREATED
    secret: Optional[str] = None    # Only once revealed on-chain
    tx_hashes: Dict[str, Optional[str]] = field(default_factory=_empty_tx_hashes)
    milestones: Dict[str, bool] = field(default_factory=_initial_milestones)

    created_at: int = field(default_factory=now)
    expires_at: int = 0
    updated_at: int = field(default_factory=now)
    completed_at: Optional[int] = None
    error: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.expires_at:
            self.expires_at = self.src_htlc.timelock

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def progress(self) -> int:
        """Percent of milestones reached. Never decreases."""
        done = sum(1 for name in PROGRESS_MILESTONES if self.milestones.get(name))
        return done * 100 // len(PROGRESS_MILESTONES)

    def leg_ref(self, leg: str) -> ContractRef:
        return self.src_ref if leg == "src" else self.dst_ref

    def leg_chain(self, leg: str) -> str:
        return self.from_chain if leg == "src" else self.to_chain

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_status(self) -> Dict[str, Any]:
        """Public status view (GET /orders/{id})."""
        status = {
            "id": self.id,
            "status": self.phase.value,
            "progress": self.progress(),
            "fromToken": self.from_token,
            "toToken": self.to_token,
            "fromAmount": str(self.from_amount),
            "toAmount": str(self.to_amount),
            "txHashes": {
                "src": self.tx_hashes.get(TX_SRC),
                "dst": self.tx_hashes.get(TX_DST),
            },
            "phases": {name: bool(self.milestones.get(name)) for name in PROGRESS_MILESTONES},
        }
        if self.error:
            status["error"] = self.error
        return status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_chain": self.from_chain,
            "to_chain": self.to_chain,
            "from_token": self.from_token,
            "to_token": self.to_token,
            "from_amount": self.from_amount,
            "to_amount": self.to_amount,
            "hashlock": self.hashlock,
            "src_htlc": self.src_htlc.to_dict(),
            "dst_htlc": self.dst_htlc.to_dict(),
            "src_ref": self.src_ref.to_dict(),
            "dst_ref": self.dst_ref.to_dict(),
            "phase": self.phase.value,
            "secret": self.secret,
            "tx_hashes": dict(self.tx_hashes),
            "milestones": dict(self.milestones),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        tx_hashes = _empty_tx_hashes()
        tx_hashes.update(data.get("tx_hashes") or {})
        milestones = _initial_milestones()
        milestones.update(data.get("milestones") or {})
        return cls(
            id=data["id"],
            from_chain=data["from_chain"],
            to_chain=data["to_chain"],
            from_token=data["from_token"],
            to_token=data["to_token"],
            from_amount=int(data["from_amount"]),
            to_amount=int(data["to_amount"]),
            hashlock=data["hashlock"],
            src_htlc=HTLCParams.from_dict(data["src_htlc"]),
            dst_htlc=HTLCParams.from_dict(data["dst_htlc"]),
            src_ref=ContractRef.from_dict(data["src_ref"]),
            dst_ref=ContractRef.from_dict(data["dst_ref"]),
            phase=OrderPhase(data.get("phase", OrderPhase.CREATED.value)),
            secret=data.get("secret"),
            tx_hashes=tx_hashes,
            milestones=milestones,
            created_at=int(data.get("created_at") or now()),
            expires_at=int(data.get("expires_at") or 0),
            updated_at=int(data.get("updated_at") or now()),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            history=list(data.get("history") or []),
        )
