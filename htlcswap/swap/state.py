"""
Order state machine.

Pure functions: `evaluate` looks at an Observation of both legs and names the
next phase (or None); `apply` performs one transition on the order;
`due_actions` names the on-chain steps the monitor should take this tick.
No network calls here.
"""

import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Collection, Optional, List, Tuple

from ..core import OrderPhase, HTLCStatus, TERMINAL_PHASES, now as _now
from ..errors import InvalidTransitionError
from .orders import Order, TX_DST, TX_SRC_REDEEM, TX_SRC_REFUND, TX_DST_REFUND

log = logging.getLogger(__name__)


_EXITS = {OrderPhase.REFUNDED_SRC, OrderPhase.REFUNDED_DST, OrderPhase.FAILED}

TRANSITIONS = {
    OrderPhase.CREATED: {OrderPhase.SRC_FUNDED} | _EXITS,
    OrderPhase.SRC_FUNDED: {OrderPhase.DST_CREATED} | _EXITS,
    OrderPhase.DST_CREATED: {OrderPhase.DST_FUNDED} | _EXITS,
    OrderPhase.DST_FUNDED: {OrderPhase.COMPLETED} | _EXITS,
}

# Milestone set when a phase is entered
PHASE_MILESTONES = {
    OrderPhase.SRC_FUNDED: "srcFunded",
    OrderPhase.DST_CREATED: "dstCreated",
    OrderPhase.DST_FUNDED: "dstFunded",
    OrderPhase.COMPLETED: "completed",
}


class Action(Enum):
    """On-chain step the monitor takes for an order."""
    REDEEM_SRC = "redeem_src"
    REFUND_SRC = "refund_src"
    REFUND_DST = "refund_dst"
    FUND_DST = "fund_dst"


@dataclass
class Observation:
    """Both legs as seen during one monitor tick."""
    now: int
    src: HTLCStatus = field(default_factory=HTLCStatus)
    dst: HTLCStatus = field(default_factory=HTLCStatus)
    src_funding_confirmed: bool = False
    dst_funding_confirmed: bool = False
    src_redeem_confirmed: bool = False
    src_refund_confirmed: bool = False
    dst_refund_confirmed: bool = False
    secret_mismatch: bool = False
    # Leg timelock passed by the chain's own clock (BTC: median time past)
    src_expired: bool = False
    dst_expired: bool = False


def can_transition(current: OrderPhase, target: OrderPhase) -> bool:
    return target in TRANSITIONS.get(current, ())


def apply(order: Order, target: OrderPhase, reason: str = "", at: Optional[int] = None) -> None:
    """
    Move the order to `target`.

    Raises:
        InvalidTransitionError: transition not allowed from the current phase
    """
    if not can_transition(order.phase, target):
        raise InvalidTransitionError(
            f"Order {order.id}: cannot go from {order.phase.value} to {target.value}"
        )
    at = _now() if at is None else at
    previous = order.phase
    order.phase = target
    milestone = PHASE_MILESTONES.get(target)
    if milestone:
        order.milestones[milestone] = True
    order.updated_at = at
    if target in TERMINAL_PHASES:
        order.completed_at = at
    order.history.append({"from": previous.value, "to": target.value, "reason": reason, "at": at})
    log.info(f"Order {order.id}: {previous.value} -> {target.value} ({reason})")


def fail(order: Order, error: str, at: Optional[int] = None) -> None:
    order.error = error
    apply(order, OrderPhase.FAILED, error, at)


def _settled(status: HTLCStatus) -> bool:
    return status.redeemed or status.refunded


def evaluate(order: Order, obs: Observation) -> Optional[Tuple[OrderPhase, str]]:
    """
    Next transition for the order given what the chains show, or None.

    Checked in priority order: mismatch, refunds, completion, unfunded
    source expiry, forward steps. Call repeatedly until None to chain
    forward steps. A funded source leg that expires unredeemed is left to
    REFUND_SRC and ends in refundedSrc.
    """
    if order.is_terminal:
        return None

    if obs.secret_mismatch:
        return OrderPhase.FAILED, "Revealed secret does not match hashlock"

    if obs.src.refunded and obs.src_refund_confirmed:
        return OrderPhase.REFUNDED_SRC, "Source leg refunded"
    if obs.dst.refunded and obs.dst_refund_confirmed and not obs.src.funded \
            and not order.milestones.get("srcFunded"):
        return OrderPhase.REFUNDED_DST, "Destination leg refunded"

    if order.phase is OrderPhase.DST_FUNDED and order.secret \
            and obs.src.redeemed and obs.src_redeem_confirmed:
        return OrderPhase.COMPLETED, "Source leg redeemed with revealed secret"

    if order.phase is OrderPhase.CREATED and obs.src_expired and not obs.src.funded:
        return OrderPhase.FAILED, "Source leg expired unfunded"

    if order.phase is OrderPhase.CREATED:
        if obs.src.funded and obs.src_funding_confirmed:
            return OrderPhase.SRC_FUNDED, "Source funding confirmed"
    elif order.phase is OrderPhase.SRC_FUNDED:
        if obs.dst.exists:
            return OrderPhase.DST_CREATED, "Destination HTLC exists"
    elif order.phase is OrderPhase.DST_CREATED:
        if obs.dst.funded and obs.dst_funding_confirmed:
            return OrderPhase.DST_FUNDED, "Destination funding confirmed"
    return None


def due_actions(order: Order, obs: Observation, auto_fund: bool = False,
                skip: Collection[Action] = ()) -> List[Action]:
    """
    On-chain steps to take this tick, minus those in `skip`.

    Expiry comes from the observation's chain-time flags; the adapter
    re-checks it when the transaction is built.
    """
    if order.is_terminal:
        return []
    actions = []
    src, dst = obs.src, obs.dst

    if order.secret and src.funded and not _settled(src) \
            and not order.tx_hashes.get(TX_SRC_REDEEM) and not obs.src_expired:
        actions.append(Action.REDEEM_SRC)

    if obs.dst_expired and dst.funded and not _settled(dst) \
            and not order.tx_hashes.get(TX_DST_REFUND):
        actions.append(Action.REFUND_DST)

    # A pending redeem must confirm or fail before the refund races it
    if obs.src_expired and src.funded and not _settled(src) \
            and not order.tx_hashes.get(TX_SRC_REFUND) and not order.tx_hashes.get(TX_SRC_REDEEM):
        actions.append(Action.REFUND_SRC)

    if auto_fund and order.phase is OrderPhase.SRC_FUNDED and not dst.exists \
            and not order.tx_hashes.get(TX_DST) and not obs.dst_expired:
        actions.append(Action.FUND_DST)

    return [a for a in actions if a not in skip]
