"""
Order endpoints: create, query, stream, redeem, stop monitoring.

Errors from the executor are mapped to HTTP status codes here; nothing
raised by the swap layer reaches the client unhandled.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from htlcswap.errors import (
    SwapError, ValidationError, OrderNotFoundError, HashMismatchError, ExpiredError,
    ProtocolViolation, ChainNotConfiguredError, MissingKeyError, AdapterError,
)
from htlcswap.swap.executor import SwapExecutor

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Set by server.py at startup
# ---------------------------------------------------------------------------

_executor: Optional[SwapExecutor] = None
_stream_close_delay: float = 1.0


def configure(executor: SwapExecutor, stream_close_delay: float = 1.0):
    """Configure order routes. Called once at startup by server.py."""
    global _executor, _stream_close_delay
    _executor = executor
    _stream_close_delay = stream_close_delay


def _get_executor() -> SwapExecutor:
    if _executor is None:
        raise HTTPException(503, "Swap executor not ready")
    return _executor


def _http_error(e: SwapError) -> HTTPException:
    if isinstance(e, OrderNotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, HashMismatchError):
        return HTTPException(409, str(e))
    if isinstance(e, ExpiredError):
        return HTTPException(410, str(e))
    if isinstance(e, ProtocolViolation):
        return HTTPException(409, str(e))
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    if isinstance(e, (ChainNotConfiguredError, MissingKeyError)):
        return HTTPException(503, str(e))
    if isinstance(e, AdapterError) and e.retryable:
        return HTTPException(503, f"Chain temporarily unavailable: {e}")
    return HTTPException(502, str(e))


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class OrderCreateRequest(BaseModel):
    from_chain: str = Field(..., examples=["bitcoin"])
    to_chain: str = Field(..., examples=["ethereum"])
    from_token: str = Field(..., examples=["BTC"])
    to_token: str = Field(..., examples=["ETH"])
    amount: Union[str, float] = Field(..., examples=["0.01"])
    recipient_address: str = Field(..., examples=["0x..."])
    refund_address: Optional[str] = None
    to_amount: Optional[int] = None          # Base units, quoted if omitted
    hashlock: Optional[str] = None           # Caller keeps the secret


class RedeemRequest(BaseModel):
    secret: Optional[str] = None             # Defaults to the secret generated at creation
    recipient: Optional[str] = None


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/orders", status_code=201)
async def create_order(req: OrderCreateRequest) -> Dict[str, Any]:
    """Create a swap order and start monitoring it."""
    executor = _get_executor()
    try:
        order, secret = await executor.create_order(
            req.from_chain, req.to_chain, req.from_token, req.to_token, req.amount,
            req.recipient_address,
            refund_address=req.refund_address,
            to_amount=req.to_amount,
            hashlock=req.hashlock,
        )
    except SwapError as e:
        log.warning(f"Order rejected: {e}")
        raise _http_error(e)

    response = {
        "orderId": order.id,
        "hashlock": order.hashlock,
        "expiresAt": order.expires_at,
        "srcHtlc": order.src_ref.to_dict(),
        "dstHtlc": order.dst_ref.to_dict(),
        "order": order.to_status(),
    }
    if secret:
        response["secret"] = secret
    return response


@router.get("/orders")
async def list_orders(include_archived: bool = Query(True)) -> Dict[str, Any]:
    executor = _get_executor()
    orders = executor.list_orders(include_archived=include_archived)
    return {"orders": [o.to_status() for o in orders], "count": len(orders)}


@router.get("/orders/{order_id}")
async def get_order(order_id: str) -> Dict[str, Any]:
    executor = _get_executor()
    try:
        return executor.get_order(order_id).to_status()
    except SwapError as e:
        raise _http_error(e)


@router.get("/orders/{order_id}/stream")
async def stream_order(order_id: str):
    """
    Server-Sent Events: connected, then status_update / error / completed
    as they happen. Closes shortly after `completed`.
    """
    executor = _get_executor()
    try:
        order = executor.get_order(order_id)
    except SwapError as e:
        raise _http_error(e)

    subscription = executor.monitor.get_subscription(order_id)
    events = subscription.listen() if subscription is not None else None

    def frame(event: Dict[str, Any]) -> str:
        return f"data: {json.dumps(event)}\n\n"

    async def generate():
        try:
            yield frame({"type": "connected", "orderId": order_id, "timestamp": _timestamp()})
            if order.is_terminal:
                if order.error:
                    yield frame({"type": "error", "orderId": order_id, "error": order.error,
                                 "timestamp": _timestamp()})
                yield frame({"type": "completed", "orderId": order_id, "status": order.to_status(),
                             "timestamp": _timestamp()})
                await asyncio.sleep(_stream_close_delay)
                return
            yield frame({"type": "status_update", "orderId": order_id, "status": order.to_status(),
                         "timestamp": _timestamp()})
            if events is None:
                return
            async for event in events:
                yield frame(event)
                if event["type"] == "completed":
                    await asyncio.sleep(_stream_close_delay)
                    return
        finally:
            if events is not None:
                await events.aclose()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/orders/{order_id}/redeem")
async def redeem_order(order_id: str, req: RedeemRequest) -> Dict[str, Any]:
    """Reveal the secret on the destination leg."""
    executor = _get_executor()
    try:
        tx_hash = await executor.redeem_destination(order_id, req.secret, req.recipient)
    except SwapError as e:
        log.warning(f"Redeem rejected for {order_id}: {e}")
        raise _http_error(e)
    except Exception as e:
        log.error(f"Redeem failed for {order_id}: {e}")
        raise HTTPException(502, f"Redeem failed: {e}")
    return {"orderId": order_id, "txHash": tx_hash}


@router.post("/orders/{order_id}/fund")
async def fund_order(order_id: str) -> Dict[str, Any]:
    """Fund the source leg from the coordinator key."""
    executor = _get_executor()
    try:
        tx_hash = await executor.fund_source(order_id)
    except SwapError as e:
        log.warning(f"Funding failed for {order_id}: {e}")
        raise _http_error(e)
    except Exception as e:
        log.error(f"Funding failed for {order_id}: {e}")
        raise HTTPException(502, f"Funding failed: {e}")
    return {"orderId": order_id, "txHash": tx_hash}


@router.delete("/orders/{order_id}/monitor")
async def stop_monitoring(order_id: str) -> Dict[str, Any]:
    executor = _get_executor()
    try:
        stopped = executor.cancel_monitoring(order_id)
    except SwapError as e:
        raise _http_error(e)
    return {"orderId": order_id, "stopped": stopped}
