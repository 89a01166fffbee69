"""
Order Board Server
==================
REST + WebSocket gateway between board screens and the OrderBoard service.

Screens only decide *which* order goes *where*; every transition goes
through ``OrderBoard.request_transition``/``start_transition``.

NO BUSINESS LOGIC - Pure transport only.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from board_sync import OrderBoard
from board_views import ReadyBoard, StatusCounters, group_by_column
from config import LOG_FORMAT, get_config, validate_configuration
from errors import (
    BoardError,
    ConfirmationFailed,
    ConflictBusy,
    InvalidOrder,
    InvalidTransition,
    OrderNotFound,
    RecordNotFound,
    StoreError,
)


logger = logging.getLogger(__name__)


# Most specific first
HTTP_STATUS_BY_ERROR = (
    (OrderNotFound, 404),
    (RecordNotFound, 404),
    (ConflictBusy, 409),
    (InvalidTransition, 422),
    (InvalidOrder, 400),
    (ConfirmationFailed, 502),
    (StoreError, 502),
)


def http_status_for(error: BoardError) -> int:
    for error_type, status_code in HTTP_STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return 500


# ============================================================================
# REQUEST MODELS
# ============================================================================

class TransitionRequest(BaseModel):
    status: str


class CustomerIn(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None


class ItemIn(BaseModel):
    name: str
    quantity: int = 1
    price: float


class PlaceOrderRequest(BaseModel):
    customer: CustomerIn
    items: List[ItemIn]


class EditOrderRequest(BaseModel):
    status: Optional[str] = None
    items: Optional[List[ItemIn]] = None
    total_amount: Optional[float] = None
    pickup_time: Optional[str] = None
    customer: Optional[CustomerIn] = None
    actor: str = "staff"


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse({"success": True, "data": data}, status_code=status_code)


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(board: Optional[OrderBoard] = None, cors_origins: Optional[List[str]] = None) -> FastAPI:
    """
    Build the board application.

    Args:
        board: Board service; built from configuration when omitted
        cors_origins: Allowed CORS origins, if any
    """
    if board is None:
        board = OrderBoard.from_config(get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await board.init()
        app.state.ready_board = ReadyBoard().attach(board)
        app.state.counters = StatusCounters().attach(board)
        logger.info("Order board server started")
        try:
            yield
        finally:
            await board.dispose()
            logger.info("Order board server stopped")

    app = FastAPI(title="Pickup Order Board", lifespan=lifespan)
    app.state.board = board

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(BoardError)
    async def board_error_handler(request: Request, error: BoardError):
        return JSONResponse(
            {"success": False, "error": error.to_dict()},
            status_code=http_status_for(error)
        )

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        stats = board.get_stats()
        return {
            "status": "healthy" if stats["consecutive_refresh_failures"] == 0 else "degraded",
            **stats,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------------

    @app.get("/orders")
    async def list_orders(search: Optional[str] = None, status: Optional[str] = None):
        if search is None and status is None:
            orders = board.snapshot()
        else:
            orders = board.search_orders(search, status)
        return _ok([order.to_dict() for order in orders])

    @app.get("/orders/columns")
    async def board_columns():
        columns = group_by_column(board.snapshot())
        data = {
            status.value: [order.to_dict() for order in orders]
            for status, orders in columns.items()
        }
        data["counts"] = app.state.counters.to_dict()
        return _ok(data)

    @app.get("/orders/lookup/{number}")
    async def lookup_order(number: str):
        matches = board.find_by_display_number(number)
        if not matches:
            raise OrderNotFound(f"No order with number {number}")
        return _ok([order.to_dict() for order in matches])

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str):
        order = board.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return _ok(order.to_dict())

    @app.post("/orders")
    async def place_order(body: PlaceOrderRequest):
        order = await board.place_order(
            body.customer.model_dump(),
            [item.model_dump() for item in body.items]
        )
        return _ok(order.to_dict(), status_code=201)

    @app.post("/orders/{order_id}/transition")
    async def transition_order(order_id: str, body: TransitionRequest):
        result = await board.request_transition(order_id, body.status)
        if not result.accepted:
            raise result.error
        order = board.get_order(order_id)
        return _ok({**result.to_dict(), "order": order.to_dict() if order else None})

    @app.put("/orders/{order_id}")
    async def edit_order(order_id: str, body: EditOrderRequest):
        changes = body.model_dump(exclude_unset=True, exclude={"actor"})
        order = await board.edit_order(order_id, changes, actor=body.actor)
        return _ok(order.to_dict())

    @app.get("/ready")
    async def ready_for_pickup():
        return _ok(app.state.ready_board.to_dict())

    @app.post("/refresh")
    async def refresh():
        refreshed = await board.refresh()
        return _ok({"refreshed": refreshed, **board.get_stats()})

    # ------------------------------------------------------------------------
    # Live board
    # ------------------------------------------------------------------------

    @app.websocket("/ws/board")
    async def board_socket(websocket: WebSocket):
        """
        Push snapshots and errors; accept transition requests.

        Inbound messages:
            {"type": "transition", "order_id": "...", "status": "Ready"}
            {"type": "refresh"}
        """
        await websocket.accept()
        outbox: asyncio.Queue = asyncio.Queue()

        unsubscribe = board.subscribe(
            lambda snapshot: outbox.put_nowait({
                "type": "snapshot",
                "orders": [order.to_dict() for order in snapshot],
            })
        )
        unsubscribe_errors = board.subscribe_errors(
            lambda error: outbox.put_nowait({"type": "error", "error": error.to_dict()})
        )
        sender = asyncio.create_task(_pump(websocket, outbox))

        try:
            while True:
                message = await websocket.receive_json()
                kind = message.get("type") if isinstance(message, dict) else None

                if kind == "transition":
                    result = board.start_transition(
                        str(message.get("order_id")), message.get("status")
                    )
                    outbox.put_nowait({"type": "transition_result", **result.to_dict()})
                elif kind == "refresh":
                    await board.refresh()
                else:
                    outbox.put_nowait({
                        "type": "error",
                        "error": {"code": "unknown_message", "message": f"Unknown message type: {kind}"},
                    })
        except WebSocketDisconnect:
            logger.info("Board socket disconnected")
        finally:
            unsubscribe()
            unsubscribe_errors()
            sender.cancel()

    return app


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    """Single writer for a socket; keeps message order."""
    while True:
        message: Dict[str, Any] = await outbox.get()
        await websocket.send_json(message)


# ============================================================================
# ENTRY POINT
# ============================================================================

def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level))
    )


def main() -> None:
    config = get_config()
    log_level = config.server.effective_log_level
    configure_logging(log_level)
    validate_configuration()

    app = create_app(cors_origins=config.server.cors_origins)
    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=log_level.lower()
    )


if __name__ == "__main__":
    main()
