"""
FastAPI entry point

Thin HTTP surface over the library: commands (create, transition) go through
the LifecycleManager, queries read the mirror and run the revenue
computations, and progress is streamed over a WebSocket.

┌──────────┐   POST    ┌──────────────────┐  create/update  ┌─────────────┐
│  Client  │ ────────▶ │ LifecycleManager │ ──────────────▶ │ EntityStore │
│          │           └──────────────────┘                 │   (Redis)   │
│          │   GET     ┌──────────────────┐   snapshots     │             │
│          │ ◀──────── │   EntityMirror   │ ◀────────────── │             │
└──────────┘           └──────────────────┘                 └─────────────┘
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import queries
from .commands import LifecycleManager
from .errors import (
    ConcurrentAppend,
    EntityNotFound,
    IllegalTransition,
    InitializationFailed,
    StoreUnavailable,
    ValidationFailed,
)
from .event_store import init_schema
from .models import BookingDraft, OrderDraft
from .redis_store import RedisStore
from .store import EntityStore
from .subscriber import EntityMirror
from .tracking import DeliveryProgressSimulator

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./dinehub.db")
STORE_PREFIX = os.environ.get("STORE_PREFIX", "dinehub")
SYNC_INIT_TIMEOUT = float(os.environ.get("SYNC_INIT_TIMEOUT", "10"))
PREP_DELAY_SECONDS = float(os.environ.get("PREP_DELAY_SECONDS", "5"))
ETA_OFFSET_MINUTES = float(os.environ.get("ETA_OFFSET_MINUTES", "15"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def create_app(
    store: EntityStore | None = None,
    database_url: str | None = DATABASE_URL,
    init_timeout: float = SYNC_INIT_TIMEOUT,
) -> FastAPI:
    """Build the app; tests pass their own store and database URL."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store = store or RedisStore.from_url(REDIS_URL, prefix=STORE_PREFIX)
        engine = None
        session_factory = None
        if database_url:
            engine = create_async_engine(database_url, echo=False)
            await init_schema(engine)
            session_factory = async_sessionmaker(engine, expire_on_commit=False)
        app.state.mirror = EntityMirror(app.state.store, init_timeout=init_timeout)
        await app.state.mirror.start()
        app.state.manager = LifecycleManager(app.state.store, app.state.mirror, session_factory)
        app.state.simulator = DeliveryProgressSimulator(
            prep_delay=PREP_DELAY_SECONDS,
            eta_offset=timedelta(minutes=ETA_OFFSET_MINUTES),
        )
        yield
        app.state.simulator.close()
        await app.state.mirror.close()
        await app.state.store.aclose()
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title="Dinehub Lifecycle Service", lifespan=lifespan)
    _register_error_handlers(app)
    _register_routes(app)
    return app


# ── Error mapping ────────────────────────────────


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationFailed)
    async def on_validation_failed(request: Request, exc: ValidationFailed):
        return JSONResponse(
            status_code=422,
            content={"error": "ValidationFailed", "entity": exc.entity, "detail": exc.errors},
        )

    @app.exception_handler(EntityNotFound)
    async def on_not_found(request: Request, exc: EntityNotFound):
        return JSONResponse(
            status_code=404,
            content={
                "error": "EntityNotFound",
                "entity": exc.entity,
                "id": exc.entity_id,
                "requested": exc.requested,
            },
        )

    @app.exception_handler(IllegalTransition)
    async def on_illegal_transition(request: Request, exc: IllegalTransition):
        return JSONResponse(
            status_code=409,
            content={
                "error": "IllegalTransition",
                "entity": exc.entity,
                "id": exc.entity_id,
                "current": exc.current,
                "requested": exc.requested,
            },
        )

    @app.exception_handler(ConcurrentAppend)
    async def on_concurrent_append(request: Request, exc: ConcurrentAppend):
        logger.warning("History append conflict on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={
                "error": "ConcurrentAppend",
                "entity": exc.aggregate_type,
                "id": exc.aggregate_id,
                "detail": str(exc),
            },
        )

    @app.exception_handler(StoreUnavailable)
    async def on_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.warning("Store unavailable on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"error": "StoreUnavailable", "detail": str(exc)})

    @app.exception_handler(InitializationFailed)
    async def on_init_failed(request: Request, exc: InitializationFailed):
        return JSONResponse(
            status_code=503,
            content={"error": "InitializationFailed", "collections": exc.collections},
        )


# ── Request Models ───────────────────────────────


class StatusRequest(BaseModel):
    status: str


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _register_routes(app: FastAPI) -> None:
    # ── Commands ─────────────────────────────────

    @app.post("/orders", status_code=201)
    async def create_order(draft: OrderDraft, request: Request):
        order = await request.app.state.manager.create_order(draft)
        return _dump(order)

    @app.post("/bookings", status_code=201)
    async def create_booking(draft: BookingDraft, request: Request):
        booking = await request.app.state.manager.create_booking(draft)
        return _dump(booking)

    @app.post("/orders/{order_id}/status")
    async def transition_order(order_id: str, req: StatusRequest, request: Request):
        order = await request.app.state.manager.transition_order_status(order_id, req.status)
        return _dump(order)

    @app.post("/bookings/{booking_id}/status")
    async def transition_booking(booking_id: str, req: StatusRequest, request: Request):
        booking = await request.app.state.manager.transition_booking_status(booking_id, req.status)
        return _dump(booking)

    # ── Queries ──────────────────────────────────

    @app.get("/orders")
    async def list_orders(request: Request, restaurant_id: str | None = None):
        orders = request.app.state.mirror.orders
        return [_dump(o) for o in orders if restaurant_id is None or o.restaurant_id == restaurant_id]

    @app.get("/bookings")
    async def list_bookings(request: Request, restaurant_id: str | None = None):
        bookings = request.app.state.mirror.bookings
        return [_dump(b) for b in bookings if restaurant_id is None or b.restaurant_id == restaurant_id]

    @app.get("/entities/{entity_id}/history")
    async def status_history(entity_id: str, request: Request):
        changes = await request.app.state.manager.get_status_history(entity_id)
        return [c.model_dump(mode="json") for c in changes]

    @app.get("/revenue")
    async def revenue(request: Request, window: queries.Window = "today", restaurant_id: str | None = None):
        mirror = request.app.state.mirror
        return _dump(queries.aggregate(mirror.orders, mirror.bookings, window, restaurant_id))

    @app.get("/revenue/compare")
    async def revenue_trend(request: Request, window: str = "week", restaurant_id: str | None = None):
        mirror = request.app.state.mirror
        if window not in queries.PREVIOUS_WINDOW:
            raise ValidationFailed("window", [f"no previous period for {window!r}"])
        return _dump(queries.compare(mirror.orders, mirror.bookings, window, restaurant_id))

    @app.get("/revenue/restaurants")
    async def revenue_restaurants(request: Request, window: queries.Window = "month"):
        mirror = request.app.state.mirror
        rows = queries.revenue_by_restaurant(mirror.orders, mirror.bookings, mirror.restaurants, window)
        return [_dump(r) for r in rows]

    @app.get("/revenue/daily")
    async def revenue_daily(
        request: Request,
        days: int = Query(30, ge=1, le=366),
        restaurant_id: str | None = None,
    ):
        mirror = request.app.state.mirror
        rows = queries.daily_revenue(mirror.orders, mirror.bookings, days, restaurant_id)
        return [_dump(r) for r in rows]

    @app.get("/dashboard")
    async def dashboard(request: Request, restaurant_id: str | None = None):
        mirror = request.app.state.mirror
        data = queries.overview(mirror.orders, mirror.bookings, mirror.restaurants, restaurant_id)
        return {
            "summary": {k: _dump(v) for k, v in data["summary"].items()},
            "week_trend": _dump(data["week_trend"]),
            "status_counts": data["status_counts"],
            "top_restaurants": [_dump(r) for r in data["top_restaurants"]],
            "recent_daily": [_dump(r) for r in data["recent_daily"]],
        }

    # ── Live tracking ────────────────────────────

    @app.websocket("/ws/orders/{order_id}/progress")
    async def order_progress(websocket: WebSocket, order_id: str):
        mirror = websocket.app.state.mirror
        await websocket.accept()
        feed = websocket.app.state.simulator.subscribe_to_progress(mirror, order_id)
        try:
            async with feed:
                async for snapshot in feed:
                    await websocket.send_json(_dump(snapshot))
        except WebSocketDisconnect:
            logger.info("Progress viewer for %s left", order_id)
            return
        except InitializationFailed as e:
            await websocket.close(code=1011, reason=str(e))
            return
        await websocket.close()

    @app.get("/health")
    async def health(request: Request):
        return {"status": "ok", "service": "dinehub", "mirror": request.app.state.mirror.state}


app = create_app()
