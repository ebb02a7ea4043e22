"""Application factory.

Run with:
    uvicorn boxoffice.main:create_app --factory
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger
from redis.asyncio import Redis

from .admin import router as admin_router
from .config import Settings
from .context import RequestContext, new_request_id
from .db import init_db, make_engine, make_session_factory
from .events import EventService
from .handlers import register_exception_handlers
from .idempotency import IdempotencyLedger
from .log import configure_logging
from .payments import WebhookProcessor
from .rate_limit import client_ip
from .routes import events, health, tickets, users, webhooks
from .tickets import TicketService
from .unit_of_work import TransactionCoordinator
from .users import UserService

MAX_REQUEST_ID_LENGTH = 128


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await app.state.redis.aclose()
    app.state.engine.dispose()


async def correlate(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", "").strip()
    if not request_id or len(request_id) > MAX_REQUEST_ID_LENGTH:
        request_id = new_request_id()
    request.state.ctx = RequestContext(request_id=request_id, client_ip=client_ip(request))

    started = time.perf_counter()
    with logger.contextualize(request_id=request_id):
        logger.info("{} {} started", request.method, request.url.path)
        response = await call_next(request)
        logger.info(
            "{} {} -> {} in {:.1f} ms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
    response.headers["X-Request-ID"] = request_id
    return response


def create_app(settings: Settings | None = None, redis: Redis | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    # tables are created here rather than in lifespan so in-process test clients get them too
    init_db(engine)
    session_factory = make_session_factory(engine)
    coordinator = TransactionCoordinator(session_factory)
    ledger = IdempotencyLedger(
        session_factory,
        ttl_hours=settings.idempotency_ttl_hours,
        lease_seconds=settings.idempotency_lease_seconds,
        wait_seconds=settings.idempotency_wait_seconds,
        poll_seconds=settings.idempotency_poll_seconds,
    )

    app = FastAPI(title="Box Office", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.coordinator = coordinator
    app.state.ledger = ledger
    app.state.redis = redis or Redis.from_url(settings.redis_url, decode_responses=True)

    app.state.users = UserService(coordinator)
    app.state.events = EventService(coordinator)
    app.state.tickets = TicketService(coordinator, ledger, settings)
    app.state.payments = WebhookProcessor(coordinator, ledger, settings)

    app.middleware("http")(correlate)
    register_exception_handlers(app)

    app.include_router(users)
    app.include_router(events)
    app.include_router(tickets)
    app.include_router(webhooks)
    app.include_router(health)
    app.include_router(admin_router)

    logger.info("Box Office ready (database {})", engine.url.render_as_string(hide_password=True))
    return app
