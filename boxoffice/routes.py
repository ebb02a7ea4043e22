from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .context import RequestContext
from .deps import authenticated_context, optional_context, outcome_response, request_context
from .idempotency import resolve_key
from .rate_limit import enforce_rate_limit
from .schemas import (
    BatchPurchaseReq,
    CreateEventReq,
    PurchaseReq,
    RefundReq,
    RegisterReq,
    TransferReq,
    UpdateEventReq,
    ValidateReq,
)

limited = [Depends(enforce_rate_limit)]

users = APIRouter(prefix="/users", tags=["users"], dependencies=limited)
events = APIRouter(prefix="/events", tags=["events"], dependencies=limited)
tickets = APIRouter(prefix="/tickets", tags=["tickets"], dependencies=limited)
webhooks = APIRouter(prefix="/webhooks", tags=["webhooks"])
health = APIRouter(prefix="/health", tags=["health"])


# -------------------------
# Users
# -------------------------
@users.post("", status_code=status.HTTP_201_CREATED)
def register(req: RegisterReq, request: Request, ctx: RequestContext = Depends(request_context)):
    return request.app.state.users.register(ctx, req.email, req.name)


@users.get("/me")
def me(request: Request, ctx: RequestContext = Depends(authenticated_context)):
    return request.app.state.users.me(ctx)


# -------------------------
# Events
# -------------------------
@events.post("", status_code=status.HTTP_201_CREATED)
def create_event(req: CreateEventReq, request: Request, ctx: RequestContext = Depends(authenticated_context)):
    return request.app.state.events.create(
        ctx,
        name=req.name,
        location=req.location,
        starts_at=req.starts_at,
        ends_at=req.ends_at,
        tiers=[(t.name.value, t.price, t.capacity) for t in req.tiers],
    )


@events.get("/active")
def list_active_events(request: Request):
    return request.app.state.events.list_active()


@events.get("/{event_id}")
def get_event(event_id: str, request: Request, ctx: RequestContext = Depends(optional_context)):
    return request.app.state.events.get(ctx, event_id)


@events.patch("/{event_id}")
def update_event(
    event_id: str, req: UpdateEventReq, request: Request, ctx: RequestContext = Depends(authenticated_context)
):
    changes = req.model_dump(exclude_none=True)
    if req.tiers is not None:
        changes["tiers"] = [
            {"name": t.name.value, "price": t.price, "capacity": t.capacity} for t in req.tiers
        ]
    return request.app.state.events.update(ctx, event_id, changes)


# -------------------------
# Tickets
# -------------------------
@tickets.post("/purchase")
def purchase(
    req: PurchaseReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = resolve_key(idempotency_key, required=False)
    outcome = request.app.state.tickets.purchase(ctx, req.event_id, req.tier.value, req.quantity, key)
    return outcome_response(outcome, key)


@tickets.post("/batch-purchase")
def batch_purchase(
    req: BatchPurchaseReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = resolve_key(idempotency_key, required=False)
    items = [(item.tier.value, item.quantity) for item in req.tickets]
    outcome = request.app.state.tickets.purchase_batch(ctx, req.event_id, items, key)
    return outcome_response(outcome, key)


@tickets.get("/mine")
def my_tickets(request: Request, ctx: RequestContext = Depends(authenticated_context)):
    return request.app.state.tickets.list_mine(ctx)


@tickets.post("/validate")
def validate_ticket(
    req: ValidateReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = resolve_key(idempotency_key, required=False)
    outcome = request.app.state.tickets.validate(ctx, req.scan_token, req.location, key)
    return outcome_response(outcome, key)


@tickets.get("/{ticket_id}")
def get_ticket(ticket_id: str, request: Request, ctx: RequestContext = Depends(authenticated_context)):
    return request.app.state.tickets.get(ctx, ticket_id)


@tickets.post("/{ticket_id}/transfer")
def transfer_ticket(
    ticket_id: str,
    req: TransferReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = resolve_key(idempotency_key, required=False)
    outcome = request.app.state.tickets.transfer(ctx, ticket_id, req.email, key)
    return outcome_response(outcome, key)


@tickets.post("/{ticket_id}/refund")
def refund_ticket(
    ticket_id: str,
    req: RefundReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    key = resolve_key(idempotency_key, required=True)
    outcome = request.app.state.tickets.refund(ctx, ticket_id, req.reason, key)
    return outcome_response(outcome, key)


# -------------------------
# Payment webhooks
# -------------------------
@webhooks.post("/payment")
async def payment_webhook(
    request: Request,
    ctx: RequestContext = Depends(request_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    signature: str | None = Header(default=None, alias="X-Payment-Signature"),
):
    # the signature covers the exact bytes received
    raw_body = await request.body()
    processor = request.app.state.payments
    outcome = await run_in_threadpool(processor.handle, raw_body, signature, idempotency_key, ctx)
    return outcome_response(outcome, idempotency_key.strip())


# -------------------------
# Health
# -------------------------
@health.get("/live")
def live():
    return {"status": "ok"}


@health.get("/ready")
def ready(request: Request):
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        request.state.ctx.log.error("Readiness check failed: {}", exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
    return {"status": "ready", "database": "ok"}
