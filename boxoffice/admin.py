from fastapi import APIRouter, Depends, Header, Request

from .auth import Capability, require_capability
from .context import RequestContext
from .deps import authenticated_context, outcome_response
from .idempotency import resolve_key
from .rate_limit import enforce_rate_limit
from .schemas import ForceRefundReq, RoleReq

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(enforce_rate_limit)])


# -------------------------
# Refund override
# -------------------------
@router.post("/force-refund")
def force_refund(
    req: ForceRefundReq,
    request: Request,
    ctx: RequestContext = Depends(authenticated_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    require_capability(ctx.identity, Capability.REFUND_OVERRIDE, "Refund override requires elevated privileges")
    key = resolve_key(idempotency_key, required=True)
    outcome = request.app.state.tickets.refund(
        ctx, req.ticket_id, req.reason, key, amount=req.refund_amount, force=True
    )
    return outcome_response(outcome, key)


# -------------------------
# Users
# -------------------------
@router.patch("/users/{user_id}/role")
def update_role(user_id: str, req: RoleReq, request: Request, ctx: RequestContext = Depends(authenticated_context)):
    return request.app.state.users.set_role(ctx, user_id, req.role)


# -------------------------
# Idempotency ledger
# -------------------------
@router.post("/idempotency/purge")
def purge_idempotency(request: Request, ctx: RequestContext = Depends(authenticated_context)):
    require_capability(ctx.identity, Capability.MANAGE_USERS, "Super admin privileges required")
    purged = request.app.state.ledger.purge_expired()
    ctx.log.info("Purged {} expired idempotency records", purged)
    return {"purged": purged}
