from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .context import RequestContext
from .models import AuditLog


def add_audit(
    db: Session,
    ctx: RequestContext,
    action: str,
    *,
    status: str,
    reason_code: str,
    event_id: str | None = None,
    ticket_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's transaction."""
    entry = AuditLog(
        decision_id=ctx.request_id,
        action=action,
        actor_id=ctx.actor_id,
        ip=ctx.client_ip,
        event_id=event_id,
        ticket_id=ticket_id,
        status=status,
        reason_code=reason_code,
        details=details,
    )
    db.add(entry)
    return entry


def record_audit(session_factory: sessionmaker, ctx: RequestContext, action: str, **fields: Any) -> None:
    """Write an audit row in its own transaction.

    Used for rejected decisions whose own transaction was rolled back. A
    failed write is logged and does not change the decision already made.
    """
    with session_factory() as db:
        try:
            add_audit(db, ctx, action, **fields)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            ctx.log.exception("Audit write failed for {} ({})", action, fields.get("reason_code"))
