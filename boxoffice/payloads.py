"""Response bodies built from ORM rows.

Bodies are plain dicts so they can be stored verbatim by the idempotency
ledger and replayed byte-for-byte.
"""

from datetime import datetime
from decimal import Decimal

from .models import Event, Ticket, User


def money(value: Decimal | None) -> float | None:
    return None if value is None else float(value)


def iso(value: datetime | None) -> str | None:
    return None if value is None else value.isoformat()


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "created_at": iso(user.created_at),
    }


def event_payload(event: Event) -> dict:
    return {
        "id": event.id,
        "organizer_id": event.organizer_id,
        "name": event.name,
        "location": event.location,
        "starts_at": iso(event.starts_at),
        "ends_at": iso(event.ends_at),
        "is_active": event.is_active,
        "tiers": [
            {
                "name": t.name,
                "price": money(t.price),
                "capacity": t.capacity,
                "issued": t.issued,
                "sold": t.sold,
                "available": t.capacity - t.issued,
            }
            for t in event.tiers
        ],
    }


def ticket_payload(ticket: Ticket, *, include_token: bool = False, include_history: bool = False) -> dict:
    body = {
        "id": ticket.id,
        "event_id": ticket.event_id,
        "owner_id": ticket.owner_id,
        "tier": ticket.tier,
        "price": money(ticket.price),
        "status": ticket.status,
        "is_used": ticket.is_used,
        "used_at": iso(ticket.used_at),
        "payment_status": ticket.payment_status,
        "transaction_id": ticket.transaction_id,
        "created_at": iso(ticket.created_at),
    }
    if include_token:
        body["scan_token"] = ticket.scan_token
    if include_history:
        body["transfer_history"] = [
            {"from": t.from_user_id, "to": t.to_user_id, "at": iso(t.transferred_at)} for t in ticket.transfers
        ]
        body["validation_history"] = [
            {"validated_by": v.validated_by, "location": v.location, "at": iso(v.validated_at)}
            for v in ticket.validations
        ]
        body["refund_history"] = [
            {
                "amount": money(r.amount),
                "reason": r.reason,
                "processed_by": r.processed_by,
                "override": r.override,
                "status": r.status,
                "processed_at": iso(r.processed_at),
            }
            for r in ticket.refunds
        ]
    return body
