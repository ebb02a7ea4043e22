"""Ticket state machine.

ACTIVE -> TRANSFERRED -> TRANSFERRED ...
ACTIVE | TRANSFERRED -> USED | REFUNDED
USED -> REFUNDED (refund override only)

USED and REFUNDED are terminal for ownership changes and validation. Each
transition has a ``check_*`` function holding its preconditions, so a caller
that lost a concurrent race can re-run them against fresh state and report
the resulting conflict.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from .auth import Capability, Identity, has_capability
from .errors import AuthorizationFailure, Conflict, TicketAlreadyUsed, TicketRefunded, ValidationFailure
from .models import Event, PaymentStatus, RefundEntry, Ticket, TicketStatus, TicketTier, TransferEntry, ValidationEntry

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    TicketStatus.ACTIVE.value: frozenset(
        {TicketStatus.TRANSFERRED.value, TicketStatus.USED.value, TicketStatus.REFUNDED.value}
    ),
    TicketStatus.TRANSFERRED.value: frozenset(
        {TicketStatus.TRANSFERRED.value, TicketStatus.USED.value, TicketStatus.REFUNDED.value}
    ),
    TicketStatus.USED.value: frozenset({TicketStatus.REFUNDED.value}),
    TicketStatus.REFUNDED.value: frozenset(),
}


def _move(ticket: Ticket, target: TicketStatus) -> None:
    if target.value not in ALLOWED_TRANSITIONS.get(ticket.status, frozenset()):
        raise Conflict(
            f"Cannot move ticket from {ticket.status} to {target.value}",
            code="INVALID_TRANSITION",
            details={"ticket_id": ticket.id, "status": ticket.status},
        )
    ticket.status = target.value


def _is_refunded(ticket: Ticket) -> bool:
    return ticket.status == TicketStatus.REFUNDED.value


# --- issue ---


def check_issue(event: Event, at: datetime) -> None:
    if not event.is_active:
        raise ValidationFailure("Event is not on sale", code="EVENT_NOT_ACTIVE", details={"event_id": event.id})
    if event.ends_at <= at:
        raise ValidationFailure("Event has already ended", code="EVENT_ENDED", details={"event_id": event.id})


def issue(event: Event, tier: TicketTier, buyer_id: str, scan_token: str, at: datetime) -> Ticket:
    """Build a new ACTIVE ticket; the caller reserves tier capacity in the same transaction."""
    check_issue(event, at)
    ticket = Ticket(
        id=str(uuid.uuid4()),
        event_id=event.id,
        tier_id=tier.id,
        tier=tier.name,
        owner_id=buyer_id,
        price=tier.price,
        scan_token=scan_token,
        is_used=False,
        status=TicketStatus.ACTIVE.value,
        payment_status=PaymentStatus.PENDING.value,
        created_at=at,
        updated_at=at,
    )
    # issuance is recorded as a transfer from the buyer to themself
    ticket.transfers.append(TransferEntry(from_user_id=buyer_id, to_user_id=buyer_id, transferred_at=at))
    return ticket


# --- transfer ---


def check_transfer(ticket: Ticket, current_owner_id: str | None, recipient_id: str) -> None:
    if ticket.owner_id != current_owner_id:
        raise AuthorizationFailure(
            "You do not own this ticket",
            code="NOT_TICKET_OWNER",
            details={"ticket_id": ticket.id, "solution": "Request transfer from the current owner"},
        )
    if ticket.is_used:
        raise TicketAlreadyUsed(ticket.id, ticket.used_at)
    if _is_refunded(ticket):
        raise TicketRefunded(ticket.id, "Refunded tickets cannot be transferred")
    if recipient_id == ticket.owner_id:
        raise ValidationFailure("Cannot transfer a ticket to yourself", code="SELF_TRANSFER")


def transfer(ticket: Ticket, current_owner_id: str | None, recipient_id: str, scan_token: str, at: datetime) -> None:
    check_transfer(ticket, current_owner_id, recipient_id)
    ticket.transfers.append(TransferEntry(from_user_id=ticket.owner_id, to_user_id=recipient_id, transferred_at=at))
    ticket.owner_id = recipient_id
    # the previous holder's token stops resolving
    ticket.scan_token = scan_token
    _move(ticket, TicketStatus.TRANSFERRED)


# --- validate ---


def check_validate(ticket: Ticket) -> None:
    if ticket.is_used:
        raise TicketAlreadyUsed(ticket.id, ticket.used_at)
    if _is_refunded(ticket):
        raise TicketRefunded(ticket.id, "Ticket has been refunded")


def validate(ticket: Ticket, validator_id: str, location: str, at: datetime) -> None:
    check_validate(ticket)
    ticket.validations.append(ValidationEntry(validated_by=validator_id, location=location, validated_at=at))
    ticket.is_used = True
    ticket.used_at = at
    _move(ticket, TicketStatus.USED)


# --- refund ---


def check_refund(ticket: Ticket, requester: Identity, amount: Decimal | None = None, *, force: bool = False) -> bool:
    """Check refund preconditions and return whether the refund is an override."""
    if _is_refunded(ticket):
        raise TicketRefunded(ticket.id)

    can_override = has_capability(requester, Capability.REFUND_OVERRIDE)
    is_owner = ticket.owner_id == requester.user_id

    if force and not can_override:
        raise AuthorizationFailure(
            "Refund override requires elevated privileges",
            details={"required_capability": Capability.REFUND_OVERRIDE.value},
        )
    if not is_owner and not can_override:
        raise AuthorizationFailure("You do not own this ticket", code="NOT_TICKET_OWNER", details={"ticket_id": ticket.id})
    if ticket.is_used and not can_override:
        raise TicketAlreadyUsed(ticket.id, ticket.used_at)

    if amount is not None:
        if not can_override:
            raise AuthorizationFailure(
                "Only an override may set the refund amount",
                details={"required_capability": Capability.REFUND_OVERRIDE.value},
            )
        if amount < 0 or amount > ticket.price:
            raise ValidationFailure(
                "Refund amount must be between 0 and the ticket price",
                code="INVALID_REFUND_AMOUNT",
                details={"price": float(ticket.price), "requested": float(amount)},
            )

    return force or not is_owner or ticket.is_used or amount is not None


def refund(
    ticket: Ticket,
    requester: Identity,
    reason: str,
    idempotency_key: str,
    at: datetime,
    amount: Decimal | None = None,
    *,
    force: bool = False,
) -> RefundEntry:
    override = check_refund(ticket, requester, amount, force=force)
    entry = RefundEntry(
        idempotency_key=idempotency_key,
        processed_by=requester.user_id,
        amount=ticket.price if amount is None else amount,
        reason=reason,
        override=override,
        processed_at=at,
    )
    ticket.refunds.append(entry)
    _move(ticket, TicketStatus.REFUNDED)
    return entry
