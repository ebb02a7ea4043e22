"""Ticket operations: purchase, transfer, validation, refund and lookups.

Each mutating call goes through the idempotency ledger and runs its effect
inside one coordinator transaction. When a call loses an optimistic-lock
race on a ticket it re-reads the ticket and re-runs the transition's checks
so the caller sees the conflict the winner caused.
"""

import time
from decimal import Decimal
from typing import Callable, Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import inventory, lifecycle
from .audit import add_audit, record_audit
from .auth import Capability, Identity, has_capability, require_capability
from .config import Settings
from .context import RequestContext
from .db import utcnow
from .errors import AuthenticationFailure, AuthorizationFailure, NotFound, ValidationFailure
from .idempotency import IdempotencyLedger, Outcome, request_fingerprint
from .models import Event, PaymentStatus, RefundEntry, Ticket, User
from .payloads import iso, money, ticket_payload
from .security import ScanToken, mint_scan_token, parse_scan_token
from .unit_of_work import TransactionCoordinator, UnitOfWork


def scan_tokens(secret: str, event_id: str, owner_id: str) -> Iterator[str]:
    """Yield tokens for one owner with strictly increasing issue times."""
    last_ns = 0
    while True:
        last_ns = max(time.time_ns(), last_ns + 1)
        yield mint_scan_token(ScanToken(event_id=event_id, owner_id=owner_id, issued_at_ns=last_ns), secret)


def require_identity(ctx: RequestContext) -> Identity:
    if ctx.identity is None:
        raise AuthenticationFailure("No authentication token", code="NO_TOKEN")
    return ctx.identity


def load_ticket(db: Session, ticket_id: str) -> Ticket:
    ticket = db.get(Ticket, ticket_id)
    if ticket is None:
        raise NotFound("Ticket not found", code="TICKET_NOT_FOUND", details={"ticket_id": ticket_id})
    return ticket


def load_ticket_by_token(db: Session, raw_token: str) -> Ticket:
    ticket = db.execute(select(Ticket).where(Ticket.scan_token == raw_token)).scalar_one_or_none()
    if ticket is None:
        raise NotFound(
            "Ticket not found",
            code="TICKET_NOT_FOUND",
            details={"solution": "Verify the ticket or contact support"},
        )
    return ticket


class TicketService:
    def __init__(self, coordinator: TransactionCoordinator, ledger: IdempotencyLedger, settings: Settings) -> None:
        self.coordinator = coordinator
        self.ledger = ledger
        self.settings = settings

    def _explain(self, load: Callable[[Session], Ticket], check: Callable[[Ticket], None]) -> Callable[[], None]:
        def explain() -> None:
            with self.coordinator.session_factory() as db:
                check(load(db))

        return explain

    # --- purchase ---

    def purchase(self, ctx: RequestContext, event_id: str, tier: str, quantity: int, idempotency_key: str) -> Outcome:
        """Single-tier purchase; one ticket is returned bare, more in the batch shape."""
        return self._issue(
            ctx, event_id, [(tier, quantity)], idempotency_key, scope="tickets.purchase", bare=quantity == 1
        )

    def purchase_batch(
        self, ctx: RequestContext, event_id: str, items: list[tuple[str, int]], idempotency_key: str
    ) -> Outcome:
        return self._issue(ctx, event_id, items, idempotency_key, scope="tickets.batch-purchase", bare=False)

    def _issue(
        self,
        ctx: RequestContext,
        event_id: str,
        items: list[tuple[str, int]],
        idempotency_key: str,
        *,
        scope: str,
        bare: bool,
    ) -> Outcome:
        buyer = require_identity(ctx)
        ctx.log.info("Purchase initiated: event {} tickets {}", event_id, sum(q for _, q in items))

        def work(uow: UnitOfWork) -> tuple[int, dict]:
            db = uow.session
            now = utcnow()
            event = db.get(Event, event_id)
            if event is None:
                raise NotFound(
                    "Event not found",
                    code="EVENT_NOT_FOUND",
                    details={"event_id": event_id, "solution": "Verify the event ID or contact support"},
                )
            lifecycle.check_issue(event, now)

            tiers = {t.name: t for t in event.tiers}
            tokens = scan_tokens(self.settings.ticket_signing_secret, event.id, buyer.user_id)
            created = []
            for tier_name, quantity in items:
                tier = tiers.get(tier_name)
                if tier is None:
                    raise ValidationFailure(
                        f"Tier {tier_name} is not offered for this event",
                        code="UNKNOWN_TIER",
                        details={"tier": tier_name, "offered": sorted(tiers)},
                    )
                inventory.reserve_seats(db, tier, quantity)
                for _ in range(quantity):
                    ticket = lifecycle.issue(event, tier, buyer.user_id, next(tokens), now)
                    db.add(ticket)
                    created.append(ticket)
            db.flush()

            bodies = [ticket_payload(t, include_token=True, include_history=True) for t in created]
            ctx.log.info("Purchase completed: {} tickets for event {}", len(bodies), event.id)
            if bare:
                return 201, bodies[0]
            return 201, {"success": True, "count": len(bodies), "tickets": bodies}

        return self.ledger.run(
            self.coordinator,
            scope=scope,
            key=idempotency_key,
            ctx=ctx,
            work=work,
            fingerprint=request_fingerprint(event_id, items),
        )

    # --- transfer ---

    def transfer(self, ctx: RequestContext, ticket_id: str, recipient_email: str, idempotency_key: str) -> Outcome:
        sender = require_identity(ctx)
        email = recipient_email.strip().lower()
        ctx.log.info("Transfer initiated: ticket {} to {}", ticket_id, email)

        def find_recipient(db: Session) -> User:
            recipient = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if recipient is None:
                raise NotFound(
                    "Recipient not found",
                    code="RECIPIENT_NOT_FOUND",
                    details={"email": email, "solution": "Verify the email or ask the recipient to register"},
                )
            return recipient

        def work(uow: UnitOfWork) -> tuple[int, dict]:
            db = uow.session
            ticket = load_ticket(db, ticket_id)
            recipient = find_recipient(db)
            token = next(scan_tokens(self.settings.ticket_signing_secret, ticket.event_id, recipient.id))
            lifecycle.transfer(ticket, sender.user_id, recipient.id, token, utcnow())
            db.flush()
            ctx.log.info("Transfer completed: ticket {} now owned by {}", ticket.id, recipient.id)
            return 200, {
                "success": True,
                "message": f"Ticket transferred to {recipient.email}",
                "ticket_id": ticket.id,
                "status": ticket.status,
            }

        def explain() -> None:
            with self.coordinator.session_factory() as db:
                lifecycle.check_transfer(load_ticket(db, ticket_id), sender.user_id, find_recipient(db).id)

        return self.ledger.run(
            self.coordinator,
            scope="tickets.transfer",
            key=idempotency_key,
            ctx=ctx,
            work=work,
            explain_race=explain,
            fingerprint=request_fingerprint(ticket_id, email),
        )

    # --- validate ---

    def validate(self, ctx: RequestContext, raw_token: str, location: str | None, idempotency_key: str) -> Outcome:
        require_capability(ctx.identity, Capability.VALIDATE, "Staff privileges required")
        location = (location or "").strip() or "Unknown"
        sessions = self.coordinator.session_factory

        try:
            parse_scan_token(raw_token, self.settings.ticket_signing_secret)
        except ValidationFailure as exc:
            ctx.log.warning("Rejected malformed scan token at {}", location)
            record_audit(sessions, ctx, "validate", status="REJECTED", reason_code=exc.code)
            raise

        def work(uow: UnitOfWork) -> tuple[int, dict]:
            db = uow.session
            ticket = load_ticket_by_token(db, raw_token)
            now = utcnow()
            lifecycle.validate(ticket, ctx.actor_id, location, now)
            add_audit(
                db, ctx, "validate", status="ACCEPTED", reason_code="OK", event_id=ticket.event_id, ticket_id=ticket.id
            )
            db.flush()
            event = ticket.event
            ctx.log.info("Validation successful: ticket {} for {}", ticket.id, event.name)
            return 200, {
                "valid": True,
                "ticket_id": ticket.id,
                "event": {
                    "id": event.id,
                    "name": event.name,
                    "date": iso(event.starts_at),
                    "location": event.location,
                },
                "attendee": {"email": ticket.owner.email},
                "validatedAt": iso(now),
            }

        outcome = self.ledger.run(
            self.coordinator,
            scope="tickets.validate",
            key=idempotency_key,
            ctx=ctx,
            work=work,
            explain_race=self._explain(
                lambda db: load_ticket_by_token(db, raw_token), lifecycle.check_validate
            ),
            fingerprint=request_fingerprint(raw_token, location),
        )
        if outcome.status_code >= 400 and not outcome.replayed:
            body = outcome.payload()
            ctx.log.warning("Validation rejected: {}", body["code"])
            record_audit(
                sessions,
                ctx,
                "validate",
                status="REJECTED",
                reason_code=body["code"],
                ticket_id=body["details"].get("ticket_id"),
            )
        return outcome

    # --- refund ---

    def refund(
        self,
        ctx: RequestContext,
        ticket_id: str,
        reason: str,
        idempotency_key: str,
        *,
        amount: Decimal | None = None,
        force: bool = False,
    ) -> Outcome:
        requester = require_identity(ctx)
        ctx.log.info("Refund requested: ticket {} force={}", ticket_id, force)

        def work(uow: UnitOfWork) -> tuple[int, dict]:
            db = uow.session
            ticket = load_ticket(db, ticket_id)

            prior = db.execute(
                select(RefundEntry).where(
                    RefundEntry.ticket_id == ticket.id, RefundEntry.idempotency_key == idempotency_key
                )
            ).scalar_one_or_none()
            # a purged ledger record still replays from the refund entry, for the same requester only
            if prior is not None and prior.processed_by == requester.user_id:
                ctx.log.info("Refund for ticket {} already processed under this key", ticket.id)
                return 200, Outcome(status_code=200, body=prior.outcome).payload()

            was_used = ticket.is_used
            was_sold = ticket.payment_status == PaymentStatus.CONFIRMED.value
            entry = lifecycle.refund(ticket, requester, reason, idempotency_key, utcnow(), amount, force=force)
            # the version check must decide a race before the counters are touched
            db.flush()
            if not was_used:
                inventory.release_seat(db, ticket.tier_id, sold=was_sold)

            payload = {
                "status": "completed",
                "ticket_id": ticket.id,
                "amount": money(entry.amount),
                "currency": self.settings.payment_currency,
                "override": entry.override,
                "processed_at": iso(entry.processed_at),
            }
            entry.outcome = Outcome.from_payload(200, payload).body
            add_audit(
                db,
                ctx,
                "refund",
                status="REFUNDED",
                reason_code="OVERRIDE" if entry.override else "OK",
                event_id=ticket.event_id,
                ticket_id=ticket.id,
                details={"amount": money(entry.amount), "reason": reason, "override": entry.override},
            )
            db.flush()
            if entry.override:
                ctx.log.warning("Refund override on ticket {} by {}", ticket.id, requester.user_id)
            return 200, payload

        return self.ledger.run(
            self.coordinator,
            scope="admin.force-refund" if force else "tickets.refund",
            key=f"{ticket_id}/{idempotency_key}",
            ctx=ctx,
            work=work,
            explain_race=self._explain(
                lambda db: load_ticket(db, ticket_id),
                lambda ticket: lifecycle.check_refund(ticket, requester, amount, force=force),
            ),
            fingerprint=request_fingerprint(ticket_id, reason, amount),
        )

    # --- reads ---

    def get(self, ctx: RequestContext, ticket_id: str) -> dict:
        identity = require_identity(ctx)
        with self.coordinator.session_factory() as db:
            ticket = load_ticket(db, ticket_id)
            is_owner = ticket.owner_id == identity.user_id
            if not is_owner and not has_capability(identity, Capability.VALIDATE):
                raise AuthorizationFailure("You do not own this ticket", code="NOT_TICKET_OWNER")
            return ticket_payload(ticket, include_token=is_owner, include_history=True)

    def list_mine(self, ctx: RequestContext) -> list[dict]:
        identity = require_identity(ctx)
        with self.coordinator.session_factory() as db:
            tickets = db.execute(
                select(Ticket).where(Ticket.owner_id == identity.user_id).order_by(Ticket.created_at)
            ).scalars().all()
            out = []
            for t in tickets:
                body = ticket_payload(t, include_token=True)
                body["event"] = {"name": t.event.name, "date": iso(t.event.starts_at), "location": t.event.location}
                out.append(body)
            return out
