"""Payment webhook processing.

Gates run in a fixed order: idempotency key, signature, payload shape.
Nothing is read from or written to the store before the signature checks
out. Past the gates every delivery is acknowledged; the business outcome
travels in the acknowledgement body and is stored under the delivery's
idempotency key so resends replay it.
"""

import json
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import inventory
from .audit import add_audit, record_audit
from .config import Settings
from .context import RequestContext
from .db import utcnow
from .errors import (
    BoxOfficeError,
    DuplicateTransaction,
    NotFound,
    SignatureInvalid,
    TicketRefunded,
    TransientStoreFailure,
    UnexpectedFailure,
    ValidationFailure,
)
from .idempotency import Duplicate, IdempotencyLedger, Outcome, Reservation
from .models import Payment, PaymentStatus, Ticket, TicketStatus
from .payloads import iso, money
from .security import verify_signature
from .unit_of_work import TransactionCoordinator, UnitOfWork

SCOPE = "payments.webhook"
REQUIRED_FIELDS = ("transactionId", "status", "ticketIds", "amount", "currency", "paymentMethod")
SUCCESS = "success"
FAILED = "failed"


@dataclass(frozen=True)
class PaymentWebhookEvent:
    transaction_id: str
    status: str
    ticket_ids: tuple[str, ...]
    amount: Decimal
    currency: str
    payment_method: str
    customer_email: str | None = None
    customer_phone: str | None = None

    @classmethod
    def from_body(cls, raw_body: bytes) -> "PaymentWebhookEvent":
        try:
            body = json.loads(raw_body, parse_float=Decimal)
        except (UnicodeDecodeError, ValueError):
            raise ValidationFailure("Webhook body is not valid JSON", code="INVALID_PAYLOAD")
        if not isinstance(body, dict):
            raise ValidationFailure("Webhook body must be a JSON object", code="INVALID_PAYLOAD")

        missing = [name for name in REQUIRED_FIELDS if not _present(body.get(name))]
        if missing:
            raise ValidationFailure(
                "Missing required fields in webhook payload",
                code="MISSING_REQUIRED_FIELDS",
                details={"requiredFields": list(REQUIRED_FIELDS), "missing": missing},
            )

        status = body["status"]
        if status not in (SUCCESS, FAILED):
            raise ValidationFailure(
                "Unknown payment status", code="INVALID_STATUS", details={"status": str(status)}
            )

        ticket_ids = body["ticketIds"]
        if not isinstance(ticket_ids, list) or not all(isinstance(t, str) and t for t in ticket_ids):
            raise ValidationFailure("ticketIds must be a list of ticket ids", code="INVALID_PAYLOAD")
        if len(set(ticket_ids)) != len(ticket_ids):
            raise ValidationFailure("ticketIds must not repeat", code="INVALID_PAYLOAD")

        amount = _to_amount(body["amount"])
        for name in ("transactionId", "currency", "paymentMethod"):
            if not isinstance(body[name], str):
                raise ValidationFailure(f"{name} must be a string", code="INVALID_PAYLOAD")

        customer = body.get("customer") or {}
        if not isinstance(customer, dict):
            raise ValidationFailure("customer must be an object", code="INVALID_PAYLOAD")

        return cls(
            transaction_id=body["transactionId"],
            status=status,
            ticket_ids=tuple(ticket_ids),
            amount=amount,
            currency=body["currency"].upper(),
            payment_method=body["paymentMethod"],
            customer_email=customer.get("email"),
            customer_phone=customer.get("phone"),
        )


def _present(value: Any) -> bool:
    if value is None or value == "" or value == []:
        return False
    return True


def _to_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, Decimal, str)):
        raise ValidationFailure("amount must be a number", code="INVALID_PAYLOAD")
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValidationFailure("amount must be a number", code="INVALID_PAYLOAD")
    if not amount.is_finite() or amount <= 0:
        raise ValidationFailure("amount must be positive", code="INVALID_PAYLOAD")
    return amount


class WebhookProcessor:
    def __init__(self, coordinator: TransactionCoordinator, ledger: IdempotencyLedger, settings: Settings) -> None:
        self.coordinator = coordinator
        self.ledger = ledger
        self.settings = settings

    def handle(
        self, raw_body: bytes, signature: str | None, idempotency_key: str | None, ctx: RequestContext
    ) -> Outcome:
        key = (idempotency_key or "").strip()
        if not key:
            raise ValidationFailure("Idempotency key required", code="MISSING_IDEMPOTENCY_KEY")

        if not verify_signature(raw_body, signature, self.settings.payment_webhook_secret):
            ctx.log.warning("Rejected payment webhook with invalid signature from {}", ctx.client_ip)
            raise SignatureInvalid("Invalid webhook signature")

        event = PaymentWebhookEvent.from_body(raw_body)
        ctx.log.info(
            "Payment webhook received: txn {} status {} tickets {} method {}",
            event.transaction_id,
            event.status,
            len(event.ticket_ids),
            event.payment_method,
        )

        decision = self.ledger.check_or_reserve(SCOPE, key, ctx.request_id)
        if isinstance(decision, Duplicate):
            ctx.log.info("Replaying acknowledgement for txn {}", event.transaction_id)
            return decision.outcome
        return self._process(event, decision.reservation, ctx)

    def _process(self, event: PaymentWebhookEvent, reservation: Reservation, ctx: RequestContext) -> Outcome:
        def work(uow: UnitOfWork) -> Outcome:
            db = uow.session
            if event.status == SUCCESS:
                self._confirm(db, event)
                result = "confirmed"
            else:
                self._record_failure(db, event, ctx)
                result = "failed_recorded"
            add_audit(
                db,
                ctx,
                "payment_webhook",
                status=result.upper(),
                reason_code="OK",
                details={"transactionId": event.transaction_id, "ticketIds": list(event.ticket_ids)},
            )
            outcome = Outcome.from_payload(200, self._ack(event, result))
            self.ledger.complete(db, reservation, outcome)
            return outcome

        try:
            try:
                outcome = self.coordinator.run_atomic(work, label=SCOPE, request_id=ctx.request_id)
            except TransientStoreFailure as exc:
                if exc.code == "IDEMPOTENCY_LEASE_LOST":
                    raise
                self._explain(event)
                raise
        except (TransientStoreFailure, UnexpectedFailure) as exc:
            # acknowledged anyway; the released key lets an operator resend the delivery
            self.ledger.release(reservation)
            ctx.log.opt(exception=exc).error(
                "Payment webhook processing failed: txn {} {} ({})", event.transaction_id, exc.code, exc.message
            )
            return Outcome.from_payload(200, self._ack(event, "error", exc))
        except BoxOfficeError as exc:
            ctx.log.error(
                "Payment webhook rejected: txn {} {} ({})", event.transaction_id, exc.code, exc.message
            )
            outcome = Outcome.from_payload(200, self._ack(event, "rejected", exc))
            self.ledger.commit(reservation, outcome)
            record_audit(
                self.coordinator.session_factory,
                ctx,
                "payment_webhook",
                status="REJECTED",
                reason_code=exc.code,
                details={"transactionId": event.transaction_id, "ticketIds": list(event.ticket_ids)},
            )
            return outcome

        if event.status == SUCCESS:
            ctx.log.info("Payment processed: txn {} tickets {} amount {}", event.transaction_id, len(event.ticket_ids), event.amount)
        else:
            ctx.log.warning("Payment failed: txn {}", event.transaction_id)
        return outcome

    def _confirm(self, db: Session, event: PaymentWebhookEvent) -> None:
        tickets = self._load_tickets(db, event)
        if len(tickets) != len(event.ticket_ids):
            raise NotFound(
                "Some tickets not found",
                code="TICKETS_NOT_FOUND",
                details={"found": len(tickets), "requested": len(event.ticket_ids)},
            )
        self._check_unsettled(db, event, tickets)

        refunded = [t.id for t in tickets if t.status == TicketStatus.REFUNDED.value]
        if refunded:
            raise TicketRefunded(refunded[0], "Payment references a refunded ticket")

        expected = sum((t.price for t in tickets), Decimal("0"))
        if expected != event.amount:
            raise ValidationFailure(
                "Payment amount mismatch",
                code="AMOUNT_MISMATCH",
                details={"expected": money(expected), "received": money(event.amount)},
            )
        if event.currency != self.settings.payment_currency:
            raise ValidationFailure(
                "Payment currency mismatch",
                code="CURRENCY_MISMATCH",
                details={"expected": self.settings.payment_currency, "received": event.currency},
            )

        for t in tickets:
            t.payment_status = PaymentStatus.CONFIRMED.value
            t.transaction_id = event.transaction_id
            t.payment_method = event.payment_method
        inventory.record_sales(db, Counter(t.tier_id for t in tickets))

        db.add(
            Payment(
                transaction_id=event.transaction_id,
                status="completed",
                amount=event.amount,
                currency=event.currency,
                payment_method=event.payment_method,
                ticket_ids=list(event.ticket_ids),
                customer_email=event.customer_email,
                customer_phone=event.customer_phone,
            )
        )
        db.flush()

    def _record_failure(self, db: Session, event: PaymentWebhookEvent, ctx: RequestContext) -> None:
        for t in self._load_tickets(db, event):
            if t.payment_status == PaymentStatus.CONFIRMED.value:
                ctx.log.warning("Ignoring failure report for confirmed ticket {}", t.id)
                continue
            t.payment_status = PaymentStatus.FAILED.value
            t.transaction_id = event.transaction_id
        db.flush()

    def _check_unsettled(self, db: Session, event: PaymentWebhookEvent, tickets: list[Ticket]) -> None:
        # any earlier report, success or failure, leaves a transaction id behind
        settled = db.execute(
            select(Payment.id).where(Payment.transaction_id == event.transaction_id)
        ).first()
        if settled is not None or any(t.transaction_id for t in tickets):
            raise DuplicateTransaction(
                "Some tickets already processed", details={"transactionId": event.transaction_id}
            )

    def _explain(self, event: PaymentWebhookEvent) -> None:
        if event.status != SUCCESS:
            return
        with self.coordinator.session_factory() as db:
            self._check_unsettled(db, event, self._load_tickets(db, event))

    def _load_tickets(self, db: Session, event: PaymentWebhookEvent) -> list[Ticket]:
        return list(
            db.execute(select(Ticket).where(Ticket.id.in_(event.ticket_ids)).order_by(Ticket.id)).scalars().all()
        )

    def _ack(self, event: PaymentWebhookEvent, result: str, failure: BoxOfficeError | None = None) -> dict:
        return {
            "acknowledged": True,
            "outcome": result,
            "reason_code": failure.code if failure else None,
            "message": failure.message if failure else None,
            "transactionId": event.transaction_id,
            "ticketCount": len(event.ticket_ids),
            "timestamp": iso(utcnow()),
        }
