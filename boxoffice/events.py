import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import inventory
from .auth import Capability, Identity, has_capability, require_capability
from .context import RequestContext
from .db import utcnow
from .errors import AuthorizationFailure, NotFound, ValidationFailure
from .models import Event, TicketTier
from .payloads import event_payload
from .unit_of_work import TransactionCoordinator, UnitOfWork


def _check_schedule(starts_at: datetime, ends_at: datetime) -> None:
    if ends_at <= starts_at:
        raise ValidationFailure("Event must end after it starts", code="INVALID_SCHEDULE")


def _load_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if event is None:
        raise NotFound("Event not found", code="EVENT_NOT_FOUND", details={"event_id": event_id})
    return event


def _can_manage(identity: Identity | None, event: Event) -> bool:
    if identity is None:
        return False
    return event.organizer_id == identity.user_id or has_capability(identity, Capability.MANAGE_USERS)


class EventService:
    def __init__(self, coordinator: TransactionCoordinator) -> None:
        self.coordinator = coordinator

    def create(
        self,
        ctx: RequestContext,
        *,
        name: str,
        location: str,
        starts_at: datetime,
        ends_at: datetime,
        tiers: list[tuple[str, Decimal, int]],
    ) -> dict:
        require_capability(ctx.identity, Capability.CREATE_EVENT, "Only organizers can create events")
        if starts_at <= utcnow():
            raise ValidationFailure("Event must start in the future", code="INVALID_SCHEDULE")
        _check_schedule(starts_at, ends_at)
        if not tiers:
            raise ValidationFailure("At least one ticket tier is required", code="NO_TIERS")
        names = [t[0] for t in tiers]
        if len(set(names)) != len(names):
            raise ValidationFailure("Tier names must be unique", code="DUPLICATE_TIER")

        def work(uow: UnitOfWork) -> dict:
            event = Event(
                id=f"evt_{uuid.uuid4().hex[:12]}",
                organizer_id=ctx.actor_id,
                name=name,
                location=location,
                starts_at=starts_at,
                ends_at=ends_at,
                is_active=True,
                tiers=[TicketTier(name=n, price=p, capacity=c, issued=0, sold=0) for n, p, c in tiers],
            )
            uow.session.add(event)
            uow.session.flush()
            return event_payload(event)

        body = self.coordinator.run_atomic(work, label="events.create", request_id=ctx.request_id)
        ctx.log.info("Event {} created by {}", body["id"], ctx.actor_id)
        return body

    def list_active(self) -> list[dict]:
        with self.coordinator.session_factory() as db:
            rows = db.execute(
                select(Event).where(Event.is_active.is_(True), Event.ends_at > utcnow()).order_by(Event.starts_at)
            ).scalars().all()
            return [event_payload(e) for e in rows]

    def get(self, ctx: RequestContext, event_id: str) -> dict:
        with self.coordinator.session_factory() as db:
            event = _load_event(db, event_id)
            # inactive events are hidden from everyone but their managers
            if not event.is_active and not _can_manage(ctx.identity, event):
                raise NotFound("Event not found", code="EVENT_NOT_FOUND", details={"event_id": event_id})
            return event_payload(event)

    def update(self, ctx: RequestContext, event_id: str, changes: dict) -> dict:
        """Apply organizer edits; tier edits never drop capacity below seats already issued."""

        def work(uow: UnitOfWork) -> dict:
            db = uow.session
            event = _load_event(db, event_id)
            if not _can_manage(ctx.identity, event):
                raise AuthorizationFailure("Only the event organizer can update this event")

            for field in ("name", "location", "starts_at", "ends_at", "is_active"):
                if changes.get(field) is not None:
                    setattr(event, field, changes[field])
            _check_schedule(event.starts_at, event.ends_at)

            tiers = {t.name: t for t in event.tiers}
            for tier_change in changes.get("tiers") or []:
                tier = tiers.get(tier_change["name"])
                if tier is None:
                    raise ValidationFailure(
                        f"Tier {tier_change['name']} does not exist", code="UNKNOWN_TIER"
                    )
                # resize refreshes the tier, so it runs before staged edits
                if tier_change.get("capacity") is not None:
                    inventory.resize(db, tier, tier_change["capacity"])
                if tier_change.get("price") is not None:
                    tier.price = tier_change["price"]

            db.flush()
            return event_payload(event)

        body = self.coordinator.run_atomic(work, label="events.update", request_id=ctx.request_id)
        ctx.log.info("Event {} updated by {}", event_id, ctx.actor_id)
        return body
