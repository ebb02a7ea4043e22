import json
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

import httpx
from sqlalchemy import select

from boxoffice.auth import Identity
from boxoffice.context import RequestContext
from boxoffice.db import utcnow
from boxoffice.models import Role, Ticket, TicketTier, User
from boxoffice.security import mint_identity_token, sign_payload


@dataclass(frozen=True)
class SeededUser:
    id: str
    email: str
    role: str
    headers: dict

    @property
    def identity(self) -> Identity:
        return Identity(user_id=self.id, role=self.role, email=self.email)

    def ctx(self) -> RequestContext:
        return RequestContext(request_id=str(uuid.uuid4()), identity=self.identity, client_ip="127.0.0.1")


def seed_user(app, email: str, role: str = Role.ATTENDEE.value) -> SeededUser:
    user_id = f"usr_{uuid.uuid4().hex[:12]}"
    with app.state.session_factory() as db:
        db.add(User(id=user_id, email=email, name=email.split("@")[0], role=role))
        db.commit()
    token = mint_identity_token(user_id, app.state.settings.auth_token_secret)
    return SeededUser(id=user_id, email=email, role=role, headers={"Authorization": f"Bearer {token}"})


def seed_event(app, organizer: SeededUser, tiers=(("General", 200, 100),), **overrides) -> str:
    starts_at = overrides.pop("starts_at", utcnow() + timedelta(days=7))
    body = app.state.events.create(
        organizer.ctx(),
        name=overrides.pop("name", "Bushfire Festival"),
        location=overrides.pop("location", "Malkerns Valley"),
        starts_at=starts_at,
        ends_at=overrides.pop("ends_at", starts_at + timedelta(hours=6)),
        tiers=[(name, Decimal(str(price)), capacity) for name, price, capacity in tiers],
    )
    return body["id"]


def tier_counters(app, event_id: str) -> dict[str, tuple[int, int]]:
    with app.state.session_factory() as db:
        rows = db.execute(select(TicketTier).where(TicketTier.event_id == event_id)).scalars().all()
        return {t.name: (t.issued, t.sold) for t in rows}


def load_ticket(app, ticket_id: str) -> Ticket:
    with app.state.session_factory() as db:
        ticket = db.get(Ticket, ticket_id)
        # touch history so it is loaded before the session closes
        ticket.transfers, ticket.validations, ticket.refunds
        return ticket


async def buy(client: httpx.AsyncClient, user: SeededUser, event_id: str, tier="General", quantity=1, key=None) -> dict:
    headers = dict(user.headers)
    if key:
        headers["Idempotency-Key"] = key
    r = await client.post(
        "/tickets/purchase", json={"event_id": event_id, "tier": tier, "quantity": quantity}, headers=headers
    )
    assert r.status_code == 201, r.text
    return r.json()


def signed_webhook(app, payload: dict, key: str | None = "evt-1", signature: str | None = None) -> dict:
    raw = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if key is not None:
        headers["Idempotency-Key"] = key
    headers["X-Payment-Signature"] = signature or sign_payload(raw, app.state.settings.payment_webhook_secret)
    return {"content": raw, "headers": headers}
