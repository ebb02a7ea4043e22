"""Tier seat counters.

Every change is a single guarded UPDATE so ``sold <= issued <= capacity``
holds under concurrent writers without reading the counters first.
"""

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import CapacityExceeded, Conflict, ValidationFailure
from .models import TicketTier


def reserve_seats(db: Session, tier: TicketTier, quantity: int) -> None:
    result = db.execute(
        update(TicketTier)
        .where(TicketTier.id == tier.id, TicketTier.issued + quantity <= TicketTier.capacity)
        .values(issued=TicketTier.issued + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        issued, capacity = db.execute(
            select(TicketTier.issued, TicketTier.capacity).where(TicketTier.id == tier.id)
        ).one()
        raise CapacityExceeded(
            f"Not enough {tier.name} tickets left",
            details={"tier": tier.name, "requested": quantity, "available": max(capacity - issued, 0)},
        )


def release_seat(db: Session, tier_id: int, *, sold: bool) -> None:
    conditions = [TicketTier.id == tier_id, TicketTier.issued >= 1]
    values = {"issued": TicketTier.issued - 1}
    if sold:
        conditions.append(TicketTier.sold >= 1)
        values["sold"] = TicketTier.sold - 1

    result = db.execute(
        update(TicketTier).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Tier counters are out of step with tickets", code="TIER_COUNTER_MISMATCH")


def record_sales(db: Session, sales: dict[int, int]) -> None:
    """Move confirmed tickets from issued to sold, per tier id."""
    for tier_id, count in sorted(sales.items()):
        result = db.execute(
            update(TicketTier)
            .where(TicketTier.id == tier_id, TicketTier.sold + count <= TicketTier.issued)
            .values(sold=TicketTier.sold + count)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict("Tier counters are out of step with tickets", code="TIER_COUNTER_MISMATCH")


def resize(db: Session, tier: TicketTier, capacity: int) -> None:
    result = db.execute(
        update(TicketTier)
        .where(TicketTier.id == tier.id, TicketTier.issued <= capacity)
        .values(capacity=capacity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ValidationFailure(
            "Capacity cannot drop below tickets already issued",
            code="CAPACITY_BELOW_ISSUED",
            details={"tier": tier.name, "requested": capacity},
        )
    db.refresh(tier)
