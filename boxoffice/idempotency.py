"""Idempotency ledger.

A request key is reserved before any effect runs and finalized with the
request's outcome inside the same transaction as the effect. Concurrent
requests with one key serialize on the (scope, key) unique index: the first
insert wins, the rest poll until the winner's outcome is stored and replay it.

Reservations carry a lease so a crashed holder cannot block retries forever.
"""

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from loguru import logger
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .context import RequestContext
from .db import utcnow
from .errors import (
    BoxOfficeError,
    ConcurrentModification,
    Conflict,
    IdempotencyInProgress,
    TransientStoreFailure,
    UnexpectedFailure,
    ValidationFailure,
)
from .models import IdempotencyRecord
from .unit_of_work import TransactionCoordinator, UnitOfWork

IN_FLIGHT = "IN_FLIGHT"
COMPLETED = "COMPLETED"

MAX_KEY_LENGTH = 255


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class Outcome:
    status_code: int
    body: str
    replayed: bool = field(default=False, compare=False)

    @classmethod
    def from_payload(cls, status_code: int, payload: dict) -> "Outcome":
        return cls(status_code=status_code, body=json.dumps(payload, default=_json_default))

    def payload(self) -> dict:
        return json.loads(self.body)


def request_fingerprint(*parts: Any) -> str:
    """Digest of the request fields a key is bound to."""
    raw = json.dumps(parts, default=_json_default, sort_keys=True)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Reservation:
    scope: str
    key: str
    token: str


@dataclass(frozen=True)
class New:
    reservation: Reservation


@dataclass(frozen=True)
class Duplicate:
    outcome: Outcome


def resolve_key(header_value: str | None, *, required: bool) -> str:
    """Return the caller's key, or a generated one where a key is optional."""
    key = (header_value or "").strip()
    if not key:
        if required:
            raise ValidationFailure("Idempotency key required", code="MISSING_IDEMPOTENCY_KEY")
        return str(uuid.uuid4())
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationFailure("Idempotency key too long", code="INVALID_IDEMPOTENCY_KEY")
    return key


class IdempotencyLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        ttl_hours: int = 24,
        lease_seconds: float = 30.0,
        wait_seconds: float = 10.0,
        poll_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = timedelta(hours=ttl_hours)
        self.lease = timedelta(seconds=lease_seconds)
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self._sleep = sleep

    def check_or_reserve(
        self, scope: str, key: str, request_id: str = "-", fingerprint: str | None = None
    ) -> New | Duplicate:
        log = logger.bind(request_id=request_id)
        deadline = time.monotonic() + self.wait_seconds

        while True:
            reservation = self._try_insert(scope, key, fingerprint)
            if reservation is not None:
                return New(reservation)

            record = self._load(scope, key)
            if record is not None:
                if fingerprint and record.fingerprint and record.fingerprint != fingerprint:
                    raise Conflict(
                        "Idempotency key was already used for a different request",
                        code="IDEMPOTENCY_KEY_REUSED",
                        details={"scope": scope},
                    )
                if record.state == COMPLETED:
                    return Duplicate(
                        Outcome(status_code=record.status_code, body=record.response_body, replayed=True)
                    )

                if record.lease_expires_at is not None and record.lease_expires_at <= utcnow():
                    reservation = self._take_over(record)
                    if reservation is not None:
                        log.warning("Took over expired idempotency lease for {} key {}", scope, key)
                        return New(reservation)

            if time.monotonic() >= deadline:
                raise IdempotencyInProgress(
                    "A request with this idempotency key is still in progress",
                    details={"scope": scope, "retry": True},
                )
            self._sleep(self.poll_seconds)

    def complete(self, session: Session, reservation: Reservation, outcome: Outcome) -> None:
        """Finalize inside the caller's transaction; a lost lease aborts that transaction."""
        now = utcnow()
        result = session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.scope == reservation.scope,
                IdempotencyRecord.key == reservation.key,
                IdempotencyRecord.state == IN_FLIGHT,
                IdempotencyRecord.lease_owner == reservation.token,
            )
            .values(
                state=COMPLETED,
                status_code=outcome.status_code,
                response_body=outcome.body,
                completed_at=now,
                expires_at=now + self.ttl,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                "Idempotency lease expired before the request finished",
                code="IDEMPOTENCY_LEASE_LOST",
                details={"scope": reservation.scope},
            )

    def commit(self, reservation: Reservation, outcome: Outcome) -> None:
        with self._session_factory() as db:
            try:
                self.complete(db, reservation, outcome)
                db.commit()
            except ConcurrentModification:
                db.rollback()
                logger.warning("Dropped outcome for {} key {}: lease lost", reservation.scope, reservation.key)

    def release(self, reservation: Reservation) -> None:
        with self._session_factory() as db:
            db.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.scope == reservation.scope,
                    IdempotencyRecord.key == reservation.key,
                    IdempotencyRecord.state == IN_FLIGHT,
                    IdempotencyRecord.lease_owner == reservation.token,
                )
            )
            db.commit()

    def purge_expired(self) -> int:
        now = utcnow()
        with self._session_factory() as db:
            result = db.execute(
                delete(IdempotencyRecord).where(
                    or_(
                        and_(IdempotencyRecord.state == COMPLETED, IdempotencyRecord.expires_at < now),
                        and_(IdempotencyRecord.state == IN_FLIGHT, IdempotencyRecord.lease_expires_at < now - self.ttl),
                    )
                )
            )
            db.commit()
            return result.rowcount

    def run(
        self,
        coordinator: TransactionCoordinator,
        *,
        scope: str,
        key: str,
        ctx: RequestContext,
        work: Callable[[UnitOfWork], tuple[int, dict]],
        explain_race: Callable[[], None] | None = None,
        fingerprint: str | None = None,
    ) -> Outcome:
        """Run ``work`` at most once per (scope, key) and return its outcome.

        Typed business failures are stored and replayed like successes.
        Transient and unexpected failures release the key so a retry can run.
        ``explain_race`` is called after a lost concurrency race and may raise
        the business failure that the race produced.
        Keys are private to the calling identity; a key reused with a different
        ``fingerprint`` is rejected.
        """
        if ctx.actor_id is not None:
            scope = f"{scope}:{ctx.actor_id}"
        decision = self.check_or_reserve(scope, key, ctx.request_id, fingerprint)
        if isinstance(decision, Duplicate):
            ctx.log.info("Replaying stored outcome for {} key {}", scope, key)
            return decision.outcome
        reservation = decision.reservation

        def _work(uow: UnitOfWork) -> Outcome:
            status_code, payload = work(uow)
            outcome = Outcome.from_payload(status_code, payload)
            self.complete(uow.session, reservation, outcome)
            return outcome

        try:
            try:
                return coordinator.run_atomic(_work, label=scope, request_id=ctx.request_id)
            except TransientStoreFailure as exc:
                if explain_race is None or exc.code == "IDEMPOTENCY_LEASE_LOST":
                    raise
                explain_race()
                raise
        except (TransientStoreFailure, UnexpectedFailure):
            self.release(reservation)
            raise
        except BoxOfficeError as exc:
            outcome = Outcome.from_payload(exc.status_code, exc.to_body(ctx.request_id))
            self.commit(reservation, outcome)
            return outcome

    def _try_insert(self, scope: str, key: str, fingerprint: str | None) -> Reservation | None:
        token = uuid.uuid4().hex
        with self._session_factory() as db:
            db.add(
                IdempotencyRecord(
                    scope=scope,
                    key=key,
                    state=IN_FLIGHT,
                    fingerprint=fingerprint,
                    lease_owner=token,
                    lease_expires_at=utcnow() + self.lease,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return None
        return Reservation(scope=scope, key=key, token=token)

    def _load(self, scope: str, key: str) -> IdempotencyRecord | None:
        with self._session_factory() as db:
            return db.execute(
                select(IdempotencyRecord).where(IdempotencyRecord.scope == scope, IdempotencyRecord.key == key)
            ).scalar_one_or_none()

    def _take_over(self, record: IdempotencyRecord) -> Reservation | None:
        token = uuid.uuid4().hex
        with self._session_factory() as db:
            result = db.execute(
                update(IdempotencyRecord)
                .where(
                    IdempotencyRecord.id == record.id,
                    IdempotencyRecord.state == IN_FLIGHT,
                    IdempotencyRecord.lease_owner == record.lease_owner,
                )
                .values(lease_owner=token, lease_expires_at=utcnow() + self.lease)
            )
            db.commit()
        if result.rowcount != 1:
            return None
        return Reservation(scope=record.scope, key=record.key, token=token)
