"""Transactional operation coordinator.

Every multi-entity mutation (ticket + tier counters, ticket + payment record,
ticket + idempotency outcome) runs inside one unit of work: a single session
and database transaction that either commits as a whole or is rolled back.

Usage:
    result = coordinator.run_atomic(lambda uow: do_work(uow.session), label="tickets.purchase")
"""

from typing import Callable, TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .errors import BoxOfficeError, ConcurrentModification, TransientStoreFailure, UnexpectedFailure

T = TypeVar("T")


class UnitOfWork:
    session: Session

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def __enter__(self) -> "UnitOfWork":
        self.session = self._session_factory()
        return self

    def __exit__(self, *args) -> None:
        # no-op after a successful commit
        self.rollback()
        self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


class TransactionCoordinator:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.session_factory)

    def run_atomic(self, work: Callable[[UnitOfWork], T], *, label: str, request_id: str = "-") -> T:
        """Run ``work`` in one transaction; commit on return, roll back on any exception.

        Typed failures raised by ``work`` propagate unchanged. Store-level
        failures are translated so callers never see a half-applied state.
        """
        log = logger.bind(request_id=request_id)
        try:
            with self.unit_of_work() as uow:
                result = work(uow)
                uow.commit()
                return result
        except BoxOfficeError:
            raise
        except StaleDataError as exc:
            log.info("{} lost an optimistic lock race", label)
            raise ConcurrentModification(
                "The resource was modified by a concurrent request", details={"operation": label}
            ) from exc
        except IntegrityError as exc:
            log.info("{} hit a unique constraint: {}", label, exc.orig)
            raise TransientStoreFailure(
                "A concurrent request claimed the same resource", code="CONSTRAINT_RACE", details={"operation": label}
            ) from exc
        except OperationalError as exc:
            log.warning("{} aborted by the store: {}", label, exc.orig)
            raise TransientStoreFailure("The store is busy, retry the request", details={"operation": label}) from exc
        except Exception as exc:
            log.exception("{} failed unexpectedly", label)
            raise UnexpectedFailure("An unexpected error occurred") from exc
