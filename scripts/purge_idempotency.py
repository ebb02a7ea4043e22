# scripts/purge_idempotency.py
from boxoffice.config import Settings
from boxoffice.db import make_engine, make_session_factory
from boxoffice.idempotency import IdempotencyLedger
from boxoffice.log import configure_logging
from loguru import logger


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    ledger = IdempotencyLedger(make_session_factory(engine), ttl_hours=settings.idempotency_ttl_hours)
    try:
        purged = ledger.purge_expired()
        logger.info("Purged {} expired idempotency records", purged)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
