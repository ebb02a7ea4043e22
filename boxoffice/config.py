import os
from dataclasses import dataclass, replace


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() == "true"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./boxoffice.db"
    redis_url: str = "redis://localhost:6379/0"

    ticket_signing_secret: str = "dev_secret_change_me"
    auth_token_secret: str = "dev_auth_secret_change_me"
    payment_webhook_secret: str = "dev_webhook_secret_change_me"

    idempotency_ttl_hours: int = 24
    idempotency_lease_seconds: float = 30.0
    idempotency_wait_seconds: float = 10.0
    idempotency_poll_seconds: float = 0.05

    rate_limit_enabled: bool = True
    rate_limit_capacity: int = 60
    rate_limit_refill_per_sec: float = 1.0

    payment_currency: str = "SZL"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        d = cls()
        return cls(
            database_url=os.environ.get("DATABASE_URL", d.database_url),
            redis_url=os.environ.get("REDIS_URL", d.redis_url),
            ticket_signing_secret=os.environ.get("TICKET_SIGNING_SECRET", d.ticket_signing_secret),
            auth_token_secret=os.environ.get("AUTH_TOKEN_SECRET", d.auth_token_secret),
            payment_webhook_secret=os.environ.get("PAYMENT_WEBHOOK_SECRET", d.payment_webhook_secret),
            idempotency_ttl_hours=int(os.environ.get("IDEMPOTENCY_TTL_HOURS", d.idempotency_ttl_hours)),
            idempotency_lease_seconds=float(os.environ.get("IDEMPOTENCY_LEASE_SECONDS", d.idempotency_lease_seconds)),
            idempotency_wait_seconds=float(os.environ.get("IDEMPOTENCY_WAIT_SECONDS", d.idempotency_wait_seconds)),
            idempotency_poll_seconds=float(os.environ.get("IDEMPOTENCY_POLL_SECONDS", d.idempotency_poll_seconds)),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", d.rate_limit_enabled),
            rate_limit_capacity=int(os.environ.get("RATE_LIMIT_CAPACITY", d.rate_limit_capacity)),
            rate_limit_refill_per_sec=float(os.environ.get("RATE_LIMIT_REFILL_PER_SEC", d.rate_limit_refill_per_sec)),
            payment_currency=os.environ.get("PAYMENT_CURRENCY", d.payment_currency),
            log_level=os.environ.get("LOG_LEVEL", d.log_level).upper(),
        )

    def with_overrides(self, **changes) -> "Settings":
        return replace(self, **changes)
