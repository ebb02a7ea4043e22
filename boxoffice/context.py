import uuid
from dataclasses import dataclass

from loguru import logger

from .auth import Identity


def new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class RequestContext:
    """Per-request values every service call receives explicitly."""

    request_id: str
    identity: Identity | None = None
    client_ip: str | None = None

    @property
    def log(self):
        return logger.bind(request_id=self.request_id)

    @property
    def actor_id(self) -> str | None:
        return self.identity.user_id if self.identity else None
