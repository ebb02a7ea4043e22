from dataclasses import dataclass
from enum import Enum

from sqlalchemy.orm import sessionmaker

from .errors import AuthenticationFailure, AuthorizationFailure
from .models import Role, User
from .security import decode_identity_token


class Capability(str, Enum):
    VALIDATE = "validate"
    CREATE_EVENT = "create-event"
    REFUND_OVERRIDE = "refund-override"
    MANAGE_USERS = "manage-users"


ROLE_CAPABILITIES: dict[str, frozenset[Capability]] = {
    Role.ATTENDEE.value: frozenset(),
    Role.STAFF.value: frozenset({Capability.VALIDATE}),
    Role.ORGANIZER.value: frozenset({Capability.CREATE_EVENT}),
    Role.SUPER_ADMIN.value: frozenset(Capability),
}


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str
    email: str

    @property
    def capabilities(self) -> frozenset[Capability]:
        return ROLE_CAPABILITIES.get(self.role, frozenset())


def has_capability(identity: Identity | None, capability: Capability) -> bool:
    return identity is not None and capability in identity.capabilities


def require_capability(identity: Identity | None, capability: Capability, message: str) -> None:
    if not has_capability(identity, capability):
        raise AuthorizationFailure(message, details={"required_capability": capability.value})


def authenticate(session_factory: sessionmaker, bearer: str | None, secret: str) -> Identity:
    """Resolve a bearer credential to the user's current identity and role."""
    if not bearer:
        raise AuthenticationFailure("No authentication token", code="NO_TOKEN")

    user_id = decode_identity_token(bearer, secret)
    with session_factory() as db:
        user = db.get(User, user_id)
        if user is None:
            raise AuthenticationFailure("User not found", code="USER_NOT_FOUND")
        return Identity(user_id=user.id, role=user.role, email=user.email)
