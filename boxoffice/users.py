import uuid

from sqlalchemy import select

from .auth import Capability, require_capability
from .context import RequestContext
from .errors import AuthenticationFailure, AuthorizationFailure, Conflict, NotFound, ValidationFailure
from .models import Role, User
from .payloads import user_payload
from .unit_of_work import TransactionCoordinator, UnitOfWork


class UserService:
    def __init__(self, coordinator: TransactionCoordinator) -> None:
        self.coordinator = coordinator

    def register(self, ctx: RequestContext, email: str, name: str | None = None) -> dict:
        email = email.strip().lower()

        def work(uow: UnitOfWork) -> dict:
            db = uow.session
            if db.execute(select(User.id).where(User.email == email)).first() is not None:
                raise Conflict("Email already registered", code="EMAIL_TAKEN", details={"email": email})
            user = User(id=f"usr_{uuid.uuid4().hex[:12]}", email=email, name=name, role=Role.ATTENDEE.value)
            db.add(user)
            db.flush()
            return user_payload(user)

        body = self.coordinator.run_atomic(work, label="users.register", request_id=ctx.request_id)
        ctx.log.info("Registered user {}", body["id"])
        return body

    def me(self, ctx: RequestContext) -> dict:
        if ctx.identity is None:
            raise AuthenticationFailure("No authentication token", code="NO_TOKEN")
        with self.coordinator.session_factory() as db:
            user = db.get(User, ctx.identity.user_id)
            if user is None:
                raise AuthenticationFailure("User not found", code="USER_NOT_FOUND")
            return user_payload(user)

    def set_role(self, ctx: RequestContext, user_id: str, role: str) -> dict:
        require_capability(ctx.identity, Capability.MANAGE_USERS, "Super admin privileges required")
        if role not in {r.value for r in Role}:
            raise ValidationFailure("Unknown role", code="INVALID_ROLE", details={"role": role})
        if role == Role.SUPER_ADMIN.value:
            raise AuthorizationFailure("Cannot promote to super_admin via the API", code="FORBIDDEN_PROMOTION")
        if user_id == ctx.actor_id:
            raise ValidationFailure("Cannot change your own role", code="SELF_ROLE_CHANGE")

        def work(uow: UnitOfWork) -> dict:
            user = uow.session.get(User, user_id)
            if user is None:
                raise NotFound("User not found", code="USER_NOT_FOUND", details={"user_id": user_id})
            user.role = role
            uow.session.flush()
            return user_payload(user)

        body = self.coordinator.run_atomic(work, label="users.set-role", request_id=ctx.request_id)
        ctx.log.warning("Role of user {} set to {} by {}", user_id, role, ctx.actor_id)
        return body
