from dataclasses import replace

from fastapi import Header, Request
from fastapi.responses import Response

from .auth import authenticate
from .context import RequestContext
from .idempotency import Outcome


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def request_context(request: Request) -> RequestContext:
    return request.state.ctx


def authenticated_context(
    request: Request, authorization: str | None = Header(default=None)
) -> RequestContext:
    state = request.app.state
    identity = authenticate(state.session_factory, _bearer(authorization), state.settings.auth_token_secret)
    ctx = replace(request.state.ctx, identity=identity)
    request.state.ctx = ctx
    return ctx


def optional_context(request: Request, authorization: str | None = Header(default=None)) -> RequestContext:
    if not authorization:
        return request.state.ctx
    return authenticated_context(request, authorization)


def outcome_response(outcome: Outcome, idempotency_key: str) -> Response:
    # stored bodies are replayed as-is
    return Response(
        content=outcome.body,
        status_code=outcome.status_code,
        media_type="application/json",
        headers={"Idempotency-Key": idempotency_key},
    )
