import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from .errors import AuthenticationFailure, ValidationFailure

ALGORITHM = "HS256"
SCAN_TOKEN_TYPE = "scan"


@dataclass(frozen=True)
class ScanToken:
    event_id: str
    owner_id: str
    issued_at_ns: int


def mint_scan_token(token: ScanToken, secret: str) -> str:
    payload = {
        "typ": SCAN_TOKEN_TYPE,
        "evt": token.event_id,
        "own": token.owner_id,
        "iat_ns": token.issued_at_ns,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def parse_scan_token(raw: str, secret: str) -> ScanToken:
    """Decode and verify a scan token; anything malformed or tampered is rejected."""
    try:
        payload = jwt.decode(raw, secret, algorithms=[ALGORITHM])
    except JWTError:
        raise ValidationFailure("Invalid scan token", code="INVALID_SCAN_TOKEN")

    if payload.get("typ") != SCAN_TOKEN_TYPE:
        raise ValidationFailure("Invalid scan token", code="INVALID_SCAN_TOKEN")

    event_id, owner_id, issued_at_ns = payload.get("evt"), payload.get("own"), payload.get("iat_ns")
    if not isinstance(event_id, str) or not isinstance(owner_id, str) or not isinstance(issued_at_ns, int):
        raise ValidationFailure("Invalid scan token", code="INVALID_SCAN_TOKEN")

    return ScanToken(event_id=event_id, owner_id=owner_id, issued_at_ns=issued_at_ns)


def mint_identity_token(user_id: str, secret: str, ttl_minutes: int = 60) -> str:
    exp = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).timestamp())
    return jwt.encode({"sub": user_id, "exp": exp}, secret, algorithm=ALGORITHM)


def decode_identity_token(token: str, secret: str) -> str:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthenticationFailure("Your session has expired", code="TOKEN_EXPIRED")
    except JWTError:
        raise AuthenticationFailure("Invalid authentication token", code="INVALID_TOKEN")

    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationFailure("Invalid authentication token", code="INVALID_TOKEN")
    return user_id


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(raw_body, secret), signature.strip().lower())
