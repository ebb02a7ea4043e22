import pytest

from boxoffice.errors import AuthenticationFailure, ValidationFailure
from boxoffice.security import (
    ScanToken,
    decode_identity_token,
    mint_identity_token,
    mint_scan_token,
    parse_scan_token,
    sign_payload,
    verify_signature,
)
from boxoffice.tickets import scan_tokens

SECRET = "test-secret"


def test_scan_token_carries_event_owner_and_issue_time():
    raw = mint_scan_token(ScanToken(event_id="evt_1", owner_id="usr_1", issued_at_ns=123), SECRET)
    assert parse_scan_token(raw, SECRET) == ScanToken(event_id="evt_1", owner_id="usr_1", issued_at_ns=123)


@pytest.mark.parametrize("raw", ["", "definitely-not-a-jwt", "a.b.c"])
def test_malformed_scan_token_fails_closed(raw):
    with pytest.raises(ValidationFailure) as exc:
        parse_scan_token(raw, SECRET)
    assert exc.value.code == "INVALID_SCAN_TOKEN"


def test_scan_token_signed_with_other_secret_is_rejected():
    raw = mint_scan_token(ScanToken(event_id="evt_1", owner_id="usr_1", issued_at_ns=1), "other-secret")
    with pytest.raises(ValidationFailure):
        parse_scan_token(raw, SECRET)


def test_identity_token_is_not_a_scan_token():
    with pytest.raises(ValidationFailure):
        parse_scan_token(mint_identity_token("usr_1", SECRET), SECRET)


def test_batch_tokens_are_distinct():
    tokens = scan_tokens(SECRET, "evt_1", "usr_1")
    batch = [next(tokens) for _ in range(20)]
    assert len(set(batch)) == 20
    issued = [parse_scan_token(t, SECRET).issued_at_ns for t in batch]
    assert issued == sorted(issued)


def test_identity_token_round_trip_and_expiry():
    assert decode_identity_token(mint_identity_token("usr_1", SECRET), SECRET) == "usr_1"

    with pytest.raises(AuthenticationFailure) as exc:
        decode_identity_token(mint_identity_token("usr_1", SECRET, ttl_minutes=-1), SECRET)
    assert exc.value.code == "TOKEN_EXPIRED"

    with pytest.raises(AuthenticationFailure) as exc:
        decode_identity_token("garbage", SECRET)
    assert exc.value.code == "INVALID_TOKEN"


def test_webhook_signature_covers_exact_bytes():
    body = b'{"transactionId":"txn_1","amount":200}'
    signature = sign_payload(body, SECRET)

    assert verify_signature(body, signature, SECRET)
    assert verify_signature(body, signature.upper(), SECRET)
    assert not verify_signature(body + b" ", signature, SECRET)
    assert not verify_signature(body, None, SECRET)
    assert not verify_signature(body, sign_payload(body, "other"), SECRET)
