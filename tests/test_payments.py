import pytest
from sqlalchemy import func, select

from boxoffice.errors import TransientStoreFailure
from boxoffice.models import Payment
from tests.helpers import buy, load_ticket, seed_event, signed_webhook, tier_counters

pytestmark = pytest.mark.asyncio


def success_for(ticket_ids, amount, txn="txn_123", **overrides):
    payload = {
        "transactionId": txn,
        "status": "success",
        "ticketIds": ticket_ids,
        "amount": amount,
        "currency": "SZL",
        "paymentMethod": "mobile_money",
        "customer": {"email": "buyer@example.com", "phone": "+26876000000"},
    }
    payload.update(overrides)
    return payload


def payment_count(app) -> int:
    with app.state.session_factory() as db:
        return db.execute(select(func.count()).select_from(Payment)).scalar_one()


async def test_success_confirms_tickets_and_resend_replays(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)
    request = signed_webhook(app, success_for([ticket["id"]], 200), key="whk-1")

    r1 = await client.post("/webhooks/payment", **request)
    assert r1.status_code == 200, r1.text
    ack = r1.json()
    assert ack["acknowledged"] is True
    assert ack["outcome"] == "confirmed"
    assert ack["transactionId"] == "txn_123"
    assert ack["ticketCount"] == 1

    stored = load_ticket(app, ticket["id"])
    assert stored.payment_status == "CONFIRMED"
    assert stored.transaction_id == "txn_123"
    assert stored.payment_method == "mobile_money"
    assert tier_counters(app, event_id)["General"] == (1, 1)

    r2 = await client.post("/webhooks/payment", **request)
    assert r2.status_code == 200
    assert r2.content == r1.content
    assert payment_count(app) == 1
    assert tier_counters(app, event_id)["General"] == (1, 1)


async def test_same_transaction_under_new_key_is_a_duplicate(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)
    await client.post("/webhooks/payment", **signed_webhook(app, success_for([ticket["id"]], 200), key="whk-1"))

    r = await client.post("/webhooks/payment", **signed_webhook(app, success_for([ticket["id"]], 200), key="whk-2"))

    assert r.status_code == 200
    assert r.json()["outcome"] == "rejected"
    assert r.json()["reason_code"] == "DUPLICATE_TRANSACTION"
    assert payment_count(app) == 1
    assert tier_counters(app, event_id)["General"] == (1, 1)


async def test_invalid_signature_changes_nothing(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)

    r = await client.post(
        "/webhooks/payment", **signed_webhook(app, success_for([ticket["id"]], 200), signature="0" * 64)
    )

    assert r.status_code == 401
    assert r.json()["code"] == "INVALID_SIGNATURE"
    assert load_ticket(app, ticket["id"]).payment_status == "PENDING"
    assert payment_count(app) == 0


async def test_gates_reject_missing_key_and_bad_payload(client, app):
    no_key = await client.post("/webhooks/payment", **signed_webhook(app, success_for(["t1"], 200), key=None))
    assert no_key.status_code == 400
    assert no_key.json()["code"] == "MISSING_IDEMPOTENCY_KEY"

    missing = await client.post("/webhooks/payment", **signed_webhook(app, {"transactionId": "txn_1"}))
    assert missing.status_code == 400
    assert missing.json()["code"] == "MISSING_REQUIRED_FIELDS"

    unknown_status = await client.post(
        "/webhooks/payment", **signed_webhook(app, success_for(["t1"], 200, status="pending"))
    )
    assert unknown_status.status_code == 400
    assert unknown_status.json()["code"] == "INVALID_STATUS"


async def test_amount_mismatch_is_acknowledged_and_logged_only(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id, quantity=2)
    ids = [t["id"] for t in ticket["tickets"]]

    r = await client.post("/webhooks/payment", **signed_webhook(app, success_for(ids, 200)))

    assert r.status_code == 200
    assert r.json()["outcome"] == "rejected"
    assert r.json()["reason_code"] == "AMOUNT_MISMATCH"
    assert {load_ticket(app, i).payment_status for i in ids} == {"PENDING"}
    assert payment_count(app) == 0


async def test_unknown_ticket_is_acknowledged_as_rejected(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)

    r = await client.post(
        "/webhooks/payment", **signed_webhook(app, success_for([ticket["id"], "missing-ticket"], 400))
    )
    assert r.json()["reason_code"] == "TICKETS_NOT_FOUND"
    assert load_ticket(app, ticket["id"]).payment_status == "PENDING"


async def test_failed_payment_marks_unconfirmed_tickets(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    body = await buy(client, buyer, event_id, quantity=2)
    paid, unpaid = [t["id"] for t in body["tickets"]]
    await client.post("/webhooks/payment", **signed_webhook(app, success_for([paid], 200), key="whk-ok"))

    r = await client.post(
        "/webhooks/payment",
        **signed_webhook(app, success_for([paid, unpaid], 400, txn="txn_bad", status="failed"), key="whk-fail"),
    )

    assert r.status_code == 200
    assert r.json()["outcome"] == "failed_recorded"
    assert load_ticket(app, paid).payment_status == "CONFIRMED"
    failed = load_ticket(app, unpaid)
    assert failed.payment_status == "FAILED"
    assert failed.transaction_id == "txn_bad"


async def test_success_after_failed_report_is_a_duplicate(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)
    await client.post(
        "/webhooks/payment",
        **signed_webhook(app, success_for([ticket["id"]], 200, txn="txn_a", status="failed"), key="whk-a"),
    )

    r = await client.post(
        "/webhooks/payment", **signed_webhook(app, success_for([ticket["id"]], 200, txn="txn_b"), key="whk-b")
    )
    assert r.status_code == 200
    assert r.json()["outcome"] == "rejected"
    assert r.json()["reason_code"] == "DUPLICATE_TRANSACTION"
    stored = load_ticket(app, ticket["id"])
    assert (stored.payment_status, stored.transaction_id) == ("FAILED", "txn_a")
    assert payment_count(app) == 0
    assert tier_counters(app, event_id)["General"] == (1, 0)


async def test_repeated_ticket_ids_are_rejected(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)

    r = await client.post(
        "/webhooks/payment", **signed_webhook(app, success_for([ticket["id"], ticket["id"]], 200))
    )
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_PAYLOAD"
    assert load_ticket(app, ticket["id"]).payment_status == "PENDING"


async def test_store_failure_is_acknowledged_and_key_released(client, app, organizer, buyer, monkeypatch):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)
    request = signed_webhook(app, success_for([ticket["id"]], 200), key="whk-busy")

    def busy(work, *, label, request_id="-"):
        raise TransientStoreFailure("The store is busy, retry the request")

    monkeypatch.setattr(app.state.coordinator, "run_atomic", busy)
    r1 = await client.post("/webhooks/payment", **request)
    assert r1.status_code == 200
    assert r1.json()["acknowledged"] is True
    assert r1.json()["outcome"] == "error"
    assert r1.json()["reason_code"] == "TRANSIENT_STORE_FAILURE"
    assert load_ticket(app, ticket["id"]).payment_status == "PENDING"

    monkeypatch.undo()
    r2 = await client.post("/webhooks/payment", **request)
    assert r2.json()["outcome"] == "confirmed"
    assert payment_count(app) == 1


async def test_ticket_journey_ends_with_single_settlement(client, app, organizer, buyer, recipient, staff):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 50)])
    ticket = await buy(client, buyer, event_id)
    await client.post(f"/tickets/{ticket['id']}/transfer", json={"email": recipient.email}, headers=buyer.headers)
    token = (await client.get("/tickets/mine", headers=recipient.headers)).json()[0]["scan_token"]
    assert (await client.post("/tickets/validate", json={"scan_token": token}, headers=staff.headers)).status_code == 200

    request = signed_webhook(app, success_for([ticket["id"]], 200), key="txn_123-delivery")
    first = await client.post("/webhooks/payment", **request)
    resend = await client.post("/webhooks/payment", **request)

    assert first.json()["outcome"] == "confirmed"
    assert resend.content == first.content
    stored = load_ticket(app, ticket["id"])
    assert (stored.status, stored.payment_status, stored.transaction_id) == ("USED", "CONFIRMED", "txn_123")
    assert payment_count(app) == 1
    assert tier_counters(app, event_id)["General"] == (1, 1)
