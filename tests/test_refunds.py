import asyncio

import pytest

from tests.helpers import buy, load_ticket, seed_event, signed_webhook, tier_counters

pytestmark = pytest.mark.asyncio


async def refund(client, user, ticket_id, key="refund-1", reason="Cannot attend"):
    headers = dict(user.headers)
    if key is not None:
        headers["Idempotency-Key"] = key
    return await client.post(f"/tickets/{ticket_id}/refund", json={"reason": reason}, headers=headers)


async def force_refund(client, user, ticket_id, key="force-1", amount=None):
    payload = {"ticket_id": ticket_id, "reason": "Show cancelled"}
    if amount is not None:
        payload["refund_amount"] = amount
    return await client.post(
        "/admin/force-refund", json=payload, headers={**user.headers, "Idempotency-Key": key}
    )


async def test_repeated_refund_is_byte_identical(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)

    r1 = await refund(client, buyer, ticket["id"])
    r2 = await refund(client, buyer, ticket["id"])

    assert r1.status_code == r2.status_code == 200
    assert r1.content == r2.content
    body = r1.json()
    assert body["status"] == "completed"
    assert body["amount"] == 200
    assert body["currency"] == "SZL"
    assert body["override"] is False

    stored = load_ticket(app, ticket["id"])
    assert stored.status == "REFUNDED"
    assert len(stored.refunds) == 1


async def test_refund_with_new_key_after_refund_conflicts(client, app, organizer, buyer):
    event_id = seed_event(app, organizer)
    ticket = await buy(client, buyer, event_id)
    await refund(client, buyer, ticket["id"], key="first")

    r = await refund(client, buyer, ticket["id"], key="second")
    assert r.status_code == 409
    assert r.json()["code"] == "TICKET_REFUNDED"
    assert len(load_ticket(app, ticket["id"]).refunds) == 1


async def test_refund_requires_key_and_reason(client, app, organizer, buyer):
    event_id = seed_event(app, organizer)
    ticket = await buy(client, buyer, event_id)

    no_key = await refund(client, buyer, ticket["id"], key=None)
    assert no_key.status_code == 400
    assert no_key.json()["code"] == "MISSING_IDEMPOTENCY_KEY"

    long_reason = await refund(client, buyer, ticket["id"], reason="x" * 501)
    assert long_reason.status_code == 400
    assert load_ticket(app, ticket["id"]).status == "ACTIVE"


async def test_refund_by_stranger_is_forbidden(client, app, organizer, buyer, recipient):
    event_id = seed_event(app, organizer)
    ticket = await buy(client, buyer, event_id)

    r = await refund(client, recipient, ticket["id"])
    assert r.status_code == 403
    assert load_ticket(app, ticket["id"]).status == "ACTIVE"


async def test_refund_releases_seat(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("VIP", 500, 1)])
    ticket = await buy(client, buyer, event_id, tier="VIP")
    assert tier_counters(app, event_id)["VIP"] == (1, 0)

    await client.post("/webhooks/payment", **signed_webhook(app, {
        "transactionId": "txn_vip",
        "status": "success",
        "ticketIds": [ticket["id"]],
        "amount": 500,
        "currency": "SZL",
        "paymentMethod": "card",
    }))
    assert tier_counters(app, event_id)["VIP"] == (1, 1)

    assert (await refund(client, buyer, ticket["id"])).status_code == 200
    assert tier_counters(app, event_id)["VIP"] == (0, 0)
    await buy(client, buyer, event_id, tier="VIP")


async def test_used_ticket_refund_needs_override(client, app, organizer, buyer, staff, admin):
    event_id = seed_event(app, organizer, tiers=[("General", 200, 10)])
    ticket = await buy(client, buyer, event_id)
    await client.post("/tickets/validate", json={"scan_token": ticket["scan_token"]}, headers=staff.headers)

    owner_attempt = await refund(client, buyer, ticket["id"])
    assert owner_attempt.status_code == 409
    assert owner_attempt.json()["code"] == "TICKET_ALREADY_USED"

    not_admin = await force_refund(client, staff, ticket["id"])
    assert not_admin.status_code == 403

    too_much = await force_refund(client, admin, ticket["id"], key="force-big", amount=250)
    assert too_much.status_code == 400
    assert too_much.json()["code"] == "INVALID_REFUND_AMOUNT"

    r1 = await force_refund(client, admin, ticket["id"], amount=120)
    r2 = await force_refund(client, admin, ticket["id"], amount=120)
    assert r1.status_code == 200, r1.text
    assert r1.content == r2.content
    assert r1.json()["override"] is True
    assert r1.json()["amount"] == 120

    stored = load_ticket(app, ticket["id"])
    assert stored.status == "REFUNDED"
    assert len(stored.refunds) == 1
    assert stored.refunds[0].override is True
    assert stored.refunds[0].processed_by == admin.id


async def test_concurrent_refunds_complete_once(client, app, organizer, buyer):
    event_id = seed_event(app, organizer, tiers=[("VIP", 500, 1)])
    ticket = await buy(client, buyer, event_id, tier="VIP")

    results = await asyncio.gather(*[refund(client, buyer, ticket["id"], key=f"refund-{i}") for i in range(8)])

    completed = [r for r in results if r.status_code == 200]
    rejected = [r for r in results if r.status_code == 409]
    assert len(completed) == 1, [r.text for r in results]
    assert len(rejected) == 7
    assert {r.json()["code"] for r in rejected} == {"TICKET_REFUNDED"}
    assert len(load_ticket(app, ticket["id"]).refunds) == 1
    assert tier_counters(app, event_id)["VIP"] == (0, 0)


async def test_refund_keys_are_private_to_the_requester(client, app, organizer, buyer, admin):
    event_id = seed_event(app, organizer)
    ticket = await buy(client, buyer, event_id)
    owner = await refund(client, buyer, ticket["id"], key="shared")

    r = await force_refund(client, admin, ticket["id"], key="shared")
    assert r.status_code == 409
    assert r.json()["code"] == "TICKET_REFUNDED"
    assert owner.json()["override"] is False
