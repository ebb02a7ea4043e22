import asyncio

import pytest
from fakeredis import FakeAsyncRedis

from boxoffice.rate_limit import token_bucket
from tests.helpers import signed_webhook

pytestmark = pytest.mark.asyncio


@pytest.fixture
def settings(settings):
    return settings.with_overrides(rate_limit_enabled=True, rate_limit_capacity=3, rate_limit_refill_per_sec=0.001)


async def test_token_bucket_allows_capacity_then_blocks():
    redis = FakeAsyncRedis(decode_responses=True)

    results = [await token_bucket(redis, "10.0.0.1", capacity=2, refill_per_sec=0.001) for _ in range(3)]
    assert results == [True, True, False]

    # buckets are per key
    assert await token_bucket(redis, "10.0.0.2", capacity=2, refill_per_sec=0.001) is True
    assert await redis.ttl("rl:10.0.0.1") > 0
    await redis.aclose()


async def test_concurrent_callers_never_share_a_token():
    redis = FakeAsyncRedis(decode_responses=True)

    results = await asyncio.gather(
        *[token_bucket(redis, "10.0.0.9", capacity=5, refill_per_sec=0.001) for _ in range(8)]
    )

    assert results.count(True) == 5
    assert float(await redis.hget("rl:10.0.0.9", "tokens")) < 1.0
    await redis.aclose()


async def test_requests_over_capacity_are_limited(client):
    statuses = [(await client.get("/events/active")).status_code for _ in range(3)]
    assert statuses == [200, 200, 200]

    r = await client.get("/events/active")
    assert r.status_code == 429
    body = r.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["details"]["retry_after_seconds"] > 0
    assert body["request_id"] == r.headers["X-Request-ID"]


async def test_webhooks_and_health_are_not_limited(client, app):
    for _ in range(5):
        assert (await client.get("/health/live")).status_code == 200

    for i in range(5):
        r = await client.post(
            "/webhooks/payment", **signed_webhook(app, {"transactionId": "txn_1"}, key=f"whk-{i}")
        )
        assert r.status_code == 400
