import base64
import hashlib
import hmac
import json
import time

import httpx
import pytest

from thankdonors.authn import basic_credentials, bearer_token
from thankdonors.errors import BadRequest, NotConfigured
from thankdonors.helpers import (
    from_cents, hash_password, new_salt, parse_ts, to_cents,
    verify_password,
)
from thankdonors.hookdeck import Hookdeck, RoutingServiceError, parse_source
from thankdonors.infra import timings
from thankdonors.payments import StripeGateway, subscription_period

API = "https://hookdeck.test/v1"


def test_money_conversions():
    assert to_cents("25.00") == 2500
    assert to_cents(1.99) == 199
    assert to_cents("0.005") == 1
    assert from_cents(4801) == 48.01


def test_parse_ts():
    assert parse_ts("1970-01-01T00:01:00Z") == 60.0
    assert parse_ts("1970-01-01T00:01:00") == 60.0
    assert parse_ts(None) is None
    with pytest.raises(ValueError):
        parse_ts("yesterday")


def test_password_hashing():
    salt = new_salt()
    assert salt.startswith("$2")
    hashed = hash_password("s3cret", salt)
    assert hashed != "s3cret"
    assert hashed.startswith(salt)
    assert verify_password("s3cret", hashed)
    assert not verify_password("s3cret ", hashed)
    # a fresh salt per call when none is given
    assert hash_password("s3cret") != hash_password("s3cret")


def test_password_hashing_rejects_non_bcrypt_hash():
    assert not verify_password("s3cret", "not-a-bcrypt-hash")


def test_long_passwords_use_first_72_bytes():
    hashed = hash_password("x" * 72 + "tail")
    assert verify_password("x" * 72, hashed)


def test_authorization_headers():
    raw = base64.b64encode(b"me@x.test:pa:ss").decode()
    assert basic_credentials(f"Basic {raw}") == ("me@x.test", "pa:ss")
    assert basic_credentials("Basic !!!") is None
    assert basic_credentials(f"Bearer {raw}") is None
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token(None) is None


def test_subscription_period_from_items():
    assert subscription_period({"current_period_start": 1,
                                "current_period_end": 2}) == (1.0, 2.0)
    assert subscription_period({"items": {"data": [{
        "current_period_start": 3, "current_period_end": 4,
    }]}}) == (3.0, 4.0)
    assert subscription_period({}) == (None, None)


def _signed(payload: bytes, secret: str) -> str:
    ts = int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload,
                   hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def test_stripe_webhook_signature():
    gateway = StripeGateway("sk_test", "whsec_test")
    payload = json.dumps({
        "id": "evt_1", "object": "event", "type": "invoice.payment_failed",
        "data": {"object": {"id": "in_1", "subscription": "sub_1"}},
    }).encode()

    event = gateway.verify_webhook(payload, _signed(payload, "whsec_test"))
    assert event["type"] == "invoice.payment_failed"
    assert event["object"]["subscription"] == "sub_1"

    with pytest.raises(BadRequest):
        gateway.verify_webhook(payload, _signed(payload, "whsec_other"))
    with pytest.raises(BadRequest):
        gateway.verify_webhook(payload, None)
    with pytest.raises(NotConfigured):
        StripeGateway("sk_test", None).verify_webhook(payload, "t=1,v1=x")


def _hookdeck(handler, api_key="hk_key", destination="des_1"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return http, Hookdeck(http, api_key, destination, API)


async def test_hookdeck_connection_flow():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path,
                     json.loads(request.content or b"null")))
        assert request.headers["authorization"] == "Bearer hk_key"
        if request.method == "POST":
            return httpx.Response(200, json={"sources": [
                {"id": "src_1", "url": "https://hkdk.events/src_1"}]})
        if request.method == "DELETE":
            return httpx.Response(404)
        return httpx.Response(200, json={})

    http, hookdeck = _hookdeck(handler)
    async with http:
        source = await hookdeck.create_connection("user-1")
        await hookdeck.set_basic_auth(source.id, "me@x.test", "pw")
        deleted = await hookdeck.delete_source(source.id)

    assert source.id == "src_1"
    assert deleted is False
    assert seen[0][1] == "/v1/connections"
    assert seen[0][2]["source"] == {"name": "user-1", "type": "WEBHOOK"}
    assert seen[0][2]["destination_id"] == "des_1"
    assert seen[1][1] == "/v1/sources/src_1"
    assert seen[1][2]["config"]["auth_type"] == "BASIC_AUTH"
    assert seen[1][2]["config"]["auth"] == {"username": "me@x.test",
                                            "password": "pw"}


async def test_hookdeck_errors():
    http, hookdeck = _hookdeck(lambda r: httpx.Response(422, text="bad"))
    async with http:
        with pytest.raises(RoutingServiceError) as exc:
            await hookdeck.create_connection("user-1")
    assert exc.value.status_code == 502
    assert exc.value.details == {"statusCode": 422}

    http, hookdeck = _hookdeck(lambda r: httpx.Response(200, json={}))
    async with http:
        with pytest.raises(RoutingServiceError) as exc:
            await hookdeck.create_connection("user-1")
    assert exc.value.error == "Failed to create webhook Source in Hookdeck"

    http, hookdeck = _hookdeck(lambda r: httpx.Response(200), api_key=None)
    async with http:
        with pytest.raises(NotConfigured):
            await hookdeck.create_connection("user-1")


def test_parse_source_shapes():
    assert parse_source({"source": {"id": "a", "url": "u"}}).id == "a"
    assert parse_source({"sources": []}) is None
    assert parse_source(None) is None


async def test_call_timings_aggregate():
    timings.reset()
    for _ in range(3):
        async with timings.timeit("stripe.invoice_item"):
            pass

    [rec] = timings.aggregates()
    assert rec["kind"] == "stripe.invoice_item"
    assert rec["n"] == 3
    timings.reset()
    assert timings.aggregates() == []
