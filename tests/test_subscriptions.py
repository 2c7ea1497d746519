import json

from thankdonors import billing
from thankdonors.checkout import FREE_PLAN_ID, PRO_PLAN_ID
from thankdonors.helpers import now_ts
from thankdonors.payments import ProcessorSubscription

HOOK = "/functions/handle-stripe-webhook"
DAY = 24 * 60 * 60


def event(kind, obj):
    return json.dumps({"id": "evt_1", "type": kind,
                       "data": {"object": obj}}).encode()


async def post_event(client, kind, obj, signature="t=1,v1=valid"):
    return await client.post(HOOK, content=event(kind, obj),
                             headers={"stripe-signature": signature})


async def test_bad_signature_changes_nothing(client, seed, fetch):
    pid = await seed.profile()
    await seed.subscription(pid, PRO_PLAN_ID, subscription_id="sub_1")

    resp = await post_event(client, "customer.subscription.deleted",
                            {"id": "sub_1"}, signature="t=1,v1=forged")

    assert resp.status_code == 400
    assert resp.json()["error"] == "Webhook signature verification failed"
    rows = await fetch("SELECT status FROM user_subscriptions")
    assert rows[0]["status"] == "active"


async def test_deleted_only_cancels(client, seed, fetch):
    pid = await seed.profile()
    await seed.subscription(pid, PRO_PLAN_ID, customer="cus_9",
                            subscription_id="sub_1", period=(1.0, 2.0))
    before = (await fetch("SELECT * FROM user_subscriptions"))[0]

    resp = await post_event(client, "customer.subscription.deleted",
                            {"id": "sub_1"})

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    after = (await fetch("SELECT * FROM user_subscriptions"))[0]
    assert after["status"] == "canceled"
    assert {**before, "status": "canceled"} == after


async def test_invoice_events_move_status(client, seed, fetch):
    pid = await seed.profile()
    await seed.subscription(pid, PRO_PLAN_ID, subscription_id="sub_1")

    await post_event(client, "invoice.payment_failed",
                     {"id": "in_1", "subscription": "sub_1"})
    assert (await fetch("SELECT status FROM user_subscriptions"))[0][
        "status"] == "past_due"

    # newer payloads nest the subscription under `parent`
    await post_event(client, "invoice.payment_succeeded", {
        "id": "in_2",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    })
    assert (await fetch("SELECT status FROM user_subscriptions"))[0][
        "status"] == "active"


async def test_checkout_completed_stores_subscription(client, gateway,
                                                      fetch):
    gateway.subscriptions["sub_new"] = ProcessorSubscription(
        id="sub_new", customer="cus_new", status="trialing",
        current_period_start=1000.0, current_period_end=1000.0 + 30 * DAY,
        trial_end=1000.0 + 7 * DAY,
        metadata={"userId": "user-9", "planId": str(PRO_PLAN_ID)},
    )

    resp = await post_event(client, "checkout.session.completed", {
        "id": "cs_1", "mode": "subscription", "subscription": "sub_new",
        "metadata": {},
    })

    assert resp.status_code == 200
    row = (await fetch("SELECT * FROM user_subscriptions"))[0]
    assert row["profile_id"] == "user-9"
    assert row["plan_id"] == PRO_PLAN_ID
    assert row["status"] == "trialing"
    assert row["stripe_customer_id"] == "cus_new"
    assert row["trial_used"]
    assert row["current_period_end"] == 1000.0 + 30 * DAY


async def test_upsert_keeps_one_row_per_profile(client, seed, gateway,
                                                fetch):
    pid = await seed.profile()
    await seed.subscription(pid, FREE_PLAN_ID)
    gateway.subscriptions["sub_up"] = ProcessorSubscription(
        id="sub_up", customer="cus_1", status="active",
        current_period_start=1.0, current_period_end=2.0,
        metadata={"userId": pid, "planId": str(PRO_PLAN_ID)},
    )

    await post_event(client, "checkout.session.completed", {
        "id": "cs_2", "mode": "subscription", "subscription": "sub_up",
    })

    rows = await fetch("SELECT plan_id, stripe_subscription_id "
                       "FROM user_subscriptions WHERE profile_id=:p", p=pid)
    assert rows == [{"plan_id": PRO_PLAN_ID,
                     "stripe_subscription_id": "sub_up"}]


async def test_subscription_updated_refreshes_period(client, seed, fetch):
    pid = await seed.profile()
    await seed.subscription(pid, PRO_PLAN_ID, subscription_id="sub_1",
                            status="trialing")

    resp = await post_event(client, "customer.subscription.updated", {
        "id": "sub_1", "status": "active",
        "metadata": {"userId": pid},
        "items": {"data": [{"current_period_start": 5000,
                            "current_period_end": 5000 + 30 * DAY}]},
    })

    assert resp.status_code == 200
    row = (await fetch("SELECT * FROM user_subscriptions"))[0]
    assert row["status"] == "active"
    assert row["current_period_start"] == 5000
    assert row["current_period_end"] == 5000 + 30 * DAY


async def test_updated_near_period_end_bills_once(client, db, seed, gateway,
                                                 fetch):
    end = float(int(now_ts()) + 3600)
    start = end - 30 * DAY
    pid = await seed.profile()
    await seed.subscription(pid, PRO_PLAN_ID, customer="cus_pro",
                            subscription_id="sub_pro", period=(start, end))
    gateway.subscriptions["sub_pro"] = ProcessorSubscription(
        id="sub_pro", customer="cus_pro", status="active",
        current_period_start=start, current_period_end=end,
    )
    for _ in range(2):
        pc = await seed.postcard(pid, status="processing")
        await billing.bill_postcard(db, gateway, pc)

    resp = await post_event(client, "customer.subscription.updated", {
        "id": "sub_pro", "status": "active",
        "metadata": {"userId": pid},
        "current_period_start": start, "current_period_end": end,
    })
    assert resp.status_code == 200
    assert gateway.invoice_calls == [f"monthly-sub_pro-{int(end)}"]

    # the scheduled sweep finds nothing left to invoice
    out = await billing.run_monthly_billing(db, gateway)

    assert out["processed"] == 0
    assert out["errors"] == 0
    assert len(gateway.invoice_calls) == 1
    assert len(gateway.invoices) == 1
    invoice = next(iter(gateway.invoices.values()))
    charges = await fetch("SELECT billed_at, invoice_id FROM usage_charges")
    assert len(charges) == 2
    assert all(c["billed_at"] is not None for c in charges)
    assert all(c["invoice_id"] == invoice["id"] for c in charges)


async def test_unknown_event_acknowledged(client):
    resp = await post_event(client, "customer.created", {"id": "cus_1"})
    assert resp.status_code == 200
    assert resp.json() == {"received": True}
