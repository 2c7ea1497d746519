from thankdonors import provisioning
from thankdonors.checkout import FREE_PLAN_ID
from thankdonors.model import ledger


async def test_profile_created_on_first_read(client, user_headers):
    resp = await client.get("/api/profile", headers=user_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "user-1"
    assert body["email"] == "treasurer@committee.test"
    assert body["country"] == "US"
    assert body["email_notifications"] is True


async def test_profile_patch(client, user_headers):
    resp = await client.patch("/api/profile", json={
        "committee_name": "Friends of Pat", "onboarding_step": 2,
        "marketing_emails": False,
    }, headers=user_headers)

    assert resp.status_code == 200
    body = resp.json()
    assert body["committee_name"] == "Friends of Pat"
    assert body["onboarding_step"] == 2
    assert body["marketing_emails"] is False

    unknown = await client.patch("/api/profile", json={"webhook_url": "x"},
                                 headers=user_headers)
    assert unknown.status_code == 400


async def test_tracking_events_show_in_donations(client, seed, user_headers,
                                                 service_headers):
    await seed.profile("user-1")
    pc = await seed.postcard("user-1")

    resp = await client.post(f"/api/postcards/{pc}/tracking-events", json={
        "status": "mailed", "tracking_number": "9400 1000",
        "carrier": "USPS", "location": "Springfield, IL",
        "event_time": "2024-05-03T10:00:00Z",
    }, headers=service_headers)
    assert resp.status_code == 200

    donations = (await client.get("/api/donations",
                                  headers=user_headers)).json()["donations"]
    assert len(donations) == 1
    assert donations[0]["amount"] == 25.0
    postcard = donations[0]["postcard"]
    assert postcard["id"] == pc
    assert postcard["status"] == "mailed"
    assert postcard["tracking_number"] == "9400 1000"
    assert [e["status"] for e in postcard["tracking_events"]] == ["mailed"]


async def test_tracking_event_for_unknown_postcard(client, service_headers):
    resp = await client.post("/api/postcards/nope/tracking-events",
                             json={"status": "mailed"},
                             headers=service_headers)
    assert resp.status_code == 404

    invalid = await client.post("/api/postcards/nope/tracking-events",
                                json={}, headers=service_headers)
    assert invalid.status_code == 400


async def test_delete_account_cascades(client, seed, db, routing, auth,
                                       user_headers, fetch, queue):
    await seed.profile("user-1")
    await seed.subscription("user-1", FREE_PLAN_ID)
    await ledger.credit(db, "user-1", 5000)
    await provisioning.provision_webhook(db, routing, "user-1",
                                         "treasurer@committee.test")
    pc = await seed.postcard("user-1", status="processing")
    await queue.enqueue(pc)
    other = await seed.profile("user-2", email="other@committee.test")
    kept = await seed.postcard(other)

    resp = await client.post("/functions/delete-account",
                             headers=user_headers)

    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert routing.deleted == ["src_1"]
    assert auth.deleted == ["user-1"]
    for table in ("profiles", "donations", "account_balances",
                  "balance_transactions", "user_subscriptions",
                  "webhook_credentials"):
        rows = await fetch(f"SELECT * FROM {table} WHERE "
                           f"{'id' if table == 'profiles' else 'profile_id'}"
                           f" = :p", p="user-1")
        assert rows == [], table
    assert await queue.get(pc) is None
    assert [r["id"] for r in await fetch("SELECT id FROM postcards")] == [
        kept]


async def test_delete_account_survives_routing_failure(client, seed, db,
                                                       routing, auth,
                                                       user_headers):
    await seed.profile("user-1")
    await provisioning.provision_webhook(db, routing, "user-1",
                                         "treasurer@committee.test")
    routing.fail_delete = True

    resp = await client.post("/functions/delete-account",
                             headers=user_headers)

    assert resp.status_code == 200
    assert auth.deleted == ["user-1"]
