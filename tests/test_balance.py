from thankdonors.model import ledger

ENDPOINT = "/functions/manage-account-balance"


async def test_check_balance(client, seed, service_headers):
    pid = await seed.profile()
    await seed.balance(pid, 4250, auto_topup=False)

    resp = await client.post(ENDPOINT, json={
        "action": "check_balance", "userId": pid,
    }, headers=service_headers)

    assert resp.json() == {"balance": 42.5, "auto_topup_enabled": False}


async def test_deduct_usage_in_dollars(client, seed, db, service_headers):
    pid = await seed.profile()
    await seed.balance(pid, 5000)

    resp = await client.post(ENDPOINT, json={
        "action": "deduct_usage", "userId": pid, "amount": 1.99,
    }, headers=service_headers)

    assert resp.json() == {"success": True, "new_balance": 48.01,
                           "auto_topup_triggered": False}
    txs = await ledger.list_transactions(db, pid)
    assert txs[0]["amount"] == -199


async def test_auto_topup_needs_payment_method(client, seed, gateway,
                                               service_headers):
    pid = await seed.profile()
    await seed.subscription(pid, 1, customer="cus_1")

    resp = await client.post(ENDPOINT, json={
        "action": "auto_topup", "userId": pid,
    }, headers=service_headers)
    assert resp.json() == {"success": True, "topped_up": False}

    gateway.payment_methods["cus_1"] = "pm_1"
    resp = await client.post(ENDPOINT, json={
        "action": "auto_topup", "userId": pid,
    }, headers=service_headers)
    assert resp.json() == {"success": True, "topped_up": True}


async def test_declined_topup_credits_nothing(client, seed, gateway, db,
                                              service_headers):
    pid = await seed.profile()
    await seed.subscription(pid, 1, customer="cus_1")
    await seed.balance(pid, 500)
    gateway.payment_methods["cus_1"] = "pm_1"
    gateway.charge_status = "requires_action"

    resp = await client.post(ENDPOINT, json={
        "action": "auto_topup", "userId": pid,
    }, headers=service_headers)

    assert resp.json()["topped_up"] is False
    assert (await ledger.get_balance(db, pid))["current_balance"] == 500


async def test_invalid_action_and_auth(client, service_headers):
    bad = await client.post(ENDPOINT, json={
        "action": "refund", "userId": "u",
    }, headers=service_headers)
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid action"}

    denied = await client.post(ENDPOINT, json={
        "action": "check_balance", "userId": "u",
    }, headers={"Authorization": "Bearer wrong"})
    assert denied.status_code == 401
