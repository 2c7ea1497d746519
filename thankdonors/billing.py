"""
Per-mailing usage billing and the monthly usage sweep.

A postcard is billed at most once: the claim is a conditional UPDATE on
`postcards.usage_billed`, and the whole claim (subscription lookup, ledger
deduction, usage charge row) commits or rolls back together. Paid plans
create a processor invoice item after the claim commits; the monthly sweep
later rolls those items into one invoice per subscription.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import bindparam, text

from .balance import maybe_auto_topup
from .errors import ApiError
from .helpers import from_cents, now_ts, to_iso
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model import ledger
from .model.db import BILLABLE_STATUSES, FREE_PLAN_NAME, UsageCharge
from .payments import PaymentGateway

logger = logging.getLogger(__name__)

MSG_ALREADY_BILLED = "Postcard already billed"
MSG_NOT_IN_PRODUCTION = "Postcard not in production status"

PAY_ACCOUNT_BALANCE = "account_balance"
PAY_MONTHLY = "monthly_billing"

# the sweep invoices a subscription once its period ends within this window
PERIOD_END_WINDOW = 24 * 60 * 60


_CLAIM = text("""
    UPDATE postcards
    SET usage_billed = true, updated_at = :now
    WHERE id = :id
      AND usage_billed = false
      AND status IN :statuses
""").bindparams(bindparam("statuses", expanding=True))

_RELEASE = text("""
    UPDATE postcards
    SET usage_billed = false, updated_at = :now
    WHERE id = :id AND stripe_invoice_item_id IS NULL
""")

_ACTIVE_SUBSCRIPTION = text("""
    SELECT s.id, s.stripe_customer_id, s.stripe_subscription_id,
           s.current_period_start, s.current_period_end,
           pl.name AS plan_name, pl.per_mailing_fee
    FROM user_subscriptions s
    JOIN subscription_plans pl ON pl.id = s.plan_id
    WHERE s.profile_id = :p AND s.status = 'active'
""")


def _skip(message: str) -> Dict[str, Any]:
    return {"success": False, "message": message}


async def _load_postcard(db: GatedAsyncSession,
                         postcard_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT p.id, p.status, p.usage_billed,
                       d.profile_id, d.donor_name
                FROM postcards p
                JOIN donations d ON d.id = p.donation_id
                WHERE p.id = :id
            """), {"id": postcard_id})).mappings().first()
    return dict(row) if row else None


async def _release_claim(db: GatedAsyncSession, postcard_id: str) -> None:
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                _RELEASE, {"id": postcard_id, "now": now_ts()}
            )


# ----------------------------
# Usage Billing
# ----------------------------
async def bill_postcard(db: GatedAsyncSession, gateway: PaymentGateway,
                        postcard_id: str) -> Dict[str, Any]:
    pc = await _load_postcard(db, postcard_id)
    if pc is None:
        raise ApiError("Postcard not found")
    if pc["usage_billed"]:
        return _skip(MSG_ALREADY_BILLED)
    if pc["status"] not in BILLABLE_STATUSES:
        return _skip(MSG_NOT_IN_PRODUCTION)

    profile_id = pc["profile_id"]
    now = now_ts()
    won = False
    sub: Dict[str, Any] = {}
    tx: Dict[str, Any] = {}

    async with timeit("db.bill_postcard"):
        async with db.gated():
            async with db.session.begin():
                # the write lock is taken by this statement
                res = await db.session.execute(_CLAIM, {
                    "id": postcard_id, "now": now,
                    "statuses": list(BILLABLE_STATUSES),
                })
                won = res.rowcount == 1
                if won:
                    row = (await db.session.execute(
                        _ACTIVE_SUBSCRIPTION, {"p": profile_id}
                    )).mappings().first()
                    if row is None:
                        raise ApiError("No active subscription found")
                    sub = dict(row)

                if won and sub["plan_name"] == FREE_PLAN_NAME:
                    fee = int(sub["per_mailing_fee"])
                    tx = await ledger.apply_transaction(
                        db.session, profile_id, -fee, ledger.TX_USAGE,
                        f"Postcard mailing charge - ${from_cents(fee):.2f}",
                        postcard_id=postcard_id,
                        require_funds=True,
                    )
                    db.session.add(UsageCharge(
                        id=uuid.uuid4().hex,
                        profile_id=profile_id,
                        postcard_id=postcard_id,
                        amount=fee,
                        plan_type=sub["plan_name"].lower(),
                        billed_at=now,
                        created_at=now,
                    ))

    if not won:
        return _skip(MSG_ALREADY_BILLED)

    fee = int(sub["per_mailing_fee"])

    if sub["plan_name"] == FREE_PLAN_NAME:
        triggered = await maybe_auto_topup(
            db, gateway, profile_id, tx["balance_after"]
        )
        logger.info(
            "Usage deducted from balance for postcard %s: $%.2f. "
            "New balance: $%.2f", postcard_id, from_cents(fee),
            from_cents(tx["balance_after"]),
        )
        return {
            "success": True,
            "amount": from_cents(fee),
            "payment_method": PAY_ACCOUNT_BALANCE,
            "new_balance": from_cents(tx["balance_after"]),
            "auto_topup_triggered": triggered,
        }

    return await _bill_monthly(db, gateway, postcard_id, pc, sub, fee)


async def _bill_monthly(db: GatedAsyncSession, gateway: PaymentGateway,
                        postcard_id: str, pc: Dict[str, Any],
                        sub: Dict[str, Any], fee: int) -> Dict[str, Any]:
    profile_id = pc["profile_id"]
    plan_type = sub["plan_name"].lower()
    cycle_start = sub["current_period_start"]
    cycle_end = sub["current_period_end"]

    try:
        if not sub["stripe_customer_id"]:
            raise ApiError("No Stripe customer found for subscription")
        if sub["stripe_subscription_id"]:
            ps = await gateway.retrieve_subscription(
                sub["stripe_subscription_id"]
            )
            cycle_start = ps.current_period_start
            cycle_end = ps.current_period_end
        item_id = await gateway.create_invoice_item(
            customer=sub["stripe_customer_id"],
            amount=fee,
            description=(
                f"Postcard mailing fee - {pc['donor_name'] or 'Donor'}"
            ),
            metadata={
                "postcardId": postcard_id,
                "planType": plan_type,
                "profileId": profile_id,
            },
            idempotency_key=f"usage-{postcard_id}",
        )
    except Exception:
        logger.warning("Invoice item for postcard %s failed, releasing claim",
                       postcard_id)
        await _release_claim(db, postcard_id)
        raise

    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            db.session.add(UsageCharge(
                id=uuid.uuid4().hex,
                profile_id=profile_id,
                postcard_id=postcard_id,
                amount=fee,
                plan_type=plan_type,
                stripe_invoice_item_id=item_id,
                billing_cycle_start=cycle_start,
                billing_cycle_end=cycle_end,
                billed_at=None,
                created_at=now,
            ))
            await db.session.execute(text("""
                UPDATE postcards
                SET stripe_invoice_item_id = :item, updated_at = :now
                WHERE id = :id
            """), {"item": item_id, "now": now, "id": postcard_id})

    logger.info("Usage charge created for postcard %s: $%.2f (item %s)",
                postcard_id, from_cents(fee), item_id)
    return {
        "success": True,
        "amount": from_cents(fee),
        "payment_method": PAY_MONTHLY,
        "invoiceItemId": item_id,
        "billing_cycle_end": to_iso(cycle_end),
    }


# ----------------------------
# Monthly Usage Reconciler
# ----------------------------
_MARK_BILLED = text("""
    UPDATE usage_charges
    SET billed_at = :now, invoice_id = :invoice
    WHERE id IN :ids AND billed_at IS NULL
""").bindparams(bindparam("ids", expanding=True))


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


async def _paid_subscriptions(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT s.profile_id, s.stripe_customer_id,
                       s.stripe_subscription_id, pl.name AS plan_name
                FROM user_subscriptions s
                JOIN subscription_plans pl ON pl.id = s.plan_id
                WHERE s.status = 'active' AND pl.name <> :free
                ORDER BY s.profile_id
            """), {"free": FREE_PLAN_NAME})).mappings().all()
    return [dict(r) for r in rows]


async def _bill_subscription(db: GatedAsyncSession, gateway: PaymentGateway,
                             sub: Dict[str, Any], now: float) -> bool:
    """
    Invoice one subscription's unbilled usage. Returns True when an invoice
    was created.
    """
    profile_id = sub["profile_id"]
    if not sub["stripe_subscription_id"]:
        raise ApiError("Subscription has no Stripe subscription id")

    ps = await gateway.retrieve_subscription(sub["stripe_subscription_id"])
    start, end = ps.current_period_start, ps.current_period_end
    if start is None or end is None:
        raise ApiError("Stripe subscription has no billing period")

    remaining = end - now
    if remaining > PERIOD_END_WINDOW:
        logger.info("Billing cycle not ready for %s, %d hours remaining",
                    profile_id, round(remaining / 3600))
        return False

    async with db.gated():
        async with db.session.begin():
            charges = (await db.session.execute(text("""
                SELECT id, amount FROM usage_charges
                WHERE profile_id = :p
                  AND plan_type = :plan_type
                  AND billed_at IS NULL
                  AND billing_cycle_start >= :start
                  AND billing_cycle_end <= :end
            """), {
                "p": profile_id, "plan_type": sub["plan_name"].lower(),
                "start": start, "end": end,
            })).mappings().all()

    if not charges:
        logger.info("No unbilled usage charges for %s", profile_id)
        return False

    ids = [c["id"] for c in charges]
    total = sum(int(c["amount"]) for c in charges)

    invoice_id = None
    if total == 0:
        logger.info("Zero usage total for %s, marking %d charges billed",
                    profile_id, len(ids))
    else:
        logger.info("Creating invoice for $%.2f usage charges (%s)",
                    from_cents(total), profile_id)
        invoice_id = await gateway.create_and_finalize_invoice(
            customer=sub["stripe_customer_id"],
            description=(
                f"Monthly usage charges for {_day(start)} - {_day(end)}"
            ),
            metadata={"profileId": profile_id},
            idempotency_key=(
                f"monthly-{sub['stripe_subscription_id']}-{int(end)}"
            ),
        )

    async with db.gated():
        async with db.session.begin():
            await db.session.execute(_MARK_BILLED, {
                "now": now_ts(), "invoice": invoice_id, "ids": ids,
            })

    return invoice_id is not None


async def run_monthly_billing(db: GatedAsyncSession, gateway: PaymentGateway,
                              now: Optional[float] = None) -> Dict[str, Any]:
    now = now_ts() if now is None else now
    subs = await _paid_subscriptions(db)
    logger.info("Processing %d active paid subscriptions", len(subs))

    processed = 0
    errors: List[str] = []
    for sub in subs:
        try:
            if await _bill_subscription(db, gateway, sub, now):
                processed += 1
        except Exception as e:
            logger.error("Error processing subscription for profile %s",
                         sub["profile_id"], exc_info=True)
            errors.append(f"Profile {sub['profile_id']}: {e}")

    result = {
        "success": True,
        "processed": processed,
        "errors": len(errors),
        "errorDetails": errors,
        "message": (
            f"Processed {processed} subscriptions, {len(errors)} errors"
        ),
    }
    logger.info("Monthly billing completed: %s", result["message"])
    return result
