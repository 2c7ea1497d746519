"""
Mirror of processor subscription state, driven by signed webhook events.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .billing import PERIOD_END_WINDOW, run_monthly_billing
from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .model.profiles import ensure_profile
from .payments import (
    PaymentGateway, field_of, invoice_subscription_id, subscription_period,
)

logger = logging.getLogger(__name__)

EV_CHECKOUT_COMPLETED = "checkout.session.completed"
EV_SUB_UPDATED = "customer.subscription.updated"
EV_SUB_DELETED = "customer.subscription.deleted"
EV_INVOICE_SUCCEEDED = "invoice.payment_succeeded"
EV_INVOICE_FAILED = "invoice.payment_failed"


# caller owns the transaction
async def upsert_subscription(
    session: AsyncSession,
    profile_id: str,
    plan_id: int,
    status: str,
    *,
    customer_id: Optional[str],
    subscription_id: Optional[str] = None,
    period_start: Optional[float] = None,
    period_end: Optional[float] = None,
    trial_end: Optional[float] = None,
) -> None:
    """
    One subscription row per profile: insert or overwrite it.
    """
    await ensure_profile(session, profile_id)
    await session.execute(text("""
        INSERT INTO user_subscriptions(
            id, profile_id, plan_id, status,
            stripe_customer_id, stripe_subscription_id,
            current_period_start, current_period_end, trial_end, trial_used,
            created_at
        ) VALUES (
            :id, :p, :plan, :status, :cust, :sub,
            :start, :end, :trial_end, :trial_used, :now
        )
        ON CONFLICT (profile_id) DO UPDATE
        SET plan_id = excluded.plan_id,
            status = excluded.status,
            stripe_customer_id = excluded.stripe_customer_id,
            stripe_subscription_id = excluded.stripe_subscription_id,
            current_period_start = excluded.current_period_start,
            current_period_end = excluded.current_period_end,
            trial_end = excluded.trial_end,
            trial_used = (user_subscriptions.trial_used
                          OR excluded.trial_used)
    """), {
        "id": uuid.uuid4().hex, "p": profile_id, "plan": int(plan_id),
        "status": status, "cust": customer_id, "sub": subscription_id,
        "start": period_start, "end": period_end, "trial_end": trial_end,
        "trial_used": trial_end is not None, "now": now_ts(),
    })


async def _set_status(db: GatedAsyncSession, subscription_id: Optional[str],
                      status: str) -> None:
    if not subscription_id:
        return
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE user_subscriptions SET status = :status
                WHERE stripe_subscription_id = :sid
            """), {"status": status, "sid": subscription_id})


async def _checkout_completed(db: GatedAsyncSession, gateway: PaymentGateway,
                              obj: Dict[str, Any]) -> None:
    subscription_id = field_of(obj, "subscription")
    if field_of(obj, "mode") != "subscription" or not subscription_id:
        return
    ps = await gateway.retrieve_subscription(subscription_id)
    user_id = (field_of(obj, "metadata", "userId")
               or ps.metadata.get("userId"))
    plan_id = (field_of(obj, "metadata", "planId")
               or ps.metadata.get("planId"))
    if not user_id or not plan_id:
        logger.warning("Checkout session for subscription %s carries no "
                       "userId/planId", subscription_id)
        return

    async with db.gated():
        async with db.session.begin():
            await upsert_subscription(
                db.session, user_id, int(plan_id), ps.status,
                customer_id=ps.customer,
                subscription_id=ps.id,
                period_start=ps.current_period_start,
                period_end=ps.current_period_end,
                trial_end=ps.trial_end,
            )
    logger.info("Subscription %s stored for %s (%s)", ps.id, user_id,
                ps.status)


async def _subscription_updated(db: GatedAsyncSession,
                                gateway: PaymentGateway,
                                obj: Dict[str, Any]) -> None:
    if not field_of(obj, "metadata", "userId"):
        return
    subscription_id = field_of(obj, "id")
    status = field_of(obj, "status", default="")
    start, end = subscription_period(obj)
    trial_end = field_of(obj, "trial_end")

    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE user_subscriptions
                SET status = :status,
                    current_period_start = :start,
                    current_period_end = :end,
                    trial_end = :trial_end
                WHERE stripe_subscription_id = :sid
            """), {
                "status": status, "start": start, "end": end,
                "trial_end": float(trial_end) if trial_end else None,
                "sid": subscription_id,
            })

    if status == "active" and end is not None \
            and end - now_ts() < PERIOD_END_WINDOW:
        logger.info("Subscription %s near period end, running usage "
                    "billing", subscription_id)
        try:
            await run_monthly_billing(db, gateway)
        except Exception:
            logger.error("Error triggering monthly usage billing",
                         exc_info=True)


async def handle_stripe_event(db: GatedAsyncSession, gateway: PaymentGateway,
                              payload: bytes,
                              signature: Optional[str]) -> Dict[str, Any]:
    # raises BadRequest before anything is touched
    event = gateway.verify_webhook(payload, signature)
    kind = event["type"]
    obj = event["object"]
    logger.info("Processing webhook event %s (%s)", kind, event.get("id"))

    if kind == EV_CHECKOUT_COMPLETED:
        await _checkout_completed(db, gateway, obj)
    elif kind == EV_SUB_UPDATED:
        await _subscription_updated(db, gateway, obj)
    elif kind == EV_SUB_DELETED:
        await _set_status(db, field_of(obj, "id"), "canceled")
    elif kind == EV_INVOICE_SUCCEEDED:
        await _set_status(db, invoice_subscription_id(obj), "active")
    elif kind == EV_INVOICE_FAILED:
        await _set_status(db, invoice_subscription_id(obj), "past_due")
    else:
        logger.info("Unhandled event type: %s", kind)

    return {"received": True}
