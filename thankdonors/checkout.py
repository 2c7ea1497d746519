import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from .authn import AuthUser
from .errors import ApiError, BadRequest, NotFound
from .helpers import from_cents, now_ts, to_iso
from .infra.sql import GatedAsyncSession
from .model import ledger
from .model.db import FREE_PLAN_NAME
from .model.profiles import ensure_profile
from .payments import PaymentGateway
from .subscriptions import upsert_subscription

logger = logging.getLogger(__name__)

PLAN_TYPE_INITIAL = "pay_as_you_go_initial"
PLAN_TYPE_PRO = "pro_subscription"
TRIAL_DAYS = 7

FREE_PLAN_ID = 1
PRO_PLAN_ID = 2


async def _plan(db: GatedAsyncSession, plan_id) -> Optional[Dict[str, Any]]:
    try:
        plan_id = int(plan_id)
    except (TypeError, ValueError):
        raise BadRequest("planId must be an integer")
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT id, name, monthly_fee, per_mailing_fee, stripe_price_id
                FROM subscription_plans WHERE id=:id
            """), {"id": plan_id})).mappings().first()
    return dict(row) if row else None


async def create_checkout_session(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    user: AuthUser,
    plan_id,
    cancel_url: Optional[str],
    origin: str,
) -> Dict[str, str]:
    if not plan_id:
        raise BadRequest("planId is required")
    if not user.email:
        raise BadRequest("User has no email address")

    plan = await _plan(db, plan_id)
    if plan is None:
        raise NotFound("Plan not found")

    customer = await gateway.find_customer_by_email(user.email)
    params: Dict[str, Any] = {
        "success_url":
            f"{origin}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": cancel_url or f"{origin}/dashboard?checkout=canceled",
    }
    if customer:
        params["customer"] = customer
    else:
        params["customer_email"] = user.email

    metadata = {"userId": user.id, "planId": str(plan["id"])}
    if plan["name"] == FREE_PLAN_NAME:
        params.update({
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [{
                "price_data": {
                    "currency": "usd",
                    "product_data": {
                        "name": "Pay as You Go - Initial Account Balance",
                        "description": (
                            f"${from_cents(ledger.INITIAL_CREDIT):.0f} "
                            f"credit added to your account balance"
                        ),
                    },
                    "unit_amount": ledger.INITIAL_CREDIT,
                },
                "quantity": 1,
            }],
            "metadata": {**metadata, "planType": PLAN_TYPE_INITIAL},
        })
        if not customer:
            params["customer_creation"] = "always"
    else:
        if not plan["stripe_price_id"]:
            raise ApiError(f"Plan {plan['name']} has no Stripe price")
        params.update({
            "mode": "subscription",
            "line_items": [{"price": plan["stripe_price_id"], "quantity": 1}],
            "metadata": {**metadata, "planType": PLAN_TYPE_PRO},
            "subscription_data": {
                "trial_period_days": TRIAL_DAYS,
                "metadata": metadata,
            },
        })

    url = await gateway.create_checkout_session(params)
    logger.info("Checkout session created for %s (plan %s)", user.id,
                plan["name"])
    return {"url": url}


async def create_portal_session(db: GatedAsyncSession,
                                gateway: PaymentGateway, user: AuthUser,
                                origin: str) -> Dict[str, str]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT stripe_customer_id, status FROM user_subscriptions
                WHERE profile_id=:p AND stripe_customer_id IS NOT NULL
            """), {"p": user.id})).mappings().all()

    active = [r for r in rows if r["status"] == "active"]
    chosen = (active or rows)[0] if rows else None
    if chosen is None:
        raise NotFound("No customer record found")

    url = await gateway.create_portal_session(
        customer=chosen["stripe_customer_id"],
        return_url=f"{origin}/dashboard",
    )
    return {"url": url}


async def _confirm_initial_payment(db: GatedAsyncSession, session,
                                   user_id: str) -> Dict[str, Any]:
    plan_id = int(session.metadata.get("planId") or FREE_PLAN_ID)
    plan = await _plan(db, plan_id)
    credited = True
    try:
        async with db.gated():
            async with db.session.begin():
                await ensure_profile(db.session, user_id)
                seen = (await db.session.execute(text("""
                    SELECT 1 FROM balance_transactions
                    WHERE stripe_payment_intent_id = :pi
                """), {"pi": session.payment_intent})).first()
                if seen is None:
                    await ledger.apply_transaction(
                        db.session, user_id, ledger.INITIAL_CREDIT,
                        ledger.TX_TOPUP,
                        f"Initial account setup - "
                        f"${from_cents(ledger.INITIAL_CREDIT):.2f} credit",
                        payment_intent_id=session.payment_intent,
                    )
                else:
                    credited = False
                await upsert_subscription(
                    db.session, user_id, plan["id"] if plan else plan_id,
                    "active",
                    customer_id=session.customer,
                    period_start=now_ts(),
                    period_end=None,
                )
    except IntegrityError:
        # a concurrent confirmation of the same payment won
        credited = False
    if not credited:
        logger.info("Payment %s already credited", session.payment_intent)

    bal = await ledger.get_balance(db, user_id)
    return {
        "planType": "pay_as_you_go",
        "balance": from_cents(bal["current_balance"]) if bal else 0,
        "credited": from_cents(ledger.INITIAL_CREDIT) if credited else 0,
        "planName": plan["name"] if plan else "Pay as You Go",
    }


async def _confirm_subscription(db: GatedAsyncSession,
                                gateway: PaymentGateway, session,
                                user_id: str) -> Dict[str, Any]:
    plan_id = int(session.metadata.get("planId") or PRO_PLAN_ID)
    plan = await _plan(db, plan_id)
    if not session.subscription:
        raise BadRequest("Checkout session has no subscription")
    ps = await gateway.retrieve_subscription(session.subscription)

    async with db.gated():
        async with db.session.begin():
            await upsert_subscription(
                db.session, user_id, plan["id"] if plan else plan_id,
                "active",
                customer_id=session.customer or ps.customer,
                subscription_id=ps.id,
                period_start=ps.current_period_start,
                period_end=ps.current_period_end,
                trial_end=ps.trial_end,
            )

    return {
        "planType": PLAN_TYPE_PRO,
        "planName": plan["name"] if plan else "Pro",
        "subscriptionDetails": {
            "stripe_subscription_id": ps.id,
            "current_period_start": to_iso(ps.current_period_start),
            "current_period_end": to_iso(ps.current_period_end),
            "trial_end": to_iso(ps.trial_end),
            "has_trial": ps.trial_end is not None,
        },
    }


async def confirm_checkout_payment(db: GatedAsyncSession,
                                   gateway: PaymentGateway,
                                   session_id: Optional[str]) -> Dict:
    if not session_id:
        raise BadRequest("sessionId is required")

    session = await gateway.retrieve_checkout_session(session_id)
    paid = session.payment_status == "paid" or (
        session.mode == "subscription"
        and session.payment_status == "no_payment_required"
    )
    if not paid:
        raise BadRequest("Payment not completed")

    user_id = session.metadata.get("userId")
    if not user_id:
        raise BadRequest("Invalid session metadata - missing userId")

    plan_type = session.metadata.get("planType")
    if plan_type == PLAN_TYPE_INITIAL:
        out = await _confirm_initial_payment(db, session, user_id)
    elif session.mode == "subscription":
        out = await _confirm_subscription(db, gateway, session, user_id)
    else:
        raise BadRequest(
            f"Unsupported payment type: {plan_type or session.mode}"
        )

    logger.info("Payment processed for %s (%s)", user_id, out["planType"])
    return {"success": True, **out}
