import logging
from typing import Any, Dict, Optional

from sqlalchemy import text

from .errors import BadRequest
from .helpers import from_cents, to_cents
from .infra.sql import GatedAsyncSession
from .model import ledger
from .payments import PaymentGateway

logger = logging.getLogger(__name__)


async def _customer_for(db: GatedAsyncSession,
                        profile_id: str) -> Optional[str]:
    async with db.gated():
        async with db.session.begin():
            return (await db.session.execute(text("""
                SELECT stripe_customer_id FROM user_subscriptions
                WHERE profile_id=:p
            """), {"p": profile_id})).scalar_one_or_none()


async def auto_topup(db: GatedAsyncSession, gateway: PaymentGateway,
                     profile_id: str) -> bool:
    """
    Charge the saved default payment method and credit the ledger.
    Never raises; returns whether the balance was credited.
    """
    try:
        customer = await _customer_for(db, profile_id)
        if not customer:
            logger.error("No Stripe customer ID found for %s", profile_id)
            return False

        payment_method = await gateway.default_payment_method(customer)
        if not payment_method:
            logger.error("No default payment method for customer %s",
                         customer)
            return False

        pi_id, status = await gateway.charge_off_session(
            customer=customer,
            payment_method=payment_method,
            amount=ledger.AUTO_TOPUP_AMOUNT,
            metadata={"userId": profile_id, "type": "auto_topup"},
        )
        if status != "succeeded":
            logger.warning("Auto top-up payment %s for %s ended %s",
                           pi_id, profile_id, status)
            return False

        tx = await ledger.credit(
            db, profile_id, ledger.AUTO_TOPUP_AMOUNT,
            f"Automatic top-up - "
            f"${from_cents(ledger.AUTO_TOPUP_AMOUNT):.2f} credit",
            payment_intent_id=pi_id,
        )
    except Exception:
        logger.error("Auto top-up failed for %s", profile_id, exc_info=True)
        return False

    logger.info("Auto top-up successful for %s. New balance: $%.2f",
                profile_id, from_cents(tx["balance_after"]))
    return True


async def maybe_auto_topup(db: GatedAsyncSession, gateway: PaymentGateway,
                           profile_id: str, balance_after: int) -> bool:
    if balance_after >= ledger.AUTO_TOPUP_THRESHOLD:
        return False
    bal = await ledger.get_balance(db, profile_id)
    if bal is None or not bal["auto_topup_enabled"]:
        return False
    return await auto_topup(db, gateway, profile_id)


async def manage_account_balance(
    db: GatedAsyncSession,
    gateway: PaymentGateway,
    action: Optional[str],
    user_id: Optional[str],
    amount: Any = None,
) -> Dict[str, Any]:
    """
    Amounts in and out of this endpoint are dollars.
    """
    if not user_id:
        raise BadRequest("userId is required")

    if action == "check_balance":
        bal = await ledger.get_balance(db, user_id)
        return {
            "balance": from_cents(bal["current_balance"]) if bal else 0,
            "auto_topup_enabled": (
                bool(bal["auto_topup_enabled"]) if bal else True
            ),
        }

    if action == "deduct_usage" and amount:
        try:
            cents = to_cents(amount)
        except ArithmeticError:
            raise BadRequest("amount must be a number")
        if cents <= 0:
            raise BadRequest("amount must be positive")
        tx = await ledger.deduct(
            db, user_id, cents,
            f"Postcard mailing charge - ${from_cents(cents):.2f}",
        )
        triggered = await maybe_auto_topup(
            db, gateway, user_id, tx["balance_after"]
        )
        return {
            "success": True,
            "new_balance": from_cents(tx["balance_after"]),
            "auto_topup_triggered": triggered,
        }

    if action == "auto_topup":
        topped_up = await auto_topup(db, gateway, user_id)
        return {"success": True, "topped_up": topped_up}

    raise BadRequest("Invalid action")
