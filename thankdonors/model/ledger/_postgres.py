# model/ledger/_postgres.py
"""
Account balance ledger on the relational store.

- `account_balances` holds one running balance per profile (cents)
- `balance_transactions` is the append-only log; every row carries the signed
  amount and the balance right after it was applied

Every mutation adds to the balance with a single UPDATE and appends the log
row inside the same transaction, so the balance always equals the sum of the
log and each `balance_after` is the running sum.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...errors import ApiError, InsufficientBalance
from ...helpers import now_ts
from ...infra.sql import GatedAsyncSession
from ..db import BalanceTransaction


# ------------------------------------------------------------------------------
# CONFIG
# ------------------------------------------------------------------------------
AUTO_TOPUP_AMOUNT = 5000  # cents
AUTO_TOPUP_THRESHOLD = 1000  # cents
INITIAL_CREDIT = 5000  # cents

TX_USAGE = "usage"
TX_TOPUP = "topup"


# ------------------------------------------------------------------------------
# Core logic
# ------------------------------------------------------------------------------

# UN-GATED internal function: caller owns the transaction
async def apply_transaction(
    session: AsyncSession,
    profile_id: str,
    amount: int,
    transaction_type: str,
    description: Optional[str] = None,
    *,
    postcard_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    require_funds: bool = False,
) -> Dict[str, Any]:
    """
    Add a signed `amount` (cents) to the profile's balance and append the
    matching ledger row. Credits create the balance row when missing.
    With `require_funds`, a debit that would go below zero raises
    InsufficientBalance and changes nothing.
    """
    now = now_ts()
    amount = int(amount)

    if amount >= 0:
        await session.execute(text("""
            INSERT INTO account_balances
                (profile_id, current_balance, auto_topup_enabled,
                 created_at, updated_at)
            VALUES (:p, 0, true, :now, :now)
            ON CONFLICT (profile_id) DO NOTHING
        """), {"p": profile_id, "now": now})

    sql = """
        UPDATE account_balances
        SET current_balance = current_balance + :amt,
            updated_at = :now
    """
    if transaction_type == TX_TOPUP:
        sql += ", last_topup_at = :now"
    sql += " WHERE profile_id = :p"
    if require_funds:
        sql += " AND current_balance + :amt >= 0"

    res = await session.execute(
        text(sql), {"amt": amount, "now": now, "p": profile_id}
    )
    if res.rowcount != 1:
        current = (await session.execute(text("""
            SELECT current_balance FROM account_balances WHERE profile_id=:p
        """), {"p": profile_id})).scalar_one_or_none()
        if current is None:
            raise ApiError("No account balance found")
        raise InsufficientBalance(
            f"Insufficient balance. Current: ${int(current) / 100:.2f}, "
            f"Required: ${-amount / 100:.2f}"
        )

    balance_after = int((await session.execute(text("""
        SELECT current_balance FROM account_balances WHERE profile_id=:p
    """), {"p": profile_id})).scalar_one())

    session.add(BalanceTransaction(
        profile_id=profile_id,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=balance_after,
        description=description,
        postcard_id=postcard_id,
        stripe_payment_intent_id=payment_intent_id,
        created_at=now,
    ))
    await session.flush()

    return {
        "profile_id": profile_id,
        "transaction_type": transaction_type,
        "amount": amount,
        "balance_after": balance_after,
    }


# Public API

async def deduct(
    db: GatedAsyncSession,
    profile_id: str,
    amount: int,
    description: Optional[str] = None,
    *,
    postcard_id: Optional[str] = None,
    require_funds: bool = False,
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await apply_transaction(
                db.session, profile_id, -abs(int(amount)), TX_USAGE,
                description, postcard_id=postcard_id,
                require_funds=require_funds,
            )


async def credit(
    db: GatedAsyncSession,
    profile_id: str,
    amount: int,
    description: Optional[str] = None,
    *,
    payment_intent_id: Optional[str] = None,
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await apply_transaction(
                db.session, profile_id, abs(int(amount)), TX_TOPUP,
                description, payment_intent_id=payment_intent_id,
            )


# ------------------------------------------------------------------------------
# Read APIs
# ------------------------------------------------------------------------------

async def get_balance(
    db: GatedAsyncSession, profile_id: str
) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT profile_id, current_balance, auto_topup_enabled,
                       last_topup_at
                FROM account_balances WHERE profile_id=:p
            """), {"p": profile_id})).mappings().first()
    return dict(row) if row else None


async def list_transactions(
    db: GatedAsyncSession, profile_id: str
) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, transaction_type, amount, balance_after,
                       description, postcard_id, stripe_payment_intent_id,
                       created_at
                FROM balance_transactions
                WHERE profile_id=:p
                ORDER BY id
            """), {"p": profile_id})).mappings().all()
    return [dict(r) for r in rows]
