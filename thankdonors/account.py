import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import bindparam, select, text

from .authn import AuthService, AuthUser
from .errors import BadRequest, NotFound
from .helpers import now_ts, parse_ts, to_iso
from .hookdeck import RoutingService
from .infra.sql import GatedAsyncSession
from .model.db import Profile, TrackingEvent
from .model.profiles import ensure_profile

logger = logging.getLogger(__name__)


# ----------------------------
# Profile
# ----------------------------
class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    committee_name: Optional[str] = None
    committee_type: Optional[str] = None
    organization_name: Optional[str] = None
    street_address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    email_notifications: Optional[bool] = None
    status_updates: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    onboarding_step: Optional[int] = None
    onboarding_completed: Optional[bool] = None


def profile_to_dict(p: Profile) -> Dict[str, Any]:
    return {
        "id": p.id,
        "email": p.email,
        "committee_name": p.committee_name,
        "committee_type": p.committee_type,
        "organization_name": p.organization_name,
        "street_address": p.street_address,
        "city": p.city,
        "state": p.state,
        "postal_code": p.postal_code,
        "country": p.country,
        "webhook_url": p.webhook_url,
        "email_notifications": p.email_notifications,
        "status_updates": p.status_updates,
        "marketing_emails": p.marketing_emails,
        "onboarding_step": p.onboarding_step,
        "onboarding_completed": p.onboarding_completed,
        "created_at": to_iso(p.created_at),
        "updated_at": to_iso(p.updated_at),
    }


async def get_profile(db: GatedAsyncSession,
                      user: AuthUser) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            profile = await ensure_profile(db.session, user.id, user.email)
            return profile_to_dict(profile)


async def update_profile(db: GatedAsyncSession, user: AuthUser,
                         changes: ProfileUpdate) -> Dict[str, Any]:
    fields = changes.model_dump(exclude_unset=True)
    if "onboarding_step" in fields and (fields["onboarding_step"] is None
                                        or fields["onboarding_step"] < 0):
        raise BadRequest("onboarding_step must be a non-negative integer")
    for name in ("email_notifications", "status_updates",
                 "marketing_emails", "onboarding_completed"):
        if name in fields and fields[name] is None:
            raise BadRequest(f"{name} must be a boolean")

    async with db.gated():
        async with db.session.begin():
            profile = await ensure_profile(db.session, user.id, user.email)
            for name, value in fields.items():
                setattr(profile, name, value)
            profile.updated_at = now_ts()
            return profile_to_dict(profile)


# ----------------------------
# Donations & tracking
# ----------------------------
async def list_donations(db: GatedAsyncSession,
                         user: AuthUser) -> Dict[str, List[Dict[str, Any]]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT d.id, d.donor_name, d.donor_email, d.donor_city,
                       d.donor_state, d.amount, d.donation_date,
                       d.is_recurring, d.refcode, d.created_at,
                       p.id AS postcard_id, p.status AS postcard_status,
                       p.tracking_number, p.expected_delivery_date
                FROM donations d
                LEFT JOIN postcards p ON p.donation_id = d.id
                WHERE d.profile_id = :p
                ORDER BY d.created_at DESC
            """), {"p": user.id})).mappings().all()

            postcard_ids = [r["postcard_id"] for r in rows if r["postcard_id"]]
            events: Dict[str, List[Dict[str, Any]]] = {}
            if postcard_ids:
                found = (await db.session.execute(
                    select(TrackingEvent)
                    .where(TrackingEvent.postcard_id.in_(postcard_ids))
                    .order_by(TrackingEvent.created_at, TrackingEvent.id)
                )).scalars().all()
                for ev in found:
                    events.setdefault(ev.postcard_id, []).append({
                        "status": ev.status,
                        "location": ev.location,
                        "description": ev.description,
                        "event_time": to_iso(ev.event_time),
                        "created_at": to_iso(ev.created_at),
                    })

    out = []
    for r in rows:
        postcard = None
        if r["postcard_id"]:
            postcard = {
                "id": r["postcard_id"],
                "status": r["postcard_status"],
                "tracking_number": r["tracking_number"],
                "expected_delivery_date": to_iso(r["expected_delivery_date"]),
                "tracking_events": events.get(r["postcard_id"], []),
            }
        out.append({
            "id": r["id"],
            "donor_name": r["donor_name"],
            "donor_email": r["donor_email"],
            "donor_city": r["donor_city"],
            "donor_state": r["donor_state"],
            "amount": float(r["amount"]),
            "donation_date": to_iso(r["donation_date"]),
            "is_recurring": bool(r["is_recurring"]),
            "refcode": r["refcode"],
            "created_at": to_iso(r["created_at"]),
            "postcard": postcard,
        })
    return {"donations": out}


class TrackingUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    status: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    event_time: Optional[str] = None
    expected_delivery_date: Optional[str] = None


async def add_tracking_event(db: GatedAsyncSession, postcard_id: str,
                             update: TrackingUpdate) -> Dict[str, Any]:
    """
    Append a carrier event and move the postcard to its status.
    """
    if not update.status.strip():
        raise BadRequest("status is required")
    try:
        event_time = parse_ts(update.event_time)
        expected = parse_ts(update.expected_delivery_date)
    except ValueError:
        raise BadRequest("Invalid timestamp")

    now = now_ts()
    event_id = uuid.uuid4().hex
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(text("""
                UPDATE postcards
                SET status = :status,
                    tracking_number = COALESCE(:tn, tracking_number),
                    expected_delivery_date =
                        COALESCE(:expected, expected_delivery_date),
                    updated_at = :now
                WHERE id = :id
            """), {
                "status": update.status, "tn": update.tracking_number,
                "expected": expected, "now": now, "id": postcard_id,
            })
            if res.rowcount != 1:
                raise NotFound("Postcard not found")
            db.session.add(TrackingEvent(
                id=event_id,
                postcard_id=postcard_id,
                status=update.status,
                tracking_number=update.tracking_number,
                carrier=update.carrier,
                location=update.location,
                description=update.description,
                event_time=event_time,
                created_at=now,
            ))

    return {"success": True, "id": event_id, "postcard_id": postcard_id,
            "status": update.status}


# ----------------------------
# Account deletion
# ----------------------------
_PER_PROFILE_TABLES = (
    "balance_transactions",
    "account_balances",
    "user_subscriptions",
    "webhook_credentials",
    "notification_events",
)


def _in(sql: str, name: str):
    return text(sql).bindparams(bindparam(name, expanding=True))


async def _delete_source(db: GatedAsyncSession, routing: RoutingService,
                         user_id: str) -> None:
    try:
        async with db.gated():
            async with db.session.begin():
                source_id = (await db.session.execute(text("""
                    SELECT source_id FROM profiles WHERE id=:p
                """), {"p": user_id})).scalar_one_or_none()
        if source_id:
            await routing.delete_source(source_id)
    except Exception:
        logger.warning("Routing source deletion for %s failed (ignored)",
                       user_id, exc_info=True)


async def delete_account(db: GatedAsyncSession, routing: RoutingService,
                         auth: AuthService,
                         user: AuthUser) -> Dict[str, bool]:
    user_id = user.id
    await _delete_source(db, routing, user_id)

    async with db.gated():
        async with db.session.begin():
            donation_ids = (await db.session.execute(text("""
                SELECT id FROM donations WHERE profile_id=:p
            """), {"p": user_id})).scalars().all()

            postcard_ids: List[str] = []
            if donation_ids:
                postcard_ids = (await db.session.execute(_in("""
                    SELECT id FROM postcards WHERE donation_id IN :ids
                """, "ids"), {"ids": list(donation_ids)})).scalars().all()

            if postcard_ids:
                ids = {"ids": list(postcard_ids)}
                for sql in (
                    "DELETE FROM tracking_events WHERE postcard_id IN :ids",
                    "DELETE FROM monitor_jobs WHERE postcard_id IN :ids",
                    "DELETE FROM postcards WHERE id IN :ids",
                ):
                    await db.session.execute(_in(sql, "ids"), ids)

            await db.session.execute(text(
                "DELETE FROM usage_charges WHERE profile_id=:p"
            ), {"p": user_id})
            if donation_ids:
                await db.session.execute(_in(
                    "DELETE FROM donations WHERE id IN :ids", "ids"
                ), {"ids": list(donation_ids)})

            for table in _PER_PROFILE_TABLES:
                await db.session.execute(text(
                    f"DELETE FROM {table} WHERE profile_id=:p"
                ), {"p": user_id})
            await db.session.execute(text(
                "DELETE FROM profiles WHERE id=:p"
            ), {"p": user_id})

    await auth.delete_user(user_id)
    logger.info("Account %s deleted", user_id)
    return {"success": True}
