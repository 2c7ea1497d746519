import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .authn import AuthService
from .errors import ApiError, BadRequest, NotFound, Unauthorized
from .helpers import now_ts, parse_ts
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model.db import PC_PENDING, Donation, Postcard, Profile
from .notify import Notifier, notify_donation_received
from .provisioning import verify_webhook_password

logger = logging.getLogger(__name__)

MSG_MISSING_SECTIONS = "Missing required donor or contribution data"
MSG_NO_LINEITEMS = "At least one line item is required"
MSG_INVALID_PAYLOAD = "Invalid donation payload"
MSG_INVALID_DATE = "Invalid contribution date"


# ----------------------------
# Payload
# ----------------------------
class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class EmployerData(_Lenient):
    employer: Optional[str] = None
    occupation: Optional[str] = None


class Donor(_Lenient):
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    addr1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    employer_data: Optional[EmployerData] = Field(None, alias="employerData")


class Contribution(_Lenient):
    created_at: Optional[str] = Field(None, alias="createdAt")
    order_number: Optional[Union[str, int]] = Field(None, alias="orderNumber")
    contribution_form: Optional[str] = Field(None, alias="contributionForm")
    refcode: Optional[str] = None
    refcode2: Optional[str] = None
    status: Optional[str] = None
    is_recurring: bool = Field(False, alias="isRecurring")
    recurring_period: Optional[str] = Field(None, alias="recurringPeriod")


class LineItem(_Lenient):
    amount: Decimal
    paid_at: Optional[str] = Field(None, alias="paidAt")
    lineitem_id: Optional[Union[str, int]] = Field(None, alias="lineitemId")


class DonationPayload(_Lenient):
    donor: Donor
    contribution: Contribution
    lineitems: List[LineItem]


def parse_payload(raw: Any) -> DonationPayload:
    """
    Validate the webhook body. Every failure is a BadRequest with a fixed
    message.
    """
    if not isinstance(raw, dict):
        raise BadRequest(MSG_INVALID_PAYLOAD)
    if not isinstance(raw.get("donor"), dict) \
            or not isinstance(raw.get("contribution"), dict):
        raise BadRequest(MSG_MISSING_SECTIONS)
    if not isinstance(raw.get("lineitems"), list) or not raw["lineitems"]:
        raise BadRequest(MSG_NO_LINEITEMS)
    try:
        return DonationPayload.model_validate(raw)
    except ValidationError as e:
        logger.info("Rejected donation payload: %d validation errors",
                    e.error_count())
        raise BadRequest(MSG_INVALID_PAYLOAD)


def _str_id(value) -> Optional[str]:
    return None if value is None else str(value)


def build_donation(profile_id: str, p: DonationPayload) -> Donation:
    donor = p.donor
    contribution = p.contribution
    first = p.lineitems[0]

    try:
        paid_at = parse_ts(first.paid_at)
        donation_date = parse_ts(contribution.created_at) or paid_at
    except ValueError:
        raise BadRequest(MSG_INVALID_DATE)

    employer = donor.employer_data or EmployerData()
    name = f"{donor.firstname or ''} {donor.lastname or ''}".strip()
    return Donation(
        id=uuid.uuid4().hex,
        profile_id=profile_id,
        donor_name=name or None,
        donor_email=donor.email,
        donor_address=donor.addr1,
        donor_city=donor.city,
        donor_state=donor.state,
        donor_zip=donor.zip,
        donor_country=donor.country or "US",
        donor_phone=donor.phone,
        employer=employer.employer,
        occupation=employer.occupation,
        amount=first.amount,
        donation_date=donation_date,
        paid_at=paid_at,
        is_recurring=bool(contribution.is_recurring),
        recurring_period=contribution.recurring_period,
        order_number=_str_id(contribution.order_number),
        form_name=contribution.contribution_form,
        refcode=contribution.refcode,
        refcode2=contribution.refcode2,
        lineitem_id=_str_id(first.lineitem_id),
        donation_status=contribution.status or "completed",
        created_at=now_ts(),
    )


# ----------------------------
# Handler
# ----------------------------
async def _check_profile(db: GatedAsyncSession, profile_id: Optional[str],
                         password: Optional[str]) -> None:
    if not profile_id:
        raise BadRequest("Missing profile routing")
    async with db.gated():
        async with db.session.begin():
            profile = await db.session.get(Profile, profile_id)
    if profile is None:
        raise NotFound("Profile not found")

    if password is None:
        password = ""
    valid = await verify_webhook_password(db, profile_id, password)
    if valid is False:
        raise Unauthorized("Invalid webhook credentials")


async def handle_donation(
    db: GatedAsyncSession,
    queue,
    raw: Any,
    profile_id: Optional[str],
    *,
    password: Optional[str] = None,
    notifier: Optional[Notifier] = None,
    auth: Optional[AuthService] = None,
) -> Dict[str, Any]:
    payload = parse_payload(raw)
    await _check_profile(db, profile_id, password)
    donation = build_donation(profile_id, payload)

    try:
        async with timeit("db.add_donation"):
            async with db.gated():
                async with db.session.begin():
                    db.session.add(donation)
    except Exception as e:
        logger.error("Error inserting donation for %s", profile_id,
                     exc_info=True)
        raise ApiError("Failed to create donation", details=str(e))
    logger.info("Donation %s created for %s", donation.id, profile_id)

    postcard_id: Optional[str] = None
    try:
        async with db.gated():
            async with db.session.begin():
                postcard = Postcard(
                    id=uuid.uuid4().hex,
                    donation_id=donation.id,
                    status=PC_PENDING,
                    created_at=now_ts(),
                    updated_at=now_ts(),
                )
                db.session.add(postcard)
        postcard_id = postcard.id
    except Exception:
        # the donation is kept without a postcard
        logger.error("Error creating postcard for donation %s",
                     donation.id, exc_info=True)

    await notify_donation_received(db, notifier, profile_id, {
        "donationId": donation.id,
        "donorName": donation.donor_name,
        "amount": str(donation.amount),
    }, auth=auth)

    if postcard_id is not None:
        try:
            await queue.enqueue(postcard_id)
        except Exception:
            logger.error("Could not enqueue monitor job for postcard %s",
                         postcard_id, exc_info=True)

    out: Dict[str, Any] = {"success": True, "donation_id": donation.id}
    if postcard_id is not None:
        out["postcard_id"] = postcard_id
    return out
