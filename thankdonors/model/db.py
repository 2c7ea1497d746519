from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection

from ..helpers import now_ts


Base = declarative_base()

# Postcard statuses
PC_PENDING = "pending"
PC_PROCESSING = "processing"
PC_RENDERED = "rendered"
PC_MAILED = "mailed"
PC_IN_TRANSIT = "in_transit"
PC_DELIVERED = "delivered"

# statuses that mean production has started; usage is billed once here
BILLABLE_STATUSES = (PC_PROCESSING, PC_RENDERED)

FREE_PLAN_NAME = "Free"


# ----------------------------
# ORM models
# ----------------------------
class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True)  # auth user id
    email = Column(String, nullable=True)

    committee_name = Column(String, nullable=True)
    committee_type = Column(String, nullable=True)
    organization_name = Column(String, nullable=True)
    street_address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    country = Column(String, nullable=True, default="US")

    webhook_url = Column(String, nullable=True)
    source_id = Column(String, nullable=True)

    email_notifications = Column(Boolean, nullable=False, default=True)
    status_updates = Column(Boolean, nullable=False, default=True)
    marketing_emails = Column(Boolean, nullable=False, default=True)
    loops_contact_id = Column(String, nullable=True)

    onboarding_step = Column(Integer, nullable=False, default=0)
    onboarding_completed = Column(Boolean, nullable=False, default=False)

    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class Donation(Base):
    __tablename__ = "donations"
    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=False,
                        index=True)

    donor_name = Column(String, nullable=True)
    donor_email = Column(String, nullable=True)
    donor_address = Column(String, nullable=True)
    donor_city = Column(String, nullable=True)
    donor_state = Column(String, nullable=True)
    donor_zip = Column(String, nullable=True)
    donor_country = Column(String, nullable=True)
    donor_phone = Column(String, nullable=True)
    employer = Column(String, nullable=True)
    occupation = Column(String, nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)  # dollars
    donation_date = Column(Float, nullable=True)
    paid_at = Column(Float, nullable=True)
    is_recurring = Column(Boolean, nullable=False, default=False)
    recurring_period = Column(String, nullable=True)
    order_number = Column(String, nullable=True)
    form_name = Column(String, nullable=True)
    refcode = Column(String, nullable=True)
    refcode2 = Column(String, nullable=True)
    lineitem_id = Column(String, nullable=True)
    donation_status = Column(String, nullable=True)

    created_at = Column(Float, nullable=False, default=now_ts)


class Postcard(Base):
    __tablename__ = "postcards"
    id = Column(String, primary_key=True)
    donation_id = Column(String, ForeignKey("donations.id"), nullable=False,
                         index=True)

    # pending -> processing/rendered -> mailed -> in_transit -> delivered
    status = Column(String, nullable=False, default=PC_PENDING)
    usage_billed = Column(Boolean, nullable=False, default=False)
    billing_reported = Column(Boolean, nullable=False, default=False)
    tracking_number = Column(String, nullable=True)
    expected_delivery_date = Column(Float, nullable=True)
    stripe_invoice_item_id = Column(String, nullable=True)

    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class TrackingEvent(Base):
    __tablename__ = "tracking_events"
    id = Column(String, primary_key=True)
    postcard_id = Column(String, ForeignKey("postcards.id"), nullable=False,
                         index=True)
    status = Column(String, nullable=False)
    tracking_number = Column(String, nullable=True)
    carrier = Column(String, nullable=True)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    event_time = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class AccountBalance(Base):
    __tablename__ = "account_balances"
    profile_id = Column(String, ForeignKey("profiles.id"), primary_key=True)
    current_balance = Column(Integer, nullable=False, default=0)  # cents
    auto_topup_enabled = Column(Boolean, nullable=False, default=True)
    last_topup_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class BalanceTransaction(Base):
    __tablename__ = "balance_transactions"
    # serial id gives the ledger its order
    id = Column(Integer, primary_key=True, autoincrement=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=False,
                        index=True)
    transaction_type = Column(String, nullable=False)  # usage | topup
    amount = Column(Integer, nullable=False)  # signed cents
    balance_after = Column(Integer, nullable=False)  # cents
    description = Column(String, nullable=True)
    postcard_id = Column(String, nullable=True)
    # one ledger credit per processor payment
    stripe_payment_intent_id = Column(String, nullable=True, unique=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    monthly_fee = Column(Integer, nullable=False)  # cents
    per_mailing_fee = Column(Integer, nullable=False)  # cents
    stripe_price_id = Column(String, nullable=True)


class UserSubscription(Base):
    __tablename__ = "user_subscriptions"
    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=False,
                        unique=True)
    plan_id = Column(Integer, ForeignKey("subscription_plans.id"),
                     nullable=False)
    # trialing | active | past_due | canceled | ...
    status = Column(String, nullable=False)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    current_period_start = Column(Float, nullable=True)
    current_period_end = Column(Float, nullable=True)
    trial_end = Column(Float, nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, default=now_ts)


class UsageCharge(Base):
    __tablename__ = "usage_charges"
    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=False)
    # one charge per postcard
    postcard_id = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)  # cents
    plan_type = Column(String, nullable=False)
    stripe_invoice_item_id = Column(String, nullable=True)
    invoice_id = Column(String, nullable=True)
    billing_cycle_start = Column(Float, nullable=True)
    billing_cycle_end = Column(Float, nullable=True)
    billed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


Index("usage_charges_unbilled_idx", UsageCharge.profile_id,
      UsageCharge.plan_type, UsageCharge.billed_at)


class WebhookCredentials(Base):
    __tablename__ = "webhook_credentials"
    profile_id = Column(String, ForeignKey("profiles.id"), primary_key=True)
    password_hash = Column(String, nullable=False)
    salt = Column(String, nullable=False)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


class NotificationEvent(Base):
    __tablename__ = "notification_events"
    id = Column(String, primary_key=True)
    profile_id = Column(String, ForeignKey("profiles.id"), nullable=False,
                        index=True)
    event_type = Column(String, nullable=False)
    event_data = Column(JSON, nullable=True)
    loops_sent = Column(Boolean, nullable=False, default=False)
    loops_event_id = Column(String, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)


class MonitorJob(Base):
    __tablename__ = "monitor_jobs"
    postcard_id = Column(String, primary_key=True)
    # queued | running | done | exhausted
    status = Column(String, nullable=False, default="queued")
    attempts = Column(Integer, nullable=False, default=0)
    next_run_at = Column(Float, nullable=False)
    claimed_at = Column(Float, nullable=True)
    outcome = Column(String, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False, default=now_ts)
    updated_at = Column(Float, nullable=False, default=now_ts)


Index("monitor_jobs_due_idx", MonitorJob.status, MonitorJob.next_run_at)


# ------------------------------------------------------------------------------
# DDL (idempotent) + fixtures
# ------------------------------------------------------------------------------
DEFAULT_PLANS = (
    # id, name, monthly fee, per-mailing fee (cents)
    (1, FREE_PLAN_NAME, 0, 199),
    (2, "Pro", 9900, 99),
)


async def create_schema(conn: AsyncConnection,
                        pro_price_id: str | None = None) -> None:
    """
    Create tables if missing and seed the plan catalog if it is empty.
    """
    await conn.run_sync(Base.metadata.create_all)
    for plan_id, name, monthly, per_mailing in DEFAULT_PLANS:
        await conn.execute(text("""
            INSERT INTO subscription_plans
                (id, name, monthly_fee, per_mailing_fee, stripe_price_id)
            VALUES (:id, :name, :monthly, :per_mailing, :price)
            ON CONFLICT (id) DO NOTHING
        """), {
            "id": plan_id, "name": name, "monthly": monthly,
            "per_mailing": per_mailing,
            "price": pro_price_id if name != FREE_PLAN_NAME else None,
        })
