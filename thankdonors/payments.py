import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import stripe

from .errors import BadRequest, NotConfigured
from .infra.timings import timeit

logger = logging.getLogger(__name__)

CURRENCY = "usd"


# ----------------------------
# Payment Gateway Interface
# ----------------------------
@dataclass
class ProcessorSubscription:
    id: str
    customer: Optional[str]
    status: str
    current_period_start: Optional[float]
    current_period_end: Optional[float]
    trial_end: Optional[float] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProcessorCheckoutSession:
    id: str
    mode: Optional[str]
    payment_status: Optional[str]
    customer: Optional[str]
    subscription: Optional[str]
    payment_intent: Optional[str]
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentGateway(ABC):
    # -> {"id", "type", "object"}; raises BadRequest on a bad signature
    @abstractmethod
    def verify_webhook(self, payload: bytes,
                       signature: Optional[str]) -> Dict[str, Any]: ...

    @abstractmethod
    async def retrieve_subscription(
            self, subscription_id: str) -> ProcessorSubscription: ...

    @abstractmethod
    async def create_invoice_item(
            self, *, customer: str, amount: int, description: str,
            metadata: Dict[str, str], idempotency_key: str) -> str: ...

    # create + finalize; returns the finalized invoice id
    @abstractmethod
    async def create_and_finalize_invoice(
            self, *, customer: str, description: str,
            metadata: Dict[str, str], idempotency_key: str) -> str: ...

    @abstractmethod
    async def find_customer_by_email(self, email: str) -> Optional[str]: ...

    # None when the customer is deleted or has no default payment method
    @abstractmethod
    async def default_payment_method(
            self, customer: str) -> Optional[str]: ...

    # -> (payment_intent_id, status)
    @abstractmethod
    async def charge_off_session(
            self, *, customer: str, payment_method: str, amount: int,
            metadata: Dict[str, str]) -> Tuple[str, str]: ...

    @abstractmethod
    async def create_checkout_session(self, params: Dict[str, Any]) -> str: ...

    @abstractmethod
    async def retrieve_checkout_session(
            self, session_id: str) -> ProcessorCheckoutSession: ...

    @abstractmethod
    async def create_portal_session(self, *, customer: str,
                                    return_url: str) -> str: ...


# ----------------------------
# helpers for processor objects
# ----------------------------
def field_of(obj: Any, *path: Any, default: Any = None) -> Any:
    """
    Walk nested processor objects or plain dicts; missing keys give default.
    """
    cur = obj
    for key in path:
        if cur is None:
            return default
        try:
            cur = cur[key]
        except (KeyError, IndexError, TypeError, AttributeError):
            return default
    return default if cur is None else cur


def _id_of(value: Any) -> Optional[str]:
    # expandable fields come back either as an id or as an object
    if value is None or isinstance(value, str):
        return value
    return field_of(value, "id")


def subscription_period(obj: Any) -> Tuple[Optional[float], Optional[float]]:
    """
    Billing period of a subscription; newer API versions moved it from the
    subscription onto its items.
    """
    start = field_of(obj, "current_period_start")
    end = field_of(obj, "current_period_end")
    if start is None or end is None:
        start = field_of(obj, "items", "data", 0, "current_period_start")
        end = field_of(obj, "items", "data", 0, "current_period_end")
    return (
        float(start) if start is not None else None,
        float(end) if end is not None else None,
    )


def subscription_from_object(obj: Any) -> ProcessorSubscription:
    start, end = subscription_period(obj)
    trial_end = field_of(obj, "trial_end")
    metadata = field_of(obj, "metadata", default={}) or {}
    return ProcessorSubscription(
        id=field_of(obj, "id"),
        customer=_id_of(field_of(obj, "customer")),
        status=field_of(obj, "status", default=""),
        current_period_start=start,
        current_period_end=end,
        trial_end=float(trial_end) if trial_end is not None else None,
        metadata={k: str(metadata[k]) for k in metadata.keys()},
    )


def invoice_subscription_id(invoice: Any) -> Optional[str]:
    sid = _id_of(field_of(invoice, "subscription"))
    if sid:
        return sid
    return _id_of(field_of(
        invoice, "parent", "subscription_details", "subscription"
    ))


# ----------------------------
# Stripe implementation
# ----------------------------
class StripeGateway(PaymentGateway):
    """
    Stripe through the `stripe` library. The API key travels with every
    call; nothing is set on the module.
    """

    def __init__(self, api_key: Optional[str],
                 webhook_secret: Optional[str]) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _key(self) -> str:
        if not self.api_key:
            raise NotConfigured("Stripe")
        return self.api_key

    async def _call(self, kind: str, fn, *args, **kwargs):
        # the stripe client is blocking
        async with timeit(f"stripe.{kind}"):
            return await asyncio.to_thread(fn, *args, **kwargs)

    def verify_webhook(self, payload: bytes,
                       signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise NotConfigured("Stripe webhook secret")
        if not signature:
            raise BadRequest("Webhook signature verification failed")
        try:
            stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise BadRequest("Webhook signature verification failed")
        event = json.loads(payload.decode())
        return {
            "id": event.get("id"),
            "type": event.get("type", ""),
            "object": (event.get("data") or {}).get("object") or {},
        }

    async def retrieve_subscription(
            self, subscription_id: str) -> ProcessorSubscription:
        sub = await self._call(
            "subscription.retrieve", stripe.Subscription.retrieve,
            subscription_id, api_key=self._key(),
        )
        return subscription_from_object(sub)

    async def create_invoice_item(
            self, *, customer: str, amount: int, description: str,
            metadata: Dict[str, str], idempotency_key: str) -> str:
        item = await self._call(
            "invoice_item.create", stripe.InvoiceItem.create,
            api_key=self._key(),
            idempotency_key=idempotency_key,
            customer=customer,
            amount=int(amount),
            currency=CURRENCY,
            description=description,
            metadata=metadata,
        )
        return item["id"]

    async def create_and_finalize_invoice(
            self, *, customer: str, description: str,
            metadata: Dict[str, str], idempotency_key: str) -> str:
        invoice = await self._call(
            "invoice.create", stripe.Invoice.create,
            api_key=self._key(),
            idempotency_key=idempotency_key,
            customer=customer,
            description=description,
            auto_advance=True,
            pending_invoice_items_behavior="include",
            metadata=metadata,
        )
        if field_of(invoice, "status") != "draft":
            # replayed idempotent create of an already finalized invoice
            return invoice["id"]
        finalized = await self._call(
            "invoice.finalize", stripe.Invoice.finalize_invoice,
            invoice["id"], api_key=self._key(),
        )
        return finalized["id"]

    async def find_customer_by_email(self, email: str) -> Optional[str]:
        found = await self._call(
            "customer.list", stripe.Customer.list,
            api_key=self._key(), email=email, limit=1,
        )
        data = field_of(found, "data", default=[])
        return data[0]["id"] if data else None

    async def default_payment_method(self, customer: str) -> Optional[str]:
        try:
            cust = await self._call(
                "customer.retrieve", stripe.Customer.retrieve,
                customer, api_key=self._key(),
            )
        except stripe.InvalidRequestError as e:
            logger.error("Failed to retrieve Stripe customer %s: %s",
                         customer, e)
            return None
        if field_of(cust, "deleted", default=False):
            logger.error("Stripe customer has been deleted: %s", customer)
            return None
        return _id_of(field_of(
            cust, "invoice_settings", "default_payment_method"
        ))

    async def charge_off_session(
            self, *, customer: str, payment_method: str, amount: int,
            metadata: Dict[str, str]) -> Tuple[str, str]:
        pi = await self._call(
            "payment_intent.create", stripe.PaymentIntent.create,
            api_key=self._key(),
            amount=int(amount),
            currency=CURRENCY,
            customer=customer,
            payment_method=payment_method,
            confirm=True,
            off_session=True,
            metadata=metadata,
        )
        return pi["id"], field_of(pi, "status", default="")

    async def create_checkout_session(self, params: Dict[str, Any]) -> str:
        session = await self._call(
            "checkout.create", stripe.checkout.Session.create,
            api_key=self._key(), **params,
        )
        return session["url"]

    async def retrieve_checkout_session(
            self, session_id: str) -> ProcessorCheckoutSession:
        s = await self._call(
            "checkout.retrieve", stripe.checkout.Session.retrieve,
            session_id, api_key=self._key(),
        )
        metadata = field_of(s, "metadata", default={}) or {}
        return ProcessorCheckoutSession(
            id=s["id"],
            mode=field_of(s, "mode"),
            payment_status=field_of(s, "payment_status"),
            customer=_id_of(field_of(s, "customer")),
            subscription=_id_of(field_of(s, "subscription")),
            payment_intent=_id_of(field_of(s, "payment_intent")),
            metadata={k: str(metadata[k]) for k in metadata.keys()},
        )

    async def create_portal_session(self, *, customer: str,
                                    return_url: str) -> str:
        portal = await self._call(
            "billing_portal.create", stripe.billing_portal.Session.create,
            api_key=self._key(), customer=customer, return_url=return_url,
        )
        return portal["url"]
