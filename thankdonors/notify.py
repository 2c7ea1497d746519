"""
Outbound email notifications through Loops.

`dispatch` applies the profile's notification preferences, calls Loops and
records a `notification_events` row for every message that was sent.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from .authn import AuthService
from .errors import ApiError, BadRequest, NotConfigured, NotFound
from .helpers import now_ts
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model.db import NotificationEvent, Profile

logger = logging.getLogger(__name__)

ACTIONS = ("create_contact", "update_contact", "send_event",
           "send_transactional")

# transactional mail that goes out even with status updates switched off
ALWAYS_SEND = ("welcome",)

EVENT_DONATION_RECEIVED = "donation_received"


# ----------------------------
# Notifier Interface
# ----------------------------
class Notifier(ABC):
    @abstractmethod
    async def create_contact(self, contact: Dict[str, Any]) -> Dict: ...

    @abstractmethod
    async def update_contact(self, contact: Dict[str, Any]) -> Dict: ...

    @abstractmethod
    async def send_event(self, email: str, event_name: str,
                         properties: Dict[str, Any]) -> Dict: ...

    @abstractmethod
    async def send_transactional(self, email: str, transactional_id: str,
                                 variables: Dict[str, Any]) -> Dict: ...


class LoopsNotifier(Notifier):

    def __init__(self, http: httpx.AsyncClient, api_key: Optional[str],
                 api_base: str) -> None:
        self.http = http
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict:
        if not self.api_key:
            raise NotConfigured("LOOPS_API_KEY")
        async with timeit(f"loops.{endpoint}"):
            res = await self.http.post(
                f"{self.api_base}/{endpoint}",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )
        if res.is_error:
            raise ApiError(f"Loops API error: {res.status_code} - {res.text}")
        try:
            return res.json()
        except ValueError:
            return {}

    async def create_contact(self, contact: Dict[str, Any]) -> Dict:
        return await self._post("contacts/create", contact)

    async def update_contact(self, contact: Dict[str, Any]) -> Dict:
        return await self._post("contacts/update", contact)

    async def send_event(self, email: str, event_name: str,
                         properties: Dict[str, Any]) -> Dict:
        return await self._post("events/send", {
            "email": email,
            "eventName": event_name,
            "eventProperties": properties,
        })

    async def send_transactional(self, email: str, transactional_id: str,
                                 variables: Dict[str, Any]) -> Dict:
        return await self._post("transactional", {
            "transactionalId": transactional_id,
            "email": email,
            "dataVariables": variables,
        })


# ----------------------------
# Dispatch
# ----------------------------
def _first_name(profile: Profile) -> Optional[str]:
    if not profile.committee_name:
        return None
    return profile.committee_name.split(" ")[0]


async def _recipient(profile: Profile, auth: Optional[AuthService]) -> str:
    if profile.email:
        return profile.email
    if auth is not None:
        user = await auth.get_user_by_id(profile.id)
        if user is not None and user.email:
            return user.email
    raise ApiError("User email not found")


async def dispatch(
    db: GatedAsyncSession,
    notifier: Notifier,
    action: str,
    profile_id: str,
    data: Optional[Dict[str, Any]] = None,
    *,
    auth: Optional[AuthService] = None,
) -> Dict[str, Any]:
    data = dict(data or {})
    if action not in ACTIONS:
        raise BadRequest(f"Unsupported action: {action}")

    async with db.gated():
        async with db.session.begin():
            profile = await db.session.get(Profile, profile_id)
    if profile is None:
        raise NotFound("Profile not found")

    email = await _recipient(profile, auth)
    event_data: Dict[str, Any] = {"action": action, **data}

    if action in ("create_contact", "update_contact"):
        contact = {
            "email": email,
            "firstName": _first_name(profile),
            "lastName": "",
            "source": "thank-donors-app",
            "subscribed": bool(profile.marketing_emails),
            "userGroup": "committee",
            "userId": profile_id,
            "committeName": profile.committee_name,
            "organizationName": profile.organization_name,
            "city": profile.city,
            "state": profile.state,
            "country": profile.country,
            "subscriptionStatus": "active",
            **data,
        }
        if action == "create_contact":
            result = await notifier.create_contact(contact)
        else:
            result = await notifier.update_contact(contact)
    elif action == "send_event":
        if not profile.email_notifications:
            logger.info("Email notifications disabled for %s", profile_id)
            return {"success": True, "skipped": True}
        if not data.get("eventName"):
            raise BadRequest("eventName is required")
        result = await notifier.send_event(email, data["eventName"], {
            "userId": profile_id,
            "committeName": profile.committee_name,
            "organizationName": profile.organization_name,
            **(data.get("eventProperties") or {}),
        })
    else:
        transactional_id = data.get("transactionalId")
        if not transactional_id:
            raise BadRequest("transactionalId is required")
        if (not profile.status_updates
                and transactional_id not in ALWAYS_SEND):
            logger.info("Status updates disabled for %s", profile_id)
            return {"success": True, "skipped": True}
        result = await notifier.send_transactional(email, transactional_id, {
            "firstName": _first_name(profile) or "there",
            "committeName": profile.committee_name,
            "organizationName": profile.organization_name,
            **(data.get("dataVariables") or {}),
        })

    contact_id = result.get("id") if action == "create_contact" else None

    async with db.gated():
        async with db.session.begin():
            if contact_id:
                profile = await db.session.get(Profile, profile_id)
                if profile is not None:
                    profile.loops_contact_id = contact_id
                    profile.updated_at = now_ts()
                event_data["loops_contact_id"] = contact_id
            db.session.add(NotificationEvent(
                id=uuid.uuid4().hex,
                profile_id=profile_id,
                event_type=action,
                event_data=event_data,
                loops_sent=True,
                loops_event_id=str(result.get("id") or "sent"),
                created_at=now_ts(),
            ))

    return {"success": True, "loops_response": result}


async def notify_donation_received(
    db: GatedAsyncSession,
    notifier: Optional[Notifier],
    profile_id: str,
    properties: Dict[str, Any],
    *,
    auth: Optional[AuthService] = None,
) -> bool:
    """
    Best effort: failures are logged and reported as False.
    """
    if notifier is None:
        return False
    try:
        await dispatch(db, notifier, "send_event", profile_id, {
            "eventName": EVENT_DONATION_RECEIVED,
            "eventProperties": properties,
        }, auth=auth)
    except Exception:
        logger.warning("donation_received notification failed for %s",
                       profile_id, exc_info=True)
        return False
    return True
