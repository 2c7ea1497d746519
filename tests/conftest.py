import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from sqlalchemy import text

from thankdonors.authn import AuthService, AuthUser
from thankdonors.config import Settings
from thankdonors.errors import ApiError, BadRequest, Unauthorized
from thankdonors.hookdeck import RoutingService, RoutingServiceError, Source
from thankdonors.infra.sql import make_async_engine, open_db
from thankdonors.model.db import (
    Donation, Postcard, Profile, PC_PENDING, create_schema,
)
from thankdonors.model.monitorqueue import new_queue
from thankdonors.monitor import RetryPolicy
from thankdonors.notify import Notifier
from thankdonors.payments import (
    PaymentGateway, ProcessorCheckoutSession, ProcessorSubscription,
)
from thankdonors.server import create_app
from thankdonors.services import Services
from thankdonors.helpers import now_ts

SERVICE_KEY = "service-role-key"
USER_TOKEN = "user-token"
VALID_SIGNATURE = "t=1,v1=valid"


# ----------------------------
# Fakes
# ----------------------------
class FakeGateway(PaymentGateway):

    def __init__(self) -> None:
        self.subscriptions: Dict[str, ProcessorSubscription] = {}
        self.invoice_items: Dict[str, Dict[str, Any]] = {}  # by idem key
        self.invoices: Dict[str, Dict[str, Any]] = {}  # by idem key
        self.invoice_calls: List[str] = []  # idem key per call
        self.customers: Dict[str, str] = {}  # email -> customer id
        self.payment_methods: Dict[str, str] = {}  # customer -> pm
        self.charges: List[Dict[str, Any]] = []
        self.charge_status = "succeeded"
        self.checkout_params: List[Dict[str, Any]] = []
        self.checkout_sessions: Dict[str, ProcessorCheckoutSession] = {}
        self.portal_customers: List[str] = []
        self.fail_invoice_items = False

    def verify_webhook(self, payload: bytes,
                       signature: Optional[str]) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise BadRequest("Webhook signature verification failed")
        event = json.loads(payload.decode())
        return {
            "id": event.get("id"),
            "type": event.get("type", ""),
            "object": event["data"]["object"],
        }

    async def retrieve_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    async def create_invoice_item(self, *, customer, amount, description,
                                  metadata, idempotency_key):
        if self.fail_invoice_items:
            raise RuntimeError("processor unavailable")
        item = self.invoice_items.get(idempotency_key)
        if item is None:
            item = {
                "id": f"ii_{uuid.uuid4().hex[:12]}", "customer": customer,
                "amount": amount, "description": description,
                "metadata": metadata,
            }
            self.invoice_items[idempotency_key] = item
        return item["id"]

    async def create_and_finalize_invoice(self, *, customer, description,
                                          metadata, idempotency_key):
        self.invoice_calls.append(idempotency_key)
        inv = self.invoices.get(idempotency_key)
        if inv is None:
            inv = {"id": f"in_{uuid.uuid4().hex[:12]}", "customer": customer,
                   "description": description, "status": "open"}
            self.invoices[idempotency_key] = inv
        return inv["id"]

    async def find_customer_by_email(self, email):
        return self.customers.get(email)

    async def default_payment_method(self, customer):
        return self.payment_methods.get(customer)

    async def charge_off_session(self, *, customer, payment_method, amount,
                                 metadata):
        pi = f"pi_{uuid.uuid4().hex[:12]}"
        self.charges.append({"id": pi, "customer": customer,
                             "amount": amount, "metadata": metadata})
        return pi, self.charge_status

    async def create_checkout_session(self, params):
        self.checkout_params.append(params)
        return f"https://checkout.test/{len(self.checkout_params)}"

    async def retrieve_checkout_session(self, session_id):
        return self.checkout_sessions[session_id]

    async def create_portal_session(self, *, customer, return_url):
        self.portal_customers.append(customer)
        return f"https://portal.test/{customer}"


class FakeRouting(RoutingService):

    def __init__(self) -> None:
        self.connections: List[str] = []
        self.auth: Dict[str, Tuple[str, str]] = {}
        self.deleted: List[str] = []
        self.missing_sources: set = set()
        self.fail_delete = False

    async def create_connection(self, source_name):
        self.connections.append(source_name)
        n = len(self.connections)
        return Source(id=f"src_{n}", url=f"https://hkdk.test/src_{n}")

    async def set_basic_auth(self, source_id, username, password):
        self.auth[source_id] = (username, password)

    async def delete_source(self, source_id):
        if self.fail_delete:
            raise RoutingServiceError("Hookdeck delete failed", 500)
        self.deleted.append(source_id)
        return source_id not in self.missing_sources


class FakeNotifier(Notifier):

    def __init__(self) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False

    async def _record(self, kind, payload):
        if self.fail:
            raise RuntimeError("loops down")
        self.sent.append((kind, payload))
        return {"success": True, "id": f"loops_{len(self.sent)}"}

    async def create_contact(self, contact):
        return await self._record("create_contact", contact)

    async def update_contact(self, contact):
        return await self._record("update_contact", contact)

    async def send_event(self, email, event_name, properties):
        return await self._record("send_event", {
            "email": email, "eventName": event_name,
            "eventProperties": properties,
        })

    async def send_transactional(self, email, transactional_id, variables):
        return await self._record("send_transactional", {
            "email": email, "transactionalId": transactional_id,
            "dataVariables": variables,
        })


class FakeAuth(AuthService):

    def __init__(self) -> None:
        self.tokens: Dict[str, AuthUser] = {}
        self.deleted: List[str] = []
        self.fail_delete = False

    async def get_user(self, token):
        user = self.tokens.get(token)
        if user is None:
            raise Unauthorized("Unauthorized")
        return user

    async def get_user_by_id(self, user_id):
        for user in self.tokens.values():
            if user.id == user_id:
                return user
        return None

    async def delete_user(self, user_id):
        if self.fail_delete:
            raise ApiError("Failed to delete account")
        self.deleted.append(user_id)

    def is_service_token(self, token):
        return token == SERVICE_KEY


# ----------------------------
# Database
# ----------------------------
@pytest.fixture
async def database(tmp_path):
    url = f"sqlite:///{tmp_path / 'thankdonors.db'}"
    engine, SessionAsync, gated = make_async_engine(url)
    async with engine.begin() as conn:
        await create_schema(conn, pro_price_id="price_pro")
    yield url, engine, SessionAsync, gated
    await engine.dispose()


@pytest.fixture
def session_factory(database):
    return database[2]


@pytest.fixture
def gated(database):
    return database[3]


@pytest.fixture
async def db(session_factory, gated):
    async with open_db(session_factory, gated) as gdb:
        yield gdb


@pytest.fixture
def open_session(session_factory, gated):
    """Fresh GatedAsyncSession per call, for concurrent work and reads."""
    def _open():
        return open_db(session_factory, gated)
    return _open


@pytest.fixture
def fetch(open_session):
    async def _fetch(sql: str, **params):
        async with open_session() as gdb:
            async with gdb.session.begin():
                rows = (await gdb.session.execute(
                    text(sql), params
                )).mappings().all()
        return [dict(r) for r in rows]
    return _fetch


class Seeder:

    def __init__(self, open_session) -> None:
        self.open_session = open_session

    async def _add(self, *objs) -> None:
        async with self.open_session() as gdb:
            async with gdb.session.begin():
                gdb.session.add_all(list(objs))

    async def execute(self, sql: str, **params) -> None:
        async with self.open_session() as gdb:
            async with gdb.session.begin():
                await gdb.session.execute(text(sql), params)

    async def profile(self, profile_id: Optional[str] = None,
                      email: str = "treasurer@committee.test",
                      **fields) -> str:
        profile_id = profile_id or f"user-{uuid.uuid4().hex[:8]}"
        await self._add(Profile(
            id=profile_id, email=email, committee_name="Friends of Pat",
            created_at=now_ts(), updated_at=now_ts(), **fields,
        ))
        return profile_id

    async def postcard(self, profile_id: str, status: str = PC_PENDING,
                       usage_billed: bool = False) -> str:
        donation_id = uuid.uuid4().hex
        postcard_id = uuid.uuid4().hex
        await self._add(Donation(
            id=donation_id, profile_id=profile_id, donor_name="Ada Donor",
            amount=Decimal("25.00"), created_at=now_ts(),
        ))
        await self._add(Postcard(
            id=postcard_id, donation_id=donation_id, status=status,
            usage_billed=usage_billed, created_at=now_ts(),
            updated_at=now_ts(),
        ))
        return postcard_id

    async def subscription(self, profile_id: str, plan_id: int,
                           status: str = "active",
                           customer: Optional[str] = "cus_1",
                           subscription_id: Optional[str] = None,
                           period: Tuple[Optional[float],
                                         Optional[float]] = (None, None)):
        await self.execute("""
            INSERT INTO user_subscriptions(
                id, profile_id, plan_id, status, stripe_customer_id,
                stripe_subscription_id, current_period_start,
                current_period_end, trial_used, created_at
            ) VALUES (:id, :p, :plan, :status, :cust, :sub, :start, :end,
                      false, :now)
        """, id=uuid.uuid4().hex, p=profile_id, plan=plan_id, status=status,
            cust=customer, sub=subscription_id, start=period[0],
            end=period[1], now=now_ts())

    async def balance(self, profile_id: str, cents: int,
                      auto_topup: bool = True) -> None:
        await self.execute("""
            INSERT INTO account_balances(
                profile_id, current_balance, auto_topup_enabled,
                created_at, updated_at
            ) VALUES (:p, :bal, :auto, :now, :now)
        """, p=profile_id, bal=cents, auto=auto_topup, now=now_ts())


@pytest.fixture
def seed(open_session):
    return Seeder(open_session)


# ----------------------------
# Services & app
# ----------------------------
@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def routing():
    return FakeRouting()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def auth():
    fake = FakeAuth()
    fake.tokens[USER_TOKEN] = AuthUser(id="user-1",
                                       email="treasurer@committee.test")
    return fake


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, delay=30.0, backoff=2.0,
                       max_delay=300.0)


@pytest.fixture
def queue(session_factory, gated):
    return new_queue("pg", session_factory=session_factory, gated=gated)


@pytest.fixture
def services(database, session_factory, gated, gateway, routing, auth,
             notifier, queue, policy):
    settings = Settings(
        database_url=database[0],
        supabase_service_role_key=SERVICE_KEY,
        app_origin="https://app.test",
        monitor_in_process=False,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        gated=gated,
        gateway=gateway,
        routing=routing,
        auth=auth,
        queue=queue,
        policy=policy,
        notifier=notifier,
    )


@pytest.fixture
async def client(services):
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://test") as c:
        yield c


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {USER_TOKEN}"}


@pytest.fixture
def service_headers():
    return {"Authorization": f"Bearer {SERVICE_KEY}"}
