from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .authn import AuthService, SupabaseAuth
from .config import Settings
from .hookdeck import Hookdeck, RoutingService
from .infra.sql import Gated, make_async_engine, open_db
from .model.db import create_schema
from .model.monitorqueue import MonitorQueue, new_queue
from .monitor import MonitorWorker, RetryPolicy
from .notify import LoopsNotifier, Notifier
from .payments import PaymentGateway, StripeGateway


@dataclass
class Services:
    """
    Every client a handler may need, built once at startup (or by a test)
    and passed down explicitly.
    """
    settings: Settings
    session_factory: async_sessionmaker
    gated: Gated
    gateway: PaymentGateway
    routing: RoutingService
    auth: AuthService
    queue: MonitorQueue
    policy: RetryPolicy
    notifier: Optional[Notifier] = None
    engine: Optional[AsyncEngine] = None
    http: Optional[httpx.AsyncClient] = None
    redis: Optional[aioredis.Redis] = None

    def db(self):
        return open_db(self.session_factory, self.gated)

    def worker(self, **kw) -> MonitorWorker:
        return MonitorWorker(
            queue=self.queue,
            session_factory=self.session_factory,
            gated=self.gated,
            gateway=self.gateway,
            policy=self.policy,
            **kw,
        )

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
            self.http = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None


def new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=32
        ),
    )


def new_redis(settings: Settings) -> aioredis.Redis:
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        max_connections=settings.redis_max_conn,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


async def build_services(settings: Settings) -> Services:
    """
    Production wiring: engine + schema, one shared HTTP client, optional
    Redis, and the processor/routing/auth/notification clients.
    """
    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    async with engine.begin() as conn:
        await create_schema(conn, settings.stripe_pro_price_id)

    http = new_http_client()
    r = None
    if settings.monitor_queue_backend == "redis":
        r = new_redis(settings)

    return Services(
        settings=settings,
        session_factory=SessionAsync,
        gated=gated,
        gateway=StripeGateway(settings.stripe_secret_key,
                              settings.stripe_webhook_secret),
        routing=Hookdeck(http, settings.hookdeck_api_key,
                         settings.hookdeck_destination_id,
                         settings.hookdeck_api_base),
        auth=SupabaseAuth(http, settings.supabase_url,
                          settings.supabase_anon_key,
                          settings.supabase_service_role_key),
        queue=new_queue(settings.monitor_queue_backend,
                        session_factory=SessionAsync, gated=gated, r=r),
        policy=RetryPolicy.from_settings(settings),
        notifier=LoopsNotifier(http, settings.loops_api_key,
                               settings.loops_api_base),
        engine=engine,
        http=http,
        redis=r,
    )
