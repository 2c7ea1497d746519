"""
Inbound donation webhook endpoints on the routing service.

Each profile gets one routing-service source named after the profile id,
protected with HTTP Basic auth (username = account email). Only a salted
bcrypt hash of the password is stored; the plaintext is returned once, by
`provision_webhook` or `rotate_webhook_password`.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import BadRequest, NotConfigured, NotFound
from .helpers import (
    hash_password, new_salt, now_ts, random_password, verify_password,
)
from .hookdeck import RoutingService
from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .model.profiles import ensure_profile, has_credentials

logger = logging.getLogger(__name__)

PASSWORD_BYTES = 24


async def _store_credentials(session: AsyncSession, profile_id: str,
                             password: str) -> None:
    salt = new_salt()
    now = now_ts()
    await session.execute(text("""
        INSERT INTO webhook_credentials(
            profile_id, password_hash, salt, created_at, updated_at
        ) VALUES (:p, :hash, :salt, :now, :now)
        ON CONFLICT (profile_id) DO UPDATE
        SET password_hash = excluded.password_hash,
            salt = excluded.salt,
            updated_at = excluded.updated_at
    """), {
        "p": profile_id, "hash": hash_password(password, salt),
        "salt": salt, "now": now,
    })


async def _clear_webhook(session: AsyncSession, profile_id: str) -> None:
    await session.execute(text("""
        UPDATE profiles
        SET webhook_url = NULL, source_id = NULL, updated_at = :now
        WHERE id = :p
    """), {"p": profile_id, "now": now_ts()})
    await session.execute(text("""
        DELETE FROM webhook_credentials WHERE profile_id = :p
    """), {"p": profile_id})


async def provision_webhook(db: GatedAsyncSession, routing: RoutingService,
                            user_id: str,
                            email: Optional[str]) -> Dict[str, Any]:
    if not user_id:
        raise BadRequest("Invalid or missing user_id")

    async with db.gated():
        async with db.session.begin():
            profile = await ensure_profile(db.session, user_id, email)
            webhook_url = profile.webhook_url
            provisioned = await has_credentials(db.session, user_id)

    if webhook_url and provisioned:
        logger.info("Webhook already provisioned for %s", user_id)
        return {"status": "already_provisioned", "webhook_url": webhook_url}

    if not email:
        raise BadRequest("Missing email (username for basic auth)")

    password = random_password(PASSWORD_BYTES)
    source = await routing.create_connection(user_id)
    await routing.set_basic_auth(source.id, email, password)

    async with timeit("db.store_webhook"):
        async with db.gated():
            async with db.session.begin():
                await db.session.execute(text("""
                    UPDATE profiles
                    SET webhook_url = :url, source_id = :src,
                        updated_at = :now
                    WHERE id = :p
                """), {"url": source.url, "src": source.id,
                       "now": now_ts(), "p": user_id})
                await _store_credentials(db.session, user_id, password)

    logger.info("Webhook provisioned for %s (source %s)", user_id, source.id)
    return {
        "status": "ok",
        "webhook_url": source.url,
        "username": email,
        "password": password,
    }


async def rotate_webhook_password(db: GatedAsyncSession,
                                  routing: RoutingService, user_id: str,
                                  email: Optional[str]) -> Dict[str, Any]:
    if not email:
        raise BadRequest("Missing email (username for basic auth)")

    async with db.gated():
        async with db.session.begin():
            source_id = (await db.session.execute(text("""
                SELECT source_id FROM profiles WHERE id=:p
            """), {"p": user_id})).scalar_one_or_none()
    if not source_id:
        raise NotFound("No webhook source found")

    password = random_password(PASSWORD_BYTES)
    await routing.set_basic_auth(source_id, email, password)
    async with db.gated():
        async with db.session.begin():
            await _store_credentials(db.session, user_id, password)

    logger.info("Webhook password rotated for %s", user_id)
    return {"status": "rotated", "username": email, "password": password}


async def delete_webhook(db: GatedAsyncSession, routing: RoutingService,
                         user_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT id, source_id FROM profiles WHERE id=:p
            """), {"p": user_id})).mappings().first()

    if row is None:
        return {"status": "no_profile"}

    source_id = row["source_id"]
    if not source_id:
        async with db.gated():
            async with db.session.begin():
                await _clear_webhook(db.session, user_id)
        return {"status": "no_source"}

    try:
        await routing.delete_source(source_id)
    except NotConfigured:
        logger.warning("Routing service not configured; skipping source "
                       "deletion for %s", user_id)

    async with db.gated():
        async with db.session.begin():
            await _clear_webhook(db.session, user_id)

    return {"status": "deleted", "source_id": source_id}


async def verify_webhook_password(db: GatedAsyncSession, profile_id: str,
                                  password: str) -> Optional[bool]:
    """
    None when the profile has no stored credentials.
    """
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT password_hash FROM webhook_credentials
                WHERE profile_id=:p
            """), {"p": profile_id})).mappings().first()
    if row is None:
        return None
    return verify_password(password, row["password_hash"])
