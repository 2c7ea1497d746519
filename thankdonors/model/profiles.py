from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from .db import Profile


# caller owns the transaction
async def ensure_profile(session: AsyncSession, profile_id: str,
                         email: Optional[str] = None) -> Profile:
    """
    Return the profile row, creating it on first sight of an auth user.
    """
    now = now_ts()
    await session.execute(text("""
        INSERT INTO profiles(
            id, email, country,
            email_notifications, status_updates, marketing_emails,
            onboarding_step, onboarding_completed, created_at, updated_at
        ) VALUES (
            :id, :email, 'US', true, true, true, 0, false, :now, :now
        )
        ON CONFLICT (id) DO NOTHING
    """), {"id": profile_id, "email": email, "now": now})
    profile = await session.get(Profile, profile_id)
    if email and not profile.email:
        profile.email = email
        profile.updated_at = now
    return profile


async def has_credentials(session: AsyncSession, profile_id: str) -> bool:
    found = (await session.execute(text("""
        SELECT 1 FROM webhook_credentials WHERE profile_id=:p
    """), {"p": profile_id})).first()
    return found is not None
