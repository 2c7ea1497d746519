import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from .errors import ApiError, NotConfigured, Unauthorized
from .helpers import ct_equal
from .infra.timings import timeit

logger = logging.getLogger(__name__)


@dataclass
class AuthUser:
    id: str
    email: Optional[str]


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ----------------------------
# Auth Service Interface
# ----------------------------
class AuthService(ABC):
    # raises Unauthorized when the token does not resolve to a user
    @abstractmethod
    async def get_user(self, token: str) -> AuthUser: ...

    # admin lookup by id; None when the user does not exist
    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> Optional[AuthUser]: ...

    @abstractmethod
    async def delete_user(self, user_id: str) -> None: ...

    # internal callers present the service role key
    @abstractmethod
    def is_service_token(self, token: Optional[str]) -> bool: ...


# ----------------------------
# Supabase GoTrue implementation
# ----------------------------
class SupabaseAuth(AuthService):

    def __init__(self, http: httpx.AsyncClient, url: Optional[str],
                 anon_key: Optional[str],
                 service_role_key: Optional[str]) -> None:
        self.http = http
        self.url = url.rstrip("/") if url else None
        self.anon_key = anon_key
        self.service_role_key = service_role_key

    def _admin_headers(self) -> dict:
        if not self.url or not self.service_role_key:
            raise NotConfigured("Supabase")
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }

    async def get_user(self, token: str) -> AuthUser:
        if not self.url or not self.anon_key:
            raise NotConfigured("Supabase")
        async with timeit("auth.get_user"):
            res = await self.http.get(
                f"{self.url}/auth/v1/user",
                headers={
                    "apikey": self.anon_key,
                    "Authorization": f"Bearer {token}",
                },
            )
        if res.status_code != 200:
            raise Unauthorized("Unauthorized")
        body = res.json()
        if not body.get("id"):
            raise Unauthorized("Unauthorized")
        return AuthUser(id=body["id"], email=body.get("email"))

    async def get_user_by_id(self, user_id: str) -> Optional[AuthUser]:
        headers = self._admin_headers()
        async with timeit("auth.admin_get_user"):
            res = await self.http.get(
                f"{self.url}/auth/v1/admin/users/{user_id}", headers=headers,
            )
        if res.status_code == 404:
            return None
        if res.is_error:
            raise ApiError(f"User lookup failed ({res.status_code})")
        body = res.json()
        return AuthUser(id=body.get("id", user_id), email=body.get("email"))

    async def delete_user(self, user_id: str) -> None:
        headers = self._admin_headers()
        async with timeit("auth.admin_delete_user"):
            res = await self.http.delete(
                f"{self.url}/auth/v1/admin/users/{user_id}", headers=headers,
            )
        if res.is_error:
            logger.error("Auth user delete failed %s: %s",
                         res.status_code, res.text)
            raise ApiError("Failed to delete account")

    def is_service_token(self, token: Optional[str]) -> bool:
        if not token or not self.service_role_key:
            return False
        return ct_equal(token, self.service_role_key)


def basic_credentials(
        authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    """`Authorization: Basic ...` -> (username, password)."""
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "basic" or not value.strip():
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password
