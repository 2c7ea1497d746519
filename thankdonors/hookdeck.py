import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from .errors import NotConfigured, Upstream
from .infra.timings import timeit

logger = logging.getLogger(__name__)

CONNECTION_NAME = "thankdonors"


class RoutingServiceError(Upstream):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message, details=(
            {"statusCode": status} if status is not None else None
        ))
        self.status = status


@dataclass
class Source:
    id: str
    url: str


# ----------------------------
# Routing Service Interface
# ----------------------------
class RoutingService(ABC):
    # -> the created source; raises RoutingServiceError
    @abstractmethod
    async def create_connection(self, source_name: str) -> Source: ...

    @abstractmethod
    async def set_basic_auth(self, source_id: str, username: str,
                             password: str) -> None: ...

    # True when deleted, False when the source did not exist
    @abstractmethod
    async def delete_source(self, source_id: str) -> bool: ...


def parse_source(body) -> Optional[Source]:
    """
    The connection response carries the created source either as `source`
    or as the first entry of `sources`.
    """
    if not isinstance(body, dict):
        return None
    src = body.get("source")
    if not isinstance(src, dict):
        sources = body.get("sources")
        src = sources[0] if isinstance(sources, list) and sources else None
    if not isinstance(src, dict):
        return None
    source_id = src.get("id") or ""
    url = src.get("url") or ""
    if not source_id or not url:
        return None
    return Source(id=source_id, url=url)


# ----------------------------
# Hookdeck implementation
# ----------------------------
class Hookdeck(RoutingService):

    def __init__(self, http: httpx.AsyncClient, api_key: Optional[str],
                 destination_id: Optional[str], api_base: str) -> None:
        self.http = http
        self.api_key = api_key
        self.destination_id = destination_id
        self.api_base = api_base.rstrip("/")

    def _headers(self) -> dict:
        if not self.api_key:
            raise NotConfigured("HOOKDECK_API_KEY")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def create_connection(self, source_name: str) -> Source:
        headers = self._headers()
        if not self.destination_id:
            raise NotConfigured("HOOKDECK_DESTINATION_ID")
        async with timeit("hookdeck.create_connection"):
            res = await self.http.post(
                f"{self.api_base}/connections",
                headers=headers,
                json={
                    "name": CONNECTION_NAME,
                    "source": {"name": source_name, "type": "WEBHOOK"},
                    "destination_id": self.destination_id,
                },
            )
        if res.is_error:
            logger.error("Hookdeck create connection error %s: %s",
                         res.status_code, res.text)
            raise RoutingServiceError(
                f"Hookdeck create connection failed ({res.status_code})",
                res.status_code,
            )
        try:
            body = res.json()
        except ValueError:
            body = None
        source = parse_source(body)
        if source is None:
            logger.error("Could not determine source id/url from Hookdeck "
                         "response")
            raise RoutingServiceError(
                "Failed to create webhook Source in Hookdeck"
            )
        return source

    async def set_basic_auth(self, source_id: str, username: str,
                             password: str) -> None:
        headers = self._headers()
        logger.info("Updating Hookdeck source auth for %s", source_id)
        async with timeit("hookdeck.update_source"):
            res = await self.http.put(
                f"{self.api_base}/sources/{source_id}",
                headers=headers,
                json={
                    "name": source_id,
                    "type": "WEBHOOK",
                    "config": {
                        "auth_type": "BASIC_AUTH",
                        "auth": {"username": username, "password": password},
                    },
                },
            )
        if res.is_error:
            logger.error("Hookdeck source update error %s: %s",
                         res.status_code, res.text)
            raise RoutingServiceError(
                f"Hookdeck source update failed ({res.status_code})",
                res.status_code,
            )

    async def delete_source(self, source_id: str) -> bool:
        headers = self._headers()
        async with timeit("hookdeck.delete_source"):
            res = await self.http.delete(
                f"{self.api_base}/sources/{source_id}", headers=headers,
            )
        if res.status_code == 404:
            logger.info("Hookdeck source %s not found, treated as deleted",
                        source_id)
            return False
        if res.is_error:
            logger.error("Hookdeck delete failed %s: %s",
                         res.status_code, res.text)
            raise RoutingServiceError("Hookdeck delete failed",
                                      res.status_code)
        return True
