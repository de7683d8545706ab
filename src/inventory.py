"""
Inventory Client - HTTP facade for the external instance mapping inventory.

Each operation authenticates on its own with an OAuth2 client-credentials
exchange and then issues exactly one request. The client holds nothing but
the credentials it was built from; there is no token cache and no retry.
"""

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

MAPPINGS_PATH = "/inventory/v2/serviceInstances/{service_instance_id}/instanceMappings"
TOKEN_PATH = "/oauth/token"

# Upper bound on response bodies read from the inventory and token endpoints
MAX_RESPONSE_BYTES = 64 * 1024
READ_CHUNK_SIZE = 8192

PLATFORM_KUBERNETES = "kubernetes"


class InventoryError(Exception):
    """Base class for inventory client errors."""


class MappingAlreadyExistsError(InventoryError):
    def __init__(self, message: str = "mapping already exists"):
        super().__init__(message)


class MappingNotFoundError(InventoryError):
    def __init__(self, message: str = "mapping not found"):
        super().__init__(message)


class InventoryHTTPError(InventoryError):
    """Unexpected HTTP status from the inventory service."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class InventoryAuthError(InventoryError):
    """The client-credentials token exchange failed."""


class InvalidResponseError(InventoryError):
    """The inventory answered with a body it should not have sent."""


class ResponseTooLargeError(InventoryError):
    def __init__(self, limit: int = MAX_RESPONSE_BYTES):
        super().__init__(f"response body exceeds {limit} bytes")
        self.limit = limit


@dataclass
class UAACredentials:
    """OAuth2 client credentials of the admin API access binding."""

    url: str
    client_id: str
    client_secret: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UAACredentials":
        return cls(
            url=data["url"],
            client_id=data["clientid"],
            client_secret=data["clientsecret"],
        )

    def __repr__(self) -> str:
        return f"UAACredentials(url={self.url!r}, client_id={self.client_id!r})"


@dataclass
class Binding:
    """Where the inventory lives and how to authenticate against it."""

    base_url: str
    uaa: UAACredentials


@dataclass
class InventoryMapping:
    """A mapping record as stored by the inventory service."""

    platform: str
    primary_id: str
    secondary_id: str
    is_default: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InventoryMapping":
        return cls(
            platform=data.get("platform", ""),
            primary_id=data.get("primaryID", ""),
            secondary_id=data.get("secondaryID", ""),
            is_default=bool(data.get("isDefault", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "platform": self.platform,
            "primaryID": self.primary_id,
            "secondaryID": self.secondary_id,
        }
        if self.is_default:
            result["isDefault"] = True
        return result


async def read_limited(
    response: aiohttp.ClientResponse, limit: int = MAX_RESPONSE_BYTES
) -> bytes:
    """
    Read a response body up to EOF, refusing bodies larger than ``limit``.

    The body may arrive in any number of chunks; reading stops as soon as
    the running total passes the limit.
    """
    chunks = []
    total = 0
    async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
        total += len(chunk)
        if total > limit:
            raise ResponseTooLargeError(limit)
        chunks.append(chunk)
    return b"".join(chunks)


def parse_mappings(body: bytes) -> List[InventoryMapping]:
    """Decode a list response; an empty body means no records."""
    if not body:
        return []
    try:
        data = json.loads(body)
    except ValueError as e:
        raise InvalidResponseError(f"invalid mappings response: {e}") from e
    if not isinstance(data, dict):
        raise InvalidResponseError(
            f"invalid mappings response: expected an object, got {type(data).__name__}"
        )

    records = data.get("mappings") or []
    if not isinstance(records, list) or not all(isinstance(m, dict) for m in records):
        raise InvalidResponseError(
            "invalid mappings response: mappings is not a list of objects"
        )
    return [InventoryMapping.from_dict(m) for m in records]


def basic_auth_header(client_id: str, client_secret: str) -> str:
    credentials = f"{client_id}:{client_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


class InventoryClient:
    """
    Client for the instance mapping endpoints of the inventory service.

    Args:
        binding: Base URL and UAA credentials, usually read from the
            resource's admin API access secret.
        timeout: Optional total timeout in seconds applied to every HTTP
            call, token exchange included. None leaves aiohttp's default.
    """

    def __init__(self, binding: Binding, timeout: Optional[float] = None):
        self.binding = binding
        self.timeout = timeout

    def _base_url(self) -> str:
        base_url = self.binding.base_url.rstrip("/")
        if "://" not in base_url:
            base_url = f"https://{base_url}"
        return base_url

    def _mappings_url(self, service_instance_id: str) -> str:
        return self._base_url() + MAPPINGS_PATH.format(
            service_instance_id=service_instance_id
        )

    def _session(self) -> aiohttp.ClientSession:
        if self.timeout is None:
            return aiohttp.ClientSession()
        return aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        )

    async def _fetch_token(self, session: aiohttp.ClientSession) -> str:
        """Exchange the client credentials for a bearer token."""
        uaa = self.binding.uaa
        token_url = uaa.url.rstrip("/") + TOKEN_PATH
        async with session.post(
            token_url,
            data={"grant_type": "client_credentials"},
            headers={
                "Authorization": basic_auth_header(uaa.client_id, uaa.client_secret),
                "Accept": "application/json",
            },
        ) as response:
            if response.status != 200:
                raise InventoryAuthError(
                    f"failed to obtain access token, HTTP {response.status}"
                )
            body = await read_limited(response)

        try:
            token = json.loads(body).get("access_token")
        except (ValueError, AttributeError) as e:
            raise InventoryAuthError(f"invalid token response: {e}") from e
        if not token:
            raise InventoryAuthError("token response carries no access_token")
        return token

    async def _headers(self, session: aiohttp.ClientSession) -> Dict[str, str]:
        token = await self._fetch_token(session)
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }

    async def list_mappings(self, service_instance_id: str) -> List[InventoryMapping]:
        """List the mapping records of a service instance."""
        url = self._mappings_url(service_instance_id)

        async with self._session() as session:
            headers = await self._headers(session)
            async with session.get(url, headers=headers) as response:
                if response.status != 200:
                    raise InventoryHTTPError(
                        f"failed to list mappings, HTTP {response.status}",
                        response.status,
                    )
                body = await read_limited(response)

        return parse_mappings(body)

    async def create_mapping(
        self, service_instance_id: str, mapping: InventoryMapping
    ) -> None:
        """
        Create a mapping record.

        Raises:
            MappingAlreadyExistsError: The service answered 200 because an
                identical record already exists.
            InventoryHTTPError: Any status other than 200/201.
        """
        url = self._mappings_url(service_instance_id)

        async with self._session() as session:
            headers = await self._headers(session)
            async with session.post(
                url, json=mapping.to_dict(), headers=headers
            ) as response:
                if response.status == 201:
                    logger.debug(
                        f"Created inventory mapping {service_instance_id} -> "
                        f"{mapping.primary_id}/{mapping.secondary_id}"
                    )
                    return
                if response.status == 200:
                    raise MappingAlreadyExistsError()
                raise InventoryHTTPError(
                    f"failed to create mapping, HTTP {response.status}",
                    response.status,
                )

    async def delete_mapping(
        self, service_instance_id: str, primary_id: str, secondary_id: str
    ) -> None:
        """
        Delete a mapping record.

        Raises:
            MappingNotFoundError: The record does not exist (404).
            InventoryHTTPError: Any status other than 200/404.
        """
        url = self._mappings_url(service_instance_id)
        params = {"primaryID": primary_id, "secondaryID": secondary_id}

        async with self._session() as session:
            headers = await self._headers(session)
            async with session.delete(
                url, params=params, headers=headers
            ) as response:
                if response.status == 200:
                    logger.debug(
                        f"Deleted inventory mapping {service_instance_id} -> "
                        f"{primary_id}/{secondary_id}"
                    )
                    return
                if response.status == 404:
                    raise MappingNotFoundError()
                raise InventoryHTTPError(
                    f"failed to delete mapping, HTTP {response.status}",
                    response.status,
                )
