"""
Backing-store clients: the interface every credential store satisfies,
an aiohttp implementation for REST directory stores, and the per-process
registry that hands out one client per store name.

Error shapes drive the retry policy of the propagation unit:
- ``RecordNotFoundError``: the store definitively rejected the request
  (the record does not exist). Never retried.
- ``StoreAuthError`` / ``StoreError``: transient (network, timeout, auth,
  server errors). Retried with backoff.

Security Note:
    Never log system passwords or credential hashes.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import aiohttp

logger = logging.getLogger("credsync.clients")


class StoreError(Exception):
    """Transient failure talking to a backing store."""

    retryable = True

    def __init__(self, store_name: str, message: str):
        self.store_name = store_name
        super().__init__(message)


class StoreAuthError(StoreError):
    """The backing store refused the system credentials or session."""


class RecordNotFoundError(StoreError):
    """The backing store reports that the record does not exist."""

    retryable = False

    def __init__(self, store_name: str, record_id: str):
        self.record_id = record_id
        super().__init__(store_name, f"Record {record_id} not found in {store_name}")


class BackingStoreClient(ABC):
    """Client for one named backing store."""

    store_name: str

    @abstractmethod
    async def authenticate(self, username: str, password: str) -> Any:
        """Open an authenticated session with the store."""

    @abstractmethod
    async def update_credential(
        self, record_id: str, hashed_value: str, updated_at: datetime,
    ) -> Any:
        """Replace the credential hash held for ``record_id``."""

    @abstractmethod
    async def get_credential(self, record_id: str) -> Optional[str]:
        """Return the credential hash held for ``record_id``."""

    @abstractmethod
    def is_authenticated(self) -> bool:
        """True while the client holds a live session."""

    async def create_record(self, data: dict[str, Any]) -> str:
        """Create a user record and return its id."""
        raise NotImplementedError(f"{type(self).__name__} cannot create records")

    async def delete_record(self, record_id: str) -> None:
        """Delete a user record."""
        raise NotImplementedError(f"{type(self).__name__} cannot delete records")

    async def get_record(self, record_id: str) -> dict[str, Any]:
        """Return the fields of a user record."""
        raise NotImplementedError(f"{type(self).__name__} cannot read records")

    async def update_record(self, record_id: str, data: dict[str, Any]) -> Any:
        """Merge ``data`` into a user record."""
        raise NotImplementedError(f"{type(self).__name__} cannot update records")

    async def close(self) -> None:
        """Release network resources held by the client."""


class HTTPStoreClient(BackingStoreClient):
    """REST directory store reached over HTTP.

    Endpoints, relative to ``base_url``:
    - ``POST /{store}/auth`` with ``{"login", "pwd"}`` → ``{"token", "xsrf", "expires_in"}``
    - ``GET|PUT|DELETE /{store}/records/{id}``
    - ``POST /{store}/records``
    """

    def __init__(
        self,
        store_name: str,
        base_url: str,
        http: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ):
        self.store_name = store_name
        self._base_url = base_url.rstrip("/")
        self._http = http
        self._owns_http = http is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._token: Optional[str] = None
        self._xsrf: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    def _url(self, *parts: str) -> str:
        return "/".join([self._base_url, self.store_name, *parts])

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_http = True
        return self._http

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if self._xsrf:
            headers["X-XSRF-TOKEN"] = self._xsrf
        return headers

    async def _check(self, response: aiohttp.ClientResponse, record_id: Optional[str] = None) -> None:
        if response.status == 404 and record_id is not None:
            raise RecordNotFoundError(self.store_name, record_id)
        if response.status in (401, 403):
            self.clear_session()
            raise StoreAuthError(
                self.store_name, f"{self.store_name} rejected session ({response.status})",
            )
        if response.status >= 400:
            body = await response.text()
            raise StoreError(
                self.store_name,
                f"{self.store_name} returned {response.status}: {body[:200]}",
            )

    async def _request(
        self,
        method: str,
        url: str,
        record_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            async with self._session().request(
                method, url, headers=self._headers(), **kwargs,
            ) as response:
                await self._check(response, record_id)
                if response.content_type == "application/json":
                    return await response.json()
                return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise StoreError(self.store_name, f"{self.store_name} request failed: {err}") from err

    async def authenticate(self, username: str, password: str) -> dict[str, Any]:
        logger.debug("Authenticating: store=%s username=%s", self.store_name, username)
        data = await self._request(
            "POST", self._url("auth"), json={"login": username, "pwd": password},
        )
        if not data or data.get("failed") or not data.get("token"):
            raise StoreAuthError(self.store_name, "Invalid login or password")
        self._token = data["token"]
        self._xsrf = data.get("xsrf")
        expires_in = data.get("expires_in")
        self._expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            if expires_in else None
        )
        return data

    def is_authenticated(self) -> bool:
        if self._token is None:
            return False
        if self._expires_at is not None and self._expires_at <= datetime.now(timezone.utc):
            self.clear_session()
            return False
        return True

    def clear_session(self) -> None:
        self._token = None
        self._xsrf = None
        self._expires_at = None

    async def update_credential(
        self, record_id: str, hashed_value: str, updated_at: datetime,
    ) -> Any:
        return await self._request(
            "PUT",
            self._url("records", record_id),
            record_id=record_id,
            json={
                "password_hash": hashed_value,
                "password_updated_at": updated_at.isoformat(),
            },
        )

    async def get_credential(self, record_id: str) -> Optional[str]:
        return (await self.get_record(record_id)).get("password_hash")

    async def get_record(self, record_id: str) -> dict[str, Any]:
        data = await self._request(
            "GET", self._url("records", record_id), record_id=record_id,
        )
        return data or {}

    async def update_record(self, record_id: str, data: dict[str, Any]) -> Any:
        return await self._request(
            "PUT", self._url("records", record_id), record_id=record_id, json=data,
        )

    async def create_record(self, data: dict[str, Any]) -> str:
        result = await self._request("POST", self._url("records"), json=data)
        if not result or "id" not in result:
            raise StoreError(self.store_name, f"{self.store_name} did not return a record id")
        return str(result["id"])

    async def delete_record(self, record_id: str) -> None:
        await self._request(
            "DELETE", self._url("records", record_id), record_id=record_id,
        )

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.closed:
            await self._http.close()


ClientFactory = Callable[[str], BackingStoreClient]


class StoreClientRegistry:
    """Hand out one client per store name, creating it on first use.

    Args:
        factory: Builds a client for a store name.
        clients: Pre-built clients, keyed by store name.
    """

    def __init__(
        self,
        factory: Optional[ClientFactory] = None,
        clients: Optional[dict[str, BackingStoreClient]] = None,
    ):
        self._factory = factory
        self._clients: dict[str, BackingStoreClient] = dict(clients or {})

    @classmethod
    def for_http(cls, base_url: str, http: Optional[aiohttp.ClientSession] = None) -> "StoreClientRegistry":
        return cls(factory=lambda name: HTTPStoreClient(name, base_url, http=http))

    def register(self, client: BackingStoreClient) -> None:
        self._clients[client.store_name] = client

    def get(self, store_name: str) -> BackingStoreClient:
        client = self._clients.get(store_name)
        if client is None:
            if self._factory is None:
                raise KeyError(f"No client registered for store '{store_name}'")
            client = self._factory(store_name)
            self._clients[store_name] = client
        return client

    def __contains__(self, store_name: str) -> bool:
        return store_name in self._clients

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
