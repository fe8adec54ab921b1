"""Client for the remote todo list REST service.

Protocol:
- GET    {entries}                    full list: {timestamp, entries: [...]}
- GET    {entries}?modified=<ts>      entries changed after ts, may include
                                      tombstones (deleted=true); 400 when ts
                                      is outside the retention window
- POST   {entries}?title=..;notes=..  create, 201 + entry
- PUT    {entries}/<id>?title=..      update, 200 + entry (410 if gone)
- DELETE {entries}/<id>               delete, 200

Transport failures and 5xx responses are retried with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

ENTRIES_PATH = "/todolist/entries"

STATUS_OK = 200
STATUS_CREATED = 201
STATUS_BAD_REQUEST = 400
STATUS_GONE = 410

ENTRY_FIELDS = ("title", "notes", "complete")


class RemoteClientError(Exception):
    """Base class for remote failures, one subclass per failure category."""


class NetworkError(RemoteClientError):
    """Connectivity or I/O failure, including timeouts. Retryable later."""


class MalformedResponseError(RemoteClientError):
    """The response body was not the expected JSON shape."""


class ServerError(MalformedResponseError):
    """The service kept failing with a 5xx status."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteClientError):
    """Credentials could not be resolved or were refused."""

    def __init__(self, message: str, invalid_credentials: bool = False):
        super().__init__(message)
        self.invalid_credentials = invalid_credentials


class RequestError(RemoteClientError):
    """The request itself could not be built (e.g. invalid URL)."""


@dataclass
class RemoteEntry:
    """An entry as represented by the remote service."""

    id: int
    title: str | None
    notes: str | None
    complete: bool
    created: float  # epoch seconds
    modified: float  # epoch seconds
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteEntry":
        """Parse a wire entry object.

        A tombstone only needs ``id`` and ``deleted``; its other fields are
        optional.

        Raises:
            MalformedResponseError: If required keys are missing or mistyped.
        """
        try:
            deleted = bool(data.get("deleted", False))
            if deleted:
                created = float(data.get("created") or 0.0)
                modified = float(data.get("modified") or 0.0)
            else:
                created = float(data["created"])
                modified = float(data["modified"])
            return cls(
                id=int(data["id"]),
                title=data.get("title"),
                notes=data.get("notes"),
                complete=bool(data.get("complete", False)),
                created=created,
                modified=modified,
                deleted=deleted,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid entry object: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "notes": self.notes,
            "complete": self.complete,
            "created": self.created,
            "modified": self.modified,
            "deleted": self.deleted,
        }

    def to_values(self) -> dict[str, Any]:
        """Convert to local store column values (timestamps in ms)."""
        return {
            "remote_id": self.id,
            "title": self.title,
            "notes": self.notes,
            "complete": 1 if self.complete else 0,
            "created": int(self.created * 1000),
            "modified": int(self.modified * 1000),
        }


@dataclass
class Response:
    """Outcome of a request that reached the service."""

    status_code: int

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def created(self) -> bool:
        return self.status_code == STATUS_CREATED

    @property
    def rejected(self) -> bool:
        return self.status_code == STATUS_BAD_REQUEST

    @property
    def gone(self) -> bool:
        return self.status_code == STATUS_GONE


@dataclass
class EntryResponse(Response):
    """Response carrying a single entry (create/update)."""

    entry: RemoteEntry | None = None


@dataclass
class EntryListResponse(Response):
    """Response carrying a list of entries and the cursor timestamp."""

    timestamp: float = 0.0
    entries: list[RemoteEntry] = field(default_factory=list)


def _entry_params(fields: dict[str, Any]) -> dict[str, str]:
    params = {}
    for key in ENTRY_FIELDS:
        value = fields.get(key)
        if value is None:
            continue
        if key == "complete":
            value = 1 if value else 0
        params[key] = str(value)
    return params


class RemoteEntryClient:
    """Async client for the entries resource.

    Every method either returns a Response subclass (for any status the
    service answered with) or raises a RemoteClientError subclass.
    """

    def __init__(
        self,
        base_url: str,
        entries_path: str = ENTRIES_PATH,
        timeout: float = 5.0,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Service root (e.g., "https://todo.example.com").
            entries_path: Path of the entries resource.
            timeout: Per-request timeout in seconds.
            max_retries: Attempts per request before giving up.
            retry_backoff: Initial backoff in seconds, doubled per attempt.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.entries_path = "/" + entries_path.strip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._auth_headers: dict[str, str] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            try:
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    follow_redirects=False,
                    headers={"Accept": "application/json"},
                    transport=self._transport,
                )
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                raise RequestError(f"Invalid service URL {self.base_url!r}: {e}") from e
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RemoteEntryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def set_auth_headers(self, headers: dict[str, str]) -> None:
        """Install headers produced by a credential provider."""
        self._auth_headers = dict(headers)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make HTTP request with exponential backoff retry.

        Raises:
            NetworkError: Transport failure on every attempt.
            ServerError: 5xx on every attempt.
            AuthenticationError: 401 or 403.
            RequestError: The request could not be built.
        """
        client = await self._get_client()
        backoff = self.retry_backoff
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                response = await client.request(
                    method, path, params=params, headers=self._auth_headers
                )
            except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
                raise RequestError(f"Invalid request {method} {path}: {e}") from e
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                logger.warning(
                    f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                )
            except httpx.TransportError as e:
                last_error = f"connection failed: {e}"
                logger.warning(
                    f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                )
            else:
                if response.status_code in (401, 403):
                    raise AuthenticationError(
                        f"HTTP {response.status_code} for {method} {path}",
                        invalid_credentials=response.status_code == 401,
                    )
                if response.status_code < 500:
                    return response

                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"Server error {response.status_code}, "
                    f"attempt {attempt + 1}/{self.max_retries}"
                )
                if attempt == self.max_retries - 1:
                    raise ServerError(
                        f"{method} {path} failed: HTTP {response.status_code}",
                        status_code=response.status_code,
                    )

            if attempt < self.max_retries - 1 and backoff > 0:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise NetworkError(f"{method} {path} failed after {self.max_retries} attempts: {last_error}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON in response: {e}") from e

    def _entry_path(self, remote_id: int) -> str:
        return f"{self.entries_path}/{remote_id}"

    async def _entry_request(
        self, method: str, path: str, fields: dict[str, Any]
    ) -> EntryResponse:
        response = await self._request(method, path, params=_entry_params(fields))

        if not response.is_success:
            logger.error(f"{method} {path} failed: {response.status_code} - {response.text}")
            return EntryResponse(status_code=response.status_code)

        data = self._json(response)
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Expected an entry object from {method} {path}")

        entry = RemoteEntry.from_dict(data)
        logger.info(f"{method} entry: {entry.id}")
        return EntryResponse(status_code=response.status_code, entry=entry)

    async def create(self, fields: dict[str, Any]) -> EntryResponse:
        """Create a new entry.

        Args:
            fields: Values for title, notes and complete.

        Returns:
            EntryResponse, status 201 with the assigned entry on success.
        """
        return await self._entry_request("POST", self.entries_path, fields)

    async def update(self, remote_id: int, fields: dict[str, Any]) -> EntryResponse:
        """Update an existing entry.

        Returns:
            EntryResponse, status 200 with the updated entry on success,
            410 if the entry no longer exists.
        """
        return await self._entry_request("PUT", self._entry_path(remote_id), fields)

    async def delete(self, remote_id: int) -> Response:
        """Delete an entry."""
        path = self._entry_path(remote_id)
        response = await self._request("DELETE", path)

        if response.is_success:
            logger.info(f"Deleted entry: {remote_id}")
        else:
            logger.error(f"Delete failed: {response.status_code} - {response.text}")

        return Response(status_code=response.status_code)

    async def list(self, since: float | None = None) -> EntryListResponse:
        """Get entries, all of them or only those modified after ``since``.

        Args:
            since: Cursor timestamp from a previous list call. When given,
                the result may include tombstones.

        Returns:
            EntryListResponse; status 400 means the window was rejected.
        """
        params = None
        if since is not None:
            params = {"modified": f"{since:f}"}

        response = await self._request("GET", self.entries_path, params=params)

        if response.status_code != STATUS_OK:
            logger.error(f"List failed: {response.status_code} - {response.text}")
            return EntryListResponse(status_code=response.status_code)

        data = self._json(response)
        try:
            timestamp = float(data["timestamp"])
            raw_entries = data["entries"]
            if not isinstance(raw_entries, list):
                raise TypeError("entries is not a list")
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid entry list: {e}") from e

        entries = [RemoteEntry.from_dict(e) for e in raw_entries]
        logger.info(f"List retrieved {len(entries)} entries")
        return EntryListResponse(
            status_code=response.status_code,
            timestamp=timestamp,
            entries=entries,
        )
