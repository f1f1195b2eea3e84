"""
Remote provider clients.

A ProviderClient reads and writes one provider's records for one connection.
Clients translate transport failures into the ProviderError hierarchy; the
sync executor decides what to retry.

HttpProviderClient talks to real provider APIs via httpx.
InMemoryProviderClient keeps records in memory for tests and local development.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import httpx

from ..config import get_settings
from ..models.base import utcnow
from .credentials import ProviderCredentials
from .errors import (
    AuthExpiredError,
    FatalProviderError,
    ProviderError,
    ProviderTimeoutError,
    TransientProviderError,
)
from .providers import Provider, SyncOperation


logger = logging.getLogger(__name__)

# Upper bound on followed "next" links per fetch
MAX_PAGES = 100


@dataclass
class ConnectionTestResult:
    """
    Result of a connection test.

    Attributes:
        success: Whether the remote accepted the credentials
        error_message: Human-readable reason when success=False
        error_code: Stable ProviderError code when success=False
        latency_ms: Round trip of the health request
        tested_at: When the health request was sent
    """
    success: bool
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    latency_ms: int = 0
    tested_at: datetime = field(default_factory=utcnow)


class ProviderClient(ABC):
    """Port for talking to one provider on behalf of one connection."""

    @abstractmethod
    def fetch_records(self, operation: SyncOperation) -> List[Dict[str, Any]]:
        """
        Read every remote record for operation.

        Raises:
            AuthExpiredError: Credentials rejected
            TransientProviderError: Network failure or 5xx; safe to retry
            ProviderTimeoutError: The remote did not answer in time
            FatalProviderError: Anything else
        """
        pass

    @abstractmethod
    def push_record(self, operation: SyncOperation, record: Dict[str, Any]) -> None:
        """Send one local record to the remote. Raises ProviderError on failure."""
        pass

    @abstractmethod
    def test_connection(self) -> ConnectionTestResult:
        pass

    def close(self) -> None:
        pass


def _extract_items(body: Any) -> List[Dict[str, Any]]:
    if isinstance(body, list):
        items = body
    elif isinstance(body, dict):
        for key in ("items", "data", "content", "results"):
            if isinstance(body.get(key), list):
                items = body[key]
                break
        else:
            raise FatalProviderError("Response does not contain a record list")
    else:
        raise FatalProviderError("Response is not a JSON object or array")

    if not all(isinstance(item, dict) for item in items):
        raise FatalProviderError("Response contains non-object records")
    return items


class HttpProviderClient(ProviderClient):
    """
    httpx-backed client.

    Status mapping:
        401/403 -> AuthExpiredError
        408, 429, 5xx, connect/read errors -> TransientProviderError
        httpx timeouts -> ProviderTimeoutError
        other 4xx, malformed bodies -> FatalProviderError
    """

    def __init__(
        self,
        provider: Provider,
        credentials: ProviderCredentials,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.provider = provider
        base_url = credentials.resolve_base_url(provider.base_url)
        if not base_url:
            raise FatalProviderError(f"Provider '{provider.id}' has no base URL configured")

        if timeout is None:
            timeout = get_settings().PROVIDER_HTTP_TIMEOUT_SECONDS

        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
        )
        self._headers = {"Accept": "application/json", **credentials.auth_headers()}

    def _url(self, path: str) -> str:
        if not path.startswith(("http://", "https://", "//")):
            return f"{self.base_url}/{path.lstrip('/')}"

        # Absolute links (pagination) carry the auth headers; keep them on the provider's origin
        base = httpx.URL(self.base_url)
        url = base.join(path)
        if (url.scheme, url.host, url.port) != (base.scheme, base.host, base.port):
            raise FatalProviderError(
                f"{self.provider.name} returned a link to a foreign host: {url.host}"
            )
        return str(url)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = self._url(path)
        try:
            response = self._client.request(method, url, headers=self._headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.provider.name} did not respond in time") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            message = f"{self.provider.name} returned HTTP {status}"
            if status in (401, 403):
                raise AuthExpiredError(f"{message}: credentials rejected") from e
            if status in (408, 429) or status >= 500:
                raise TransientProviderError(message) from e
            raise FatalProviderError(message) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Could not reach {self.provider.name}: {e}") from e

    def fetch_records(self, operation: SyncOperation) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        next_path: Optional[str] = self.provider.endpoint_for(operation)

        for _ in range(MAX_PAGES):
            if not next_path:
                break
            response = self._request("GET", next_path)
            try:
                body = response.json()
            except ValueError as e:
                raise FatalProviderError(f"{self.provider.name} returned invalid JSON") from e

            records.extend(_extract_items(body))
            next_path = body.get("next") if isinstance(body, dict) else None
        else:
            if next_path:
                raise FatalProviderError(
                    f"{self.provider.name} pagination exceeded {MAX_PAGES} pages"
                )

        logger.debug(
            "Fetched remote records",
            extra={
                "provider_id": self.provider.id,
                "operation": operation.value,
                "count": len(records),
            },
        )
        return records

    def push_record(self, operation: SyncOperation, record: Dict[str, Any]) -> None:
        self._request("POST", self.provider.endpoint_for(operation), json=record)

    def test_connection(self) -> ConnectionTestResult:
        started = time.monotonic()
        try:
            self._request("GET", self.provider.health_endpoint)
        except ProviderError as e:
            return ConnectionTestResult(
                success=False,
                error_message=str(e),
                error_code=e.error_code,
                latency_ms=int((time.monotonic() - started) * 1000),
            )
        return ConnectionTestResult(
            success=True,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    def close(self) -> None:
        self._client.close()


class InMemoryProviderClient(ProviderClient):
    """
    In-memory provider for tests and local development.

    Args:
        records: Remote records per operation
        fetch_errors: Exceptions raised by successive fetch calls before
            fetches start succeeding
        push_failures: External keys whose push raises FatalProviderError
        test_error: Error reported by test_connection, if any
        on_fetch: Hook called at the start of every fetch
    """

    def __init__(
        self,
        records: Optional[Dict[SyncOperation, List[Dict[str, Any]]]] = None,
        fetch_errors: Optional[List[ProviderError]] = None,
        push_failures: Optional[set] = None,
        test_error: Optional[ProviderError] = None,
        on_fetch: Optional[Callable[[SyncOperation], None]] = None,
    ):
        self.records = {SyncOperation(op): list(items) for op, items in (records or {}).items()}
        self.fetch_errors = list(fetch_errors or [])
        self.push_failures = set(push_failures or ())
        self.test_error = test_error
        self.on_fetch = on_fetch
        self.fetch_calls = 0
        self.pushed: List[Dict[str, Any]] = []

    def fetch_records(self, operation: SyncOperation) -> List[Dict[str, Any]]:
        self.fetch_calls += 1
        if self.on_fetch is not None:
            self.on_fetch(operation)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return [dict(item) for item in self.records.get(operation, [])]

    def push_record(self, operation: SyncOperation, record: Dict[str, Any]) -> None:
        key = record.get(operation.key_field)
        if key in self.push_failures:
            raise FatalProviderError(f"Remote rejected record '{key}'")

        items = self.records.setdefault(operation, [])
        items[:] = [item for item in items if item.get(operation.key_field) != key]
        items.append(dict(record))
        self.pushed.append({"operation": operation.value, **record})

    def test_connection(self) -> ConnectionTestResult:
        if self.test_error is not None:
            return ConnectionTestResult(
                success=False,
                error_message=str(self.test_error),
                error_code=self.test_error.error_code,
            )
        return ConnectionTestResult(success=True)


ClientFactory = Callable[[Provider, ProviderCredentials], ProviderClient]


class ProviderClientRegistry:
    """
    Resolves the client implementation for a provider.

    Providers without a registered factory use HttpProviderClient.
    """

    def __init__(self, default_factory: Optional[ClientFactory] = None):
        self._factories: Dict[str, ClientFactory] = {}
        self._default = default_factory or HttpProviderClient

    def register(self, provider_id: str, factory: ClientFactory) -> None:
        if not provider_id or not provider_id.strip():
            raise ValueError("provider_id cannot be empty")
        if provider_id in self._factories:
            raise RuntimeError(
                f"Client for provider '{provider_id}' is already registered. "
                f"Use unregister() first if you need to replace it."
            )
        self._factories[provider_id] = factory

    def unregister(self, provider_id: str) -> None:
        if provider_id not in self._factories:
            raise ValueError(f"No client registered for provider '{provider_id}'")
        del self._factories[provider_id]

    def is_registered(self, provider_id: str) -> bool:
        return provider_id in self._factories

    def build(self, provider: Provider, credentials: ProviderCredentials) -> ProviderClient:
        factory = self._factories.get(provider.id, self._default)
        return factory(provider, credentials)


@lru_cache()
def get_client_registry() -> ProviderClientRegistry:
    """Process-wide client registry (FastAPI dependency)."""
    return ProviderClientRegistry()
