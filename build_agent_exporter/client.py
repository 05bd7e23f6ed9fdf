"""
Async client for the Azure DevOps / TFS distributed task API.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import httpx
from pydantic import ValidationError

from .errors import SourceError
from .models import Agent, Job, Pool, ResponseEnvelope

if TYPE_CHECKING:
    from .config import ServerSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_STATUSES = frozenset({429, 500, 502, 503, 504})


class SourceClient(Protocol):
    """What the collection pipeline needs from the fleet-management service."""

    async def list_pools(self) -> list[Pool]: ...

    async def list_agents(self, pool_id: int) -> list[Agent]: ...

    async def list_jobs(self, pool_id: int) -> list[Job]: ...


@dataclass
class RetryPolicy:
    """Exponential backoff settings for API requests."""

    initial_interval: float = 0.5
    multiplier: float = 1.5
    max_interval: float = 60.0
    randomization_factor: float = 0.5
    max_elapsed_seconds: float = 30.0

    def delay(self, attempt: int) -> float:
        """Randomised wait before retry number `attempt` (starting at 0)."""
        interval = min(
            self.initial_interval * (self.multiplier**attempt), self.max_interval
        )
        spread = interval * self.randomization_factor
        return random.uniform(interval - spread, interval + spread)


class _TransientStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"Transient status={response.status_code} url={response.url}")
        self.response = response


class AzureDevOpsClient:
    """
    Reads pools, agents and job requests from one configured server.

    Use as an async context manager; the underlying `httpx.AsyncClient`
    lives for the duration of the `async with` block.
    """

    def __init__(
        self,
        name: str,
        address: str,
        access_token: str,
        *,
        default_collection: str = "",
        completed_request_count: int = 0,
        proxy: str | None = None,
        timeout: float = 20.0,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self.address = address.rstrip("/")
        self.default_collection = default_collection.strip("/")
        self.completed_request_count = completed_request_count
        self.retry_policy = retry_policy or RetryPolicy()
        self._access_token = access_token
        self._proxy = proxy
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        name: str,
        server: ServerSettings,
        *,
        proxy_url: str | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> AzureDevOpsClient:
        return cls(
            name,
            server.address,
            server.access_token,
            default_collection=server.default_collection,
            completed_request_count=server.completed_request_count,
            proxy=proxy_url if server.use_proxy else None,
            timeout=server.request_timeout,
            retry_policy=retry_policy,
        )

    async def __aenter__(self) -> AzureDevOpsClient:
        self._http = httpx.AsyncClient(
            auth=httpx.BasicAuth("", self._access_token),
            headers={"Accept": "application/json"},
            proxy=self._proxy,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    def build_url(self, path: str) -> str:
        base = self.address
        if self.default_collection:
            base = f"{base}/{self.default_collection}"
        return f"{base}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # read operations
    # ------------------------------------------------------------------
    async def list_pools(self) -> list[Pool]:
        payload = await self._get("/_apis/distributedtask/pools")
        return self._decode(payload, Pool, "pools").value

    async def list_agents(self, pool_id: int) -> list[Agent]:
        payload = await self._get(
            f"/_apis/distributedtask/pools/{pool_id}/agents",
            params={"includeCapabilities": "false", "includeAssignedRequest": "true"},
        )
        agents = self._decode(payload, Agent, f"agents of pool {pool_id}").value
        # The records are frozen, so the stamped copies are what we hand back.
        return [agent.model_copy(update={"pool_id": pool_id}) for agent in agents]

    async def list_jobs(self, pool_id: int) -> list[Job]:
        payload = await self._get(
            f"/_apis/distributedtask/pools/{pool_id}/jobrequests",
            params={"completedRequestCount": str(self.completed_request_count)},
        )
        return self._decode(payload, Job, f"job requests of pool {pool_id}").value

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _decode(payload: Any, item_type: type[T], what: str) -> ResponseEnvelope[T]:
        try:
            return ResponseEnvelope[item_type].model_validate(payload)
        except ValidationError as exc:
            raise SourceError(f"Failed to decode {what}: {exc}") from exc

    async def _get(self, path: str, params: dict[str, str] | None = None) -> Any:
        if self._http is None:
            raise RuntimeError("AzureDevOpsClient must be used inside 'async with'")

        url = self.build_url(path)
        policy = self.retry_policy
        started = time.monotonic()
        attempt = 0
        while True:
            try:
                response = await self._http.get(url, params=params)
                logger.debug(
                    f"Made HTTP request to {response.url} ({response.status_code})",
                    extra={"server_name": self.name, "status_code": response.status_code},
                )
                if response.status_code in _TRANSIENT_STATUSES:
                    raise _TransientStatus(response)
                response.raise_for_status()
                return response.json()
            except (httpx.TransportError, _TransientStatus) as exc:
                wait_for = policy.delay(attempt)
                elapsed = time.monotonic() - started
                if elapsed + wait_for > policy.max_elapsed_seconds:
                    raise SourceError(
                        f"Request to {url} failed after {attempt + 1} attempts: {exc}"
                    ) from exc
                logger.debug(
                    f"Retrying HTTP request to {url} in {wait_for:.2f}s: {exc}",
                    extra={"server_name": self.name, "attempt": attempt + 1},
                )
                attempt += 1
                await asyncio.sleep(wait_for)
            except httpx.HTTPStatusError as exc:
                raise SourceError(
                    f"Request to {url} returned {exc.response.status_code}"
                ) from exc
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise SourceError(f"Request to {url} failed: {exc}") from exc
            except ValueError as exc:
                raise SourceError(f"Response from {url} is not JSON: {exc}") from exc
