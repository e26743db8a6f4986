"""
Remote function-call transports for the Action Gateway.

- HttpTransport: POSTs to the mutator's HTTP app with httpx and turns
  error responses back into typed CombatKeeperError subclasses.
- LocalTransport: calls a CombatMutator in-process through a JSON round
  trip, for tests and single-process tools.

Both expose ``fetch_record`` so the read model can refetch a record
whose change notification arrived without a body.
"""

import json
import logging
from typing import Any, Protocol

import httpx

from ..config import EngineConfig
from ..exceptions import TransientError, error_from_body
from ..server.mutator import CombatMutator

logger = logging.getLogger("combat-keeper.gateway")


class Transport(Protocol):
    async def call(
        self,
        function: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        client_id: str,
    ) -> dict[str, Any]:
        ...

    async def fetch_record(self, table: str, record_id: str) -> dict[str, Any]:
        ...


class HttpTransport:
    """httpx-backed transport for a remote mutator."""

    def __init__(self, config: EngineConfig | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.config = config or EngineConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.request_timeout,
        )

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"Timed out calling {url}", details={"url": url}) from e
        except httpx.TransportError as e:
            raise TransientError(f"Network error calling {url}: {e}", details={"url": url}) from e

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            error = error_from_body(response.status_code, body)
            if isinstance(error, TransientError):
                logger.warning(f"Server error {response.status_code} from {url}")
            raise error
        return response.json()

    async def call(
        self,
        function: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        client_id: str,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/functions/{function}",
            json=payload,
            headers={"Idempotency-Key": idempotency_key, "X-Client-Id": client_id},
        )

    async def fetch_record(self, table: str, record_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/records/{table}/{record_id}")

    async def fetch_snapshot(self, encounter_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/encounters/{encounter_id}/snapshot")


class LocalTransport:
    """In-process transport over a CombatMutator.

    Payloads and responses go through JSON so callers see exactly what an
    HTTP client would.
    """

    def __init__(self, mutator: CombatMutator) -> None:
        self.mutator = mutator
        self.calls: list[tuple[str, str]] = []

    async def call(
        self,
        function: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        client_id: str,
    ) -> dict[str, Any]:
        self.calls.append((function, idempotency_key))
        body = await self.mutator.invoke(function, json.loads(json.dumps(payload)), idempotency_key)
        return json.loads(json.dumps(body))

    async def fetch_record(self, table: str, record_id: str) -> dict[str, Any]:
        return self.mutator.store.get(table, record_id).model_dump(mode="json")

    async def fetch_snapshot(self, encounter_id: str) -> dict[str, Any]:
        return self.mutator.store.snapshot(encounter_id)
