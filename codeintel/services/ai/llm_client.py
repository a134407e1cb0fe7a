"""
Async HTTP transport for AI backends.

Design constraints:
- No vendor SDKs; plain httpx against the backend's HTTP API
- One client per backend endpoint, protected by its own circuit breaker
- Client errors (4xx) do not count against the breaker; 5xx and transport
  failures do

Wire-format conversion lives in ``providers``; error classification lives in
the gateway. This module only moves JSON.
"""
import time
from typing import Any, Dict, Optional

import httpx

from codeintel.core.circuit_breaker import CircuitBreaker
from codeintel.core.logging import get_logger

logger = get_logger(__name__)


def counts_as_breaker_failure(exc: BaseException) -> bool:
    """Whether ``exc`` indicates the backend (not the caller) is at fault."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return True


class LLMClient:
    """JSON-over-HTTP client for one backend endpoint."""

    def __init__(
        self,
        name: str,
        api_base: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.name = name
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name=f"provider_{name}",
            failure_threshold=0.5,
            time_window_seconds=60,
            open_duration_seconds=30,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        json_payload: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Low-level request helper (isolated for the circuit breaker)."""
        url = f"{self.api_base}{path}"
        timeout = timeout_seconds or self.timeout_seconds
        start = time.perf_counter()

        if self._http_client is not None:
            response = await self._http_client.request(
                method, url, headers=self._headers(), json=json_payload, timeout=timeout
            )
        else:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(method, url, headers=self._headers(), json=json_payload)

        logger.debug(
            "llm_http_response",
            provider=self.name,
            method=method,
            path=path,
            status_code=response.status_code,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        response.raise_for_status()
        return response.json()

    async def post_json(
        self,
        path: str,
        payload: Dict[str, Any],
        timeout_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        return await self.circuit_breaker.call_async(
            self._send,
            "POST",
            path,
            payload,
            timeout_seconds,
            is_failure=counts_as_breaker_failure,
        )

    async def get_json(self, path: str, timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
        return await self.circuit_breaker.call_async(
            self._send,
            "GET",
            path,
            None,
            timeout_seconds,
            is_failure=counts_as_breaker_failure,
        )

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
