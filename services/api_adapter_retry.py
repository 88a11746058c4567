"""
Standardized API Adapter with Unified Retry System
Base class for the external HTTP collaborators (price oracle, swap aggregator,
ledger RPC) so they share error mapping, circuit breaking and bounded retries
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from services.circuit_breaker import CircuitBreaker
from utils.exceptions import ExternalServiceError
from utils.retry_policy import API_READ_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class APIRequestError(ExternalServiceError):
    """HTTP-level failure with the status-derived error code"""

    def __init__(self, message: str, service: str, error_code: str, status: Optional[int] = None):
        self.error_code = error_code
        self.status = status
        self.retryable = error_code in {"RATE_LIMIT_EXCEEDED", "SERVICE_UNAVAILABLE", "API_TIMEOUT", "API_NETWORK_ERROR"}
        super().__init__(message, service=service, details={"error_code": error_code, "status": status})


class APIAdapterRetry:
    """
    Base class for external API integrations

    Provides:
    - HTTP status and transport error mapping to stable error codes
    - Bounded retries for idempotent requests
    - A circuit breaker per adapter instance
    """

    def __init__(
        self,
        service_name: str,
        timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
        retry_policy: RetryPolicy = API_READ_RETRY_POLICY,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.service_name = service_name
        self.timeout = timeout
        self.retry_policy = retry_policy
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name=f"{service_name} API", failure_threshold=5, recovery_timeout=60
        )
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _make_http_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict] = None,
        params: Optional[Dict] = None,
        json: Optional[Any] = None,
        retry: bool = True,
    ) -> Any:
        """
        Make an HTTP request and return the decoded JSON body

        Raises:
            APIRequestError: classified failure after retries are exhausted
        """

        async def attempt() -> Any:
            return await self.circuit_breaker.async_call(
                self._request_once, method, url, headers, params, json
            )

        if not retry:
            return await attempt()

        attempt_no = 0
        while True:
            attempt_no += 1
            try:
                return await attempt()
            except APIRequestError as e:
                if not e.retryable or not self.retry_policy.can_attempt(attempt_no):
                    logger.error(
                        f"❌ API_FAILURE: {self.service_name} {method} {url} "
                        f"failed after {attempt_no} attempt(s): {e.error_code}"
                    )
                    raise
                delay = self.retry_policy.delay_for(attempt_no)
                logger.warning(
                    f"🔄 API_RETRY: {self.service_name} attempt {attempt_no} failed "
                    f"({e.error_code}) - retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def _request_once(
        self,
        method: str,
        url: str,
        headers: Optional[Dict],
        params: Optional[Dict],
        json: Optional[Any],
    ) -> Any:
        session = await self._get_session()
        try:
            async with session.request(method=method, url=url, headers=headers, params=params, json=json) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._map_status(response.status, error_text[:300])
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise APIRequestError(
                f"{self.service_name} network error: {e}", self.service_name, "API_NETWORK_ERROR"
            ) from e
        except asyncio.TimeoutError as e:
            raise APIRequestError(
                f"{self.service_name} request timed out after {self.timeout}s", self.service_name, "API_TIMEOUT"
            ) from e

    def _map_status(self, status: int, body: str) -> APIRequestError:
        if status == 400:
            code = "API_INVALID_REQUEST"
        elif status in (401, 403):
            code = "API_AUTHENTICATION_FAILED"
        elif status == 404:
            code = "API_NOT_FOUND"
        elif status == 429:
            code = "RATE_LIMIT_EXCEEDED"
        elif status in RETRYABLE_STATUS:
            code = "SERVICE_UNAVAILABLE"
        else:
            code = "API_UNKNOWN_ERROR"
        return APIRequestError(f"{self.service_name} HTTP {status}: {body}", self.service_name, code, status)
