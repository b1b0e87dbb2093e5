"""
Forwarding of JSON-RPC requests to the remote MCP proxy over HTTP.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from mcp_shim.cache import ResponseCache
from mcp_shim.config import ShimConfig
from mcp_shim.logging_config import get_logger
from mcp_shim.protocol import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PROXY_UNREACHABLE,
    RATE_LIMIT_EXCEEDED,
    REQUEST_TIMEOUT,
    Request,
    Response,
    is_error_response,
    make_error_response,
)
from mcp_shim.rate_limit import RateLimiter

logger = get_logger(__name__)

# Multiplicative jitter applied to each backoff delay
JITTER_RANGE = (0.9, 1.1)


class ProxyResponseError(Exception):
    """A single attempt got a non-2xx status or an unusable body."""


class Forwarder:
    """
    Sends requests to ``{proxy_url}/{server_name}`` and turns every outcome
    into a JSON-RPC response.

    Local checks (security marker, size, rate limit, cache) run before any
    network traffic. Transport and HTTP failures are retried with capped
    exponential backoff; timeouts are not retried.
    """

    def __init__(
        self,
        config: ShimConfig,
        cache: Optional[ResponseCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the forwarder.

        Args:
            config: Shim configuration
            cache: Response cache. Built from config when omitted.
            rate_limiter: Rate limiter. Built from config when omitted.
            client: HTTP client. A client owned by the forwarder is created when omitted.
            sleep: Coroutine used for backoff delays
        """
        self.config = config
        self.cache = cache if cache is not None else ResponseCache(
            enabled=config.cache_enabled,
            ttl_seconds=config.cache_ttl_seconds,
            max_entries=config.cache_max_entries,
        )
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(
            config.rate_limit_per_minute
        )
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def __aenter__(self) -> "Forwarder":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after a failed attempt (0-based)."""
        delay_ms = min(
            self.config.retry_max_delay_ms,
            self.config.retry_initial_delay_ms * (2 ** attempt) * random.uniform(*JITTER_RANGE),
        )
        return delay_ms / 1000.0

    async def forward(self, request: Request) -> Response:
        """
        Forward a request and return its response. Never raises.

        Args:
            request: Parsed (and possibly path-sanitized) request

        Returns:
            The proxy's response, a cached response, or a JSON-RPC error response
        """
        try:
            return await self._forward(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error forwarding request {request.id!r}: {e}", exc_info=True)
            return make_error_response(request.id, INTERNAL_ERROR, f"Internal shim error: {e}")

    async def _forward(self, request: Request) -> Response:
        if request.security_violation is not None:
            return make_error_response(
                request.id, INVALID_REQUEST, request.security_violation or "Security violation detected"
            )

        body = request.to_json()
        request_size = len(body.encode("utf-8"))
        if request_size > self.config.max_request_size:
            logger.warning(
                f"Request size ({request_size} bytes) exceeds maximum "
                f"({self.config.max_request_size} bytes)"
            )
            return make_error_response(
                request.id, INVALID_REQUEST, f"Request too large ({request_size} bytes)"
            )

        if self.rate_limiter.would_exceed():
            logger.warning(
                f"Rate limit exceeded: {self.config.rate_limit_per_minute} requests per minute"
            )
            return make_error_response(request.id, RATE_LIMIT_EXCEEDED, "Rate limit exceeded")
        self.rate_limiter.record()

        cache_key = self.cache.key(request)
        if cache_key is not None:
            cached = self.cache.lookup(request, cache_key)
            if cached is not None:
                return cached

        url = self.config.endpoint
        logger.debug(
            f"Forwarding request to proxy: {url}",
            extra={"data": {"method": request.method, "id": request.id}},
        )

        attempts = self.config.max_retries + 1
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                response = await asyncio.wait_for(
                    self._post(url, body), timeout=self.config.timeout_seconds
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                logger.error(f"Request timed out after {self.config.timeout_ms}ms")
                return make_error_response(
                    request.id,
                    REQUEST_TIMEOUT,
                    f"Request timed out after {self.config.timeout_ms}ms",
                )
            except (httpx.HTTPError, ProxyResponseError) as e:
                last_error = e
                if attempt >= self.config.max_retries:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Request failed (attempt {attempt + 1}/{attempts}). "
                    f"Retrying in {round(delay * 1000)}ms",
                    extra={"data": {"error": str(e)}},
                )
                await self._sleep(delay)
                continue

            logger.debug(
                "Response from proxy",
                extra={
                    "data": {
                        "id": response.get("id"),
                        "status": "error" if is_error_response(response) else "success",
                        "error": response.get("error"),
                    }
                },
            )
            if cache_key is not None and not is_error_response(response):
                self.cache.put(cache_key, response)
            return response

        logger.error(
            f"Request failed after {attempts} attempts",
            extra={"data": {"error": str(last_error), "url": url}},
        )
        return make_error_response(
            request.id,
            PROXY_UNREACHABLE,
            f"Failed to communicate with MCP proxy: {last_error or 'Unknown error'}",
        )

    async def _post(self, url: str, body: str) -> Response:
        """One HTTP attempt. Raises on transport errors, non-2xx and bad bodies."""
        response = await self.client.post(url, content=body.encode("utf-8"), headers=self.headers())

        if not response.is_success:
            raise ProxyResponseError(f"HTTP error {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProxyResponseError(f"Invalid JSON in proxy response: {e}") from e

        if not isinstance(data, dict):
            raise ProxyResponseError(
                f"Expected a JSON-RPC object from proxy, got {type(data).__name__}"
            )
        return data
