"""
Transport protocol for JSON-over-HTTP calls.

Defines the seam where concrete HTTP implementations plug in. The verifier
codec and the data-availability client depend on this protocol, not on
httpx directly, so the transport can be swapped without editing parsing
or retry logic.

Concrete implementations:
    - HttpxTransport (default, uses httpx.AsyncClient)
    - FakeTransport (tests, returns canned responses)

Error mapping (httpx → client taxonomy):
    - httpx.TimeoutException, httpx.TransportError → TransportError
    - HTTP 429 → RateLimitedError (Retry-After parsed when numeric)
    - HTTP >= 400 → TransportError with status_code set
    - Body that is not JSON → TransportError with the status code

Each call opens and closes its own AsyncClient, so no connection outlives
the request that needed it.
"""

from __future__ import annotations

import json
from typing import Any, Protocol, runtime_checkable

import httpx

from fdc_attest.errors import RateLimitedError, TransportError

DEFAULT_TIMEOUT_S = 30.0


@runtime_checkable
class JsonTransport(Protocol):
    """Async transport for JSON POST requests."""

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a JSON request and return the parsed response body.

        Args:
            url: Absolute endpoint URL.
            payload: JSON request body.
            headers: Extra headers merged over the JSON defaults.

        Returns:
            Parsed JSON response (usually a dict).

        Raises:
            RateLimitedError: On HTTP 429.
            TransportError: On connection failure, timeout, any other
                HTTP status >= 400, or a non-JSON body.
        """
        ...


def _parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date form is not worth parsing; the policy minimum applies.
        return None


class HttpxTransport:
    """Default transport using httpx.AsyncClient.

    Args:
        timeout: Request timeout in seconds. Applied to connect, read,
            write and pool acquisition.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        if timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {timeout}")
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def post_json(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a JSON POST via httpx and map failures to TransportError."""
        merged_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(headers or {}),
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=merged_headers)
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"request timed out after {self._timeout}s",
                details={"url": url, "timeout_s": self._timeout},
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(
                f"request to {url} failed: {exc}",
                details={"url": url, "error": type(exc).__name__},
            ) from exc

        if response.status_code == 429:
            raise RateLimitedError(
                "rate limited (HTTP 429)",
                retry_after_s=_parse_retry_after(response.headers.get("Retry-After")),
                details={"url": url},
            )

        if response.status_code >= 400:
            raise TransportError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                details={
                    "url": url,
                    "body_preview": response.text[:200] if response.text else "",
                },
            )

        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise TransportError(
                "response was not valid JSON",
                status_code=response.status_code,
                details={
                    "url": url,
                    "body_preview": response.text[:200] if response.text else "",
                },
            ) from exc


def join_url(base: str, path: str) -> str:
    """Join a base URL and a relative path with exactly one slash."""
    return f"{base.rstrip('/')}/{path.lstrip('/')}"
