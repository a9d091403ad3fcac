"""
HTTP client shared by the external system integrations.

Wraps httpx and turns failures into the reconciler's error taxonomy:
timeouts, transport errors, 408 and 5xx are transient; 429 is a rate
limit; other 4xx responses and undecodable bodies are permanent.
"""

import logging
import threading
from typing import Any, Optional

import httpx

from ..exceptions import ApiError, PermanentApiError, RateLimitError, TransientApiError

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def classify_response(response: httpx.Response, label: str) -> Optional[ApiError]:
    """Return the error for a failed response, or None if it succeeded."""
    status = response.status_code
    if status < 400:
        return None

    body = response.text[:200]
    message = f"{label} failed ({status}): {body}"

    if status == 429:
        return RateLimitError(message, retry_after=parse_retry_after(response.headers.get('Retry-After')))
    if status >= 500 or status == 408:
        return TransientApiError(message, status_code=status)
    return PermanentApiError(message, status_code=status)


class ApiClient:
    """Authenticated JSON client for one external API."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict] = None,
        auth: Optional[tuple] = None,
        timeout: float = 30,
        transport: Optional[httpx.BaseTransport] = None,
        cancelled: Optional[threading.Event] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.headers = {'Accept': 'application/json', **(headers or {})}
        self.auth = auth
        self.timeout = timeout
        self.transport = transport
        # Set when the caller has given up on this client; no further requests go out
        self.cancelled = cancelled

    def send(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[Any] = None,
    ) -> httpx.Response:
        """Make a request and return the successful response."""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        label = f"{method} {endpoint}"
        logger.debug(f"API Request: {label}")

        if self.cancelled is not None and self.cancelled.is_set():
            raise TransientApiError(f"{label} cancelled")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(
                    method,
                    url,
                    headers=self.headers,
                    params=params,
                    json=json_data,
                    auth=self.auth,
                )
        except httpx.TimeoutException as e:
            raise TransientApiError(f"{label} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientApiError(f"{label} transport error: {e}") from e

        error = classify_response(response, label)
        if error is not None:
            raise error
        return response

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_data: Optional[Any] = None,
    ) -> Any:
        """Make a request and decode the JSON body. Empty bodies decode to {}."""
        response = self.send(method, endpoint, params=params, json_data=json_data)
        return decode_json(response, f"{method} {endpoint}")


def decode_json(response: httpx.Response, label: str) -> Any:
    if response.status_code == 204 or not response.content:
        return {}
    try:
        return response.json()
    except ValueError as e:
        raise PermanentApiError(f"{label} returned malformed JSON: {e}", status_code=response.status_code) from e
