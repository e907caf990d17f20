"""HTTP request function used by the orchestrator for every backend call."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scribe.config import API_BASE_URL, API_KEY, REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class TransportHTTPError(Exception):
    """Non-2xx response. Carries the status code for classification."""

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class HttpTransport:
    """JSON-over-HTTP client for the assist/analysis backend.

    Timeouts and cancellation are applied by the caller (RetryExecutor);
    the client-level timeout is only a backstop.

    Usage:
        transport = HttpTransport("http://localhost:8787/api", api_key="...")
        data = await transport.request("prompt", "POST", {"prompt": "..."})
        await transport.close()

    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        api_key: str = API_KEY,
        client: httpx.AsyncClient | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def request(
        self,
        endpoint: str,
        method: str = "POST",
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises:
            TransportHTTPError: Backend answered with a non-2xx status
            ValueError: Body of a 2xx response is not valid JSON
            httpx.TransportError: Connection-level failure

        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        logger.debug("%s %s", method, url)
        resp = await self._client.request(method, url, json=body, headers=self._headers)

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            raise TransportHTTPError(
                f"AI service error: {resp.status_code} {detail}".rstrip(),
                status_code=resp.status_code,
                body=detail,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ValueError("Invalid response format from AI service") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or data.get("message") or "")
    return str(data)[:500]
