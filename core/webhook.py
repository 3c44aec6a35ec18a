"""
HTTP webhook collaborator for api_webhook nodes.

Wraps httpx with a tenacity retry on connection failures only: a request
that reached the server and came back with an error status is not retried,
since webhook targets are not required to be idempotent.
"""
from __future__ import annotations

import abc
import json
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.errors import WebhookError, WebhookNetworkError, WebhookTimeoutError

logger = structlog.get_logger()


class WebhookResponse(BaseModel):
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class WebhookClient(abc.ABC):
    @abc.abstractmethod
    async def request(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout: float = 30.0,
    ) -> WebhookResponse:
        """Perform the call; raise a WebhookError subclass on failure."""
        ...

    async def close(self) -> None:
        pass


class HttpWebhookClient(WebhookClient):
    """httpx-backed client with a shared connection pool."""

    def __init__(self, max_attempts: int = 2, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._max_attempts = max(1, max_attempts)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._client

    async def _send(self, method: str, url: str, headers: dict[str, str], body: Any,
                    timeout: float) -> httpx.Response:
        client = await self._get_client()
        kwargs: dict[str, Any] = {"headers": headers, "timeout": timeout}
        if method not in ("GET", "DELETE") and body is not None:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)
        return await client.request(method, url, **kwargs)

    async def request(self, url, method="POST", headers=None, body=None, timeout=30.0) -> WebhookResponse:
        method = (method or "POST").upper()
        headers = dict(headers or {})

        @retry(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(httpx.ConnectError),
            reraise=True,
        )
        async def _attempt() -> httpx.Response:
            return await self._send(method, url, headers, body, timeout)

        try:
            resp = await _attempt()
        except httpx.TimeoutException as e:
            raise WebhookTimeoutError(f"Webhook timed out after {timeout}s", url=url) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise WebhookNetworkError(f"Webhook request failed: {e}", url=url) from e
        except Exception as e:
            # Bad header encoding, unserialisable body and the like
            raise WebhookNetworkError(f"Webhook request could not be sent: {e}", url=url) from e

        try:
            parsed = resp.json()
        except (json.JSONDecodeError, ValueError):
            parsed = resp.text

        if resp.status_code >= 400:
            raise WebhookError(f"Webhook returned HTTP {resp.status_code}", url=url,
                               status=resp.status_code)

        logger.info("webhook_called", url=url, method=method, status=resp.status_code)
        return WebhookResponse(status=resp.status_code, body=parsed)

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
