"""Async HTTP client for the moderation model provider."""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    """Result from a provider generate call."""
    text: str = ""
    ok: bool = True
    error: str | None = None
    duration_ms: float = 0.0
    status_code: int | None = None
    timed_out: bool = False
    attempts: int = 0
    data: Dict[str, Any] | None = None


def extract_response_text(data: Any) -> str:
    """Pull the generated text out of the provider's response envelope.

    Providers disagree on the envelope; the known shapes are tried in order
    and the raw JSON is returned as a last resort so the caller can still
    attempt to parse it.
    """
    if not isinstance(data, dict):
        return "" if data is None else str(data)
    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs:
        content = (outputs[0] or {}).get("content")
        if isinstance(content, str):
            return content
    result = data.get("result")
    if isinstance(result, str):
        return result
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
    return json.dumps(data)


class ProviderClient:
    """Calls the provider generate endpoint with bounded retry.

    Retries happen on transport errors, timeouts and 5xx responses only.
    Client errors are returned immediately.
    """

    def __init__(
        self,
        api_key: str,
        api_url: str = "https://api.z.ai/v1/generate",
        backoff_base_ms: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.backoff_base_ms = backoff_base_ms
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, provider: Dict[str, Any], api_key: str) -> "ProviderClient":
        return cls(
            api_key=api_key,
            api_url=str(provider.get("api_url", "https://api.z.ai/v1/generate")),
            backoff_base_ms=int(provider.get("backoff_base_ms", 500)),
        )

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _backoff(self, attempt: int) -> None:
        delay = (self.backoff_base_ms / 1000.0) * (2 ** (attempt - 1))
        await asyncio.sleep(delay)

    async def generate(
        self,
        payload: Dict[str, Any],
        timeout: float = 30.0,
        retries: int = 3,
    ) -> ProviderResponse:
        if not self.api_key:
            return ProviderResponse(ok=False, error="provider API key not set")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        retries = max(1, retries)
        start = time.perf_counter()
        last_error: Optional[str] = None
        last_status: Optional[int] = None
        timed_out = False

        for attempt in range(1, retries + 1):
            try:
                response = await self._http().post(
                    self.api_url, json=payload, headers=headers, timeout=timeout
                )
            except httpx.TimeoutException:
                timed_out = True
                last_status = None
                last_error = f"provider timeout after {timeout}s"
            except httpx.HTTPError as exc:
                timed_out = False
                last_status = None
                last_error = str(exc) or exc.__class__.__name__
            else:
                duration_ms = (time.perf_counter() - start) * 1000
                if response.status_code == 200:
                    try:
                        data = response.json()
                        text = extract_response_text(data)
                    except ValueError:
                        data = None
                        text = response.text
                    return ProviderResponse(
                        text=text,
                        ok=True,
                        duration_ms=duration_ms,
                        status_code=200,
                        attempts=attempt,
                        data=data,
                    )
                timed_out = False
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}: {response.text[:500]}"
                if response.status_code < 500:
                    return ProviderResponse(
                        ok=False,
                        error=last_error,
                        duration_ms=duration_ms,
                        status_code=response.status_code,
                        attempts=attempt,
                    )
            if attempt < retries:
                logger.debug(
                    "provider call failed (attempt %d/%d): %s", attempt, retries, last_error
                )
                await self._backoff(attempt)

        return ProviderResponse(
            ok=False,
            error=last_error,
            duration_ms=(time.perf_counter() - start) * 1000,
            status_code=last_status,
            timed_out=timed_out,
            attempts=retries,
        )
