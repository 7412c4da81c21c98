"""
BitmapClient for the block tracker.

The ONLY gateway for requests to the bitmap lookup provider.

Design Principles:
- One request per block number, through one credential slot.
- Provider status codes are translated once, here, into tagged results.
- The client never charges a slot; the controller records use afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from tracker.core.errors import FetchError
from tracker.core.state import (
    CredentialSlot,
    Fatal,
    FetchResult,
    Found,
    NotFound,
    Retryable,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.geniidata.com/api/1/bitmap/bitmapInfo/bitmapNumber/"
DEFAULT_KEY_INFO_URL = "https://api.geniidata.com/api/1/key/info"

# Provider result codes (GeniiData)
CODE_OK = 0
CODE_INVALID_KEY = 1001
CODE_RATE_LIMITED = 429

REQUEST_TIMEOUT_SECONDS = 15.0


def classify(response: httpx.Response) -> FetchResult:
    """
    Map a provider response onto a fetch result.

    Detects:
    - Authentication rejection (HTTP 401/403, code 1001).
    - Quota signalling (HTTP 429, code 429).
    - Malformed payloads (wrong content type, empty, not a JSON object).
    - Found vs. confirmed-empty for well-formed answers.
    """
    if response.status_code in (401, 403):
        return Fatal(f"HTTP {response.status_code}: credential rejected")

    if response.status_code == 429:
        return Retryable("HTTP 429: rate limit exceeded", rate_limited=True)

    if response.status_code != 200:
        return Retryable(f"HTTP {response.status_code}: {response.reason_phrase}")

    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type:
        return Retryable(f"Invalid content type: {content_type or 'unknown'}")

    text = response.text
    if not text or not text.strip():
        return Retryable("Empty response received")

    try:
        payload = response.json()
    except ValueError as e:
        return Retryable(f"JSON parse error: {e} - response: {text[:100]}")

    if not isinstance(payload, dict):
        return Retryable("Invalid JSON structure")

    code = payload.get("code")
    if code == CODE_OK:
        data = payload.get("data") or []
        if not isinstance(data, list):
            return Retryable("Invalid JSON structure: data is not a list")
        if not data:
            return NotFound()
        first = data[0] if isinstance(data[0], dict) else {}
        inscription_id = first.get("inscription_id")
        if not inscription_id:
            return NotFound()
        return Found(inscription_id=str(inscription_id), sat_number=_as_int(first.get("sat")))

    if code == CODE_INVALID_KEY:
        return Fatal(f"Invalid API key (code {code})")

    if code == CODE_RATE_LIMITED:
        return Retryable("Rate limit exceeded", rate_limited=True)

    # Any other well-formed answer means the provider has nothing for this block.
    return NotFound()


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class BitmapClient:
    """
    Async HTTP client for the block-indexed bitmap lookup endpoint.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        key_info_url: str = DEFAULT_KEY_INFO_URL,
        min_interval_seconds: float = 0.22,
        rotate_headers: bool = True,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._api_url = api_url
        self._key_info_url = key_info_url
        self._min_interval = min_interval_seconds
        self._rotate_headers = rotate_headers
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

        # One pooled client per distinct proxy (None = direct connection)
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    async def fetch(self, block_number: int, slot: CredentialSlot) -> FetchResult:
        """
        Look up the bitmap inscription for one block through one slot.

        Never raises for provider or transport trouble; every failure comes
        back as Retryable or Fatal.
        """
        await self._respect_interval(slot)

        url = f"{self._api_url}{block_number}"
        client = self._client_for(slot.proxy)

        try:
            response = await client.get(url, headers=slot.headers(self._rotate_headers))
        except httpx.TimeoutException:
            return Retryable(f"Request timeout ({self._timeout:.0f}s)", charged=False)
        except httpx.DecodingError as e:
            # The response arrived, so the provider counted it.
            return Retryable(f"Decompression error: {e}")
        except httpx.RequestError as e:
            return Retryable(f"Request error: {e}", charged=False)

        result = classify(response)
        if isinstance(result, (Retryable, Fatal)):
            logger.debug(f"Block {block_number} via {slot.label}: {result}")
        return result

    async def key_info(self, slot: CredentialSlot) -> Dict[str, Any]:
        """
        Ask the provider for the key's plan and today's usage.

        Returns a dict with plan, plan_status, requests_made, requests_left.
        Raises FetchError when the key is rejected or the call fails.
        """
        client = self._client_for(slot.proxy)
        headers = {
            "Accept": "application/json",
            "Api-Key": slot.api_key,
            "User-Agent": "Bitmap-Tracker-Validator/1.0",
        }
        try:
            response = await client.get(self._key_info_url, headers=headers)
            payload = response.json()
        except (httpx.RequestError, ValueError) as e:
            raise FetchError(f"Key info request failed for {slot.label}: {e}") from e

        if not isinstance(payload, dict) or payload.get("code") != CODE_OK or not payload.get("data"):
            message = payload.get("message") if isinstance(payload, dict) else None
            code = payload.get("code") if isinstance(payload, dict) else None
            raise FetchError(f"API error for {slot.label}: {code} - {message or 'Unknown error'}")

        data = payload["data"]
        try:
            current_day = data["usage"]["current_day"]
            return {
                "plan": data.get("plan"),
                "plan_status": data.get("plan_status"),
                "requests_made": int(current_day["requests_made"]),
                "requests_left": int(current_day["requests_left"]),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"Unexpected key info payload for {slot.label}: {e}") from e

    async def _respect_interval(self, slot: CredentialSlot) -> None:
        if slot.last_request_at is None:
            return
        elapsed = (self._clock() - slot.last_request_at).total_seconds()
        wait = self._min_interval - elapsed
        if wait > 0:
            await self._sleep(wait)

    def _client_for(self, proxy: Optional[str]) -> httpx.AsyncClient:
        if proxy not in self._clients:
            kwargs: Dict[str, Any] = {"timeout": self._timeout, "follow_redirects": True}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            if proxy:
                kwargs["proxy"] = proxy
            self._clients[proxy] = httpx.AsyncClient(**kwargs)
        return self._clients[proxy]

    async def close(self):
        """Cleanup resources."""
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
