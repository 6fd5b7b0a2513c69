"""Async client for the AI inference gateway (chat-completions style)."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from .config import settings
from .errors import GatewayError, GatewayQuotaError, GatewayRateLimitError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(?P<body>.*?)\s*```\s*$", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating markdown fences and chatter."""
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group("body")
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        match = _OBJECT_RE.search(candidate)
        if not match:
            raise ValueError(f"No JSON object in response: {text[:200]!r}") from None
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class GatewayClient:
    """Chat-completions client; 429 and 402 surface as distinct errors."""

    def __init__(
        self,
        *,
        url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url or settings.gateway_url
        self._api_key = api_key if api_key is not None else settings.gateway_api_key
        self.model = model or settings.gateway_model
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds or settings.gateway_timeout),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(self._url, json=body)
            resp.raise_for_status()
        except httpx.RequestError as e:
            raise GatewayError(f"AI gateway request failed: {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise GatewayRateLimitError("Rate limit exceeded. Please try again later.") from e
            if status == 402:
                raise GatewayQuotaError("Payment required. Please add credits.") from e
            raise GatewayError(f"AI gateway error {status}: {e.response.text[:500]}") from e

        try:
            payload = resp.json()
        except json.JSONDecodeError as exc:
            raise GatewayError(f"Invalid JSON response from AI gateway: {resp.text[:200]}") from exc
        if not isinstance(payload, dict):
            raise GatewayError(f"Unexpected AI gateway response: {payload!r}")
        return payload

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        """Return the first choice's message content."""
        body: dict[str, Any] = {"model": self.model, "messages": messages}
        if temperature is not None:
            body["temperature"] = temperature
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        elif max_tokens is not None:
            body["max_tokens"] = max_tokens

        payload = await self._request(body)
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GatewayError(f"AI gateway response has no content: {str(payload)[:200]}") from exc
        if not isinstance(content, str):
            raise GatewayError("AI gateway returned non-text content")
        return content

    async def complete_json(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Request a JSON object response; malformed output raises GatewayError."""
        content = await self.complete(messages, temperature=temperature, json_mode=True)
        try:
            return parse_json_object(content)
        except ValueError as exc:
            logger.warning("AI gateway returned malformed JSON: %s", exc)
            raise GatewayError(str(exc)) from exc
