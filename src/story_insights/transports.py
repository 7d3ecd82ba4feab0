"""
Transports for the external analysis boundary.

A transport performs one request/response exchange for one AnalysisRequest
and returns the raw response body:

    {"success": bool, "insights"?: [...], "error"?: str}

Transport-level failures are translated into the analysis error taxonomy
here, so the client above sees only RateLimitError, TransientServiceError,
PermanentServiceError and MalformedResponseError.

- HttpAnalysisTransport: POSTs {content, contentType, itemId} to an analysis endpoint
- OpenAIAnalysisTransport: implements the boundary directly with a chat completion
"""

import json
import logging
import re
from typing import Any, Protocol

import httpx
import openai
from openai import AsyncOpenAI

from .errors import (
    MalformedResponseError,
    PermanentServiceError,
    RateLimitError,
    TransientServiceError,
)
from .models import AnalysisRequest, RateLimitInfo
from .prompts import SYSTEM_PROMPT, build_prompt

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT_SECONDS = 60.0
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


class AnalysisTransport(Protocol):
    """One exchange with the analysis boundary."""

    async def send(self, request: AnalysisRequest) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        ...


def decode_json_payload(text: str, item_id: str | None = None) -> dict[str, Any]:
    """Decode a JSON object from model output, tolerating Markdown code fences."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError as e:
        raise MalformedResponseError(f"Response is not valid JSON: {e}", item_id) from e
    if not isinstance(parsed, dict):
        raise MalformedResponseError(
            f"Expected a JSON object, got {type(parsed).__name__}", item_id
        )
    return parsed


def _rate_limit_from_body(body: Any) -> RateLimitInfo | None:
    if not isinstance(body, dict):
        return None
    try:
        return RateLimitInfo.from_dict(body)
    except (KeyError, TypeError, ValueError):
        return None


class HttpAnalysisTransport:
    """Analysis endpoint reached over HTTP."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.url = url
        self.api_key = api_key
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )

    async def send(self, request: AnalysisRequest) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        item_id = request.item_id

        try:
            response = await self._http_client.post(
                self.url, json=request.to_payload(), headers=headers
            )
        except httpx.TimeoutException as e:
            raise TransientServiceError(f"Analysis request timed out: {e}", item_id) from e
        except httpx.TransportError as e:
            raise TransientServiceError(
                f"Analysis request failed: {type(e).__name__}: {e}", item_id
            ) from e

        status = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        if status == 429:
            message = body.get("error") if isinstance(body, dict) else None
            raise RateLimitError(
                message or "Analysis service reported rate limit",
                _rate_limit_from_body(body),
                item_id,
            )
        if status >= 500:
            raise TransientServiceError(f"Analysis service error: HTTP {status}", item_id)
        if status >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise PermanentServiceError(message or f"Analysis rejected: HTTP {status}", item_id)

        if not isinstance(body, dict):
            raise MalformedResponseError("Analysis response is not a JSON object", item_id)
        return body

    async def close(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


class OpenAIAnalysisTransport:
    """Analysis performed directly against an OpenAI-compatible chat API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        prompt_content_chars: int = 2000,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.prompt_content_chars = prompt_content_chars
        self._http_client: httpx.AsyncClient | None = None

        if client is None:
            # Pooled connections shared across concurrent dispatches
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=self._http_client,
                max_retries=0,
            )
        self.client = client

    async def send(self, request: AnalysisRequest) -> dict[str, Any]:
        item_id = request.item_id
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": build_prompt(request.kind, request.content, self.prompt_content_chars),
            },
        ]

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=messages,
            )
        except openai.RateLimitError as e:
            raise RateLimitError(f"Model provider rate limit: {e}", None, item_id) from e
        except (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError) as e:
            raise TransientServiceError(f"{type(e).__name__}: {e}", item_id) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientServiceError(f"{type(e).__name__}: {e}", item_id) from e
            raise PermanentServiceError(f"{type(e).__name__}: {e}", item_id) from e

        text = completion.choices[0].message.content if completion.choices else ""
        if not text:
            raise MalformedResponseError("Model returned no content", item_id)

        parsed = decode_json_payload(text, item_id)
        return {"success": True, "insights": parsed.get("insights")}

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
