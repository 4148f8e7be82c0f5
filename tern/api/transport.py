"""Upstream Messages API: request payloads and the streaming HTTP transport.

build_request() renders a context snapshot into the wire format.
AnthropicTransport posts it with httpx and yields raw response bytes
for the streaming engine; HTTP and connection failures become
TransportError with a retryable flag.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from tern.config import Settings
from tern.context.manager import ContextSnapshot
from tern.errors import TransportError
from tern.models import ImageBlock, Role, TextBlock, ToolResultBlock, ToolUseBlock, Turn

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504, 529})

# Stands in for elided history when the retained buffer opens with an assistant turn
_HISTORY_PLACEHOLDER = "(Earlier conversation is summarized in the system prompt.)"


def _render_block(block: TextBlock | ImageBlock | ToolUseBlock | ToolResultBlock) -> dict[str, Any] | None:
    match block:
        case TextBlock():
            if not block.text:
                return None
            return {"type": "text", "text": block.text}
        case ImageBlock():
            if block.data:
                source = {"type": "base64", "media_type": block.media_type, "data": block.data}
            else:
                source = {"type": "url", "url": block.reference or ""}
            return {"type": "image", "source": source}
        case ToolUseBlock():
            return {"type": "tool_use", "id": block.call_id, "name": block.tool_name, "input": block.input}
        case ToolResultBlock():
            return {
                "type": "tool_result",
                "tool_use_id": block.call_id,
                "content": block.content,
                "is_error": block.is_error,
            }
    raise TypeError(f"unhandled content block: {type(block).__name__}")


def format_messages(turns: tuple[Turn, ...] | list[Turn]) -> list[dict[str, Any]]:
    """Render non-system turns as the messages[] array.

    tool_result turns travel as user messages, empty turns are skipped and
    consecutive same-role messages are merged.
    """
    messages: list[dict[str, Any]] = []
    for turn in turns:
        if turn.role == Role.SYSTEM:
            continue
        role = "assistant" if turn.role == Role.ASSISTANT else "user"
        content = [rendered for b in turn.content if (rendered := _render_block(b)) is not None]
        if not content:
            continue
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(content)
        else:
            messages.append({"role": role, "content": content})
    if messages and messages[0]["role"] == "assistant":
        messages.insert(0, {"role": "user", "content": [{"type": "text", "text": _HISTORY_PLACEHOLDER}]})
    return messages


def build_system_prompt(snapshot: ContextSnapshot, settings: Settings) -> str:
    parts = [settings.system_prompt] if settings.system_prompt else []
    parts.extend(t.text() for t in snapshot.turns if t.role == Role.SYSTEM and t.text())
    if snapshot.digest is not None:
        parts.append(snapshot.digest.render())
    return "\n\n".join(parts)


def tool_choice(value: str) -> dict[str, Any]:
    if value in ("auto", "any"):
        return {"type": value}
    return {"type": "tool", "name": value}


def build_request(
    snapshot: ContextSnapshot,
    settings: Settings,
    tools: list[dict[str, Any]] | None = None,
    stream: bool = True,
) -> dict[str, Any]:
    """Build the Messages API request payload for one round-trip."""
    payload: dict[str, Any] = {
        "model": settings.model,
        "max_tokens": settings.max_tokens,
        "messages": format_messages(snapshot.turns),
    }
    system = build_system_prompt(snapshot, settings)
    if system:
        payload["system"] = system
    if settings.temperature is not None:
        payload["temperature"] = settings.temperature
    if settings.top_p is not None:
        payload["top_p"] = settings.top_p
    if settings.top_k is not None:
        payload["top_k"] = settings.top_k
    if settings.stop_sequences:
        payload["stop_sequences"] = list(settings.stop_sequences)
    if tools:
        payload["tools"] = tools
        payload["tool_choice"] = tool_choice(settings.tool_choice)
    if stream:
        payload["stream"] = True
    return payload


def _error_detail(status_code: int, body: bytes) -> str:
    try:
        error = json.loads(body).get("error", {})
        return f"{error.get('type', 'unknown')} - {error.get('message', 'unknown error')}"
    except (ValueError, AttributeError):
        return f"HTTP {status_code}: {body.decode('utf-8', errors='replace')[:500]}"


def _retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class AnthropicTransport:
    """httpx client for the streaming Messages endpoint."""

    def __init__(self, settings: Settings, http_transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._http_transport = http_transport
        self._http: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            # Explicit auth token always uses Bearer
            headers["authorization"] = f"Bearer {auth_token}"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )
        return headers

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.stream_read_timeout,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=4, max_keepalive_connections=2)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=self._headers(),
            timeout=timeout,
            limits=limits,
            transport=self._http_transport,
        )
        logger.info("httpx client initialized for %s", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def open_stream(self, payload: dict[str, Any]) -> AsyncIterator[bytes]:
        """POST the payload and yield response body chunks as they arrive."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        try:
            async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    status = response.status_code
                    raise TransportError(
                        f"Anthropic API error ({status}): {_error_detail(status, body)}",
                        retryable=status in _RETRYABLE_STATUS,
                        status_code=status,
                        retry_after=_retry_after(response.headers),
                    )
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.TimeoutException as e:
            raise TransportError(f"API request timed out: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP error: {e!r}") from e
