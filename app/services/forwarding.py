"""Forwarding engine: upstream targeting, body handling, SSE relay, usage extraction.

The proxy route (``app.api.proxy``) drives a request through these pieces:

1. ``resolve_target`` picks the tenant's own upstream or the global one.
2. ``inspect_body`` detects ``stream: true`` and makes sure the provider is
   asked to report usage in the stream (``stream_options.include_usage``).
3. The request is sent with ``client.send(..., stream=...)``; streaming
   responses are returned as soon as the upstream headers arrive.
4. ``relay_stream`` passes SSE lines through as they arrive while a
   ``StreamUsageScanner`` watches for the usage-bearing terminal event.
   Buffered responses go through ``extract_buffered_usage`` instead.
5. ``Timings`` keeps the four monotonic clock reads used for latency.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from cryptography.fernet import InvalidToken

from app.core import diagnostics
from app.core.config import get_settings
from app.core.errors import UpstreamNotConfigured
from app.core.security import decrypt_value
from app.models.tenant import Tenant

logger = logging.getLogger(__name__)

# The serving layer manages its own framing and compression for these
HOP_BY_HOP_HEADERS = frozenset({
    "transfer-encoding",
    "content-length",
    "content-encoding",
    "connection",
    "keep-alive",
})

SSE_DATA_PREFIX = "data: "
SSE_DONE = "[DONE]"


# ── Upstream client ──────────────────────────────────────────

_client: httpx.AsyncClient | None = None


def build_upstream_client() -> httpx.AsyncClient:
    timeout = get_settings().upstream_timeout_seconds
    return httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))


def get_upstream_client() -> httpx.AsyncClient:
    """FastAPI dependency: the shared upstream HTTP client."""
    global _client
    if _client is None:
        _client = build_upstream_client()
    return _client


async def close_upstream_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Target ───────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class UpstreamTarget:
    base_url: str
    api_key: str

    def url_for(self, deployment: str, rest: str) -> str:
        return f"{self.base_url.rstrip('/')}/openai/deployments/{deployment}/{rest}"


def resolve_target(tenant: Tenant) -> UpstreamTarget:
    """Tenant override when configured, else the global upstream."""
    if tenant.endpoint_url and tenant.endpoint_key_encrypted:
        try:
            api_key = decrypt_value(tenant.endpoint_key_encrypted)
        except InvalidToken:
            logger.error(
                "Stored upstream key for tenant %s cannot be decrypted with the current "
                "ENCRYPTION_KEY; set the endpoint key again", tenant.slug,
            )
            raise UpstreamNotConfigured() from None
        return UpstreamTarget(tenant.endpoint_url, api_key)
    settings = get_settings()
    if settings.upstream_url and settings.upstream_api_key:
        return UpstreamTarget(settings.upstream_url, settings.upstream_api_key)
    raise UpstreamNotConfigured()


# ── Request body ─────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class InspectedBody:
    content: bytes
    is_stream: bool = False
    model: str | None = None


def inspect_body(raw: bytes) -> InspectedBody:
    """Best-effort look at the JSON payload.

    Anything that is not a JSON object is forwarded byte-for-byte and treated
    as non-streaming. For streaming requests the body is re-serialized only if
    ``include_usage`` had to be added; every other field is preserved.
    """
    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return InspectedBody(raw)
    if not isinstance(payload, dict):
        return InspectedBody(raw)

    model = payload.get("model") if isinstance(payload.get("model"), str) else None
    is_stream = payload.get("stream") is True
    if not is_stream:
        return InspectedBody(raw, False, model)

    options = payload.get("stream_options")
    if options is None:
        payload["stream_options"] = {"include_usage": True}
    elif isinstance(options, dict) and "include_usage" not in options:
        payload["stream_options"] = {**options, "include_usage": True}
    else:
        # Client made an explicit choice; leave the bytes alone
        return InspectedBody(raw, True, model)
    return InspectedBody(json.dumps(payload).encode(), True, model)


def build_upstream_request(
    client: httpx.AsyncClient,
    target: UpstreamTarget,
    deployment: str,
    rest: str,
    query: str,
    body: bytes,
    accept: str | None = None,
) -> httpx.Request:
    url = target.url_for(deployment, rest)
    if query:
        url = f"{url}?{query}"
    headers = {"api-key": target.api_key, "content-type": "application/json"}
    if accept:
        headers["accept"] = accept
    return client.build_request("POST", url, content=body, headers=headers)


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    return {
        name: value
        for name, value in headers.items()
        if name.lower() not in HOP_BY_HOP_HEADERS
    }


# ── Timings ──────────────────────────────────────────────────

@dataclass
class Timings:
    """Monotonic clock reads at the four request boundaries.

    overhead = forwarded - started   (auth, admission, body handling)
    upstream = first_byte - forwarded
    transfer = completed - first_byte
    total    = completed - started
    """

    started: float = field(default_factory=time.monotonic)
    forwarded: float | None = None
    first_byte: float | None = None
    completed: float | None = None

    def mark_forwarded(self) -> None:
        self.forwarded = time.monotonic()

    def mark_first_byte(self) -> None:
        self.first_byte = time.monotonic()

    def mark_completed(self) -> None:
        self.completed = time.monotonic()

    def as_ms(self) -> dict[str, int]:
        forwarded = self.forwarded if self.forwarded is not None else self.started
        first_byte = self.first_byte if self.first_byte is not None else forwarded
        completed = self.completed if self.completed is not None else first_byte
        return {
            "overhead_ms": _ms(forwarded - self.started),
            "upstream_ms": _ms(first_byte - forwarded),
            "transfer_ms": _ms(completed - first_byte),
            "total_ms": _ms(completed - self.started),
        }


def _ms(seconds: float) -> int:
    return max(0, round(seconds * 1000))


# ── Usage extraction ─────────────────────────────────────────

@dataclass
class UsageCapture:
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    found: bool = False


def _read_usage(usage: Any) -> tuple[int, int]:
    if not isinstance(usage, dict):
        raise ValueError("usage is not an object")
    prompt = usage["prompt_tokens"]
    completion = usage.get("completion_tokens", 0)
    if not isinstance(prompt, int) or not isinstance(completion, int):
        raise ValueError("token counts are not integers")
    return prompt, completion


class StreamUsageScanner:
    """Watches SSE lines for the model name and the terminal usage event."""

    def __init__(self) -> None:
        self.capture = UsageCapture()

    def feed(self, line: str) -> None:
        if not line.startswith(SSE_DATA_PREFIX):
            return
        data = line[len(SSE_DATA_PREFIX):].strip()
        if not data or data == SSE_DONE:
            return
        try:
            event = json.loads(data)
        except ValueError:
            return
        if not isinstance(event, dict):
            return

        if isinstance(event.get("model"), str) and event["model"]:
            self.capture.model = event["model"]

        # Usage-bearing terminal event: empty choices, populated usage
        if event.get("choices") == [] and event.get("usage"):
            try:
                prompt, completion = _read_usage(event["usage"])
            except (KeyError, ValueError):
                logger.warning("Malformed usage in terminal stream event: %r", event["usage"])
                return
            self.capture.prompt_tokens = prompt
            self.capture.completion_tokens = completion
            self.capture.found = True


def extract_buffered_usage(body: bytes) -> UsageCapture:
    """Parse model and token usage from a complete JSON response body."""
    capture = UsageCapture()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return capture
    if not isinstance(payload, dict):
        return capture
    if isinstance(payload.get("model"), str):
        capture.model = payload["model"]
    if "usage" in payload:
        try:
            capture.prompt_tokens, capture.completion_tokens = _read_usage(payload["usage"])
            capture.found = True
        except (KeyError, ValueError):
            logger.warning("Malformed usage object in upstream response")
    return capture


def note_missing_usage(capture: UsageCapture, status_code: int, deployment: str) -> bool:
    """Count a successful response that carried no usable usage data.

    Returns True when the request must be recorded as unpriced.
    """
    if capture.found or not 200 <= status_code < 300:
        return False
    diagnostics.record_extraction_failure()
    logger.warning(
        "No usage data in %d response from deployment %s; recording zero tokens as unpriced",
        status_code, deployment,
    )
    return True


# ── Streaming relay ──────────────────────────────────────────

async def relay_stream(
    upstream: httpx.Response,
    timings: Timings,
    on_complete: Callable[[UsageCapture], None],
) -> AsyncIterator[str]:
    """Yield upstream SSE lines to the caller as they arrive.

    Each line goes out before it is scanned, so usage capture never delays
    delivery. If the upstream drops mid-stream, what was already sent stands.
    ``on_complete`` runs exactly once, on normal end, upstream failure, or
    caller disconnect.
    """
    scanner = StreamUsageScanner()
    try:
        async for line in upstream.aiter_lines():
            yield line + "\n"
            scanner.feed(line)
    except httpx.HTTPError as exc:
        logger.warning("Upstream stream ended early: %s", exc)
    finally:
        timings.mark_completed()
        on_complete(scanner.capture)
        await asyncio.shield(upstream.aclose())
