"""
Backend URL building, header filtering and HTTP forwarding.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import AsyncExitStack
from typing import Any, AsyncGenerator, Mapping

import httpx

from ollabridge.config.settings import settings
from ollabridge.core.errors import BackendHTTPError, BackendStreamError, BackendUnreachableError
from ollabridge.util.logger import logger

_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
# The bridge's own credential and framing headers never reach the backend.
_FORWARD_HEADER_DENYLIST = frozenset({"host", "authorization", "content-length", *_HOP_BY_HOP_HEADERS})
_RESPONSE_HEADER_DENYLIST = frozenset({"content-length", "content-encoding", *_HOP_BY_HOP_HEADERS})
_ERROR_DETAIL_MAX_CHARS = 600

_backend_async_client: httpx.AsyncClient | None = None
_backend_client_lock: asyncio.Lock | None = None


def _backend_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.backend_max_connections)),
        max_keepalive_connections=max(5, int(settings.backend_max_keepalive_connections)),
    )


def _backend_http_timeout() -> httpx.Timeout:
    timeout = float(settings.backend_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


def _backend_stream_timeout() -> httpx.Timeout:
    # generation may pause for a long time between records; no read deadline per chunk
    timeout = float(settings.backend_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=None, write=timeout, pool=timeout)


async def _get_backend_async_client() -> httpx.AsyncClient:
    global _backend_async_client, _backend_client_lock
    if _backend_async_client is not None:
        return _backend_async_client
    if _backend_client_lock is None:
        _backend_client_lock = asyncio.Lock()
    async with _backend_client_lock:
        if _backend_async_client is None:
            _backend_async_client = httpx.AsyncClient(
                follow_redirects=False,
                timeout=_backend_http_timeout(),
                limits=_backend_http_limits(),
            )
    return _backend_async_client


async def close_backend_async_client() -> None:
    global _backend_async_client
    if _backend_async_client is not None:
        await _backend_async_client.aclose()
        _backend_async_client = None


def _build_backend_url(path: str, query: str = "") -> str:
    base = settings.backend_base_url.strip().rstrip("/")
    route_path = path if path.startswith("/") else f"/{path}"
    url = f"{base}{route_path}"
    if query:
        url = f"{url}?{query}"
    return url


def _build_forward_headers(headers: Mapping[str, str]) -> dict[str, str]:
    forwarded: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in _FORWARD_HEADER_DENYLIST:
            continue
        forwarded[key] = value
    if not any(name.lower() == "content-type" for name in forwarded):
        forwarded["Content-Type"] = "application/json"
    return forwarded


def _build_client_response_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in _RESPONSE_HEADER_DENYLIST}


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:_ERROR_DETAIL_MAX_CHARS]
    if isinstance(payload.get("error"), str):
        return payload["error"][:_ERROR_DETAIL_MAX_CHARS]
    return json.dumps(payload, ensure_ascii=False)[:_ERROR_DETAIL_MAX_CHARS]


def _http_error_detail(exc: httpx.HTTPError | httpx.StreamError) -> str:
    return (str(exc) or "").strip() or exc.__class__.__name__ or "connection_failed_or_timeout"


async def _forward_json(url: str, payload: dict[str, Any]) -> tuple[int, dict[str, Any] | str]:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    logger.debug("forward_json start url=%s payload_bytes=%d", url, len(body))
    client = await _get_backend_async_client()
    try:
        response = await client.post(url=url, content=body, headers={"Content-Type": "application/json"})
    except httpx.HTTPError as exc:
        detail = _http_error_detail(exc)
        logger.warning("forward_json http_error url=%s error=%s", url, detail)
        raise BackendUnreachableError(f"backend_unreachable: {detail}") from exc
    logger.debug("forward_json done url=%s status=%s", url, response.status_code)
    return response.status_code, _decode_json_or_text(response.content)


async def _fetch_json(url: str) -> tuple[int, dict[str, Any] | str]:
    logger.debug("fetch_json start url=%s", url)
    client = await _get_backend_async_client()
    try:
        response = await client.get(url=url)
    except httpx.HTTPError as exc:
        detail = _http_error_detail(exc)
        logger.warning("fetch_json http_error url=%s error=%s", url, detail)
        raise BackendUnreachableError(f"backend_unreachable: {detail}") from exc
    logger.debug("fetch_json done url=%s status=%s", url, response.status_code)
    return response.status_code, _decode_json_or_text(response.content)


async def _iter_backend_bytes(
    response: httpx.Response,
    exit_stack: AsyncExitStack,
    url: str,
) -> AsyncGenerator[bytes, None]:
    try:
        async for chunk in response.aiter_bytes():
            if chunk:
                yield chunk
    except (httpx.HTTPError, httpx.StreamError) as exc:
        detail = _http_error_detail(exc)
        logger.warning("backend stream interrupted url=%s error=%s", url, detail)
        raise BackendStreamError(f"backend_stream_interrupted: {detail}") from exc
    finally:
        await exit_stack.aclose()


async def _open_backend_stream(url: str, payload: dict[str, Any]) -> AsyncGenerator[bytes, None]:
    """Connect and check the status before any byte is handed to the caller.

    Raises BackendUnreachableError / BackendHTTPError up front so the route
    can still answer with a normal error response. The returned generator
    owns the connection and closes it when exhausted or closed.
    """
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    logger.debug("forward_stream start url=%s payload_bytes=%d", url, len(body))
    client = await _get_backend_async_client()
    exit_stack = AsyncExitStack()
    try:
        response = await exit_stack.enter_async_context(
            client.stream(
                "POST",
                url,
                content=body,
                headers={"Content-Type": "application/json"},
                timeout=_backend_stream_timeout(),
            )
        )
    except httpx.HTTPError as exc:
        await exit_stack.aclose()
        detail = _http_error_detail(exc)
        logger.warning("forward_stream http_error url=%s error=%s", url, detail)
        raise BackendUnreachableError(f"backend_unreachable: {detail}") from exc

    logger.debug("forward_stream connected url=%s status=%s", url, response.status_code)
    if response.status_code >= 400:
        try:
            detail = _safe_error_detail(_decode_json_or_text(await response.aread()))
        except httpx.HTTPError as exc:
            detail = _http_error_detail(exc)
        finally:
            await exit_stack.aclose()
        raise BackendHTTPError(response.status_code, detail)
    return _iter_backend_bytes(response, exit_stack, url)
