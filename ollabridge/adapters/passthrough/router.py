"""Opaque relay of the backend's native /api/* endpoints."""

from __future__ import annotations

from contextlib import AsyncExitStack
from typing import AsyncGenerator

import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ollabridge.adapters.openai_compat.upstream import (
    _build_backend_url,
    _build_client_response_headers,
    _build_forward_headers,
    _get_backend_async_client,
    _http_error_detail,
)
from ollabridge.util.logger import get_logger

logger = get_logger("passthrough")
router = APIRouter()

_ALL_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")
BACKEND_API_PREFIX = "/api"


@router.api_route("/{subpath:path}", methods=list(_ALL_METHODS))
async def backend_passthrough(subpath: str, request: Request) -> Response:
    target_url = _build_backend_url(f"{BACKEND_API_PREFIX}/{subpath}", request.url.query)
    body = await request.body()
    forward_headers = _build_forward_headers(request.headers)
    logger.info("passthrough forward method=%s target=%s body_bytes=%d", request.method, target_url, len(body))

    client = await _get_backend_async_client()
    exit_stack = AsyncExitStack()
    try:
        upstream_response = await exit_stack.enter_async_context(
            client.stream(
                request.method,
                target_url,
                headers=forward_headers,
                content=body,
            )
        )
    except httpx.HTTPError as exc:
        await exit_stack.aclose()
        detail = _http_error_detail(exc)
        logger.warning("passthrough backend unreachable target=%s error=%s", target_url, detail)
        return JSONResponse(
            status_code=502,
            content={
                "error": {
                    "message": f"backend_unreachable: {detail}",
                    "type": "ollabridge_error",
                    "code": "backend_unreachable",
                }
            },
        )

    async def _iter_body() -> AsyncGenerator[bytes, None]:
        try:
            async for chunk in upstream_response.aiter_bytes():
                if chunk:
                    yield chunk
        except httpx.HTTPError as exc:
            logger.warning("passthrough backend stream interrupted target=%s error=%s", target_url, _http_error_detail(exc))
        finally:
            await exit_stack.aclose()

    logger.debug("passthrough relay target=%s status=%s", target_url, upstream_response.status_code)
    return StreamingResponse(
        _iter_body(),
        status_code=upstream_response.status_code,
        headers=_build_client_response_headers(upstream_response.headers),
    )
