"""OpenAI-compatible routes backed by Ollama."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from ollabridge.adapters.openai_compat.mapper import (
    make_request_id,
    to_backend_chat,
    to_chat_response,
    to_model_list,
)
from ollabridge.adapters.openai_compat.stream_utils import _build_streaming_response, reframe_backend_stream
from ollabridge.adapters.openai_compat.upstream import (
    _build_backend_url,
    _fetch_json,
    _forward_json,
    _open_backend_stream,
    _safe_error_detail,
)
from ollabridge.config.settings import settings
from ollabridge.core.errors import BackendHTTPError, BackendUnreachableError
from ollabridge.core.models import BackendChatRecord, BackendModelList, PublicChatRequest
from ollabridge.util.logger import logger


router = APIRouter()

# 调试时完整请求内容最大输出长度，避免日志过长
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000
_DEBUG_HEADERS_REDACT = frozenset({"authorization", "cookie", "proxy-authorization"})


def _log_request_if_debug(request: Request, payload: dict[str, Any], route: str) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    headers_safe = {}
    for k, v in request.headers.items():
        key_lower = k.lower()
        if key_lower in _DEBUG_HEADERS_REDACT or "key" in key_lower or "secret" in key_lower or "token" in key_lower:
            headers_safe[k] = "***"
        else:
            headers_safe[k] = v
    try:
        body_str = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        body_str = str(payload)
    logger.debug(
        "incoming request method=%s path=%s route=%s headers=%s body_size=%d",
        request.method,
        request.url.path,
        route,
        headers_safe,
        len(body_str),
    )
    if settings.log_full_request_body:
        logger.debug("incoming request body:\n%s", body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS])


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    detail = (message or "").strip() or code
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail,
                "type": "ollabridge_error",
                "code": code,
            }
        },
    )


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for item in exc.errors():
        location = ".".join(str(piece) for piece in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg', 'invalid')}" if location else str(item.get("msg", "invalid")))
    return "; ".join(parts) or "invalid request body"


async def _execute_chat_stream(req: PublicChatRequest, request_id: str) -> StreamingResponse | JSONResponse:
    backend_req = to_backend_chat(req)
    url = _build_backend_url(settings.backend_chat_path)
    try:
        chunks = await _open_backend_stream(url, backend_req.to_wire())
    except BackendUnreachableError as exc:
        logger.error("chat stream backend unreachable request_id=%s error=%s", request_id, exc)
        return _error_response(502, "backend_unreachable", str(exc))
    except BackendHTTPError as exc:
        logger.warning("chat stream backend status=%s request_id=%s", exc.status_code, request_id)
        return _error_response(exc.status_code, "backend_http_error", exc.detail)

    logger.info("chat stream start request_id=%s model=%s", request_id, req.model)
    return _build_streaming_response(reframe_backend_stream(chunks, request_id=request_id, model=req.model))


async def _execute_chat_once(req: PublicChatRequest, request_id: str) -> JSONResponse:
    backend_req = to_backend_chat(req)
    url = _build_backend_url(settings.backend_chat_path)
    try:
        status_code, backend_body = await _forward_json(url, backend_req.to_wire())
    except BackendUnreachableError as exc:
        logger.error("chat backend unreachable request_id=%s error=%s", request_id, exc)
        return _error_response(502, "backend_unreachable", str(exc))

    if status_code >= 400:
        logger.warning("chat backend status=%s request_id=%s", status_code, request_id)
        return _error_response(status_code, "backend_http_error", _safe_error_detail(backend_body))

    try:
        if not isinstance(backend_body, dict):
            raise ValueError("backend returned a non-object body")
        record = BackendChatRecord.model_validate(backend_body)
        output = to_chat_response(record, request_id, req.model)
    except (ValueError, ValidationError) as exc:
        logger.exception("chat translation failed request_id=%s", request_id)
        return _error_response(500, "internal_error", f"failed to translate backend response: {exc}")

    logger.info(
        "chat completed request_id=%s model=%s total_tokens=%d",
        request_id,
        req.model,
        output.usage.total_tokens,
    )
    return JSONResponse(status_code=200, content=output.model_dump())


@router.post("/chat/completions")
async def chat_completions(payload: dict, request: Request):
    _log_request_if_debug(request, payload, "/v1/chat/completions")
    try:
        req = PublicChatRequest.model_validate(payload)
    except ValidationError as exc:
        logger.warning("chat request rejected path=%s errors=%d", request.url.path, exc.error_count())
        return _error_response(400, "invalid_request_error", _validation_message(exc))

    request_id = make_request_id()
    logger.debug("chat request accepted request_id=%s stream=%s", request_id, bool(req.stream))
    if req.stream:
        return await _execute_chat_stream(req, request_id)
    return await _execute_chat_once(req, request_id)


@router.get("/models")
async def list_models():
    url = _build_backend_url(settings.backend_tags_path)
    try:
        status_code, backend_body = await _fetch_json(url)
    except BackendUnreachableError as exc:
        logger.error("model listing backend unreachable error=%s", exc)
        return _error_response(502, "backend_unreachable", str(exc))

    if status_code >= 400:
        return _error_response(status_code, "backend_http_error", _safe_error_detail(backend_body))

    try:
        if not isinstance(backend_body, dict):
            raise ValueError("backend returned a non-object body")
        listing = BackendModelList.model_validate(backend_body)
    except (ValueError, ValidationError) as exc:
        logger.exception("model listing translation failed")
        return _error_response(500, "internal_error", f"failed to translate backend model list: {exc}")
    output = to_model_list(listing)
    logger.info("model listing served count=%d", len(output.data))
    return JSONResponse(status_code=200, content=output.model_dump())
