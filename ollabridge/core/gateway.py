"""FastAPI app entry."""

from __future__ import annotations

import hmac

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ollabridge.adapters.openai_compat.router import router as openai_router
from ollabridge.adapters.openai_compat.upstream import close_backend_async_client
from ollabridge.adapters.passthrough.router import BACKEND_API_PREFIX, router as passthrough_router
from ollabridge.config.settings import settings
from ollabridge.util.logger import logger

app = FastAPI(title=settings.app_name)
app.include_router(openai_router, prefix="/v1")
app.include_router(passthrough_router, prefix=BACKEND_API_PREFIX)

_BEARER_PREFIX = "Bearer "


def _blocked_response(status_code: int, reason: str, detail: str | None = None) -> JSONResponse:
    detail_text = (detail or reason).strip() or reason
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail_text,
                "type": "ollabridge_error",
                "code": reason,
            }
        },
    )


def _bearer_token_valid(authorization: str) -> bool:
    expected = settings.api_key
    if not expected:
        return False
    if not authorization.startswith(_BEARER_PREFIX):
        return False
    presented = authorization[len(_BEARER_PREFIX):]
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


@app.middleware("http")
async def bearer_auth_middleware(request: Request, call_next):
    if not _bearer_token_valid(request.headers.get("authorization", "")):
        if not settings.api_key:
            logger.error("api_key is not configured; rejecting path=%s", request.url.path)
        else:
            logger.warning("auth reject method=%s path=%s", request.method, request.url.path)
        return _blocked_response(status_code=401, reason="unauthorized", detail="Unauthorized")

    try:
        return await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _blocked_response(
            status_code=500,
            reason="gateway_internal_error",
            detail=f"gateway internal error: {exc}",
        )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # body that is not a JSON object never reaches the route
    messages = [str(item.get("msg", "invalid")) for item in exc.errors()]
    logger.info("invalid request body path=%s errors=%d", request.url.path, len(messages))
    return _blocked_response(
        status_code=400,
        reason="invalid_request_error",
        detail="; ".join(messages) or "invalid request body",
    )


@app.get("/health")
def health() -> dict:
    logger.debug("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_log() -> None:
    logger.info("%s listening on %s:%s env=%s", settings.app_name, settings.host, settings.port, settings.env)
    logger.info("forwarding requests to backend at %s", settings.backend_base_url)
    if not settings.api_key:
        logger.warning("OLLABRIDGE_API_KEY is empty; every request will be rejected")


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_backend_async_client()
