"""FastAPI app entry."""

from __future__ import annotations

import hmac

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gravitygate.adapters.openai_compat.router import router as openai_router
from gravitygate.adapters.openai_compat.upstream import close_upstream_async_client
from gravitygate.config.settings import settings
from gravitygate.core.accounts import get_identity_pool
from gravitygate.util.logger import logger

app = FastAPI(title=settings.app_name)
app.include_router(openai_router, prefix="/v1")

_OPEN_PATHS = frozenset({"/healthz"})


def _error_envelope(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type}},
    )


def _presented_key(request: Request) -> str:
    authorization = (request.headers.get("authorization") or "").strip()
    if authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return (request.headers.get("x-api-key") or "").strip()


def _client_key_valid(request: Request) -> bool:
    expected = settings.api_key
    if not expected:
        return True
    presented = _presented_key(request)
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


@app.middleware("http")
async def client_boundary_middleware(request: Request, call_next):
    if request.url.path in _OPEN_PATHS:
        return await call_next(request)

    if request.url.path.startswith("/v1/") and not _client_key_valid(request):
        client_host = request.client.host if request.client else ""
        logger.warning("boundary reject invalid api key host=%s path=%s", client_host, request.url.path)
        return _error_envelope(401, "Invalid or missing API key", "invalid_api_key")

    try:
        return await call_next(request)
    except Exception as exc:  # pragma: no cover - fail-safe
        logger.exception("gateway unhandled exception path=%s", request.url.path)
        return _error_envelope(500, f"gateway internal error: {exc}", "api_error")


@app.get("/healthz")
def healthz() -> dict:
    logger.debug("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_load_accounts() -> None:
    pool = get_identity_pool()
    logger.info("gateway started accounts=%d", pool.count())


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()
