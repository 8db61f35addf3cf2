"""OpenAI-compatible routes: chat completions and the static model catalog."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from gravitygate.adapters.openai_compat.dispatch import dispatch_chat
from gravitygate.adapters.openai_compat.upstream import UpstreamClient
from gravitygate.config.settings import settings
from gravitygate.core.accounts import IdentityPool, get_identity_pool
from gravitygate.core.models import ChatCompletionRequest
from gravitygate.util.logger import logger
from gravitygate.util.masking import redact_headers


router = APIRouter()

_MODELS_CREATED = 1734336000
_MODEL_CATALOG: tuple[tuple[str, str], ...] = (
    ("gemini-2.5-flash", "google"),
    ("gemini-2.5-flash-thinking", "google"),
    ("gemini-3-pro-low", "google"),
    ("gemini-3-pro-high", "google"),
    ("gemini-3-pro-image", "google"),
    ("claude-sonnet-4-5", "anthropic"),
    ("claude-sonnet-4-5-thinking", "anthropic"),
    ("claude-opus-4-5-thinking", "anthropic"),
)

# 调试时完整请求内容最大输出长度，避免日志过长
_DEBUG_REQUEST_BODY_MAX_CHARS = 32000

_upstream_client = UpstreamClient()


def get_upstream_client() -> UpstreamClient:
    return _upstream_client


def _log_request_if_debug(request: Request, payload: ChatCompletionRequest) -> None:
    """当 GRAVITY_LOG_LEVEL=debug 时打请求概要；正文按 log_full_request_body 决定是否打印。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    body_str = json.dumps(payload.model_dump(), ensure_ascii=False)
    logger.debug(
        "incoming request method=%s path=%s model=%s stream=%s messages=%d headers=%s body_size=%d",
        request.method,
        request.url.path,
        payload.model,
        payload.is_stream,
        len(payload.messages),
        redact_headers(dict(request.headers)),
        len(body_str),
    )
    if settings.log_full_request_body:
        logger.debug("incoming request body:\n%s", body_str[:_DEBUG_REQUEST_BODY_MAX_CHARS])


@router.post("/chat/completions")
async def chat_completions(
    payload: ChatCompletionRequest,
    request: Request,
    pool: IdentityPool = Depends(get_identity_pool),
    client: UpstreamClient = Depends(get_upstream_client),
):
    _log_request_if_debug(request, payload)
    return await dispatch_chat(payload, pool, client)


@router.get("/models")
async def list_models() -> dict:
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": _MODELS_CREATED, "owned_by": owner}
            for model_id, owner in _MODEL_CATALOG
        ],
    }
