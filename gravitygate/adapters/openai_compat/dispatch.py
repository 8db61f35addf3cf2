"""
请求分发：取账号 → 调上游 → 按错误字符串分类 → 成功返回 / 换账号重试 / 直接失败。
账号轮换由账号池负责，这里只消费 count() / next()。
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from time import time
from typing import AsyncGenerator, AsyncIterator, Union

from fastapi.responses import JSONResponse, Response
from starlette.background import BackgroundTask

from gravitygate.adapters.openai_compat.mapper import to_chat_completion
from gravitygate.adapters.openai_compat.postprocess import (
    is_image_model,
    process_inline_data,
    synthetic_image_stream,
)
from gravitygate.adapters.openai_compat.stream_utils import (
    ClosingStream,
    _build_streaming_response,
    _sse_frame,
    _stream_done_sse_chunk,
    _stream_error_sse_chunk,
)
from gravitygate.adapters.openai_compat.upstream import (
    DECODE_ERROR_PREFIX,
    DONE_MARKER,
    READ_ERROR_PREFIX,
    TRANSPORT_ERROR_PREFIX,
    UpstreamClient,
)
from gravitygate.core.accounts import IdentityPool
from gravitygate.core.context import RequestContext
from gravitygate.core.errors import ConfigurationError, UpstreamError
from gravitygate.core.models import ChatCompletionRequest, Identity
from gravitygate.util.logger import logger

RETRYABLE_MARKERS = (
    "429",
    "RESOURCE_EXHAUSTED",
    "QUOTA_EXHAUSTED",
    "The request has been rate limited",
    READ_ERROR_PREFIX,
    DECODE_ERROR_PREFIX,
    "closed connection",
    TRANSPORT_ERROR_PREFIX,
)

ERROR_NO_ACCOUNTS = "no_accounts"
ERROR_ALL_EXHAUSTED = "all_accounts_exhausted"
ERROR_CONFIG = "config_error"
ERROR_API = "api_error"


@dataclass(slots=True)
class Success:
    response: Response


@dataclass(slots=True)
class Retry:
    reason: str


@dataclass(slots=True)
class Error:
    response: JSONResponse
    message: str = ""


DispatchOutcome = Union[Success, Retry, Error]


def error_response(status_code: int, message: str, error_type: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": error_type}},
    )


def is_retryable(message: str) -> bool:
    return any(marker in message for marker in RETRYABLE_MARKERS)


def classify_error(message: str) -> Retry | Error:
    if is_retryable(message):
        return Retry(reason=message)
    return Error(
        response=error_response(500, f"Upstream API error: {message}", ERROR_API),
        message=message,
    )


def resolve_project_id(identity: Identity) -> str:
    if not identity.project_id:
        raise ConfigurationError(f"account {identity.label} has no project_id")
    return identity.project_id


async def relay_upstream_stream(chunks: AsyncIterator[str], ctx: RequestContext) -> AsyncGenerator[bytes, None]:
    """Re-frame upstream chunk strings as SSE; adds ``[DONE]`` at EOF if upstream never sent one."""
    done_sent = False
    try:
        async for chunk in chunks:
            yield _sse_frame(chunk)
            if chunk == DONE_MARKER:
                done_sent = True
                break
        if not done_sent:
            yield _stream_done_sse_chunk()
    except UpstreamError as exc:
        # 响应头已发出，无法再换账号重试
        logger.error(
            "stream upstream failure request_id=%s label=%s attempt=%d error=%s",
            ctx.request_id,
            ctx.tried_labels[-1] if ctx.tried_labels else "",
            ctx.attempts,
            exc,
        )
        yield _stream_error_sse_chunk(str(exc))
    finally:
        await chunks.aclose()


async def _invoke(
    request: ChatCompletionRequest,
    identity: Identity,
    client: UpstreamClient,
    ctx: RequestContext,
) -> DispatchOutcome:
    try:
        project_id = resolve_project_id(identity)
    except ConfigurationError as exc:
        return Error(response=error_response(500, str(exc), ERROR_CONFIG), message=str(exc))

    try:
        if request.is_stream and is_image_model(request.model):
            body = await client.generate(request, identity, project_id)
            logger.info("image generation succeeded request_id=%s, emitting synthetic stream", ctx.request_id)
            processed = process_inline_data(body)
            return Success(_build_streaming_response(synthetic_image_stream(request.model, processed)))

        if request.is_stream:
            chunks = await client.stream_generate(request, identity, project_id)
            body = ClosingStream(relay_upstream_stream(chunks, ctx), chunks)
            return Success(_build_streaming_response(body, background=BackgroundTask(body.aclose)))

        body = await client.generate(request, identity, project_id)
        return Success(JSONResponse(content=to_chat_completion(request.model, process_inline_data(body))))
    except UpstreamError as exc:
        return classify_error(str(exc))


async def dispatch_chat(
    request: ChatCompletionRequest,
    pool: IdentityPool,
    client: UpstreamClient,
    ctx: RequestContext | None = None,
) -> Response:
    if ctx is None:
        ctx = RequestContext(request_id=f"req-{uuid.uuid4().hex[:12]}", model=request.model)
    ctx.stream = request.is_stream
    ctx.budget = max(pool.count(), 1)

    while True:
        identity = await pool.next()
        if identity is None:
            logger.warning("no account available request_id=%s attempts=%d", ctx.request_id, ctx.attempts)
            return error_response(503, "No available accounts", ERROR_NO_ACCOUNTS)

        attempt = ctx.begin_attempt(identity.label)
        logger.info(
            "dispatch attempt request_id=%s model=%s stream=%s label=%s attempt=%d/%d",
            ctx.request_id,
            request.model,
            ctx.stream,
            identity.label,
            attempt,
            ctx.budget,
        )

        outcome = await _invoke(request, identity, client, ctx)

        if isinstance(outcome, Success):
            logger.info(
                "dispatch succeeded request_id=%s label=%s attempt=%d elapsed_ms=%d",
                ctx.request_id,
                identity.label,
                attempt,
                int((time() - ctx.started_at) * 1000),
            )
            return outcome.response

        if isinstance(outcome, Error):
            logger.error(
                "dispatch failed permanently request_id=%s label=%s attempt=%d error=%s",
                ctx.request_id,
                identity.label,
                attempt,
                outcome.message,
            )
            return outcome.response

        logger.warning(
            "dispatch retryable failure request_id=%s label=%s attempt=%d/%d error=%s",
            ctx.request_id,
            identity.label,
            attempt,
            ctx.budget,
            outcome.reason,
        )
        if ctx.budget_exhausted:
            return error_response(
                429,
                f"All accounts exhausted or failing. Last error: {outcome.reason}",
                ERROR_ALL_EXHAUSTED,
            )
