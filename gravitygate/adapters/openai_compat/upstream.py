"""
上游 cloudcode v1internal 客户端：请求体构造、单次生成、SSE 流式生成与逐事件转码。
所有失败都以 UpstreamError(描述字符串) 抛出，由 dispatch 按字符串内容分类是否重试。
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, AsyncGenerator, AsyncIterable

import httpx

from gravitygate.adapters.openai_compat.mapper import (
    build_stream_chunk,
    map_finish_reason,
    new_completion_id,
    to_upstream_contents,
)
from gravitygate.adapters.openai_compat.stream_utils import ClosingStream
from gravitygate.config.settings import settings
from gravitygate.core.errors import UpstreamError
from gravitygate.core.models import ChatCompletionRequest, Identity, UpstreamResponse
from gravitygate.util.debug_excerpt import excerpt_for_debug
from gravitygate.util.logger import logger

UPSTREAM_HOST = "daily-cloudcode-pa.sandbox.googleapis.com"
UPSTREAM_BASE_URL = f"https://{UPSTREAM_HOST}/v1internal"
GENERATE_URL = f"{UPSTREAM_BASE_URL}:generateContent"
STREAM_GENERATE_URL = f"{UPSTREAM_BASE_URL}:streamGenerateContent?alt=sse"
USER_AGENT = "antigravity/1.11.3 windows/amd64"
CLIENT_NAME = "antigravity"

DEFAULT_TEMPERATURE = 1.0
DEFAULT_TOP_P = 0.95
DEFAULT_MAX_OUTPUT_TOKENS = 8096
FUNCTION_CALLING_MODE = "VALIDATED"

DONE_MARKER = "[DONE]"

# 错误前缀，dispatch 的重试分类依赖这些字符串
TRANSPORT_ERROR_PREFIX = "upstream unreachable"
STATUS_ERROR_PREFIX = "upstream returned"
READ_ERROR_PREFIX = "failed to read response body"
DECODE_ERROR_PREFIX = "error decoding response body"
STREAM_ERROR_PREFIX = "stream error"
STREAM_PARSE_ERROR_PREFIX = "failed to parse stream event"

_upstream_async_client: httpx.AsyncClient | None = None
_upstream_client_lock: Any = None


def _upstream_http_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=max(10, int(settings.upstream_max_connections)),
        max_keepalive_connections=max(5, int(settings.upstream_max_keepalive_connections)),
    )


def _upstream_http_timeout() -> httpx.Timeout:
    timeout = float(settings.upstream_timeout_seconds)
    return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)


async def _get_upstream_async_client() -> httpx.AsyncClient:
    global _upstream_async_client, _upstream_client_lock
    if _upstream_async_client is not None:
        return _upstream_async_client
    if _upstream_client_lock is None:
        _upstream_client_lock = asyncio.Lock()
    async with _upstream_client_lock:
        if _upstream_async_client is None:
            _upstream_async_client = httpx.AsyncClient(
                http2=False,
                timeout=_upstream_http_timeout(),
                limits=_upstream_http_limits(),
            )
    return _upstream_async_client


async def close_upstream_async_client() -> None:
    global _upstream_async_client
    if _upstream_async_client is not None:
        await _upstream_async_client.aclose()
        _upstream_async_client = None


def build_upstream_payload(request: ChatCompletionRequest, project_id: str, session_id: str) -> dict[str, Any]:
    contents = to_upstream_contents(request.messages)
    return {
        "project": project_id,
        "requestId": str(uuid.uuid4()),
        "model": request.model,
        "userAgent": CLIENT_NAME,
        "request": {
            "contents": [content.to_payload() for content in contents],
            "systemInstruction": {
                "role": "user",
                "parts": [{"text": ""}],
            },
            "generationConfig": {
                "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
                "topP": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
                "maxOutputTokens": request.max_tokens if request.max_tokens is not None else DEFAULT_MAX_OUTPUT_TOKENS,
                "candidateCount": 1,
            },
            "toolConfig": {
                "functionCallingConfig": {
                    "mode": FUNCTION_CALLING_MODE,
                },
            },
            "sessionId": session_id,
        },
    }


def _build_headers(identity: Identity) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {identity.access_token}",
        "Host": UPSTREAM_HOST,
        "User-Agent": USER_AGENT,
        "Content-Type": "application/json",
    }


def _transport_detail(exc: httpx.HTTPError) -> str:
    return (str(exc) or "").strip() or type(exc).__name__


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncGenerator[str, None]:
    """Yield the ``data`` field of each SSE event; multi-line data is joined with newlines."""
    data_lines: list[str] = []
    async for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)
    if data_lines:
        yield "\n".join(data_lines)


def transcode_event(data: str, model: str, chunk_id: str) -> str:
    """Turn one upstream SSE payload into the JSON text of an OpenAI chunk."""
    if data == DONE_MARKER:
        return DONE_MARKER
    try:
        document = json.loads(data)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"{STREAM_PARSE_ERROR_PREFIX}: {exc}") from exc
    candidate = UpstreamResponse.probe(document).first_candidate
    text = candidate.first_text() if candidate else ""
    finish_reason = map_finish_reason(candidate.finish_reason) if candidate else None
    return build_stream_chunk(model, text, finish_reason, chunk_id=chunk_id)


async def transcode_sse_lines(lines: AsyncIterable[str], model: str) -> AsyncGenerator[str, None]:
    chunk_id = new_completion_id()
    async for data in iter_sse_data(lines):
        yield transcode_event(data, model, chunk_id)


class UpstreamClient:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return await _get_upstream_async_client()

    async def _open(self, url: str, payload: dict[str, Any], identity: Identity) -> httpx.Response:
        """发送请求并拿到响应头；非 2xx 时读完正文后抛出。"""
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        client = await self._get_client()
        request = client.build_request("POST", url, content=body, headers=_build_headers(identity))
        logger.debug("upstream request start url=%s label=%s payload_bytes=%d", url, identity.label, len(body))
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            detail = _transport_detail(exc)
            logger.warning("upstream request http_error url=%s label=%s error=%s", url, identity.label, detail)
            raise UpstreamError(f"{TRANSPORT_ERROR_PREFIX}: {detail}") from exc

        if not response.is_success:
            try:
                error_body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                error_body = ""
            finally:
                await response.aclose()
            raise UpstreamError(f"{STATUS_ERROR_PREFIX} {response.status_code}: {error_body}")
        logger.debug("upstream request connected url=%s status=%s", url, response.status_code)
        return response

    async def generate(
        self,
        request: ChatCompletionRequest,
        identity: Identity,
        project_id: str,
    ) -> dict[str, Any]:
        payload = build_upstream_payload(request, project_id, identity.session_id)
        response = await self._open(GENERATE_URL, payload, identity)
        try:
            raw = await response.aread()
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{READ_ERROR_PREFIX}: {_transport_detail(exc)}") from exc
        finally:
            await response.aclose()

        text = raw.decode("utf-8", errors="replace")
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.error("upstream response parse failed error=%s raw=%s", exc, excerpt_for_debug(text))
            raise UpstreamError(f"{DECODE_ERROR_PREFIX}: {exc}. raw={excerpt_for_debug(text)}") from exc
        if not isinstance(document, dict):
            raise UpstreamError(f"{DECODE_ERROR_PREFIX}: expected JSON object. raw={excerpt_for_debug(text)}")
        return document

    async def stream_generate(
        self,
        request: ChatCompletionRequest,
        identity: Identity,
        project_id: str,
    ) -> ClosingStream:
        """Open the streaming call; connection and status errors raise here, before any chunk is produced.

        The returned iterator owns the HTTP response: ``aclose()`` releases it
        whether or not iteration has started.
        """
        payload = build_upstream_payload(request, project_id, identity.session_id)
        response = await self._open(STREAM_GENERATE_URL, payload, identity)
        return ClosingStream(self._stream_chunks(response, request.model), response)

    @staticmethod
    async def _stream_chunks(response: httpx.Response, model: str) -> AsyncGenerator[str, None]:
        try:
            async for chunk in transcode_sse_lines(response.aiter_lines(), model):
                yield chunk
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{STREAM_ERROR_PREFIX}: {_transport_detail(exc)}") from exc
        finally:
            await response.aclose()
