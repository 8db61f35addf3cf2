"""
SSE 帧构建与 StreamingResponse 包装。从 router 拆出，便于维护与单测。
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterable, AsyncIterator, Iterable

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask


def _sse_frame(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def _stream_done_sse_chunk() -> bytes:
    return b"data: [DONE]\n\n"


def _stream_error_sse_chunk(message: str, error_type: str = "api_error") -> bytes:
    """流已开始后上游失败：发一条错误事件，格式与 JSON 错误响应一致。"""
    detail = (message or "upstream_error").strip() or "upstream_error"
    payload = {"error": {"message": detail, "type": error_type}}
    return _sse_frame(json.dumps(payload, ensure_ascii=False))


class ClosingStream:
    """Async iterator over *frames* whose ``aclose()`` also closes *source*.

    The source is released even when iteration never started (client gone
    before the first body read); repeated ``aclose()`` calls are harmless.
    """

    def __init__(self, frames: AsyncIterator[Any], source: Any) -> None:
        self._frames = frames
        self._source = source

    def __aiter__(self) -> "ClosingStream":
        return self

    async def __anext__(self) -> Any:
        return await self._frames.__anext__()

    async def aclose(self) -> None:
        try:
            await self._frames.aclose()
        finally:
            await self._source.aclose()


def _build_streaming_response(
    generator: Iterable[bytes] | AsyncIterable[bytes],
    background: BackgroundTask | None = None,
) -> StreamingResponse:
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
        background=background,
    )
