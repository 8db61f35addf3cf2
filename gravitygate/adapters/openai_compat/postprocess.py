"""Rewrite upstream inline image payloads as markdown, and fake a stream for the image model."""

from __future__ import annotations

import copy
from typing import Any, AsyncGenerator

from gravitygate.adapters.openai_compat.mapper import build_stream_chunk, new_completion_id
from gravitygate.adapters.openai_compat.stream_utils import _sse_frame, _stream_done_sse_chunk
from gravitygate.core.models import UpstreamResponse

IMAGE_MODEL = "gemini-3-pro-image"
DEFAULT_IMAGE_MIME = "image/jpeg"
IMAGE_FALLBACK_TEXT = "Image generation failed or returned an unexpected format"


def is_image_model(model: str) -> bool:
    return model == IMAGE_MODEL


def image_markdown(mime_type: str, data: str) -> str:
    return f"\n\n![Generated Image](data:{mime_type};base64,{data})\n\n"


def _candidates_node(body: dict[str, Any]) -> Any:
    if "candidates" in body:
        return body["candidates"]
    wrapped = body.get("response")
    if isinstance(wrapped, dict):
        return wrapped.get("candidates")
    return None


def _rewrite_part(part: Any) -> Any:
    if not isinstance(part, dict):
        return part
    inline_data = part.get("inlineData")
    if not isinstance(inline_data, dict):
        return part
    mime_type = inline_data.get("mimeType") or DEFAULT_IMAGE_MIME
    data = inline_data.get("data") or ""
    return {"text": image_markdown(str(mime_type), str(data))}


def process_inline_data(body: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of *body* where every ``inlineData`` part is a markdown text part."""
    processed = copy.deepcopy(body)
    candidates = _candidates_node(processed)
    if not isinstance(candidates, list):
        return processed
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
            continue
        content["parts"] = [_rewrite_part(part) for part in content["parts"]]
    return processed


def extract_text(body: dict[str, Any]) -> str:
    candidate = UpstreamResponse.probe(body).first_candidate
    text = candidate.joined_text() if candidate else ""
    return text or IMAGE_FALLBACK_TEXT


async def synthetic_image_stream(model: str, processed_body: dict[str, Any]) -> AsyncGenerator[bytes, None]:
    """Two chunk events (content, then stop) followed by ``[DONE]``."""
    chunk_id = new_completion_id()
    yield _sse_frame(build_stream_chunk(model, extract_text(processed_body), None, chunk_id=chunk_id))
    yield _sse_frame(build_stream_chunk(model, None, "stop", chunk_id=chunk_id))
    yield _stream_done_sse_chunk()
