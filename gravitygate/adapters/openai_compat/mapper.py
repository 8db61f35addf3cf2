"""OpenAI <-> upstream content mapping."""

from __future__ import annotations

import json
import re
import time
import uuid
from collections import deque
from typing import Any, Sequence

from gravitygate.core.models import (
    ChatMessage,
    TextPart,
    UpstreamContent,
    UpstreamPart,
    UpstreamResponse,
)
from gravitygate.util.debug_excerpt import debug_log_message_preview, excerpt_for_debug
from gravitygate.util.logger import logger


# markdown 图片：![alt](data:image/png;base64,....)，base64 内允许空白/换行
_MARKDOWN_IMAGE_RE = re.compile(
    r"!\[.*?\]\(data:\s*(image/[a-zA-Z0-9.+-]+)\s*;\s*base64\s*,\s*([a-zA-Z0-9+/=\s]+)\)"
)
_DATA_URL_RE = re.compile(r"\s*data:\s*(image/[a-zA-Z0-9.+-]+)\s*;\s*base64\s*,\s*([a-zA-Z0-9+/=\s]+)")
_WHITESPACE_RE = re.compile(r"\s+")

IMAGE_PLACEHOLDER = "[Image Generated]"
TURN_SEPARATOR = "\n\n"

_ROLE_MAP = {
    "assistant": "model",
    "system": "user",
}

_FINISH_REASON_MAP = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


def map_role(role: str) -> str:
    return _ROLE_MAP.get(role, role)


def map_finish_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    return _FINISH_REASON_MAP.get(reason)


def _strip_payload(raw: str) -> str:
    return _WHITESPACE_RE.sub("", raw)


def split_markdown_images(text: str) -> list[UpstreamPart]:
    """Split *text* into text parts and inline-binary parts at every embedded base64 image."""
    parts: list[UpstreamPart] = []
    last_end = 0
    for match in _MARKDOWN_IMAGE_RE.finditer(text):
        if match.start() > last_end:
            parts.append(UpstreamPart.of_text(text[last_end:match.start()]))
        parts.append(UpstreamPart.of_inline(match.group(1), _strip_payload(match.group(2))))
        last_end = match.end()
    if last_end < len(text):
        parts.append(UpstreamPart.of_text(text[last_end:]))
    return parts


def parse_data_url(url: str) -> UpstreamPart | None:
    matched = _DATA_URL_RE.fullmatch(url)
    if not matched:
        return None
    return UpstreamPart.of_inline(matched.group(1), _strip_payload(matched.group(2)))


def _merge_adjacent_user_turns(contents: list[UpstreamContent]) -> list[UpstreamContent]:
    merged: list[UpstreamContent] = []
    for content in contents:
        if merged and content.role == "user" and merged[-1].role == "user":
            previous = merged[-1]
            if previous.parts and content.parts and previous.parts[-1].is_text and content.parts[0].is_text:
                previous.parts.append(UpstreamPart.of_text(TURN_SEPARATOR))
            previous.parts.extend(content.parts)
            continue
        merged.append(content)
    return merged


def to_upstream_contents(messages: Sequence[ChatMessage]) -> list[UpstreamContent]:
    """Convert OpenAI chat messages into the upstream ``contents`` list.

    Images found on model turns are held back and sent as the leading parts of
    the next user turn.
    """
    contents: list[UpstreamContent] = []
    pending_images: deque[UpstreamPart] = deque()

    for index, message in enumerate(messages):
        debug_log_message_preview(index, message.role, message.preview_text())
        role = map_role(message.role)
        parts: list[UpstreamPart] = []

        if role == "user" and pending_images:
            logger.info("inject deferred images into user turn index=%d count=%d", index, len(pending_images))
            parts.extend(pending_images)
            pending_images.clear()

        if isinstance(message.content, str):
            for part in split_markdown_images(message.content):
                if part.inline_data is not None and role == "model":
                    pending_images.append(part)
                else:
                    parts.append(part)
        else:
            for item in message.content:
                if isinstance(item, TextPart):
                    parts.append(UpstreamPart.of_text(item.text))
                    continue
                inline = parse_data_url(item.image_url.url)
                if inline is None:
                    logger.warning(
                        "ignore unsupported image url index=%d url=%s",
                        index,
                        excerpt_for_debug(item.image_url.url, max_len=80),
                    )
                    continue
                if role == "model":
                    pending_images.append(inline)
                else:
                    logger.debug("multimodal image parsed index=%d mime=%s", index, inline.inline_data.mime_type)
                    parts.append(inline)

        if role == "model" and not parts and pending_images:
            parts.append(UpstreamPart.of_text(IMAGE_PLACEHOLDER))
        if not parts:
            parts.append(UpstreamPart.of_text(""))

        contents.append(UpstreamContent(role=role, parts=parts))

    return _merge_adjacent_user_turns(contents)


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def build_stream_chunk(
    model: str,
    text: str | None,
    finish_reason: str | None,
    *,
    chunk_id: str | None = None,
) -> str:
    """JSON text of one ``chat.completion.chunk``; ``text=None`` produces an empty delta."""
    delta: dict[str, Any] = {} if text is None else {"content": text}
    payload = {
        "id": chunk_id or new_completion_id(),
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    return json.dumps(payload, ensure_ascii=False)


def to_chat_completion(model: str, upstream_body: dict[str, Any]) -> dict[str, Any]:
    response = UpstreamResponse.probe(upstream_body)
    candidate = response.first_candidate
    text = candidate.joined_text() if candidate else ""
    finish_reason = map_finish_reason(candidate.finish_reason) if candidate else None
    output: dict[str, Any] = {
        "id": new_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": text},
                "finish_reason": finish_reason,
            }
        ],
    }
    usage = response.usage_metadata
    if usage is not None:
        output["usage"] = {
            "prompt_tokens": usage.prompt_token_count,
            "completion_tokens": usage.candidates_token_count,
            "total_tokens": usage.total_token_count,
        }
    return output
