"""
调试用原文摘要：消息预览、上游原始响应等在日志里统一截断，只展示开头部分。
仅在 GRAVITY_LOG_LEVEL=debug 时由调用方打 DEBUG 日志；本模块只提供截断与格式化。
"""

from __future__ import annotations

import logging

from gravitygate.util.logger import logger

# 消息预览最大长度（字符）
MESSAGE_PREVIEW_MAX_LEN = 200
DEFAULT_EXCERPT_MAX_LEN = 500


def excerpt_for_debug(text: str, max_len: int = DEFAULT_EXCERPT_MAX_LEN) -> str:
    """
    将原文截断为可读摘要，便于 DEBUG 日志。不修改原字符串。
    """
    if not text:
        return ""
    s = str(text).strip()
    if len(s) <= max_len:
        return s
    return f"{s[:max_len]} ... [truncated, total {len(s)} chars]"


def debug_log_message_preview(index: int, role: str, text: str) -> None:
    """仅当 DEBUG 开启时，打一条消息内容预览。"""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug(
        "message preview index=%d role=%s content=%r",
        index,
        role,
        excerpt_for_debug(text, max_len=MESSAGE_PREVIEW_MAX_LEN),
    )
