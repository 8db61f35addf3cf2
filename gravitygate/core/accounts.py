"""
上游账号池：dispatch 只依赖 count() / next() 两个能力，轮换策略由池自己负责。
FileIdentityPool 从 config/accounts.json 读取账号，启动时加载，支持手动编辑后 reload。
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from gravitygate.config.settings import settings
from gravitygate.core.models import Identity
from gravitygate.util.logger import get_logger
from gravitygate.util.masking import mask_for_log

logger = get_logger("accounts")

_ACCOUNTS_KEY = "accounts"


class IdentityPool(ABC):
    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    async def next(self) -> Identity | None:
        """Return the next usable identity, or None when the pool is exhausted.

        Must be safe under concurrent callers.
        """
        pass


class StaticIdentityPool(IdentityPool):
    """Round-robin over a fixed list of identities."""

    def __init__(self, identities: list[Identity] | None = None) -> None:
        self._identities: list[Identity] = list(identities or [])
        self._cursor = 0
        self._lock = asyncio.Lock()

    def count(self) -> int:
        return len(self._identities)

    async def next(self) -> Identity | None:
        async with self._lock:
            if not self._identities:
                return None
            identity = self._identities[self._cursor % len(self._identities)]
            self._cursor = (self._cursor + 1) % len(self._identities)
            return identity

    def replace(self, identities: list[Identity]) -> None:
        self._identities = list(identities)
        self._cursor = 0


def _path(raw: str) -> Path:
    return Path(raw) if os.path.isabs(raw) else Path.cwd() / raw


def parse_identity(entry: Any) -> Identity | None:
    if not isinstance(entry, dict):
        return None
    access_token = str(entry.get("access_token") or "").strip()
    session_id = str(entry.get("session_id") or "").strip()
    if not access_token or not session_id:
        return None
    label = str(entry.get("email") or entry.get("label") or mask_for_log(access_token))
    project_id = str(entry.get("project_id") or "").strip()
    return Identity(
        label=label,
        access_token=access_token,
        session_id=session_id,
        project_id=project_id or None,
    )


class FileIdentityPool(StaticIdentityPool):
    """Identities loaded from a JSON file: ``{"accounts": [{"email", "access_token", "project_id", "session_id"}]}``."""

    def __init__(self, path: str | None = None) -> None:
        super().__init__()
        self.path = _path(path or settings.accounts_path)

    def load(self) -> int:
        """加载账号文件；无文件或解析失败时池为空，请求会得到 no_accounts。"""
        if not self.path.is_file():
            logger.warning("accounts file not found path=%s, pool is empty", self.path)
            self.replace([])
            return 0
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("accounts load failed path=%s error=%s", self.path, exc)
            self.replace([])
            return 0

        raw_entries = data.get(_ACCOUNTS_KEY) if isinstance(data, dict) else data
        identities: list[Identity] = []
        for index, entry in enumerate(raw_entries if isinstance(raw_entries, list) else []):
            identity = parse_identity(entry)
            if identity is None:
                logger.warning("skip malformed account entry index=%d path=%s", index, self.path)
                continue
            if identity.project_id is None:
                logger.warning("account has no project_id label=%s", identity.label)
            identities.append(identity)
        self.replace(identities)
        logger.info("accounts loaded path=%s count=%d", self.path, len(identities))
        return len(identities)


_pool: IdentityPool | None = None


def get_identity_pool() -> IdentityPool:
    """FastAPI dependency; tests override it through ``app.dependency_overrides``."""
    global _pool
    if _pool is None:
        pool = FileIdentityPool()
        pool.load()
        _pool = pool
    return _pool

