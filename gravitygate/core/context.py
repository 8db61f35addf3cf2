"""Per-request dispatch context."""

from __future__ import annotations

from dataclasses import dataclass, field
from time import time


@dataclass(slots=True)
class RequestContext:
    request_id: str
    model: str
    stream: bool = False
    budget: int = 1
    attempts: int = 0
    tried_labels: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time)

    def begin_attempt(self, label: str) -> int:
        self.attempts += 1
        self.tried_labels.append(label)
        return self.attempts

    @property
    def budget_exhausted(self) -> bool:
        return self.attempts >= self.budget
