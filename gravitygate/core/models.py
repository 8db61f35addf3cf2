"""OpenAI-side request models, upstream content models and the identity record."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ===== OpenAI 请求 =====


class ImageUrl(BaseModel):
    url: str


class TextPart(BaseModel):
    type: Literal["text"]
    text: str = ""


class ImageUrlPart(BaseModel):
    type: Literal["image_url"]
    image_url: ImageUrl

    @field_validator("image_url", mode="before")
    @classmethod
    def _accept_bare_url(cls, value: Any) -> Any:
        # 部分客户端直接传字符串而不是 {"url": ...}
        if isinstance(value, str):
            return {"url": value}
        return value


ContentPart = Annotated[Union[TextPart, ImageUrlPart], Field(discriminator="type")]


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    role: str
    content: Union[str, list[ContentPart]] = ""

    @field_validator("content", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    def preview_text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


class ChatCompletionRequest(BaseModel):
    """Inbound /v1/chat/completions body. Shared read-only across retry attempts."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    stream: bool | None = False

    @property
    def is_stream(self) -> bool:
        return bool(self.stream)


# ===== 上游 content =====


class InlineData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mime_type: str = Field(alias="mimeType")
    data: str


class UpstreamPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str | None = None
    inline_data: InlineData | None = Field(default=None, alias="inlineData")

    @classmethod
    def of_text(cls, text: str) -> "UpstreamPart":
        return cls(text=text)

    @classmethod
    def of_inline(cls, mime_type: str, data: str) -> "UpstreamPart":
        return cls(inline_data=InlineData(mime_type=mime_type, data=data))

    @property
    def is_text(self) -> bool:
        return self.text is not None


class UpstreamContent(BaseModel):
    role: str
    parts: list[UpstreamPart] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ===== 上游响应 =====


class CandidateContent(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str | None = None
    # 单个异常 part 不影响其余 part，取文本时按 dict 过滤
    parts: list[Any] = Field(default_factory=list)

    @field_validator("parts", mode="before")
    @classmethod
    def _list_or_empty(cls, value: Any) -> Any:
        return value if isinstance(value, list) else []

    def text_parts(self) -> list[str]:
        return [part["text"] for part in self.parts if isinstance(part, dict) and isinstance(part.get("text"), str)]


class Candidate(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    content: CandidateContent | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")

    @field_validator("content", mode="before")
    @classmethod
    def _dict_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @field_validator("finish_reason", mode="before")
    @classmethod
    def _str_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    def first_text(self) -> str:
        if self.content is None or not self.content.parts:
            return ""
        first = self.content.parts[0]
        if not isinstance(first, dict):
            return ""
        text = first.get("text")
        return text if isinstance(text, str) else ""

    def joined_text(self) -> str:
        if self.content is None:
            return ""
        return "".join(self.content.text_parts())


class UsageMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    prompt_token_count: int = Field(default=0, alias="promptTokenCount")
    candidates_token_count: int = Field(default=0, alias="candidatesTokenCount")
    total_token_count: int = Field(default=0, alias="totalTokenCount")


def _validate_or_none(model: type[BaseModel], raw: Any) -> Any:
    try:
        return model.model_validate(raw)
    except ValidationError:
        return None


class UpstreamResponse(BaseModel):
    """Tolerant view over an upstream document: ``{"candidates": ...}`` or ``{"response": {"candidates": ...}}``.

    Fields are validated one candidate at a time; a malformed candidate becomes
    an empty one instead of discarding the whole document.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    candidates: list[Candidate] = Field(default_factory=list)
    usage_metadata: UsageMetadata | None = Field(default=None, alias="usageMetadata")

    @classmethod
    def probe(cls, document: Any) -> "UpstreamResponse":
        if not isinstance(document, dict):
            return cls()
        if "candidates" in document:
            source = document
        elif isinstance(document.get("response"), dict):
            source = document["response"]
        else:
            return cls()

        raw_candidates = source.get("candidates")
        candidates = [
            _validate_or_none(Candidate, raw) or Candidate()
            for raw in (raw_candidates if isinstance(raw_candidates, list) else [])
        ]
        raw_usage = source.get("usageMetadata")
        usage = _validate_or_none(UsageMetadata, raw_usage) if isinstance(raw_usage, dict) else None
        return cls(candidates=candidates, usage_metadata=usage)

    @property
    def first_candidate(self) -> Candidate | None:
        return self.candidates[0] if self.candidates else None


# ===== 账号 =====


@dataclass(slots=True, frozen=True)
class Identity:
    """One upstream account borrowed from the pool for a single attempt."""

    label: str
    access_token: str
    session_id: str
    project_id: str | None = None
