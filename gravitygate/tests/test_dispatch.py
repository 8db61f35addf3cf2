import json

import httpx
import pytest
from fastapi.responses import StreamingResponse

from gravitygate.adapters.openai_compat.dispatch import (
    Error,
    Retry,
    classify_error,
    dispatch_chat,
    is_retryable,
)
from gravitygate.adapters.openai_compat.upstream import UpstreamClient
from gravitygate.core.accounts import StaticIdentityPool
from gravitygate.core.context import RequestContext
from gravitygate.core.errors import UpstreamError
from gravitygate.core.models import ChatCompletionRequest, Identity


def _identity(label: str, project_id: str | None = "proj") -> Identity:
    return Identity(label=label, access_token=f"tok-{label}", session_id=f"sess-{label}", project_id=project_id)


def _request(model: str = "gemini-2.5-flash", stream: bool = False) -> ChatCompletionRequest:
    return ChatCompletionRequest.model_validate(
        {"model": model, "messages": [{"role": "user", "content": "hi"}], "stream": stream}
    )


def _ctx(model: str = "gemini-2.5-flash") -> RequestContext:
    return RequestContext(request_id="req-test", model=model)


def _json(response) -> dict:
    return json.loads(response.body.decode("utf-8"))


async def _frames(response: StreamingResponse) -> list[bytes]:
    return [frame async for frame in response.body_iterator]


class FakeClient:
    """Replays scripted outcomes; an exception instance is raised, anything else returned."""

    def __init__(self, generate=(), stream=()):
        self._generate = list(generate)
        self._stream = list(stream)
        self.calls: list[tuple[str, str, str]] = []

    async def generate(self, request, identity, project_id):
        self.calls.append(("generate", identity.label, project_id))
        outcome = self._generate.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream_generate(self, request, identity, project_id):
        self.calls.append(("stream", identity.label, project_id))
        outcome = self._stream.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _chunks(*items, fail_with: str | None = None):
    for item in items:
        yield item
    if fail_with is not None:
        raise UpstreamError(fail_with)


OK_BODY = {"response": {"candidates": [{"content": {"parts": [{"text": "pong"}]}, "finishReason": "STOP"}]}}


def test_classify_error():
    assert isinstance(classify_error("upstream returned 429: slow down"), Retry)
    assert isinstance(classify_error("RESOURCE_EXHAUSTED"), Retry)
    assert isinstance(classify_error("QUOTA_EXHAUSTED for project"), Retry)
    assert isinstance(classify_error("The request has been rate limited."), Retry)
    assert isinstance(classify_error("failed to read response body: reset"), Retry)
    assert isinstance(classify_error("error decoding response body: bad json"), Retry)
    assert isinstance(classify_error("server closed connection"), Retry)

    permanent = classify_error("upstream returned 400: Invalid model")
    assert isinstance(permanent, Error)
    assert permanent.response.status_code == 500
    body = _json(permanent.response)
    assert body["error"]["type"] == "api_error"
    assert body["error"]["message"] == "Upstream API error: upstream returned 400: Invalid model"


def test_is_retryable_is_case_sensitive_substring():
    assert is_retryable("x 429 y") is True
    assert is_retryable("resource_exhausted") is False


@pytest.mark.asyncio
async def test_single_identity_rate_limited_exhausts_after_one_attempt():
    client = FakeClient(generate=[UpstreamError("upstream returned 429: Too Many Requests")])
    ctx = _ctx()
    response = await dispatch_chat(_request(), StaticIdentityPool([_identity("a")]), client, ctx)

    assert response.status_code == 429
    body = _json(response)
    assert body["error"]["type"] == "all_accounts_exhausted"
    assert body["error"]["message"].startswith("All accounts exhausted or failing. Last error: ")
    assert "429" in body["error"]["message"]
    assert ctx.attempts == 1


@pytest.mark.asyncio
async def test_retry_moves_to_next_identity_then_succeeds():
    client = FakeClient(generate=[UpstreamError("RESOURCE_EXHAUSTED"), OK_BODY])
    ctx = _ctx()
    pool = StaticIdentityPool([_identity("a"), _identity("b")])
    response = await dispatch_chat(_request(), pool, client, ctx)

    assert response.status_code == 200
    body = _json(response)
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"]["content"] == "pong"
    assert body["choices"][0]["finish_reason"] == "stop"
    assert ctx.attempts == 2
    assert ctx.tried_labels == ["a", "b"]
    assert [call[1] for call in client.calls] == ["a", "b"]


@pytest.mark.asyncio
async def test_attempts_never_exceed_pool_size():
    errors = [UpstreamError("closed connection") for _ in range(5)]
    client = FakeClient(generate=errors)
    ctx = _ctx()
    pool = StaticIdentityPool([_identity("a"), _identity("b"), _identity("c")])
    response = await dispatch_chat(_request(), pool, client, ctx)

    assert response.status_code == 429
    assert ctx.attempts == 3
    assert len(client.calls) == 3


@pytest.mark.asyncio
async def test_empty_pool_returns_no_accounts():
    client = FakeClient()
    response = await dispatch_chat(_request(), StaticIdentityPool([]), client, _ctx())

    assert response.status_code == 503
    assert _json(response) == {"error": {"message": "No available accounts", "type": "no_accounts"}}
    assert client.calls == []


@pytest.mark.asyncio
async def test_missing_project_id_is_config_error_without_upstream_call():
    client = FakeClient(generate=[OK_BODY])
    pool = StaticIdentityPool([_identity("a", project_id=None), _identity("b")])
    ctx = _ctx()
    response = await dispatch_chat(_request(), pool, client, ctx)

    assert response.status_code == 500
    body = _json(response)
    assert body["error"]["type"] == "config_error"
    assert body["error"]["message"] == "account a has no project_id"
    assert client.calls == []
    assert ctx.attempts == 1


@pytest.mark.asyncio
async def test_permanent_error_stops_rotation():
    client = FakeClient(generate=[UpstreamError("upstream returned 400: Invalid model"), OK_BODY])
    pool = StaticIdentityPool([_identity("a"), _identity("b")])
    ctx = _ctx()
    response = await dispatch_chat(_request(), pool, client, ctx)

    assert response.status_code == 500
    assert _json(response)["error"]["type"] == "api_error"
    assert ctx.attempts == 1


@pytest.mark.asyncio
async def test_stream_relays_chunks_and_done():
    chunks = _chunks('{"id":"c","choices":[{"index":0,"delta":{"content":"Hi"},"finish_reason":null}]}', "[DONE]")
    client = FakeClient(stream=[chunks])
    response = await dispatch_chat(_request(stream=True), StaticIdentityPool([_identity("a")]), client, _ctx())

    assert isinstance(response, StreamingResponse)
    assert response.media_type == "text/event-stream"
    frames = await _frames(response)
    assert frames[0].startswith(b"data: {")
    assert frames[-1] == b"data: [DONE]\n\n"
    assert len(frames) == 2


@pytest.mark.asyncio
async def test_stream_without_upstream_done_gets_done_at_eof():
    client = FakeClient(stream=[_chunks('{"choices":[]}')])
    response = await dispatch_chat(_request(stream=True), StaticIdentityPool([_identity("a")]), client, _ctx())

    frames = await _frames(response)
    assert frames == [b'data: {"choices":[]}\n\n', b"data: [DONE]\n\n"]


@pytest.mark.asyncio
async def test_stream_failure_after_start_emits_error_event_without_done():
    chunks = _chunks('{"choices":[]}', fail_with="stream error: peer reset")
    client = FakeClient(stream=[chunks])
    pool = StaticIdentityPool([_identity("a"), _identity("b")])
    ctx = _ctx()
    response = await dispatch_chat(_request(stream=True), pool, client, ctx)

    frames = await _frames(response)
    assert len(frames) == 2
    error = json.loads(frames[1].decode("utf-8")[len("data: "):])
    assert error["error"]["message"] == "stream error: peer reset"
    assert error["error"]["type"] == "api_error"
    assert b"[DONE]" not in b"".join(frames)
    # 已开始的流不换账号
    assert ctx.attempts == 1


@pytest.mark.asyncio
async def test_stream_status_error_before_start_is_retried():
    client = FakeClient(stream=[UpstreamError("upstream returned 429: busy"), _chunks("[DONE]")])
    pool = StaticIdentityPool([_identity("a"), _identity("b")])
    ctx = _ctx()
    response = await dispatch_chat(_request(stream=True), pool, client, ctx)

    assert isinstance(response, StreamingResponse)
    assert await _frames(response) == [b"data: [DONE]\n\n"]
    assert ctx.attempts == 2


@pytest.mark.asyncio
async def test_image_model_stream_is_synthesized_from_single_call():
    body = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/jpeg", "data": "ZZ=="}}]}}]}
    client = FakeClient(generate=[body])
    response = await dispatch_chat(
        _request(model="gemini-3-pro-image", stream=True),
        StaticIdentityPool([_identity("a")]),
        client,
        _ctx("gemini-3-pro-image"),
    )

    assert [call[0] for call in client.calls] == ["generate"]
    frames = await _frames(response)
    assert len(frames) == 3
    first = json.loads(frames[0].decode("utf-8")[len("data: "):])
    assert first["choices"][0]["delta"]["content"] == "\n\n![Generated Image](data:image/jpeg;base64,ZZ==)\n\n"
    assert frames[2] == b"data: [DONE]\n\n"


@pytest.mark.asyncio
async def test_non_stream_image_response_has_markdown_content():
    body = {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "AAAA"}}]}}]}
    client = FakeClient(generate=[body])
    response = await dispatch_chat(
        _request(model="gemini-3-pro-image"), StaticIdentityPool([_identity("a")]), client, _ctx()
    )

    content = _json(response)["choices"][0]["message"]["content"]
    assert content == "\n\n![Generated Image](data:image/png;base64,AAAA)\n\n"


class _TrackingStream(httpx.AsyncByteStream):
    def __init__(self) -> None:
        self.closed = False

    async def __aiter__(self):
        yield b'data: {"candidates":[{"content":{"parts":[{"text":"x"}]}}]}\n\n'

    async def aclose(self) -> None:
        self.closed = True


def _tracking_client(tracked: _TrackingStream) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=tracked, headers={"content-type": "text/event-stream"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_unstarted_stream_body_close_releases_upstream_response():
    tracked = _TrackingStream()
    async with _tracking_client(tracked) as http_client:
        response = await dispatch_chat(
            _request(stream=True), StaticIdentityPool([_identity("a")]), UpstreamClient(http_client), _ctx()
        )
        assert isinstance(response, StreamingResponse)
        assert tracked.closed is False
        await response.body_iterator.aclose()
        assert tracked.closed is True


@pytest.mark.asyncio
async def test_stream_background_task_releases_upstream_response():
    tracked = _TrackingStream()
    async with _tracking_client(tracked) as http_client:
        response = await dispatch_chat(
            _request(stream=True), StaticIdentityPool([_identity("a")]), UpstreamClient(http_client), _ctx()
        )
        assert response.background is not None
        await response.background()
        assert tracked.closed is True


@pytest.mark.asyncio
async def test_consumed_stream_closes_upstream_response_once_done():
    tracked = _TrackingStream()
    async with _tracking_client(tracked) as http_client:
        response = await dispatch_chat(
            _request(stream=True), StaticIdentityPool([_identity("a")]), UpstreamClient(http_client), _ctx()
        )
        frames = await _frames(response)
        assert frames[-1] == b"data: [DONE]\n\n"
        assert tracked.closed is True
        await response.background()
