import json
from types import SimpleNamespace

import httpx
import pytest

from chat_bridge.config import Settings
from chat_bridge.llm import (
    InferenceError,
    OpenAIResponsesProvider,
    WorkersAIRestProvider,
    build_provider,
)

OPTIONS = {"instructions": "be nice", "input": [{"role": "user", "content": "hi"}], "stream": True}


class FakeEventStream:
    def __init__(self, events):
        self.events = events
        self.closed = False

    async def __aiter__(self):
        for event in self.events:
            yield event

    async def close(self):
        self.closed = True


class FakeResponses:
    def __init__(self, result):
        self.result = result
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.result


def fake_client(result):
    return SimpleNamespace(responses=FakeResponses(result))


@pytest.mark.anyio
async def test_openai_provider_yields_text_deltas():
    stream = FakeEventStream([
        SimpleNamespace(type="response.created"),
        SimpleNamespace(type="response.output_text.delta", delta="Hel"),
        SimpleNamespace(type="response.output_text.delta", delta="lo"),
        SimpleNamespace(type="response.completed"),
    ])
    client = fake_client(stream)

    chunks = await OpenAIResponsesProvider(client)("@cf/openai/gpt-oss-120b", OPTIONS)

    assert [c async for c in chunks] == ["Hel", "lo"]
    assert stream.closed
    assert client.responses.kwargs == {
        "model": "@cf/openai/gpt-oss-120b",
        "instructions": "be nice",
        "input": OPTIONS["input"],
        "stream": True,
    }


@pytest.mark.anyio
async def test_openai_provider_raises_on_error_event():
    stream = FakeEventStream([
        SimpleNamespace(type="response.output_text.delta", delta="par"),
        SimpleNamespace(type="error", message="model overloaded"),
    ])

    chunks = await OpenAIResponsesProvider(fake_client(stream))("m", OPTIONS)

    received = []
    with pytest.raises(InferenceError, match="model overloaded"):
        async for c in chunks:
            received.append(c)
    assert received == ["par"]
    assert stream.closed


@pytest.mark.anyio
async def test_openai_provider_whole_response():
    result = await OpenAIResponsesProvider(fake_client(SimpleNamespace(output_text="Hi there")))("m", OPTIONS)
    assert result == "Hi there"


def rest_provider(handler):
    settings = Settings(account_id="acc", api_token="tok")
    return WorkersAIRestProvider(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.anyio
async def test_rest_provider_streams_raw_bytes():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b'data: {"response":"hi"}\n\n')

    chunks = await rest_provider(handler)("@cf/openai/gpt-oss-120b", OPTIONS)

    assert b"".join([c async for c in chunks]) == b'data: {"response":"hi"}\n\n'
    assert seen["url"] == "https://api.cloudflare.com/client/v4/accounts/acc/ai/run/@cf/openai/gpt-oss-120b"
    assert seen["auth"] == "Bearer tok"
    assert seen["body"] == OPTIONS


@pytest.mark.anyio
async def test_rest_provider_whole_json_returns_result():
    def handler(request):
        return httpx.Response(200, json={"result": {"response": "done"}, "success": True})

    assert await rest_provider(handler)("m", OPTIONS) == {"response": "done"}


@pytest.mark.anyio
async def test_rest_provider_http_error_raises():
    def handler(request):
        return httpx.Response(401, json={"errors": [{"message": "Authentication error"}]})

    with pytest.raises(InferenceError, match="401"):
        await rest_provider(handler)("m", OPTIONS)


def test_build_provider_selects_backend():
    assert isinstance(build_provider(Settings(backend="workers-ai")), WorkersAIRestProvider)

    provider = build_provider(Settings(account_id="acc", api_token="tok"))
    assert isinstance(provider, OpenAIResponsesProvider)
    assert "accounts/acc/ai/v1" in str(provider.client.base_url)
