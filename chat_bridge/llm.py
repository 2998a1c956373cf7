import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

import httpx
from openai import AsyncOpenAI

from chat_bridge.config import Settings, get_settings

logger = logging.getLogger(__name__)

# A provider is called as provider(model_id, {"instructions", "input", "stream"}).
# It returns (or resolves to) either an incremental chunk producer or one whole value,
# and may raise.
InferenceProvider = Callable[[str, Dict[str, Any]], Union[Any, Awaitable[Any]]]


class InferenceError(RuntimeError):
    """Upstream inference endpoint rejected the call or failed mid-generation."""


async def output_text_deltas(stream: Any) -> AsyncIterator[str]:
    """
    Turn a Responses API event stream into plain text deltas.

    :param stream: openai AsyncStream of response events
    :return: text delta iterator
    :rtype: AsyncIterator[str]
    """
    try:
        async for event in stream:
            if event.type == "response.output_text.delta":
                yield event.delta
            elif event.type == "error":
                raise InferenceError(getattr(event, "message", None) or "inference stream reported an error")
            elif event.type == "response.failed":
                error = getattr(event.response, "error", None)
                raise InferenceError(getattr(error, "message", None) or "inference response failed")
    finally:
        await stream.close() #releases the upstream connection


class OpenAIResponsesProvider:
    """
    Calls the OpenAI-compatible Responses endpoint of Workers AI through the OpenAI SDK.
    gpt-oss models take ``instructions`` + ``input`` exactly like the Responses API does.
    """

    def __init__(self, client: AsyncOpenAI):
        self.client = client

    async def __call__(self, model_id: str, options: Dict[str, Any]) -> Any:
        resp = await self.client.responses.create(
            model=model_id,
            instructions=options["instructions"],
            input=options["input"],
            stream=options.get("stream", True),
        )
        if hasattr(resp, "__aiter__"):
            return output_text_deltas(resp)
        # the endpoint answered with a finished response instead of a stream
        return resp.output_text or ""


async def _iter_response_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


class WorkersAIRestProvider:
    """
    Calls the native ``/ai/run/{model}`` endpoint and hands back the raw body.
    Streamed answers come back as undecoded byte chunks, whole answers as the ``result`` object.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))

    def _url(self, model_id: str) -> str:
        return f"https://api.cloudflare.com/client/v4/accounts/{self.settings.account_id}/ai/run/{model_id}"

    async def __call__(self, model_id: str, options: Dict[str, Any]) -> Any:
        request = self.client.build_request(
            "POST",
            self._url(model_id),
            json=options,
            headers={"Authorization": f"Bearer {self.settings.api_token}"},
        )
        response = await self.client.send(request, stream=True)

        if response.is_error:
            body = await response.aread()
            await response.aclose()
            raise InferenceError(
                f"Workers AI returned {response.status_code}: {body.decode('utf-8', errors='replace')[:300]}"
            )

        if "text/event-stream" in response.headers.get("content-type", ""):
            return _iter_response_bytes(response)

        try:
            data = json.loads(await response.aread())
        finally:
            await response.aclose()
        if isinstance(data, dict) and "result" in data:
            return data["result"]
        return data


_provider: Optional[InferenceProvider] = None


def build_provider(settings: Settings) -> InferenceProvider:
    """
    Create the provider selected by ``settings.backend``.

    :param settings: process settings
    :type settings: Settings
    :return: provider callable
    :rtype: InferenceProvider
    """
    if settings.backend == "workers-ai":
        return WorkersAIRestProvider(settings)
    client = AsyncOpenAI(api_key=settings.api_token, base_url=settings.openai_base_url)
    return OpenAIResponsesProvider(client)


def get_provider() -> InferenceProvider:
    """Process-wide provider, created on first use."""
    global _provider
    if _provider is None:
        settings = get_settings()
        logger.info("Using %s inference backend for %s", settings.backend, settings.model_id)
        _provider = build_provider(settings)
    return _provider
