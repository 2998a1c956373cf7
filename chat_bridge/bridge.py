import asyncio
import codecs
import inspect
import json
import logging
from collections.abc import Iterator
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Optional, Set, Union

import anyio
import anyio.to_thread
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from chat_bridge.config import Settings, get_settings
from chat_bridge.llm import InferenceProvider, get_provider
from chat_bridge.schemas import ChatMessage, ErrorBody, InferenceRequest, OutboundEvent
from chat_bridge.sink import ResponseSink, open_channel

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "content-type": "text/event-stream",
    "cache-control": "no-cache",
    "connection": "keep-alive",
}

# pump tasks are fire-and-forget, keep a reference until they finish
_background_tasks: Set[asyncio.Task] = set()


@dataclass(frozen=True)
class StreamOutput:
    chunks: AsyncIterator[Any]
    source: Any = None #the object the provider returned, closed once the pump is done


@dataclass(frozen=True)
class WholeOutput:
    value: Any


InferenceOutput = Union[StreamOutput, WholeOutput]

_EXHAUSTED = object()


async def _iterate_in_thread(iterator: Iterator) -> AsyncIterator[Any]:
    # a blocked next() is abandoned on cancellation so the pump timeout still applies
    while True:
        chunk = await anyio.to_thread.run_sync(next, iterator, _EXHAUSTED, abandon_on_cancel=True)
        if chunk is _EXHAUSTED:
            break
        yield chunk


def classify_output(raw: Any) -> InferenceOutput:
    """
    Decide once whether the provider handed back a chunk producer or a finished value.

    Async iterables and iterators are producers (sync ones are pulled in a worker thread).
    Text, bytes, containers and everything else are whole values.
    """
    if isinstance(raw, (str, bytes, bytearray, dict, list, tuple)):
        return WholeOutput(raw)
    if hasattr(raw, "__aiter__"):
        return StreamOutput(chunks=raw, source=raw)
    if isinstance(raw, Iterator):
        return StreamOutput(chunks=_iterate_in_thread(raw), source=raw)
    return WholeOutput(raw)


def filter_conversation(conversation: List[ChatMessage]) -> List[ChatMessage]:
    # caller supplied system prompts never reach the provider
    return [m for m in conversation if m.role != "system"]


def build_inference_request(conversation: List[ChatMessage], settings: Settings) -> InferenceRequest:
    return InferenceRequest(
        model_id=settings.model_id,
        instructions=settings.system_prompt,
        input=filter_conversation(conversation),
        stream=True,
    )


def serialize_whole(value: Any) -> str:
    """
    Turn a finished provider value into the text of one event.

    :param value: provider output (text, bytes, pydantic model or JSON-able value)
    :return: text as is, everything else as compact JSON
    :rtype: str
    """
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


class ChunkDecoder:
    """
    Chunk to text. Byte chunks go through an incremental UTF-8 decoder so a multi-byte
    character split across two chunks comes out whole in the later one.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def decode(self, chunk: Any) -> str:
        if isinstance(chunk, (bytes, bytearray, memoryview)):
            return self._utf8.decode(bytes(chunk))
        if isinstance(chunk, str):
            return chunk
        return serialize_whole(chunk)

    def flush(self) -> str:
        return self._utf8.decode(b"", final=True)


async def _close_source(output: StreamOutput) -> None:
    targets = [output.chunks]
    if output.source is not None and output.source is not output.chunks:
        targets.append(output.source)
    for obj in targets:
        aclose = getattr(obj, "aclose", None)
        close = getattr(obj, "close", None)
        try:
            if aclose is not None:
                await aclose()
            elif close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result
        except Exception:
            logger.debug("Failed to close provider stream", exc_info=True)


async def _write_stream(output: StreamOutput, sink: ResponseSink) -> None:
    decoder = ChunkDecoder()
    async for chunk in output.chunks:
        # one event per chunk, even when it only holds part of a character
        await sink.write(OutboundEvent(response=decoder.decode(chunk)))
    tail = decoder.flush()
    if tail:
        await sink.write(OutboundEvent(response=tail))


async def pump(output: InferenceOutput, sink: ResponseSink, *, timeout: Optional[float] = None) -> None:
    """
    Copy provider output into the sink, one event per chunk, then close the sink.

    Runs after the response headers were sent, so nothing raised here can change the
    status code: errors are logged and the body just ends early. The sink and the
    provider stream are released on every exit path.

    :param output: classified provider output
    :type output: InferenceOutput
    :param sink: write end of the response body
    :type sink: ResponseSink
    :param timeout: upper bound on the whole pump in seconds, None for no bound
    :type timeout: Optional[float]
    """
    try:
        async with sink:
            with anyio.fail_after(timeout) if timeout else nullcontext():
                if isinstance(output, WholeOutput):
                    await sink.write(OutboundEvent(response=serialize_whole(output.value)))
                else:
                    await _write_stream(output, sink)
        logger.debug("Stream finished after %d event(s)", sink.writes)
    except TimeoutError:
        logger.warning("Stream stopped after %s seconds (%d event(s) sent)", timeout, sink.writes)
    except (anyio.BrokenResourceError, anyio.ClosedResourceError):
        logger.warning("Client disconnected after %d event(s), stopping stream", sink.writes)
    except Exception:
        logger.exception("Stream interrupted after %d event(s)", sink.writes)
    finally:
        if isinstance(output, StreamOutput):
            await _close_source(output)


def start_pump(output: InferenceOutput, sink: ResponseSink, *, timeout: Optional[float] = None) -> asyncio.Task:
    task = asyncio.create_task(pump(output, sink, timeout=timeout))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def error_response(exc: BaseException) -> JSONResponse:
    body = ErrorBody(error="Failed to process request", details=str(exc))
    return JSONResponse(status_code=500, content=body.model_dump())


async def handle_chat(
    conversation: List[ChatMessage],
    provider: Optional[InferenceProvider] = None,
    settings: Optional[Settings] = None,
) -> Response:
    """
    Forward a conversation to the inference provider and stream its output back.

    The returned response already owns a live body: a background pump keeps writing
    ``{"response": ...}`` lines into it while the HTTP layer sends them out. Failures
    before that point become a 500 JSON error.

    :param conversation: caller supplied messages in turn order, may be empty
    :type conversation: List[ChatMessage]
    :param provider: inference provider, defaults to the process-wide one
    :type provider: Optional[InferenceProvider]
    :param settings: settings, defaults to the process-wide ones
    :type settings: Optional[Settings]
    :return: streaming response, or JSON error response
    :rtype: Response
    """
    settings = settings or get_settings()
    try:
        provider = provider or get_provider()
        request = build_inference_request(conversation, settings)
        logger.info("Forwarding %d message(s) to %s", len(request.input), request.model_id)

        raw = provider(request.model_id, request.payload())
        if inspect.isawaitable(raw):
            raw = await raw
        output = classify_output(raw)
    except Exception as exc:
        logger.exception("Error processing chat request")
        return error_response(exc)

    sink, body = open_channel(settings.stream_buffer_size, single_write=isinstance(output, WholeOutput))
    start_pump(output, sink, timeout=settings.stream_timeout_seconds or None)
    return StreamingResponse(body, headers=STREAM_HEADERS)
