from typing import AsyncIterator, Literal, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from chat_bridge.schemas import OutboundEvent

# INIT -> STREAMING -> CLOSED   (stream output, any number of writes)
# INIT -> SINGLE_WRITE -> CLOSED (whole output, exactly one write)
# INIT -> CLOSED                (nothing written)
SinkState = Literal["INIT", "STREAMING", "SINGLE_WRITE", "CLOSED"]


class SinkClosedError(RuntimeError):
    pass


class SinkStateError(RuntimeError):
    pass


class ResponseSink:
    """
    Write end of a response body channel.

    Owned by exactly one pump task. Every event written here is forwarded, in order,
    to the HTTP layer reading the other end of the channel. Closing the sink ends the
    response body.
    """

    def __init__(self, send_stream: MemoryObjectSendStream, *, single_write: bool = False):
        self._send_stream = send_stream
        self.single_write = single_write
        self.state: SinkState = "INIT"
        self.writes = 0

    @property
    def closed(self) -> bool:
        return self.state == "CLOSED"

    async def write(self, event: OutboundEvent) -> None:
        if self.state == "CLOSED":
            raise SinkClosedError("response sink is closed")
        if self.state == "SINGLE_WRITE":
            raise SinkStateError("whole output was already written")

        # raises anyio.BrokenResourceError once the reader went away
        await self._send_stream.send(event.encode())
        self.writes += 1
        self.state = "SINGLE_WRITE" if self.single_write else "STREAMING"

    async def close(self) -> None:
        if self.state == "CLOSED":
            return
        self.state = "CLOSED"
        await self._send_stream.aclose()

    async def __aenter__(self) -> "ResponseSink":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


async def _drain(receive_stream: MemoryObjectReceiveStream) -> AsyncIterator[bytes]:
    # closing the receive side on exit makes the next sink write fail, which stops the pump
    async with receive_stream:
        async for data in receive_stream:
            yield data


def open_channel(max_buffer_size: int = 16, *, single_write: bool = False) -> Tuple[ResponseSink, AsyncIterator[bytes]]:
    """
    Create a response body channel.

    :param max_buffer_size: encoded events held before a write waits for the reader
    :type max_buffer_size: int
    :param single_write: whether the sink accepts exactly one event
    :type single_write: bool
    :return: (sink for the pump task, body iterator for the HTTP response)
    :rtype: Tuple[ResponseSink, AsyncIterator[bytes]]
    """
    send_stream, receive_stream = anyio.create_memory_object_stream(max_buffer_size)
    return ResponseSink(send_stream, single_write=single_write), _drain(receive_stream)
