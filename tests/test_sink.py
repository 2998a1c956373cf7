import anyio
import pytest

from chat_bridge.schemas import OutboundEvent
from chat_bridge.sink import SinkClosedError, SinkStateError, open_channel


def test_event_encoding():
    assert OutboundEvent(response="Hel").encode() == b'{"response":"Hel"}\n'
    assert OutboundEvent(response='say "hi"\n').encode() == b'{"response":"say \\"hi\\"\\n"}\n'
    assert OutboundEvent(response="שלום").encode() == '{"response":"שלום"}\n'.encode("utf-8")


@pytest.mark.anyio
async def test_streaming_sink_states():
    sink, body = open_channel(4)
    assert sink.state == "INIT"

    await sink.write(OutboundEvent(response="a"))
    assert sink.state == "STREAMING"
    await sink.write(OutboundEvent(response="b"))
    await sink.close()
    assert sink.state == "CLOSED"

    received = [data async for data in body]
    assert received == [b'{"response":"a"}\n', b'{"response":"b"}\n']


@pytest.mark.anyio
async def test_single_write_sink_rejects_second_write():
    sink, _ = open_channel(4, single_write=True)

    await sink.write(OutboundEvent(response="only"))
    assert sink.state == "SINGLE_WRITE"
    with pytest.raises(SinkStateError):
        await sink.write(OutboundEvent(response="again"))


@pytest.mark.anyio
async def test_closed_sink_rejects_writes_and_close_is_idempotent():
    sink, body = open_channel(4)
    async with sink:
        pass
    await sink.close()

    with pytest.raises(SinkClosedError):
        await sink.write(OutboundEvent(response="late"))
    assert [data async for data in body] == []


@pytest.mark.anyio
async def test_write_fails_once_reader_is_gone():
    sink, body = open_channel(4)
    await sink.write(OutboundEvent(response="first"))
    assert await body.__anext__() == b'{"response":"first"}\n'
    await body.aclose()

    with pytest.raises(anyio.BrokenResourceError):
        await sink.write(OutboundEvent(response="x"))
