"""Incremental SSE frame decoding."""

from __future__ import annotations

import httpx
import pytest

from services.streaming.exceptions import StreamStatusError, StreamTransportError
from services.streaming.frame_decoder import Frame, FrameDecoder, aiter_frames


STREAM = (
    "event: start\ndata: {\"step\": 1}\n\n"
    ": keep-alive\n\n"
    "data: 第一行\ndata: 第二行\n\n"
    "data: crlf\r\n\r\n"
    "retry: 3000\n\n"
    "event: complete\ndata: {}\n\n"
)


def decode_all(chunks: list[str]) -> list[Frame]:
    decoder = FrameDecoder()
    frames: list[Frame] = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
    frames.extend(decoder.flush())
    return frames


def test_single_frame():
    frames = FrameDecoder().feed("data: hello\n\n")

    assert frames == [Frame(data="hello")]
    assert frames[0].event == "message"


def test_multiple_data_lines_are_joined_with_newline():
    (frame,) = FrameDecoder().feed("data: a\ndata: b\n\n")

    assert frame.data == "a\nb"


def test_comment_and_retry_only_frames_are_dropped():
    assert FrameDecoder().feed(": ping\n\nretry: 100\n\n") == []


def test_event_name_and_id():
    (frame,) = FrameDecoder().feed("id: 7\nevent: complete\ndata: {}\n\n")

    assert frame.event == "complete"
    assert frame.id == "7"
    assert frame.is_terminal()


def test_done_sentinel_is_terminal():
    (frame,) = FrameDecoder().feed("data: [DONE]\n\n")

    assert frame.is_done_sentinel
    assert frame.is_terminal(frozenset())


def test_custom_terminal_events():
    (frame,) = FrameDecoder().feed("event: finished\ndata: x\n\n")

    assert not frame.is_terminal()
    assert frame.is_terminal({"finished"})


def test_incomplete_frame_stays_buffered():
    decoder = FrameDecoder()

    assert decoder.feed("data: par") == []
    assert decoder.raw_buffer == "data: par"
    assert decoder.feed("tial\n") == []
    assert decoder.feed("\n") == [Frame(data="partial")]
    assert decoder.raw_buffer == ""


def test_crlf_separator_split_across_reads():
    decoder = FrameDecoder()

    assert decoder.feed("data: x\r") == []
    assert decoder.feed("\n\r") == []
    assert decoder.feed("\n") == [Frame(data="x")]


def test_flush_parses_trailing_frame():
    decoder = FrameDecoder()
    decoder.feed("data: tail")

    assert decoder.flush() == [Frame(data="tail")]
    assert decoder.flush() == []


def test_every_split_point_yields_the_same_frames():
    expected = decode_all([STREAM])
    assert [f.event for f in expected] == ["start", "message", "message", "complete"]
    assert expected[1].data == "第一行\n第二行"
    assert expected[2].data == "crlf"

    for i in range(len(STREAM) + 1):
        assert decode_all([STREAM[:i], STREAM[i:]]) == expected, i


def test_single_character_reads():
    assert decode_all(list(STREAM)) == decode_all([STREAM])


class BrokenStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        yield b"data: one\n\n"
        raise httpx.ReadError("connection reset")


async def collect(response: httpx.Response) -> list[Frame]:
    return [frame async for frame in aiter_frames(response)]


@pytest.mark.asyncio
async def test_aiter_frames_over_http():
    body = "data: 你好\n\ndata: [DONE]\n\n".encode()
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))

    async with httpx.AsyncClient(transport=transport) as client:
        async with client.stream("POST", "http://writer.test/stream") as response:
            frames = await collect(response)

    assert [f.data for f in frames] == ["你好", "[DONE]"]


@pytest.mark.asyncio
async def test_aiter_frames_reports_error_status():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(503, content=b"busy")
    )

    async with httpx.AsyncClient(transport=transport) as client:
        async with client.stream("POST", "http://writer.test/stream") as response:
            with pytest.raises(StreamStatusError) as excinfo:
                await collect(response)

    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "busy"


@pytest.mark.asyncio
async def test_aiter_frames_read_failure_keeps_earlier_frames():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, stream=BrokenStream())
    )
    seen: list[Frame] = []

    async with httpx.AsyncClient(transport=transport) as client:
        async with client.stream("POST", "http://writer.test/stream") as response:
            with pytest.raises(StreamTransportError):
                async for frame in aiter_frames(response):
                    seen.append(frame)

    assert seen == [Frame(data="one")]
