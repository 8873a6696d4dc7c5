import asyncio
import logging
import threading

import pytest

import channels
from browser_core import SecureLogger
from channels import ChannelClosedError, ChannelMessage, MessageChannel


def test_payload_is_copied_on_send():
    channel = MessageChannel("test")
    payload = {"request_id": "r1", "items": [1, 2]}

    channel.send("chunk", payload)
    payload["items"].append(3)

    message = channel.receive_nowait()
    assert message == ChannelMessage("chunk", {"request_id": "r1", "items": [1, 2]})


def test_send_after_close_raises():
    channel = MessageChannel("test")
    channel.close()

    with pytest.raises(ChannelClosedError):
        channel.send("chunk", {})


def test_drain_returns_messages_in_order():
    channel = MessageChannel("test")
    for i in range(3):
        channel.send("chunk", {"n": i})

    assert [m.payload["n"] for m in channel.drain()] == [0, 1, 2]
    assert len(channel) == 0


@pytest.mark.asyncio
async def test_receive_preserves_order_across_threads():
    channel = MessageChannel("test")
    received = []

    async def consume():
        for _ in range(200):
            message = await channel.receive()
            received.append(message.payload["n"])

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)

    producer = threading.Thread(target=lambda: [channel.send("chunk", {"n": i}) for i in range(200)])
    producer.start()

    await asyncio.wait_for(consumer, 5)
    producer.join()

    assert received == list(range(200))


@pytest.mark.asyncio
async def test_buffered_messages_survive_close():
    channel = MessageChannel("test")
    channel.send("chunk", {"n": 1})
    channel.close()

    message = await channel.receive()
    assert message.payload == {"n": 1}

    with pytest.raises(ChannelClosedError):
        await channel.receive()


@pytest.mark.asyncio
async def test_listen_keeps_going_after_handler_error():
    channel = MessageChannel("test")
    seen = []

    async def handler(message):
        if message.payload["n"] == 1:
            raise RuntimeError("bad message")
        seen.append(message.payload["n"])

    listener = asyncio.create_task(channel.listen(handler))
    for i in range(3):
        channel.send("chunk", {"n": i})
    channel.close()

    await asyncio.wait_for(listener, 2)

    assert seen == [0, 2]


@pytest.mark.asyncio
async def test_handler_failure_is_logged_on_channel_logger(caplog):
    channel = MessageChannel("logged")

    def handler(message):
        raise RuntimeError("handler exploded")

    assert isinstance(channels.logger, SecureLogger)

    with caplog.at_level(logging.ERROR, logger="channels"):
        listener = asyncio.create_task(channel.listen(handler))
        channel.send("chunk", {"n": 1})
        channel.close()
        await asyncio.wait_for(listener, 2)

    records = [r for r in caplog.records if r.name == "channels"]
    assert len(records) == 1
    assert "[logged]" in records[0].getMessage()
    assert "handler exploded" in records[0].getMessage()
