import asyncio
import time

import pytest

from replays.status_bus import (
    ANSI_BOLD,
    NO_ACTIVE_SESSION,
    RELOAD_TEXT,
    StatusBus,
    StatusCode,
    StatusConsole,
    StatusMessage,
)


def test_frame_uses_wire_codes():
    message = StatusMessage(StatusCode.READY, "Videos ready", "A")
    assert message.to_frame() == {"code": "DONE", "text": "Videos ready", "session": "A"}
    assert StatusMessage(StatusCode.ERROR, "boom").is_error
    assert StatusMessage(StatusCode.READY, "Error: trim failed").is_error


def test_ui_channel_drops_oldest():
    bus = StatusBus()
    for n in range(15):
        bus.publish(StatusCode.RECORDING, f"msg {n}")

    texts = []
    while not bus.ui_channel.empty():
        texts.append(bus.ui_channel.get_nowait().text)
    assert texts == [f"msg {n}" for n in range(5, 15)]
    assert bus.last_message().text == "msg 14"


def test_ui_channel_minimum_capacity():
    with pytest.raises(ValueError):
        StatusBus(ui_queue_size=5)


def test_ui_channel_gets_plain_videos_ready():
    bus = StatusBus()
    bus.publish(StatusCode.READY, "Videos ready")
    message = bus.ui_channel.get_nowait()
    assert message.text == "Videos ready"
    assert not message.reload


@pytest.mark.asyncio
async def test_subscriber_receives_last_message_then_live_updates():
    bus = StatusBus()
    bus.publish(StatusCode.RECORDING, "Recording: Alice Li - SNATCH attempt 1", "A")

    subscription = await bus.subscribe()
    first = await asyncio.wait_for(subscription.get(), 1)
    assert first.text.startswith("Recording:")

    bus.publish(StatusCode.TRIMMING, "Trimming videos")
    second = await asyncio.wait_for(subscription.get(), 1)
    assert second.code is StatusCode.TRIMMING


@pytest.mark.asyncio
async def test_videos_ready_reloads_browsers_once():
    bus = StatusBus()
    subscription = await bus.subscribe()
    bus.publish(StatusCode.READY, "Videos ready", "A")

    frame = (await asyncio.wait_for(subscription.get(), 1)).to_frame()
    assert frame["reload"] is True
    assert frame["text"] == RELOAD_TEXT

    # The reloaded page reconnects and must not be told to reload again.
    fresh = await bus.subscribe()
    replay = await asyncio.wait_for(fresh.get(), 1)
    assert replay.text == "Videos ready"
    assert not replay.reload


@pytest.mark.asyncio
async def test_slow_subscriber_is_dropped():
    bus = StatusBus(client_queue_size=1)
    slow = await bus.subscribe()
    assert bus.subscriber_count() == 1

    bus.publish(StatusCode.RECORDING, "one")
    bus.publish(StatusCode.TRIMMING, "two")
    await asyncio.sleep(0)

    assert bus.subscriber_count() == 0
    assert slow.get_nowait() is None


@pytest.mark.asyncio
async def test_close_hangs_up_and_rejects_writes():
    bus = StatusBus()
    subscription = await bus.subscribe()
    bus.close()
    await asyncio.sleep(0)

    assert await asyncio.wait_for(subscription.get(), 1) is None
    assert bus.publish(StatusCode.READY, NO_ACTIVE_SESSION) is None
    late = await bus.subscribe()
    assert late.get_nowait() is None


def test_console_bolds_errors_and_clears_after_silence():
    bus = StatusBus()
    console = StatusConsole(bus, clear_after=10.0, use_color=True)

    line = console.render(StatusMessage(StatusCode.ERROR, "Error: Camera 2 failed to start"), now=100.0)
    assert line.startswith(ANSI_BOLD)
    assert console.bold

    assert console.tick(now=105.0) is False
    assert console.text.startswith("Error:")
    assert console.tick(now=110.0) is True
    assert console.text == "Ready"
    assert not console.bold


def test_console_keeps_recording_text():
    console = StatusConsole(StatusBus(), use_color=False)
    console.render(StatusMessage(StatusCode.RECORDING, "Recording: Bob"), now=0.0)
    assert console.tick(now=1000.0) is False
    assert console.text == "Recording: Bob"


def test_console_thread_renders_ui_channel():
    bus = StatusBus()
    console = StatusConsole(bus, use_color=False, poll_interval=0.01)
    console.start()
    try:
        bus.publish(StatusCode.TRIMMING, "Trimming videos")
        for _ in range(200):
            if console.text == "Trimming videos":
                break
            time.sleep(0.01)
        assert console.text == "Trimming videos"
    finally:
        console.stop()
