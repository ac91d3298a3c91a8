import threading
import time

import pytest
from conftest import alice, drain_statuses

from replays.attempt import AttemptId, EventMalformed, LiftType
from replays.event_router import (
    EventRouter,
    attempt_from_form,
    decision_is_actionable,
    parse_config_payload,
    parse_start_payload,
)
from replays.recording_supervisor import SupervisorState
from replays.status_bus import StatusCode


@pytest.fixture
def router(make_supervisor, timers, clock):
    return EventRouter(make_supervisor(1), timer_factory=timers, clock=clock)


def test_duplicate_decisions_collapse(router, timers, bus, driver):
    router.start(alice(), 1000)
    router.stop(7000)

    assert router.decision(9000) is True
    assert router.decision(9500) is True

    first, second = timers.timers
    assert first.cancelled
    assert second.started and second.daemon
    assert second.interval == 2.0

    first.function()  # a superseded timer that fires anyway
    assert router.supervisor.is_capturing()

    second.fire()
    assert router.supervisor.state is SupervisorState.IDLE
    codes = [m.code for m in drain_statuses(bus)]
    assert codes.count(StatusCode.TRIMMING) == 1
    assert codes.count(StatusCode.READY) == 1
    assert len(driver.trims) == 1
    assert not router.decision_pending


def test_stop_and_decision_without_start(router, timers, bus, video_dir):
    router.stop(7000)
    assert router.decision(9000) is False

    assert timers.timers == []
    assert router.supervisor.state is SupervisorState.IDLE
    assert list(video_dir.iterdir()) == []
    assert drain_statuses(bus) == []


def test_start_flushes_pending_decision(router, timers, driver, video_dir):
    router.start(alice(1), 1000)
    router.stop(7000)
    router.decision(9000)

    assert router.start(alice(2), 15000) == []
    assert router.wait_for_handoff(5)

    assert timers.timers[0].cancelled
    assert len(driver.trims) == 1
    assert (video_dir / "Senior_Women_64kg").is_dir()
    assert router.supervisor.is_capturing()
    assert router.supervisor.snapshot().attempt_id.attempt == 2


def test_start_after_pending_decision_anchors_when_capture_begins(router, driver, clock):
    router.start(alice(1))
    clock.advance(6000)
    router.stop()
    router.decision()
    driver.trim_gate = threading.Event()

    # returns while the previous lift is still being trimmed
    assert router.start(alice(2)) == []
    assert driver.trim_entered.wait(5)
    clock.advance(1500)
    driver.trim_gate.set()
    assert router.wait_for_handoff(5)

    snap = router.supervisor.snapshot()
    assert snap.attempt_id.attempt == 2
    assert snap.start_at == clock.wall_ms() == 8500
    assert driver.started[-1].working_path.stem.endswith("_8500")


def test_start_during_handoff_rearms_after_it(router, driver):
    router.start(alice(1), 1000)
    router.decision(9000)
    driver.trim_gate = threading.Event()

    router.start(alice(2))
    assert driver.trim_entered.wait(5)
    router.start(alice(3))
    driver.trim_gate.set()
    assert router.wait_for_handoff(5)

    assert router.supervisor.snapshot().attempt_id.attempt == 3
    assert [h.working_path.stem.split("_attempt")[1][0] for h in driver.killed] == ["2"]


def test_session_end_clears_session(router, bus):
    router.start(alice(), 1000)
    assert router.supervisor.current_session == "Senior Women 64kg"
    router.session_end()
    assert router.supervisor.current_session == ""
    assert bus.last_message().text == "No active session"


def test_close_cancels_timer_and_ignores_events(router, timers):
    router.start(alice(), 1000)
    router.decision(2000)
    router.close()

    assert timers.timers[0].cancelled
    assert router.decision(3000) is False
    assert router.start(alice(2), 4000) == []
    assert router.supervisor.snapshot().attempt_id.attempt == 1


def test_real_timer_finalizes(make_supervisor):
    router = EventRouter(make_supervisor(1), decision_delay_sec=0.05)
    router.start(alice(), 1000)
    router.stop(7000)
    router.decision(9000)

    deadline = time.monotonic() + 5
    while router.supervisor.state is not SupervisorState.IDLE and time.monotonic() < deadline:
        time.sleep(0.01)
    assert router.supervisor.state is SupervisorState.IDLE
    assert router.supervisor.last_clips[0].start_offset_ms == 1000


@pytest.mark.parametrize(
    "fop_state, event_type, expected",
    [
        ("DECISION_VISIBLE", "FULL_DECISION", True),
        ("DECISION_VISIBLE", "RESET", False),
        ("CURRENT_ATHLETE_DISPLAYED", "FULL_DECISION", False),
    ],
)
def test_decision_is_actionable(fop_state, event_type, expected):
    assert decision_is_actionable(fop_state, event_type) is expected


def test_parse_start_payload_with_timestamp():
    payload = (
        '{"athleteName": "Alice Li", "attemptNumber": 1, "liftType": "SNATCH",'
        ' "session": "Senior Women 64kg"} 2025-03-29T03:34:34.123'
    )
    event = parse_start_payload(payload)
    assert event.attempt_id == AttemptId("Alice Li", LiftType.SNATCH, 1, "Senior Women 64kg")
    assert event.timestamp == "2025-03-29T03:34:34.123"


def test_parse_start_payload_without_timestamp_uses_fallback_session():
    event = parse_start_payload(b'{"athleteName": "Bob", "attemptNumber": "2", "liftType": "CLEANJERK"}', session="B")
    assert event.attempt_id.session == "B"
    assert event.attempt_id.attempt == 2
    assert event.timestamp == ""


@pytest.mark.parametrize(
    "payload",
    [
        "",
        "not json 123",
        '["list"]',
        '{"athleteName": "Bob", "liftType": "SNATCH"}',
        '{"athleteName": "Bob", "attemptNumber": 7, "liftType": "SNATCH"}',
    ],
)
def test_parse_start_payload_rejects(payload):
    with pytest.raises(EventMalformed):
        parse_start_payload(payload)


def test_parse_config_payload():
    config = parse_config_payload('{"platforms": ["A", "B"], "jurySize": 3, "version": "55.0"}')
    assert config.platforms == ("A", "B")
    assert config.jury_size == 3
    with pytest.raises(EventMalformed):
        parse_config_payload('{"platforms": "A"}')


def test_attempt_from_form():
    form = {"fullName": "Alice Li", "attemptNumber": "1", "liftTypeKey": "SNATCH"}
    assert attempt_from_form(form, "A") == AttemptId("Alice Li", LiftType.SNATCH, 1, "A")
    with pytest.raises(EventMalformed):
        attempt_from_form({"fullName": "Alice Li", "attemptNumber": "1"})
