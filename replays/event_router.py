"""Translate competition events into supervisor calls.

Broker messages and HTTP callbacks are two transports for the same four
events (start, stop, decision, session end); both end up here.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from .attempt import AttemptId, EventMalformed
from .capture_driver import CaptureHandle
from .clock import SYSTEM_CLOCK, Clock
from .recording_supervisor import ClipRecord, RecordingSupervisor, SupervisorError

log = logging.getLogger("event_router")

DECISION_DELAY_SEC = 2.0

TIMER_START = "StartTime"
TIMER_STOP = "StopTime"
DECISION_VISIBLE = "DECISION_VISIBLE"
DECISION_RESET = "RESET"
GROUP_DONE = "GROUP_DONE"


@dataclass(frozen=True)
class StartEvent:
    attempt_id: AttemptId
    timestamp: str = ""


@dataclass(frozen=True)
class BrokerConfig:
    platforms: Tuple[str, ...] = ()
    jury_size: int = 0
    version: str = ""


def parse_start_payload(text: str | bytes, session: str = "") -> StartEvent:
    """Parse ``<json object> <timestamp>`` as published on the start topic.

    ``session`` is used when the JSON object does not name one.
    """
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    raw = (text or "").strip()
    if not raw:
        raise EventMalformed("empty start payload")

    body, timestamp = raw, ""
    head, sep, tail = raw.rpartition(" ")
    if sep and head.rstrip().endswith("}"):
        body, timestamp = head, tail
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise EventMalformed(f"start payload is not JSON: {e}") from None
    if not isinstance(data, dict):
        raise EventMalformed("start payload must be a JSON object")

    missing = [key for key in ("athleteName", "attemptNumber", "liftType") if data.get(key) in (None, "")]
    if missing:
        raise EventMalformed(f"start payload missing {', '.join(missing)}")
    attempt_id = AttemptId.build(
        data["athleteName"],
        data["liftType"],
        data["attemptNumber"],
        str(data.get("session") or session or ""),
    )
    return StartEvent(attempt_id, timestamp)


def attempt_from_form(form: Mapping[str, Any], session: str = "") -> AttemptId:
    """Build an AttemptId from the ``/timer`` or ``/decision`` form fields."""
    missing = [key for key in ("fullName", "attemptNumber", "liftTypeKey") if not str(form.get(key) or "").strip()]
    if missing:
        raise EventMalformed(f"missing form field(s): {', '.join(missing)}")
    return AttemptId.build(form["fullName"], form["liftTypeKey"], form["attemptNumber"], session)


def parse_config_payload(text: str | bytes) -> BrokerConfig:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        data = json.loads(text or "")
    except json.JSONDecodeError as e:
        raise EventMalformed(f"config payload is not JSON: {e}") from None
    if not isinstance(data, dict):
        raise EventMalformed("config payload must be a JSON object")
    platforms = data.get("platforms") or []
    if not isinstance(platforms, list) or not all(isinstance(p, str) for p in platforms):
        raise EventMalformed("config payload 'platforms' must be a list of names")
    try:
        jury_size = int(data.get("jurySize") or 0)
    except (TypeError, ValueError):
        raise EventMalformed(f"invalid jurySize {data.get('jurySize')!r}") from None
    return BrokerConfig(tuple(platforms), jury_size, str(data.get("version") or ""))


def decision_is_actionable(fop_state: str, decision_event_type: str) -> bool:
    return fop_state == DECISION_VISIBLE and decision_event_type != DECISION_RESET


class EventRouter:
    """Single entry point for competition events.

    Decisions are debounced: each one (re)arms a timer and only the last timer
    to fire finalizes, so a broker decision and an HTTP decision for the same
    lift collapse into one finalize.
    """

    def __init__(
        self,
        supervisor: RecordingSupervisor,
        *,
        decision_delay_sec: float = DECISION_DELAY_SEC,
        clock: Clock = SYSTEM_CLOCK,
        timer_factory: Callable[[float, Callable[[], None]], threading.Timer] = threading.Timer,
    ) -> None:
        self._supervisor = supervisor
        self._delay = float(decision_delay_sec)
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._handoff: Optional[threading.Thread] = None
        self._platforms: Tuple[str, ...] = ()
        self._closed = False

    @property
    def supervisor(self) -> RecordingSupervisor:
        return self._supervisor

    @property
    def platforms(self) -> List[str]:
        with self._lock:
            return list(self._platforms)

    @property
    def decision_pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def set_platforms(self, platforms: Sequence[str]) -> None:
        with self._lock:
            self._platforms = tuple(platforms)
        log.info("available platforms: %s", list(platforms))

    def wait_for_handoff(self, timeout: float | None = None) -> bool:
        """Block until a background finalize-then-start has run; False on timeout."""
        with self._lock:
            handoff = self._handoff
        if handoff is None:
            return True
        handoff.join(timeout)
        return not handoff.is_alive()

    # ---- events ---------------------------------------------------------------

    def start(self, attempt_id: AttemptId, now_ms: int | None = None) -> List[CaptureHandle]:
        """Start capturing ``attempt_id``; the anchor is taken when capture begins.

        If the previous lift still has a decision pending, its finalize and
        this start run on a hand-off thread and ``[]`` is returned at once.
        """
        if self._ignored("start"):
            return []
        log.info("start: %s", attempt_id.describe())
        with self._lock:
            timer, self._timer = self._timer, None
            previous = self._handoff
            if previous is not None and not previous.is_alive():
                previous = None
            handoff: Optional[threading.Thread] = None
            if timer is not None or previous is not None:
                handoff = threading.Thread(
                    target=self._hand_off,
                    args=(timer, previous, attempt_id),
                    name="handoff",
                    daemon=True,
                )
                handoff.start()
            self._handoff = handoff
        if handoff is None:
            return self._supervisor.start(attempt_id, now_ms)
        if timer is not None:
            timer.cancel()
            log.info("new start before the decision delay elapsed; finalizing in the background")
        return []

    def stop(self, now_ms: int | None = None) -> None:
        if self._ignored("stop"):
            return
        now_ms = self._clock.wall_ms() if now_ms is None else int(now_ms)
        self._supervisor.stop_tick(now_ms)

    def decision(self, now_ms: int | None = None) -> bool:
        """Schedule a finalize; returns False when there is nothing to finalize."""
        if self._ignored("decision"):
            return False
        if not self._supervisor.is_capturing():
            log.info("decision ignored: no recording in progress")
            return False
        now_ms = self._clock.wall_ms() if now_ms is None else int(now_ms)
        self._supervisor.decision(now_ms)

        with self._lock:
            previous = self._timer
            timer = self._timer_factory(self._delay, lambda: self._fire(timer))
            timer.daemon = True
            self._timer = timer
        if previous is not None:
            previous.cancel()
            log.debug("decision timer re-armed")
        else:
            log.info("trimming video in %.1fs", self._delay)
        timer.start()
        return True

    def session_end(self) -> None:
        if self._ignored("session end"):
            return
        self._supervisor.clear_session()

    def close(self) -> None:
        with self._lock:
            self._closed = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        log.debug("event router closed")

    # ---- helpers --------------------------------------------------------------

    def _ignored(self, event: str) -> bool:
        with self._lock:
            closed = self._closed
        if closed:
            log.debug("%s ignored: router closed", event)
        return closed

    def _fire(self, timer: threading.Timer) -> List[ClipRecord] | None:
        with self._lock:
            if self._timer is not timer:
                return None
            self._timer = None
        return self._finalize()

    def _hand_off(
        self,
        timer: Optional[threading.Timer],
        previous: Optional[threading.Thread],
        attempt_id: AttemptId,
    ) -> None:
        if previous is not None:
            previous.join()
        if timer is not None:
            self._finalize()
        if self._ignored("start"):
            return
        try:
            self._supervisor.start(attempt_id)
        except SupervisorError as e:
            log.error("failed to start recording for %s: %s", attempt_id.describe(), e.message)

    def _finalize(self) -> List[ClipRecord] | None:
        try:
            return self._supervisor.finalize()
        except Exception:
            log.exception("error during trimming")
            return None


__all__ = [
    "BrokerConfig",
    "DECISION_RESET",
    "DECISION_VISIBLE",
    "EventRouter",
    "GROUP_DONE",
    "StartEvent",
    "TIMER_START",
    "TIMER_STOP",
    "attempt_from_form",
    "decision_is_actionable",
    "parse_config_payload",
    "parse_start_payload",
]
