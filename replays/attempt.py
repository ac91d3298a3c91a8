"""Attempt identity and the in-memory record of the current attempt."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from enum import Enum

MIN_ATTEMPT = 1
MAX_ATTEMPT = 3


class EventMalformed(ValueError):
    """Raised when a competition event lacks required fields or has bad values."""


class LiftType(str, Enum):
    SNATCH = "SNATCH"
    CLEANJERK = "CLEANJERK"

    @classmethod
    def parse(cls, raw: object) -> "LiftType":
        if isinstance(raw, LiftType):
            return raw
        if not isinstance(raw, str) or not raw.strip():
            raise EventMalformed("missing lift type")
        token = raw.strip().upper().replace(" ", "_").replace("-", "_")
        if token == "SNATCH":
            return cls.SNATCH
        if token in {"CLEANJERK", "CLEAN_JERK", "CLEAN_AND_JERK", "CJ"}:
            return cls.CLEANJERK
        raise EventMalformed(f"unknown lift type {raw!r}")


@dataclass(frozen=True, slots=True)
class AttemptId:
    athlete: str
    lift_type: LiftType
    attempt: int
    session: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.athlete, str) or not self.athlete.strip():
            raise EventMalformed("athlete name is required")
        if isinstance(self.attempt, bool) or not isinstance(self.attempt, int):
            raise EventMalformed(f"attempt number must be an integer, got {self.attempt!r}")
        if not MIN_ATTEMPT <= self.attempt <= MAX_ATTEMPT:
            raise EventMalformed(
                f"attempt number must be between {MIN_ATTEMPT} and {MAX_ATTEMPT}, got {self.attempt}"
            )
        object.__setattr__(self, "lift_type", LiftType.parse(self.lift_type))

    @classmethod
    def build(cls, athlete: object, lift_type: object, attempt: object, session: str = "") -> "AttemptId":
        """Coerce loosely typed event fields into an AttemptId."""
        try:
            attempt_number = int(str(attempt).strip())
        except (TypeError, ValueError):
            raise EventMalformed(f"invalid attempt number {attempt!r}") from None
        return cls(
            athlete=str(athlete or "").strip(),
            lift_type=LiftType.parse(lift_type),
            attempt=attempt_number,
            session=(session or "").strip(),
        )

    def with_session(self, session: str) -> "AttemptId":
        return replace(self, session=(session or "").strip())

    def describe(self) -> str:
        athlete = self.athlete.replace("_", " ")
        return f"{athlete} - {self.lift_type.value} attempt {self.attempt}"


@dataclass(frozen=True, slots=True)
class AttemptSnapshot:
    attempt_id: AttemptId | None
    start_at: int
    stop_at: int
    decision_at: int
    stop_request_count: int

    @property
    def active(self) -> bool:
        return self.attempt_id is not None


EMPTY_SNAPSHOT = AttemptSnapshot(None, 0, 0, 0, 0)


class AttemptState:
    """The single record of the attempt currently on the platform.

    Only the first clock stop is kept as the trimming anchor; further stops
    during a bounce are counted but do not move ``stop_at``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = EMPTY_SNAPSHOT

    def on_start(self, attempt_id: AttemptId, now_ms: int) -> AttemptSnapshot:
        with self._lock:
            self._snapshot = AttemptSnapshot(attempt_id, int(now_ms), 0, 0, 0)
            return self._snapshot

    def on_stop_tick(self, now_ms: int) -> AttemptSnapshot:
        with self._lock:
            current = self._snapshot
            count = current.stop_request_count + 1
            stop_at = int(now_ms) if count == 1 else current.stop_at
            self._snapshot = replace(current, stop_at=stop_at, stop_request_count=count)
            return self._snapshot

    def on_decision(self, now_ms: int) -> AttemptSnapshot:
        with self._lock:
            self._snapshot = replace(self._snapshot, decision_at=int(now_ms))
            return self._snapshot

    def snapshot(self) -> AttemptSnapshot:
        with self._lock:
            return self._snapshot

    def reset(self) -> None:
        with self._lock:
            self._snapshot = EMPTY_SNAPSHOT

    @property
    def active(self) -> bool:
        return self.snapshot().active
