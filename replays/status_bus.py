"""Status broadcast for the local console and connected browsers."""

from __future__ import annotations

import asyncio
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Set

DEFAULT_UI_QUEUE_SIZE = 10
DEFAULT_CLIENT_QUEUE_SIZE = 32
VIDEOS_READY_PHRASE = "Videos ready"
RELOAD_TEXT = "Reloading..."
NO_ACTIVE_SESSION = "No active session"
READY_CLEAR_SECONDS = 10.0

ANSI_BOLD = "\033[1m"
ANSI_RESET = "\033[0m"
USE_COLOR_DEFAULT = os.getenv("NO_COLOR") is None


class StatusCode(str, Enum):
    READY = "DONE"
    RECORDING = "RECORDING"
    TRIMMING = "TRIMMING"
    ERROR = "ERROR"


@dataclass(frozen=True, slots=True)
class StatusMessage:
    code: StatusCode
    text: str
    session: str = ""
    reload: bool = False

    def to_frame(self) -> dict[str, Any]:
        frame: dict[str, Any] = {
            "code": self.code.value,
            "text": self.text,
            "session": self.session,
        }
        if self.reload:
            frame["reload"] = True
        return frame

    @property
    def is_error(self) -> bool:
        return self.code is StatusCode.ERROR or self.text.startswith("Error:")


class StatusBus:
    """Single-writer broadcast node.

    The UI channel is a bounded queue that drops the oldest unread message.
    Each browser subscriber owns an asyncio queue; a subscriber that falls
    behind is dropped rather than slowing everybody else down.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        ui_queue_size: int = DEFAULT_UI_QUEUE_SIZE,
        client_queue_size: int = DEFAULT_CLIENT_QUEUE_SIZE,
    ) -> None:
        if ui_queue_size < DEFAULT_UI_QUEUE_SIZE:
            raise ValueError(f"ui_queue_size must be at least {DEFAULT_UI_QUEUE_SIZE}")
        if client_queue_size <= 0:
            raise ValueError("client_queue_size must be positive")
        self._loop = loop
        self._client_queue_size = client_queue_size
        self._ui_channel: "queue.Queue[StatusMessage]" = queue.Queue(maxsize=ui_queue_size)
        self._subscribers: Set[asyncio.Queue] = set()
        self._last: StatusMessage | None = None
        self._reload_pending = False
        self._closed = False
        self._lock = threading.Lock()
        self._log = logging.getLogger("status_bus")

    @property
    def ui_channel(self) -> "queue.Queue[StatusMessage]":
        return self._ui_channel

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            self._loop = loop

    def last_message(self) -> StatusMessage | None:
        with self._lock:
            return self._last

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, code: StatusCode, text: str, session: str = "") -> StatusMessage | None:
        message = StatusMessage(StatusCode(code), str(text), session or "")
        browser_message = message
        if message.code is StatusCode.READY and VIDEOS_READY_PHRASE in message.text:
            browser_message = StatusMessage(message.code, RELOAD_TEXT, message.session, reload=True)

        with self._lock:
            if self._closed:
                self._log.debug("status bus closed; dropping %s %r", message.code.value, message.text)
                return None
            self._last = message
            self._reload_pending = browser_message.reload
            loop = self._loop
            subscribers = list(self._subscribers)

        self._log.info("status %s: %s", message.code.value, message.text)
        self._offer_ui(message)

        if subscribers:
            if loop is None or loop.is_closed():
                for subscription in subscribers:
                    self._enqueue_nowait(subscription, browser_message)
            else:
                def _deliver() -> None:
                    for subscription in subscribers:
                        self._enqueue_nowait(subscription, browser_message)

                loop.call_soon_threadsafe(_deliver)
        return message

    async def subscribe(self) -> asyncio.Queue:
        subscription: asyncio.Queue = asyncio.Queue(maxsize=self._client_queue_size)
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._loop is None:
                self._loop = loop
            if self._closed:
                subscription.put_nowait(None)
                return subscription
            self._subscribers.add(subscription)
            last = self._last
            reload_pending = self._reload_pending

        if last is not None:
            # A page that was reloaded by the "Videos ready" frame must not
            # be told to reload again.
            if reload_pending:
                last = StatusMessage(StatusCode.READY, VIDEOS_READY_PHRASE, last.session)
                with self._lock:
                    self._reload_pending = False
            subscription.put_nowait(last)
        return subscription

    def unsubscribe(self, subscription: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop = self._loop
            subscribers = list(self._subscribers)
            self._subscribers.clear()

        def _hang_up() -> None:
            for subscription in subscribers:
                _drain(subscription)
                subscription.put_nowait(None)

        if subscribers and loop is not None and not loop.is_closed() and loop.is_running():
            loop.call_soon_threadsafe(_hang_up)
        else:
            _hang_up()
        self._log.info("status bus closed")

    def _offer_ui(self, message: StatusMessage) -> None:
        while True:
            try:
                self._ui_channel.put_nowait(message)
                return
            except queue.Full:
                try:
                    self._ui_channel.get_nowait()
                except queue.Empty:
                    pass

    def _enqueue_nowait(self, subscription: asyncio.Queue, message: StatusMessage) -> None:
        with self._lock:
            if subscription not in self._subscribers:
                return
        try:
            subscription.put_nowait(message)
        except asyncio.QueueFull:
            self._log.warning("browser client is not keeping up; dropping it")
            self.unsubscribe(subscription)
            _drain(subscription)
            subscription.put_nowait(None)


def _drain(subscription: asyncio.Queue) -> None:
    while True:
        try:
            subscription.get_nowait()
        except asyncio.QueueEmpty:
            return


class StatusConsole:
    """Local renderer for the UI channel.

    Errors are shown in bold. After a READY or ERROR message, ten seconds
    of silence put the display back to plain "Ready".
    """

    def __init__(
        self,
        bus: StatusBus,
        *,
        clear_after: float = READY_CLEAR_SECONDS,
        use_color: bool | None = None,
        poll_interval: float = 0.25,
    ) -> None:
        self._bus = bus
        self._clear_after = float(clear_after)
        self._use_color = USE_COLOR_DEFAULT if use_color is None else use_color
        self._poll = float(poll_interval)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._text = "Ready"
        self._bold = False
        self._clear_deadline: float | None = None
        self._log = logging.getLogger("replays")

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    @property
    def bold(self) -> bool:
        with self._lock:
            return self._bold

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="status_console", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def render(self, message: StatusMessage, *, now: float | None = None) -> str:
        now = time.monotonic() if now is None else now
        with self._lock:
            self._text = message.text
            self._bold = message.is_error
            if message.code in (StatusCode.READY, StatusCode.ERROR):
                self._clear_deadline = now + self._clear_after
            else:
                self._clear_deadline = None
            line = self._format_locked()
        self._log.info("[status] %s", line)
        return line

    def tick(self, *, now: float | None = None) -> bool:
        """Revert to "Ready" once the clear deadline has passed."""
        now = time.monotonic() if now is None else now
        with self._lock:
            if self._clear_deadline is None or now < self._clear_deadline:
                return False
            self._clear_deadline = None
            self._text = "Ready"
            self._bold = False
        self._log.debug("[status] Ready")
        return True

    def _format_locked(self) -> str:
        if self._bold and self._use_color:
            return f"{ANSI_BOLD}{self._text}{ANSI_RESET}"
        return self._text

    def _run(self) -> None:
        channel = self._bus.ui_channel
        while not self._stop.is_set():
            try:
                message = channel.get(timeout=self._poll)
            except queue.Empty:
                self.tick()
                continue
            self.render(message)


__all__ = [
    "NO_ACTIVE_SESSION",
    "RELOAD_TEXT",
    "StatusBus",
    "StatusCode",
    "StatusConsole",
    "StatusMessage",
    "VIDEOS_READY_PHRASE",
]
