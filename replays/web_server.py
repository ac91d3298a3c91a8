#!/usr/bin/env python3
"""
aiohttp front end for the replays recorder.

- GET  /                  -> clip listing for a session (Jinja2 template)
- GET  /videos/{path}     -> final clips, served without caching
- GET  /replay/{n}[.mp4]  -> latest clip for camera n in the current session
- POST /timer             -> athlete clock start/stop callbacks from owlcms
- POST /decision          -> referee decision callbacks from owlcms
- GET  /ws                -> status frames for the browser
- GET  /api/status        -> supervisor state as JSON
- GET  /healthz           -> liveness check
"""

from __future__ import annotations

import asyncio
import logging
import threading
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from aiohttp import WSMsgType, web
from aiohttp.web import AppKey

from . import webui
from .attempt import EventMalformed
from .clip_names import UNSORTED_SESSION, session_dir_name
from .event_router import (
    TIMER_START,
    TIMER_STOP,
    EventRouter,
    attempt_from_form,
    decision_is_actionable,
)
from .recording_supervisor import RecordingSupervisor, SupervisorError
from .session_index import (
    DEFAULT_LIST_LIMIT,
    latest_clip,
    list_clips,
    list_sessions,
    resolve_session,
    resolve_video_path,
)
from .status_bus import StatusBus

log = logging.getLogger("web_server")

CLIENT_SEND_TIMEOUT_SEC = 2.0
WS_HEARTBEAT_SEC = 30.0
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass
class ReplaysRuntime:
    """Everything the HTTP handlers need, bundled for ``build_app``."""

    video_dir: Path
    router: EventRouter
    supervisor: RecordingSupervisor
    bus: StatusBus
    platform: str = ""
    verbose: bool = False
    client_send_timeout_sec: float = CLIENT_SEND_TIMEOUT_SEC


RUNTIME_KEY: AppKey[ReplaysRuntime] = web.AppKey("replays_runtime", ReplaysRuntime)
WEBSOCKETS_KEY: AppKey[weakref.WeakSet] = web.AppKey("websockets", weakref.WeakSet)


def _no_cache_file(path: Path, *, content_type: str | None = None) -> web.FileResponse:
    response = web.FileResponse(path, headers=NO_CACHE_HEADERS)
    if content_type:
        response.content_type = content_type
    return response


def _log_form(kind: str, form: Mapping[str, Any]) -> None:
    lines = "\n".join(f"    {key}={value}" for key, value in form.items())
    log.info("received %s request:\n%s", kind, lines)


def _parse_attempt_number(form: Mapping[str, Any]) -> int:
    try:
        return int(str(form.get("attemptNumber", "")).strip())
    except ValueError:
        raise web.HTTPBadRequest(text="Invalid attemptNumber") from None


def build_app(runtime: ReplaysRuntime) -> web.Application:
    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WEBSOCKETS_KEY] = weakref.WeakSet()

    async def index(request: web.Request) -> web.Response:
        rt = request.app[RUNTIME_KEY]
        query = request.rel_url.query
        sort_by_athlete = query.get("sortBy") == "athlete"
        time_ascending = query.get("timeOrder") == "asc"
        show_all = query.get("showAll") == "true"
        active_session = rt.supervisor.current_session
        active_session_dir = session_dir_name(active_session) if active_session else ""

        sessions = await asyncio.to_thread(list_sessions, rt.video_dir)
        if (rt.video_dir / UNSORTED_SESSION).is_dir():
            sessions.append(UNSORTED_SESSION)
        selected = query.get("session", "").strip()
        if selected:
            selected = session_dir_name(selected)
        elif active_session_dir:
            selected = active_session_dir
        else:
            selected = await asyncio.to_thread(resolve_session, rt.video_dir, "") or (
                UNSORTED_SESSION if UNSORTED_SESSION in sessions else ""
            )

        videos: list = []
        total = 0
        if sessions and selected:
            videos, total = await asyncio.to_thread(
                list_clips,
                rt.video_dir,
                selected,
                sort_by="athlete" if sort_by_athlete else "time",
                time_order="asc" if time_ascending else "desc",
                limit=None if show_all else DEFAULT_LIST_LIMIT,
            )

        last = rt.bus.last_message()
        html = webui.render_template(
            "videolist.html",
            no_sessions=not sessions,
            sessions=sessions,
            selected_session=selected,
            active_session_dir=active_session_dir,
            platform=rt.platform,
            videos=videos,
            total_count=total,
            show_all=show_all,
            sort_by_athlete=sort_by_athlete,
            time_ascending=time_ascending,
            status_text=last.text if last else "",
            status_code=last.code.value if last else "",
        )
        return web.Response(text=html, content_type="text/html", headers=NO_CACHE_HEADERS)

    async def videos_file(request: web.Request) -> web.StreamResponse:
        rt = request.app[RUNTIME_KEY]
        rel = request.match_info.get("path", "")
        resolved = await asyncio.to_thread(resolve_video_path, rt.video_dir, rel)
        if resolved is None:
            raise web.HTTPNotFound()
        return _no_cache_file(resolved)

    async def replay(request: web.Request) -> web.StreamResponse:
        rt = request.app[RUNTIME_KEY]
        raw = request.match_info.get("camera", "")
        if raw.endswith(".mp4"):
            raw = raw[: -len(".mp4")]
        if not raw.isdigit():
            raise web.HTTPNotFound(text=f"No replay found for camera {raw}")
        camera = int(raw)
        session = rt.supervisor.current_session
        path = await asyncio.to_thread(latest_clip, rt.video_dir, camera, session)
        if path is None:
            raise web.HTTPNotFound(text=f"No replay found for camera {camera}")
        log.debug("replay for camera %d: %s", camera, path)
        return _no_cache_file(path, content_type="video/mp4")

    async def timer(request: web.Request) -> web.Response:
        rt = request.app[RUNTIME_KEY]
        form = await request.post()
        event_type = form.get("athleteTimerEventType", "")
        if event_type not in (TIMER_START, TIMER_STOP):
            raise web.HTTPBadRequest(text="Invalid athleteTimerEventType")
        _parse_attempt_number(form)
        if rt.verbose:
            _log_form("/timer", form)

        if event_type == TIMER_STOP:
            log.info("received StopTime event for %s, attempt %s", form.get("fullName", ""), form.get("attemptNumber"))
            await asyncio.to_thread(rt.router.stop)
        else:
            try:
                attempt_id = attempt_from_form(form, session=rt.supervisor.current_session)
            except EventMalformed as e:
                raise web.HTTPBadRequest(text=str(e)) from None
            try:
                await asyncio.to_thread(rt.router.start, attempt_id)
            except SupervisorError as e:
                log.error("failed to start recording: %s", e)
                raise web.HTTPInternalServerError(text=f"Failed to start recording: {e}") from None
        return web.Response(text="Timer endpoint received")

    async def decision(request: web.Request) -> web.Response:
        rt = request.app[RUNTIME_KEY]
        form = await request.post()
        fop_state = form.get("fopState", "")
        event_type = form.get("decisionEventType", "")
        if not decision_is_actionable(fop_state, event_type):
            if rt.verbose:
                log.info("ignoring decision: fopState=%s, decisionEventType=%s", fop_state, event_type)
            return web.Response(text="Decision endpoint received")
        _parse_attempt_number(form)
        if rt.verbose:
            _log_form("/decision", form)
        await asyncio.to_thread(rt.router.decision)
        return web.Response(text="Decision endpoint received")

    async def websocket(request: web.Request) -> web.WebSocketResponse:
        rt = request.app[RUNTIME_KEY]
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SEC)
        await ws.prepare(request)
        request.app[WEBSOCKETS_KEY].add(ws)
        subscription = await rt.bus.subscribe()

        async def _forward() -> None:
            while True:
                message = await subscription.get()
                if message is None:
                    return
                try:
                    await asyncio.wait_for(ws.send_json(message.to_frame()), timeout=rt.client_send_timeout_sec)
                except (asyncio.TimeoutError, ConnectionResetError) as e:
                    log.warning("dropping websocket client: %r", e)
                    return

        async def _drain_incoming() -> None:
            async for msg in ws:
                if msg.type == WSMsgType.ERROR:
                    log.debug("websocket error: %r", ws.exception())
                    return

        tasks = [asyncio.ensure_future(_forward()), asyncio.ensure_future(_drain_incoming())]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            rt.bus.unsubscribe(subscription)
            request.app[WEBSOCKETS_KEY].discard(ws)
            await ws.close()
        return ws

    async def api_status(request: web.Request) -> web.Response:
        rt = request.app[RUNTIME_KEY]
        supervisor = rt.supervisor
        snap = supervisor.snapshot()
        last = rt.bus.last_message()
        payload: dict[str, Any] = {
            "state": supervisor.state.value,
            "session": supervisor.current_session,
            "active_handles": supervisor.active_handle_count,
            "decision_pending": rt.router.decision_pending,
            "platform": rt.platform,
            "platforms": rt.router.platforms,
            "status": last.to_frame() if last else None,
            "attempt": None,
        }
        if snap.attempt_id is not None:
            payload["attempt"] = {
                "athlete": snap.attempt_id.athlete,
                "lift_type": snap.attempt_id.lift_type.value,
                "attempt": snap.attempt_id.attempt,
                "start_at": snap.start_at,
                "stop_at": snap.stop_at,
                "decision_at": snap.decision_at,
                "stop_request_count": snap.stop_request_count,
            }
        return web.json_response(payload)

    async def healthz(_: web.Request) -> web.Response:
        return web.Response(text="ok\n")

    async def _close_websockets(app: web.Application) -> None:
        for ws in list(app[WEBSOCKETS_KEY]):
            await ws.close(code=1001, message=b"server shutdown")

    app.on_shutdown.append(_close_websockets)

    # Routes
    app.router.add_get("/", index)
    app.router.add_get("/videos/{path:.*}", videos_file)
    app.router.add_get("/replay/{camera}", replay)
    app.router.add_post("/timer", timer)
    app.router.add_post("/decision", decision)
    app.router.add_get("/ws", websocket)
    app.router.add_get("/api/status", api_status)
    app.router.add_get("/healthz", healthz)
    app.router.add_static("/static/", webui.static_directory(), show_index=False)
    return app


class WebServerHandle:
    """Handle returned by start_web_server_in_thread(). Call stop() to cleanly shut down."""

    def __init__(self, thread: threading.Thread, loop: asyncio.AbstractEventLoop, runner: web.AppRunner, app: web.Application):
        self.thread = thread
        self.loop = loop
        self.runner = runner
        self.app = app

    def stop(self, timeout: float = 5.0) -> None:
        log.info("stopping web server ...")
        if self.loop.is_running():
            fut = asyncio.run_coroutine_threadsafe(self.runner.cleanup(), self.loop)
            try:
                fut.result(timeout=timeout)
            except Exception as e:
                log.warning("error during aiohttp runner cleanup: %r", e)
            self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)
        log.info("web server stopped")


def start_web_server_in_thread(
    runtime: ReplaysRuntime,
    host: str = "0.0.0.0",
    port: int = 8091,
    *,
    access_log: bool = False,
) -> WebServerHandle:
    """Launch the aiohttp server in a dedicated thread with its own event loop.

    Raises ``OSError`` when the port cannot be bound.
    """
    loop = asyncio.new_event_loop()
    ready = threading.Event()
    box: dict[str, Any] = {}

    def _run() -> None:
        asyncio.set_event_loop(loop)
        runtime.bus.set_loop(loop)
        app = build_app(runtime)
        runner = web.AppRunner(app, access_log=logging.getLogger("aiohttp.access") if access_log else None)
        try:
            loop.run_until_complete(runner.setup())
            site = web.TCPSite(runner, host, port)
            loop.run_until_complete(site.start())
        except OSError as e:
            box["error"] = e
            loop.run_until_complete(runner.cleanup())
            loop.close()
            ready.set()
            return
        box["runner"] = runner
        box["app"] = app
        log.info("web server started on %s:%s", host, port)
        ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    thread = threading.Thread(target=_run, name="web_server", daemon=True)
    thread.start()
    ready.wait()
    error: Optional[OSError] = box.get("error")
    if error is not None:
        thread.join(timeout=1.0)
        raise error
    return WebServerHandle(thread, loop, box["runner"], box["app"])


__all__ = [
    "NO_CACHE_HEADERS",
    "RUNTIME_KEY",
    "ReplaysRuntime",
    "WebServerHandle",
    "build_app",
    "start_web_server_in_thread",
]
