"""Jinja2 environment and static assets for the replay listing page."""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from typing import Any
from urllib.parse import quote, urlencode

from jinja2 import Environment, PackageLoader, select_autoescape

from ..clip_names import UNSORTED_SESSION

__all__ = [
    "listing_query",
    "render_template",
    "session_label",
    "static_directory",
    "static_url",
    "video_url",
]

STATIC_PREFIX = "/static"
VIDEOS_PREFIX = "/videos"


def static_url(path: str) -> str:
    asset = path.lstrip("/")
    return f"{STATIC_PREFIX}/{asset}" if asset else STATIC_PREFIX


def video_url(url_path: str) -> str:
    """``/videos/<session>/<clip>`` with each segment percent-encoded."""
    return f"{VIDEOS_PREFIX}/{quote(url_path.lstrip('/'), safe='/')}"


def session_label(directory: str) -> str:
    if directory == UNSORTED_SESSION:
        return "Unsorted clips"
    return directory.replace("_", " ")


def listing_query(session: str, *, sort_by_athlete: bool, time_ascending: bool, show_all: bool = False) -> str:
    params = {
        "session": session,
        "sortBy": "athlete" if sort_by_athlete else "time",
        "timeOrder": "asc" if time_ascending else "desc",
    }
    if show_all:
        params["showAll"] = "true"
    return "?" + urlencode(params)


@lru_cache(maxsize=1)
def _environment() -> Environment:
    env = Environment(
        loader=PackageLoader("replays.webui", "templates"),
        autoescape=select_autoescape(["html"]),
    )
    env.globals.update(static_url=static_url, video_url=video_url, listing_query=listing_query)
    env.filters["session_label"] = session_label
    return env


def render_template(name: str, **context: Any) -> str:
    return _environment().get_template(name).render(**context)


def static_directory() -> str:
    return os.fspath(resources.files("replays.webui").joinpath("static"))
