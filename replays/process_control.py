"""Child-process containment.

On POSIX each capture child runs in its own session so the whole group can be
killed at once. On Windows every child joins a process-wide job object marked
kill-on-close, so the children die with the parent even on a crash. Anything
still registered at interpreter exit is killed by an ``atexit`` hook.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import subprocess
import sys
import threading
from typing import Any, Dict, List

log = logging.getLogger("process_control")

POSIX_GROUPS = "posix-process-group"
WINDOWS_JOB = "windows-job-object"


class ProcessControlUnavailable(RuntimeError):
    """Raised when the host offers neither process groups nor job objects."""


class _WindowsJob:
    JOB_OBJECT_LIMIT_KILL_ON_JOB_CLOSE = 0x2000
    JOB_OBJECT_EXTENDED_LIMIT_INFORMATION_CLASS = 9

    def __init__(self) -> None:
        import ctypes
        from ctypes import wintypes

        class IO_COUNTERS(ctypes.Structure):
            _fields_ = [(name, ctypes.c_ulonglong) for name in (
                "ReadOperationCount",
                "WriteOperationCount",
                "OtherOperationCount",
                "ReadTransferCount",
                "WriteTransferCount",
                "OtherTransferCount",
            )]

        class JOBOBJECT_BASIC_LIMIT_INFORMATION(ctypes.Structure):
            _fields_ = [
                ("PerProcessUserTimeLimit", wintypes.LARGE_INTEGER),
                ("PerJobUserTimeLimit", wintypes.LARGE_INTEGER),
                ("LimitFlags", wintypes.DWORD),
                ("MinimumWorkingSetSize", ctypes.c_size_t),
                ("MaximumWorkingSetSize", ctypes.c_size_t),
                ("ActiveProcessLimit", wintypes.DWORD),
                ("Affinity", ctypes.c_size_t),
                ("PriorityClass", wintypes.DWORD),
                ("SchedulingClass", wintypes.DWORD),
            ]

        class JOBOBJECT_EXTENDED_LIMIT_INFORMATION(ctypes.Structure):
            _fields_ = [
                ("BasicLimitInformation", JOBOBJECT_BASIC_LIMIT_INFORMATION),
                ("IoInfo", IO_COUNTERS),
                ("ProcessMemoryLimit", ctypes.c_size_t),
                ("JobMemoryLimit", ctypes.c_size_t),
                ("PeakProcessMemoryUsed", ctypes.c_size_t),
                ("PeakJobMemoryUsed", ctypes.c_size_t),
            ]

        self._ctypes = ctypes
        self._kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        self._kernel32.CreateJobObjectW.restype = wintypes.HANDLE
        handle = self._kernel32.CreateJobObjectW(None, None)
        if not handle:
            raise ProcessControlUnavailable(f"CreateJobObject failed: {ctypes.get_last_error()}")

        info = JOBOBJECT_EXTENDED_LIMIT_INFORMATION()
        info.BasicLimitInformation.LimitFlags = self.JOB_OBJECT_LIMIT_KILL_ON_JOB_CLOSE
        ok = self._kernel32.SetInformationJobObject(
            handle,
            self.JOB_OBJECT_EXTENDED_LIMIT_INFORMATION_CLASS,
            ctypes.byref(info),
            ctypes.sizeof(info),
        )
        if not ok:
            error = ctypes.get_last_error()
            self._kernel32.CloseHandle(handle)
            raise ProcessControlUnavailable(f"SetInformationJobObject failed: {error}")
        self._handle = handle

    def assign(self, proc: subprocess.Popen) -> None:
        process_handle = int(getattr(proc, "_handle"))
        if not self._kernel32.AssignProcessToJobObject(self._handle, process_handle):
            raise OSError(f"AssignProcessToJobObject({proc.pid}) failed: {self._ctypes.get_last_error()}")


class ProcessGroups:
    """Registry of live capture children and the means to kill them."""

    def __init__(self, *, platform: str | None = None) -> None:
        self._lock = threading.Lock()
        self._children: Dict[int, subprocess.Popen] = {}
        self._job: _WindowsJob | None = None
        platform = platform or sys.platform
        if platform.startswith("win"):
            self.mechanism = WINDOWS_JOB
        elif hasattr(os, "killpg") and hasattr(os, "setsid"):
            self.mechanism = POSIX_GROUPS
        else:
            raise ProcessControlUnavailable(
                "this platform supports neither process groups nor job objects"
            )

    def _ensure_job(self) -> _WindowsJob:
        with self._lock:
            if self._job is None:
                self._job = _WindowsJob()
            return self._job

    def popen_kwargs(self) -> Dict[str, Any]:
        if self.mechanism == POSIX_GROUPS:
            return {"start_new_session": True}
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    def register(self, proc: subprocess.Popen) -> None:
        if self.mechanism == WINDOWS_JOB:
            try:
                self._ensure_job().assign(proc)
            except OSError as e:
                log.warning("could not attach pid %s to the job object: %s", proc.pid, e)
        with self._lock:
            self._children[proc.pid] = proc

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self._children.pop(proc.pid, None)

    def live_children(self) -> List[subprocess.Popen]:
        with self._lock:
            return [proc for proc in self._children.values() if proc.poll() is None]

    def kill(self, proc: subprocess.Popen) -> None:
        """Kill the child's whole group (or tree), then the child itself."""
        if proc.poll() is not None:
            self.unregister(proc)
            return
        log.info("killing ffmpeg process %d", proc.pid)
        if self.mechanism == POSIX_GROUPS:
            try:
                os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                log.warning("killpg(%d) refused: %s", proc.pid, e)
        else:
            subprocess.run(
                ["taskkill", "/F", "/T", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        self.unregister(proc)

    def kill_all(self) -> int:
        with self._lock:
            children = list(self._children.values())
        for proc in children:
            self.kill(proc)
        return len(children)


_default: ProcessGroups | None = None
_default_lock = threading.Lock()


def default_groups() -> ProcessGroups:
    """Process-wide registry; created on first use."""
    global _default
    with _default_lock:
        if _default is None:
            _default = ProcessGroups()
            atexit.register(_kill_at_exit)
        return _default


def _kill_at_exit() -> None:
    groups = _default
    if groups is None:
        return
    killed = groups.kill_all()
    if killed:
        log.warning("killed %d capture process(es) at exit", killed)


__all__ = [
    "POSIX_GROUPS",
    "ProcessControlUnavailable",
    "ProcessGroups",
    "WINDOWS_JOB",
    "default_groups",
]
