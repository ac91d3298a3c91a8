#!/usr/bin/env python3
"""
Development launcher for the replays recorder.

- Runs the recorder in the foreground with DEV=1 (debug logging, full callback payloads)
- Extra arguments are passed through (e.g. --no-video, --config, --port)
- Ctrl-C exits cleanly
- Ctrl-R restarts the recorder (re-reads config.yaml)
"""

import os
import signal
import sys
import termios
import threading
import tty

from replays import daemon

KEY_EXIT = b"\x03"  # Ctrl-C
KEY_RESTART = b"\x12"  # Ctrl-R


class KeyWatcher(threading.Thread):
    """Reads single keys from the terminal while the recorder runs.

    A restart asks the recorder to stop the way a service manager would
    (SIGTERM: any capture in progress is aborted and its ffmpeg children
    killed) and flags the launcher to build a fresh recorder from a
    re-read config.
    """

    def __init__(self, fd):
        super().__init__(daemon=True, name="keys")
        self.fd = fd
        self.saved_mode = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        self.restart_requested = False

    def run(self):
        try:
            while True:
                key = os.read(self.fd, 1)
                if not key:
                    return
                if key == KEY_EXIT:
                    os.kill(os.getpid(), signal.SIGINT)
                elif key == KEY_RESTART:
                    self.restart_requested = True
                    os.kill(os.getpid(), signal.SIGTERM)
        finally:
            self.restore()

    def restore(self):
        termios.tcsetattr(self.fd, termios.TCSADRAIN, self.saved_mode)


def watch_keys():
    """Start a KeyWatcher, or return None when stdin is not a terminal."""
    if not sys.stdin.isatty():
        return None
    watcher = KeyWatcher(sys.stdin.fileno())
    watcher.start()
    return watcher


def run_once(argv):
    try:
        return daemon.main(argv)
    except KeyboardInterrupt:
        return daemon.EXIT_OK


def main():
    os.environ.setdefault("DEV", "1")
    argv = sys.argv[1:]
    print("[dev] Running replays recorder (Ctrl-C to exit, Ctrl-R to restart)")

    watcher = watch_keys()
    try:
        while True:
            if watcher is not None:
                watcher.restart_requested = False
            rc = run_once(argv)
            if watcher is not None and watcher.restart_requested and rc == daemon.EXIT_OK:
                print("[dev] Restart requested via Ctrl-R; re-reading config")
                continue
            print(f"[dev] Recorder exited with status {rc}")
            return rc
    finally:
        if watcher is not None:
            watcher.restore()


if __name__ == "__main__":
    sys.exit(main())
