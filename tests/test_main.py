import io

import main
from replays import daemon


class ScriptedWatcher:
    def __init__(self):
        self.restart_requested = False
        self.restored = False

    def restore(self):
        self.restored = True


def test_restart_key_reruns_recorder(monkeypatch):
    watcher = ScriptedWatcher()
    runs = []

    def fake_main(argv):
        runs.append(list(argv))
        if len(runs) == 1:
            watcher.restart_requested = True
        return daemon.EXIT_OK

    monkeypatch.setattr(main, "watch_keys", lambda: watcher)
    monkeypatch.setattr(daemon, "main", fake_main)
    monkeypatch.setattr(main.sys, "argv", ["main.py", "--no-video"])
    monkeypatch.delenv("DEV", raising=False)

    assert main.main() == daemon.EXIT_OK
    assert runs == [["--no-video"], ["--no-video"]]
    assert watcher.restored
    assert main.os.environ["DEV"] == "1"


def test_failed_run_is_not_restarted(monkeypatch):
    watcher = ScriptedWatcher()
    watcher.restart_requested = True
    monkeypatch.setattr(main, "watch_keys", lambda: watcher)
    monkeypatch.setattr(daemon, "main", lambda argv: daemon.EXIT_CONFIG)
    monkeypatch.setattr(main.sys, "argv", ["main.py"])
    monkeypatch.setenv("DEV", "1")

    assert main.main() == daemon.EXIT_CONFIG


def test_ctrl_c_during_run_exits_cleanly(monkeypatch):
    def interrupted(argv):
        raise KeyboardInterrupt

    monkeypatch.setattr(daemon, "main", interrupted)
    assert main.run_once([]) == daemon.EXIT_OK


def test_no_watcher_without_terminal(monkeypatch):
    monkeypatch.setattr(main.sys, "stdin", io.StringIO())
    assert main.watch_keys() is None
