"""
Shared pytest fixtures for jukebox contract tests.

Storage is a real SQLite file under tmp_path. Supervisor tests run a real
child process: fake_player.py under the current interpreter, driven by small
JSON song scripts.
"""

import shutil
import sys
import tempfile
import threading

import pytest

from jukebox.config import JukeboxConfig
from jukebox.player.supervisor import PlayerSupervisor
from jukebox.state.store import JukeboxStore
from jukebox.tests.contracts.test_doubles import (
    FAKE_PLAYER,
    RecordingHooks,
    write_song_script,
)


@pytest.fixture
def store(tmp_path):
    """A fresh store backed by a temporary database file."""
    db = JukeboxStore(str(tmp_path / "jukebox.sqlite3"))
    yield db
    db.close()


@pytest.fixture
def socket_dir():
    """Short socket directory; AF_UNIX paths are length-limited."""
    path = tempfile.mkdtemp(prefix="jbx-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def config(tmp_path, socket_dir):
    """Config that plays songs with fake_player.py and short timeouts."""
    return JukeboxConfig(
        player_id="test",
        db_path=str(tmp_path / "jukebox.sqlite3"),
        socket_dir=socket_dir,
        player_command=[sys.executable, FAKE_PLAYER],
        quit_timeout_sec=1.0,
        crash_loop_threshold=3,
        crash_loop_window_sec=30.0,
        idle_poll_sec=0.1,
        random_pick_attempts=3,
    )


@pytest.fixture
def hooks():
    return RecordingHooks()


@pytest.fixture
def add_song(store, tmp_path):
    """Add a scripted song to the library: add_song("a", duration=0.2, exit_code=0)."""
    def _add(name: str, online: bool = True, **behavior):
        path = write_song_script(tmp_path, name, **behavior)
        return store.add_song(path, artist="Fake", title=name, online=online)
    return _add


@pytest.fixture
def make_supervisor(config, store, hooks):
    """Build supervisors that are always shut down at teardown."""
    created = []

    def _make(**kwargs):
        supervisor = PlayerSupervisor(config, store, hooks, **kwargs)
        created.append(supervisor)
        return supervisor

    yield _make

    for supervisor in created:
        supervisor.shutdown(timeout=5.0)


@pytest.fixture(autouse=False)
def thread_leak_guard():
    """
    Detect threads left running by a test.

    Request it explicitly in tests that start and stop a supervisor.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    leaked = []
    for t in threading.enumerate():
        if t.ident not in before:
            t.join(timeout=2.0)
            if t.is_alive():
                leaked.append(t)
    if leaked:
        thread_info = "\n".join(f"  - {t.name} (daemon={t.daemon})" for t in leaked)
        assert False, f"Thread leak detected - shutdown incomplete.\nLeaked threads:\n{thread_info}"
