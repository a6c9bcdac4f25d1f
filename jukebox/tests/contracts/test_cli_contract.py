"""
Contract tests for the command line entry point.
"""

import pytest

from jukebox.__main__ import EXIT_ERROR, main
from jukebox.state.store import JukeboxStore


@pytest.fixture
def db_path(monkeypatch, tmp_path):
    path = str(tmp_path / "cli.sqlite3")
    monkeypatch.setenv("JUKEBOX_ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setenv("JUKEBOX_DB_PATH", path)
    monkeypatch.setenv("JUKEBOX_PLAYER_ID", "lounge")
    monkeypatch.setenv("JUKEBOX_SOCKET_DIR", str(tmp_path))
    return path


class TestLibraryCommands:
    def test_add_vote_and_queue(self, db_path, capsys):
        assert main(["add", "/music/one.mp3", "--artist", "Band", "--title", "One"]) == 0
        song_id = int(capsys.readouterr().out.strip())

        assert main(["vote", str(song_id), "alice"]) == 0
        assert main(["queue"]) == 0

        out = capsys.readouterr().out
        assert "Band - One" in out
        assert "alice" in out

    def test_empty_queue_shows_random_pick(self, db_path, capsys):
        assert main(["queue"]) == 0

        assert "(random pick)" in capsys.readouterr().out

    def test_queue_does_not_persist_voter_order(self, db_path, capsys):
        main(["add", "/music/one.mp3"])
        song_id = int(capsys.readouterr().out.strip())
        main(["vote", str(song_id), "alice"])

        assert main(["queue"]) == 0

        store = JukeboxStore(db_path)
        try:
            assert store.load_voter_order("lounge") == []
        finally:
            store.close()

    def test_player_option_scopes_votes(self, db_path, capsys):
        main(["add", "/music/one.mp3"])
        song_id = int(capsys.readouterr().out.strip())

        main(["--player", "hall", "vote", str(song_id), "alice"])

        store = JukeboxStore(db_path)
        try:
            assert [v.player_id for v in store.list_active_votes("hall")] == ["hall"]
            assert store.list_active_votes("lounge") == []
        finally:
            store.close()

    def test_vote_for_unknown_song_fails(self, db_path):
        assert main(["vote", "999", "alice"]) == EXIT_ERROR


class TestControlCommands:
    def test_skip_without_running_player_fails(self, db_path):
        assert main(["skip"]) == EXIT_ERROR

    def test_zap_blank_id_fails(self, db_path):
        assert main(["zap", " "]) == EXIT_ERROR

    def test_invalid_volume_fails(self, db_path):
        assert main(["volume", "loud"]) == EXIT_ERROR
