"""
Contract tests for configuration loading.

Every test points JUKEBOX_ENV_FILE at a temporary path so the host's
/etc/jukebox/jukebox.env never leaks in.
"""

import pytest

from jukebox.config import DEFAULT_PLAYER_COMMAND, JukeboxConfig, load_config, parse_hook_specs


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in [
        "JUKEBOX_PLAYER_ID",
        "JUKEBOX_DB_PATH",
        "JUKEBOX_PLAYER_COMMAND",
        "JUKEBOX_PAUSE_COMMAND",
        "JUKEBOX_VOLUME_COMMAND",
        "JUKEBOX_DEFAULT_VOLUME",
        "JUKEBOX_QUIT_TIMEOUT_SEC",
        "JUKEBOX_CRASH_LOOP_THRESHOLD",
        "JUKEBOX_CRASH_LOOP_WINDOW_SEC",
        "JUKEBOX_SOCKET_DIR",
        "JUKEBOX_QUIT_COMMAND",
        "JUKEBOX_IDLE_POLL_SEC",
        "JUKEBOX_RANDOM_PICK_ATTEMPTS",
        "JUKEBOX_HOOKS",
        "JUKEBOX_LOG_LEVEL",
        "JUKEBOX_LOG_FILE",
    ]:
        # setenv first so teardown also removes values a .env file loaded
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("JUKEBOX_ENV_FILE", str(tmp_path / "missing.env"))


class TestDefaults:
    def test_defaults(self):
        config = load_config()

        assert config.player_id == "default"
        assert config.player_command == DEFAULT_PLAYER_COMMAND
        assert config.default_volume == 20
        assert config.crash_loop_threshold == 5
        assert config.crash_loop_window_sec == 30.0
        assert config.pause_command == "pause"
        assert config.hooks == []

    def test_socket_path_per_player(self):
        config = JukeboxConfig(socket_dir="/run/jukebox", player_id="lounge")

        assert config.socket_path_for() == "/run/jukebox/lounge.sock"
        assert config.socket_path_for("hall") == "/run/jukebox/hall.sock"


class TestEnvironment:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("JUKEBOX_PLAYER_ID", "lounge")
        monkeypatch.setenv("JUKEBOX_PLAYER_COMMAND", "mpv --no-video")
        monkeypatch.setenv("JUKEBOX_QUIT_TIMEOUT_SEC", "2.5")

        config = load_config()

        assert config.player_id == "lounge"
        assert config.player_command == ["mpv", "--no-video"]
        assert config.quit_timeout_sec == 2.5

    def test_empty_verb_disables_it(self, monkeypatch):
        monkeypatch.setenv("JUKEBOX_PAUSE_COMMAND", "")

        assert load_config().pause_command is None

    def test_env_file_does_not_override_environment(self, monkeypatch, tmp_path):
        env_file = tmp_path / "jukebox.env"
        env_file.write_text("JUKEBOX_PLAYER_ID=from_file\nJUKEBOX_DEFAULT_VOLUME=55\n")
        monkeypatch.setenv("JUKEBOX_ENV_FILE", str(env_file))
        monkeypatch.setenv("JUKEBOX_PLAYER_ID", "from_env")

        config = load_config()

        assert config.player_id == "from_env"
        assert config.default_volume == 55

    def test_non_numeric_value_names_variable(self, monkeypatch):
        monkeypatch.setenv("JUKEBOX_DEFAULT_VOLUME", "loud")

        with pytest.raises(ValueError, match="JUKEBOX_DEFAULT_VOLUME"):
            load_config()


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"player_id": ""},
        {"player_id": "a/b"},
        {"default_volume": -1},
        {"quit_timeout_sec": 0},
        {"crash_loop_threshold": 0},
        {"volume_command": "volume"},
        {"log_level": "CHATTY"},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            JukeboxConfig(**kwargs).validate()


class TestHookSpecs:
    def test_parse_hook_specs(self):
        specs = parse_hook_specs("player.start=hooks.a:on_start, player.song_stop=hooks.b:scrobble")

        assert specs == [
            ("player", "start", "hooks.a:on_start"),
            ("player", "song_stop", "hooks.b:scrobble"),
        ]

    def test_malformed_hook_spec(self, monkeypatch):
        monkeypatch.setenv("JUKEBOX_HOOKS", "player-start=hooks")

        with pytest.raises(ValueError, match="JUKEBOX_HOOKS"):
            load_config()
