"""
Configuration management for the jukebox.

Reads configuration from a .env file and environment variables with sensible
defaults. Environment variables always win over the .env file.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv


# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/jukebox/jukebox.env")

DEFAULT_PLAYER_COMMAND = ["mplayer", "-slave", "-quiet"]

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("JUKEBOX_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name, str(default))
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


def _get_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value


def _get_verb(name: str, default: str) -> Optional[str]:
    """Backend command verb; set to an empty string to disable it."""
    if name not in os.environ:
        return default
    return _get_optional(name)


def parse_hook_specs(spec_str: str) -> List[Tuple[str, str, str]]:
    """
    Parse hook handler declarations.

    Format is a comma-separated list of ``component.event=module:function``,
    e.g. ``player.song_start=myhooks.scrobble:on_start``.

    Returns:
        List of (component, event, target) tuples in declaration order

    Raises:
        ValueError: If any entry is malformed
    """
    specs: List[Tuple[str, str, str]] = []
    if not spec_str or not spec_str.strip():
        return specs

    for raw in spec_str.split(","):
        item = raw.strip()
        if not item:
            continue
        key, sep, target = item.partition("=")
        component, dot, event = key.strip().partition(".")
        target = target.strip()
        if not sep or not dot or not component or not event or ":" not in target:
            raise ValueError(
                f"Invalid hook declaration: {item!r} "
                f"(expected component.event=module:function)"
            )
        specs.append((component.strip(), event.strip(), target))
    return specs


@dataclass
class JukeboxConfig:
    """Jukebox configuration loaded from .env file and environment variables."""

    # Identity
    player_id: str = "default"

    # Storage
    db_path: str = "/var/lib/jukebox/jukebox.sqlite3"

    # Control channel
    socket_dir: str = "/tmp/jukebox"

    # Playback backend (song path is appended as the final argument)
    player_command: List[str] = field(default_factory=lambda: list(DEFAULT_PLAYER_COMMAND))
    quit_command: str = "quit"
    pause_command: Optional[str] = "pause"
    volume_command: Optional[str] = "volume {volume} 1"
    default_volume: int = 20

    # Supervision policy
    quit_timeout_sec: float = 5.0
    crash_loop_threshold: int = 5
    crash_loop_window_sec: float = 30.0
    idle_poll_sec: float = 5.0
    random_pick_attempts: int = 10

    # Extension hooks: (component, event, "module:function")
    hooks: List[Tuple[str, str, str]] = field(default_factory=list)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def socket_path_for(self, player_id: Optional[str] = None) -> str:
        """Control socket path for a player id (defaults to this config's player)."""
        return os.path.join(self.socket_dir, f"{player_id or self.player_id}.sock")

    @classmethod
    def load_config(cls) -> "JukeboxConfig":
        """
        Load configuration from environment variables.

        Returns:
            JukeboxConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        player_command_str = os.getenv("JUKEBOX_PLAYER_COMMAND")
        if player_command_str:
            player_command = shlex.split(player_command_str)
        else:
            player_command = list(DEFAULT_PLAYER_COMMAND)

        try:
            hooks = parse_hook_specs(os.getenv("JUKEBOX_HOOKS", ""))
        except ValueError as e:
            raise ValueError(f"Invalid JUKEBOX_HOOKS: {e}")

        config = cls(
            player_id=os.getenv("JUKEBOX_PLAYER_ID", "default"),
            db_path=os.getenv("JUKEBOX_DB_PATH", "/var/lib/jukebox/jukebox.sqlite3"),
            socket_dir=os.getenv("JUKEBOX_SOCKET_DIR", "/tmp/jukebox"),
            player_command=player_command,
            quit_command=os.getenv("JUKEBOX_QUIT_COMMAND", "quit"),
            pause_command=_get_verb("JUKEBOX_PAUSE_COMMAND", "pause"),
            volume_command=_get_verb("JUKEBOX_VOLUME_COMMAND", "volume {volume} 1"),
            default_volume=_get_int("JUKEBOX_DEFAULT_VOLUME", 20),
            quit_timeout_sec=_get_float("JUKEBOX_QUIT_TIMEOUT_SEC", 5.0),
            crash_loop_threshold=_get_int("JUKEBOX_CRASH_LOOP_THRESHOLD", 5),
            crash_loop_window_sec=_get_float("JUKEBOX_CRASH_LOOP_WINDOW_SEC", 30.0),
            idle_poll_sec=_get_float("JUKEBOX_IDLE_POLL_SEC", 5.0),
            random_pick_attempts=_get_int("JUKEBOX_RANDOM_PICK_ATTEMPTS", 10),
            hooks=hooks,
            log_level=os.getenv("JUKEBOX_LOG_LEVEL", "INFO"),
            log_file=_get_optional("JUKEBOX_LOG_FILE"),
        )

        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration is invalid
        """
        if not self.player_id or "/" in self.player_id:
            raise ValueError(f"Invalid player id: {self.player_id!r} (must be non-empty, no '/')")

        if not self.player_command:
            raise ValueError("Player command cannot be empty")

        if not self.quit_command:
            raise ValueError("Quit command cannot be empty")

        if self.default_volume < 0:
            raise ValueError(f"Invalid default volume: {self.default_volume} (must be >= 0)")

        if self.quit_timeout_sec <= 0:
            raise ValueError(f"Invalid quit timeout: {self.quit_timeout_sec} (must be > 0)")

        if self.crash_loop_threshold < 1:
            raise ValueError(f"Invalid crash loop threshold: {self.crash_loop_threshold} (must be >= 1)")

        if self.crash_loop_window_sec <= 0:
            raise ValueError(f"Invalid crash loop window: {self.crash_loop_window_sec} (must be > 0)")

        if self.idle_poll_sec <= 0:
            raise ValueError(f"Invalid idle poll interval: {self.idle_poll_sec} (must be > 0)")

        if self.random_pick_attempts < 1:
            raise ValueError(f"Invalid random pick attempts: {self.random_pick_attempts} (must be >= 1)")

        if self.volume_command is not None and "{volume}" not in self.volume_command:
            raise ValueError(f"Invalid volume command: {self.volume_command!r} (must contain '{{volume}}')")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )


def load_config() -> JukeboxConfig:
    """
    Load and validate jukebox configuration from environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return JukeboxConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
