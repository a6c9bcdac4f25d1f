"""
Playback backend description.

The external player is any program that takes the song path as its last
argument, accepts line commands on stdin and writes something to stdout
while it runs. The verbs are configurable; the defaults speak mplayer's
slave-mode protocol.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from jukebox.config import DEFAULT_PLAYER_COMMAND, JukeboxConfig


@dataclass(frozen=True)
class PlayerBackend:
    command: List[str] = field(default_factory=lambda: list(DEFAULT_PLAYER_COMMAND))
    quit_command: str = "quit"
    pause_command: Optional[str] = "pause"
    volume_command: Optional[str] = "volume {volume} 1"

    @classmethod
    def from_config(cls, config: JukeboxConfig) -> "PlayerBackend":
        return cls(
            command=list(config.player_command),
            quit_command=config.quit_command,
            pause_command=config.pause_command,
            volume_command=config.volume_command,
        )

    @property
    def supports_pause(self) -> bool:
        return bool(self.pause_command)

    @property
    def supports_volume(self) -> bool:
        return bool(self.volume_command)

    def argv_for(self, path: str) -> List[str]:
        return [*self.command, path]

    def volume_line(self, volume: int) -> Optional[str]:
        if not self.volume_command:
            return None
        return self.volume_command.format(volume=volume)
