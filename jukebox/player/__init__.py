"""
Player subsystem.

This package supervises the external playback process:
- PlayerSupervisor: control loop owning one playback process at a time
- PlaybackSession: bookkeeping for one played song
- ControlServer / PlayerControl: Unix socket command channel
"""

from jukebox.player.session import EndReason, PlaybackSession
from jukebox.player.supervisor import PlayerSupervisor, SupervisorState
from jukebox.player.control import ControlServer, PlayerControl, start_player, zap

__all__ = [
    "EndReason",
    "PlaybackSession",
    "PlayerSupervisor",
    "SupervisorState",
    "ControlServer",
    "PlayerControl",
    "start_player",
    "zap",
]
