"""
Shared data types for the jukebox.

Songs and votes come out of the store; playlist entries come out of the
fair queue builder; runtime state is owned by the player supervisor.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional


@dataclass(frozen=True)
class Song:
    """
    A playable song.

    Immutable once created except for ``online``, which the store updates
    in place; use ``dataclasses.replace`` to get a copy with a new value.
    """
    song_id: int
    path: str
    artist: str = ""
    album: str = ""
    title: str = ""
    length: int = 0  # seconds
    track: int = 0
    online: bool = True

    @property
    def display_name(self) -> str:
        """Human readable name written to play history."""
        return f"{self.artist} - {self.title}"


@dataclass(frozen=True)
class Vote:
    """One voter's vote for one song on one player."""
    song_id: int
    voter_id: str
    player_id: str
    timestamp: float
    priority: int


@dataclass(frozen=True)
class PlaylistEntry:
    """
    A song plus its aggregated voter support.

    ``song`` is None only for the random-pick sentinel, emitted when no
    votes are active. Selecting the actual random song is the caller's job.
    """
    song: Optional[Song]
    contributing_voters: FrozenSet[str] = field(default_factory=frozenset)
    priority: int = 0

    @property
    def is_random(self) -> bool:
        return self.song is None


RANDOM_PICK = PlaylistEntry(song=None)


@dataclass
class PlayerRuntimeState:
    """
    Live state of one player instance.

    ``local_process_id`` and ``instance_id`` are written only by the
    supervisor that owns the row. At most one row exists per ``player_id``.
    """
    player_id: str
    local_process_id: int
    volume: int
    instance_id: str = ""
    control_path: Optional[str] = None
    current_song_id: Optional[int] = None
    song_start_time: Optional[float] = None


@dataclass(frozen=True)
class HistoryRecord:
    song_id: int
    voter: str
    timestamp: float
    display_name: str
    player_id: str = ""
