"""
Playback session: the bookkeeping around one played song.

A session is started once and ended once. What ending does depends on why
the song ended:

- complete / skip: the song counts as played; its votes are cleared, a
  history row is written and its supporters' turn is served
- stop: the song did not finish and stays queued for the next start
- crash: the player died under it; votes stay so it is retried, and no
  history row is written

Storage and hook failures are logged and swallowed here: a missed history
write must never stop the next song from playing.
"""

import enum
import logging
import time
from typing import Callable, FrozenSet, Iterable, Optional

from jukebox.errors import JukeboxError
from jukebox.hooks import HookRegistry
from jukebox.models import Song
from jukebox.music_logic.playlist import Playlist
from jukebox.state.store import JukeboxStore

logger = logging.getLogger(__name__)

COMPONENT = "player"


class EndReason(enum.Enum):
    COMPLETE = "complete"
    SKIP = "skip"
    STOP = "stop"
    CRASH = "crash"

    @property
    def counts_as_played(self) -> bool:
        return self in (EndReason.COMPLETE, EndReason.SKIP)


class PlaybackSession:
    """One playback attempt for one song."""

    def __init__(
        self,
        store: JukeboxStore,
        hooks: HookRegistry,
        player_id: str,
        instance_id: Optional[str] = None,
        playlist: Optional[Playlist] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._hooks = hooks
        self._playlist = playlist
        self._clock = clock
        self.player_id = player_id
        self.instance_id = instance_id

        self.song: Optional[Song] = None
        self.voters: FrozenSet[str] = frozenset()
        self.song_start_time: Optional[float] = None
        self.end_reason: Optional[EndReason] = None

    @property
    def started(self) -> bool:
        return self.song is not None

    @property
    def ended(self) -> bool:
        return self.end_reason is not None

    def start(self, song: Song, voters: Iterable[str] = ()) -> None:
        """
        Mark the song as playing.

        Args:
            song: Song handed to the playback process
            voters: Voters who queued it (empty for a random pick)
        """
        if self.started:
            logger.warning(f"[PLAYER] Session already started for song {self.song.song_id}, ignoring start({song.song_id})")
            return

        self.song = song
        self.voters = frozenset(voters)
        self.song_start_time = self._clock()

        self._fire("song_start")

        try:
            self._store.update_player_runtime_state(
                self.player_id,
                instance_id=self.instance_id,
                current_song_id=song.song_id,
                song_start_time=self.song_start_time,
            )
        except JukeboxError as e:
            logger.error(f"[PLAYER] Could not record current song {song.song_id}: {e}")

        logger.info(f"[PLAYER] Now playing: {song.display_name} ({song.path})")

    def end(self, reason: EndReason) -> None:
        """
        Finish the session. Only the first call has any effect.

        Args:
            reason: Why the song stopped playing
        """
        if not self.started:
            logger.warning(f"[PLAYER] end({reason.value}) on a session that never started")
            return
        if self.ended:
            logger.warning(
                f"[PLAYER] Session for song {self.song.song_id} already ended "
                f"({self.end_reason.value}), ignoring end({reason.value})"
            )
            return

        self.end_reason = reason
        song = self.song
        logger.info(f"[PLAYER] Song ended ({reason.value}): {song.display_name}")

        if reason.counts_as_played:
            try:
                self._store.clear_votes(song.song_id, player_id=self.player_id)
            except JukeboxError as e:
                logger.error(f"[PLAYER] Could not clear votes for song {song.song_id}: {e}")

            try:
                self._store.append_history(
                    song.song_id, "", self._clock(), song.display_name, player_id=self.player_id
                )
            except JukeboxError as e:
                logger.error(f"[PLAYER] Could not append history for song {song.song_id}: {e}")

            if self._playlist is not None and self.voters:
                try:
                    self._playlist.mark_served(sorted(self.voters))
                except JukeboxError as e:
                    logger.error(f"[PLAYER] Could not rotate voter order: {e}")
        elif reason is EndReason.CRASH:
            logger.warning(f"[PLAYER] Player crashed during {song.display_name}; song stays queued")

        try:
            self._store.update_player_runtime_state(
                self.player_id,
                instance_id=self.instance_id,
                current_song_id=None,
                song_start_time=None,
            )
        except JukeboxError as e:
            logger.error(f"[PLAYER] Could not clear current song: {e}")

        self._fire("song_stop", reason=reason.value)

    def _fire(self, event: str, **extra) -> None:
        params = {
            "player_id": self.player_id,
            "song_id": self.song.song_id,
            "path": self.song.path,
            "display_name": self.song.display_name,
            "voters": sorted(self.voters),
            "song_start": self.song_start_time,
        }
        params.update(extra)
        outcome = self._hooks.fire_event(COMPONENT, event, params)
        if outcome.stopped:
            logger.debug(f"[PLAYER] {COMPONENT}.{event} handlers short-circuited")
