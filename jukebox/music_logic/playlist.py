"""
Playlist service: binds the fair queue builder to the store.

Each build re-reads a fresh snapshot of the active votes, so it is safe to
call while voters keep voting; it sees a recent state, not every one.
"""

import logging
import threading
from typing import Iterable, List

from jukebox.models import PlaylistEntry
from jukebox.music_logic.fair_queue import VoterOrder, build_playlist
from jukebox.state.store import JukeboxStore

logger = logging.getLogger(__name__)


class Playlist:
    """Voter-fair playlist for one player."""

    def __init__(self, store: JukeboxStore, player_id: str):
        self._store = store
        self.player_id = player_id
        self._lock = threading.Lock()

    def voter_order(self) -> VoterOrder:
        return VoterOrder(self._store.load_voter_order(self.player_id))

    def build(self) -> List[PlaylistEntry]:
        """
        Build the current play order and persist the updated voter order.

        Returns:
            Ordered entries; [RANDOM_PICK] when nobody has voted
        """
        with self._lock:
            votes = self._store.list_active_votes(self.player_id)
            songs = self._store.get_songs(v.song_id for v in votes)
            previous = self._store.load_voter_order(self.player_id)

            entries, order = build_playlist(votes, songs, previous)

            if order.as_list() != previous:
                self._store.save_voter_order(self.player_id, order)

        logger.debug(f"[QUEUE] Built playlist for {self.player_id}: {len(entries)} entries")
        return entries

    def preview(self) -> List[PlaylistEntry]:
        """The play order build() would return, without persisting anything."""
        votes = self._store.list_active_votes(self.player_id)
        songs = self._store.get_songs(v.song_id for v in votes)
        entries, _ = build_playlist(votes, songs, self._store.load_voter_order(self.player_id))
        return entries

    def mark_served(self, voters: Iterable[str]) -> None:
        """Rotate voters whose song was just played behind everyone else."""
        voters = list(voters)
        if not voters:
            return
        with self._lock:
            order = VoterOrder(self._store.load_voter_order(self.player_id))
            order.move_to_back(voters)
            self._store.save_voter_order(self.player_id, order)
