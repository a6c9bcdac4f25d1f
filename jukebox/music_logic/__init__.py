"""
Voter-fair queue logic.

Pure round-robin playlist building plus the Playlist service that binds it
to the store and the persisted voter turn order.
"""

from jukebox.music_logic.fair_queue import VoterOrder, build_playlist
from jukebox.music_logic.playlist import Playlist

__all__ = ["VoterOrder", "build_playlist", "Playlist"]
