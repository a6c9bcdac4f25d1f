"""
Persistent jukebox state: library, votes, history and player runtime rows.
"""

from jukebox.state.store import JukeboxStore

__all__ = ["JukeboxStore"]
