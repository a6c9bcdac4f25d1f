"""
Voter-fair queue building for the jukebox.

Turns the current vote set into a single play order by round-robin
interleaving across voters:

- Each voter's songs are taken in the order that voter queued them
  (their per-voter priority)
- Voters take turns in VoterOrder; a voter whose songs are exhausted drops
  out of the current round but keeps their place for the next rebuild
- A song supported by several voters plays once, at the earliest turn
  that reaches it
- With no votes at all, a single random-pick sentinel is returned
"""

import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from jukebox.models import PlaylistEntry, RANDOM_PICK, Song, Vote

logger = logging.getLogger(__name__)


class VoterOrder:
    """
    Persistent round-robin turn order across voters.

    Voters are appended when first seen and never removed. Voters with no
    pending votes are skipped by the builder, not dropped from the order.
    """

    def __init__(self, voters: Iterable[str] = ()):
        self._voters: List[str] = []
        self.extend(voters)

    def __iter__(self):
        return iter(self._voters)

    def __len__(self) -> int:
        return len(self._voters)

    def __contains__(self, voter: object) -> bool:
        return voter in self._voters

    def __eq__(self, other: object) -> bool:
        if isinstance(other, VoterOrder):
            return self._voters == other._voters
        if isinstance(other, list):
            return self._voters == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"VoterOrder({self._voters!r})"

    def as_list(self) -> List[str]:
        return list(self._voters)

    def extend(self, voters: Iterable[str]) -> List[str]:
        """
        Append voters not yet present, preserving the given order.

        Returns:
            The voters that were newly appended
        """
        added = []
        for voter in voters:
            if voter not in self._voters:
                self._voters.append(voter)
                added.append(voter)
        return added

    def move_to_back(self, voters: Iterable[str]) -> None:
        """
        Move the given voters behind everyone else, keeping their relative order.

        Used once a voter's song has been served so the next voter leads.
        Unknown voters are appended.
        """
        served = set(voters)
        if not served:
            return
        kept = [v for v in self._voters if v not in served]
        moved = [v for v in self._voters if v in served]
        moved.extend(v for v in voters if v not in self._voters and v not in moved)
        self._voters = kept + moved


def _discovery_order(votes: Sequence[Vote]) -> List[str]:
    """Voters ordered by their earliest vote, ties broken by first appearance."""
    first_seen: Dict[str, Tuple[float, int]] = {}
    for index, vote in enumerate(votes):
        seen = first_seen.get(vote.voter_id)
        if seen is None or vote.timestamp < seen[0]:
            first_seen[vote.voter_id] = (vote.timestamp, seen[1] if seen else index)
    return sorted(first_seen, key=lambda voter: first_seen[voter])


def build_playlist(
    votes: Iterable[Vote],
    songs: Mapping[int, Song],
    voter_order: Iterable[str],
) -> Tuple[List[PlaylistEntry], VoterOrder]:
    """
    Build the voter-fair play order.

    Args:
        votes: Snapshot of all active votes
        songs: Songs referenced by the votes, keyed by song_id
        voter_order: Current persisted turn order

    Returns:
        Tuple of:
        - playlist: Ordered PlaylistEntry list, or [RANDOM_PICK] when empty
        - voter_order: Updated VoterOrder with newly seen voters appended
    """
    votes = list(votes)
    unknown = sorted({v.song_id for v in votes if v.song_id not in songs})
    if unknown:
        logger.debug(f"[QUEUE] Ignoring votes for unknown songs: {unknown}")
        votes = [v for v in votes if v.song_id in songs]
    order = VoterOrder(voter_order)
    added = order.extend(_discovery_order(votes))
    if added:
        logger.debug(f"[QUEUE] New voters appended to turn order: {added}")

    # song_id -> every voter supporting it
    supporters: Dict[int, Set[str]] = {}
    # voter -> [(priority, song_id)] ascending
    pending: Dict[str, List[Tuple[int, int]]] = {}
    for vote in votes:
        supporters.setdefault(vote.song_id, set()).add(vote.voter_id)
        pending.setdefault(vote.voter_id, []).append((vote.priority, vote.song_id))
    for voter_songs in pending.values():
        voter_songs.sort()

    playlist: List[PlaylistEntry] = []
    assigned: Set[int] = set()
    rotation: Deque[str] = deque(order)

    while rotation:
        voter = rotation.popleft()
        voter_songs = pending.get(voter, [])

        # Drop songs another voter's turn already placed
        while voter_songs and voter_songs[0][1] in assigned:
            voter_songs.pop(0)

        if not voter_songs:
            # Out of this round only; stays in the persisted order
            continue

        priority, song_id = voter_songs.pop(0)
        assigned.add(song_id)
        playlist.append(PlaylistEntry(
            song=songs[song_id],
            contributing_voters=frozenset(supporters[song_id]),
            priority=priority,
        ))
        rotation.append(voter)

    if not playlist:
        logger.debug("[QUEUE] No active votes, falling back to random pick")
        return [RANDOM_PICK], order

    return playlist, order
