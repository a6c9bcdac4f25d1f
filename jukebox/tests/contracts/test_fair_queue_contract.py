"""
Contract tests for voter-fair queue building.

Covers:
- Round-robin interleaving across voters in VoterOrder
- Per-voter priority order
- New voters appended to the persisted order, never removed
- A song with several supporters appears once
- Random-pick sentinel when nothing is voted
"""

import pytest

from jukebox.models import RANDOM_PICK
from jukebox.music_logic.fair_queue import VoterOrder, build_playlist
from jukebox.music_logic.playlist import Playlist
from jukebox.tests.contracts.test_doubles import make_song, make_vote


def song_ids(playlist):
    return [entry.song.song_id for entry in playlist]


@pytest.fixture
def songs():
    return {i: make_song(i) for i in range(1, 10)}


class TestRoundRobin:
    """Voters take turns; each voter's songs come in their own priority order."""

    def test_two_voters_interleave(self, songs):
        votes = [
            make_vote(1, "alice", 1, timestamp=1.0),
            make_vote(2, "alice", 2, timestamp=2.0),
            make_vote(3, "bob", 1, timestamp=3.0),
        ]
        playlist, order = build_playlist(votes, songs, ["alice", "bob"])

        assert song_ids(playlist) == [1, 3, 2]
        assert order == ["alice", "bob"]

    def test_voter_order_decides_who_goes_first(self, songs):
        votes = [
            make_vote(1, "alice", 1, timestamp=1.0),
            make_vote(3, "bob", 1, timestamp=2.0),
        ]
        playlist, _ = build_playlist(votes, songs, ["bob", "alice"])

        assert song_ids(playlist) == [3, 1]

    def test_priority_not_timestamp_orders_a_voters_songs(self, songs):
        votes = [
            make_vote(4, "alice", 2, timestamp=1.0),
            make_vote(5, "alice", 1, timestamp=2.0),
        ]
        playlist, _ = build_playlist(votes, songs, ["alice"])

        assert song_ids(playlist) == [5, 4]

    def test_exhausted_voter_drops_out_of_round_but_stays_in_order(self, songs):
        votes = [
            make_vote(1, "alice", 1),
            make_vote(2, "bob", 1),
            make_vote(3, "bob", 2),
            make_vote(4, "bob", 3),
        ]
        playlist, order = build_playlist(votes, songs, ["alice", "bob", "carol"])

        assert song_ids(playlist) == [1, 2, 3, 4]
        assert order == ["alice", "bob", "carol"]

    def test_entry_priority_is_assigning_voters_priority(self, songs):
        votes = [make_vote(1, "alice", 3), make_vote(2, "bob", 7)]
        playlist, _ = build_playlist(votes, songs, ["alice", "bob"])

        assert [entry.priority for entry in playlist] == [3, 7]


class TestNewVoters:
    """Voters seen for the first time are appended in order of their first vote."""

    def test_new_voter_appended_after_known_voters(self, songs):
        votes = [
            make_vote(1, "zed", 1, timestamp=1.0),
            make_vote(2, "alice", 1, timestamp=5.0),
        ]
        playlist, order = build_playlist(votes, songs, ["alice"])

        assert order == ["alice", "zed"]
        assert song_ids(playlist) == [2, 1]

    def test_new_voters_ordered_by_earliest_vote(self, songs):
        votes = [
            make_vote(1, "late", 1, timestamp=9.0),
            make_vote(2, "early", 1, timestamp=1.0),
        ]
        _, order = build_playlist(votes, songs, [])

        assert order == ["early", "late"]

    def test_voter_order_never_shrinks(self, songs):
        _, order = build_playlist([], songs, ["alice", "bob"])

        assert order == ["alice", "bob"]


class TestSharedSongs:
    """A song voted by several voters plays once, carrying all supporters."""

    def test_song_with_two_supporters_appears_once(self, songs):
        votes = [
            make_vote(1, "alice", 1),
            make_vote(1, "bob", 1),
            make_vote(2, "bob", 2),
        ]
        playlist, _ = build_playlist(votes, songs, ["alice", "bob"])

        assert song_ids(playlist) == [1, 2]
        assert playlist[0].contributing_voters == frozenset({"alice", "bob"})
        assert playlist[1].contributing_voters == frozenset({"bob"})

    def test_votes_for_unknown_songs_are_ignored(self, songs):
        votes = [make_vote(99, "alice", 1), make_vote(1, "alice", 2)]
        playlist, _ = build_playlist(votes, songs, [])

        assert song_ids(playlist) == [1]


class TestRandomPick:
    def test_no_votes_yields_random_sentinel(self, songs):
        playlist, _ = build_playlist([], songs, ["alice"])

        assert playlist == [RANDOM_PICK]
        assert playlist[0].is_random


class TestVoterOrder:
    def test_extend_reports_only_new_voters(self):
        order = VoterOrder(["a", "b"])

        assert order.extend(["b", "c"]) == ["c"]
        assert order == ["a", "b", "c"]

    def test_move_to_back_keeps_relative_order(self):
        order = VoterOrder(["a", "b", "c", "d"])
        order.move_to_back(["c", "a"])

        assert order == ["b", "d", "a", "c"]


class TestPlaylistService:
    """Playlist binds the builder to the store and persists the voter order."""

    def test_build_persists_new_voters(self, store):
        first = store.add_song("/music/one.mp3", artist="A", title="One")
        second = store.add_song("/music/two.mp3", artist="A", title="Two")
        store.vote(first.song_id, "alice", "test", timestamp=1.0)
        store.vote(second.song_id, "bob", "test", timestamp=2.0)

        playlist = Playlist(store, "test")
        entries = playlist.build()

        assert song_ids(entries) == [first.song_id, second.song_id]
        assert store.load_voter_order("test") == ["alice", "bob"]

    def test_mark_served_rotates_supporters_to_back(self, store):
        store.save_voter_order("test", ["alice", "bob", "carol"])
        playlist = Playlist(store, "test")

        playlist.mark_served(["alice"])

        assert store.load_voter_order("test") == ["bob", "carol", "alice"]

    def test_empty_store_gives_random_pick(self, store):
        assert Playlist(store, "test").build() == [RANDOM_PICK]

    def test_preview_leaves_voter_order_untouched(self, store):
        first = store.add_song("/music/one.mp3", artist="A", title="One")
        second = store.add_song("/music/two.mp3", artist="A", title="Two")
        store.vote(first.song_id, "alice", "test", timestamp=1.0)
        store.vote(second.song_id, "bob", "test", timestamp=2.0)

        entries = Playlist(store, "test").preview()

        assert song_ids(entries) == [first.song_id, second.song_id]
        assert store.load_voter_order("test") == []
