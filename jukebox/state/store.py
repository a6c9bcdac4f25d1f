"""
SQLite storage for the jukebox.

Holds the song library, votes, play history, per-player runtime state and
the persisted voter turn order. One connection is shared by all threads of
a process and guarded by a lock; other processes (voters, control clients)
open their own connection to the same file and rely on SQLite transactions
and the vote uniqueness constraint.

Every sqlite3 error is re-raised as StorageFailure.
"""

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from jukebox.errors import InvalidArgument, StorageFailure
from jukebox.models import HistoryRecord, PlayerRuntimeState, Song, Vote

logger = logging.getLogger(__name__)

CURRENT_DB_VERSION = 1

SCHEMA_V1_SQL = """
CREATE TABLE IF NOT EXISTS songs (
    song_id INTEGER PRIMARY KEY,
    path TEXT NOT NULL UNIQUE,
    artist TEXT NOT NULL DEFAULT '',
    album TEXT NOT NULL DEFAULT '',
    title TEXT NOT NULL DEFAULT '',
    length INTEGER NOT NULL DEFAULT 0,
    track INTEGER NOT NULL DEFAULT 0,
    online BOOLEAN NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS votes (
    song_id INTEGER NOT NULL,
    who TEXT NOT NULL,
    player_id TEXT NOT NULL,
    time REAL NOT NULL,
    priority INTEGER NOT NULL,
    UNIQUE (song_id, who, player_id),
    FOREIGN KEY(song_id) REFERENCES songs(song_id)
);
CREATE TABLE IF NOT EXISTS history (
    song_id INTEGER NOT NULL,
    who TEXT NOT NULL DEFAULT '',
    time REAL NOT NULL,
    pretty_name TEXT NOT NULL,
    player_id TEXT NOT NULL DEFAULT ''
);
CREATE TABLE IF NOT EXISTS players (
    player_id TEXT PRIMARY KEY,
    local_id INTEGER NOT NULL,
    instance_id TEXT NOT NULL DEFAULT '',
    control_path TEXT,
    volume INTEGER NOT NULL,
    song_id INTEGER,
    song_start REAL
);
CREATE TABLE IF NOT EXISTS voter_order (
    player_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    who TEXT NOT NULL,
    PRIMARY KEY (player_id, position)
);
CREATE INDEX IF NOT EXISTS idx_votes_player ON votes(player_id);
CREATE INDEX IF NOT EXISTS idx_history_player_time ON history(player_id, time);
"""

SONG_COLUMNS = "song_id, path, artist, album, title, length, track, online"


def _song_from_row(row: sqlite3.Row) -> Song:
    return Song(
        song_id=row["song_id"],
        path=row["path"],
        artist=row["artist"],
        album=row["album"],
        title=row["title"],
        length=row["length"],
        track=row["track"],
        online=bool(row["online"]),
    )


class JukeboxStore:
    """
    Query interface over the jukebox database.

    Thread-safe within one process. Open with ":memory:" for tests.
    """

    def __init__(self, path: str):
        """
        Open (and migrate if needed) the database.

        Args:
            path: SQLite file path, or ":memory:"

        Raises:
            StorageFailure: If the database cannot be opened or migrated
        """
        self.path = path
        self._lock = threading.RLock()

        if path != ":memory:":
            db_dir = os.path.dirname(os.path.abspath(path))
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                raise StorageFailure(f"Could not create database directory {db_dir}: {e}") from e

        try:
            # Autocommit mode; write paths open explicit transactions
            self._db = sqlite3.connect(path, check_same_thread=False, timeout=10.0, isolation_level=None)
            self._db.row_factory = sqlite3.Row
            self._upgrade_if_needed()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not open database {path}: {e}") from e

        logger.debug(f"[STORE] Opened {path}")

    def _upgrade_if_needed(self) -> None:
        existing_version = self._db.execute("PRAGMA user_version").fetchone()[0]
        if existing_version < CURRENT_DB_VERSION:
            logger.info(f"[STORE] Migrating database {self.path} to version {CURRENT_DB_VERSION}")
            if self.path != ":memory:":
                self._db.execute("PRAGMA journal_mode=WAL")
            self._db.executescript(SCHEMA_V1_SQL)
            self._db.execute(f"PRAGMA user_version={CURRENT_DB_VERSION}")

    def close(self) -> None:
        with self._lock:
            try:
                self._db.close()
            except sqlite3.Error as e:
                logger.warning(f"[STORE] Error closing database: {e}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a write inside BEGIN IMMEDIATE ... COMMIT."""
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e
            try:
                yield self._db
            except sqlite3.Error as e:
                self._db.execute("ROLLBACK")
                raise StorageFailure(str(e)) from e
            except BaseException:
                self._db.execute("ROLLBACK")
                raise
            else:
                try:
                    self._db.execute("COMMIT")
                except sqlite3.Error as e:
                    raise StorageFailure(str(e)) from e

    def _query(self, sql: str, params: Iterable = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._db.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e

    # ---- library ----

    def add_song(
        self,
        path: str,
        artist: str = "",
        album: str = "",
        title: str = "",
        length: int = 0,
        track: int = 0,
        online: bool = True,
    ) -> Song:
        """
        Add a song to the library.

        Raises:
            InvalidArgument: If a song with this path already exists
        """
        with self._transaction() as db:
            try:
                cursor = db.execute(
                    "INSERT INTO songs (path, artist, album, title, length, track, online) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (path, artist, album, title, int(length), int(track), int(bool(online))),
                )
            except sqlite3.IntegrityError as e:
                raise InvalidArgument(f"Song already exists: {path}") from e
            song_id = cursor.lastrowid
        logger.debug(f"[STORE] Added song {song_id}: {path}")
        return Song(song_id, path, artist, album, title, int(length), int(track), bool(online))

    def update_song(self, path: str, **fields) -> None:
        """Update metadata of the song stored at ``path``."""
        allowed = {"artist", "album", "title", "length", "track"}
        unknown = set(fields) - allowed
        if unknown:
            raise InvalidArgument(f"Unknown song fields: {sorted(unknown)}")
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in sorted(fields))
        values = [fields[name] for name in sorted(fields)]
        with self._transaction() as db:
            db.execute(f"UPDATE songs SET {assignments} WHERE path = ?", (*values, path))

    def song_exists(self, path: str) -> bool:
        rows = self._query("SELECT count(*) FROM songs WHERE path = ?", (path,))
        return rows[0][0] > 0

    def delete_song(self, song_id: int) -> None:
        with self._transaction() as db:
            db.execute("DELETE FROM votes WHERE song_id = ?", (song_id,))
            db.execute("DELETE FROM songs WHERE song_id = ?", (song_id,))

    def set_song_online(self, song_id: int, online: bool) -> None:
        with self._transaction() as db:
            db.execute("UPDATE songs SET online = ? WHERE song_id = ?", (int(bool(online)), song_id))

    def get_song(self, song_id: int) -> Optional[Song]:
        rows = self._query(f"SELECT {SONG_COLUMNS} FROM songs WHERE song_id = ?", (song_id,))
        return _song_from_row(rows[0]) if rows else None

    def get_songs(self, song_ids: Iterable[int]) -> Dict[int, Song]:
        ids = sorted(set(song_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self._query(f"SELECT {SONG_COLUMNS} FROM songs WHERE song_id IN ({placeholders})", ids)
        return {row["song_id"]: _song_from_row(row) for row in rows}

    def get_library(self) -> List[Song]:
        rows = self._query(f"SELECT {SONG_COLUMNS} FROM songs ORDER BY artist, album, track ASC")
        return [_song_from_row(row) for row in rows]

    def find_playable_song(self, online: bool = True) -> Optional[Song]:
        """Pick one song at random among those with the given online flag."""
        rows = self._query(
            f"SELECT {SONG_COLUMNS} FROM songs WHERE online = ? ORDER BY RANDOM() LIMIT 1",
            (int(bool(online)),),
        )
        return _song_from_row(rows[0]) if rows else None

    # ---- votes ----

    def vote(self, song_id: int, voter_id: str, player_id: str, timestamp: Optional[float] = None) -> bool:
        """
        Record a vote.

        The vote's priority is one past the voter's highest priority on this
        player. Voting twice for the same song is a no-op.

        Returns:
            True if a new vote was recorded, False for a repeat vote

        Raises:
            InvalidArgument: If the voter is blank or the song does not exist
        """
        if not voter_id:
            raise InvalidArgument("Voter id cannot be blank")
        when = time.time() if timestamp is None else timestamp
        with self._transaction() as db:
            if db.execute("SELECT 1 FROM songs WHERE song_id = ?", (song_id,)).fetchone() is None:
                raise InvalidArgument(f"No such song: {song_id}")
            existing = db.execute(
                "SELECT 1 FROM votes WHERE song_id = ? AND who = ? AND player_id = ?",
                (song_id, voter_id, player_id),
            ).fetchone()
            if existing is not None:
                return False
            priority = db.execute(
                "SELECT COALESCE(MAX(priority), 0) + 1 FROM votes WHERE who = ? AND player_id = ?",
                (voter_id, player_id),
            ).fetchone()[0]
            db.execute(
                "INSERT INTO votes (song_id, who, player_id, time, priority) VALUES (?, ?, ?, ?, ?)",
                (song_id, voter_id, player_id, when, priority),
            )
        logger.debug(f"[STORE] Vote: song={song_id} voter={voter_id} player={player_id} priority={priority}")
        return True

    def unvote(self, song_id: int, voter_id: str, player_id: str) -> None:
        with self._transaction() as db:
            db.execute(
                "DELETE FROM votes WHERE song_id = ? AND who = ? AND player_id = ?",
                (song_id, voter_id, player_id),
            )

    def list_active_votes(self, player_id: str) -> List[Vote]:
        rows = self._query(
            "SELECT song_id, who, player_id, time, priority FROM votes "
            "WHERE player_id = ? ORDER BY time, rowid",
            (player_id,),
        )
        return [
            Vote(
                song_id=row["song_id"],
                voter_id=row["who"],
                player_id=row["player_id"],
                timestamp=row["time"],
                priority=row["priority"],
            )
            for row in rows
        ]

    def clear_votes(self, song_id: int, player_id: Optional[str] = None) -> None:
        """Delete the votes for a song, on one player or on all of them."""
        with self._transaction() as db:
            if player_id is None:
                db.execute("DELETE FROM votes WHERE song_id = ?", (song_id,))
            else:
                db.execute("DELETE FROM votes WHERE song_id = ? AND player_id = ?", (song_id, player_id))

    # ---- history ----

    def append_history(self, song_id: int, voter: str, timestamp: float, display_name: str, player_id: str = "") -> None:
        with self._transaction() as db:
            db.execute(
                "INSERT INTO history (song_id, who, time, pretty_name, player_id) VALUES (?, ?, ?, ?, ?)",
                (song_id, voter, timestamp, display_name, player_id),
            )

    def list_history(self, player_id: Optional[str] = None, limit: int = 20) -> List[HistoryRecord]:
        """Most recent history first."""
        if player_id is None:
            rows = self._query(
                "SELECT song_id, who, time, pretty_name, player_id FROM history "
                "ORDER BY time DESC, rowid DESC LIMIT ?",
                (limit,),
            )
        else:
            rows = self._query(
                "SELECT song_id, who, time, pretty_name, player_id FROM history "
                "WHERE player_id = ? ORDER BY time DESC, rowid DESC LIMIT ?",
                (player_id, limit),
            )
        return [
            HistoryRecord(row["song_id"], row["who"], row["time"], row["pretty_name"], row["player_id"])
            for row in rows
        ]

    # ---- player runtime state ----

    def get_player_runtime_state(self, player_id: str) -> Optional[PlayerRuntimeState]:
        rows = self._query(
            "SELECT player_id, local_id, instance_id, control_path, volume, song_id, song_start "
            "FROM players WHERE player_id = ?",
            (player_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return PlayerRuntimeState(
            player_id=row["player_id"],
            local_process_id=row["local_id"],
            volume=row["volume"],
            instance_id=row["instance_id"],
            control_path=row["control_path"],
            current_song_id=row["song_id"],
            song_start_time=row["song_start"],
        )

    def upsert_player_runtime_state(self, state: PlayerRuntimeState) -> None:
        with self._transaction() as db:
            db.execute(
                "INSERT OR REPLACE INTO players "
                "(player_id, local_id, instance_id, control_path, volume, song_id, song_start) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    state.player_id,
                    state.local_process_id,
                    state.instance_id,
                    state.control_path,
                    state.volume,
                    state.current_song_id,
                    state.song_start_time,
                ),
            )

    def update_player_runtime_state(self, player_id: str, instance_id: Optional[str] = None, **fields) -> bool:
        """
        Update selected runtime fields of a player row.

        If ``instance_id`` is given, only a row still owned by that instance
        is touched.

        Returns:
            True if a row was updated
        """
        columns = {
            "volume": "volume",
            "current_song_id": "song_id",
            "song_start_time": "song_start",
        }
        unknown = set(fields) - set(columns)
        if unknown:
            raise InvalidArgument(f"Unknown runtime state fields: {sorted(unknown)}")
        if not fields:
            return False
        names = sorted(fields)
        assignments = ", ".join(f"{columns[name]} = ?" for name in names)
        values = [fields[name] for name in names]
        sql = f"UPDATE players SET {assignments} WHERE player_id = ?"
        params = [*values, player_id]
        if instance_id is not None:
            sql += " AND instance_id = ?"
            params.append(instance_id)
        with self._transaction() as db:
            cursor = db.execute(sql, params)
            return cursor.rowcount > 0

    def delete_player_runtime_state(self, player_id: str, instance_id: Optional[str] = None) -> bool:
        """
        Delete a player's runtime row.

        If ``instance_id`` is given, only a row still owned by that instance
        is deleted.

        Returns:
            True if a row was deleted
        """
        with self._transaction() as db:
            if instance_id is None:
                cursor = db.execute("DELETE FROM players WHERE player_id = ?", (player_id,))
            else:
                cursor = db.execute(
                    "DELETE FROM players WHERE player_id = ? AND instance_id = ?",
                    (player_id, instance_id),
                )
            return cursor.rowcount > 0

    # ---- voter order ----

    def load_voter_order(self, player_id: str) -> List[str]:
        rows = self._query(
            "SELECT who FROM voter_order WHERE player_id = ? ORDER BY position",
            (player_id,),
        )
        return [row["who"] for row in rows]

    def save_voter_order(self, player_id: str, voters: Iterable[str]) -> None:
        with self._transaction() as db:
            db.execute("DELETE FROM voter_order WHERE player_id = ?", (player_id,))
            db.executemany(
                "INSERT INTO voter_order (player_id, position, who) VALUES (?, ?, ?)",
                [(player_id, position, who) for position, who in enumerate(voters)],
            )
