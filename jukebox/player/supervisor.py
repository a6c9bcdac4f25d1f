"""
Player supervisor for the jukebox.

Owns the external playback process for one player id. A single control
loop thread picks the next song from the voter-fair playlist, spawns the
player for it, and then blocks on one inbox that receives both the child's
stdout events and control requests (skip, stop, pause, volume). Whoever
ends a song, the loop waits for the child's EOF, reaps the process and only
then ends the PlaybackSession, so every started song is ended exactly once.

States:
    STOPPED -> STARTING -> PLAYING <-> PAUSED -> STOPPING -> STOPPED
    any state -> CRASHED -> STARTING (automatic restart), except while
    an operator-requested stop is in progress

Policy knobs (all from JukeboxConfig):
- quit_timeout_sec: grace period after "quit" before the child is killed
- crash_loop_threshold / crash_loop_window_sec: consecutive unexpected
  exits that make the supervisor give up with CrashLoop
- idle_poll_sec: how long to wait before re-reading an empty library
- random_pick_attempts: random draws tried when no voted song is playable
"""

import enum
import logging
import os
import queue
import threading
import time
import uuid
from collections import deque
from typing import Callable, Deque, FrozenSet, Optional, Tuple
from urllib.parse import urlparse

from jukebox.config import JukeboxConfig
from jukebox.errors import (
    CrashLoop,
    InvalidArgument,
    JukeboxError,
    ProcessNotRunning,
    ResourceUnreachable,
    SignalDeliveryFailure,
)
from jukebox.hooks import HookRegistry
from jukebox.models import PlayerRuntimeState, Song
from jukebox.music_logic.playlist import Playlist
from jukebox.player.backend import PlayerBackend
from jukebox.player.process import MSG_EOF, MSG_OUTPUT, ChannelMessage, PlayerProcess
from jukebox.player.session import COMPONENT, EndReason, PlaybackSession
from jukebox.state.store import JukeboxStore

logger = logging.getLogger(__name__)

MSG_SKIP = "skip"
MSG_STOP = "stop"
MSG_PAUSE = "pause"
MSG_VOLUME = "volume"

# How often a quiet event channel is checked against the child's exit
EXIT_POLL_SEC = 0.5


class SupervisorState(enum.Enum):
    STOPPED = 1
    STARTING = 2
    PLAYING = 3
    PAUSED = 4
    STOPPING = 5
    CRASHED = 6


def parse_volume(value) -> int:
    """
    Validate a volume request.

    Accepts a non-negative int or a string of digits.

    Raises:
        InvalidArgument: For anything else
    """
    if isinstance(value, bool):
        raise InvalidArgument(f"volume must be a number, not something like {value!r}")
    if isinstance(value, int):
        volume = value
    elif isinstance(value, str) and value.strip().isdigit():
        volume = int(value.strip())
    else:
        raise InvalidArgument(f"volume must be a number, not something like {value!r}")
    if volume < 0:
        raise InvalidArgument(f"volume must be non-negative, got {volume}")
    return volume


def resource_reachable(song: Song) -> bool:
    """A song is playable if it is online and, for local paths, the file exists."""
    if not song.online:
        return False
    parsed = urlparse(song.path)
    if parsed.scheme and parsed.scheme != "file" and len(parsed.scheme) > 1:
        # Remote locator; the online flag is all we know
        return True
    local_path = parsed.path if parsed.scheme == "file" else song.path
    return os.path.exists(local_path)


class PlayerSupervisor:
    """
    Supervises the playback process for one player id.

    The control surface (skip, stop, pause, set_volume) is safe to call from
    any thread; requests are queued to the control loop and errors are
    raised synchronously to the caller.
    """

    def __init__(
        self,
        config: JukeboxConfig,
        store: JukeboxStore,
        hooks: Optional[HookRegistry] = None,
        backend: Optional[PlayerBackend] = None,
        playlist: Optional[Playlist] = None,
        session_factory: Optional[Callable[[], PlaybackSession]] = None,
        control_path: Optional[str] = None,
        on_state_change: Optional[Callable[[SupervisorState], None]] = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Jukebox configuration (player id and supervision policy)
            store: Storage for votes, history and runtime state
            hooks: Extension hook table (empty if None)
            backend: Playback program description (from config if None)
            playlist: Voter-fair playlist (built over store if None)
            session_factory: Creates one PlaybackSession per song
            control_path: Command channel socket path recorded in runtime state
            on_state_change: Optional callback invoked on every state change
        """
        self._config = config
        self._store = store
        self._hooks = hooks or HookRegistry()
        self._backend = backend or PlayerBackend.from_config(config)
        self._playlist = playlist or Playlist(store, config.player_id)
        self._session_factory = session_factory or self._default_session
        self._control_path = control_path
        self._on_state_change = on_state_change

        self.player_id = config.player_id
        self.instance_id = uuid.uuid4().hex

        self._state = SupervisorState.STOPPED
        self._state_lock = threading.Lock()

        self._inbox: "queue.Queue[ChannelMessage]" = queue.Queue()
        self._stop_event = threading.Event()
        self._loop_thread: Optional[threading.Thread] = None
        self._fatal_error: Optional[BaseException] = None

        # Child bookkeeping, guarded by _child_lock
        self._child_lock = threading.Lock()
        self._child: Optional[PlayerProcess] = None
        self._generation = 0
        self._current_song: Optional[Song] = None

        self._crash_times: Deque[float] = deque()
        self._invalidated = False

    def _default_session(self) -> PlaybackSession:
        return PlaybackSession(
            self._store,
            self._hooks,
            self.player_id,
            instance_id=self.instance_id,
            playlist=self._playlist,
        )

    # ---- lifecycle ----

    def start(self) -> None:
        """
        Register this instance and start the control loop thread.

        Any runtime state left for this player id by an earlier supervisor
        (possibly one that died without cleanup) is deleted first.

        Raises:
            RuntimeError: If the supervisor is already running
            StorageFailure: If the runtime state cannot be registered
        """
        with self._state_lock:
            if self._state != SupervisorState.STOPPED:
                raise RuntimeError(f"Cannot start supervisor in state: {self._state}")

        stale = self._store.get_player_runtime_state(self.player_id)
        if stale is not None:
            logger.warning(
                f"[PLAYER] Replacing runtime state of player {self.player_id} "
                f"left by pid={stale.local_process_id}"
            )
            self._store.delete_player_runtime_state(self.player_id)

        self._store.upsert_player_runtime_state(PlayerRuntimeState(
            player_id=self.player_id,
            local_process_id=os.getpid(),
            volume=self._config.default_volume,
            instance_id=self.instance_id,
            control_path=self._control_path,
        ))

        self._inbox = queue.Queue()
        self._stop_event.clear()
        self._fatal_error = None
        self._invalidated = False
        self._crash_times.clear()
        self._set_state(SupervisorState.STARTING)

        self._hooks.fire_event(COMPONENT, "start", {"player_id": self.player_id, "pid": os.getpid()})

        self._loop_thread = threading.Thread(
            target=self._control_loop,
            daemon=True,
            name=f"PlayerControlLoop-{self.player_id}",
        )
        self._loop_thread.start()
        logger.info(f"[PLAYER] Supervisor started for player {self.player_id} (pid={os.getpid()})")

    def join(self, timeout: Optional[float] = None) -> None:
        """
        Wait for the control loop to finish.

        Raises:
            CrashLoop: If the loop gave up on a crashing player
        """
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=timeout)
        if self._fatal_error is not None and not self.is_running:
            raise self._fatal_error

    def run_forever(self) -> None:
        """Block until the supervisor stops; re-raises a fatal loop error."""
        while self.is_running:
            self.join(timeout=0.5)
        self.join()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Request a stop (if running) and wait for the loop to exit."""
        if self.is_running:
            try:
                self.stop()
            except ProcessNotRunning:
                pass
        if self._loop_thread is not None:
            self._loop_thread.join(timeout=timeout)
            if self._loop_thread.is_alive():
                logger.warning("[PLAYER] Control loop did not stop within timeout")

    @property
    def is_running(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    @property
    def current_song(self) -> Optional[Song]:
        with self._child_lock:
            return self._current_song

    @property
    def child_pid(self) -> Optional[int]:
        with self._child_lock:
            return self._child.pid if self._child is not None else None

    def get_state(self) -> SupervisorState:
        with self._state_lock:
            return self._state

    def _set_state(self, new_state: SupervisorState) -> None:
        with self._state_lock:
            old_state = self._state
            self._state = new_state

        # Notify outside lock
        if old_state != new_state:
            logger.debug(f"[PLAYER] Supervisor state: {old_state.name} -> {new_state.name}")
            if self._on_state_change:
                self._on_state_change(new_state)

    # ---- control surface ----

    def _live_child_generation(self) -> int:
        with self._child_lock:
            if self._child is None or not self._child.is_alive():
                raise ProcessNotRunning(f"Player {self.player_id} has no live playback process")
            return self._generation

    def skip(self) -> None:
        """
        End the current song early; it counts as played.

        Raises:
            ProcessNotRunning: If no playback process is alive
        """
        generation = self._live_child_generation()
        self._inbox.put(ChannelMessage(MSG_SKIP, generation))
        logger.info(f"[PLAYER] Skip requested for player {self.player_id}")

    def stop(self) -> None:
        """
        Stop playback; the current song keeps its votes.

        Raises:
            ProcessNotRunning: If the control loop is not running
        """
        if not self.is_running:
            raise ProcessNotRunning(f"Player {self.player_id} is not running")
        self._stop_event.set()
        with self._child_lock:
            generation = self._generation
        self._inbox.put(ChannelMessage(MSG_STOP, generation))
        logger.info(f"[PLAYER] Stop requested for player {self.player_id}")

    def pause(self) -> bool:
        """
        Toggle pause on the current song.

        Returns:
            False if the backend has no pause command (nothing was sent)

        Raises:
            ProcessNotRunning: If no playback process is alive
        """
        generation = self._live_child_generation()
        if not self._backend.supports_pause:
            logger.info(f"[PLAYER] Pause not supported by backend {self._backend.command[0]}")
            return False
        self._inbox.put(ChannelMessage(MSG_PAUSE, generation))
        return True

    def set_volume(self, value) -> int:
        """
        Persist a new volume and pass it to the playback process.

        Returns:
            The validated volume

        Raises:
            InvalidArgument: If value is not a non-negative integer
            ProcessNotRunning: If the control loop is not running
        """
        volume = parse_volume(value)
        if not self.is_running:
            raise ProcessNotRunning(f"Player {self.player_id} is not running")
        self._store.update_player_runtime_state(self.player_id, instance_id=self.instance_id, volume=volume)
        with self._child_lock:
            generation = self._generation
        self._inbox.put(ChannelMessage(MSG_VOLUME, generation, volume))
        logger.info(f"[PLAYER] Volume set to {volume} for player {self.player_id}")
        return volume

    # ---- control loop ----

    def _control_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if not self._still_registered():
                    break

                selection = self._select_song()
                if selection is None:
                    self._idle(self._config.idle_poll_sec)
                    continue

                song, voters = selection
                self._play(song, voters)
        except CrashLoop as e:
            logger.critical(f"[PLAYER] {e}")
            self._fatal_error = e
        except Exception as e:
            logger.error(f"[PLAYER] Control loop failed: {e}", exc_info=True)
            self._fatal_error = e
        finally:
            self._shutdown()

    def _still_registered(self) -> bool:
        """False once another instance (or zap) has taken over our runtime row."""
        try:
            state = self._store.get_player_runtime_state(self.player_id)
        except JukeboxError as e:
            logger.error(f"[PLAYER] Could not verify runtime state: {e}")
            return True
        if state is None or state.instance_id != self.instance_id:
            logger.warning(
                f"[PLAYER] Runtime state for player {self.player_id} was replaced or zapped; "
                f"this instance stops"
            )
            self._invalidated = True
            return False
        return True

    def _select_song(self) -> Optional[Tuple[Song, FrozenSet[str]]]:
        """
        Walk the playlist for the first playable song.

        Unreachable songs are skipped without playing; the random sentinel
        and an exhausted list both fall through to a random online song.

        Returns:
            (song, supporting voters), or None if nothing at all is playable
        """
        try:
            entries = self._playlist.build()
        except JukeboxError as e:
            logger.error(f"[PLAYER] Could not build playlist: {e}")
            return None

        for entry in entries:
            if entry.is_random:
                break
            if resource_reachable(entry.song):
                return entry.song, entry.contributing_voters
            logger.warning(f"[PLAYER] Unreachable, skipping: {entry.song.path}")

        try:
            return self._random_song(), frozenset()
        except ResourceUnreachable as e:
            logger.warning(f"[PLAYER] {e}")
            return None

    def _random_song(self) -> Song:
        """
        Raises:
            ResourceUnreachable: If no playable online song was drawn
        """
        for _ in range(self._config.random_pick_attempts):
            try:
                song = self._store.find_playable_song(online=True)
            except JukeboxError as e:
                raise ResourceUnreachable(f"Random song lookup failed: {e}") from e
            if song is None:
                break
            if resource_reachable(song):
                return song
            logger.debug(f"[PLAYER] Random pick {song.path} unreachable, drawing again")
        raise ResourceUnreachable("No playable song in the library")

    def _idle(self, timeout: float) -> None:
        """Wait for work while nothing is playable; only stop is honored."""
        logger.info(f"[PLAYER] Nothing to play, waiting {timeout}s")
        deadline = time.monotonic() + timeout
        while not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                message = self._inbox.get(timeout=remaining)
            except queue.Empty:
                return
            if message.kind == MSG_STOP:
                return
            if message.kind not in (MSG_OUTPUT, MSG_EOF):
                logger.debug(f"[PLAYER] Ignoring {message.kind} while idle")

    def _play(self, song: Song, voters: FrozenSet[str]) -> None:
        """Play one song start to finish, then record how it ended."""
        if self._stop_event.is_set():
            # Stop landed while the song was being picked
            logger.debug(f"[PLAYER] Not starting {song.path}: stop requested")
            return

        with self._child_lock:
            self._generation += 1
            generation = self._generation

        try:
            child = PlayerProcess.spawn(self._backend.argv_for(song.path), generation, self._inbox)
        except OSError as e:
            logger.error(f"[PLAYER] Could not start player {self._backend.command[0]}: {e}")
            self._set_state(SupervisorState.CRASHED)
            self._record_crash()
            self._set_state(SupervisorState.STARTING)
            return

        with self._child_lock:
            self._child = child
            self._current_song = song

        session = self._session_factory()
        reason = EndReason.CRASH
        try:
            self._set_state(SupervisorState.PLAYING)
            session.start(song, voters)
            self._apply_stored_volume(child)

            reason = self._wait_for_end(child)
        finally:
            returncode = child.close(timeout=self._config.quit_timeout_sec)
            with self._child_lock:
                self._child = None
                self._current_song = None
            logger.debug(f"[PLAYER] Player pid={child.pid} reaped (status {returncode})")
            session.end(reason)

        if reason is EndReason.CRASH:
            self._set_state(SupervisorState.CRASHED)
            self._record_crash()
        else:
            self._crash_times.clear()

        if not self._stop_event.is_set():
            self._set_state(SupervisorState.STARTING)

    def _apply_stored_volume(self, child: PlayerProcess) -> None:
        if not self._backend.supports_volume:
            return
        try:
            state = self._store.get_player_runtime_state(self.player_id)
        except JukeboxError as e:
            logger.debug(f"[PLAYER] Could not read stored volume: {e}")
            return
        if state is None:
            return
        try:
            child.send(self._backend.volume_line(state.volume))
        except SignalDeliveryFailure as e:
            logger.debug(f"[PLAYER] {e}")

    def _wait_for_end(self, child: PlayerProcess) -> EndReason:
        """
        Block on the inbox until the child's event channel closes.

        The channel normally closes when the player exits. If the player
        exits while something it started keeps stdout open, the group is
        killed after quit_timeout_sec. Once a kill has been sent the wait is
        bounded by one more quit_timeout_sec, EOF or not.

        Returns:
            The requested end reason, or COMPLETE / CRASH from the exit status
        """
        grace = self._config.quit_timeout_sec
        pending: Optional[EndReason] = None
        quit_deadline: Optional[float] = None
        killed = False
        exited_at: Optional[float] = None

        if self._stop_event.is_set():
            # Stop arrived between songs
            pending = self._request_quit(child, EndReason.STOP)
            quit_deadline = time.monotonic() + grace

        while True:
            now = time.monotonic()
            if exited_at is None and not child.is_alive():
                exited_at = now
            if quit_deadline is not None and now >= quit_deadline:
                if killed:
                    logger.warning(
                        f"[PLAYER] Event channel of pid={child.pid} still open {grace}s after kill, giving up on it"
                    )
                    break
                logger.warning(f"[PLAYER] Player pid={child.pid} ignored quit for {grace}s, killing it")
                child.kill()
                killed = True
                quit_deadline = now + grace
            elif not killed and exited_at is not None and now - exited_at >= grace:
                logger.warning(
                    f"[PLAYER] Player pid={child.pid} exited but its output is still held open, "
                    f"killing its process group"
                )
                child.kill()
                killed = True
                quit_deadline = now + grace

            timeout = EXIT_POLL_SEC
            if quit_deadline is not None:
                timeout = min(timeout, max(0.0, quit_deadline - now))
            try:
                message = self._inbox.get(timeout=timeout)
            except queue.Empty:
                continue

            if message.kind == MSG_EOF:
                if message.generation == child.generation:
                    break
                continue

            if message.kind == MSG_OUTPUT:
                continue

            if message.generation is not None and message.generation != child.generation:
                if message.kind != MSG_STOP:
                    logger.debug(f"[PLAYER] Dropping stale {message.kind} request")
                    continue

            if message.kind == MSG_STOP:
                self._set_state(SupervisorState.STOPPING)
                if pending is not EndReason.STOP:
                    pending = self._request_quit(child, EndReason.STOP)
                    quit_deadline = time.monotonic() + grace
            elif message.kind == MSG_SKIP:
                if pending is None:
                    pending = self._request_quit(child, EndReason.SKIP)
                    quit_deadline = time.monotonic() + grace
            elif message.kind == MSG_PAUSE:
                self._toggle_pause(child)
            elif message.kind == MSG_VOLUME:
                line = self._backend.volume_line(message.data)
                if line is not None:
                    try:
                        child.send(line)
                    except SignalDeliveryFailure as e:
                        logger.warning(f"[PLAYER] {e}")

        # Drain finished; make sure the exit status is known
        returncode = child.reap(self._config.quit_timeout_sec)

        if pending is not None:
            return pending
        if returncode == 0:
            return EndReason.COMPLETE
        logger.warning(f"[PLAYER] Player pid={child.pid} exited unexpectedly (status {returncode})")
        return EndReason.CRASH

    def _request_quit(self, child: PlayerProcess, reason: EndReason) -> EndReason:
        try:
            child.send(self._backend.quit_command)
        except SignalDeliveryFailure as e:
            logger.warning(f"[PLAYER] {e}; killing player")
            child.kill()
        return reason

    def _toggle_pause(self, child: PlayerProcess) -> None:
        try:
            child.send(self._backend.pause_command)
        except SignalDeliveryFailure as e:
            logger.warning(f"[PLAYER] {e}")
            return
        if self.get_state() == SupervisorState.PAUSED:
            self._set_state(SupervisorState.PLAYING)
        elif self.get_state() == SupervisorState.PLAYING:
            self._set_state(SupervisorState.PAUSED)

    def _record_crash(self) -> None:
        """
        Raises:
            CrashLoop: When crash_loop_threshold crashes fall inside the window
        """
        now = time.monotonic()
        self._crash_times.append(now)
        window_start = now - self._config.crash_loop_window_sec
        while self._crash_times and self._crash_times[0] < window_start:
            self._crash_times.popleft()
        if len(self._crash_times) >= self._config.crash_loop_threshold:
            raise CrashLoop(
                f"Player {self.player_id} crashed {len(self._crash_times)} times within "
                f"{self._config.crash_loop_window_sec}s; giving up"
            )

    def _shutdown(self) -> None:
        """Reap any live child and drop our runtime state."""
        self._set_state(SupervisorState.STOPPING)
        with self._child_lock:
            child = self._child
            self._child = None
            self._current_song = None
        if child is not None:
            child.close(timeout=self._config.quit_timeout_sec)

        if self._invalidated:
            logger.info(f"[PLAYER] Leaving runtime state of player {self.player_id} to its new owner")
        else:
            try:
                self._store.delete_player_runtime_state(self.player_id, instance_id=self.instance_id)
            except JukeboxError as e:
                logger.error(f"[PLAYER] Could not delete runtime state: {e}")

        self._hooks.fire_event(COMPONENT, "stop", {"player_id": self.player_id, "pid": os.getpid()})
        self._set_state(SupervisorState.STOPPED)
        logger.info(f"[PLAYER] Supervisor for player {self.player_id} stopped")
