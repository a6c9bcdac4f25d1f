"""
Command channel between external callers and a running player supervisor.

A running player listens on a Unix socket at ``<socket_dir>/<player_id>.sock``
and records that path in its runtime state. Each connection carries one JSON
request line, e.g. ``{"command": "volume", "volume": 30}``, and gets one JSON
reply line:

    {"ok": true, ...}
    {"ok": false, "error": "ProcessNotRunning", "message": "..."}

Callers use PlayerControl, which finds the socket through the store and turns
error replies back into the matching JukeboxError subclass.
"""

import json
import logging
import os
import signal
import socket
import threading
from typing import Any, Dict, Optional

from jukebox import errors
from jukebox.config import JukeboxConfig
from jukebox.errors import (
    InvalidArgument,
    JukeboxError,
    ProcessNotRunning,
    SignalDeliveryFailure,
)
from jukebox.hooks import create_hook_registry
from jukebox.player.supervisor import PlayerSupervisor, parse_volume
from jukebox.state.store import JukeboxStore

logger = logging.getLogger(__name__)

# Longest request line accepted from a client
MAX_REQUEST_BYTES = 4096

CLIENT_TIMEOUT_SEC = 5.0


def _error_reply(error: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": type(error).__name__, "message": str(error)}


class ControlServer:
    """
    Unix socket server that forwards commands to one supervisor.

    One accept thread; each client is served on its own short-lived thread.
    """

    def __init__(self, supervisor: PlayerSupervisor, socket_path: str):
        self.supervisor = supervisor
        self.socket_path = socket_path
        self._running = False
        self._server_sock: Optional[socket.socket] = None
        self._accept_thread: Optional[threading.Thread] = None
        self._bound_inode: Optional[int] = None

    def start(self) -> None:
        """
        Bind the socket and start accepting commands.

        An existing socket file at the path is replaced; a supervisor still
        holding it loses its command channel.

        Raises:
            OSError: If the socket cannot be created or bound
        """
        if self._running:
            logger.warning("[CONTROL] Control server already started")
            return

        socket_dir = os.path.dirname(self.socket_path)
        if socket_dir:
            os.makedirs(socket_dir, mode=0o755, exist_ok=True)

        try:
            if os.path.exists(self.socket_path):
                os.unlink(self.socket_path)
        except OSError as e:
            logger.warning(f"[CONTROL] Could not remove existing socket file {self.socket_path}: {e}")

        self._server_sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._server_sock.bind(self.socket_path)
        self._server_sock.listen(5)
        self._bound_inode = os.stat(self.socket_path).st_ino

        try:
            os.chmod(self.socket_path, 0o660)
        except OSError as e:
            logger.warning(f"[CONTROL] Could not set socket permissions: {e}")

        self._running = True
        self._accept_thread = threading.Thread(
            target=self._accept_loop,
            daemon=True,
            name=f"ControlServer-{self.supervisor.player_id}",
        )
        self._accept_thread.start()
        logger.info(f"[CONTROL] Listening on {self.socket_path}")

    def stop(self) -> None:
        """Stop accepting commands and remove the socket file if it is still ours."""
        if not self._running:
            return
        self._running = False

        if self._server_sock is not None:
            try:
                # Wakes the accept loop; close alone does not on Linux
                self._server_sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._server_sock.close()

        try:
            if os.stat(self.socket_path).st_ino == self._bound_inode:
                os.unlink(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[CONTROL] Could not remove socket file {self.socket_path}: {e}")

        if self._accept_thread is not None:
            self._accept_thread.join(timeout=2.0)
        logger.info(f"[CONTROL] Stopped listening on {self.socket_path}")

    def _accept_loop(self) -> None:
        while self._running:
            try:
                client_sock, _ = self._server_sock.accept()
            except OSError:
                # Socket closed during shutdown
                if self._running:
                    logger.warning("[CONTROL] Error accepting connection")
                break

            threading.Thread(
                target=self._handle_client,
                args=(client_sock,),
                daemon=True,
                name="ControlClient",
            ).start()

    def _handle_client(self, client_sock: socket.socket) -> None:
        with client_sock:
            client_sock.settimeout(CLIENT_TIMEOUT_SEC)
            try:
                with client_sock.makefile("rb") as reader:
                    line = reader.readline(MAX_REQUEST_BYTES)
            except OSError as e:
                logger.debug(f"[CONTROL] Client read error: {e}")
                return

            reply = self.handle_request(line)
            try:
                client_sock.sendall(json.dumps(reply).encode("utf-8") + b"\n")
            except OSError as e:
                logger.debug(f"[CONTROL] Client went away before reply: {e}")

    def handle_request(self, raw: bytes) -> Dict[str, Any]:
        """Decode one request line and run it against the supervisor."""
        try:
            request = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            return _error_reply(InvalidArgument(f"Malformed request: {e}"))
        if not isinstance(request, dict):
            return _error_reply(InvalidArgument("Request must be a JSON object"))

        command = request.get("command")
        logger.debug(f"[CONTROL] Request: {command}")
        try:
            if command == "skip":
                self.supervisor.skip()
                return {"ok": True}
            if command == "stop":
                self.supervisor.stop()
                return {"ok": True}
            if command == "pause":
                return {"ok": True, "paused": self.supervisor.pause()}
            if command == "volume":
                return {"ok": True, "volume": self.supervisor.set_volume(request.get("volume"))}
            if command == "status":
                song = self.supervisor.current_song
                return {
                    "ok": True,
                    "state": self.supervisor.get_state().name,
                    "song_id": song.song_id if song else None,
                    "pid": self.supervisor.child_pid,
                }
            raise InvalidArgument(f"Unknown command: {command!r}")
        except JukeboxError as e:
            return _error_reply(e)


class PlayerControl:
    """
    Client side of the command channel for one player id.

    Every call raises synchronously: ProcessNotRunning when no supervisor is
    registered, SignalDeliveryFailure when its socket cannot be reached, and
    whatever error the supervisor reported otherwise.
    """

    def __init__(self, store: JukeboxStore, player_id: str, timeout: float = CLIENT_TIMEOUT_SEC):
        self._store = store
        self.player_id = player_id
        self.timeout = timeout

    def _control_path(self) -> str:
        state = self._store.get_player_runtime_state(self.player_id)
        if state is None:
            raise ProcessNotRunning(f"Player {self.player_id} is not running")
        if not state.control_path:
            raise SignalDeliveryFailure(f"Player {self.player_id} (pid={state.local_process_id}) has no command channel")
        return state.control_path

    def _request(self, command: str, **params) -> Dict[str, Any]:
        path = self._control_path()
        payload = json.dumps({"command": command, **params}).encode("utf-8") + b"\n"
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(path)
                sock.sendall(payload)
                with sock.makefile("rb") as reader:
                    line = reader.readline()
        except OSError as e:
            raise SignalDeliveryFailure(f"Could not reach player {self.player_id} at {path}: {e}") from e

        try:
            reply = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SignalDeliveryFailure(f"Bad reply from player {self.player_id}: {line!r}") from e

        if not reply.get("ok"):
            error_cls = getattr(errors, str(reply.get("error")), None)
            if not (isinstance(error_cls, type) and issubclass(error_cls, JukeboxError)):
                error_cls = JukeboxError
            raise error_cls(reply.get("message", "unknown error"))
        return reply

    def stop(self) -> None:
        self._request("stop")

    def skip(self) -> None:
        self._request("skip")

    def pause(self) -> bool:
        """Returns False if the player's backend cannot pause."""
        return bool(self._request("pause").get("paused"))

    def set_volume(self, value) -> int:
        volume = parse_volume(value)
        return self._request("volume", volume=volume)["volume"]

    def status(self) -> Dict[str, Any]:
        reply = self._request("status")
        reply.pop("ok", None)
        return reply


def zap(store: JukeboxStore, player_id: str) -> bool:
    """
    Forget a player's runtime state, e.g. after its process died uncleanly.

    A supervisor still running under that id notices after its current song
    and stops.

    Returns:
        True if a runtime row was removed

    Raises:
        InvalidArgument: If player_id is blank
    """
    if not player_id or not player_id.strip():
        raise InvalidArgument("Player id cannot be blank")
    removed = store.delete_player_runtime_state(player_id)
    if removed:
        logger.info(f"[CONTROL] Zapped runtime state of player {player_id}")
    else:
        logger.info(f"[CONTROL] No runtime state for player {player_id}")
    return removed


def _daemonize() -> bool:
    """
    Detach from the controlling terminal with the usual double fork.

    Returns:
        False in the calling process, True in the detached daemon
    """
    pid = os.fork()
    if pid > 0:
        os.waitpid(pid, 0)
        return False

    os.setsid()
    if os.fork() > 0:
        os._exit(0)

    os.chdir("/")
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)
    return True


def start_player(config: JukeboxConfig, daemonize: bool = True) -> int:
    """
    Run a player for config.player_id until it is stopped.

    With ``daemonize`` the calling process returns 0 right away and the
    player runs detached. SIGINT and SIGTERM stop the player gracefully.

    Returns:
        Exit status for the calling process

    Raises:
        CrashLoop: If the playback process keeps crashing
        StorageFailure: If the database cannot be opened
    """
    if daemonize and not _daemonize():
        logger.info(f"[CONTROL] Player {config.player_id} started in the background")
        return 0

    store = JukeboxStore(config.db_path)
    hooks = create_hook_registry(config.hooks)
    socket_path = config.socket_path_for()
    supervisor = PlayerSupervisor(config, store, hooks, control_path=socket_path)
    server = ControlServer(supervisor, socket_path)

    shutdown_initiated = False

    def signal_handler(sig, frame):
        nonlocal shutdown_initiated
        if shutdown_initiated:
            logger.debug("[PLAYER] Shutdown already in progress, ignoring duplicate signal")
            return
        shutdown_initiated = True
        logger.info(f"[PLAYER] Received {signal.Signals(sig).name} - stopping player {config.player_id}")
        try:
            supervisor.stop()
        except ProcessNotRunning:
            pass

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        server.start()
        supervisor.start()
        supervisor.run_forever()
    finally:
        server.stop()
        supervisor.shutdown(timeout=config.quit_timeout_sec * 2)
        store.close()
    return 0
