"""
Child playback process wrapper.

Spawns the external player with pipes on stdin (command channel) and stdout
(event channel). A daemon drain thread turns stdout into messages on the
supervisor's inbox: OUTPUT for any line (a heartbeat), then exactly one EOF
when the stream closes. Messages carry the child's generation so the
supervisor can ignore anything a previous child left behind.

The process runs in its own session so a Ctrl-C aimed at the supervisor
does not reach it; the supervisor decides when it dies.
"""

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from jukebox.errors import SignalDeliveryFailure

logger = logging.getLogger(__name__)

MSG_OUTPUT = "output"
MSG_EOF = "eof"

# Heartbeats are forwarded at most this often; the rest are only counted
HEARTBEAT_INTERVAL_SEC = 0.5


@dataclass(frozen=True)
class ChannelMessage:
    """One item on the supervisor inbox: a child event or a control request."""
    kind: str
    generation: Optional[int] = None
    data: Any = None


class PlayerProcess:
    """One running instance of the external player."""

    def __init__(self, argv: List[str], generation: int, inbox: "queue.Queue[ChannelMessage]"):
        self.argv = list(argv)
        self.generation = generation
        self._inbox = inbox
        self._proc: Optional[subprocess.Popen] = None
        self._drain_thread: Optional[threading.Thread] = None
        self._pgid: Optional[int] = None
        self._write_lock = threading.Lock()
        self.lines_seen = 0

    @classmethod
    def spawn(cls, argv: List[str], generation: int, inbox: "queue.Queue[ChannelMessage]") -> "PlayerProcess":
        """
        Start the player and its stdout drain thread.

        Raises:
            OSError: If the program cannot be executed
        """
        child = cls(argv, generation, inbox)
        child._start()
        return child

    def _start(self) -> None:
        self._proc = subprocess.Popen(
            self.argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        # New session: the process group id is the leader's pid
        self._pgid = self._proc.pid
        logger.info(f"[PLAYER] Started player PID={self._proc.pid} (generation {self.generation})")

        self._drain_thread = threading.Thread(
            target=self._stdout_drain,
            daemon=True,
            name=f"PlayerStdoutDrain-{self.generation}",
        )
        self._drain_thread.start()

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def _stdout_drain(self) -> None:
        """
        Forward stdout lines as heartbeats; always finish with one EOF.

        Players echo tags and file names in whatever encoding they were
        written in, so the pipe is read as bytes and decoded leniently.
        """
        last_forward = 0.0
        stdout = self._proc.stdout
        try:
            for raw in stdout:
                self.lines_seen += 1
                now = time.monotonic()
                if now - last_forward >= HEARTBEAT_INTERVAL_SEC:
                    last_forward = now
                    line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    self._inbox.put(ChannelMessage(MSG_OUTPUT, self.generation, line))
        except (OSError, ValueError) as e:
            # Pipe closed underneath us during shutdown
            logger.debug(f"[PLAYER] stdout drain ended with {e!r} (generation {self.generation})")
        finally:
            self._inbox.put(ChannelMessage(MSG_EOF, self.generation))

    def send(self, line: str) -> None:
        """
        Write one command line to the player.

        Raises:
            SignalDeliveryFailure: If the player is gone or its stdin is closed
        """
        if not self.is_alive() or self._proc.stdin is None:
            raise SignalDeliveryFailure(f"Player (pid={self.pid}) is not running; cannot send {line!r}")
        with self._write_lock:
            try:
                self._proc.stdin.write((line + "\n").encode("utf-8"))
                self._proc.stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as e:
                raise SignalDeliveryFailure(f"Sending {line!r} to player pid={self.pid} failed: {e}") from e
        logger.debug(f"[PLAYER] Sent {line!r} to pid={self.pid}")

    def kill(self) -> None:
        """
        Force-kill the player's process group. Safe to call on a dead process.

        The group is signalled even when the leader has already exited, since
        a helper it started may still be holding the event channel open.
        """
        if self._proc is None:
            return
        if self._pgid is not None:
            try:
                os.killpg(self._pgid, signal.SIGKILL)
            except ProcessLookupError:
                # Whole group gone; never signal that id again
                self._pgid = None
            except OSError as e:
                logger.debug(f"[PLAYER] killpg failed for pgid={self._pgid}: {e}; falling back to kill()")
            else:
                return
        if self._proc.poll() is None:
            self._proc.kill()

    def reap(self, timeout: float) -> Optional[int]:
        """
        Wait for the player to exit, killing it if it outlives ``timeout``.

        Returns:
            The exit status (negative for a signal), or None if it could not
            be reaped even after SIGKILL
        """
        if self._proc is None:
            return None
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"[PLAYER] Player pid={self._proc.pid} did not exit within {timeout}s, killing")
            self.kill()
            try:
                self._proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.error(f"[PLAYER] Player pid={self._proc.pid} did not exit after SIGKILL")
                return None
        return self._proc.returncode

    def close(self, timeout: float = 1.0) -> Optional[int]:
        """
        Kill (if needed), reap and release the pipes. Idempotent.

        Returns:
            The exit status, as from reap()
        """
        if self._proc is None:
            return None
        self.kill()
        returncode = self.reap(timeout)
        streams = [self._proc.stdin]
        if self._drain_thread is not None and self._drain_thread is not threading.current_thread():
            self._drain_thread.join(timeout=timeout)
            if self._drain_thread.is_alive():
                # Closing stdout would block on the reader's buffer lock
                logger.warning(f"[PLAYER] stdout drain thread for generation {self.generation} did not stop")
            else:
                streams.append(self._proc.stdout)
        for stream in streams:
            if stream is None:
                continue
            try:
                stream.close()
            except (OSError, ValueError):
                pass
        return returncode
