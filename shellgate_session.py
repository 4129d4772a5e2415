"""
Interactive session handling.

A Session owns one SSH channel, one pseudo-terminal and one child process.
It resolves the user's command, starts the child on a fresh pty, copies bytes
between channel and pty in both directions, and applies the channel's control
requests (pty-req, shell, window-change) until the channel goes away. Whichever
side finishes first tears all three down, exactly once.
"""

import collections
import enum
import logging
import os
import subprocess
import threading
from typing import Callable, Optional

from shellgate_commands import CommandResolver
from shellgate_config import (
    BUFFER_SIZE, CHILD_EXIT_TIMEOUT, COPY_JOIN_TIMEOUT, PTY_POLL_INTERVAL
)
from shellgate_errors import PtyStartError, RequestDecodeError
from shellgate_pty import PtyHandle, parse_dims, parse_pty_request, spawn_process


class ChannelRequest:
    """A channel-scoped control request and its one-shot reply."""

    def __init__(self, kind: str, payload: bytes = b'', want_reply: bool = False):
        self.kind = kind
        self.payload = payload
        self.want_reply = want_reply
        self.ok = False
        self._lock = threading.Lock()
        self._replied = threading.Event()

    @property
    def replied(self) -> bool:
        return self._replied.is_set()

    def reply(self, ok: bool) -> None:
        """Record the answer. Only the first reply counts."""
        with self._lock:
            if self._replied.is_set():
                return
            self.ok = ok
            self._replied.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until replied; an unanswered request counts as refused."""
        if not self._replied.wait(timeout):
            return False
        return self.ok

    def __repr__(self):
        return f"ChannelRequest({self.kind!r}, {len(self.payload)} bytes)"


def accepts_request(kind: str, payload: bytes) -> bool:
    """Whether a control request is acknowledged, judged from its payload alone."""
    if kind == "shell":
        return not payload
    if kind == "pty-req":
        try:
            parse_pty_request(payload)
        except RequestDecodeError:
            return False
        return True
    return kind == "window-change"


class RequestStream:
    """
    Closable FIFO of ChannelRequests for one channel.

    Iteration blocks until a request arrives and ends once the stream is
    closed. Closing refuses everything still pending and everything put
    afterwards, so no producer waits on a session that is gone.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._pending = collections.deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, request: ChannelRequest) -> bool:
        with self._cond:
            if not self._closed:
                self._pending.append(request)
                self._cond.notify()
                return True
        request.reply(False)
        return False

    def get(self, timeout: Optional[float] = None) -> Optional[ChannelRequest]:
        """Next request, or None when closed (or on timeout)."""
        with self._cond:
            self._cond.wait_for(lambda: self._pending or self._closed, timeout)
            if self._closed or not self._pending:
                return None
            return self._pending.popleft()

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = list(self._pending)
            self._pending.clear()
            self._cond.notify_all()
        for request in pending:
            request.reply(False)

    def __iter__(self):
        while True:
            request = self.get()
            if request is None:
                return
            yield request


class SessionLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the session's user and id."""

    def process(self, msg, kwargs):
        return f"[{self.extra['user']}/{self.extra['session']}] {msg}", kwargs


class SessionState(enum.Enum):
    RESOLVING = "resolving"
    PTY_STARTING = "pty-starting"
    BRIDGING = "bridging"
    CLOSING = "closing"
    CLOSED = "closed"


class Session:
    """Bridges one accepted SSH channel to a child process on a pty."""

    def __init__(
        self,
        username: str,
        channel,
        requests: RequestStream,
        resolver: CommandResolver,
        on_close: Optional[Callable[['Session'], None]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.id = os.urandom(8).hex()
        self.username = username
        self.channel = channel
        self.requests = requests
        self.resolver = resolver
        self.on_close = on_close
        self.log = SessionLogAdapter(
            logger or logging.getLogger('shellgate.session'),
            {'session': self.id, 'user': username},
        )

        self.state = SessionState.RESOLVING
        self.pty: Optional[PtyHandle] = None
        self.process: Optional[subprocess.Popen] = None

        self._lock = threading.Lock()
        self._closed = False
        self._done = threading.Event()
        self._inbound: Optional[threading.Thread] = None
        self._outbound: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self) -> None:
        """Drive the session from command resolution to teardown."""
        try:
            spec = self.resolver.resolve(self.username)
        except Exception as e:
            self.log.error(f"Could not resolve command for {self.username} ({e})")
            self._abort()
            return

        try:
            with self._lock:
                if self._closed:
                    return
                self.state = SessionState.PTY_STARTING
                self.log.info("Creating pty...")
                self.pty = PtyHandle.open()
                self.process = spawn_process(spec, self.pty)
        except PtyStartError as e:
            self.log.error(f"Could not start pty ({e})")
            self.close("pty start failed")
            return

        self.state = SessionState.BRIDGING
        self.log.info(f"Session started: {' '.join(spec.argv)} (pid {self.process.pid})")
        self._outbound = self._start_copy(self._copy_pty_to_channel, "outbound")
        self._inbound = self._start_copy(self._copy_channel_to_pty, "inbound")

        # Ends once teardown closes the stream.
        for request in self.requests:
            self.handle_request(request)

    def handle_request(self, request: ChannelRequest) -> None:
        self.log.debug(f"{request.kind}")
        if request.kind == "shell":
            # Only the default shell: a command line here is never acknowledged.
            if request.payload:
                self.log.warning(
                    f"Refusing shell request carrying a command ({len(request.payload)} bytes)"
                )
                request.reply(False)
            else:
                request.reply(True)
        elif request.kind == "pty-req":
            try:
                dims = parse_pty_request(request.payload)
            except RequestDecodeError as e:
                self.log.warning(f"Malformed pty-req ({e})")
                request.reply(False)
                return
            self.resize(dims)
            request.reply(True)
        elif request.kind == "window-change":
            try:
                dims = parse_dims(request.payload)
            except RequestDecodeError as e:
                self.log.warning(f"Malformed window-change ({e})")
                return
            self.resize(dims)
        else:
            request.reply(False)

    def resize(self, dims) -> None:
        if self.pty is None or not self.pty.resize(dims):
            self.log.debug(f"Ignoring resize to {dims.width}x{dims.height} on closed pty")

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def close(self, reason: str = "closed") -> bool:
        """Tear the session down. Only the first caller does any work."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        self._teardown(reason)
        return True

    def _start_copy(self, copy: Callable[[], None], direction: str) -> threading.Thread:
        thread = threading.Thread(
            target=self._run_copy,
            args=(copy, direction),
            name=f"session-{self.id}-{direction}",
            daemon=True,
        )
        thread.start()
        return thread

    def _run_copy(self, copy: Callable[[], None], direction: str) -> None:
        try:
            copy()
        except OSError as e:
            self.log.debug(f"{direction} copy failed ({e})")
        finally:
            self.close(f"{direction} copy finished")

    def _copy_pty_to_channel(self) -> None:
        while not self._closed:
            if not self.pty.wait_readable(PTY_POLL_INTERVAL):
                continue
            data = self.pty.read(BUFFER_SIZE)
            if not data:
                return
            self.channel.sendall(data)

    def _copy_channel_to_pty(self) -> None:
        while not self._closed:
            data = self.channel.recv(BUFFER_SIZE)
            if not data:
                return
            self.pty.write(data)

    def _abort(self) -> None:
        """Close a session that never allocated anything."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._close_channel()
        self.requests.close()
        self._finish()

    def _teardown(self, reason: str) -> None:
        self.state = SessionState.CLOSING
        self.log.debug(f"Tearing down session ({reason})")
        self._close_channel()
        self.requests.close()

        current = threading.current_thread()
        for thread in (self._inbound, self._outbound):
            if thread is not None and thread is not current:
                thread.join(COPY_JOIN_TIMEOUT)

        if self.pty is not None:
            self.pty.close()
        if self.process is not None:
            self._wait_process()
        self._finish()

    def _close_channel(self) -> None:
        try:
            self.channel.close()
        except Exception as e:
            self.log.warning(f"Error closing channel: {e}")

    def _wait_process(self) -> None:
        try:
            self.process.wait(timeout=CHILD_EXIT_TIMEOUT)
            return
        except subprocess.TimeoutExpired:
            self.log.warning(f"Process {self.process.pid} ignored hangup, killing it")
        except OSError as e:
            self.log.warning(f"Failed to exit process ({e})")
            return

        self.process.kill()
        try:
            self.process.wait(timeout=CHILD_EXIT_TIMEOUT)
        except (subprocess.TimeoutExpired, OSError) as e:
            self.log.warning(f"Failed to exit process ({e})")

    def _finish(self) -> None:
        self.state = SessionState.CLOSED
        self.log.info("Session closed")
        self._done.set()
        if self.on_close is not None:
            self.on_close(self)
