"""
Pseudo-terminal primitives for gateway sessions.

Covers the wire layout of terminal-size requests, the pty master/slave pair a
session owns, and starting the session's child process on that pty.
"""

import fcntl
import logging
import os
import pty
import select
import struct
import subprocess
import termios
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from shellgate_config import DEFAULT_COLUMNS, DEFAULT_ROWS, DEFAULT_TERM
from shellgate_errors import PtyStartError, RequestDecodeError

logger = logging.getLogger('shellgate.pty')

# width, height as big-endian uint32
_DIMS = struct.Struct('>II')
_NAME_LEN = struct.Struct('>I')
# struct winsize: rows, cols, xpixel (unused), ypixel (unused)
_WINSIZE = struct.Struct('HHHH')
_WINSIZE_MAX = 0xFFFF


@dataclass(frozen=True)
class TerminalDimensions:
    width: int
    height: int


def parse_dims(buf: bytes) -> TerminalDimensions:
    """Decode width then height from the start of ``buf``."""
    try:
        width, height = _DIMS.unpack_from(buf, 0)
    except struct.error as e:
        raise RequestDecodeError(f"Truncated terminal dimensions ({len(buf)} bytes)") from e
    return TerminalDimensions(width, height)


def parse_pty_request(payload: bytes) -> TerminalDimensions:
    """
    Decode the requested size from a ``pty-req`` payload.

    The payload starts with the length-prefixed terminal name; the
    dimensions follow it at offset ``4 + len(name)``.
    """
    try:
        (name_len,) = _NAME_LEN.unpack_from(payload, 0)
    except struct.error as e:
        raise RequestDecodeError("pty-req payload has no terminal name") from e
    return parse_dims(payload[_NAME_LEN.size + name_len:])


def set_winsize(fd: int, width: int, height: int) -> None:
    """Set the window size of the terminal behind ``fd``."""
    winsize = _WINSIZE.pack(min(height, _WINSIZE_MAX), min(width, _WINSIZE_MAX), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def get_winsize(fd: int) -> Tuple[int, int]:
    """Return the (columns, rows) of the terminal behind ``fd``."""
    packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, _WINSIZE.pack(0, 0, 0, 0))
    rows, cols, _, _ = _WINSIZE.unpack(packed)
    return cols, rows


class PtyHandle:
    """
    A pty master/slave pair owned by exactly one session.

    The master stays open while a copy thread is inside a read, write or
    poll on it: close() marks the handle closed at once and releases the
    descriptor when the last such call returns, so the fd number is never
    reused under a running syscall.
    """

    def __init__(self, master_fd: int, slave_fd: Optional[int]):
        self.master_fd = master_fd
        self.slave_fd = slave_fd
        self.columns = 0
        self.rows = 0
        self.closed = False
        self.master_open = True
        self._users = 0
        # shared by resize() and close(): a resize never touches a closed fd
        self._lock = threading.Lock()

    @classmethod
    def open(cls) -> 'PtyHandle':
        """Allocate a new pseudo-terminal with a default size."""
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise PtyStartError(f"Could not allocate pty ({e})") from e
        handle = cls(master_fd, slave_fd)
        handle.resize(TerminalDimensions(DEFAULT_COLUMNS, DEFAULT_ROWS))
        return handle

    def resize(self, dims: TerminalDimensions) -> bool:
        """Apply ``dims`` to the terminal. Returns False once the pty is closed."""
        with self._lock:
            if self.closed:
                return False
            set_winsize(self.master_fd, dims.width, dims.height)
            self.columns, self.rows = dims.width, dims.height
            return True

    def size(self) -> Tuple[int, int]:
        """Current (columns, rows) as reported by the OS."""
        with self._lock:
            if self.closed:
                return self.columns, self.rows
            return get_winsize(self.master_fd)

    def _enter(self) -> bool:
        with self._lock:
            if self.closed:
                return False
            self._users += 1
            return True

    def _leave(self) -> None:
        with self._lock:
            self._users -= 1
            if self.closed and self._users == 0:
                self._close_master()

    def wait_readable(self, timeout: float) -> bool:
        if not self._enter():
            return True
        try:
            ready, _, _ = select.select([self.master_fd], [], [], timeout)
        finally:
            self._leave()
        return bool(ready)

    def read(self, size: int) -> bytes:
        if not self._enter():
            return b''
        try:
            return os.read(self.master_fd, size)
        finally:
            self._leave()

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            if not self._enter():
                raise OSError("write to closed pty")
            try:
                written = os.write(self.master_fd, view)
            finally:
                self._leave()
            view = view[written:]

    def release_slave(self) -> None:
        """Drop the parent's copy of the slave once the child holds it."""
        if self.slave_fd is not None:
            os.close(self.slave_fd)
            self.slave_fd = None

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self.release_slave()
            if self._users == 0:
                self._close_master()

    def _close_master(self) -> None:
        # caller holds _lock
        if self.master_open:
            self.master_open = False
            os.close(self.master_fd)


def _attach_controlling_tty() -> None:
    # Runs in the child after stdio is the slave: new session, slave as ctty,
    # so closing the master hangs the child up.
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def spawn_process(spec, handle: PtyHandle) -> subprocess.Popen:
    """Start ``spec`` with its standard streams bound to the pty slave."""
    env = os.environ.copy()
    env.setdefault('TERM', DEFAULT_TERM)
    env.update(spec.env)

    try:
        process = subprocess.Popen(
            spec.argv,
            stdin=handle.slave_fd,
            stdout=handle.slave_fd,
            stderr=handle.slave_fd,
            env=env,
            preexec_fn=_attach_controlling_tty,
            close_fds=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        raise PtyStartError(f"Could not start {spec.program} ({e})") from e

    handle.release_slave()
    logger.debug(f"Started process {process.pid}: {' '.join(spec.argv)}")
    return process
