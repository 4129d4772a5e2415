"""Shared fixtures for gateway tests."""

import queue
import threading

import pytest

from shellgate_commands import StaticCommandResolver


class FakeChannel:
    """Thread-safe stand-in for a paramiko Channel."""

    def __init__(self, chanid=0, recv_error=None):
        self.chanid = chanid
        self.recv_error = recv_error
        self.sent = bytearray()
        self.close_calls = 0
        self._inbox = queue.Queue()
        self._closed = threading.Event()
        self._cond = threading.Condition()

    @property
    def closed(self):
        return self._closed.is_set()

    def get_id(self):
        return self.chanid

    def feed(self, data):
        """Queue bytes as if the client typed them; b'' means EOF."""
        self._inbox.put(data)

    def recv(self, nbytes):
        if self.recv_error is not None:
            raise self.recv_error
        while not self._closed.is_set():
            try:
                return self._inbox.get(timeout=0.05)
            except queue.Empty:
                continue
        return b''

    def sendall(self, data):
        if self._closed.is_set():
            raise OSError("Socket is closed")
        with self._cond:
            self.sent += data
            self._cond.notify_all()

    def wait_for_output(self, needle, timeout=5.0):
        with self._cond:
            return self._cond.wait_for(lambda: needle in self.sent, timeout)

    def close(self):
        with self._cond:
            self.close_calls += 1
        self._closed.set()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def cat_resolver():
    return StaticCommandResolver("cat")


def run_in_thread(target):
    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread
