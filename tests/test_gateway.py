"""End-to-end tests: a paramiko client against a running gateway."""

import threading
import time
from unittest.mock import MagicMock

import paramiko
import pytest

from shellgate_commands import CommandResolver, StaticCommandResolver
from shellgate_core import GatewayServer, ServerIdentity
from shellgate_errors import IdentityRejected


@pytest.fixture(scope="module")
def identity():
    return ServerIdentity([paramiko.RSAKey.generate(2048)])


@pytest.fixture(scope="module")
def client_key():
    return paramiko.RSAKey.generate(2048)


def start_gateway(identity, verifier, resolver):
    server = GatewayServer(identity, verifier, resolver, host="127.0.0.1", port=0)
    server.bind()
    threading.Thread(target=server.start, daemon=True).start()
    return server


def connect(server, key, username="alice"):
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    host, port = server.address
    client.connect(
        host, port=port, username=username, pkey=key,
        allow_agent=False, look_for_keys=False, timeout=10,
    )
    return client


def read_until(chan, needle, timeout=10.0):
    output = b''
    deadline = time.monotonic() + timeout
    chan.settimeout(0.2)
    while needle not in output and time.monotonic() < deadline:
        try:
            data = chan.recv(1024)
        except OSError:
            continue
        if not data:
            break
        output += data
    return output


def eventually(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class SlowAfterFirstResolver(CommandResolver):
    """Runs cat; every resolution after the first one takes a while."""

    def __init__(self, delay):
        self.delay = delay
        self.calls = 0
        self.inner = StaticCommandResolver("cat")

    def resolve(self, username):
        self.calls += 1
        if self.calls > 1:
            time.sleep(self.delay)
        return self.inner.resolve(username)


@pytest.fixture
def gateway(identity):
    servers = []

    def factory(verifier=None, resolver=None):
        server = start_gateway(identity, verifier or MagicMock(), resolver or StaticCommandResolver("cat"))
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.stop()


class TestAuthGate:
    """Tests that identity rejection stops everything downstream."""

    def test_rejected_identity_spawns_nothing(self, gateway, client_key):
        verifier = MagicMock()
        verifier.verify.side_effect = IdentityRejected("alice", "key not authorized")
        resolver = MagicMock()
        server = gateway(verifier=verifier, resolver=resolver)

        with pytest.raises(paramiko.AuthenticationException):
            connect(server, client_key)

        assert verifier.verify.call_args.args[0] == "alice"
        resolver.resolve.assert_not_called()
        assert server.active_sessions == {}


class TestInteractiveSession:
    """Tests for shells opened through the gateway."""

    def test_shell_round_trip_and_resize(self, gateway, client_key):
        server = gateway()
        client = connect(server, client_key)
        try:
            chan = client.invoke_shell(width=100, height=40)
            assert eventually(lambda: len(server.active_sessions) == 1)
            session = next(iter(server.active_sessions.values()))
            assert session.username == "alice"
            assert eventually(lambda: session.pty is not None and session.pty.size() == (100, 40))

            chan.send(b'ping gateway\n')
            assert b'ping gateway' in read_until(chan, b'ping gateway')

            chan.resize_pty(width=132, height=43)
            assert eventually(lambda: session.pty.size() == (132, 43))

            chan.close()
            assert session.wait_closed(10)
            assert eventually(lambda: server.active_sessions == {})
            assert session.process.returncode is not None
        finally:
            client.close()

    def test_child_exit_closes_client_channel(self, gateway, client_key):
        server = gateway(resolver=StaticCommandResolver("sh -c 'sleep 1; echo bye'"))
        client = connect(server, client_key)
        try:
            chan = client.invoke_shell()
            read_until(chan, b'never printed', timeout=10)
            assert eventually(lambda: chan.closed or chan.eof_received)
            assert eventually(lambda: server.active_sessions == {})
        finally:
            client.close()

    def test_sessions_on_one_connection_are_isolated(self, gateway, client_key):
        server = gateway()
        client = connect(server, client_key)
        try:
            first = client.invoke_shell()
            second = client.invoke_shell()
            assert eventually(lambda: len(server.active_sessions) == 2)

            first.close()
            assert eventually(lambda: len(server.active_sessions) == 1)

            second.send(b'still alive\n')
            assert b'still alive' in read_until(second, b'still alive')
        finally:
            client.close()

    def test_slow_session_setup_does_not_stall_siblings(self, gateway, client_key):
        server = gateway(resolver=SlowAfterFirstResolver(delay=3.0))
        client = connect(server, client_key)
        try:
            first = client.invoke_shell()
            first.send(b'warm up\n')
            assert b'warm up' in read_until(first, b'warm up')

            opener = threading.Thread(target=client.invoke_shell, daemon=True)
            opener.start()
            time.sleep(0.5)

            started = time.monotonic()
            first.send(b'echo-during-slow\n')
            output = read_until(first, b'echo-during-slow')
            assert b'echo-during-slow' in output
            assert time.monotonic() - started < 1.5
            opener.join(10)
        finally:
            client.close()

    def test_exec_request_is_refused(self, gateway, client_key):
        server = gateway()
        client = connect(server, client_key)
        try:
            chan = client.get_transport().open_session()
            with pytest.raises(paramiko.SSHException):
                chan.exec_command("id")
        finally:
            client.close()

    def test_server_stop_tears_sessions_down(self, identity, client_key):
        server = start_gateway(identity, MagicMock(), StaticCommandResolver("cat"))
        client = connect(server, client_key)
        try:
            client.invoke_shell()
            assert eventually(lambda: len(server.active_sessions) == 1)
            session = next(iter(server.active_sessions.values()))

            server.stop()
            assert session.wait_closed(10)
            assert server.active_sessions == {}
        finally:
            client.close()

    def test_stopped_server_drops_connections(self, identity, client_key):
        server = start_gateway(identity, MagicMock(), StaticCommandResolver("cat"))
        client = connect(server, client_key)
        try:
            assert eventually(lambda: len(server.transports) == 1)
            server.stop()

            transport = client.get_transport()
            assert eventually(lambda: not transport.is_active())
            with pytest.raises(paramiko.SSHException):
                client.invoke_shell()
            time.sleep(0.5)
            assert server.active_sessions == {}
            assert eventually(lambda: server.transports == set())
        finally:
            client.close()


class TestChannelRejection:
    """Tests for unsupported channel types."""

    def test_x11_channel_is_rejected(self, gateway, client_key):
        resolver = MagicMock()
        server = gateway(resolver=resolver)
        client = connect(server, client_key)
        try:
            with pytest.raises(paramiko.ChannelException) as exc:
                client.get_transport().open_channel("x11")
            assert exc.value.code == paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE
            resolver.resolve.assert_not_called()
            assert server.active_sessions == {}
        finally:
            client.close()
