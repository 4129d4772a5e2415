"""
Remote shell gateway: listener, handshake and channel dispatch.

The gateway accepts SSH connections, authenticates clients by public key
against an identity verifier, and attaches every interactive channel to a
pseudo-terminal running the command resolved for the user:

- Host keys are loaded once at startup (ServerIdentity)
- paramiko performs the handshake; GatewayServerInterface answers its
  authentication and channel callbacks
- ChannelDispatcher turns accepted channels into Sessions, one thread each
- GatewayServer runs the accept loop and tracks active sessions

Usage:
- Run the server: python shellgate_server.py
- Manage users and keys: python shellgate_user_manager.py
"""

import base64
import io
import logging
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Set, Tuple

import paramiko
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from shellgate_commands import CommandResolver
from shellgate_config import (
    ACCEPT_POLL_INTERVAL, AUTH_POLL_INTERVAL, AUTH_TIMEOUT, DEFAULT_HOST,
    DEFAULT_HOST_KEY_PATH, DEFAULT_PORT, LISTEN_BACKLOG
)
from shellgate_errors import IdentityRejected, ServerIdentityError
from shellgate_session import ChannelRequest, RequestStream, Session, accepts_request

logger = logging.getLogger('shellgate')

SESSION_CHANNEL = "session"


class KeyMaterial:
    """Key generation, serialization and loading helpers."""

    @staticmethod
    def generate_keys(key_size: int = 2048) -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
        """Generate RSA key pair."""
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return private_key, private_key.public_key()

    @staticmethod
    def serialize_private_key(private_key, openssh: bool = False) -> bytes:
        """Serialize private key to unencrypted PEM (PKCS8, or OpenSSH format)."""
        fmt = serialization.PrivateFormat.OpenSSH if openssh else serialization.PrivateFormat.PKCS8
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=fmt,
            encryption_algorithm=serialization.NoEncryption()
        )

    @staticmethod
    def serialize_public_key(public_key) -> bytes:
        """Serialize public key to an OpenSSH ``type base64`` line."""
        return public_key.public_bytes(
            encoding=serialization.Encoding.OpenSSH,
            format=serialization.PublicFormat.OpenSSH
        )

    @staticmethod
    def load_public_key(key_data: bytes):
        """Load public key from an OpenSSH public key line."""
        return serialization.load_ssh_public_key(key_data)

    @staticmethod
    def load_private_key(key_data: bytes, password: Optional[bytes] = None):
        """Load private key from PEM or OpenSSH-format data."""
        if b"BEGIN OPENSSH PRIVATE KEY" in key_data:
            return serialization.load_ssh_private_key(key_data, password=password)
        return serialization.load_pem_private_key(key_data, password=password)

    @staticmethod
    def to_host_key(private_key) -> paramiko.PKey:
        """Wrap a cryptography private key for paramiko's transport."""
        if isinstance(private_key, rsa.RSAPrivateKey):
            return paramiko.RSAKey(key=private_key)
        if isinstance(private_key, ec.EllipticCurvePrivateKey):
            return paramiko.ECDSAKey(vals=(private_key, private_key.public_key()))
        if isinstance(private_key, ed25519.Ed25519PrivateKey):
            pem = KeyMaterial.serialize_private_key(private_key, openssh=True)
            return paramiko.Ed25519Key(file_obj=io.StringIO(pem.decode('ascii')))
        raise ServerIdentityError(f"Unsupported host key type: {type(private_key).__name__}")


class ServerIdentity:
    """Host keys proving the server's identity. Immutable once loaded."""

    def __init__(self, keys: Sequence[paramiko.PKey]):
        if not keys:
            raise ServerIdentityError("No host keys configured")
        self.keys = tuple(keys)

    @classmethod
    def load(cls, *paths: str, password: Optional[bytes] = None) -> 'ServerIdentity':
        keys = []
        for path in paths or (DEFAULT_HOST_KEY_PATH,):
            try:
                key_data = Path(path).read_bytes()
            except OSError as e:
                raise ServerIdentityError(f"Failed to load private key ({path}): {e}") from e
            try:
                private_key = KeyMaterial.load_private_key(key_data, password)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                raise ServerIdentityError(f"Failed to parse private key ({path}): {e}") from e
            keys.append(KeyMaterial.to_host_key(private_key))
        return cls(keys)


class IdentityVerifier:
    """Accepts a (user, base64 public key) pair or raises IdentityRejected."""

    def verify(self, username: str, public_key_b64: str) -> None:
        raise NotImplementedError


def pack_pty_request(term, width: int, height: int, pixelwidth: int = 0,
                     pixelheight: int = 0, modes=b'') -> bytes:
    """Re-encode a decoded pty-req in its wire layout."""
    m = paramiko.Message()
    m.add_string(term)
    m.add_int(width)
    m.add_int(height)
    m.add_int(pixelwidth)
    m.add_int(pixelheight)
    m.add_string(modes)
    return m.asbytes()


def pack_window_change(width: int, height: int, pixelwidth: int = 0, pixelheight: int = 0) -> bytes:
    """Re-encode a decoded window-change in its wire layout."""
    m = paramiko.Message()
    m.add_int(width)
    m.add_int(height)
    m.add_int(pixelwidth)
    m.add_int(pixelheight)
    return m.asbytes()


class GatewayServerInterface(paramiko.ServerInterface):
    """
    paramiko callbacks for one connection.

    Authenticates by public key through the identity verifier, admits only
    interactive session channels, refuses global requests, and forwards each
    channel's control requests to that channel's RequestStream in wire layout.
    """

    def __init__(self, verifier: IdentityVerifier, logger: Optional[logging.Logger] = None):
        self.verifier = verifier
        self.log = logger or logging.getLogger('shellgate')
        self._streams: Dict[int, RequestStream] = {}
        self._lock = threading.Lock()

    def get_allowed_auths(self, username):
        return "publickey"

    def check_auth_publickey(self, username, key):
        public_key_b64 = base64.b64encode(key.asbytes()).decode('ascii')
        try:
            self.verifier.verify(username, public_key_b64)
        except IdentityRejected as e:
            self.log.warning(f"Rejected {key.get_name()} key for {username}: {e.reason}")
            return paramiko.AUTH_FAILED
        except Exception as e:
            self.log.error(f"Identity verification failed for {username} ({e})")
            return paramiko.AUTH_FAILED
        return paramiko.AUTH_SUCCESSFUL

    def check_global_request(self, kind, msg):
        self.log.debug(f"Discarding global request {kind}")
        return False

    def check_channel_request(self, kind, chanid):
        if kind != SESSION_CHANNEL:
            self.log.warning(f"Rejecting channel {chanid}: unknown channel type: {kind}")
            return paramiko.OPEN_FAILED_UNKNOWN_CHANNEL_TYPE
        with self._lock:
            self._streams[chanid] = RequestStream()
        return paramiko.OPEN_SUCCEEDED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        payload = pack_pty_request(term, width, height, pixelwidth, pixelheight, modes)
        return self._forward(channel, ChannelRequest("pty-req", payload, want_reply=True))

    def check_channel_shell_request(self, channel):
        return self._forward(channel, ChannelRequest("shell", b'', want_reply=True))

    def check_channel_exec_request(self, channel, command):
        self.log.warning(f"Refusing exec request on channel {channel.get_id()} ({len(command)} bytes)")
        return False

    def check_channel_window_change_request(self, channel, width, height, pixelwidth, pixelheight):
        payload = pack_window_change(width, height, pixelwidth, pixelheight)
        return self._forward(channel, ChannelRequest("window-change", payload))

    def requests_for(self, chanid: int) -> Optional[RequestStream]:
        with self._lock:
            return self._streams.get(chanid)

    def release_requests(self, chanid: int) -> None:
        with self._lock:
            stream = self._streams.pop(chanid, None)
        if stream is not None:
            stream.close()

    def _forward(self, channel, request: ChannelRequest) -> bool:
        # Runs on the transport thread, which serves every channel of the
        # connection: the reply is decided here and the session applies the
        # request later.
        if not accepts_request(request.kind, request.payload):
            self.log.warning(f"Refusing {request.kind} request on channel {channel.get_id()}")
            return False
        stream = self.requests_for(channel.get_id())
        if stream is None:
            return False
        return stream.put(request)


@dataclass
class AuthenticatedConnection:
    """A transport that completed key exchange and user authentication."""
    transport: paramiko.Transport
    username: str
    remote_address: Tuple
    client_version: str
    interface: GatewayServerInterface


class ChannelDispatcher:
    """Starts one Session per accepted channel of a connection."""

    def __init__(
        self,
        connection: AuthenticatedConnection,
        resolver: CommandResolver,
        on_session: Optional[Callable[[Session], bool]] = None,
        on_close: Optional[Callable[[Session], None]] = None,
        accepting: Optional[Callable[[], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.connection = connection
        self.resolver = resolver
        self.on_session = on_session
        self.on_close = on_close
        self.accepting = accepting or (lambda: True)
        self.log = logger or logging.getLogger('shellgate')

    def serve(self) -> None:
        """Dispatch channels until the transport goes away or the server stops."""
        transport = self.connection.transport
        while transport.is_active() and self.accepting():
            channel = transport.accept(ACCEPT_POLL_INTERVAL)
            if channel is None:
                continue
            self.start_session(channel)
        self.log.info(f"Connection from {self.connection.remote_address} closed")

    def start_session(self, channel) -> Optional[Session]:
        chanid = channel.get_id()
        requests = self.connection.interface.requests_for(chanid)
        if requests is None:
            self.log.error(f"Could not accept channel {chanid} (no request stream)")
            channel.close()
            return None

        session = Session(
            self.connection.username,
            channel,
            requests,
            self.resolver,
            on_close=lambda s: self._session_closed(s, chanid),
            logger=self.log.getChild('session'),
        )
        # on_session returns False once the server no longer takes sessions
        if self.on_session is not None and self.on_session(session) is False:
            self.log.warning(f"Refusing channel {chanid}: server stopping")
            session.close("server stopping")
            return None

        thread = threading.Thread(target=session.run, name=f"session-{session.id}", daemon=True)
        thread.start()
        return session

    def _session_closed(self, session: Session, chanid: int) -> None:
        self.connection.interface.release_requests(chanid)
        if self.on_close is not None:
            self.on_close(session)


class GatewayServer:
    """Accepts SSH connections and hands each one to a ChannelDispatcher."""

    def __init__(
        self,
        identity: ServerIdentity,
        verifier: IdentityVerifier,
        resolver: CommandResolver,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        logger: Optional[logging.Logger] = None,
    ):
        self.identity = identity
        self.verifier = verifier
        self.resolver = resolver
        self.host = host
        self.port = port
        self.log = logger or logging.getLogger('shellgate')
        self.active_sessions: Dict[str, Session] = {}
        self.transports: Set[paramiko.Transport] = set()
        self._sessions_lock = threading.Lock()
        self.socket = None
        self.running = False

    @property
    def address(self) -> Tuple[str, int]:
        return self.socket.getsockname()[:2]

    def bind(self) -> None:
        """Bind the listening socket. Failure here is fatal for the caller."""
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.socket.bind((self.host, self.port))
            self.socket.listen(LISTEN_BACKLOG)
        except OSError:
            self.socket.close()
            self.socket = None
            raise
        self.port = self.address[1]

    def start(self) -> None:
        """Accept connections until stopped."""
        if self.socket is None:
            self.bind()
        self.running = True
        self.log.info(f"Listening on {self.host}:{self.port}...")

        while self.running:
            try:
                conn, client_address = self.socket.accept()
            except OSError as e:
                if not self.running:
                    break
                self.log.error(f"Failed to accept incoming connection ({e})")
                continue

            client_thread = threading.Thread(
                target=self._handle_client,
                args=(conn, client_address),
                daemon=True,
            )
            client_thread.start()

    def stop(self) -> None:
        """Stop accepting, drop every connection and tear down every active session."""
        self.log.info("Stopping gateway...")
        with self._sessions_lock:
            self.running = False

        if self.socket is not None:
            try:
                # wakes a thread blocked in accept()
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                self.log.debug(f"Listening socket shutdown: {e}")
            self.socket.close()

        with self._sessions_lock:
            transports = list(self.transports)
            sessions = list(self.active_sessions.values())
        for transport in transports:
            transport.close()
        for session in sessions:
            session.close("server stopping")

        self.log.info("Gateway stopped")

    def handshake(self, conn: socket.socket, client_address) -> Optional[AuthenticatedConnection]:
        """Run key exchange and wait for authentication. None if either fails."""
        transport = paramiko.Transport(conn)
        for key in self.identity.keys:
            transport.add_server_key(key)
        interface = GatewayServerInterface(self.verifier, logger=self.log)

        try:
            transport.start_server(server=interface)
        except (paramiko.SSHException, EOFError, OSError) as e:
            self.log.error(f"Failed to handshake with {client_address} ({e})")
            transport.close()
            return None

        if not self._wait_for_auth(transport):
            self.log.warning(f"Authentication failed for {client_address}")
            transport.close()
            return None

        connection = AuthenticatedConnection(
            transport=transport,
            username=transport.get_username(),
            remote_address=client_address,
            client_version=transport.remote_version,
            interface=interface,
        )
        self.log.info(
            f"New SSH connection from {client_address} ({connection.client_version}) "
            f"as {connection.username}"
        )
        return connection

    def _wait_for_auth(self, transport: paramiko.Transport) -> bool:
        deadline = time.monotonic() + AUTH_TIMEOUT
        while not transport.is_authenticated():
            if not transport.is_active() or time.monotonic() >= deadline:
                return False
            time.sleep(AUTH_POLL_INTERVAL)
        return True

    def _handle_client(self, conn: socket.socket, client_address) -> None:
        try:
            connection = self.handshake(conn, client_address)
        except Exception as e:
            self.log.error(f"Error handling client {client_address}: {e}")
            conn.close()
            return
        if connection is None:
            conn.close()
            return

        transport = connection.transport
        with self._sessions_lock:
            admitted = self.running
            if admitted:
                self.transports.add(transport)
        if not admitted:
            self.log.info(f"Dropping connection from {client_address}: server stopping")
            transport.close()
            return

        dispatcher = ChannelDispatcher(
            connection,
            self.resolver,
            on_session=self._register_session,
            on_close=self._unregister_session,
            accepting=lambda: self.running,
            logger=self.log,
        )
        try:
            dispatcher.serve()
        finally:
            transport.close()
            with self._sessions_lock:
                self.transports.discard(transport)

    def _register_session(self, session: Session) -> bool:
        with self._sessions_lock:
            if not self.running:
                return False
            self.active_sessions[session.id] = session
            return True

    def _unregister_session(self, session: Session) -> None:
        with self._sessions_lock:
            self.active_sessions.pop(session.id, None)
