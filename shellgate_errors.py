"""
Exceptions raised across the gateway.

Startup failures (ServerIdentityError) are fatal; every other error is
handled at the smallest enclosing scope: the connection, the channel or the
session it belongs to.
"""


class ShellGateError(Exception):
    """Base class for gateway errors."""


class ServerIdentityError(ShellGateError):
    """Host key material is missing or cannot be parsed."""


class IdentityRejected(ShellGateError):
    """The identity verifier refused a (user, public key) pair."""

    def __init__(self, username: str, reason: str):
        super().__init__(f"{username}: {reason}")
        self.username = username
        self.reason = reason


class CommandResolutionError(ShellGateError):
    """No command could be resolved for an authenticated user."""


class PtyStartError(ShellGateError):
    """Pseudo-terminal allocation or child process spawn failed."""


class RequestDecodeError(ShellGateError):
    """A channel request payload does not match its wire layout."""
