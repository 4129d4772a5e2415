"""
Command resolution: which process an authenticated user gets attached to.

The gateway treats resolvers as an external capability. The placeholder
resolver attaches everyone to the same pod shell and only exists for local
testing; deployments supply a resolver that maps identity to an authorized
command.
"""

import logging
import shlex
import shutil
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from shellgate_config import DEFAULT_POD
from shellgate_errors import CommandResolutionError

logger = logging.getLogger('shellgate.commands')


@dataclass(frozen=True)
class ProcessSpec:
    """Executable plus arguments to run for one session."""
    program: str
    args: Sequence[str] = ()
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]


class CommandResolver:
    """Maps an authenticated user identifier to a ProcessSpec."""

    def resolve(self, username: str) -> ProcessSpec:
        raise NotImplementedError


class PlaceholderCommandResolver(CommandResolver):
    """Runs an interactive shell in a fixed Kubernetes pod for every user."""

    def __init__(self, pod: str = DEFAULT_POD, kubectl: str = "kubectl", shell: str = "/bin/bash"):
        self.pod = pod
        self.kubectl = kubectl
        self.shell = shell

    def resolve(self, username: str) -> ProcessSpec:
        logger.info(f"Resolving placeholder command for {username}")
        return ProcessSpec(
            self.kubectl,
            ("exec", "-it", self.pod, self.shell),
            {"SHELLGATE_USER": username},
        )


class StaticCommandResolver(CommandResolver):
    """Runs the same local command line for every user."""

    def __init__(self, command: str, env: Optional[Dict[str, str]] = None):
        self.argv = shlex.split(command)
        self.env = dict(env or {})

    def resolve(self, username: str) -> ProcessSpec:
        if not self.argv:
            raise CommandResolutionError("Empty command line")

        program = shutil.which(self.argv[0])
        if program is None:
            raise CommandResolutionError(f"Command not found: {self.argv[0]}")

        env = dict(self.env)
        env["SHELLGATE_USER"] = username
        return ProcessSpec(program, tuple(self.argv[1:]), env)
