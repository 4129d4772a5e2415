import os
from dataclasses import dataclass
from typing import Optional

# ========= Static config =========
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 2200
DEFAULT_HOST_KEY_PATH = "id_rsa"
DEFAULT_USERS_DIR = "shellgate_users"
DEFAULT_POD = "hello-minikube-938614450-z5tbt"
LISTEN_BACKLOG = 100

BUFFER_SIZE = 4096
AUTH_TIMEOUT = 60              # seconds from key exchange to successful auth
AUTH_POLL_INTERVAL = 0.1
ACCEPT_POLL_INTERVAL = 1.0     # dispatcher wake-up to notice a dead transport
PTY_POLL_INTERVAL = 0.1
COPY_JOIN_TIMEOUT = 2.0
CHILD_EXIT_TIMEOUT = 5.0

DEFAULT_TERM = "xterm-256color"
DEFAULT_COLUMNS = 80
DEFAULT_ROWS = 24


# ========= Runtime Configuration =========
@dataclass
class GatewayConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    host_key_path: str = DEFAULT_HOST_KEY_PATH
    users_dir: str = DEFAULT_USERS_DIR
    command: Optional[str] = None
    pod: str = DEFAULT_POD
    debug: bool = False

    def load_from_env(self) -> "GatewayConfig":
        self.host = os.environ.get("SHELLGATE_HOST", self.host)
        self.port = int(os.environ.get("SHELLGATE_PORT", self.port))
        self.host_key_path = os.environ.get("SHELLGATE_HOST_KEY", self.host_key_path)
        self.users_dir = os.environ.get("SHELLGATE_USERS_DIR", self.users_dir)
        self.command = os.environ.get("SHELLGATE_COMMAND", self.command)
        self.pod = os.environ.get("SHELLGATE_POD", self.pod)

        debug_env = os.environ.get("SHELLGATE_DEBUG")
        if debug_env is not None:
            self.debug = debug_env.lower() in ("true", "1", "yes")
        return self
