#!/usr/bin/env python3
"""
Remote Shell Gateway Server

This script runs the gateway: it accepts SSH connections, authenticates
clients by public key against the authorized keys managed with
shellgate_user_manager.py, and attaches each interactive session to a
pseudo-terminal running the resolved command.

Usage:
  python shellgate_server.py [--host HOST] [--port PORT] [--host-key PATH]
                             [--users-dir DIR] [--command CMD | --pod POD]

Options:
  --host HOST        Host address to bind to [default: 0.0.0.0]
  --port PORT        Port number to listen on [default: 2200]
  --host-key PATH    Server private key [default: id_rsa]
  --users-dir DIR    Users and authorized keys [default: shellgate_users]
  --command CMD      Run CMD for every session instead of the pod shell
  --pod POD          Pod the placeholder resolver attaches sessions to
  --debug            Enable debug logging

Every option can also be set through a SHELLGATE_* environment variable.
"""

import argparse
import logging
import signal
import sys

from shellgate_commands import PlaceholderCommandResolver, StaticCommandResolver
from shellgate_config import GatewayConfig
from shellgate_core import GatewayServer, ServerIdentity
from shellgate_errors import ServerIdentityError
from shellgate_user_manager import AuthorizedKeysVerifier

logger = logging.getLogger('shellgate.server')


def parse_arguments(argv=None, config=None):
    """Parse command line arguments over environment defaults."""
    config = config or GatewayConfig().load_from_env()
    parser = argparse.ArgumentParser(description='Remote Shell Gateway Server')
    parser.add_argument('--host', default=config.host, help='Host address to bind to')
    parser.add_argument('--port', type=int, default=config.port, help='Port number to listen on')
    parser.add_argument('--host-key', dest='host_key_path', default=config.host_key_path,
                        help='Path to the server private key')
    parser.add_argument('--users-dir', default=config.users_dir, help='Directory holding users and keys')
    resolver_group = parser.add_mutually_exclusive_group()
    resolver_group.add_argument('--command', default=config.command,
                                help='Command line to run for every session')
    resolver_group.add_argument('--pod', default=config.pod,
                                help='Pod the placeholder resolver attaches sessions to')
    parser.add_argument('--debug', action='store_true', default=config.debug, help='Enable debug logging')

    args = parser.parse_args(argv)
    return GatewayConfig(
        host=args.host,
        port=args.port,
        host_key_path=args.host_key_path,
        users_dir=args.users_dir,
        command=args.command,
        pod=args.pod,
        debug=args.debug,
    )


def build_resolver(config):
    if config.command:
        return StaticCommandResolver(config.command)
    return PlaceholderCommandResolver(pod=config.pod)


def setup_signal_handlers(server):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        server.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def main(argv=None):
    """Main function to run the gateway."""
    config = parse_arguments(argv)

    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        identity = ServerIdentity.load(config.host_key_path)
    except ServerIdentityError as e:
        logger.error(f"{e} (generate one with: shellgate_user_manager.py generate-host-key)")
        return 1

    server = GatewayServer(
        identity,
        AuthorizedKeysVerifier(config.users_dir),
        build_resolver(config),
        host=config.host,
        port=config.port,
    )

    try:
        server.bind()
    except OSError as e:
        logger.error(f"Failed to listen on {config.host}:{config.port} ({e})")
        return 1

    setup_signal_handlers(server)
    server.start()
    return 0


if __name__ == "__main__":
    sys.exit(main())
