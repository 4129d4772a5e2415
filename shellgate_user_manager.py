#!/usr/bin/env python3
"""
Gateway User Manager

This script manages the users allowed through the gateway and the public
keys they authenticate with, and generates the server's host key:
- Registering users
- Adding public keys for key-based authentication
- Listing users
- Removing users
- Generating the host key the server loads at startup

Usage:
  python shellgate_user_manager.py [--users-dir DIR] [command] [options]

Commands:
  add-user           Register a new user
  add-key            Add a public key for a user
  list-users         List all users
  remove-user        Remove a user and their keys
  generate-host-key  Write a new RSA host key
  help               Show this help message

Options depend on the command. Use -h with any command for help.
"""

import argparse
import json
import logging
import os
import sys
import tempfile
import time

from cryptography.exceptions import UnsupportedAlgorithm

from shellgate_config import DEFAULT_HOST_KEY_PATH, DEFAULT_USERS_DIR
from shellgate_core import IdentityVerifier, KeyMaterial
from shellgate_errors import IdentityRejected

logger = logging.getLogger('shellgate.user_manager')

# Constants
USERS_FILE = "users.json"
AUTHORIZED_KEYS_DIR = "authorized_keys"


def setup_directories(users_dir=DEFAULT_USERS_DIR):
    """Create necessary directories if they don't exist."""
    os.makedirs(os.path.join(users_dir, AUTHORIZED_KEYS_DIR), exist_ok=True)

    # Create empty users file if it doesn't exist
    if not os.path.exists(os.path.join(users_dir, USERS_FILE)):
        save_users({}, users_dir)


def load_users(users_dir=DEFAULT_USERS_DIR):
    """
    Load the user registry.

    A missing file is an empty registry. A file that does not parse raises
    json.JSONDecodeError and is left untouched for the operator to repair.
    """
    users_path = os.path.join(users_dir, USERS_FILE)
    try:
        with open(users_path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def save_users(users, users_dir=DEFAULT_USERS_DIR):
    """Replace the user registry in one step; readers never see a partial file."""
    users_path = os.path.join(users_dir, USERS_FILE)
    fd, tmp_path = tempfile.mkstemp(dir=users_dir, prefix=".users-", suffix=".json")
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(users, f, indent=2)
        os.replace(tmp_path, users_path)
    except Exception:
        os.unlink(tmp_path)
        raise


def _key_path(username, users_dir):
    return os.path.join(users_dir, AUTHORIZED_KEYS_DIR, f"{username}.pub")


def load_authorized_keys(username, users_dir=DEFAULT_USERS_DIR):
    """Load authorized key lines for a user."""
    key_path = _key_path(username, users_dir)
    keys = []

    if os.path.exists(key_path):
        with open(key_path, 'r') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    keys.append(line)

    return keys


def save_authorized_key(username, key_data, users_dir=DEFAULT_USERS_DIR):
    """Append an authorized key line for a user."""
    with open(_key_path(username, users_dir), 'a') as f:
        f.write(key_data.strip() + "\n")


def key_blob(key_line):
    """The base64 key blob of an OpenSSH public key line ("type blob [comment]")."""
    fields = key_line.split()
    if len(fields) >= 2:
        return fields[1]
    return fields[0] if fields else ""


class AuthorizedKeysVerifier(IdentityVerifier):
    """Accepts a key when it is listed in the user's authorized keys file."""

    def __init__(self, users_dir=DEFAULT_USERS_DIR):
        self.users_dir = users_dir

    def verify(self, username, public_key_b64):
        try:
            users = load_users(self.users_dir)
        except json.JSONDecodeError as e:
            raise IdentityRejected(username, f"user registry unreadable ({e})") from e
        if username not in users:
            raise IdentityRejected(username, "unknown user")

        for line in load_authorized_keys(username, self.users_dir):
            if key_blob(line) == public_key_b64:
                return
        raise IdentityRejected(username, "key not authorized")


def add_user(args):
    """Register a new user."""
    username = args.username
    users = load_users(args.users_dir)

    if username in users:
        logger.error(f"User '{username}' already exists")
        return False

    users[username] = {"created": time.strftime("%Y-%m-%d %H:%M:%S")}
    save_users(users, args.users_dir)

    logger.info(f"User '{username}' added successfully")
    return True


def add_key(args):
    """Add a public key for a user."""
    username = args.username
    users = load_users(args.users_dir)

    if username not in users:
        logger.error(f"User '{username}' does not exist")
        return False

    if args.key_file:
        try:
            with open(args.key_file, 'r') as f:
                key_data = f.read().strip()
        except FileNotFoundError:
            logger.error(f"Key file not found: {args.key_file}")
            return False
        try:
            KeyMaterial.load_public_key(key_data.encode('utf-8'))
        except (ValueError, UnsupportedAlgorithm) as e:
            logger.error(f"Not an OpenSSH public key: {args.key_file} ({e})")
            return False
    elif args.generate:
        private_key, public_key = KeyMaterial.generate_keys()

        private_key_path = f"{username}_id_rsa"
        with open(private_key_path, 'wb') as f:
            f.write(KeyMaterial.serialize_private_key(private_key, openssh=True))
        os.chmod(private_key_path, 0o600)

        key_data = KeyMaterial.serialize_public_key(public_key).decode('utf-8') + f" {username}"

        logger.info(f"Generated new key pair for {username}")
        logger.info(f"Private key saved to {private_key_path}")
    else:
        logger.error("Either --key-file or --generate must be specified")
        return False

    save_authorized_key(username, key_data, args.users_dir)

    logger.info(f"Public key added for user '{username}'")
    return True


def list_users(args):
    """List all users."""
    users = load_users(args.users_dir)

    if not users:
        print("No users found")
        return

    print("Users:")
    for username in users:
        keys = load_authorized_keys(username, args.users_dir)
        key_status = f"{len(keys)} authorized key(s)" if keys else "No authorized keys"
        print(f"- {username} ({key_status})")


def remove_user(args):
    """Remove a user and their authorized keys."""
    username = args.username
    users = load_users(args.users_dir)

    if username not in users:
        logger.error(f"User '{username}' does not exist")
        return False

    del users[username]
    save_users(users, args.users_dir)

    key_path = _key_path(username, args.users_dir)
    if os.path.exists(key_path):
        os.remove(key_path)

    logger.info(f"User '{username}' removed successfully")
    return True


def generate_host_key(args):
    """Write a new RSA host key for the server."""
    if os.path.exists(args.path) and not args.force:
        logger.error(f"Host key already exists: {args.path} (use --force to replace it)")
        return False

    private_key, _ = KeyMaterial.generate_keys(args.bits)
    with open(args.path, 'wb') as f:
        f.write(KeyMaterial.serialize_private_key(private_key))
    os.chmod(args.path, 0o600)

    logger.info(f"Host key written to {args.path}")
    return True


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Gateway User Manager')
    parser.add_argument('--users-dir', default=DEFAULT_USERS_DIR, help='Directory holding users and keys')
    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    add_user_parser = subparsers.add_parser('add-user', help='Register a new user')
    add_user_parser.add_argument('username', help='Username to add')

    add_key_parser = subparsers.add_parser('add-key', help='Add a public key for a user')
    add_key_parser.add_argument('username', help='Username to add key for')
    key_group = add_key_parser.add_mutually_exclusive_group(required=True)
    key_group.add_argument('--key-file', help='Path to OpenSSH public key file')
    key_group.add_argument('--generate', action='store_true', help='Generate a new key pair')

    subparsers.add_parser('list-users', help='List all users')

    remove_user_parser = subparsers.add_parser('remove-user', help='Remove a user')
    remove_user_parser.add_argument('username', help='Username to remove')

    host_key_parser = subparsers.add_parser('generate-host-key', help='Write a new RSA host key')
    host_key_parser.add_argument('--path', default=DEFAULT_HOST_KEY_PATH, help='Where to write the key')
    host_key_parser.add_argument('--bits', type=int, default=2048, help='RSA key size')
    host_key_parser.add_argument('--force', action='store_true', help='Overwrite an existing key')

    return parser.parse_args(argv)


def main(argv=None):
    """Main function to run the user manager."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = parse_arguments(argv)

    setup_directories(args.users_dir)

    commands = {
        'add-user': add_user,
        'add-key': add_key,
        'list-users': list_users,
        'remove-user': remove_user,
        'generate-host-key': generate_host_key,
    }
    command = commands.get(args.command)
    if command is None:
        print(__doc__)
        return 0
    try:
        return 0 if command(args) is not False else 1
    except json.JSONDecodeError as e:
        logger.error(f"Users file corrupted, fix or remove it first ({e})")
        return 1


if __name__ == "__main__":
    sys.exit(main())
