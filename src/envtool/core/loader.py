"""
Loading of encrypted env files into plain EnvRecords.

Plain files are read with the lexer alone. Files holding ``encrypted:``
values are handed to dotenvx together with the matching private key,
looked up in .env.keys first and in the process environment second.
"""

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .config import Config
from .inference import is_encrypted
from .lexer import get_keys, parse, set_value, write

logger = logging.getLogger("envtool.core.loader")

EnvRecord = Dict[str, str]

KEYS_FILE = ".env.keys"
PRIVATE_KEY_VAR = "DOTENV_PRIVATE_KEY"
DOTENVX_COMMAND: List[str] = ["npx", "dotenvx"]


class EnvFileError(Exception):
    """An env file is missing or could not be decrypted."""


def get_env_file_path(config: Config, env: str) -> str:
    """Path of the env file configured for ``env`` (dev | prod)."""
    files = config.env_files
    return files.dev if env == "dev" else files.prod


def _private_key_names(env_path: str) -> List[str]:
    suffix = "PRODUCTION" if "production" in Path(env_path).name else "DEVELOPMENT"
    return [f"{PRIVATE_KEY_VAR}_{suffix}", PRIVATE_KEY_VAR]


def resolve_private_key(
    env_path: str,
    keys_path: str = KEYS_FILE,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """
    Find the private key that decrypts ``env_path``.

    The environment-specific key (DOTENV_PRIVATE_KEY_PRODUCTION for files
    named *production*, DOTENV_PRIVATE_KEY_DEVELOPMENT otherwise) is
    preferred over the generic DOTENV_PRIVATE_KEY. The keys file is
    consulted before the process environment.

    Returns:
        The key, or None if none is available
    """
    environ = os.environ if environ is None else environ
    names = _private_key_names(env_path)

    keys_file = Path(keys_path)
    if keys_file.exists():
        try:
            keys = get_keys(parse(keys_file.read_text()))
        except (OSError, UnicodeDecodeError) as e:
            raise EnvFileError(f"Cannot read {keys_path}: {e}") from e
        for name in names:
            if keys.get(name):
                return keys[name]

    for name in names:
        if environ.get(name):
            return environ[name]

    return None


class DotenvxCLI:
    """Thin wrapper over the dotenvx command line tool."""

    def __init__(self, command: Optional[List[str]] = None):
        self.command = list(command or DOTENVX_COMMAND)

    def _run(self, args: List[str], private_key: Optional[str] = None) -> str:
        env = dict(os.environ)
        if private_key:
            env[PRIVATE_KEY_VAR] = private_key
        try:
            result = subprocess.run(
                [*self.command, *args],
                capture_output=True,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise EnvFileError(f"dotenvx is not available: {e}") from e

        if result.returncode != 0:
            raise EnvFileError(result.stderr.strip() or f"dotenvx {args[0]} failed")
        return result.stdout

    def decrypt(self, env_path: str, private_key: str) -> EnvRecord:
        """Return every variable of ``env_path`` in plaintext."""
        output = self._run(["get", "-f", env_path, "--format", "json"], private_key)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise EnvFileError(f"Unexpected dotenvx output for {env_path}") from e
        return {str(key): str(value) for key, value in data.items()}

    def set(self, key: str, value: str, env_path: str) -> None:
        """Encrypt and store ``key`` in ``env_path``."""
        self._run(["set", key, value, "-f", env_path])


def load_env_file(
    env_path: str,
    keys_path: str = KEYS_FILE,
    decryptor: Optional[DotenvxCLI] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EnvRecord:
    """
    Load an env file into a key -> plaintext value mapping.

    Args:
        env_path: Path to the (possibly encrypted) env file
        keys_path: Path to the .env.keys file
        decryptor: dotenvx wrapper used for encrypted values
        environ: Process environment consulted for private keys

    Returns:
        EnvRecord with decrypted values where a key was available

    Raises:
        EnvFileError: If the file does not exist or decryption fails
    """
    path = Path(env_path)
    if not path.exists():
        raise EnvFileError(f"File not found: {env_path}")

    try:
        content = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise EnvFileError(f"Cannot read {env_path}: {e}") from e

    record = get_keys(parse(content))
    if not any(is_encrypted(value) for value in record.values()):
        return record

    private_key = resolve_private_key(env_path, keys_path, environ)
    if private_key is None:
        logger.warning("no private key for %s, encrypted values left as-is", env_path)
        return record

    decryptor = decryptor or DotenvxCLI()
    decrypted = decryptor.decrypt(env_path, private_key)
    logger.debug("decrypted %d values from %s", len(decrypted), env_path)
    return {key: decrypted.get(key, value) for key, value in record.items()}


def write_plain_value(env_path: str, key: str, value: str) -> None:
    """Store ``key`` unencrypted, creating the file if needed."""
    path = Path(env_path)
    content = path.read_text() if path.exists() else ""
    path.write_text(write(set_value(parse(content), key, value)))
