"""
Remote secret stores -- where the env file's secrets end up.

Two kinds of store differ in what they reveal:

Value-visible (Convex): listing returns names and current values, so an
unchanged secret can be recognised and skipped.
Value-opaque (Wrangler): listing returns names only, so every secret that
exists on both sides has to be rewritten.

Both are driven through their command line tools. The reconcilers only
see the abstract interfaces, so tests swap in in-memory stores.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
import tomllib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Set

from .config import ConfigError

logger = logging.getLogger("envtool.core.backends")

NPX: List[str] = ["npx"]

_CONVEX_LINE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


class BackendError(Exception):
    """A remote store command failed."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output

    def __str__(self) -> str:
        message = super().__str__()
        if self.output:
            return f"{message}: {self.output}"
        return message


class SecretStore(ABC):
    """Write side shared by every remote store."""

    name: str = "store"

    @abstractmethod
    def bulk_write(self, secrets: Dict[str, str], env: Optional[str]) -> None:
        """Create or overwrite ``secrets`` in one batch.

        Raises:
            BackendError: If any secret could not be written.
        """

    @abstractmethod
    def delete(self, key: str, env: Optional[str]) -> None:
        """Delete a single secret.

        Raises:
            BackendError: If the delete failed.
        """


class ValueVisibleStore(SecretStore):
    """A store whose listing includes secret values."""

    @abstractmethod
    def list_secrets(self, env: Optional[str]) -> Dict[str, str]:
        """Return every secret of ``env`` as name -> value."""


class ValueOpaqueStore(SecretStore):
    """A store whose listing only reveals secret names."""

    @abstractmethod
    def list_secret_names(self, env: Optional[str]) -> Set[str]:
        """Return the names of every secret of ``env``."""


def _run(args: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    logger.debug("running %s", " ".join(args[:4]))
    try:
        return subprocess.run(args, cwd=cwd, capture_output=True, text=True)
    except OSError as e:
        raise BackendError(f"Cannot run {args[0]}", str(e)) from e


def _diagnostic(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or result.stdout or "").strip()


class ConvexCLI(ValueVisibleStore):
    """Convex deployment environment variables via ``convex env``.

    The ``dev`` environment maps to the default (development) deployment,
    ``prod`` adds ``--prod``.
    """

    name = "convex"

    def __init__(self, command: Optional[List[str]] = None, cwd: Optional[Path] = None):
        self.command = list(command or [*NPX, "convex"])
        self.cwd = cwd

    def _args(self, env: Optional[str], *args: str) -> List[str]:
        argv = [*self.command, "env", *args]
        if env == "prod":
            argv.append("--prod")
        return argv

    def list_secrets(self, env: Optional[str]) -> Dict[str, str]:
        result = _run(self._args(env, "list"), self.cwd)
        if result.returncode != 0:
            raise BackendError("convex env list failed", _diagnostic(result))

        secrets = {}
        for line in result.stdout.splitlines():
            match = _CONVEX_LINE.match(line.strip())
            if match:
                secrets[match.group(1)] = match.group(2)
        return secrets

    def bulk_write(self, secrets: Dict[str, str], env: Optional[str]) -> None:
        failures = []
        for key, value in secrets.items():
            result = _run(self._args(env, "set", key, value), self.cwd)
            if result.returncode != 0:
                failures.append(f"{key}: {_diagnostic(result)}")

        if failures:
            raise BackendError(
                f"convex env set failed for {len(failures)} of {len(secrets)} keys",
                "; ".join(failures),
            )

    def delete(self, key: str, env: Optional[str]) -> None:
        result = _run(self._args(env, "remove", key), self.cwd)
        if result.returncode != 0:
            raise BackendError(f"convex env remove {key} failed", _diagnostic(result))


class WranglerCLI(ValueOpaqueStore):
    """Cloudflare Worker secrets via ``wrangler secret``.

    Commands run from the directory holding the wrangler config. ``env``
    is the Wrangler named environment, or None for the top-level worker.
    """

    name = "wrangler"

    def __init__(self, config_path: str, command: Optional[List[str]] = None):
        self.config_path = Path(config_path).resolve()
        self.cwd = self.config_path.parent
        self.command = list(command or [*NPX, "wrangler"])

    def _args(self, env: Optional[str], *args: str) -> List[str]:
        argv = [*self.command, "secret", *args, "--config", str(self.config_path)]
        if env:
            argv.extend(["--env", env])
        return argv

    def list_secret_names(self, env: Optional[str]) -> Set[str]:
        result = _run(self._args(env, "list", "--format", "json"), self.cwd)
        if result.returncode != 0:
            raise BackendError("wrangler secret list failed", _diagnostic(result))

        try:
            secrets = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise BackendError("wrangler secret list returned invalid JSON", result.stdout[:200]) from e

        return {entry["name"] for entry in secrets if isinstance(entry, dict) and "name" in entry}

    def bulk_write(self, secrets: Dict[str, str], env: Optional[str]) -> None:
        # wrangler reads the batch from a JSON file
        fd, temp_path = tempfile.mkstemp(prefix="envtool-secrets-", suffix=".json")
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(secrets, f)
            result = _run(self._args(env, "bulk", temp_path), self.cwd)
        finally:
            os.unlink(temp_path)

        if result.returncode != 0:
            raise BackendError("wrangler secret bulk failed", _diagnostic(result))

    def delete(self, key: str, env: Optional[str]) -> None:
        result = _run(self._args(env, "delete", key, "--force"), self.cwd)
        if result.returncode != 0:
            raise BackendError(f"wrangler secret delete {key} failed", _diagnostic(result))


def strip_jsonc(text: str) -> str:
    """Remove // and /* */ comments and trailing commas from JSONC text."""
    out = []
    i = 0
    in_string = False
    while i < len(text):
        char = text[i]
        if in_string:
            out.append(char)
            if char == '\\' and i + 1 < len(text):
                out.append(text[i + 1])
                i += 2
                continue
            if char == '"':
                in_string = False
            i += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
            i += 1
        elif text.startswith('//', i):
            end = text.find('\n', i)
            i = len(text) if end == -1 else end
        elif text.startswith('/*', i):
            end = text.find('*/', i + 2)
            i = len(text) if end == -1 else end + 2
        elif char == ',' and _next_token(text, i + 1) in ('}', ']'):
            i += 1
        else:
            out.append(char)
            i += 1

    return ''.join(out)


def _next_token(text: str, i: int) -> str:
    """First character at or after ``i`` that is not whitespace or a comment."""
    while i < len(text):
        if text[i].isspace():
            i += 1
        elif text.startswith('//', i):
            end = text.find('\n', i)
            i = len(text) if end == -1 else end
        elif text.startswith('/*', i):
            end = text.find('*/', i + 2)
            i = len(text) if end == -1 else end + 2
        else:
            return text[i]
    return ''


def read_wrangler_environments(config_path: str) -> List[str]:
    """
    List the named environments declared in a wrangler config.

    Supports wrangler.toml, wrangler.json and wrangler.jsonc. A missing
    file declares no environments.
    """
    path = Path(config_path)
    if not path.exists():
        logger.debug("wrangler config %s not found", config_path)
        return []

    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read {path.name}: {e}") from e

    try:
        if path.suffix == ".toml":
            data = tomllib.loads(text)
        else:
            data = json.loads(strip_jsonc(text))
    except (tomllib.TOMLDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot parse {path.name}: {e}") from e

    envs = data.get("env") if isinstance(data, dict) else None
    if not isinstance(envs, dict):
        return []
    return sorted(envs.keys())
