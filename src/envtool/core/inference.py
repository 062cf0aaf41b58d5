"""
Classification of decrypted env values.

Derives the structured view of an EnvRecord used by listings and type
generation:
- scope: public (safe to ship to client code) or private
- encrypted: the value could not be decrypted and is still ciphertext
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Sequence

from .excludes import BUILTIN_EXCLUDE_PREFIXES


DEFAULT_PUBLIC_PREFIXES = ("VITE_", "PUBLIC_")

ENCRYPTED_PREFIX = "encrypted:"
ENCRYPTED_PLACEHOLDER = "(encrypted)"

_URL_RE = re.compile(r"^[a-z][a-z0-9+.-]*://\S+$", re.IGNORECASE)


@dataclass
class EnvVar:
    """A single variable with its derived scope."""
    key: str
    value: str
    scope: str  # "public" or "private"
    encrypted: bool = False

    @property
    def is_public(self) -> bool:
        return self.scope == "public"


def is_encrypted(value: str) -> bool:
    """Determine if a value is still dotenvx ciphertext."""
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


def infer_scope(key: str, public_prefixes: Sequence[str] = DEFAULT_PUBLIC_PREFIXES) -> str:
    """
    Classify a key as public or private.

    Args:
        key: Variable name
        public_prefixes: Prefixes that mark a variable as client-visible

    Returns:
        "public" or "private"
    """
    if any(key.startswith(prefix) for prefix in public_prefixes):
        return "public"
    return "private"


def looks_like_url(value: str) -> bool:
    return bool(value) and _URL_RE.match(value) is not None


def parse_env_vars(
    record: Dict[str, str],
    public_prefixes: Sequence[str] = DEFAULT_PUBLIC_PREFIXES,
) -> List[EnvVar]:
    """
    Turn a decrypted record into a sorted list of EnvVar.

    Built-in bookkeeping keys are skipped, and values that are still
    encrypted are masked.
    """
    env_vars = []
    for key, value in record.items():
        if key.startswith(BUILTIN_EXCLUDE_PREFIXES):
            continue

        encrypted = is_encrypted(value)
        env_vars.append(EnvVar(
            key=key,
            value=ENCRYPTED_PLACEHOLDER if encrypted else value,
            scope=infer_scope(key, public_prefixes),
            encrypted=encrypted,
        ))

    return sorted(env_vars, key=lambda var: var.key)


def count_scopes(env_vars: List[EnvVar]) -> Dict[str, int]:
    public = sum(1 for var in env_vars if var.is_public)
    return {"public": public, "private": len(env_vars) - public}
