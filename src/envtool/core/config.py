"""
Project configuration (env.config.toml).

Every section is optional; a project without a config file gets the
defaults below. Keys may be written in camelCase (``envFiles``,
``publicPrefix``, ``envMapping``) or snake_case.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


CONFIG_FILE = "env.config.toml"

ENVS = ("dev", "prod")
EnvName = Literal["dev", "prod"]
SchemaType = Literal["valibot", "zod", "none"]


class ConfigError(Exception):
    """Configuration is invalid or insufficient for the requested operation."""


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class EnvFilesConfig(_Model):
    """Paths of the encrypted env file per environment."""

    dev: str = ".env.development"
    prod: str = ".env.production"


class TypegenConfig(_Model):
    """Typed accessor generation settings."""

    output: str
    schema_lib: SchemaType = Field(default="valibot", alias="schema")
    public_prefix: List[str] = Field(
        default_factory=lambda: ["VITE_", "PUBLIC_"], alias="publicPrefix"
    )


class ConvexSyncConfig(_Model):
    exclude: List[str] = Field(default_factory=list)


class WranglerEnvMapping(_Model):
    """Local environment -> Wrangler named environment."""

    dev: Optional[str] = None
    prod: Optional[str] = None


class WranglerSyncConfig(_Model):
    """One Cloudflare Worker to sync secrets into."""

    config_path: str = Field(default="./wrangler.jsonc", alias="config")
    exclude: List[str] = Field(default_factory=list)
    env_mapping: Optional[WranglerEnvMapping] = Field(default=None, alias="envMapping")


class SyncConfig(_Model):
    convex: Optional[ConvexSyncConfig] = None
    wrangler: Union[WranglerSyncConfig, List[WranglerSyncConfig], None] = None
    links: List[str] = Field(default_factory=list)

    def wrangler_targets(self) -> List[WranglerSyncConfig]:
        """Normalize the single-or-list ``wrangler`` section to a list."""
        if self.wrangler is None:
            return []
        if isinstance(self.wrangler, list):
            return list(self.wrangler)
        return [self.wrangler]


class Config(_Model):
    env_files: EnvFilesConfig = Field(default_factory=EnvFilesConfig, alias="envFiles")
    typegen: Optional[TypegenConfig] = None
    sync: Optional[SyncConfig] = None

    @property
    def public_prefixes(self) -> List[str]:
        if self.typegen:
            return self.typegen.public_prefix
        return ["VITE_", "PUBLIC_"]

    @property
    def links(self) -> List[str]:
        return self.sync.links if self.sync else []


def resolve_envs(env: str) -> List[str]:
    """Expand an ``-e`` option value (dev | prod | all) to environment names."""
    if env == "all":
        return list(ENVS)
    if env not in ENVS:
        raise ConfigError(f"Unknown environment '{env}' (expected dev, prod or all)")
    return [env]


def parse_config(data: dict) -> Config:
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration:\n{e}") from e


def load_config(config_path: Optional[str] = None, cwd: Optional[Path] = None) -> Config:
    """
    Load and validate the project configuration.

    Args:
        config_path: Explicit config file; defaults to env.config.toml
        cwd: Directory relative paths are resolved against

    Returns:
        Validated Config (defaults when the default file does not exist)
    """
    root = Path(cwd) if cwd else Path.cwd()
    path = Path(config_path) if config_path else Path(CONFIG_FILE)
    if not path.is_absolute():
        path = root / path

    if not path.exists():
        if config_path:
            raise ConfigError(f"Config file not found: {path}")
        return Config()

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Cannot parse {path.name}: {e}") from e

    return parse_config(data)
