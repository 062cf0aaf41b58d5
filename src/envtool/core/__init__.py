"""
envtool core modules.

Includes:
- lexer: Token-based .env file parsing
- excludes: Glob exclusion of variable names
- inference: Public/private scope and encryption detection
- config: env.config.toml loading
- loader: Decryption of env files into records
- backends: Convex and Wrangler secret stores
- syncer: Reconciliation of records against remote stores
- typegen: TypeScript accessor generation
- orchestrator: Per-environment sync runs and watch mode
- discovery: process.env usage scanning
- scaffold: Project init, symlinks and GitHub Actions keys
"""

from . import lexer
from . import excludes
from . import inference
from . import config
from . import loader
from . import backends
from . import syncer
from . import typegen
from . import discovery
from . import scaffold
from . import orchestrator

__all__ = [
    "lexer",
    "excludes",
    "inference",
    "config",
    "loader",
    "backends",
    "syncer",
    "typegen",
    "discovery",
    "scaffold",
    "orchestrator",
]
