"""
envtool - per-environment secrets manager

Keeps encrypted .env.development / .env.production files in sync with
Convex and Cloudflare Wrangler secrets, and generates typed accessors.
"""

__version__ = "0.1.2"

from .core import config, excludes, syncer

__all__ = [
    "config",
    "excludes",
    "syncer",
]
