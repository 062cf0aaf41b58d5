"""
Reconciliation of a local EnvRecord against a remote secret store.

Each sync computes a DiffResult of three disjoint key lists:
- added: present locally, absent remotely
- updated: present on both sides and (possibly) different
- removed: absent locally, present remotely

Keys matched by the target's exclude patterns or a built-in prefix are
dropped from both sides before classification. Applying a diff writes
``added + updated`` in one batch first and deletes ``removed`` one key at
a time afterwards; a failed write does not stop the deletes.

When the remote listing fails the remote side is treated as empty, so
every local key shows up as added and nothing is removed. The sync still
reports what it would push, and ``remote_read_failed`` marks the result.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .backends import BackendError, SecretStore, ValueOpaqueStore, ValueVisibleStore
from .config import ConfigError, ConvexSyncConfig, WranglerSyncConfig
from .excludes import filter_keys, filter_record

logger = logging.getLogger("envtool.core.syncer")


@dataclass
class DiffResult:
    """Keys to add, update and remove on a remote store."""
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.added) + len(self.updated) + len(self.removed)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def to_dict(self) -> Dict[str, List[str]]:
        return {"added": self.added, "updated": self.updated, "removed": self.removed}


@dataclass
class SyncOutcome:
    """Result of syncing one environment to one target."""
    target: str
    env: str
    diff: DiffResult = field(default_factory=DiffResult)
    dry_run: bool = False
    remote_env: Optional[str] = None
    remote_read_failed: bool = False
    errors: List[str] = field(default_factory=list)
    skipped: Optional[str] = None

    @property
    def failed(self) -> bool:
        return bool(self.errors)


def classify_against_values(local: Dict[str, str], remote: Dict[str, str]) -> DiffResult:
    """
    Diff against a store that reveals values.

    Keys with equal values on both sides are no-ops and appear nowhere in
    the result.
    """
    diff = DiffResult()
    for key in sorted(set(local) | set(remote)):
        if key not in remote:
            diff.added.append(key)
        elif key not in local:
            diff.removed.append(key)
        elif local[key] != remote[key]:
            diff.updated.append(key)
    return diff


def classify_against_names(local: Dict[str, str], remote_names: Set[str]) -> DiffResult:
    """
    Diff against a store that only reveals names.

    Every key present on both sides is reported as updated: the store
    cannot prove the value unchanged, so some of these are false positives.
    """
    diff = DiffResult()
    for key in sorted(set(local) | remote_names):
        if key not in remote_names:
            diff.added.append(key)
        elif key not in local:
            diff.removed.append(key)
        else:
            diff.updated.append(key)
    return diff


@dataclass
class DiffEntry:
    """One differing key between two records."""
    key: str
    left: Optional[str]
    right: Optional[str]
    status: str  # added | removed | changed


def compare_records(
    left: Dict[str, str],
    right: Dict[str, str],
    exclude: Sequence[str] = (),
) -> List[DiffEntry]:
    """
    Compare two decrypted records key by key.

    A key only in ``right`` is "added", only in ``left`` is "removed".
    Equal keys are left out.
    """
    left = filter_record(left, exclude)
    right = filter_record(right, exclude)

    entries = []
    for key in sorted(set(left) | set(right)):
        if key not in left:
            entries.append(DiffEntry(key, None, right[key], "added"))
        elif key not in right:
            entries.append(DiffEntry(key, left[key], None, "removed"))
        elif left[key] != right[key]:
            entries.append(DiffEntry(key, left[key], right[key], "changed"))
    return entries


def apply_diff(
    store: SecretStore,
    local: Dict[str, str],
    diff: DiffResult,
    remote_env: Optional[str],
) -> List[str]:
    """
    Push a diff to a store, writes first, then deletes.

    Returns:
        Error messages for every failed write batch or delete
    """
    errors = []

    to_write = {key: local[key] for key in [*diff.added, *diff.updated]}
    if to_write:
        try:
            store.bulk_write(to_write, remote_env)
        except BackendError as e:
            logger.warning("%s: writing %d secrets failed: %s", store.name, len(to_write), e)
            errors.append(f"write failed: {e}")

    for key in diff.removed:
        try:
            store.delete(key, remote_env)
        except BackendError as e:
            logger.warning("%s: deleting %s failed: %s", store.name, key, e)
            errors.append(f"delete {key} failed: {e}")

    return errors


class ConvexSyncer:
    """
    Syncs an EnvRecord to Convex deployment environment variables.

    Convex lists values, so unchanged keys are skipped entirely.
    """

    target = "convex"

    def __init__(self, store: ValueVisibleStore, config: Optional[ConvexSyncConfig] = None):
        self.store = store
        self.exclude = list(config.exclude) if config else []

    def fetch(self, env: str) -> Tuple[Dict[str, str], bool]:
        """Return the remote secrets and whether the listing failed."""
        try:
            return self.store.list_secrets(env), False
        except BackendError as e:
            logger.warning("convex (%s): cannot list secrets, assuming none: %s", env, e)
            return {}, True

    def plan(self, local: Dict[str, str], env: str) -> Tuple[DiffResult, bool]:
        remote, read_failed = self.fetch(env)
        diff = classify_against_values(
            filter_record(local, self.exclude),
            filter_record(remote, self.exclude),
        )
        return diff, read_failed

    def sync(self, local: Dict[str, str], env: str, dry_run: bool = False) -> SyncOutcome:
        """
        Bring Convex in line with ``local``.

        Args:
            local: Decrypted env record
            env: Local environment (dev | prod)
            dry_run: Compute the diff without touching the store

        Returns:
            SyncOutcome holding the diff and any apply errors
        """
        diff, read_failed = self.plan(local, env)
        outcome = SyncOutcome(
            target=self.target,
            env=env,
            diff=diff,
            dry_run=dry_run,
            remote_env=env,
            remote_read_failed=read_failed,
        )
        if not dry_run:
            outcome.errors = apply_diff(self.store, local, diff, env)
        return outcome


class WranglerSyncer:
    """
    Syncs an EnvRecord to Cloudflare Worker secrets.

    Wrangler never returns secret values, so every key that exists on both
    sides is rewritten on each run.
    """

    target = "wrangler"

    def __init__(
        self,
        store: ValueOpaqueStore,
        config: Optional[WranglerSyncConfig] = None,
        named_environments: Sequence[str] = (),
    ):
        self.store = store
        self.config = config or WranglerSyncConfig()
        self.exclude = list(self.config.exclude)
        self.named_environments = list(named_environments)

    @property
    def label(self) -> str:
        return f"{self.target} ({self.config.config_path})"

    def resolve_remote_env(self, env: str) -> Tuple[Optional[str], Optional[str]]:
        """
        Map a local environment to the Wrangler environment to write to.

        Returns:
            Tuple of (remote env name or None for the top-level worker,
            reason the env is skipped or None)

        Raises:
            ConfigError: If the worker declares named environments and no
                explicit mapping says which one ``env`` belongs to
        """
        mapping = self.config.env_mapping
        config_path = self.config.config_path

        if mapping is None:
            if self.named_environments:
                raise ConfigError(
                    f"{config_path} declares environments "
                    f"({', '.join(self.named_environments)}) but sync.wrangler.envMapping "
                    f"is not configured; refusing to guess where '{env}' secrets belong"
                )
            if env != "prod":
                return None, "single-environment worker only receives prod secrets"
            return None, None

        remote_env = getattr(mapping, env, None)
        if not remote_env:
            raise ConfigError(f"sync.wrangler.envMapping has no entry for '{env}' ({config_path})")
        if not self.named_environments:
            logger.warning(
                "envMapping.%s = '%s' but %s declares no environments; passing --env %s unchecked",
                env, remote_env, config_path, remote_env,
            )
        elif remote_env not in self.named_environments:
            raise ConfigError(
                f"envMapping.{env} = '{remote_env}' is not an environment of {config_path}"
            )
        return remote_env, None

    def fetch(self, remote_env: Optional[str]) -> Tuple[Set[str], bool]:
        try:
            return self.store.list_secret_names(remote_env), False
        except BackendError as e:
            logger.warning("wrangler (%s): cannot list secrets, assuming none: %s", remote_env, e)
            return set(), True

    def sync(self, local: Dict[str, str], env: str, dry_run: bool = False) -> SyncOutcome:
        remote_env, skip_reason = self.resolve_remote_env(env)
        outcome = SyncOutcome(target=self.label, env=env, dry_run=dry_run, remote_env=remote_env)
        if skip_reason:
            outcome.skipped = skip_reason
            return outcome

        remote_names, outcome.remote_read_failed = self.fetch(remote_env)
        filtered = filter_record(local, self.exclude)
        outcome.diff = classify_against_names(filtered, filter_keys(remote_names, self.exclude))

        if not dry_run:
            outcome.errors = apply_diff(self.store, filtered, outcome.diff, remote_env)
        return outcome
