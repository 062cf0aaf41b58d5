"""
Shared fixtures: in-memory secret stores standing in for Convex and Wrangler.
"""

from collections import defaultdict

import pytest

from envtool.core.backends import BackendError, ValueOpaqueStore, ValueVisibleStore


class _MemoryStore:
    """Keeps secrets per remote environment and records every call."""

    def __init__(self, secrets=None, env=None, fail_list=False, fail_write=False, fail_delete=(), log=None):
        self.envs = defaultdict(dict)
        if secrets:
            self.envs[env].update(secrets)
        self.fail_list = fail_list
        self.fail_write = fail_write
        self.fail_delete = set(fail_delete)
        self.calls = []
        self.log = log if log is not None else []

    def _record(self, *call):
        self.calls.append(call)
        self.log.append((self.name, *call))

    def bulk_write(self, secrets, env):
        self._record("write", env, dict(secrets))
        if self.fail_write:
            raise BackendError("write rejected", "quota exceeded")
        self.envs[env].update(secrets)

    def delete(self, key, env):
        self._record("delete", env, key)
        if key in self.fail_delete:
            raise BackendError(f"delete {key} rejected")
        self.envs[env].pop(key, None)


class FakeConvexStore(_MemoryStore, ValueVisibleStore):
    name = "convex"

    def list_secrets(self, env):
        self._record("list", env)
        if self.fail_list:
            raise BackendError("convex env list failed", "not logged in")
        return dict(self.envs[env])


class FakeWranglerStore(_MemoryStore, ValueOpaqueStore):
    name = "wrangler"

    def list_secret_names(self, env):
        self._record("list", env)
        if self.fail_list:
            raise BackendError("wrangler secret list failed", "auth error")
        return set(self.envs[env])


@pytest.fixture
def call_log():
    """Call log shared between stores, to check ordering across targets."""
    return []


@pytest.fixture
def convex_store(call_log):
    return FakeConvexStore(log=call_log)


@pytest.fixture
def wrangler_store(call_log):
    return FakeWranglerStore(log=call_log)


@pytest.fixture
def make_convex():
    return FakeConvexStore


@pytest.fixture
def make_wrangler():
    return FakeWranglerStore
