import fnmatch
import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


class FakeRedis:
    """In-memory stand-in for the redis-py calls the query cache makes."""

    def __init__(self):
        self.store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for k in keys:
            k = k.decode("utf-8") if isinstance(k, bytes) else k
            if self.store.pop(k, None) is not None:
                self.ttls.pop(k, None)
                removed += 1
        return removed

    def scan_iter(self, match="*", count=None):
        return [k.encode("utf-8") for k in list(self.store) if fnmatch.fnmatchcase(k, match)]


@pytest.fixture
def fake_redis():
    return FakeRedis()
