"""Pytest configuration and fixtures."""

import json

import pytest

from ciphertree.config import Settings
from ciphertree.errors import NamingLayerError, StaleSequenceError
from ciphertree.pointer.protocol import NamingLayer, PointerClient
from ciphertree.pointer.records import ensure_sequence_advances
from ciphertree.storage.local import JsonShareStore, LocalContentStore, LocalNamingLayer
from ciphertree.sharing.engine import SharingEngine
from ciphertree.utils.core import init_vault, unlock

# Argon2id at its cheapest so vault tests stay fast
FAST_KDF = (1, 8, 1)


class FakeNamingLayer(NamingLayer):
    """In-memory naming layer with switches for failure modes."""

    def __init__(self):
        self.records = {}
        self.cache = {}
        self.fail_fresh = None
        self.stale_rejections = 0
        self.rejected_names = set()
        self.submit_calls = 0

    def resolve_fresh(self, name, timeout):
        if self.fail_fresh is not None:
            raise self.fail_fresh
        raw = self.records.get(name)
        if raw is not None:
            self.cache[name] = {"value": raw["value"], "sequence": raw["sequence"]}
        return raw

    def resolve_cached(self, name):
        return self.cache.get(name)

    def submit(self, name, wire_record):
        self.submit_calls += 1
        if name in self.rejected_names:
            raise NamingLayerError("rejected")
        raw = json.loads(wire_record)
        if self.stale_rejections:
            self.stale_rejections -= 1
            raise StaleSequenceError(raw["sequence"], raw["sequence"] + 4)
        current = self.records.get(name)
        ensure_sequence_advances(raw["sequence"], current["sequence"] if current else None)
        self.records[name] = raw


class FlakyNamingLayer(LocalNamingLayer):
    """On-disk naming layer that refuses writes to chosen pointers."""

    def __init__(self, root):
        super().__init__(root)
        self.rejected_names = set()

    def submit(self, name, wire_record):
        if name in self.rejected_names:
            raise NamingLayerError("rejected")
        super().submit(name, wire_record)


@pytest.fixture
def settings():
    """Settings with test-friendly limits."""
    return Settings(PUBLISH_MAX_ATTEMPTS=3, PUBLISH_CONCURRENCY=4, RESOLVE_TIMEOUT_SECONDS=0.1)


@pytest.fixture
def fake_naming():
    return FakeNamingLayer()


@pytest.fixture
def pointer_client(fake_naming, settings):
    return PointerClient(fake_naming, settings)


@pytest.fixture
def repo(tmp_path):
    return tmp_path / "repo"


@pytest.fixture
def engine(repo, settings):
    """Sharing engine over local stores in a temporary repo."""
    content = LocalContentStore(repo / "blobs")
    pointers = PointerClient(LocalNamingLayer(repo / "pointers"), settings)
    return SharingEngine(JsonShareStore(repo / "shares.json"), content, pointers)


def _session(repo, settings, passphrase, vault_name):
    init_vault(repo, passphrase, *FAST_KDF, vault_name=vault_name, settings=settings)
    return unlock(repo, passphrase, vault_name=vault_name, settings=settings)


@pytest.fixture
def alice(repo, settings):
    session = _session(repo, settings, "alice passphrase", "vault.enc")
    yield session
    session.close()


@pytest.fixture
def bob(repo, settings, alice):
    session = _session(repo, settings, "bob passphrase", "bob.enc")
    yield session
    session.close()


@pytest.fixture
def carol(repo, settings, alice):
    session = _session(repo, settings, "carol passphrase", "carol.enc")
    yield session
    session.close()


@pytest.fixture
def flaky_naming(repo, alice):
    return FlakyNamingLayer(repo / "pointers")
