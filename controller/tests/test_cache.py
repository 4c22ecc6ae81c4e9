"""Tests for the build cache."""

import hashlib
import tempfile

import pytest
import redis

from controller.src.models.step import CacheSettings
from controller.src.services.cache import (
    FileCacheStore,
    InMemoryCacheStore,
    RedisCacheStore,
    StoreError,
    derive_cache_key,
    rebuild_cache,
    restore_cache,
    validate_key,
)

LOCKFILE = b'[[package]]\nname = "serde"\nversion = "1.0.130"\n'

def cache_settings(**overrides):
    values = {
        "rebuild": True,
        "namespace": "1-54-0",
        "lockfile": "Cargo.lock",
        "mount": [".cargo"],
    }
    values.update(overrides)
    return CacheSettings(**values)

def make_workspace(path, with_mount=True):
    path.mkdir(parents=True, exist_ok=True)
    (path / "Cargo.lock").write_bytes(LOCKFILE)
    if with_mount:
        (path / ".cargo" / "registry").mkdir(parents=True)
        (path / ".cargo" / "registry" / "index.txt").write_text("crates\n")
    return path

def test_derive_cache_key():
    key = derive_cache_key("1-54-0", LOCKFILE)
    assert key == "1-54-0/" + hashlib.sha256(LOCKFILE).hexdigest()
    assert derive_cache_key("1-54-0", LOCKFILE) == key
    assert derive_cache_key("1-54-0", LOCKFILE + b"\n") != key
    assert derive_cache_key("/1-54-0/", LOCKFILE) == key

@pytest.mark.parametrize("key", ["", "/abs/key", "ns/../escape"])
def test_invalid_keys(key):
    with pytest.raises(StoreError):
        validate_key(key)

def test_memory_store_keeps_first_writer():
    store = InMemoryCacheStore()
    assert store.save("ns/k", b"first")
    assert not store.save("ns/k", b"second")
    assert store.restore("ns/k") == b"first"
    assert store.save("ns/k", b"third", override=True)
    assert store.restore("ns/k") == b"third"
    assert store.restore("ns/other") is None

def test_file_store(tmp_path):
    store = FileCacheStore(str(tmp_path / "cache"))
    assert store.restore("ns/k") is None
    assert store.save("ns/k", b"data")
    assert (tmp_path / "cache" / "ns" / "k.tar.gz").read_bytes() == b"data"
    assert not store.save("ns/k", b"other")
    assert store.restore("ns/k") == b"data"
    assert store.save("ns/k", b"other", override=True)
    assert store.restore("ns/k") == b"other"

def test_file_store_concurrent_writer_keeps_first_entry(tmp_path, monkeypatch):
    store = FileCacheStore(str(tmp_path / "cache"))
    entry = tmp_path / "cache" / "ns" / "k.tar.gz"
    real_mkstemp = tempfile.mkstemp

    def racing_mkstemp(*args, **kwargs):
        # Another controller stores the key between the existence check and the write
        entry.write_bytes(b"first")
        return real_mkstemp(*args, **kwargs)

    monkeypatch.setattr(tempfile, "mkstemp", racing_mkstemp)

    assert store.save("ns/k", b"second") is False
    assert store.restore("ns/k") == b"first"
    assert [p.name for p in entry.parent.iterdir()] == ["k.tar.gz"]

class FakeRedis:
    def __init__(self, error=None):
        self.data = {}
        self.calls = []
        self.error = error

    def get(self, key):
        if self.error:
            raise self.error
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        if self.error:
            raise self.error
        self.calls.append((key, nx, ex))
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

def redis_store(client, ttl=0):
    store = RedisCacheStore("redis://localhost:6379/0", ttl=ttl)
    store._client = client
    return store

def test_redis_store_uses_set_nx():
    client = FakeRedis()
    store = redis_store(client, ttl=3600)

    assert store.save("ns/k", b"first")
    assert not store.save("ns/k", b"second")
    assert store.restore("ns/k") == b"first"
    assert client.calls[0] == ("conveyor:cache:ns/k", True, 3600)

    assert store.save("ns/k", b"third", override=True)
    assert client.calls[-1] == ("conveyor:cache:ns/k", False, 3600)

def test_redis_errors_become_store_errors():
    store = redis_store(FakeRedis(error=redis.ConnectionError("down")))
    with pytest.raises(StoreError):
        store.restore("ns/k")
    with pytest.raises(StoreError):
        store.save("ns/k", b"x")

def test_rebuild_then_restore(tmp_path):
    store = InMemoryCacheStore()
    warm = make_workspace(tmp_path / "warm")

    assert rebuild_cache(store, cache_settings(), warm)

    cold = make_workspace(tmp_path / "cold", with_mount=False)
    assert restore_cache(store, cache_settings(rebuild=False, restore=True), cold)
    assert (cold / ".cargo" / "registry" / "index.txt").read_text() == "crates\n"

def test_rebuild_does_not_override_existing_entry(tmp_path):
    store = InMemoryCacheStore()
    workspace = make_workspace(tmp_path / "ws")
    key = derive_cache_key("1-54-0", LOCKFILE)
    store.save(key, b"existing")

    assert not rebuild_cache(store, cache_settings(), workspace)
    assert store.restore(key) == b"existing"

    assert rebuild_cache(store, cache_settings(override=True), workspace)
    assert store.restore(key) != b"existing"

def test_rebuild_without_mounts_stores_nothing(tmp_path):
    store = InMemoryCacheStore()
    workspace = make_workspace(tmp_path / "ws", with_mount=False)

    assert not rebuild_cache(store, cache_settings(), workspace)
    assert store.restore(derive_cache_key("1-54-0", LOCKFILE)) is None

def test_rebuild_without_lockfile_raises(tmp_path):
    with pytest.raises(StoreError, match="Cargo.lock"):
        rebuild_cache(InMemoryCacheStore(), cache_settings(), tmp_path)

def test_restore_miss_is_cold_build(tmp_path):
    workspace = make_workspace(tmp_path / "ws", with_mount=False)
    assert not restore_cache(InMemoryCacheStore(), cache_settings(rebuild=False, restore=True), workspace)

def test_restore_store_error_is_cold_build(tmp_path):
    workspace = make_workspace(tmp_path / "ws", with_mount=False)
    store = redis_store(FakeRedis(error=redis.ConnectionError("down")))
    assert not restore_cache(store, cache_settings(rebuild=False, restore=True), workspace)

def test_restore_corrupt_entry_is_cold_build(tmp_path):
    store = InMemoryCacheStore()
    workspace = make_workspace(tmp_path / "ws", with_mount=False)
    store.save(derive_cache_key("1-54-0", LOCKFILE), b"not a tarball")
    assert not restore_cache(store, cache_settings(rebuild=False, restore=True), workspace)

def test_cache_settings_need_one_mode():
    with pytest.raises(ValueError):
        cache_settings(restore=True)
