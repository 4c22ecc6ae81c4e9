"""
Content-addressed build cache.

Entries are keyed by "<namespace>/<sha256 of the lockfile>" and hold a gzip
tar archive of the step's mount paths. A key always maps to the same inputs,
so writes with override=False leave an existing entry untouched.
"""

import hashlib
import io
import logging
import os
import tarfile
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

import redis

from controller.src.config import get_settings
from controller.src.models.step import CacheSettings

logger = logging.getLogger(__name__)

class StoreError(Exception):
    """Raised when the cache backend cannot complete an operation."""
    pass

def derive_cache_key(namespace: str, lockfile_content: bytes) -> str:
    """Deterministic cache key for a namespace and lockfile content."""
    digest = hashlib.sha256(lockfile_content).hexdigest()
    return f"{namespace.strip('/')}/{digest}"

def validate_key(key: str) -> str:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise StoreError(f"Invalid cache key: {key!r}")
    return key

class CacheStore(ABC):
    """Key/value store for cache archives."""

    @abstractmethod
    def restore(self, key: str) -> Optional[bytes]:
        """Return the stored payload, or None on a miss."""
        pass

    @abstractmethod
    def save(self, key: str, data: bytes, override: bool = False) -> bool:
        """
        Store `data` under `key`.
        Returns False when the key already existed and override is False.
        """
        pass

class InMemoryCacheStore(CacheStore):
    """Process-local store for tests and development."""

    def __init__(self):
        self._entries: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def restore(self, key: str) -> Optional[bytes]:
        validate_key(key)
        with self._lock:
            return self._entries.get(key)

    def save(self, key: str, data: bytes, override: bool = False) -> bool:
        validate_key(key)
        with self._lock:
            if key in self._entries and not override:
                return False
            self._entries[key] = data
            return True

class FileCacheStore(CacheStore):
    """One archive file per key below a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / (validate_key(key) + ".tar.gz")

    def restore(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreError(f"Failed to read cache entry {key}: {e}")

    def save(self, key: str, data: bytes, override: bool = False) -> bool:
        path = self._path(key)
        if path.exists() and not override:
            return False

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                if override:
                    os.replace(tmp_path, path)
                    return True
                # link() fails when the entry exists, so the first writer wins
                try:
                    os.link(tmp_path, path)
                except FileExistsError:
                    return False
                return True
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
        except OSError as e:
            raise StoreError(f"Failed to write cache entry {key}: {e}")

class RedisCacheStore(CacheStore):
    """Redis-backed store. SET NX keeps the first writer for a key."""

    def __init__(self, redis_url: str, prefix: str = "conveyor:cache:", ttl: int = 0):
        self._client = redis.from_url(redis_url)
        self.prefix = prefix
        self.ttl = ttl

    def restore(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self.prefix + validate_key(key))
        except redis.RedisError as e:
            raise StoreError(f"Failed to read cache entry {key}: {e}")

    def save(self, key: str, data: bytes, override: bool = False) -> bool:
        try:
            stored = self._client.set(
                self.prefix + validate_key(key),
                data,
                nx=not override,
                ex=self.ttl or None,
            )
        except redis.RedisError as e:
            raise StoreError(f"Failed to write cache entry {key}: {e}")
        return bool(stored)

def get_cache_store() -> CacheStore:
    """Build the cache store selected by settings."""
    settings = get_settings()
    if settings.cache_backend == "redis":
        return RedisCacheStore(settings.redis_url, ttl=settings.cache_ttl)
    if settings.cache_backend == "filesystem":
        return FileCacheStore(settings.cache_dir)
    raise ValueError(f"Unknown cache backend: {settings.cache_backend}")

def archive_paths(workspace: Path, mounts: List[str]) -> Optional[bytes]:
    """
    Pack the mount paths (relative to the workspace) into a gzip tarball.
    Returns None when none of them exist.
    """
    buffer = io.BytesIO()
    added = 0
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for mount in mounts:
            source = workspace / mount
            if not source.exists():
                logger.warning(f"Cache mount {mount} does not exist, skipping")
                continue
            tar.add(source, arcname=mount)
            added += 1
    if not added:
        return None
    return buffer.getvalue()

def extract_archive(data: bytes, workspace: Path):
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        # The "data" filter rejects absolute paths, links out of the workspace and devices
        tar.extractall(workspace, filter="data")

def compute_cache_key(cache: CacheSettings, workspace: Path) -> str:
    lockfile = workspace / cache.lockfile
    try:
        content = lockfile.read_bytes()
    except OSError as e:
        raise StoreError(f"Cannot read lockfile {cache.lockfile}: {e}")
    return derive_cache_key(cache.namespace, content)

def restore_cache(store: CacheStore, cache: CacheSettings, workspace: Path) -> bool:
    """
    Restore the cache for `cache` into the workspace.
    Returns True on a hit. Misses and store errors degrade to a cold build.
    """
    try:
        key = compute_cache_key(cache, workspace)
        data = store.restore(key)
    except StoreError as e:
        logger.warning(f"Cache restore failed, continuing with cold build: {e}")
        return False

    if data is None:
        logger.info(f"Cache miss for {key}")
        return False

    try:
        extract_archive(data, workspace)
    except (tarfile.TarError, OSError) as e:
        logger.warning(f"Cache entry {key} could not be extracted, continuing with cold build: {e}")
        return False

    logger.info(f"Cache hit for {key} ({len(data)} bytes)")
    return True

def rebuild_cache(store: CacheStore, cache: CacheSettings, workspace: Path) -> bool:
    """
    Upload the mount paths under the derived key.
    Returns True when a new entry was written. Raises StoreError.
    """
    key = compute_cache_key(cache, workspace)
    data = archive_paths(workspace, cache.mount)
    if data is None:
        logger.warning(f"Nothing to cache for {key}")
        return False

    stored = store.save(key, data, override=cache.override)
    if stored:
        logger.info(f"Saved cache entry {key} ({len(data)} bytes)")
    else:
        logger.info(f"Cache entry {key} already exists, leaving it untouched")
    return stored
