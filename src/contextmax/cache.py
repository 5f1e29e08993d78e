"""Content-addressed embedding cache.

Vectors are stored under a fingerprint (SHA-256 hex of the embedded text)
and packed as little-endian float32.  Identical content never recomputes.

Three backends share one async interface:

- :class:`DiskEmbedCache`: one file per fingerprint, written to a temporary
  file and renamed into place so readers never see a partial entry.
- :class:`ValkeyEmbedCache`: Redis/Valkey ``SET ... EX`` with a TTL.
- :class:`MemoryEmbedCache`: a dict, for tests and one-shot sessions.

Each backend also stores *project snapshots*: every file vector of a
project keyed by the project fingerprint, so an unchanged project can be
restored in one read.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import struct
import tempfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
from loguru import logger
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from contextmax.settings import CacheSettings

Snapshot = dict[str, dict[str, Any]]

# Backend failures the index degrades on instead of failing the whole batch
CACHE_ERRORS: tuple[type[Exception], ...] = (OSError, RedisError)


def pack_vector(vector: list[float]) -> bytes:
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(data: bytes) -> list[float]:
    return list(struct.unpack(f"<{len(data) // 4}f", data))


def model_namespace(model: str) -> str:
    """Filesystem- and key-safe slug for a model name."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", model).strip("_") or "default"


class EmbedCache(ABC):
    """Base class and interface of the embedding cache backends."""

    @staticmethod
    def hash_text(text: str) -> str:
        """SHA-256 hex digest of *text*; the fingerprint used as cache key."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    async def get(self, key: str) -> list[float] | None:
        found = await self.get_many([key])
        return found.get(key)

    async def put(self, key: str, vector: list[float]) -> None:
        await self.put_many([(key, vector)])

    @abstractmethod
    async def get_many(self, keys: list[str]) -> dict[str, list[float]]: ...

    @abstractmethod
    async def put_many(self, items: list[tuple[str, list[float]]]) -> None: ...

    @abstractmethod
    async def get_snapshot(self, project_key: str) -> Snapshot | None: ...

    @abstractmethod
    async def put_snapshot(self, project_key: str, snapshot: Snapshot) -> None: ...

    @abstractmethod
    async def clear(self) -> int:
        """Remove every entry.  Returns the number of removed entries."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryEmbedCache(EmbedCache):
    def __init__(self) -> None:
        self._vectors: dict[str, bytes] = {}
        self._snapshots: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    async def get_many(self, keys: list[str]) -> dict[str, list[float]]:
        return {k: unpack_vector(self._vectors[k]) for k in keys if k in self._vectors}

    async def put_many(self, items: list[tuple[str, list[float]]]) -> None:
        for key, vector in items:
            self._vectors[key] = pack_vector(vector)

    async def get_snapshot(self, project_key: str) -> Snapshot | None:
        raw = self._snapshots.get(project_key)
        return json.loads(raw) if raw is not None else None

    async def put_snapshot(self, project_key: str, snapshot: Snapshot) -> None:
        self._snapshots[project_key] = json.dumps(snapshot)

    async def clear(self) -> int:
        count = len(self._vectors) + len(self._snapshots)
        self._vectors.clear()
        self._snapshots.clear()
        return count


# ---------------------------------------------------------------------------
# Disk
# ---------------------------------------------------------------------------


def _atomic_write(path: Path, data: bytes) -> None:
    """Write *data* next to *path* and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class DiskEmbedCache(EmbedCache):
    """One ``<fp[:2]>/<fp>.f32`` file per vector under *directory*."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._vectors_dir = self.directory / "vectors"
        self._snapshots_dir = self.directory / "snapshots"

    def _vector_path(self, key: str) -> Path:
        return self._vectors_dir / key[:2] / f"{key}.f32"

    def _read(self, key: str) -> list[float] | None:
        try:
            data = self._vector_path(key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unreadable cache entry {}: {}", key[:12], exc)
            return None
        if not data or len(data) % 4:
            logger.warning("Corrupt cache entry {} ({} bytes), ignoring", key[:12], len(data))
            return None
        return unpack_vector(data)

    def _get_many_sync(self, keys: list[str]) -> dict[str, list[float]]:
        found: dict[str, list[float]] = {}
        for key in keys:
            vector = self._read(key)
            if vector is not None:
                found[key] = vector
        return found

    def _put_many_sync(self, items: list[tuple[str, list[float]]]) -> None:
        for key, vector in items:
            _atomic_write(self._vector_path(key), pack_vector(vector))

    async def get_many(self, keys: list[str]) -> dict[str, list[float]]:
        if not keys:
            return {}
        return await asyncio.to_thread(self._get_many_sync, keys)

    async def put_many(self, items: list[tuple[str, list[float]]]) -> None:
        if items:
            await asyncio.to_thread(self._put_many_sync, items)

    async def get_snapshot(self, project_key: str) -> Snapshot | None:
        path = self._snapshots_dir / f"{project_key}.json"

        def _load() -> Snapshot | None:
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                return None
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable project snapshot {}: {}", path.name, exc)
                return None

        return await asyncio.to_thread(_load)

    async def put_snapshot(self, project_key: str, snapshot: Snapshot) -> None:
        path = self._snapshots_dir / f"{project_key}.json"
        data = json.dumps(snapshot).encode("utf-8")
        await asyncio.to_thread(_atomic_write, path, data)

    def _entries(self) -> list[Path]:
        entries: list[Path] = []
        if self._vectors_dir.is_dir():
            entries.extend(self._vectors_dir.rglob("*.f32"))
        if self._snapshots_dir.is_dir():
            entries.extend(self._snapshots_dir.glob("*.json"))
        return entries

    async def clear(self) -> int:
        def _clear() -> int:
            removed = 0
            for path in self._entries():
                path.unlink(missing_ok=True)
                removed += 1
            return removed

        removed = await asyncio.to_thread(_clear)
        logger.info("Cleared {} cache entries from {}", removed, self.directory)
        return removed

    async def prune(self, max_age_s: float) -> int:
        """Remove entries not modified within *max_age_s* seconds."""
        cutoff = time.time() - max_age_s

        def _prune() -> int:
            removed = 0
            for path in self._entries():
                try:
                    if path.stat().st_mtime < cutoff:
                        path.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
            return removed

        removed = await asyncio.to_thread(_prune)
        logger.info("Pruned {} cache entries older than {:.0f}s", removed, max_age_s)
        return removed


# ---------------------------------------------------------------------------
# Valkey
# ---------------------------------------------------------------------------


class ValkeyEmbedCache(EmbedCache):
    """Redis/Valkey backend; keys expire after ``ttl_days`` (0 = never)."""

    def __init__(self, settings: CacheSettings, namespace: str = "") -> None:
        url = f"redis://{settings.host}:{settings.port}/{settings.db}"
        if settings.password:
            url = f"redis://:{settings.password}@{settings.host}:{settings.port}/{settings.db}"
        self._redis = aioredis.from_url(url, decode_responses=False)
        self._prefix = f"{settings.key_prefix}:{namespace}" if namespace else settings.key_prefix
        self._ttl_s = settings.ttl_days * 86_400 if settings.ttl_days > 0 else None

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _snapshot_key(self, project_key: str) -> str:
        return f"{self._prefix}:snapshot:{project_key}"

    async def ping(self) -> bool:
        return await self._redis.ping()

    async def get_many(self, keys: list[str]) -> dict[str, list[float]]:
        if not keys:
            return {}
        values = await self._redis.mget([self._key(k) for k in keys])
        return {k: unpack_vector(v) for k, v in zip(keys, values, strict=True) if v}

    async def put_many(self, items: list[tuple[str, list[float]]]) -> None:
        if not items:
            return
        async with self._redis.pipeline(transaction=False) as pipe:
            for key, vector in items:
                pipe.set(self._key(key), pack_vector(vector), ex=self._ttl_s)
            await pipe.execute()

    async def get_snapshot(self, project_key: str) -> Snapshot | None:
        raw = await self._redis.get(self._snapshot_key(project_key))
        return json.loads(raw) if raw else None

    async def put_snapshot(self, project_key: str, snapshot: Snapshot) -> None:
        await self._redis.set(self._snapshot_key(project_key), json.dumps(snapshot), ex=self._ttl_s)

    async def clear(self) -> int:
        removed = 0
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*", count=500):
            removed += await self._redis.delete(key)
        return removed

    async def close(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_cache(settings: CacheSettings, directory: Path, model: str = "") -> EmbedCache:
    """Build the configured backend.  Entries are namespaced by *model*."""
    namespace = model_namespace(model) if model else ""
    if settings.backend == "memory":
        return MemoryEmbedCache()
    if settings.backend == "valkey":
        return ValkeyEmbedCache(settings, namespace)
    return DiskEmbedCache(directory / namespace if namespace else directory)
