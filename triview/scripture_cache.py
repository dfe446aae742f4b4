#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
scripture_cache.py - Local-first scripture resolution

Resolution order for a normalized reference ("2:255", "bukhari:1"):
  1. In-memory LRU (capacity 100, 24h TTL), seeded from data/scripture/cache.json
  2. Local database files under data/scripture/ (e.g. quran_small.json)
  3. Remote resolver: GET {base_url}/api/scripture/resolve?ref=...

A 404 from the remote means "not found" (None). Transport failures and 5xx
responses raise ScriptureLookupError so the caller can decide whether to retry.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiohttp

from .runtime_adapter import _trace
from .stores import atomic_write_json, read_json

logger = logging.getLogger(__name__)

CACHE_CAPACITY = 100
CACHE_TTL_S = 24 * 60 * 60
CACHE_FILE = "cache.json"
CACHE_VERSION = "1.0"

QURAN_REFERENCE = re.compile(r"^(\d+):(\d+)$")
HADITH_REFERENCE = re.compile(r"^(bukhari|muslim|tirmidhi|abu-dawud|nasai|ibn-majah):(.+)$", re.IGNORECASE)

COMMON_REFERENCES = [
    "1:1", "2:30", "2:255", "5:2", "17:70", "21:35", "67:15",
    "91:7", "91:8", "91:9", "91:10", "57:25",
    "bukhari:1", "bukhari:6", "muslim:1", "muslim:16",
]


class ScriptureLookupError(Exception):
    """Remote scripture lookup failed for a reason other than 'not found'."""


@dataclass
class CacheEntry:
    data: Dict[str, Any]
    timestamp: float
    access_count: int = 0
    last_accessed: float = 0.0


def normalize_reference(reference: str) -> str:
    return (reference or "").lower().strip()


def parse_quran_reference(reference: str) -> Optional[Dict[str, int]]:
    match = QURAN_REFERENCE.match(reference.strip())
    if not match:
        return None
    surah, ayah = int(match.group(1)), int(match.group(2))
    if surah < 1 or surah > 114 or ayah < 1:
        return None
    return {"surah": surah, "ayah": ayah}


def parse_hadith_reference(reference: str) -> Optional[Dict[str, str]]:
    match = HADITH_REFERENCE.match(reference.strip())
    if not match:
        return None
    return {"collection": match.group(1).lower(), "number": match.group(2)}


def validate_reference(reference: str) -> bool:
    """True for a well-formed Qur'an (surah 1-114) or known hadith collection reference."""
    return parse_quran_reference(reference) is not None or parse_hadith_reference(reference) is not None


class ScriptureResolver:
    """LRU + local database + remote fallback resolver shared by all row tasks."""

    def __init__(self, data_dir: Union[str, Path] = "data/scripture",
                 base_url: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 capacity: int = CACHE_CAPACITY,
                 ttl_s: int = CACHE_TTL_S,
                 timeout_s: int = 10,
                 local_db: Optional[Dict[str, Dict[str, Any]]] = None,
                 persist: bool = True):
        self.data_dir = Path(data_dir)
        self.base_url = (base_url or "").rstrip("/")
        self.capacity = capacity
        self.ttl_s = ttl_s
        self.timeout_s = timeout_s
        self.persist = persist
        self._session = session
        self._owns_session = session is None
        self._cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._local_db: Dict[str, Dict[str, Any]] = {
            normalize_reference(k): v for k, v in (local_db or {}).items()
        }
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self._dirty = False
        self.hits = 0
        self.misses = 0
        self.remote_fetches = 0

    @property
    def cache_path(self) -> Path:
        return self.data_dir / CACHE_FILE

    async def initialize(self) -> None:
        """Load local database files and the persisted cache, once."""
        async with self._init_lock:
            if self._initialized:
                return
            if self.data_dir.exists():
                for path in sorted(self.data_dir.glob("*.json")):
                    if path.name == CACHE_FILE:
                        continue
                    try:
                        db = await read_json(path)
                        for key, value in db.items():
                            self._local_db.setdefault(normalize_reference(key), value)
                    except (OSError, ValueError, AttributeError) as e:
                        logger.warning("Failed to load scripture database %s: %s", path, e)
            if self.persist and self.cache_path.exists():
                await self._load_persisted_cache()
            self._initialized = True

    async def _load_persisted_cache(self) -> None:
        try:
            payload = await read_json(self.cache_path)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load scripture cache file: %s", e)
            return
        if payload.get("version") != CACHE_VERSION:
            return
        now = time.time()
        for key, entry in (payload.get("entries") or {}).items():
            if now - entry.get("timestamp", 0) < self.ttl_s:
                self._put(key, CacheEntry(**entry))

    # ------------------------------------------------------------------ LRU

    def _get(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if time.time() - entry.timestamp >= self.ttl_s:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return entry

    def _put(self, key: str, entry: CacheEntry) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        elif len(self._cache) >= self.capacity:
            self._cache.popitem(last=False)
        self._cache[key] = entry
        self._dirty = True

    # ------------------------------------------------------------ resolution

    async def resolve_local_first(self, reference: str,
                                  base_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
        await self.initialize()
        key = normalize_reference(reference)

        cached = self._get(key)
        if cached is not None:
            cached.access_count += 1
            cached.last_accessed = time.time()
            self.hits += 1
            return cached.data

        self.misses += 1
        now = time.time()
        local = self._local_db.get(key)
        if local is not None:
            self._put(key, CacheEntry(data=local, timestamp=now, access_count=1, last_accessed=now))
            return local

        remote = await self._fetch_remote(reference, base_url)
        if remote is not None:
            self._put(key, CacheEntry(data=remote, timestamp=now, access_count=1, last_accessed=now))
        return remote

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s, connect=5)
            )
            self._owns_session = True
        return self._session

    async def _fetch_remote(self, reference: str,
                            base_url: Optional[str] = None) -> Optional[Dict[str, Any]]:
        base = (base_url or self.base_url).rstrip("/")
        if not base:
            return None

        url = f"{base}/api/scripture/resolve"
        self.remote_fetches += 1
        session = await self._get_session()
        try:
            async with session.get(url, params={"ref": reference}) as resp:
                if resp.status == 404:
                    return None
                if resp.status >= 500:
                    raise ScriptureLookupError(
                        f"Scripture lookup failed for {reference}: HTTP {resp.status} {resp.reason or ''}".strip()
                    )
                if resp.status >= 400:
                    logger.warning("Scripture API rejected %s with HTTP %s", reference, resp.status)
                    return None
                try:
                    payload = await resp.json()
                except ValueError as e:
                    raise ScriptureLookupError(
                        f"Scripture lookup failed for {reference}: malformed response: {e}"
                    ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            _trace({"type": "scripture_fetch_error", "reference": reference, "error": str(e)})
            raise ScriptureLookupError(
                f"Scripture lookup failed for {reference}: {type(e).__name__}: {e}"
            ) from e

        if not isinstance(payload, dict):
            logger.warning("Scripture API returned %s for %s, ignoring", type(payload).__name__, reference)
            return None
        return payload

    async def batch_resolve(self, references: Iterable[str],
                            base_url: Optional[str] = None) -> Dict[str, Optional[Dict[str, Any]]]:
        """Resolve many references concurrently; lookup failures map to None."""
        refs = list(references)

        async def one(ref: str) -> Optional[Dict[str, Any]]:
            try:
                return await self.resolve_local_first(ref, base_url)
            except ScriptureLookupError as e:
                logger.warning("Failed to resolve %s: %s", ref, e)
                return None

        results = await asyncio.gather(*(one(r) for r in refs))
        return dict(zip(refs, results))

    async def warm_cache(self, base_url: Optional[str] = None,
                         references: Optional[List[str]] = None) -> int:
        """Preload frequently cited references; returns how many are now cached."""
        resolved = await self.batch_resolve(references or COMMON_REFERENCES, base_url)
        warmed = sum(1 for v in resolved.values() if v is not None)
        logger.info("Scripture cache warmed: %d/%d references", warmed, len(resolved))
        await self.save()
        return warmed

    # ----------------------------------------------------------- persistence

    async def save(self) -> None:
        """Persist unexpired LRU entries atomically, if anything changed."""
        if not self.persist or not self._dirty:
            return
        async with self._save_lock:
            now = time.time()
            entries = {k: asdict(v) for k, v in self._cache.items() if now - v.timestamp < self.ttl_s}
            await atomic_write_json(self.cache_path, {
                "version": CACHE_VERSION,
                "lastUpdated": datetime.now().isoformat(),
                "entries": entries,
            })
            self._dirty = False

    def stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "capacity": self.capacity,
            "local_entries": len(self._local_db),
            "hits": self.hits,
            "misses": self.misses,
            "remote_fetches": self.remote_fetches,
        }

    async def clear(self) -> None:
        self._cache.clear()
        self._dirty = False
        if self.persist and self.cache_path.exists():
            self.cache_path.unlink()

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
