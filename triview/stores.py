#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
stores.py - Key-value stores with an atomic write contract

All stores share one async interface so pipeline code and tests can swap
the in-memory variant for the file-backed ones:

- MemoryStore: dict guarded by an asyncio.Lock
- JsonFileMapStore: whole map in one JSON file (flag maps)
- JsonDirectoryStore: one JSON file per key (per-row artifacts)

File-backed writes go to a temporary sibling and are renamed over the
destination, so readers never see a partially written file.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiofiles

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
UNSAFE_KEY_CHARS = re.compile(r"[^\w.\-]")


def safe_key_name(key: str) -> str:
    """File-name form of a key; rewritten keys get a short hash of the raw key appended."""
    name = UNSAFE_KEY_CHARS.sub("_", key)
    if name == key and name not in (".", ".."):
        return name
    return f"{name}-{hashlib.sha256(key.encode('utf-8')).hexdigest()[:8]}"


async def atomic_write_text(path: PathLike, content: str) -> None:
    """Write content to a temp file next to path, then os.replace it into place."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    try:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


async def atomic_write_json(path: PathLike, data: Any) -> None:
    await atomic_write_text(path, json.dumps(data, ensure_ascii=False, indent=2, default=str))


async def read_json(path: PathLike) -> Any:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return json.loads(await f.read())


class KeyValueStore(ABC):
    """Async map of string keys to JSON-serialisable dicts."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def items(self) -> Dict[str, Dict[str, Any]]:
        ...


class MemoryStore(KeyValueStore):
    """In-process store. Values are copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._data: Dict[str, Dict[str, Any]] = copy.deepcopy(initial or {})
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def items(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(self._data)


class JsonFileMapStore(KeyValueStore):
    """Whole map persisted to a single JSON file; every mutation rewrites it atomically."""

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self._data: Optional[Dict[str, Dict[str, Any]]] = None
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._data is None:
            self._data = {}
            if self.path.exists():
                try:
                    loaded = await read_json(self.path)
                    if isinstance(loaded, dict):
                        self._data = loaded
                    else:
                        logger.warning("Ignoring non-object map file %s", self.path)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning("Could not read %s, starting empty: %s", self.path, e)
        return self._data

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = (await self._load()).get(key)
            return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            data = await self._load()
            data[key] = copy.deepcopy(value)
            await atomic_write_json(self.path, data)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            data = await self._load()
            if key not in data:
                return False
            del data[key]
            await atomic_write_json(self.path, data)
            return True

    async def items(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(await self._load())


class JsonDirectoryStore(KeyValueStore):
    """One JSON document per key under a directory."""

    def __init__(self, directory: PathLike):
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{safe_key_name(key)}.json"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return None
        return await read_json(path)

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        await atomic_write_json(self.path_for(key), value)

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def items(self) -> Dict[str, Dict[str, Any]]:
        result: Dict[str, Dict[str, Any]] = {}
        if not self.directory.exists():
            return result
        for path in sorted(self.directory.glob("*.json")):
            doc = await read_json(path)
            result[str(doc.get("id", path.stem))] = doc
        return result
