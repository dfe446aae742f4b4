#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
flag_store.py - Persisted retry flags for the second pass

Two independent row-id keyed maps:
- expansion: LPR below the stricter target, retranslate with an expansion directive
- readability: Excellence Rail found grade/sentence length out of range

A flag is "applied" once the pipeline has acted on it; an unapplied flag on a
successful row makes that row eligible for pass 2.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

from .stores import JsonFileMapStore, KeyValueStore, MemoryStore

EXPAND_FILE = "expand.json"
READABILITY_FILE = "readability.json"


@dataclass
class ExpansionFlag:
    needs_expand: bool
    reason: str
    target_lpr: float
    current_lpr: float
    applied_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needsExpand": self.needs_expand,
            "reason": self.reason,
            "targetLPR": self.target_lpr,
            "currentLPR": self.current_lpr,
            "appliedAt": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpansionFlag":
        return cls(
            needs_expand=bool(data.get("needsExpand", True)),
            reason=data.get("reason", "lpr_below_threshold"),
            target_lpr=float(data.get("targetLPR", 1.08)),
            current_lpr=float(data.get("currentLPR", 0.0)),
            applied_at=data.get("appliedAt"),
        )


@dataclass
class ReadabilityFlag:
    needs_readability: bool
    reason: str
    grade: float
    long_pct: float
    applied_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needsReadability": self.needs_readability,
            "reason": self.reason,
            "grade": self.grade,
            "longPct": self.long_pct,
            "appliedAt": self.applied_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadabilityFlag":
        return cls(
            needs_readability=bool(data.get("needsReadability", True)),
            reason=data.get("reason", "grade_out_of_range"),
            grade=float(data.get("grade", 0.0)),
            long_pct=float(data.get("longPct", 0.0)),
            applied_at=data.get("appliedAt"),
        )


class FlagStore:
    """Typed access to the expansion and readability flag maps."""

    def __init__(self, expansion: KeyValueStore, readability: KeyValueStore):
        self.expansion = expansion
        self.readability = readability

    @classmethod
    def in_memory(cls) -> "FlagStore":
        return cls(MemoryStore(), MemoryStore())

    @classmethod
    def for_directory(cls, output_dir: Union[str, Path]) -> "FlagStore":
        output_dir = Path(output_dir)
        return cls(
            JsonFileMapStore(output_dir / EXPAND_FILE),
            JsonFileMapStore(output_dir / READABILITY_FILE),
        )

    async def get_expansion(self, row_id: str) -> Optional[ExpansionFlag]:
        data = await self.expansion.get(row_id)
        return ExpansionFlag.from_dict(data) if data else None

    async def set_expansion(self, row_id: str, flag: ExpansionFlag) -> None:
        await self.expansion.put(row_id, flag.to_dict())

    async def mark_expansion_applied(self, row_id: str) -> None:
        flag = await self.get_expansion(row_id)
        if flag is not None:
            flag.applied_at = datetime.now().isoformat()
            await self.set_expansion(row_id, flag)

    async def clear_expansion(self, row_id: str) -> bool:
        return await self.expansion.delete(row_id)

    async def get_readability(self, row_id: str) -> Optional[ReadabilityFlag]:
        data = await self.readability.get(row_id)
        return ReadabilityFlag.from_dict(data) if data else None

    async def set_readability(self, row_id: str, flag: ReadabilityFlag) -> None:
        await self.readability.put(row_id, flag.to_dict())

    async def mark_readability_applied(self, row_id: str) -> None:
        flag = await self.get_readability(row_id)
        if flag is not None:
            flag.applied_at = datetime.now().isoformat()
            await self.set_readability(row_id, flag)

    async def clear_readability(self, row_id: str) -> bool:
        return await self.readability.delete(row_id)

    async def pending_row_ids(self) -> Set[str]:
        """Row ids carrying at least one unapplied flag."""
        pending: Set[str] = set()
        for row_id, data in (await self.expansion.items()).items():
            if data.get("needsExpand") and not data.get("appliedAt"):
                pending.add(row_id)
        for row_id, data in (await self.readability.items()).items():
            if data.get("needsReadability") and not data.get("appliedAt"):
                pending.add(row_id)
        return pending

    async def summary(self) -> Dict[str, int]:
        return {
            "expansion": len(await self.expansion.items()),
            "readability": len(await self.readability.items()),
            "pending": len(await self.pending_row_ids()),
        }
