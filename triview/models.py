#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
models.py - Row, section and outcome records

JSON keys keep the section-file spelling (scriptureRefs, laneHash, ...);
attributes are snake_case.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def content_hash(text: str) -> str:
    """Lane hash: first 16 hex chars of sha256(text)."""
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()[:16]


@dataclass
class ScriptureRef:
    type: str
    reference: str = ""
    normalized: str = ""

    @property
    def context_only(self) -> bool:
        return not self.reference.strip()

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "reference": self.reference, "normalized": self.normalized}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScriptureRef":
        return cls(
            type=str(data.get("type", "quran")),
            reference=str(data.get("reference") or ""),
            normalized=str(data.get("normalized") or ""),
        )


@dataclass
class Row:
    id: str
    original: str
    complexity: int = 1
    enhanced: str = ""
    english: str = ""
    scripture_refs: List[ScriptureRef] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    section_id: Optional[str] = None
    footnotes: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], section_id: Optional[str] = None) -> "Row":
        if not isinstance(data, dict):
            raise ValueError(f"Row must be an object, got {type(data).__name__}")
        if not data.get("id") or not isinstance(data.get("original"), str):
            raise ValueError(f"Row is missing 'id' or 'original': {str(data)[:80]}")
        return cls(
            id=str(data["id"]),
            original=data["original"],
            complexity=int(data.get("complexity") or 1),
            enhanced=data.get("enhanced") or "",
            english=data.get("english") or "",
            scripture_refs=[ScriptureRef.from_dict(r) for r in data.get("scriptureRefs") or []],
            metadata=dict(data.get("metadata") or {}),
            section_id=data.get("sectionId") or section_id,
            footnotes=list(data.get("footnotes") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sectionId": self.section_id,
            "original": self.original,
            "enhanced": self.enhanced,
            "english": self.english,
            "complexity": self.complexity,
            "scriptureRefs": [r.to_dict() for r in self.scripture_refs],
            "footnotes": self.footnotes,
            "metadata": self.metadata,
        }

    def retry_input(self) -> "Row":
        """Input for a second-pass run: same source and metadata, translation dropped."""
        return Row(
            id=self.id,
            original=self.original,
            complexity=self.complexity,
            scripture_refs=list(self.scripture_refs),
            metadata=dict(self.metadata),
            section_id=self.section_id,
        )


@dataclass
class Section:
    id: str
    title: str
    rows: List[Row] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("Section must be an object with an 'id'")
        section_id = str(data["id"])
        return cls(
            id=section_id,
            title=str(data.get("title") or f"Section {section_id}"),
            rows=[Row.from_dict(r, section_id) for r in data.get("rows") or []],
        )


@dataclass
class RowOutcome:
    row_id: str
    status: str  # success | skipped | failed
    lpr: Optional[float] = None
    clause_count: int = 0
    error: Optional[str] = None
    retryable: bool = False
    attempts: int = 1
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "success"

    @classmethod
    def skipped(cls, row_id: str, reason: str = "unchanged_hash") -> "RowOutcome":
        return cls(row_id=row_id, status="skipped", reason=reason)

    @classmethod
    def failed(cls, row_id: str, error: str, retryable: bool = False) -> "RowOutcome":
        return cls(row_id=row_id, status="failed", error=error, retryable=retryable)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rowId": self.row_id, "status": self.status, "attempts": self.attempts}
        if self.status == "success":
            data.update(lpr=self.lpr, clauseCount=self.clause_count)
        elif self.status == "failed":
            data.update(error=self.error, retryable=self.retryable)
        else:
            data["reason"] = self.reason
        return data
