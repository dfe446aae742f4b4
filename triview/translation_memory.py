#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
translation_memory.py - Translation memory (TM) store
Purpose:
  SQLite-backed memory of approved (source -> English) pairs, queried by
  fuzzy similarity so near-identical source rows reuse earlier translations.

Features:
  - Persistent SQLite storage (":memory:" for tests)
  - Similarity: normalized Levenshtein over diacritic/tatweel-stripped text
  - Ranking by similarity, then usage count
  - Upsert on learning keyed by the normalized source text
  - Stats, export/import and an explicit maintenance cleanup
  - Thread-safe operations
"""

import hashlib
import re
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_THRESHOLD = 0.90
DEFAULT_LIMIT = 5

ARABIC_DIACRITICS = re.compile(r"[ً-ْٰ]")
TATWEEL = re.compile(r"ـ+")
WHITESPACE = re.compile(r"\s+")


@dataclass
class TMSuggestion:
    id: str
    english: str
    similarity: float
    original: str = ""
    usage_count: int = 0


@dataclass
class TMStats:
    """TM lookup statistics for the current process."""
    lookups: int = 0
    hits: int = 0
    learned: int = 0
    updated: int = 0

    @property
    def hit_rate(self) -> float:
        if self.lookups == 0:
            return 0.0
        return self.hits / self.lookups

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = f"{self.hit_rate:.2%}"
        return data


@dataclass
class TMConfig:
    location: str = "outputs/tm.db"
    threshold: float = DEFAULT_THRESHOLD
    limit: int = DEFAULT_LIMIT


def normalize_text(text: str) -> str:
    text = ARABIC_DIACRITICS.sub("", text or "")
    text = TATWEEL.sub("", text)
    return WHITESPACE.sub(" ", text.lower()).strip()


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """1 - edit distance / longer length, over normalized text. In [0, 1]."""
    a, b = normalize_text(a), normalize_text(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(a, b) / longest


class TranslationMemory:
    """
    SQLite-based translation memory.

    Entry key: SHA256(normalized source text)[:16]
    """

    def __init__(self, config: Optional[TMConfig] = None):
        self.config = config or TMConfig()
        self.stats = TMStats()
        self._lock = threading.RLock()

        if self.config.location != ":memory:":
            Path(self.config.location).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.config.location, check_same_thread=False, timeout=30.0)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS tm_entries (
                    id TEXT PRIMARY KEY,
                    original TEXT NOT NULL,
                    normalized TEXT NOT NULL,
                    english TEXT NOT NULL,
                    complexity INTEGER,
                    score REAL NOT NULL,
                    usage_count INTEGER DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    last_used INTEGER NOT NULL
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_tm_last_used ON tm_entries(last_used)")
            self._conn.commit()

    @staticmethod
    def _entry_id(normalized: str) -> str:
        return "tm_" + hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]

    def suggest(self, text: str, limit: Optional[int] = None) -> List[TMSuggestion]:
        """
        Return up to `limit` candidates ranked by similarity (then usage count).

        Entries whose length alone rules out reaching the threshold are skipped
        before the edit-distance computation.
        """
        limit = limit or self.config.limit
        query = normalize_text(text)
        if not query:
            return []

        with self._lock:
            rows = self._conn.execute(
                "SELECT id, original, normalized, english, usage_count FROM tm_entries"
            ).fetchall()

        candidates: List[TMSuggestion] = []
        for row in rows:
            candidate = row["normalized"]
            longest = max(len(query), len(candidate))
            if longest and min(len(query), len(candidate)) / longest < self.config.threshold:
                continue
            sim = similarity(query, candidate)
            candidates.append(TMSuggestion(
                id=row["id"],
                english=row["english"],
                similarity=round(sim, 4),
                original=row["original"],
                usage_count=row["usage_count"],
            ))

        candidates.sort(key=lambda s: (-s.similarity, -s.usage_count))
        top = candidates[:limit]

        self.stats.lookups += 1
        if top and top[0].similarity >= self.config.threshold:
            self.stats.hits += 1
            self._touch(top[0].id)
        return top

    def best_match(self, text: str) -> Optional[TMSuggestion]:
        """Top suggestion if it clears the reuse threshold."""
        suggestions = self.suggest(text)
        if suggestions and suggestions[0].similarity >= self.config.threshold:
            return suggestions[0]
        return None

    def _touch(self, entry_id: str) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE tm_entries SET usage_count = usage_count + 1, last_used = ? WHERE id = ?",
                (int(time.time()), entry_id),
            )
            self._conn.commit()

    def learn(self, original: str, english: str, complexity: Optional[int] = None) -> str:
        """Store an approved pair; re-learning the same source replaces its English."""
        normalized = normalize_text(original)
        if not normalized or not (english or "").strip():
            raise ValueError("Cannot learn an empty translation pair")

        entry_id = self._entry_id(normalized)
        score = min(0.5 + len(original.split()) * 0.05, 1.0)
        now = int(time.time())

        with self._lock:
            existing = self._conn.execute(
                "SELECT id FROM tm_entries WHERE id = ?", (entry_id,)
            ).fetchone()
            if existing:
                self._conn.execute(
                    "UPDATE tm_entries SET english = ?, complexity = ?, score = ?, last_used = ? WHERE id = ?",
                    (english, complexity, score, now, entry_id),
                )
                self.stats.updated += 1
            else:
                self._conn.execute(
                    """INSERT INTO tm_entries
                       (id, original, normalized, english, complexity, score, usage_count, created_at, last_used)
                       VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                    (entry_id, original, normalized, english, complexity, score, now, now),
                )
                self.stats.learned += 1
            self._conn.commit()
        return entry_id

    def count(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM tm_entries").fetchone()[0]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            row = self._conn.execute("""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(usage_count), 0) AS total_usage,
                       COALESCE(AVG(score), 0) AS avg_score,
                       MIN(created_at) AS oldest,
                       MAX(last_used) AS newest
                FROM tm_entries
            """).fetchone()
        return {
            "total_entries": row["total"],
            "total_usage": row["total_usage"],
            "average_score": round(row["avg_score"], 4),
            "oldest_entry": row["oldest"],
            "most_recent_use": row["newest"],
            "session": self.stats.to_dict(),
        }

    def export_entries(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, original, english, complexity, score, usage_count, created_at, last_used "
                "FROM tm_entries ORDER BY created_at"
            ).fetchall()
        return [dict(r) for r in rows]

    def import_entries(self, entries: List[Dict[str, Any]]) -> int:
        """Learn every well-formed entry; returns how many were accepted."""
        imported = 0
        for entry in entries:
            original, english = entry.get("original"), entry.get("english")
            if original and english:
                self.learn(original, english, entry.get("complexity"))
                imported += 1
        return imported

    def cleanup(self, min_usage: int = 1, max_age_days: int = 90) -> int:
        """
        Maintenance only: drop entries used fewer than `min_usage` times that
        have not been touched for `max_age_days`. Never called by the pipeline.
        """
        cutoff = int(time.time()) - max_age_days * 24 * 60 * 60
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM tm_entries WHERE usage_count < ? AND last_used < ?",
                (min_usage, cutoff),
            )
            self._conn.commit()
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()
