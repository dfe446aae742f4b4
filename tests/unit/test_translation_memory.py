#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
test_translation_memory.py - SQLite translation memory

Test Coverage:
- Text normalization and similarity (Tests 1-4)
- Learn / suggest / best_match (Tests 5-11)
- Maintenance: stats, import, cleanup (Tests 12-14)
"""

import time

import pytest

from triview.translation_memory import (
    TMConfig,
    TranslationMemory,
    levenshtein,
    normalize_text,
    similarity,
)

ORIGINAL = "طلب العلم فريضة على كل مسلم"
ENGLISH = "Seeking knowledge is an obligation on every Muslim."


# =============================================================================
# Similarity
# =============================================================================

class TestSimilarity:

    def test_01_normalize_strips_diacritics_and_tatweel(self):
        assert normalize_text("العِلْمُ  نـــور") == "العلم نور"
        assert normalize_text("  Hello   WORLD ") == "hello world"

    def test_02_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_03_similarity_bounds(self):
        assert similarity("abc", "abc") == 1.0
        assert similarity("", "") == 1.0
        assert similarity("abc", "xyz") == 0.0

    def test_04_similarity_ignores_diacritics(self):
        assert similarity("العِلْمُ نُورٌ", "العلم نور") == 1.0


# =============================================================================
# Learn / suggest
# =============================================================================

class TestTranslationMemory:

    def test_05_exact_match(self, memory_tm):
        entry_id = memory_tm.learn(ORIGINAL, ENGLISH, complexity=2)
        match = memory_tm.best_match(ORIGINAL)

        assert entry_id.startswith("tm_")
        assert match is not None
        assert match.id == entry_id
        assert match.english == ENGLISH
        assert match.similarity == 1.0

    def test_06_hit_bumps_usage(self, memory_tm):
        memory_tm.learn(ORIGINAL, ENGLISH)
        memory_tm.best_match(ORIGINAL)
        memory_tm.best_match(ORIGINAL)

        entry = memory_tm.export_entries()[0]
        assert entry["usage_count"] == 2
        assert memory_tm.stats.lookups == 2
        assert memory_tm.stats.hits == 2

    def test_07_unrelated_text_is_a_miss(self, memory_tm):
        memory_tm.learn(ORIGINAL, ENGLISH)
        assert memory_tm.best_match("الصبر مفتاح الفرج في كل حال") is None
        assert memory_tm.stats.hits == 0

    def test_08_relearn_replaces_english(self, memory_tm):
        first = memory_tm.learn(ORIGINAL, ENGLISH)
        second = memory_tm.learn("طلبُ العلمِ فريضةٌ على كل مسلم", "Updated translation.")

        assert first == second
        assert memory_tm.count() == 1
        assert memory_tm.best_match(ORIGINAL).english == "Updated translation."
        assert memory_tm.stats.learned == 1
        assert memory_tm.stats.updated == 1

    def test_09_learn_rejects_empty(self, memory_tm):
        with pytest.raises(ValueError):
            memory_tm.learn("", ENGLISH)
        with pytest.raises(ValueError):
            memory_tm.learn(ORIGINAL, "  ")

    def test_10_score_follows_source_length(self, memory_tm):
        """Score counts source words: 2 words -> 0.6, 6 words -> 0.8, 12 words caps at 1.0."""
        long_source = " ".join([ORIGINAL, ORIGINAL])
        memory_tm.learn("نص قصير", " ".join(["word"] * 20))
        memory_tm.learn(ORIGINAL, "Short.")
        memory_tm.learn(long_source, "Short.")
        scores = {e["original"]: e["score"] for e in memory_tm.export_entries()}
        assert scores["نص قصير"] == pytest.approx(0.6)
        assert scores[ORIGINAL] == pytest.approx(0.8)
        assert scores[long_source] == 1.0

    def test_11_suggestions_ranked_by_similarity(self):
        tm = TranslationMemory(TMConfig(location=":memory:", threshold=0.5))
        try:
            tm.learn("العلم نور القلب", "Knowledge is the light of the heart.")
            tm.learn("العلم نور العقل", "Knowledge is the light of the mind.")
            suggestions = tm.suggest("العلم نور القلب", limit=2)
        finally:
            tm.close()

        assert [s.similarity for s in suggestions] == sorted(
            (s.similarity for s in suggestions), reverse=True)
        assert suggestions[0].english == "Knowledge is the light of the heart."
        assert 0.5 <= suggestions[1].similarity < 1.0


# =============================================================================
# Maintenance
# =============================================================================

class TestMaintenance:

    def test_12_stats(self, memory_tm):
        memory_tm.learn(ORIGINAL, ENGLISH)
        memory_tm.best_match(ORIGINAL)
        stats = memory_tm.get_stats()
        assert stats["total_entries"] == 1
        assert stats["total_usage"] == 1
        assert stats["session"]["hit_rate"] == "100.00%"

    def test_13_import_skips_malformed(self, memory_tm):
        imported = memory_tm.import_entries([
            {"original": ORIGINAL, "english": ENGLISH, "complexity": 1},
            {"original": "", "english": "x"},
            {"english": "missing original"},
        ])
        assert imported == 1
        assert memory_tm.count() == 1

    def test_14_cleanup_removes_stale_unused_entries(self, memory_tm):
        memory_tm.learn(ORIGINAL, ENGLISH)
        memory_tm.learn("الصبر مفتاح الفرج", "Patience is the key to relief.")
        memory_tm.best_match(ORIGINAL)

        stale = int(time.time()) - 200 * 24 * 60 * 60
        memory_tm._conn.execute("UPDATE tm_entries SET last_used = ?", (stale,))
        memory_tm._conn.commit()

        removed = memory_tm.cleanup(min_usage=1, max_age_days=90)
        assert removed == 1
        assert [e["original"] for e in memory_tm.export_entries()] == [ORIGINAL]

    def test_15_file_backed_location(self, temp_dir):
        path = temp_dir / "nested" / "tm.db"
        tm = TranslationMemory(TMConfig(location=str(path)))
        tm.learn(ORIGINAL, ENGLISH)
        tm.close()

        reopened = TranslationMemory(TMConfig(location=str(path)))
        try:
            assert reopened.count() == 1
        finally:
            reopened.close()
