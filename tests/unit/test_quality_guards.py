#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
test_quality_guards.py - LPR, coverage, drift and aggregate assessment

Test Coverage:
- LPR guard bands and monotonicity (Tests 1-7)
- Coverage guard (Tests 8-11)
- Drift guard (Tests 12-14)
- Aggregate assessment and GuardConfig (Tests 15-22)
"""

import dataclasses

import pytest

from triview.quality_guards import (
    DEFAULT_GUARD_CONFIG,
    GuardConfig,
    assess_quality,
    calculate_lpr,
    clause_map,
    count_words,
    coverage_guard,
    drift_guard,
    extract_clauses,
    lpr_guard,
)

SOURCE_10 = " ".join(f"كلمة{i}" for i in range(10))
ORIGINAL = "طلب العلم فريضة على كل مسلم، والصبر مفتاح الفرج دائما."
ENGLISH_11 = "Seeking knowledge is a duty for every Muslim, patience brings relief."


def words(n):
    return " ".join(f"w{i}" for i in range(n))


# =============================================================================
# LPR
# =============================================================================

class TestLPRGuard:

    def test_01_calculate_lpr(self):
        """LPR is translated words over source words."""
        assert count_words("  a  b\tc ") == 3
        assert calculate_lpr("a b c d", "w x y z q") == pytest.approx(1.25)
        assert calculate_lpr("", "anything") == 0.0

    def test_02_below_minimum_is_expand(self):
        result = lpr_guard(SOURCE_10, words(9))
        assert result.recommendation == "expand"
        assert not result.passed
        assert "lpr_below_minimum" in result.issues

    def test_03_between_min_and_ideal_is_review(self):
        result = lpr_guard(SOURCE_10, words(10))
        assert result.recommendation == "review"
        assert result.passed
        assert result.issues == []

    def test_04_ideal_band_is_accept(self):
        result = lpr_guard(SOURCE_10, words(11))
        assert result.recommendation == "accept"
        assert result.score == 1.0
        assert result.details == {"source_words": 10, "target_words": 11}

    def test_05_above_ceiling_is_review(self):
        result = lpr_guard(SOURCE_10, words(13))
        assert result.recommendation == "review"
        assert "lpr_above_ceiling" in result.issues
        assert result.passed

    def test_06_empty_input_is_reject(self):
        for original, translated in (("", "text"), (SOURCE_10, "   ")):
            result = lpr_guard(original, translated)
            assert result.recommendation == "reject"
            assert result.issues == ["empty_text_input"]
            assert not result.passed

    def test_07_lpr_monotonic_in_translation_length(self):
        """Adding words to the translation never lowers LPR."""
        values = [lpr_guard(SOURCE_10, words(n)).lpr for n in range(1, 25)]
        assert values == sorted(values)


# =============================================================================
# Coverage
# =============================================================================

class TestCoverageGuard:

    def test_08_extract_clauses(self):
        clauses = extract_clauses("الجملة الأولى، الجملة الثانية. الجملة الثالثة")
        assert clauses == ["الجملة الأولى", "الجملة الثانية", "الجملة الثالثة"]
        assert extract_clauses("Yes. No. Maybe so") == ["Maybe so"]

    def test_09_partial_coverage_lists_unmapped(self):
        original = "الجملة الأولى، الجملة الثانية. الجملة الثالثة"
        result = coverage_guard(original, "First clause here. Second clause here.")
        assert result.coverage_ratio == pytest.approx(2 / 3)
        assert result.unmapped_clauses == ["الجملة الثالثة"]
        assert "incomplete_semantic_coverage" in result.issues
        assert "unmapped_source_clauses" in result.issues
        assert not result.passed

    def test_10_coverage_is_bounded_by_one(self):
        result = coverage_guard(ORIGINAL, "One here. Two here. Three here. Four here.")
        assert result.coverage_ratio == 1.0
        assert result.passed
        assert result.unmapped_clauses == []

    def test_11_missing_translation(self):
        result = coverage_guard(ORIGINAL, "")
        assert result.coverage_ratio == 0.0
        assert "missing_english_translation" in result.issues


# =============================================================================
# Drift
# =============================================================================

class TestDriftGuard:

    def test_12_identical_text_passes(self):
        result = drift_guard(ORIGINAL, ORIGINAL)
        assert result.similarity == 1.0
        assert result.structural_changes == []
        assert result.passed

    def test_13_dropped_negation_is_flagged(self):
        result = drift_guard("هذا لا يجوز", "هذا يجوز")
        assert "negation_change" in result.structural_changes
        assert "length_change" in result.structural_changes
        assert "semantic_drift_detected" in result.issues
        assert "excessive_structural_changes" in result.issues
        assert not result.passed

    def test_14_empty_input_fails(self):
        result = drift_guard("", "text")
        assert not result.passed
        assert result.issues == ["empty_input"]


# =============================================================================
# Aggregate
# =============================================================================

class TestAssessQuality:

    def test_15_accept(self):
        assessment = assess_quality(ORIGINAL, ENGLISH_11)
        assert assessment.passed
        assert assessment.recommendation == "accept"
        assert assessment.drift is None
        assert assessment.confidence == pytest.approx(1.0)
        assert assessment.gates() == {"lpr": True, "coverage": True, "drift": True}

    def test_16_empty_translation_rejects(self):
        assessment = assess_quality(ORIGINAL, "")
        assert assessment.recommendation == "reject"
        assert "empty_text_input" in assessment.issues
        assert assessment.overall["pass"] is False

    def test_17_short_translation_expands(self):
        assessment = assess_quality(ORIGINAL, "Knowledge is duty, patience helps.")
        assert assessment.recommendation == "expand"
        assert not assessment.passed

    def test_18_low_coverage_rejects(self):
        one_clause = "Seeking knowledge is a duty upon every single Muslim believer always"
        assessment = assess_quality(ORIGINAL, one_clause)
        assert assessment.lpr.passed
        assert assessment.recommendation == "reject"

    def test_19_failed_gate_above_reject_floor_is_review(self):
        config = GuardConfig(coverage_threshold=0.99, coverage_reject=0.4)
        one_clause = "Seeking knowledge is a duty upon every single Muslim believer always"
        assessment = assess_quality(ORIGINAL, one_clause, config=config)
        assert assessment.recommendation == "review"
        assert "incomplete_semantic_coverage" in assessment.issues

    def test_20_drift_included_only_when_enhanced_differs(self):
        assessment = assess_quality(ORIGINAL, ENGLISH_11, enhanced=ORIGINAL)
        assert assessment.drift is None

        assessment = assess_quality("هذا لا يجوز أبدا", "This is never allowed at all.",
                                    enhanced="هذا يجوز أبدا")
        assert assessment.drift is not None
        assert assessment.recommendation == "reject"
        assert "drift" in assessment.to_dict()

    def test_21_guard_config_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_GUARD_CONFIG.lpr_min = 0.5
        assert DEFAULT_GUARD_CONFIG.to_dict()["lpr_max"] == 1.20

    def test_22_clause_map_splits_on_conjunctions(self):
        clauses = clause_map("ذهب الولد و جاء الأب")
        assert [c["text"] for c in clauses] == ["ذهب الولد", "جاء الأب"]
        assert clauses[0]["type"] == "main"
        assert clauses[1]["type"] == "subordinate"
