#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
quality_guards.py - Quality gates for translated rows

Pure functions over text, parameterised by an immutable GuardConfig:
- LPR (length preservation ratio): translated words / source words
- Coverage: clause-level semantic completeness proxy
- Drift: similarity and structural checks between original and enhanced source
- assess_quality: aggregate pass/score/recommendation

Recommendations: accept | review | expand | reject
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class GuardConfig:
    """Thresholds for the quality gates. Built once per run, never mutated."""
    lpr_min: float = 0.95
    lpr_ideal: float = 1.05
    lpr_max: float = 1.20
    coverage_threshold: float = 0.95
    coverage_reject: float = 0.90
    drift_threshold: float = 0.85
    max_structural_changes: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_GUARD_CONFIG = GuardConfig()

SENTENCE_SPLIT = re.compile(r"[.!?؟]")
CLAUSE_SPLIT = re.compile(r"[,،;]|\s+(?:و|أو|لكن|however|but|and|or)\s+")
ARABIC_CONJUNCTIONS = re.compile(r"\s+(?:و|أو|لكن|إذا|لأن|أن)\s+")
QUESTION_MARKS = re.compile(r"[?؟]")
NEGATION_MARKERS = re.compile(r"\b(?:لا|ليس|ما|غير)\b")
MIN_CLAUSE_CHARS = 3


# ============================================================================
# Result types
# ============================================================================


@dataclass
class LPRResult:
    lpr: float
    recommendation: str
    passed: bool
    score: float
    issues: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CoverageResult:
    coverage_ratio: float
    source_clauses: int
    target_clauses: int
    mapped_clauses: int
    unmapped_clauses: List[str]
    passed: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class DriftResult:
    similarity: float
    structural_changes: List[str]
    passed: bool
    issues: List[str] = field(default_factory=list)


@dataclass
class QualityAssessment:
    lpr: LPRResult
    coverage: CoverageResult
    drift: Optional[DriftResult]
    passed: bool
    score: float
    issues: List[str]
    recommendation: str
    confidence: float

    @property
    def overall(self) -> Dict[str, Any]:
        return {"pass": self.passed, "score": self.score, "issues": list(self.issues)}

    def gates(self) -> Dict[str, bool]:
        return {
            "lpr": self.lpr.passed,
            "coverage": self.coverage.passed,
            "drift": self.drift.passed if self.drift else True,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lpr": asdict(self.lpr),
            "coverage": asdict(self.coverage),
            "drift": asdict(self.drift) if self.drift else None,
            "overall": self.overall,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
        }


# ============================================================================
# Text helpers
# ============================================================================


def count_words(text: str) -> int:
    return len((text or "").split())


def calculate_lpr(original: str, translated: str) -> float:
    """Translated word count divided by original word count (0.0 for empty original)."""
    source_words = count_words(original)
    if source_words == 0:
        return 0.0
    return count_words(translated) / source_words


def extract_clauses(text: str) -> List[str]:
    """Split text into sentences, then clauses; drops fragments of 3 chars or fewer."""
    clauses: List[str] = []
    for sentence in SENTENCE_SPLIT.split(text or ""):
        for part in CLAUSE_SPLIT.split(sentence):
            part = part.strip()
            if len(part) > MIN_CLAUSE_CHARS:
                clauses.append(part)
    return clauses


def clause_map(text: str) -> List[Dict[str, Any]]:
    """Split source text on Arabic conjunctions into numbered clauses."""
    parts = [p.strip() for p in ARABIC_CONJUNCTIONS.split(text or "") if p.strip()]
    return [
        {"id": f"clause_{i + 1}", "text": part, "type": "main" if i == 0 else "subordinate"}
        for i, part in enumerate(parts)
    ]


def _sentence_count(text: str) -> int:
    return len([s for s in SENTENCE_SPLIT.split(text or "") if s.strip()])


# ============================================================================
# Guards
# ============================================================================


def lpr_guard(original: str, translated: str,
              config: GuardConfig = DEFAULT_GUARD_CONFIG) -> LPRResult:
    if not (original or "").strip() or not (translated or "").strip():
        return LPRResult(
            lpr=0.0, recommendation="reject", passed=False, score=0.0,
            issues=["empty_text_input"],
        )

    lpr = calculate_lpr(original, translated)
    issues: List[str] = []

    if lpr < config.lpr_min:
        recommendation = "expand"
        issues.append("lpr_below_minimum")
    elif lpr < config.lpr_ideal:
        recommendation = "review"
    elif lpr <= config.lpr_max:
        recommendation = "accept"
    else:
        recommendation = "review"
        issues.append("lpr_above_ceiling")

    return LPRResult(
        lpr=lpr,
        recommendation=recommendation,
        passed=lpr >= config.lpr_min,
        score=min(lpr / config.lpr_ideal, 1.0),
        issues=issues,
        details={
            "source_words": count_words(original),
            "target_words": count_words(translated),
        },
    )


def coverage_guard(original: str, translated: str,
                   config: GuardConfig = DEFAULT_GUARD_CONFIG) -> CoverageResult:
    source = extract_clauses(original)
    target = extract_clauses(translated)

    mapped = min(len(source), len(target))
    ratio = mapped / len(source) if source else 0.0
    unmapped = source[len(target):] if len(source) > len(target) else []

    issues: List[str] = []
    if ratio < config.coverage_threshold:
        issues.append("incomplete_semantic_coverage")
    if unmapped:
        issues.append("unmapped_source_clauses")
    if not target:
        issues.append("missing_english_translation")

    return CoverageResult(
        coverage_ratio=ratio,
        source_clauses=len(source),
        target_clauses=len(target),
        mapped_clauses=mapped,
        unmapped_clauses=unmapped,
        passed=ratio >= config.coverage_threshold,
        issues=issues,
    )


def drift_guard(original: str, enhanced: str,
                config: GuardConfig = DEFAULT_GUARD_CONFIG) -> DriftResult:
    if not (original or "").strip() or not (enhanced or "").strip():
        return DriftResult(similarity=0.0, structural_changes=[], passed=False, issues=["empty_input"])

    words_a = set(original.lower().split())
    words_b = set(enhanced.lower().split())
    union = words_a | words_b
    similarity = len(words_a & words_b) / len(union) if union else 1.0

    changes: List[str] = []
    length_ratio = len(enhanced) / len(original)
    if length_ratio < 0.95 or length_ratio > 1.05:
        changes.append("length_change")
    if abs(_sentence_count(original) - _sentence_count(enhanced)) > 1:
        changes.append("sentence_count_change")
    if len(QUESTION_MARKS.findall(original)) != len(QUESTION_MARKS.findall(enhanced)):
        changes.append("question_mark_change")
    if len(NEGATION_MARKERS.findall(original)) != len(NEGATION_MARKERS.findall(enhanced)):
        changes.append("negation_change")

    issues: List[str] = []
    if similarity < config.drift_threshold:
        issues.append("semantic_drift_detected")
    if len(changes) > config.max_structural_changes:
        issues.append("excessive_structural_changes")

    return DriftResult(
        similarity=similarity,
        structural_changes=changes,
        passed=not issues,
        issues=issues,
    )


def assess_quality(original: str, translated: str, enhanced: Optional[str] = None,
                   config: GuardConfig = DEFAULT_GUARD_CONFIG) -> QualityAssessment:
    """Run all guards and derive the aggregate recommendation."""
    lpr = lpr_guard(original, translated, config)
    coverage = coverage_guard(original, translated, config)
    drift = drift_guard(original, enhanced, config) if enhanced and enhanced != original else None

    passed = lpr.passed and coverage.passed and (drift is None or drift.passed)
    issues = lpr.issues + coverage.issues + (drift.issues if drift else [])

    scores = [lpr.score, coverage.coverage_ratio]
    if drift is not None:
        scores.append(drift.similarity)
    confidence = sum(scores) / len(scores)

    if "empty_text_input" in lpr.issues:
        recommendation = "reject"
    elif lpr.lpr < config.lpr_min:
        recommendation = "expand"
    elif coverage.coverage_ratio < config.coverage_reject or (drift is not None and not drift.passed):
        recommendation = "reject"
    elif not passed:
        recommendation = "review"
    else:
        recommendation = "accept"

    return QualityAssessment(
        lpr=lpr,
        coverage=coverage,
        drift=drift,
        passed=passed,
        score=confidence,
        issues=issues,
        recommendation=recommendation,
        confidence=confidence,
    )
