#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
normalize_guard.py - Source normalization and semantic guard

enhance_text() produces the "enhanced" source variant fed to translation;
semantic_guard() checks that normalization did not alter meaning-bearing
structure (questions, negations).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .quality_guards import NEGATION_MARKERS, QUESTION_MARKS

TATWEEL = re.compile(r"ـ+")
DOUBLE_QUOTES = re.compile(r"[“”„‟«»]")
SINGLE_QUOTES = re.compile(r"[‘’‚‛]")
WHITESPACE = re.compile(r"\s+")

LENGTH_WARNING_RATIO = 0.05
WORD_DELTA_WARNING = 2


def enhance_text(text: str, preserve_punctuation: bool = True) -> str:
    """Strip elongation, normalize quote glyphs, collapse whitespace."""
    enhanced = TATWEEL.sub("", text or "")
    enhanced = DOUBLE_QUOTES.sub('"', enhanced)
    enhanced = SINGLE_QUOTES.sub("'", enhanced)
    enhanced = WHITESPACE.sub(" ", enhanced).strip()

    if not preserve_punctuation:
        enhanced = enhanced.replace("،", ",").replace("؟", "?")

    return enhanced


@dataclass
class SemanticCheck:
    passed: bool
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [w for w in self.warnings if w["severity"] == "error"]

    @property
    def issue(self) -> str:
        return ", ".join(w["type"] for w in self.errors)


def semantic_guard(original: str, enhanced: str) -> SemanticCheck:
    """Question/negation count changes are errors; length and word drift are warnings."""
    warnings: List[Dict[str, Any]] = []

    original_length = len(original)
    enhanced_length = len(enhanced)
    length_diff = abs(original_length - enhanced_length) / original_length if original_length else 0.0
    if length_diff > LENGTH_WARNING_RATIO:
        warnings.append({
            "type": "significant_length_change",
            "severity": "warning",
            "details": {"original_length": original_length, "enhanced_length": enhanced_length,
                        "ratio": round(length_diff, 4)},
        })

    original_questions = len(QUESTION_MARKS.findall(original))
    enhanced_questions = len(QUESTION_MARKS.findall(enhanced))
    if original_questions != enhanced_questions:
        warnings.append({
            "type": "question_pattern_change",
            "severity": "error",
            "details": {"original": original_questions, "enhanced": enhanced_questions},
        })

    original_negations = len(NEGATION_MARKERS.findall(original))
    enhanced_negations = len(NEGATION_MARKERS.findall(enhanced))
    if original_negations != enhanced_negations:
        warnings.append({
            "type": "negation_pattern_change",
            "severity": "error",
            "details": {"original": original_negations, "enhanced": enhanced_negations},
        })

    original_words = len(original.split())
    enhanced_words = len(enhanced.split())
    if abs(original_words - enhanced_words) > WORD_DELTA_WARNING:
        warnings.append({
            "type": "word_count_mismatch",
            "severity": "warning",
            "details": {"original": original_words, "enhanced": enhanced_words},
        })

    passed = not any(w["severity"] == "error" for w in warnings)
    return SemanticCheck(passed=passed, warnings=warnings)
