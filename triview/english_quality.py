#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
english_quality.py - Excellence Rail for English output

- Style pass: lexical substitutions for archaic connectives
- Readability: Flesch-Kincaid grade, sentence length statistics
- Audience suitability: jargon, passive voice, archaic terms, cliches
- ExcellenceRail: runs all three and decides whether a readability retry is needed

Targets: grade in [8, 11], at most 25% of sentences over 30 words.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass, field
from typing import Any, Dict, List

GRADE_RANGE = (8.0, 11.0)
LONG_SENTENCE_WORDS = 30
MAX_LONG_PCT = 25.0
MAX_MEDIAN_WORDS = 20

STYLE_SUBSTITUTIONS = [
    (re.compile(r"\bwhilst\b", re.IGNORECASE), "while"),
    (re.compile(r"\bamongst\b", re.IGNORECASE), "among"),
    (re.compile(r"\bnonetheless\b", re.IGNORECASE), "nevertheless"),
]

SENTENCE_BOUNDARY = re.compile(r"""[.!?]+["']?(?:\s+|$)""")
ALPHA_WORD = re.compile(r"\b[a-z]+\b")
NON_SYLLABIC_ENDINGS = re.compile(r"(?:es|ed|ing|tion|sion|ly)$")
VOWEL_GROUP = re.compile(r"[aeiouy]+")

JARGON_PATTERNS = [
    re.compile(r"\b(?:hermeneutic|epistemolog|ontolog|phenomenolog|dialectic|heuristic|paradigmatic|teleolog|deontolog|axiomatic)\w*\b", re.IGNORECASE),
    re.compile(r"\b(?:eschatological|soteriological|christological|pneumatological|trinitarian|ecclesiastical)\w*\b", re.IGNORECASE),
    re.compile(r"\b(?:utilize|facilitate|implement|demonstrate|incorporate|initiate|terminate|conceptualize)\b", re.IGNORECASE),
    re.compile(r"\b(?:purportedly|ostensibly|presumably|conceivably|hypothetically|theoretically)\b", re.IGNORECASE),
]
PASSIVE_PATTERNS = [
    re.compile(r"\b(?:is|are|was|were|being|been|be)\s+\w+ed\b", re.IGNORECASE),
    re.compile(r"\b(?:is|are|was|were|being|been|be)\s+(?:given|taken|made|done|seen|found|used|said|told|shown)\b", re.IGNORECASE),
]
ARCHAIC_TERMS = [
    "whilst", "amongst", "betwixt", "hitherto", "heretofore", "wherein", "whereby",
    "therein", "thereof", "whereof", "whereupon", "notwithstanding", "inasmuch",
    "insofar", "howbeit", "albeit", "methinks", "perchance", "mayhap",
    "verily", "forsooth", "prithee", "thence", "whence", "hence",
]
CLICHES = [
    "tip of the iceberg", "think outside the box", "paradigm shift", "low-hanging fruit",
    "move the needle", "game changer", "at the end of the day", "it goes without saying",
    "needless to say", "last but not least", "in this day and age", "crystal clear",
    "few and far between",
]
ACADEMIC_JARGON = [
    "aforementioned", "heretofore", "notwithstanding", "vis-à-vis", "qua",
    "ipso facto", "per se", "prima facie", "sine qua non", "sui generis",
    "mutatis mutandis", "ceteris paribus", "inter alia", "exempli gratia",
    "videlicet", "scilicet", "ergo", "henceforth", "forthwith",
]


# ============================================================================
# Readability
# ============================================================================


@dataclass
class ReadabilityMetrics:
    grade: float
    avg_len: float
    long_pct: float
    total_sentences: int
    total_words: int
    median_length: float


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in SENTENCE_BOUNDARY.split(text or "") if s.strip()]


def count_syllables(word: str) -> int:
    if len(word) <= 3:
        return 1
    word = NON_SYLLABIC_ENDINGS.sub("", word)
    syllables = len(VOWEL_GROUP.findall(word))
    if word.endswith("e") and syllables > 1:
        syllables -= 1
    return max(1, syllables)


def flesch_kincaid_grade(text: str) -> float:
    sentences = len(split_sentences(text))
    words = len((text or "").split())
    if sentences == 0 or words == 0:
        return 0.0
    syllables = sum(count_syllables(w) for w in ALPHA_WORD.findall(text.lower()))
    grade = 0.39 * (words / sentences) + 11.8 * (syllables / words) - 15.59
    return max(0.0, round(grade, 1))


def analyze_readability(text: str) -> ReadabilityMetrics:
    sentences = split_sentences(text)
    lengths = [len(s.split()) for s in sentences]
    total_words = len((text or "").split())
    long_count = sum(1 for n in lengths if n > LONG_SENTENCE_WORDS)

    return ReadabilityMetrics(
        grade=flesch_kincaid_grade(text),
        avg_len=round(total_words / len(sentences), 1) if sentences else 0.0,
        long_pct=round(long_count / len(sentences) * 100, 1) if sentences else 0.0,
        total_sentences=len(sentences),
        total_words=total_words,
        median_length=round(float(statistics.median(lengths)), 1) if lengths else 0.0,
    )


def readability_flags(metrics: ReadabilityMetrics) -> Dict[str, bool]:
    return {
        "grade_out_of_range": metrics.grade < GRADE_RANGE[0] or metrics.grade > GRADE_RANGE[1],
        "too_many_long_sentences": metrics.long_pct > MAX_LONG_PCT,
        "median_too_high": metrics.median_length > MAX_MEDIAN_WORDS,
    }


# ============================================================================
# Audience suitability
# ============================================================================


@dataclass
class AudienceSuitability:
    score: int
    flags: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)


def _find_terms(text: str, terms: List[str]) -> List[str]:
    lowered = text.lower()
    return [t for t in terms if re.search(rf"\b{re.escape(t)}\b", lowered)]


def analyze_audience(text: str) -> AudienceSuitability:
    words = ALPHA_WORD.findall((text or "").lower())
    sentence_count = len(split_sentences(text))

    jargon = sorted({m.lower() for p in JARGON_PATTERNS for m in p.findall(text or "")})
    passive_count = sum(len(p.findall(text or "")) for p in PASSIVE_PATTERNS)
    passive_overload = bool(sentence_count) and passive_count / sentence_count * 100 > 30
    archaic = _find_terms(text or "", ARCHAIC_TERMS)
    cliches = [c for c in CLICHES for _ in re.finditer(re.escape(c), (text or "").lower())]
    academic = _find_terms(text or "", ACADEMIC_JARGON)

    flags: List[str] = []
    score = 100.0

    jargon_density = len(jargon) / len(words) * 100 if words else 0.0
    if jargon_density > 5:
        flags.append(f"High jargon density: {jargon_density:.1f}%")
        score -= min(30, jargon_density * 2)
    if passive_overload:
        flags.append("Excessive passive voice constructions")
        score -= 20
    if archaic:
        flags.append(f"Archaic terms detected: {', '.join(archaic[:3])}")
        score -= min(25, len(archaic) * 5)
    if len(cliches) > 2:
        flags.append(f"Overuse of cliched metaphors: {len(cliches)} detected")
        score -= min(15, len(cliches) * 3)
    if len(academic) > 3:
        flags.append(f"Academic jargon overload: {', '.join(academic[:2])}")
        score -= min(20, len(academic) * 2)

    return AudienceSuitability(
        score=max(0, round(score)),
        flags=flags,
        details={
            "jargon_count": len(jargon),
            "jargon_density": jargon_density,
            "passive_overload": passive_overload,
            "archaic_terms": archaic,
            "cliche_metaphors": cliches,
            "academic_jargon": academic,
        },
    )


# ============================================================================
# Rail
# ============================================================================


def apply_style_pass(text: str) -> str:
    for pattern, replacement in STYLE_SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    return text


@dataclass
class RailResult:
    text: str
    readability: ReadabilityMetrics
    audience: AudienceSuitability
    flags: Dict[str, bool]

    @property
    def needs_readability(self) -> bool:
        return self.flags["grade_out_of_range"] or self.flags["too_many_long_sentences"]

    @property
    def reason(self) -> str:
        return "grade_out_of_range" if self.flags["grade_out_of_range"] else "too_many_long_sentences"

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "applied": True,
            "grade": self.readability.grade,
            "longPct": self.readability.long_pct,
            "audienceScore": self.audience.score,
            "readabilityFlags": dict(self.flags),
            "audienceFlags": list(self.audience.flags),
        }


class ExcellenceRail:
    """Style pass followed by readability and audience analysis."""

    def evaluate(self, text: str) -> RailResult:
        styled = apply_style_pass(text)
        metrics = analyze_readability(styled)
        return RailResult(
            text=styled,
            readability=metrics,
            audience=analyze_audience(styled),
            flags=readability_flags(metrics),
        )
