#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
translation_service.py - Pluggable text-generation backends

- TranslationService: interface used by the row pipeline
- LLMTranslationService: AsyncLLMClient-backed, records a cost span per call
- MockTranslationService: deterministic offline stand-in for dry runs
"""

from __future__ import annotations

import math
import re
from abc import ABC, abstractmethod
from typing import Optional

from .async_adapter import AsyncLLMClient
from .cost_monitor import CostLedger
from .quality_guards import extract_clauses
from .runtime_adapter import _estimate_tokens

TRANSLATE_SYSTEM = (
    "You translate Arabic prose into faithful, readable English. "
    "Render every clause of the source; do not summarise, omit or add commentary. "
    "Keep questions as questions and negations as negations. "
    "Return only the English translation."
)

TONE_SYSTEM = (
    "You are an English copy editor. Remove intensifiers (very, really, quite, rather, "
    "extremely), replace ornate or archaic wording with plain modern equivalents, and "
    "keep the meaning, sentence count and length otherwise unchanged. Return only the text."
)

INTENSIFIERS = re.compile(r"\b(?:very|really|quite|rather|extremely)\s+", re.IGNORECASE)
ORNATE_TERMS = re.compile(r"\b(?:ornate|flowery|decorative)\b", re.IGNORECASE)
ARCHAIC_TERMS = re.compile(r"\b(?:arcane|archaic)\b", re.IGNORECASE)
EXPANSION_TARGET = re.compile(r"LPR of ([\d.]+)")


def expansion_directive(target_lpr: float, reason: str) -> str:
    return f"Expand this translation to achieve LPR of {target_lpr}. Reason: {reason}"


def readability_directive(reason: str) -> str:
    return (f"Improve readability ({reason}): aim for grade 8-11 and split sentences "
            "longer than 30 words without dropping content.")


def apply_tone_rules(text: str) -> str:
    text = INTENSIFIERS.sub("", text)
    text = ORNATE_TERMS.sub("clear", text)
    text = ARCHAIC_TERMS.sub("established", text)
    return re.sub(r"\s+", " ", text).strip()


class TranslationService(ABC):
    """External translation + tone refinement operations."""

    @abstractmethod
    async def translate(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        ...

    @abstractmethod
    async def refine_tone(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        ...

    async def close(self) -> None:
        return None


class LLMTranslationService(TranslationService):

    def __init__(self, client: AsyncLLMClient, ledger: CostLedger):
        self.client = client
        self.ledger = ledger

    async def _call(self, operation: str, system: str, text: str,
                    row_id: str, directive: Optional[str]) -> str:
        user = text if not directive else f"{text}\n\nInstruction: {directive}"
        span_id = self.ledger.start_span(operation, row_id, {"directive": bool(directive)})
        try:
            result = await self.client.chat(system=system, user=user, step=operation)
        except Exception as e:
            self.ledger.end_span(span_id, metadata={"error": str(e)[:200]})
            raise
        self.ledger.end_span(span_id, result.prompt_tokens, result.completion_tokens, result.model,
                             {"usage_source": result.usage_source, "latency_ms": result.latency_ms})
        return result.text

    async def translate(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        return await self._call("translate", TRANSLATE_SYSTEM, text, row_id, directive)

    async def refine_tone(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        return await self._call("tone_refine", TONE_SYSTEM, text, row_id, directive)

    async def close(self) -> None:
        await self.client.close()


class MockTranslationService(TranslationService):
    """
    Offline translator producing one English sentence per source clause,
    padded to a fixed length ratio (raised when an expansion directive is given).
    """

    FILLER = ["faithfully", "conveying", "the", "meaning", "of", "this", "passage"]

    def __init__(self, ledger: Optional[CostLedger] = None, ratio: float = 1.12):
        self.ledger = ledger
        self.ratio = ratio
        self.calls = 0

    def _record(self, operation: str, row_id: str, source: str, output: str) -> None:
        if self.ledger is None:
            return
        span_id = self.ledger.start_span(operation, row_id, {"mock": True})
        self.ledger.end_span(span_id, _estimate_tokens(source), _estimate_tokens(output), "mock")

    def _render(self, text: str, ratio: float) -> str:
        sentences = max(1, len(extract_clauses(text)))
        target_words = max(2 * sentences, math.ceil(len(text.split()) * ratio))
        per_sentence = [target_words // sentences] * sentences
        for i in range(target_words % sentences):
            per_sentence[i] += 1

        rendered = []
        for i, count in enumerate(per_sentence):
            words = ["Rendered", f"clause{i + 1}"]
            words += [self.FILLER[j % len(self.FILLER)] for j in range(count - 2)]
            rendered.append(" ".join(words) + ".")
        return " ".join(rendered)

    async def translate(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        self.calls += 1
        ratio = self.ratio
        match = EXPANSION_TARGET.search(directive or "")
        if match:
            ratio = max(ratio, float(match.group(1).rstrip(".")) + 0.07)
        output = self._render(text, ratio)
        self._record("translate", row_id, text, output)
        return output

    async def refine_tone(self, text: str, row_id: str, directive: Optional[str] = None) -> str:
        output = apply_tone_rules(text)
        self._record("tone_refine", row_id, text, output)
        return output
