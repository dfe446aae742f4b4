#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
row_pipeline.py - Per-row processing state machine

States, in order:
  1. hash check (idempotent skip)      7. Excellence Rail (optional)
  2. normalize                         8. quality assessment
  3. semantic guard                    9. scripture verification
  4. TM lookup / translate            10. footnote injection
  5. expansion retry (flagged rows)   11. TM learning (on pass)
  6. tone refinement                  12. persist row artifact

Fatal row errors (RowFatalError) end the row as failed. Errors matching the
retry table propagate so the RetryController can re-run the row.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .async_adapter import is_retryable
from .english_quality import ExcellenceRail
from .flag_store import ExpansionFlag, FlagStore, ReadabilityFlag
from .models import Row, RowOutcome, ScriptureRef, content_hash
from .normalize_guard import enhance_text, semantic_guard
from .quality_guards import DEFAULT_GUARD_CONFIG, GuardConfig, assess_quality, clause_map
from .scripture_cache import ScriptureLookupError, ScriptureResolver
from .stores import KeyValueStore
from .translation_memory import TranslationMemory
from .translation_service import TranslationService, expansion_directive, readability_directive

logger = logging.getLogger(__name__)

QURAN_FORMAT = re.compile(r"^\d+:\d+(-\d+)?$")
FINAL_TERMINATOR = re.compile(r"[.!?]+[\"'”’)\]]*\s*$")
DEFAULT_EXPANSION_TARGET = 1.08


class RowFatalError(Exception):
    """Row cannot be completed; recorded as failed, never retried."""


class SemanticGuardError(RowFatalError):
    def __init__(self, issue: str):
        super().__init__(f"Semantic guard failed: {issue}")
        self.issue = issue


class QualityRejectError(RowFatalError):
    def __init__(self, issues: List[str]):
        super().__init__(f"Quality assessment failed: {', '.join(issues) or 'reject'}")
        self.issues = issues


class ScriptureVerificationError(RowFatalError):
    def __init__(self, issue: str, reference: str):
        super().__init__(f"Scripture verification failed: {issue} ({reference})")
        self.issue = issue
        self.reference = reference


def reference_format_issue(ref: ScriptureRef) -> Optional[str]:
    """Format check for a required citation; None when acceptable."""
    if ref.type == "quran" and not QURAN_FORMAT.match(ref.reference.strip()):
        return "invalid_quran_reference"
    return None


def inject_footnotes(text: str, resolved: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Number citations by sorted reference and anchor them before the final terminator."""
    if not resolved:
        return text, []

    ordered = sorted(resolved, key=lambda r: r["reference"])
    footnotes = [
        {
            "number": i,
            "reference": ref["reference"],
            "arabic": ref.get("arabic", ""),
            "english": ref.get("english", ""),
            "metadata": ref.get("metadata", {}),
        }
        for i, ref in enumerate(ordered, 1)
    ]
    anchors = "".join(f"[^{note['number']}]" for note in footnotes)

    text = text.rstrip()
    match = FINAL_TERMINATOR.search(text)
    if match:
        return text[:match.start()] + anchors + text[match.start():], footnotes
    return text + anchors, footnotes


class RowPipeline:
    """Runs one row through every state; shared by all concurrent row tasks."""

    def __init__(
        self,
        translator: TranslationService,
        tm: TranslationMemory,
        scripture: ScriptureResolver,
        flags: FlagStore,
        artifacts: KeyValueStore,
        guard_config: GuardConfig = DEFAULT_GUARD_CONFIG,
        excellence_rail: Optional[ExcellenceRail] = None,
        expansion_target_lpr: float = DEFAULT_EXPANSION_TARGET,
        base_url: Optional[str] = None,
        normalizer: Optional[Callable[[str], str]] = None,
    ):
        self.translator = translator
        self.tm = tm
        self.scripture = scripture
        self.flags = flags
        self.artifacts = artifacts
        self.guard_config = guard_config
        self.excellence_rail = excellence_rail
        self.expansion_target_lpr = expansion_target_lpr
        self.base_url = base_url
        self.normalizer = normalizer or enhance_text

    async def process(self, row: Row) -> RowOutcome:
        try:
            return await self._process(row)
        except RowFatalError as e:
            logger.error("Row %s failed: %s", row.id, e)
            return RowOutcome.failed(row.id, str(e), retryable=False)
        except Exception as e:
            if is_retryable(e):
                raise
            logger.error("Row %s failed with non-retryable error: %s", row.id, e)
            return RowOutcome.failed(row.id, f"{type(e).__name__}: {e}", retryable=False)

    async def _process(self, row: Row) -> RowOutcome:
        # 1. hash check
        lane_hash = content_hash(row.original)
        if (row.metadata.get("laneHash") == lane_hash and row.metadata.get("processedAt")
                and row.english.strip()):
            logger.info("Skipping unchanged row %s", row.id)
            return RowOutcome.skipped(row.id)

        # 2-3. normalize + semantic guard
        enhanced = self.normalizer(row.original)
        check = semantic_guard(row.original, enhanced)
        if not check.passed:
            raise SemanticGuardError(check.issue)
        warnings = [w for w in check.warnings if w["severity"] == "warning"]
        if warnings:
            logger.warning("Semantic warnings on %s: %s", row.id, [w["type"] for w in warnings])

        # 4. TM lookup
        tm_info: Dict[str, Any] = {"used": False, "suggestionId": None, "similarity": 0.0}
        match = self.tm.best_match(enhanced)
        if match is not None:
            translated = match.english
            tm_info = {"used": True, "suggestionId": match.id, "similarity": match.similarity}
            logger.info("Using TM suggestion %s for %s (%.2f)", match.id, row.id, match.similarity)
        else:
            translated = await self.translator.translate(enhanced, row.id)

        # 5. expansion retry
        expansion_applied = False
        expand_flag = await self.flags.get_expansion(row.id)
        if expand_flag is not None and expand_flag.needs_expand:
            logger.info("Applying expansion to %s (target LPR %.2f)", row.id, expand_flag.target_lpr)
            translated = await self.translator.translate(
                enhanced, row.id, directive=expansion_directive(expand_flag.target_lpr, expand_flag.reason)
            )
            expansion_applied = True
            await self.flags.mark_expansion_applied(row.id)

        # 6. tone refinement
        readability_flag = await self.flags.get_readability(row.id)
        tone_directive = None
        if readability_flag is not None and readability_flag.needs_readability:
            tone_directive = readability_directive(readability_flag.reason)
        final_text = await self.translator.refine_tone(translated, row.id, directive=tone_directive)
        if tone_directive:
            await self.flags.mark_readability_applied(row.id)

        # 7. Excellence Rail
        rail_meta: Dict[str, Any] = {"applied": False}
        needs_readability = False
        if self.excellence_rail is not None:
            rail = self.excellence_rail.evaluate(final_text)
            final_text = rail.text
            rail_meta = rail.to_metadata()
            needs_readability = rail.needs_readability
            if needs_readability:
                await self.flags.set_readability(row.id, ReadabilityFlag(
                    needs_readability=True,
                    reason=rail.reason,
                    grade=rail.readability.grade,
                    long_pct=rail.readability.long_pct,
                ))

        # 8. quality assessment
        assessment = assess_quality(row.original, final_text, enhanced, self.guard_config)
        lpr = assessment.lpr.lpr
        needs_expand = lpr < self.expansion_target_lpr
        if needs_expand:
            logger.info("LPR %.3f below %.2f on %s, flagging for expansion",
                        lpr, self.expansion_target_lpr, row.id)
            await self.flags.set_expansion(row.id, ExpansionFlag(
                needs_expand=True,
                reason="lpr_below_threshold",
                target_lpr=self.expansion_target_lpr,
                current_lpr=round(lpr, 4),
            ))
        if assessment.recommendation == "reject":
            raise QualityRejectError(assessment.issues)
        if not assessment.passed:
            logger.warning("Quality gate failed on %s: %s (%s)", row.id,
                           assessment.recommendation, ", ".join(assessment.issues))

        # 9-10. scripture + footnotes
        resolved = await self._verify_scripture(row.scripture_refs)
        english, footnotes = inject_footnotes(final_text, resolved)

        # 11. TM learning
        if assessment.passed:
            self.tm.learn(row.original, final_text, row.complexity)

        # 12. persist
        expansion_requested = needs_expand or expansion_applied
        metadata = {
            **row.metadata,
            "laneHash": lane_hash,
            "processedAt": datetime.now().isoformat(),
            "lpr": round(lpr, 4),
            "qualityGates": {**assessment.gates(), "semantic": True, "scripture": True},
            "clauses": assessment.coverage.mapped_clauses,
            "confidence": round(assessment.confidence, 4),
            "recommendation": assessment.recommendation,
            "qualityIssues": assessment.issues,
            "tm": tm_info,
            "needsExpand": needs_expand,
            "needsReadability": needs_readability,
            "expansion": {
                "requested": expansion_requested,
                "applied": expansion_applied,
                "targetLPR": self.expansion_target_lpr if expansion_requested else None,
                "reason": "lpr_below_threshold" if expansion_requested else None,
            },
            "excellenceRail": rail_meta,
            "semanticWarnings": warnings,
        }
        result = Row(
            id=row.id,
            original=row.original,
            complexity=row.complexity,
            enhanced=enhanced,
            english=english,
            scripture_refs=row.scripture_refs,
            metadata=metadata,
            section_id=row.section_id,
            footnotes=footnotes,
        )
        await self.artifacts.put(row.id, result.to_dict())

        return RowOutcome(
            row_id=row.id,
            status="success",
            lpr=lpr,
            clause_count=len(clause_map(row.original)),
        )

    async def _verify_scripture(self, refs: List[ScriptureRef]) -> List[Dict[str, Any]]:
        resolved: List[Dict[str, Any]] = []
        for ref in refs:
            if ref.context_only:
                if not ref.normalized.strip():
                    continue
                try:
                    data = await self.scripture.resolve_local_first(ref.normalized, self.base_url)
                except ScriptureLookupError as e:
                    logger.warning("Could not resolve context-only reference %s: %s", ref.normalized, e)
                    continue
                if isinstance(data, dict) and data:
                    resolved.append({**data, "reference": ref.normalized, "contextOnly": True})
                continue

            issue = reference_format_issue(ref)
            if issue:
                raise ScriptureVerificationError(issue, ref.reference)

            try:
                data = await self.scripture.resolve_local_first(ref.reference, self.base_url)
            except ScriptureLookupError as e:
                if is_retryable(e):
                    raise
                raise ScriptureVerificationError("scripture_resolution_failed", ref.reference) from e
            if not isinstance(data, dict):
                raise ScriptureVerificationError("scripture_not_found", ref.reference)
            resolved.append({**data, "reference": ref.reference})
        return resolved
