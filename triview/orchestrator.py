#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
orchestrator.py - Two-pass pipeline driver

Pass 1: every row in scope, sorted by id, through
        BoundedExecutor -> RetryController -> RowPipeline.
Pass 2: pass-1 successes that still carry an unapplied expansion or
        readability flag, rebuilt from their row artifacts.
Then the Result Merger writes the combined outputs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .async_adapter import AsyncLLMClient, BoundedExecutor, RetryController, RetryStats, is_retryable
from .config import PipelineConfig, load_guard_config
from .cost_monitor import CostLedger
from .english_quality import ExcellenceRail
from .flag_store import FlagStore
from .models import Row, RowOutcome, Section, content_hash
from .normalize_guard import enhance_text
from .result_merger import MergeSummary, merge_results
from .row_pipeline import RowPipeline
from .runtime_adapter import log_progress
from .scripture_cache import ScriptureResolver
from .stores import JsonDirectoryStore, KeyValueStore, read_json
from .translation_memory import TMConfig, TranslationMemory
from .translation_service import LLMTranslationService, MockTranslationService, TranslationService

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Run-level failure: nothing in scope, unreadable or malformed section files."""


@dataclass
class RunResult:
    outcomes: Dict[str, RowOutcome]
    second_pass_rows: List[str] = field(default_factory=list)
    summary: Optional[MergeSummary] = None
    cost: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Sections and worklist
# ============================================================================


async def load_sections(sections_dir: Union[str, Path]) -> List[Section]:
    sections_dir = Path(sections_dir)
    if not sections_dir.is_dir():
        raise PipelineError(f"Sections directory not found: {sections_dir}")

    sections: List[Section] = []
    for path in sorted(sections_dir.glob("*.json")):
        try:
            sections.append(Section.from_dict(await read_json(path)))
        except (OSError, json.JSONDecodeError, ValueError, TypeError) as e:
            raise PipelineError(f"Malformed section file {path}: {e}") from e
    sections.sort(key=lambda s: s.id)
    return sections


def filter_scope(sections: List[Section], scope_ids: Optional[List[str]]) -> List[Section]:
    selected = sections if scope_ids is None else [s for s in sections if s.id in scope_ids]
    if not selected:
        raise PipelineError(f"No sections found matching scope: {','.join(scope_ids or []) or 'all'}")
    return selected


def build_worklist(sections: List[Section]) -> List[Row]:
    """All rows, deduplicated by id (first occurrence wins), sorted by id."""
    rows: Dict[str, Row] = {}
    for section in sections:
        for row in section.rows:
            if row.id in rows:
                logger.warning("Duplicate row id %s in section %s ignored", row.id, section.id)
                continue
            rows[row.id] = row
    return [rows[k] for k in sorted(rows)]


# ============================================================================
# Orchestrator
# ============================================================================


class Orchestrator:

    def __init__(self, pipeline: RowPipeline, executor: BoundedExecutor,
                 retry: RetryController, artifacts: KeyValueStore, flags: FlagStore,
                 output_dir: Union[str, Path], scripture: Optional[ScriptureResolver] = None,
                 base_url: Optional[str] = None, progress: bool = True):
        self.pipeline = pipeline
        self.executor = executor
        self.retry = retry
        self.artifacts = artifacts
        self.flags = flags
        self.output_dir = Path(output_dir)
        self.scripture = scripture
        self.base_url = base_url
        self.progress = progress

    async def dispatch(self, row: Row) -> RowOutcome:
        """Executor -> retry -> pipeline for one row. Never raises."""
        stats = RetryStats()

        async def attempt() -> RowOutcome:
            async with self.executor.slot():
                return await self.pipeline.process(row)

        try:
            outcome = await self.retry.run(attempt, label=row.id, stats=stats)
        except Exception as e:
            logger.error("Row %s failed after %d attempts: %s", row.id, stats.attempts, e)
            outcome = RowOutcome.failed(row.id, f"{type(e).__name__}: {e}", retryable=is_retryable(e))
        outcome.attempts = stats.attempts
        return outcome

    async def run_pass(self, rows: List[Row], step: str) -> List[RowOutcome]:
        log_progress(step, "pass_start", {"total_rows": len(rows), "concurrency": self.executor.capacity},
                     silent=not self.progress)

        async def tracked(row: Row) -> RowOutcome:
            outcome = await self.dispatch(row)
            log_progress(step, "row_complete", {"row_id": row.id, "status": outcome.status,
                                                "lpr": outcome.lpr, "error": outcome.error},
                         silent=not self.progress)
            return outcome

        outcomes = await asyncio.gather(*(tracked(r) for r in rows))
        log_progress(step, "pass_complete", {
            "success": sum(1 for o in outcomes if o.success),
            "failed": sum(1 for o in outcomes if o.status == "failed"),
            "skipped": sum(1 for o in outcomes if o.status == "skipped"),
        }, silent=not self.progress)
        return list(outcomes)

    async def resume_rows(self, rows: List[Row]) -> List[Row]:
        """Carry the stored translation onto rows whose source is unchanged since their artifact."""
        resumed: List[Row] = []
        for row in rows:
            artifact = await self.artifacts.get(row.id)
            meta = artifact.get("metadata") if isinstance(artifact, dict) else None
            if not isinstance(meta, dict) or meta.get("laneHash") != content_hash(row.original):
                resumed.append(row)
                continue
            metadata = dict(row.metadata)
            metadata.update(laneHash=meta["laneHash"], processedAt=meta.get("processedAt"))
            resumed.append(Row(
                id=row.id,
                original=row.original,
                complexity=row.complexity,
                enhanced=artifact.get("enhanced") or row.enhanced,
                english=artifact.get("english") or row.english,
                scripture_refs=list(row.scripture_refs),
                metadata=metadata,
                section_id=row.section_id,
                footnotes=list(artifact.get("footnotes") or row.footnotes),
            ))
        return resumed

    async def second_pass(self, results: Dict[str, RowOutcome]) -> List[str]:
        """Re-run successful rows with unapplied flags; overwrites their results in place."""
        pending = await self.flags.pending_row_ids()
        candidates = sorted(row_id for row_id, o in results.items() if o.success and row_id in pending)
        if not candidates:
            return []

        rows: List[Row] = []
        for row_id in candidates:
            artifact = await self.artifacts.get(row_id)
            if artifact is None:
                logger.warning("No artifact for flagged row %s, skipping second pass", row_id)
                continue
            rows.append(Row.from_dict(artifact).retry_input())

        logger.info("Second pass over %d flagged rows", len(rows))
        for outcome in await self.run_pass(rows, "pass2"):
            results[outcome.row_id] = outcome
        return [r.id for r in rows]

    async def run(self, sections: List[Section]) -> RunResult:
        worklist = await self.resume_rows(build_worklist(sections))
        if self.scripture is not None:
            await self.scripture.warm_cache(self.base_url)

        results: Dict[str, RowOutcome] = {}
        for outcome in await self.run_pass(worklist, "pass1"):
            results[outcome.row_id] = outcome

        second = await self.second_pass(results)

        summary = await merge_results(
            list(results.values()), self.artifacts, self.flags, self.output_dir,
            section_titles={s.id: s.title for s in sections},
        )
        return RunResult(outcomes=results, second_pass_rows=second, summary=summary)


# ============================================================================
# Entry point
# ============================================================================


def build_translator(config: PipelineConfig, ledger: CostLedger) -> TranslationService:
    if config.translator == "mock":
        return MockTranslationService(ledger)
    return LLMTranslationService(AsyncLLMClient(), ledger)


async def run_pipeline(config: PipelineConfig,
                       translator: Optional[TranslationService] = None,
                       sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                       progress: bool = True) -> RunResult:
    """Load, process and merge everything in scope. Raises PipelineError on run-level failure."""
    sections = filter_scope(await load_sections(config.sections_dir), config.scope_ids())
    logger.info("Processing %d sections: %s", len(sections), ", ".join(s.id for s in sections))

    guard_config = load_guard_config(config.gates_path)
    ledger = CostLedger(log_dir=str(config.cost_log_dir))
    translator = translator or build_translator(config, ledger)
    tm = TranslationMemory(TMConfig(location=str(config.tm_path), threshold=config.tm_threshold))
    scripture = ScriptureResolver(config.scripture_dir, base_url=config.base_url)
    flags = FlagStore.for_directory(config.output_dir)
    artifacts = JsonDirectoryStore(config.rows_dir)

    pipeline = RowPipeline(
        translator=translator,
        tm=tm,
        scripture=scripture,
        flags=flags,
        artifacts=artifacts,
        guard_config=guard_config,
        excellence_rail=ExcellenceRail() if config.excellence_rail else None,
        expansion_target_lpr=config.expansion_target_lpr,
        base_url=config.base_url,
        normalizer=lambda text: enhance_text(text, config.preserve_punctuation),
    )
    orchestrator = Orchestrator(
        pipeline=pipeline,
        executor=BoundedExecutor(config.concurrency),
        retry=RetryController(config.max_retries, config.base_delay_s, sleep=sleep),
        artifacts=artifacts,
        flags=flags,
        output_dir=config.output_dir,
        scripture=scripture,
        base_url=config.base_url,
        progress=progress,
    )

    try:
        result = await orchestrator.run(sections)
    finally:
        await translator.close()
        await scripture.save()
        await scripture.close()
        tm.close()

    ledger.write_summary()
    result.cost = ledger.summary()
    if progress:
        ledger.print_summary()
    return result
