#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
result_merger.py - Combine per-row artifacts into run outputs

Outputs (all written atomically):
- triview.json: {metadata, rows, sections}
- bilingual.md: original / English / LPR / footnotes per row

Resolved flags are dropped from the flag store here.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .flag_store import FlagStore
from .models import RowOutcome
from .stores import KeyValueStore, atomic_write_json, atomic_write_text

logger = logging.getLogger(__name__)

TRIVIEW_FILE = "triview.json"
REPORT_FILE = "bilingual.md"


@dataclass
class MergeSummary:
    total_rows: int
    successful_rows: int
    failed_rows: int
    skipped_rows: int
    average_lpr: Optional[float]
    min_lpr: Optional[float]
    cleared_flags: Dict[str, int] = field(default_factory=dict)
    triview_path: Optional[str] = None
    report_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def infer_section_id(row: Dict[str, Any]) -> str:
    if row.get("sectionId"):
        return str(row["sectionId"])
    return re.split(r"[-_]", str(row["id"]))[0]


def lpr_statistics(outcomes: List[RowOutcome]) -> Dict[str, Optional[float]]:
    values = [o.lpr for o in outcomes
              if o.success and o.lpr is not None and math.isfinite(o.lpr)]
    if not values:
        return {"average": None, "minimum": None}
    return {"average": round(sum(values) / len(values), 4), "minimum": round(min(values), 4)}


def render_report(rows: List[Dict[str, Any]], sections: List[Dict[str, Any]],
                  summary: MergeSummary) -> str:
    lines = [
        "# Bilingual Translation Report",
        "",
        f"Generated: {datetime.now().isoformat(timespec='seconds')}",
        f"Rows: {summary.successful_rows}/{summary.total_rows} successful, "
        f"{summary.failed_rows} failed, {summary.skipped_rows} skipped",
    ]
    if summary.average_lpr is not None:
        lines.append(f"LPR: average {summary.average_lpr:.3f}, minimum {summary.min_lpr:.3f}")
    lines.append("")

    by_id = {r["id"]: r for r in rows}
    for section in sections:
        lines += [f"## {section['title']}", ""]
        for row_id in section["rows"]:
            row = by_id[row_id]
            lpr = row.get("metadata", {}).get("lpr")
            lines += [
                f"### {row_id}",
                "",
                f"**Arabic:** {row.get('original', '')}",
                "",
                f"**English:** {row.get('english', '')}",
                "",
                f"**LPR:** {lpr:.3f}" if isinstance(lpr, (int, float)) else "**LPR:** n/a",
                "",
            ]
            footnotes = row.get("footnotes") or []
            if footnotes:
                lines += ["**Footnotes:**", ""]
                for note in footnotes:
                    lines.append(f"[^{note['number']}]: {note['reference']}: {note.get('english', '')}")
                lines.append("")
    return "\n".join(lines).rstrip() + "\n"


async def _clear_resolved_flags(rows: List[Dict[str, Any]], flags: FlagStore,
                                processed_ids: set) -> Dict[str, int]:
    cleared = {"expansion": 0, "readability": 0}
    for row in rows:
        if row["id"] not in processed_ids:
            continue
        meta = row.get("metadata") or {}
        expansion = meta.get("expansion") or {}
        if expansion.get("applied") and not meta.get("needsExpand"):
            if await flags.clear_expansion(row["id"]):
                cleared["expansion"] += 1
        rail = meta.get("excellenceRail") or {}
        if rail.get("applied") and not meta.get("needsReadability"):
            if await flags.clear_readability(row["id"]):
                cleared["readability"] += 1
    return cleared


async def merge_results(outcomes: List[RowOutcome], artifacts: KeyValueStore, flags: FlagStore,
                        output_dir: Union[str, Path],
                        section_titles: Optional[Dict[str, str]] = None) -> MergeSummary:
    """Aggregate outcomes, write triview.json + bilingual.md, drop resolved flags."""
    output_dir = Path(output_dir)
    section_titles = section_titles or {}

    rows: List[Dict[str, Any]] = []
    for outcome in sorted(outcomes, key=lambda o: o.row_id):
        if outcome.status == "failed":
            continue
        artifact = await artifacts.get(outcome.row_id)
        if artifact is None:
            if outcome.success:
                logger.warning("Missing artifact for successful row %s", outcome.row_id)
            continue
        rows.append(artifact)

    sections: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        section_id = infer_section_id(row)
        section = sections.setdefault(section_id, {
            "id": section_id,
            "title": section_titles.get(section_id, f"Section {section_id}"),
            "rows": [],
        })
        section["rows"].append(row["id"])
    ordered_sections = [sections[k] for k in sorted(sections)]

    stats = lpr_statistics(outcomes)
    processed_ids = {o.row_id for o in outcomes if o.success}
    summary = MergeSummary(
        total_rows=len(outcomes),
        successful_rows=sum(1 for o in outcomes if o.success),
        failed_rows=sum(1 for o in outcomes if o.status == "failed"),
        skipped_rows=sum(1 for o in outcomes if o.status == "skipped"),
        average_lpr=stats["average"],
        min_lpr=stats["minimum"],
    )
    summary.cleared_flags = await _clear_resolved_flags(rows, flags, processed_ids)

    triview_path = output_dir / TRIVIEW_FILE
    report_path = output_dir / REPORT_FILE
    await atomic_write_json(triview_path, {
        "metadata": {
            "processedAt": datetime.now().isoformat(),
            "totalRows": summary.total_rows,
            "successfulRows": summary.successful_rows,
            "failedRows": summary.failed_rows,
            "skippedRows": summary.skipped_rows,
            "averageLPR": summary.average_lpr,
            "minLPR": summary.min_lpr,
            "failures": [o.to_dict() for o in outcomes if o.status == "failed"],
        },
        "rows": rows,
        "sections": ordered_sections,
    })
    await atomic_write_text(report_path, render_report(rows, ordered_sections, summary))

    summary.triview_path = str(triview_path)
    summary.report_path = str(report_path)
    logger.info("Merged %d rows into %s", len(rows), triview_path)
    return summary
