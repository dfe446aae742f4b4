#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
test_result_merger.py - Merged outputs, statistics and flag cleanup
"""

import json

import pytest

from triview.flag_store import ExpansionFlag, FlagStore, ReadabilityFlag
from triview.models import RowOutcome
from triview.result_merger import (
    REPORT_FILE,
    TRIVIEW_FILE,
    infer_section_id,
    lpr_statistics,
    merge_results,
)
from triview.stores import MemoryStore


def artifact(row_id, section_id=None, lpr=1.1, footnotes=None, **meta):
    return {
        "id": row_id,
        "sectionId": section_id,
        "original": f"نص {row_id}",
        "english": f"Text of {row_id}.",
        "footnotes": footnotes or [],
        "metadata": {"lpr": lpr, **meta},
    }


def success(row_id, lpr=1.1):
    return RowOutcome(row_id=row_id, status="success", lpr=lpr, clause_count=1)


class TestHelpers:

    def test_01_infer_section_id(self):
        assert infer_section_id({"id": "2-005", "sectionId": "7"}) == "7"
        assert infer_section_id({"id": "2-005"}) == "2"
        assert infer_section_id({"id": "3_001"}) == "3"

    def test_02_lpr_statistics_successes_only(self):
        outcomes = [
            success("1-001", 1.0),
            success("1-002", 1.2),
            success("1-003", float("inf")),
            RowOutcome.failed("1-004", "boom"),
            RowOutcome.skipped("1-005"),
        ]
        assert lpr_statistics(outcomes) == {"average": 1.1, "minimum": 1.0}
        assert lpr_statistics([RowOutcome.failed("x", "boom")]) == {"average": None, "minimum": None}


class TestMergeResults:

    @pytest.mark.asyncio
    async def test_03_writes_grouped_outputs(self, temp_dir):
        artifacts = MemoryStore({
            "2-001": artifact("2-001", "2", lpr=1.2),
            "1-002": artifact("1-002", lpr=1.0, footnotes=[
                {"number": 1, "reference": "2:255", "english": "Allah - there is no deity except Him."}]),
            "1-001": artifact("1-001", "1"),
        })
        outcomes = [success("2-001", 1.2), success("1-002", 1.0), RowOutcome.skipped("1-001"),
                    RowOutcome.failed("1-003", "Semantic guard failed: question_pattern_change")]

        summary = await merge_results(outcomes, artifacts, FlagStore.in_memory(), temp_dir,
                                      section_titles={"1": "Knowledge"})

        data = json.loads((temp_dir / TRIVIEW_FILE).read_text(encoding="utf-8"))
        assert [r["id"] for r in data["rows"]] == ["1-001", "1-002", "2-001"]
        assert data["sections"] == [
            {"id": "1", "title": "Knowledge", "rows": ["1-001", "1-002"]},
            {"id": "2", "title": "Section 2", "rows": ["2-001"]},
        ]
        meta = data["metadata"]
        assert (meta["totalRows"], meta["successfulRows"], meta["failedRows"], meta["skippedRows"]) == \
            (4, 2, 1, 1)
        assert meta["averageLPR"] == 1.1
        assert meta["failures"][0]["rowId"] == "1-003"

        report = (temp_dir / REPORT_FILE).read_text(encoding="utf-8")
        assert "## Knowledge" in report
        assert "### 1-002" in report
        assert "[^1]: 2:255: Allah - there is no deity except Him." in report
        assert summary.triview_path == str(temp_dir / TRIVIEW_FILE)

    @pytest.mark.asyncio
    async def test_04_empty_run_still_writes(self, temp_dir):
        summary = await merge_results([], MemoryStore(), FlagStore.in_memory(), temp_dir / "out")
        assert summary.total_rows == 0
        assert summary.average_lpr is None
        data = json.loads((temp_dir / "out" / TRIVIEW_FILE).read_text(encoding="utf-8"))
        assert data["rows"] == [] and data["sections"] == []

    @pytest.mark.asyncio
    async def test_05_clears_resolved_flags_only(self, temp_dir):
        flags = FlagStore.in_memory()
        for row_id in ("1-001", "1-002"):
            await flags.set_expansion(row_id, ExpansionFlag(True, "lpr_below_threshold", 1.08, 1.0))
            await flags.set_readability(row_id, ReadabilityFlag(True, "grade_out_of_range", 13.0, 40.0))

        artifacts = MemoryStore({
            "1-001": artifact("1-001", expansion={"applied": True}, needsExpand=False,
                              excellenceRail={"applied": True}, needsReadability=False),
            "1-002": artifact("1-002", expansion={"applied": True}, needsExpand=True,
                              excellenceRail={"applied": True}, needsReadability=True),
        })

        summary = await merge_results([success("1-001"), success("1-002")], artifacts, flags, temp_dir)

        assert summary.cleared_flags == {"expansion": 1, "readability": 1}
        assert await flags.get_expansion("1-001") is None
        assert await flags.get_readability("1-001") is None
        assert await flags.get_expansion("1-002") is not None
        assert await flags.pending_row_ids() == {"1-002"}

    @pytest.mark.asyncio
    async def test_06_skipped_rows_keep_their_flags(self, temp_dir):
        flags = FlagStore.in_memory()
        await flags.set_expansion("1-001", ExpansionFlag(True, "lpr_below_threshold", 1.08, 1.0))
        artifacts = MemoryStore({"1-001": artifact("1-001", expansion={"applied": True}, needsExpand=False)})

        summary = await merge_results([RowOutcome.skipped("1-001")], artifacts, flags, temp_dir)

        assert summary.cleared_flags == {"expansion": 0, "readability": 0}
        assert await flags.get_expansion("1-001") is not None
