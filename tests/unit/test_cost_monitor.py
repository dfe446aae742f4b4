#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
test_cost_monitor.py - Cost ledger spans, pricing and summaries
"""

import dataclasses
import json

import pytest
import yaml

from triview.cost_monitor import CostLedger


@pytest.fixture
def pricing_file(temp_dir):
    path = temp_dir / "pricing.yaml"
    path.write_text(yaml.safe_dump({
        "models": {
            "_default": {"input_per_1M": 1.0, "output_per_1M": 2.0},
            "gpt-4o-mini": {"input_per_1M": 0.15, "output_per_1M": 0.60},
        }
    }), encoding="utf-8")
    return str(path)


class TestCostLedger:

    def test_01_span_cost_from_pricing(self, pricing_file):
        ledger = CostLedger(pricing_path=pricing_file)
        span_id = ledger.start_span("translate", "1-001")
        span = ledger.end_span(span_id, 1_000_000, 1_000_000, "gpt-4o-mini")

        assert span.cost == pytest.approx(0.75)
        assert span.total_tokens == 2_000_000
        assert span.to_dict()["tokens"] == {"input": 1_000_000, "output": 1_000_000, "total": 2_000_000}
        assert ledger.open_spans == 0

    def test_02_unknown_model_uses_default_price(self, pricing_file):
        ledger = CostLedger(pricing_path=pricing_file)
        span = ledger.end_span(ledger.start_span("translate", "1-001"), 500_000, 0, "mystery-model")
        assert span.cost == pytest.approx(0.5)

    def test_03_closed_span_is_frozen(self, pricing_file):
        ledger = CostLedger(pricing_path=pricing_file)
        span = ledger.end_span(ledger.start_span("translate", "1-001"), 10, 5, "gpt-4o-mini")
        with pytest.raises(dataclasses.FrozenInstanceError):
            span.cost = 0

    def test_04_ending_twice_raises(self, pricing_file):
        ledger = CostLedger(pricing_path=pricing_file)
        span_id = ledger.start_span("translate", "1-001")
        ledger.end_span(span_id)
        with pytest.raises(KeyError):
            ledger.end_span(span_id)

    def test_05_spans_logged_per_row(self, temp_dir, pricing_file):
        log_dir = temp_dir / "cost"
        ledger = CostLedger(log_dir=str(log_dir), pricing_path=pricing_file)
        for op in ("translate", "tone_refine"):
            ledger.end_span(ledger.start_span(op, "1-001", {"attempt": 1}), 10, 5, "gpt-4o-mini")

        lines = (log_dir / "1-001.ndjson").read_text(encoding="utf-8").splitlines()
        records = [json.loads(line) for line in lines]
        assert [r["operation"] for r in records] == ["translate", "tone_refine"]
        assert records[0]["metadata"] == {"attempt": 1}
        assert records[0]["provider"] == "openai-compatible"

    def test_06_summary_aggregates(self, temp_dir, pricing_file):
        ledger = CostLedger(log_dir=str(temp_dir), pricing_path=pricing_file)
        ledger.end_span(ledger.start_span("translate", "1-001"), 1_000_000, 0, "gpt-4o-mini")
        ledger.end_span(ledger.start_span("translate", "1-002"), 1_000_000, 0, "gpt-4o-mini")
        ledger.end_span(ledger.start_span("tone_refine", "1-001"), 0, 1_000_000, "other")

        summary = ledger.summary()
        assert summary["total_spans"] == 3
        assert summary["total_tokens"] == 3_000_000
        assert summary["total_cost"] == pytest.approx(0.15 + 0.15 + 2.0)
        assert summary["by_operation"]["translate"]["count"] == 2
        assert summary["by_model"]["other"]["cost"] == pytest.approx(2.0)
        assert "average_latency_ms" in summary["by_operation"]["tone_refine"]

        path = ledger.write_summary()
        assert path == temp_dir / "summary.json"
        assert json.loads(path.read_text(encoding="utf-8"))["total_spans"] == 3

    def test_07_write_summary_without_log_dir(self, pricing_file):
        assert CostLedger(pricing_path=pricing_file).write_summary() is None

    def test_08_print_summary(self, pricing_file, capsys):
        ledger = CostLedger(pricing_path=pricing_file)
        ledger.end_span(ledger.start_span("translate", "1-001"), 10, 5, "gpt-4o-mini")
        ledger.print_summary()
        out = capsys.readouterr().out
        assert "Cost summary" in out
        assert "translate: 1 calls" in out

    def test_09_row_id_cannot_escape_log_dir(self, temp_dir, pricing_file):
        log_dir = temp_dir / "logs" / "cost"
        ledger = CostLedger(log_dir=str(log_dir), pricing_path=pricing_file)
        ledger.end_span(ledger.start_span("translate", "../../escaped"), 10, 5, "gpt-4o-mini")

        written = list(log_dir.glob("*.ndjson"))
        assert len(written) == 1
        assert written[0].name.startswith(".._.._escaped-")
        assert not (temp_dir / "escaped.ndjson").exists()
