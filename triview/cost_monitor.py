#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cost_monitor.py

Cost ledger for translation calls.
- Spans are opened on start and closed on completion; closed spans are frozen
- Cost is estimated from config/pricing.yaml (per 1M tokens)
- Closed spans are appended to outputs/logs/cost/<row_id>.ndjson
- summary() aggregates by operation, model and provider
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .runtime_adapter import _estimate_cost, _load_pricing
from .stores import safe_key_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostSpan:
    """A closed, immutable cost record for one operation."""
    id: str
    operation: str
    row_id: str
    started_at: float
    ended_at: float
    input_tokens: int
    output_tokens: int
    model: str
    provider: str
    cost: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def latency_ms(self) -> int:
        return int((self.ended_at - self.started_at) * 1000)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tokens"] = {
            "input": self.input_tokens,
            "output": self.output_tokens,
            "total": self.total_tokens,
        }
        return data


@dataclass
class _OpenSpan:
    operation: str
    row_id: str
    started_at: float
    metadata: Dict[str, Any]


class CostLedger:
    """
    Records token/cost spans per operation.

    Shared by all concurrent row tasks; span bookkeeping is guarded by a lock.
    """

    def __init__(self, log_dir: Optional[str] = None,
                 pricing_path: Optional[str] = None,
                 provider: str = "openai-compatible"):
        self.log_dir = Path(log_dir) if log_dir else None
        self.pricing = _load_pricing(pricing_path)
        self.provider = provider
        self._open: Dict[str, _OpenSpan] = {}
        self._closed: List[CostSpan] = []
        self._lock = threading.Lock()

    def start_span(self, operation: str, row_id: str,
                   metadata: Optional[Dict[str, Any]] = None) -> str:
        span_id = f"span_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._open[span_id] = _OpenSpan(operation, row_id, time.time(), dict(metadata or {}))
        return span_id

    def end_span(self, span_id: str, input_tokens: int = 0, output_tokens: int = 0,
                 model: str = "unknown", metadata: Optional[Dict[str, Any]] = None) -> CostSpan:
        with self._lock:
            open_span = self._open.pop(span_id, None)
        if open_span is None:
            raise KeyError(f"Unknown or already closed span: {span_id}")

        span = CostSpan(
            id=span_id,
            operation=open_span.operation,
            row_id=open_span.row_id,
            started_at=open_span.started_at,
            ended_at=time.time(),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            provider=self.provider,
            cost=_estimate_cost(model, input_tokens, output_tokens, self.pricing),
            metadata={**open_span.metadata, **(metadata or {})},
        )
        with self._lock:
            self._closed.append(span)
        self._log_span(span)
        return span

    def _log_span(self, span: CostSpan) -> None:
        if self.log_dir is None:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            path = self.log_dir / f"{safe_key_name(span.row_id)}.ndjson"
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(span.to_dict(), ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Failed to log cost span %s: %s", span.id, e)

    @property
    def spans(self) -> List[CostSpan]:
        with self._lock:
            return list(self._closed)

    @property
    def open_spans(self) -> int:
        with self._lock:
            return len(self._open)

    def summary(self) -> Dict[str, Any]:
        spans = self.spans
        by_operation: Dict[str, Dict[str, Any]] = {}
        by_model: Dict[str, Dict[str, Any]] = {}
        by_provider: Dict[str, Dict[str, Any]] = {}

        for span in spans:
            for bucket, key in ((by_operation, span.operation),
                                (by_model, span.model),
                                (by_provider, span.provider)):
                entry = bucket.setdefault(key, {"count": 0, "cost": 0.0, "tokens": 0, "latency_ms": 0})
                entry["count"] += 1
                entry["cost"] = round(entry["cost"] + span.cost, 6)
                entry["tokens"] += span.total_tokens
                entry["latency_ms"] += span.latency_ms

        for entry in by_operation.values():
            entry["average_latency_ms"] = entry["latency_ms"] // entry["count"]

        return {
            "total_cost": round(sum(s.cost for s in spans), 6),
            "total_tokens": sum(s.total_tokens for s in spans),
            "total_spans": len(spans),
            "by_operation": by_operation,
            "by_model": by_model,
            "by_provider": by_provider,
        }

    def write_summary(self, path: Optional[str] = None) -> Optional[Path]:
        """Write summary.json next to the span logs."""
        target = Path(path) if path else (self.log_dir / "summary.json" if self.log_dir else None)
        if target is None:
            return None
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.tmp.{os.getpid()}")
        tmp.write_text(json.dumps(self.summary(), ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(target)
        return target

    def print_summary(self) -> None:
        s = self.summary()
        print(f"\n📊 Cost summary: ${s['total_cost']:.4f} | "
              f"{s['total_tokens']} tokens | {s['total_spans']} calls")
        for op, entry in sorted(s["by_operation"].items()):
            print(f"  - {op}: {entry['count']} calls, ${entry['cost']:.4f}, "
                  f"avg {entry['average_latency_ms']}ms")
