#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
runtime_adapter.py - Shared runtime helpers for the triview pipeline

Provides:
- LLMError: standardized upstream error with retry hints
- _trace: append-only JSONL trace of runtime events
- Token/cost estimation backed by config/pricing.yaml
- LLMRouter: step-based model routing with fallback chains
- log_progress: JSONL + console progress reporting for pipeline passes
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml


class LLMError(Exception):
    """
    Failure talking to the translation backend.

    kind is one of config, timeout, network, upstream (429/5xx), http (other 4xx)
    or parse. config and http are raised with retryable=False.
    """
    def __init__(self, kind: str, message: str,
                 retryable: bool = True,
                 http_status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.http_status = http_status


def _trace(event: Dict[str, Any]) -> None:
    """Append one event to the LLM_TRACE_PATH JSONL file (empty path disables)."""
    path = os.getenv("LLM_TRACE_PATH", "outputs/logs/trace.jsonl").strip()
    if not path:
        return
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        event["timestamp"] = datetime.now().isoformat()
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass


def _safe_int(x, default: int = 0) -> int:
    """Safely convert to int."""
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


# Token estimation constants
CHARS_PER_TOKEN = 4


def _estimate_tokens(text: str) -> int:
    """Rough token count for gateways that omit usage."""
    return max(1, len(text or "") // CHARS_PER_TOKEN)


# Pricing loader (cached per path)
_pricing_cache: Dict[str, Dict[str, Any]] = {}

DEFAULT_PRICING_PATH = "config/pricing.yaml"


def _load_pricing(path: Optional[str] = None) -> Dict[str, Any]:
    """Load pricing config from pricing.yaml."""
    path = path or os.getenv("TRIVIEW_PRICING_PATH", DEFAULT_PRICING_PATH)
    if path in _pricing_cache:
        return _pricing_cache[path]

    pricing: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                pricing = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _trace({"type": "pricing_load_error", "error": str(e), "path": path})
            pricing = {}
    _pricing_cache[path] = pricing
    return pricing


def _estimate_cost(model: str, prompt_tokens: int, completion_tokens: int,
                   pricing: Optional[Dict[str, Any]] = None) -> float:
    """Estimate cost in USD using per-1M-token rates."""
    pricing = pricing if pricing is not None else _load_pricing()
    model_config = pricing.get("models", {}).get(model) or pricing.get("models", {}).get("_default", {})

    input_per_1m = model_config.get("input_per_1M", 0)
    output_per_1m = model_config.get("output_per_1M", 0)

    if input_per_1m > 0 or output_per_1m > 0:
        cost = (prompt_tokens * input_per_1m / 1_000_000) + \
               (completion_tokens * output_per_1m / 1_000_000)
        return round(cost, 6)

    return 0.0


def _extract_usage(data: dict) -> Optional[dict]:
    """
    Extract OpenAI-style usage info:
      data["usage"] = {"prompt_tokens":..., "completion_tokens":..., "total_tokens":...}
    Some gateways omit this field.
    """
    u = data.get("usage")
    if not isinstance(u, dict):
        return None

    pt = u.get("prompt_tokens")
    ct = u.get("completion_tokens")
    tt = u.get("total_tokens")

    if pt is None and ct is None and tt is None:
        return None

    pt_i = _safe_int(pt, 0)
    ct_i = _safe_int(ct, 0)
    tt_i = _safe_int(tt, pt_i + ct_i)

    return {
        "prompt_tokens": pt_i,
        "completion_tokens": ct_i,
        "total_tokens": tt_i,
    }


class LLMRouter:
    """
    Step-based model router with fallback support.

    Loads routing config from llm_routing.yaml and selects models based on step
    ("translate", "tone_refine"). The router does NOT retry; it only switches to
    the next model in the chain on failure.
    """

    DEFAULT_CONFIG_PATH = "config/llm_routing.yaml"

    def __init__(self, config_path: Optional[str] = None,
                 config: Optional[Dict[str, Any]] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config = config if config is not None else self._load_config()
        self.config_hash = self._compute_hash()
        self.enabled = bool(self.config)

        if not self.enabled:
            _trace({
                "type": "router_init",
                "router_disabled": True,
                "reason": "config_not_found",
                "config_path": self.config_path
            })

    def _load_config(self) -> Optional[Dict[str, Any]]:
        """Load routing config from YAML file."""
        if not os.path.exists(self.config_path):
            return None
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f)
        except (OSError, yaml.YAMLError):
            return None

    def _compute_hash(self) -> str:
        """Compute sha256 hash of config for versioning."""
        if not self.config:
            return ""
        content = json.dumps(self.config, sort_keys=True, ensure_ascii=False)
        return f"sha256:{hashlib.sha256(content.encode('utf-8')).hexdigest()[:16]}"

    def _step_config(self, step: str) -> Dict[str, Any]:
        routing = (self.config or {}).get("routing") or {}
        return routing.get(step) or routing.get("_default", {}) or {}

    def get_model_chain(self, step: str) -> List[str]:
        """Return [default, ...fallbacks] for a step, falling back to _default."""
        step_config = self._step_config(step)

        chain = []
        default = step_config.get("default")
        if default:
            chain.append(default)

        fallbacks = step_config.get("fallback", [])
        if isinstance(fallbacks, list):
            chain.extend(fallbacks)

        return chain

    def get_generation_params(self, step: str) -> Dict[str, Any]:
        """Return generation parameters (temperature, max_tokens) for step."""
        step_config = self._step_config(step)
        return {k: step_config[k] for k in ("temperature", "max_tokens") if k in step_config}

    def should_fallback(self, error: LLMError) -> bool:
        """Check if error should trigger fallback to next model."""
        if not self.config or "fallback_triggers" not in self.config:
            return error.retryable

        triggers = self.config["fallback_triggers"]

        if error.kind == "timeout" and triggers.get("on_timeout", False):
            return True
        if error.kind == "network" and triggers.get("on_network_error", False):
            return True
        if error.kind == "parse" and triggers.get("on_parse_error", False):
            return True

        if error.http_status is not None:
            if error.http_status in triggers.get("http_codes", []):
                return True

        return False


# ============================================================================
# Progress reporting
# ============================================================================

_progress_state: Dict[str, Any] = {}


def log_progress(step: str, event_type: str, data: Dict[str, Any],
                 silent: bool = False) -> None:
    """
    Two-channel progress report:
    1. JSONL file under reports/ (structured record)
    2. Console line (live view)

    Events: pass_start, row_complete, pass_complete.
    """
    now = time.time()
    log_entry = {
        "timestamp": datetime.now().isoformat(),
        "step": step,
        "event": event_type,
        **data
    }

    log_dir = os.getenv("TRIVIEW_REPORTS_DIR", "reports").strip()
    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            with open(os.path.join(log_dir, f"{step}_progress.jsonl"), "a", encoding="utf-8") as f:
                f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
        except OSError:
            pass

    state = _progress_state.setdefault(step, {"start_time": now, "total": 0, "done": 0})

    if event_type == "pass_start":
        state.update(start_time=now, total=data.get("total_rows", 0), done=0)
        if silent:
            return
        print(f"\n{'='*60}")
        print(f"[{step}] 🚀 Starting")
        print(f"  Total rows: {state['total']} | Concurrency: {data.get('concurrency', 'N/A')}")
        print(f"{'='*60}")

    elif event_type == "row_complete":
        state["done"] += 1
        if silent:
            return
        status = data.get("status", "success")
        icon = {"success": "✅", "skipped": "⏭️"}.get(status, "❌")
        total = state["total"]
        pct = (state["done"] / total * 100) if total > 0 else 0
        detail = f"LPR {data['lpr']:.2f}" if data.get("lpr") is not None else (data.get("error") or "")
        print(f"{icon} [{step}] {data.get('row_id')} | {state['done']}/{total} ({pct:.1f}%) | {detail}")

    elif event_type == "pass_complete":
        if silent:
            return
        elapsed = now - state.get("start_time", now)
        print(f"{'='*60}")
        print(f"[{step}] ✅ Complete | success={data.get('success', 0)} "
              f"failed={data.get('failed', 0)} skipped={data.get('skipped', 0)} | {elapsed:.1f}s")
        print(f"{'='*60}")

    sys.stdout.flush()
