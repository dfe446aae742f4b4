#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
config.py - Pipeline and guard configuration

- DEFAULT_PIPELINE_CONFIG merged with the `pipeline` section of config/pipeline.yaml,
  then environment overrides (SECTION_SCOPE, BASE_URL, TRIVIEW_CONCURRENCY)
- load_guard_config: deployment gates file (YAML or JSON) -> immutable GuardConfig
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .quality_guards import DEFAULT_GUARD_CONFIG, GuardConfig
from .runtime_adapter import _trace

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/pipeline.yaml"
DEFAULT_GATES_PATH = "config/deployment_gates.yaml"

DEFAULT_PIPELINE_CONFIG: Dict[str, Any] = {
    "concurrency": 6,
    "max_retries": 3,
    "base_delay_s": 1.0,
    "tm_threshold": 0.90,
    "expansion_target_lpr": 1.08,
    "excellence_rail": True,
    "preserve_punctuation": True,
    "sections_dir": "data/sections",
    "output_dir": "outputs",
    "scripture_dir": "data/scripture",
    "base_url": "http://localhost:3000",
    "translator": "llm",
    "section_scope": None,
    "gates_path": DEFAULT_GATES_PATH,
}


@dataclass
class PipelineConfig:
    concurrency: int = 6
    max_retries: int = 3
    base_delay_s: float = 1.0
    tm_threshold: float = 0.90
    expansion_target_lpr: float = 1.08
    excellence_rail: bool = True
    preserve_punctuation: bool = True
    sections_dir: str = "data/sections"
    output_dir: str = "outputs"
    scripture_dir: str = "data/scripture"
    base_url: Optional[str] = "http://localhost:3000"
    translator: str = "llm"
    section_scope: Optional[str] = None
    gates_path: str = DEFAULT_GATES_PATH

    @property
    def rows_dir(self) -> Path:
        return Path(self.output_dir) / "tmp" / "rows"

    @property
    def cost_log_dir(self) -> Path:
        return Path(self.output_dir) / "logs" / "cost"

    @property
    def tm_path(self) -> Path:
        return Path(self.output_dir) / "tm.db"

    def scope_ids(self) -> Optional[List[str]]:
        """Allowed section ids, or None for every section."""
        scope = (self.section_scope or "").strip()
        if not scope or scope.lower() == "all":
            return None
        return [s.strip() for s in scope.split(",") if s.strip()]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def load_pipeline_config(config_path: Optional[str] = None,
                         overrides: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """Load pipeline configuration from pipeline.yaml or use defaults."""
    config_path = config_path or DEFAULT_CONFIG_PATH
    config = DEFAULT_PIPELINE_CONFIG.copy()

    if Path(config_path).exists():
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                yaml_config = yaml.safe_load(f) or {}
            if isinstance(yaml_config, dict) and isinstance(yaml_config.get("pipeline"), dict):
                config.update(yaml_config["pipeline"])
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to load %s, using defaults: %s", config_path, e)
            _trace({"type": "pipeline_config_load_error", "error": str(e), "config_path": str(config_path)})

    if os.getenv("SECTION_SCOPE"):
        config["section_scope"] = os.getenv("SECTION_SCOPE")
    if os.getenv("BASE_URL"):
        config["base_url"] = os.getenv("BASE_URL")
    if os.getenv("TRIVIEW_CONCURRENCY"):
        config["concurrency"] = int(os.environ["TRIVIEW_CONCURRENCY"])

    for key, value in (overrides or {}).items():
        if value is not None:
            config[key] = value

    # excellence_rail: {enabled: true} or a plain bool
    if isinstance(config.get("excellence_rail"), dict):
        config["excellence_rail"] = bool(config["excellence_rail"].get("enabled", True))

    return PipelineConfig.from_dict(config)


def _in_range(value: Any, low: float, high: float) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and low < value <= high


def _threshold(thresholds: Dict[str, Any], section: str, key: str) -> Any:
    block = thresholds.get(section)
    if block is None:
        return None
    if not isinstance(block, dict):
        logger.warning("Ignoring malformed thresholds.%s: %r", section, block)
        return None
    return block.get(key)


def load_guard_config(gates_path: Optional[str] = None) -> GuardConfig:
    """
    Build GuardConfig from a deployment gates file:

        thresholds:
          lpr: {minimum: 0.95}
          coverage: {percentage: 95}
          drift: {maximum: 0.15}

    Missing file, parse failure or out-of-range values fall back to defaults.
    """
    gates_path = gates_path or DEFAULT_GATES_PATH
    if not Path(gates_path).exists():
        return DEFAULT_GUARD_CONFIG

    try:
        with open(gates_path, 'r', encoding='utf-8') as f:
            gates = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not parse deployment gates %s, using defaults: %s", gates_path, e)
        return DEFAULT_GUARD_CONFIG

    thresholds = gates.get("thresholds") if isinstance(gates, dict) else None
    if not isinstance(thresholds, dict):
        logger.warning("Deployment gates %s have no thresholds map, using defaults", gates_path)
        return DEFAULT_GUARD_CONFIG
    values: Dict[str, float] = {}

    lpr_min = _threshold(thresholds, "lpr", "minimum")
    if lpr_min is not None:
        if _in_range(lpr_min, 0, 2):
            values["lpr_min"] = float(lpr_min)
        else:
            logger.warning("Ignoring invalid lpr.minimum: %r", lpr_min)

    coverage_pct = _threshold(thresholds, "coverage", "percentage")
    if coverage_pct is not None:
        if _in_range(coverage_pct, 0, 100):
            values["coverage_threshold"] = coverage_pct / 100
        else:
            logger.warning("Ignoring invalid coverage.percentage: %r", coverage_pct)

    drift_max = _threshold(thresholds, "drift", "maximum")
    if drift_max is not None:
        if _in_range(drift_max, -1, 1) and drift_max >= 0 and drift_max < 1:
            values["drift_threshold"] = 1 - drift_max
        else:
            logger.warning("Ignoring invalid drift.maximum: %r", drift_max)

    return GuardConfig(**{**DEFAULT_GUARD_CONFIG.to_dict(), **values})
