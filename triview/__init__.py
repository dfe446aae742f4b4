"""
triview - Arabic/English tri-view translation pipeline
"""
from .config import PipelineConfig, load_pipeline_config, load_guard_config
from .models import Row, Section, RowOutcome
from .orchestrator import PipelineError, RunResult, run_pipeline
from .quality_guards import GuardConfig, assess_quality
from .translation_service import TranslationService, LLMTranslationService, MockTranslationService

__version__ = "1.0.0"

__all__ = [
    "PipelineConfig",
    "load_pipeline_config",
    "load_guard_config",
    "Row",
    "Section",
    "RowOutcome",
    "PipelineError",
    "RunResult",
    "run_pipeline",
    "GuardConfig",
    "assess_quality",
    "TranslationService",
    "LLMTranslationService",
    "MockTranslationService",
]
