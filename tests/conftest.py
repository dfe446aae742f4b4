"""Pytest configuration and shared fixtures for triview tests."""
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from triview.flag_store import FlagStore
from triview.row_pipeline import RowPipeline
from triview.scripture_cache import ScriptureResolver
from triview.stores import MemoryStore
from triview.translation_memory import TMConfig, TranslationMemory
from triview.translation_service import TranslationService

PROJECT_ROOT = Path(__file__).parent.parent

# 10 source words, two clauses
ORIGINAL = "طلب العلم فريضة على كل مسلم، والصبر مفتاح الفرج دائما."
# 10 words (LPR 1.0), 11 words (LPR 1.1), 12 words (LPR 1.2)
ENGLISH_10 = "Seeking knowledge is duty for every Muslim, patience brings relief."
ENGLISH_11 = "Seeking knowledge is a duty for every Muslim, patience brings relief."
ENGLISH_12 = "Seeking knowledge is a sacred duty for every Muslim, patience brings relief."

SCRIPTURE_DB = {
    "1:1": {"arabic": "بسم الله الرحمن الرحيم",
            "english": "In the name of Allah, the Entirely Merciful, the Especially Merciful.",
            "metadata": {"surah": 1, "ayah": 1}},
    "2:255": {"arabic": "الله لا إله إلا هو الحي القيوم",
              "english": "Allah - there is no deity except Him, the Ever-Living.",
              "metadata": {"surah": 2, "ayah": 255}},
}


@pytest.fixture(autouse=True)
def quiet_side_channels(monkeypatch):
    """Keep trace and progress JSONL out of the working tree."""
    monkeypatch.setenv("LLM_TRACE_PATH", "")
    monkeypatch.setenv("TRIVIEW_REPORTS_DIR", "")
    for name in ("SECTION_SCOPE", "BASE_URL", "TRIVIEW_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def temp_dir(tmp_path):
    """Provide a temporary directory for tests."""
    return tmp_path


@pytest.fixture
def scripture_db():
    return json.loads(json.dumps(SCRIPTURE_DB))


# =============================================================================
# Fakes
# =============================================================================


class StubTranslator(TranslationService):
    """
    Returns `base` for plain translations and `expanded` when an expansion
    directive is given. Tone refinement is the identity. Records every call.
    """

    def __init__(self, base: str = ENGLISH_11, expanded: Optional[str] = None,
                 error: Optional[Exception] = None):
        self.base = base
        self.expanded = expanded if expanded is not None else base
        self.error = error
        self.translate_calls: List[Dict[str, Any]] = []
        self.tone_calls: List[Dict[str, Any]] = []
        self.closed = False

    async def translate(self, text, row_id, directive=None):
        self.translate_calls.append({"text": text, "row_id": row_id, "directive": directive})
        if self.error is not None:
            raise self.error
        if directive and "Expand" in directive:
            return self.expanded
        return self.base

    async def refine_tone(self, text, row_id, directive=None):
        self.tone_calls.append({"text": text, "row_id": row_id, "directive": directive})
        return text

    async def close(self):
        self.closed = True


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse used as an async context manager."""

    def __init__(self, status: int = 200, payload: Any = None, text: str = "", reason: str = ""):
        self.status = status
        self.reason = reason
        self._payload = payload
        self._text = text

    async def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return self._text or json.dumps(self._payload)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Replays queued responses (or raises queued exceptions) for get/post."""

    def __init__(self, responses: List[Any]):
        self._responses = list(responses)
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def _next(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        return self._next("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, **kwargs)

    async def close(self):
        self.closed = True


@pytest.fixture
def stub_translator_cls():
    return StubTranslator


@pytest.fixture
def fake_response_cls():
    return FakeResponse


@pytest.fixture
def fake_session_cls():
    return FakeSession


@pytest.fixture
def memory_tm():
    tm = TranslationMemory(TMConfig(location=":memory:"))
    yield tm
    tm.close()


@pytest.fixture
def make_pipeline(temp_dir, memory_tm, scripture_db):
    """Factory for a RowPipeline wired to in-memory stores."""

    def _make(translator=None, **kwargs):
        deps = {
            "translator": translator or StubTranslator(),
            "tm": memory_tm,
            "scripture": ScriptureResolver(temp_dir / "scripture", local_db=scripture_db, persist=False),
            "flags": FlagStore.in_memory(),
            "artifacts": MemoryStore(),
        }
        deps.update(kwargs)
        return RowPipeline(**deps)

    return _make
