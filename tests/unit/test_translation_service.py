#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
test_translation_service.py - Mock and LLM-backed translation services
"""

from unittest.mock import AsyncMock, Mock

import pytest

from triview.async_adapter import AsyncLLMResult
from triview.cost_monitor import CostLedger
from triview.quality_guards import count_words, extract_clauses
from triview.runtime_adapter import LLMError
from triview.translation_service import (
    LLMTranslationService,
    MockTranslationService,
    apply_tone_rules,
    expansion_directive,
    readability_directive,
)

ORIGINAL = "طلب العلم فريضة على كل مسلم، والصبر مفتاح الفرج دائما."


class TestDirectives:

    def test_01_expansion_directive_wording(self):
        assert expansion_directive(1.08, "lpr_below_threshold") == \
            "Expand this translation to achieve LPR of 1.08. Reason: lpr_below_threshold"

    def test_02_readability_directive_mentions_reason(self):
        assert "grade_out_of_range" in readability_directive("grade_out_of_range")

    def test_03_tone_rules(self):
        assert apply_tone_rules("This is very ornate and really archaic text") == \
            "This is clear and established text"


class TestMockTranslationService:

    @pytest.mark.asyncio
    async def test_04_one_sentence_per_clause(self):
        service = MockTranslationService(ratio=1.0)
        english = await service.translate(ORIGINAL, "1-001")

        assert count_words(english) == 10
        assert len(extract_clauses(english)) == len(extract_clauses(ORIGINAL))
        assert english.startswith("Rendered clause1")
        assert service.calls == 1

    @pytest.mark.asyncio
    async def test_05_expansion_directive_raises_ratio(self):
        service = MockTranslationService(ratio=1.0)
        english = await service.translate(
            ORIGINAL, "1-001", directive=expansion_directive(1.08, "lpr_below_threshold")
        )
        assert count_words(english) == 12

    @pytest.mark.asyncio
    async def test_06_records_mock_spans(self):
        ledger = CostLedger()
        service = MockTranslationService(ledger)
        text = await service.translate(ORIGINAL, "1-001")
        await service.refine_tone(text, "1-001")

        operations = [s.operation for s in ledger.spans]
        assert operations == ["translate", "tone_refine"]
        assert all(s.model == "mock" and s.cost == 0.0 for s in ledger.spans)


class TestLLMTranslationService:

    def _client(self, **kwargs):
        client = Mock()
        client.chat = AsyncMock(**kwargs)
        client.close = AsyncMock()
        return client

    @pytest.mark.asyncio
    async def test_07_translate_records_span(self):
        result = AsyncLLMResult(text="Knowledge is light.", latency_ms=12, model="gpt-4o",
                                prompt_tokens=100, completion_tokens=20,
                                usage_source="api_usage", cost_usd_est=0.0)
        client = self._client(return_value=result)
        ledger = CostLedger(pricing_path="does-not-exist.yaml")
        service = LLMTranslationService(client, ledger)

        text = await service.translate("العلم نور", "1-001", directive="Expand this")

        assert text == "Knowledge is light."
        call = client.chat.call_args.kwargs
        assert call["step"] == "translate"
        assert "Instruction: Expand this" in call["user"]
        span = ledger.spans[0]
        assert (span.operation, span.row_id, span.model) == ("translate", "1-001", "gpt-4o")
        assert span.total_tokens == 120
        assert span.metadata["directive"] is True

    @pytest.mark.asyncio
    async def test_08_failed_call_closes_span_and_reraises(self):
        error = LLMError("upstream", "Upstream error HTTP 503 Service Unavailable: busy")
        client = self._client(side_effect=error)
        ledger = CostLedger(pricing_path="does-not-exist.yaml")
        service = LLMTranslationService(client, ledger)

        with pytest.raises(LLMError):
            await service.refine_tone("Text.", "1-002")

        assert ledger.open_spans == 0
        assert ledger.spans[0].operation == "tone_refine"
        assert "503" in ledger.spans[0].metadata["error"]

    @pytest.mark.asyncio
    async def test_09_close_closes_client(self):
        client = self._client()
        await LLMTranslationService(client, CostLedger()).close()
        client.close.assert_awaited_once()
