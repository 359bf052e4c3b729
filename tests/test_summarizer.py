"""
Tests for screening summaries
"""

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services.cv_extractor import extract_cv_data
from app.services.scoring import JobRequirements, score_candidate
from app.services.summarizer import ScreeningSummarizer
from tests.conftest import RESUME_TEXT


def _client(content=None, error=None):
    client = MagicMock()
    if error:
        client.chat.completions.create = AsyncMock(side_effect=error)
    else:
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content=content))]
        client.chat.completions.create = AsyncMock(return_value=response)
    return client


@pytest.fixture
def inputs():
    cv = extract_cv_data(RESUME_TEXT, today=date(2025, 1, 1))
    job = JobRequirements(title="Backend Engineer", skills=["python", "go"], min_years=2)
    return cv, job, score_candidate(cv, job, 0.6)


class TestScreeningSummarizer:
    @pytest.mark.asyncio
    async def test_rule_based_without_client(self, inputs):
        summary = await ScreeningSummarizer().summarize(*inputs)

        assert summary.source == "rules"
        assert summary.text.startswith("Nguyen Van An is a")
        assert "Missing skills: go" in summary.concerns

    @pytest.mark.asyncio
    async def test_llm_json_in_code_fence(self, inputs):
        content = '```json\n{"summary": "Solid backend profile.", "key_highlights": ["Python"], "concerns": []}\n```'

        summary = await ScreeningSummarizer(_client(content)).summarize(*inputs)

        assert summary.source == "llm"
        assert summary.text == "Solid backend profile."
        assert summary.highlights == ["Python"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["not json", '{"summary": ""}', None])
    async def test_unusable_response_falls_back(self, inputs, content):
        summary = await ScreeningSummarizer(_client(content)).summarize(*inputs)
        assert summary.source == "rules"

    @pytest.mark.asyncio
    async def test_api_error_falls_back(self, inputs):
        summary = await ScreeningSummarizer(_client(error=RuntimeError("rate limited"))).summarize(*inputs)
        assert summary.source == "rules"
