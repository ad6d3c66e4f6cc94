"""Tests for the advisory service."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from paralleldb.core.advisory import ADVISORY_UNAVAILABLE, AdvisoryService, is_unavailable


class TestAdvisoryService:
    """Tests for AdvisoryService.advise."""

    @pytest.mark.asyncio
    async def test_unavailable_without_model(self):
        service = AdvisoryService(llm=None, use_default=False)

        advice = await service.advise("How do I speed up user lookups?")

        assert advice == ADVISORY_UNAVAILABLE
        assert is_unavailable(advice)
        assert service.available is False

    @pytest.mark.asyncio
    async def test_returns_model_content(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=MagicMock(content="CREATE INDEX ON users (email);"))
        service = AdvisoryService(llm=llm)

        advice = await service.advise("How do I speed up user lookups?")

        assert advice == "CREATE INDEX ON users (email);"
        messages = llm.ainvoke.call_args[0][0]
        assert messages[-1].content == "How do I speed up user lookups?"

    @pytest.mark.asyncio
    async def test_client_error_degrades_to_sentinel(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("401 Unauthorized"))

        advice = await AdvisoryService(llm=llm).advise("anything")

        assert advice == ADVISORY_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_empty_answer_degrades_to_sentinel(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=MagicMock(content="   "))

        assert await AdvisoryService(llm=llm).advise("anything") == ADVISORY_UNAVAILABLE
