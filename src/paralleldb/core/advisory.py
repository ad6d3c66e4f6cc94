"""Natural-language PostgreSQL advisory service.

Strategies may ask for advice while building recommendations. The service
is optional: without an API key, or when the model call fails, it answers
with the ADVISORY_UNAVAILABLE sentinel and callers fall back to their
rule-based recommendations.
"""

from typing import Any

import structlog
from langchain_core.messages import HumanMessage, SystemMessage

from .llm import get_llm

logger = structlog.get_logger(__name__)

ADVISORY_UNAVAILABLE = "Advisory service unavailable; using rule-based optimization strategies."

SYSTEM_PROMPT = """You are a PostgreSQL expert. Provide concise, actionable advice \
for database optimization questions.

Focus on:
1. Specific SQL commands or configurations
2. Performance implications
3. Trade-offs and considerations

Keep responses under 300 words."""


def is_unavailable(advice: str) -> bool:
    """Check whether an advise() answer is the unavailable sentinel."""
    return advice == ADVISORY_UNAVAILABLE


class AdvisoryService:
    """Thin wrapper around a chat model for optimization advice."""

    def __init__(self, llm: Any | None = None, use_default: bool = True):
        """Initialize the service.

        Args:
            llm: Chat model exposing ``ainvoke``; defaults to the configured
                OpenAI model
            use_default: Whether to fall back to the configured model when
                ``llm`` is None
        """
        if llm is None and use_default:
            llm = get_llm()
        self._llm = llm

    @property
    def available(self) -> bool:
        return self._llm is not None

    async def advise(self, query: str) -> str:
        """Ask the model for advice.

        Args:
            query: Free-text optimization question

        Returns:
            Advice text, or ADVISORY_UNAVAILABLE
        """
        if self._llm is None:
            logger.info("No advisory model configured, using fallback logic")
            return ADVISORY_UNAVAILABLE

        try:
            response = await self._llm.ainvoke(
                [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=query)]
            )
        except Exception as e:
            logger.error("Advisory request failed", error=str(e))
            return ADVISORY_UNAVAILABLE

        content = getattr(response, "content", response)
        if not isinstance(content, str) or not content.strip():
            return ADVISORY_UNAVAILABLE
        return content
