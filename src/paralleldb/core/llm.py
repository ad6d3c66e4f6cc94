"""OpenAI chat client wrapper."""

from functools import lru_cache

from langchain_openai import ChatOpenAI

from ..config import get_settings


@lru_cache
def get_llm() -> ChatOpenAI | None:
    """Get cached LLM instance, or None when no API key is configured."""
    settings = get_settings()
    if not settings.openai.api_key:
        return None
    return ChatOpenAI(
        api_key=settings.openai.api_key,
        model=settings.openai.model,
        temperature=settings.openai.temperature,
        max_tokens=settings.openai.max_tokens,
    )
