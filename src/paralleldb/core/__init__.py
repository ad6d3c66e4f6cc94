"""Core infrastructure components."""

from .advisory import ADVISORY_UNAVAILABLE, AdvisoryService, is_unavailable
from .llm import get_llm
from .logging import configure_logging
from .messaging import Events, MessageBroker, emit, publish_event

__all__ = [
    "ADVISORY_UNAVAILABLE",
    "AdvisoryService",
    "is_unavailable",
    "get_llm",
    "configure_logging",
    "Events",
    "MessageBroker",
    "emit",
    "publish_event",
]
