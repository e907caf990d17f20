"""Scribe: resilience and mode coordination for AI writing assistance.

This package features:
- Mutually exclusive assist modes with guarded transitions
- Classified, policy-driven retries with cooperative cancellation
- Graceful degradation to local analysis when the AI service fails
- Durable offline queue for state changes (SQLite via aiosqlite)
"""

from scribe.config import VERSION

__all__ = ["VERSION"]
