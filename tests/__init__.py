"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (schemas, normalizer, router,
  sink, store, GDAX feed, supervisor, API). No network access; feeds and
  HTTP sessions are mocked, storage uses in-memory fakes or throwaway SQLite.

Uses pytest with pytest-asyncio for testing async functionality.
"""
