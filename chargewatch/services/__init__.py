"""
Service layer: ingestion, subscriptions, polling engine and dispatch.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""
