"""
HTTP API package: FastAPI routers and dependencies.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""
