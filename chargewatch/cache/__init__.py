"""
Cache package for the Redis snapshot cache.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-103)

TODO:
- None
"""
