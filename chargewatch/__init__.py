"""
ChargeWatch: EV charging-station availability watches with Web Push.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

__version__ = "0.1.0"
