"""
Authentication package for service Bearer tokens.

CHANGELOG:
- 2026-10-03: Initial creation (STORY-102)

TODO:
- None
"""

from chargewatch.auth.bearer import BearerAuth, parse_service_tokens, verify_bearer_token

__all__ = ["BearerAuth", "parse_service_tokens", "verify_bearer_token"]
