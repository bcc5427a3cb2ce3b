"""
Pattern Registry
================

Client and service side of the community pattern registry.
"""

from healforge.registry.types import (
    RegistryPattern,
    RateLimitInfo,
    PushResponse,
    Pagination,
    PullResponse,
)
from healforge.registry.client import RegistryClient
from healforge.registry.store import PatternStore, RateLimiter, RateLimitStatus
