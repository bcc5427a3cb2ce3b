"""
Database Package
================

Exports key database components.
"""

from healforge.db.models import (
    Base,
    # Healing ledger
    RetryAttempt, AutoHealHistory, HandledRun,
    # Ingress log
    WebhookEvent,
    # Pattern registry
    CommunityPattern, ContributorRateLimit,
    # Status constants
    STATUS_PENDING, STATUS_HEALING, STATUS_SUCCESS, STATUS_EXHAUSTED,
    TERMINAL_STATUSES, PATTERN_TYPES,
)
from healforge.db.connection import init_db, get_session_maker, get_db, close_db
