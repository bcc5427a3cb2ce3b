"""
Error Taxonomy
==============

Exceptions shared by the ledger, orchestrator, check runner, webhook ingress
and registry client. Each kind maps to one handling policy:

- TransientNetworkError: retried up to the caller's bound
- ValidationError / RegistryError (4xx): surfaced verbatim, never retried
- RateLimitedError: never retried, carries the reset time
- SignatureError: rejected at ingress (401)
- UnfixableCheckFailure / FixApplicationFailure: abort the current cycle
- StoreIntegrityError / InvalidTransitionError: ledger state cannot be
  established or the requested transition is not allowed
"""

from datetime import datetime, timezone
from typing import Any, Optional


class HealForgeError(Exception):
    """Base class for all HealForge errors."""


class TransientNetworkError(HealForgeError):
    """A network call failed in a way that may succeed when repeated."""


class ValidationError(HealForgeError):
    """Input or configuration failed validation."""

    def __init__(self, message: str, details: Optional[list[str]] = None):
        super().__init__(message)
        self.details = details or []


class RegistryError(HealForgeError):
    """The registry answered with a non-success status."""

    def __init__(self, message: str, status_code: int, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitedError(HealForgeError):
    """The contributor exceeded the push quota of the current window."""

    def __init__(self, message: str, reset_at: Optional[str], remaining: int = 0):
        super().__init__(message)
        self.reset_at = reset_at
        self.remaining = remaining

    def time_until_reset(self, now: Optional[datetime] = None) -> str:
        """Human-readable time until the window resets, e.g. "12 minutes"."""
        if not self.reset_at:
            return "unknown"

        try:
            reset_time = datetime.fromisoformat(self.reset_at.replace("Z", "+00:00"))
        except ValueError:
            return "unknown"
        if reset_time.tzinfo is None:
            reset_time = reset_time.replace(tzinfo=timezone.utc)

        now = now or datetime.now(timezone.utc)
        diff_seconds = (reset_time - now).total_seconds()
        if diff_seconds <= 0:
            return "now"

        minutes = -(-int(diff_seconds) // 60)
        if minutes < 60:
            return f"{minutes} minute{'' if minutes == 1 else 's'}"

        hours = -(-minutes // 60)
        return f"{hours} hour{'' if hours == 1 else 's'}"


class SignatureError(HealForgeError):
    """A webhook payload signature did not verify."""


class UnfixableCheckFailure(HealForgeError):
    """A quality gate failed and has no automatic fix."""


class FixApplicationFailure(HealForgeError):
    """An automatic fix could not be applied."""


class StoreIntegrityError(HealForgeError):
    """The ledger state could not be established from the store."""


class InvalidTransitionError(HealForgeError):
    """A ledger status transition that the state machine does not allow."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move retry attempt from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested
