"""
boost.errors — Exception taxonomy
==================================

Rejections (not found, access denied, unavailable) are raised
synchronously to the caller and never mutate state.  Fulfillment errors
stay inside the background task that raised them.
"""

from __future__ import annotations


class BoostError(Exception):
    """Base class for all engine errors."""


class NotFoundError(BoostError):
    """A referenced record does not exist."""


class AccessDeniedError(BoostError):
    """A record exists but belongs to another project."""


class RedemptionUnavailableError(BoostError):
    """The availability check refused a redemption."""

    def __init__(
        self,
        reason: str,
        message: str,
        *,
        points_needed: int | None = None,
        required_badge_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.points_needed = points_needed
        self.required_badge_id = required_badge_id


class RedemptionRejectedError(BoostError):
    """The atomic debit was refused at commit time (lost a race)."""


class InvalidTransitionError(BoostError):
    """A manual status change is not allowed from the current status."""


class FulfillmentError(BoostError):
    """Terminal fulfillment failure; the transaction becomes FAILED."""


class WebhookRetryableError(BoostError):
    """Webhook answered non-2xx below the attempt cap; retry later."""

    def __init__(self, status_code: int, attempt: int) -> None:
        super().__init__(f"Webhook failed with status {status_code} (attempt {attempt})")
        self.status_code = status_code
        self.attempt = attempt


class StreakConflictError(BoostError):
    """A streak row kept changing underneath the compare-and-set loop."""
