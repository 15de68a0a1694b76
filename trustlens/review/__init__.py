"""Review routing, admin overrides and outbound notifications."""

from trustlens.review.notifications import (
    SIGNATURE_HEADER,
    NotificationDispatcher,
    sign_body,
    verify_signature,
)
from trustlens.review.router import ReviewRouter, needs_review

__all__ = [
    "ReviewRouter",
    "needs_review",
    "NotificationDispatcher",
    "SIGNATURE_HEADER",
    "sign_body",
    "verify_signature",
]
