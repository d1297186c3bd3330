"""
services/review/policy.py
Maps a learner's rating to an escrow outcome. Shared by the review API,
the reconciliation sweep and the admin tooling.
"""

from enum import Enum

RELEASE_THRESHOLD = 3
MIN_RATING = 1
MAX_RATING = 5


class ReviewOutcome(str, Enum):
    RELEASE = "release"
    ESCALATE = "escalate"


def resolve(rating: int) -> ReviewOutcome:
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValueError(f"rating must be between {MIN_RATING} and {MAX_RATING}")
    return ReviewOutcome.RELEASE if rating >= RELEASE_THRESHOLD else ReviewOutcome.ESCALATE


def rationale(rating: int) -> str:
    """Operator-facing explanation of what a rating did to the escrow."""
    if resolve(rating) == ReviewOutcome.RELEASE:
        return (
            f"Rated {rating}/{MAX_RATING} (at or above the release threshold of "
            f"{RELEASE_THRESHOLD}): payment released to the mentor."
        )
    return (
        f"Rated {rating}/{MAX_RATING} (below the release threshold of "
        f"{RELEASE_THRESHOLD}): payment held and booking sent to admin review."
    )
