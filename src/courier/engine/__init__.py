"""Delivery engine: failure classification, retry scheduling and selection.

The classifier and scheduler are pure functions over pydantic models. The
selector is the query contract the dispatcher uses to find due work.
"""

from .classifier import RawFailure, classify, is_retryable_status, parse_retry_after
from .scheduler import (
    CRITICAL_PROFILE,
    DEFAULT_PROFILE,
    DEFAULT_PROFILES,
    next_attempt_at,
    next_attempt_delay,
    profile_for,
)
from .selector import Selector

__all__ = [
    # Classification
    "RawFailure",
    "classify",
    "is_retryable_status",
    "parse_retry_after",
    # Scheduling
    "CRITICAL_PROFILE",
    "DEFAULT_PROFILE",
    "DEFAULT_PROFILES",
    "next_attempt_at",
    "next_attempt_delay",
    "profile_for",
    # Selection
    "Selector",
]
