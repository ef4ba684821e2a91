"""
Purpose: Central configuration for the progressive provider search.
What it does:

Stores all tunable thresholds/caps for finding providers and retrying declines:

RADIUS_LADDER_KM = [3, 5, 10, 20, 50, 100]
EXPANSION_INTERVAL_SECONDS = 6
DECLINE_EXPANSION_DELAY_SECONDS = 2
COOLDOWN_RETRY_SECONDS = 10

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List


@dataclass(frozen=True)
class SearchPolicy:
    """
    Central configuration for search expansion, cooldowns and candidate gates.
    """

    # --- Radius Ladder ---
    # Concentric search radii in kilometers, smallest first.
    # The search never skips a step.
    radius_ladder_km: List[float] = field(default_factory=lambda: [3, 5, 10, 20, 50, 100])

    # --- Expansion Timers ---
    # How long to wait with no candidates before moving to the next radius.
    expansion_interval_seconds: float = 6.0

    # After an explicit decline leaves no live candidate, expand sooner.
    decline_expansion_delay_seconds: float = 2.0

    # --- Decline Cooldown ---
    # Wait before re-offering a declined provider once nobody else is available,
    # measured from the oldest outstanding decline of the request.
    cooldown_retry_seconds: float = 10.0

    # Countdown granularity surfaced while waiting for the cooldown.
    countdown_tick_seconds: float = 1.0

    # --- Candidate Gates ---
    # Providers whose last heartbeat is older than this are not candidates.
    heartbeat_timeout_seconds: float = 15.0

    # Providers owing more than this (direct-payment fees) are not candidates.
    max_pending_fee_balance: Decimal = Decimal("400")

    # --- Completion Guard ---
    # Minutes a request may sit in pending_client_confirmation before auto-finish.
    auto_finish_timeout_minutes: float = 15.0

    @property
    def max_radius_km(self) -> float:
        return self.radius_ladder_km[-1]

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if not self.radius_ladder_km:
            raise ValueError("radius_ladder_km must not be empty")

        for smaller, larger in zip(self.radius_ladder_km, self.radius_ladder_km[1:]):
            if larger <= smaller:
                raise ValueError("radius_ladder_km must be strictly increasing")

        if self.radius_ladder_km[0] <= 0:
            raise ValueError("radius_ladder_km values must be > 0")

        if self.expansion_interval_seconds <= 0:
            raise ValueError("expansion_interval_seconds must be > 0")

        if self.decline_expansion_delay_seconds < 0:
            raise ValueError("decline_expansion_delay_seconds must be >= 0")

        if self.cooldown_retry_seconds < 0:
            raise ValueError("cooldown_retry_seconds must be >= 0")

        if self.countdown_tick_seconds <= 0:
            raise ValueError("countdown_tick_seconds must be > 0")

        if self.heartbeat_timeout_seconds <= 0:
            raise ValueError("heartbeat_timeout_seconds must be > 0")

        if self.auto_finish_timeout_minutes <= 0:
            raise ValueError("auto_finish_timeout_minutes must be > 0")


def default_search_policy() -> SearchPolicy:
    """
    Convenience factory for the default policy.
    """
    p = SearchPolicy()
    p.validate()
    return p
