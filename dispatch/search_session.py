"""
Purpose: One progressive provider search for one request (the session object).
What it does:
Walks the radius ladder until someone is found, reacting to declines and to the
live provider change feed in between:

  idle -> searching -> expanding_radius -> provider_found
                                       \\-> waiting_cooldown -> provider_found | timeout
  (any active state) -> canceled

- start(): query at the smallest radius (declined providers excluded)
- every expansion_interval without candidates: next radius, never skipping a step
- decline(): drop the provider at once, record it, and when nobody is left expand
  after the shorter decline delay (replacing any pending expansion tick)
- ladder exhausted with outstanding declines: wait for the oldest decline's cooldown,
  clear it and re-offer that provider alone if it is still eligible at max radius
- ladder exhausted without declines: timeout
- cancel()/dispose(): tear down every timer and the feed subscription

Each session owns its timers. Every scheduled callback carries the timer generation
it was created under and is ignored unless the session is still alive and that
generation is still current.
"""

from __future__ import annotations

import logging
import math
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from providers.policy import SearchPolicy, default_search_policy
from service_requests.models import ServiceRequest

from .candidate_filter import Candidate
from .change_feed import ProviderChange, ProviderChangeFeed, Subscription
from .decline_tracker import DeclineTracker
from .scheduling import ScheduledTask

logger = logging.getLogger(__name__)


class SearchState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    EXPANDING_RADIUS = "expanding_radius"
    PROVIDER_FOUND = "provider_found"
    WAITING_COOLDOWN = "waiting_cooldown"
    TIMEOUT = "timeout"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (SearchState.TIMEOUT, SearchState.CANCELED)


#states in which live feed events may add candidates
_ADDITION_STATES = frozenset({
    SearchState.SEARCHING,
    SearchState.EXPANDING_RADIUS,
    SearchState.PROVIDER_FOUND,
})


class ProximitySearch:
    def __init__(
        self,
        request: ServiceRequest,
        candidate_source,
        decline_tracker: DeclineTracker,
        scheduler,
        policy: Optional[SearchPolicy] = None,
        change_feed: Optional[ProviderChangeFeed] = None,
        on_state_change: Optional[Callable[[ProximitySearch, SearchState], None]] = None,
        on_candidates: Optional[Callable[[ProximitySearch, List[Candidate]], None]] = None,
        on_countdown: Optional[Callable[[ProximitySearch, int], None]] = None,
        on_decline_cleared: Optional[Callable[[ProximitySearch, str], None]] = None,
    ):
        self.request = request
        self.request_id = request.id
        self.origin = request.origin.coordinates
        self.service_type = request.service_type

        self.source = candidate_source
        self.declines = decline_tracker
        self.scheduler = scheduler
        self.policy = policy or default_search_policy()
        self.change_feed = change_feed

        self._on_state_change = on_state_change
        self._on_candidates = on_candidates
        self._on_countdown = on_countdown
        self._on_decline_cleared = on_decline_cleared

        self._lock = threading.RLock()
        self._state = SearchState.IDLE
        self._alive = False
        self._radius_index = 0
        self._candidates: Dict[str, Candidate] = {}
        self._cooldown_remaining = 0

        self._generation = 0
        self._step_task: Optional[ScheduledTask] = None
        self._countdown_task: Optional[ScheduledTask] = None
        self._subscription: Optional[Subscription] = None

    # --- Read-only view ---

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def radius_index(self) -> int:
        return self._radius_index

    @property
    def radius_km(self) -> float:
        return self.policy.radius_ladder_km[self._radius_index]

    @property
    def candidates(self) -> List[Candidate]:
        with self._lock:
            return sorted(self._candidates.values(), key=lambda c: (c.distance_km, c.provider_id))

    @property
    def cooldown_remaining(self) -> int:
        return self._cooldown_remaining

    @property
    def is_active(self) -> bool:
        return self._alive and not self._state.is_terminal

    # --- Lifecycle ---

    def start(self) -> None:
        with self._lock:
            if self._state != SearchState.IDLE:
                logger.debug("Search for %s already started (%s)", self.request_id, self._state.value)
                return

            self._alive = True
            # declines persisted on the request are treated as having just happened
            self.declines.seed(self.request_id, self.request.declined_provider_ids, self.scheduler.now())

            if self.change_feed is not None:
                self._subscription = self.change_feed.subscribe(self.handle_provider_change)

            logger.info("Starting search for request %s at %.0f km", self.request_id, self.radius_km)
            self._set_state(SearchState.SEARCHING)
            if not self._query_current_radius():
                self._set_state(SearchState.EXPANDING_RADIUS)
                self._schedule_step(self.policy.expansion_interval_seconds, self._expand_tick, "expand")

    def decline(self, provider_id: str) -> None:
        with self._lock:
            if not self.is_active:
                return

            self.declines.record_decline(self.request_id, provider_id, self.scheduler.now())
            removed = self._candidates.pop(provider_id, None)
            if removed is not None:
                self._emit_candidates()

            if self._state == SearchState.WAITING_COOLDOWN:
                # the running retry clock already tracks the oldest decline
                return

            if self._candidates:
                logger.debug("Request %s still has %d candidates after decline", self.request_id, len(self._candidates))
                return

            if self._radius_index + 1 >= len(self.policy.radius_ladder_km):
                logger.info("Request %s: max radius reached after decline, starting cooldown retry", self.request_id)
                self._start_cooldown_retry()
                return

            self._set_state(SearchState.EXPANDING_RADIUS)
            self._schedule_step(self.policy.decline_expansion_delay_seconds, self._decline_expand, "decline-expand")

    def cancel(self) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            self._teardown()
            self._set_state(SearchState.CANCELED)
            logger.info("Search for request %s canceled", self.request_id)

    def dispose(self) -> None:
        """
        Stop the session without a state change (used once the request is assigned).
        """
        with self._lock:
            self._teardown()

    # --- Live feed ---

    def handle_provider_change(self, change: ProviderChange) -> None:
        with self._lock:
            if not self.is_active or self._state == SearchState.IDLE:
                return

            provider_id = change.provider_id
            if change.is_removal:
                if self._candidates.pop(provider_id, None) is not None:
                    logger.debug("Provider %s left the candidates of %s", provider_id, self.request_id)
                    self._emit_candidates()
                    self._after_candidate_loss()
                return

            if self._state not in _ADDITION_STATES:
                return

            candidate = self.source.evaluate(
                change.provider,
                self.origin,
                self.radius_km,
                self.service_type,
                self.declines.excluded_ids(self.request_id),
            )
            if candidate is None:
                if self._candidates.pop(provider_id, None) is not None:
                    self._emit_candidates()
                    self._after_candidate_loss()
                return

            previous = self._candidates.get(provider_id)
            self._candidates[provider_id] = candidate
            if previous is None or previous.distance_km != candidate.distance_km:
                self._emit_candidates()
            if self._state != SearchState.PROVIDER_FOUND:
                # a live arrival makes the pending expansion step pointless
                self._cancel_step()
                self._set_state(SearchState.PROVIDER_FOUND)

    def drop_candidate(self, provider_id: str) -> bool:
        """
        Remove a provider who picked up other work. Unlike a decline, nothing is
        recorded: the provider is eligible again once they are free.
        """
        with self._lock:
            if not self.is_active or self._candidates.pop(provider_id, None) is None:
                return False
            logger.debug("Provider %s is busy, dropped from %s", provider_id, self.request_id)
            self._emit_candidates()
            self._after_candidate_loss()
            return True

    def _after_candidate_loss(self) -> None:
        if self._candidates or self._state != SearchState.PROVIDER_FOUND:
            return
        self._set_state(SearchState.EXPANDING_RADIUS)
        self._schedule_step(self.policy.expansion_interval_seconds, self._expand_tick, "expand")

    # --- Radius ladder ---

    def _query_current_radius(self) -> bool:
        candidates = self.source.find(
            self.origin,
            self.radius_km,
            self.service_type,
            self.declines.excluded_ids(self.request_id),
        )
        self._candidates = {candidate.provider_id: candidate for candidate in candidates}
        if candidates:
            logger.info(
                "Request %s: %d candidates within %.0f km", self.request_id, len(candidates), self.radius_km
            )
            self._emit_candidates()
            self._set_state(SearchState.PROVIDER_FOUND)
            return True
        return False

    def _expand_tick(self) -> None:
        next_index = self._radius_index + 1
        if next_index >= len(self.policy.radius_ladder_km):
            self._ladder_exhausted()
            return

        self._radius_index = next_index
        logger.info("Request %s: expanding to %.0f km", self.request_id, self.radius_km)
        self._set_state(SearchState.EXPANDING_RADIUS)
        if not self._query_current_radius():
            self._schedule_step(self.policy.expansion_interval_seconds, self._expand_tick, "expand")

    def _decline_expand(self) -> None:
        self._radius_index += 1
        logger.info("Request %s: expanding to %.0f km after decline", self.request_id, self.radius_km)
        self._set_state(SearchState.EXPANDING_RADIUS)
        if self._query_current_radius():
            return
        if self._radius_index + 1 >= len(self.policy.radius_ladder_km):
            self._start_cooldown_retry()
        else:
            self._schedule_step(self.policy.decline_expansion_delay_seconds, self._decline_expand, "decline-expand")

    def _ladder_exhausted(self) -> None:
        if self.declines.outstanding(self.request_id):
            self._start_cooldown_retry()
        else:
            logger.info("Request %s: ladder exhausted with no declines, timing out", self.request_id)
            self._finish(SearchState.TIMEOUT)

    # --- Cooldown retry ---

    def _start_cooldown_retry(self) -> None:
        oldest = self.declines.oldest_decline(self.request_id)
        if oldest is None:
            logger.info("Request %s: no declined providers to retry, timing out", self.request_id)
            self._finish(SearchState.TIMEOUT)
            return

        now = self.scheduler.now()
        remaining = self.declines.remaining_cooldown(self.request_id, now)
        logger.info(
            "Request %s: cooldown %.1fs before retrying provider %s", self.request_id, remaining, oldest.provider_id
        )

        self._candidates = {}
        self._set_state(SearchState.WAITING_COOLDOWN)

        self._cooldown_remaining = math.ceil(remaining)
        self._emit_countdown()
        self._cancel_countdown()
        if self._cooldown_remaining > 0:
            self._countdown_task = self.scheduler.call_every(
                self.policy.countdown_tick_seconds, self._countdown_tick, name=f"countdown:{self.request_id}"
            )

        provider_id = oldest.provider_id
        self._schedule_step(remaining, lambda: self._cooldown_expired(provider_id), "cooldown")

    def _countdown_tick(self) -> None:
        with self._lock:
            if not self._alive or self._state != SearchState.WAITING_COOLDOWN:
                self._cancel_countdown()
                return
            self._cooldown_remaining = max(0, self._cooldown_remaining - 1)
            self._emit_countdown()
            if self._cooldown_remaining == 0:
                self._cancel_countdown()

    def _cooldown_expired(self, provider_id: str) -> None:
        self._cancel_countdown()
        self._cooldown_remaining = 0

        self.declines.clear_for_retry(self.request_id, provider_id)
        if self._on_decline_cleared is not None:
            self._safe_callback(self._on_decline_cleared, provider_id)

        # full set at max radius, exclusion list ignored
        self._radius_index = len(self.policy.radius_ladder_km) - 1
        everyone = self.source.find(self.origin, self.radius_km, self.service_type, frozenset())
        retry = next((candidate for candidate in everyone if candidate.provider_id == provider_id), None)

        if retry is not None:
            logger.info("Request %s: provider %s still available, offering again", self.request_id, provider_id)
            self._candidates = {provider_id: retry}
            self._emit_candidates()
            self._set_state(SearchState.PROVIDER_FOUND)
            return

        if self.declines.outstanding(self.request_id):
            logger.info("Request %s: provider %s gone, retrying next declined provider", self.request_id, provider_id)
            self._start_cooldown_retry()
        else:
            logger.info("Request %s: no providers available, timing out", self.request_id)
            self._finish(SearchState.TIMEOUT)

    # --- Timers ---

    def _schedule_step(self, delay: float, step: Callable[[], None], label: str) -> None:
        """
        Replace the pending step (expansion, decline expansion or cooldown) with a new one.
        """
        self._cancel_step()
        self._generation += 1
        generation = self._generation

        def fire() -> None:
            with self._lock:
                if not self._alive or generation != self._generation:
                    return
                step()

        self._step_task = self.scheduler.call_later(delay, fire, name=f"{label}:{self.request_id}")

    def _cancel_step(self) -> None:
        self._generation += 1
        if self._step_task is not None:
            self._step_task.cancel()
            self._step_task = None

    def _cancel_countdown(self) -> None:
        if self._countdown_task is not None:
            self._countdown_task.cancel()
            self._countdown_task = None

    def _teardown(self) -> None:
        self._alive = False
        self._cancel_step()
        self._cancel_countdown()
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _finish(self, state: SearchState) -> None:
        self._teardown()
        self._candidates = {}
        self._set_state(state)

    # --- Callbacks ---

    def _set_state(self, state: SearchState) -> None:
        if state == self._state:
            return
        self._state = state
        if self._on_state_change is not None:
            self._safe_callback(self._on_state_change, state)

    def _emit_candidates(self) -> None:
        if self._on_candidates is not None:
            self._safe_callback(self._on_candidates, self.candidates)

    def _emit_countdown(self) -> None:
        if self._on_countdown is not None:
            self._safe_callback(self._on_countdown, self._cooldown_remaining)

    def _safe_callback(self, callback, *args) -> None:
        try:
            callback(self, *args)
        except Exception:
            logger.exception("Search callback failed for request %s", self.request_id)
