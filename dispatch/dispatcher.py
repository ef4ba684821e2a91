"""
Purpose: Orchestrator / decision pipeline (the "glue").
What it does:
Accepts a validated request from the client, persists it in `searching`, runs one
ProximitySearch session per request and resolves what providers do with the offers:

- offers go out (and are revoked) as the session's candidate list changes
- accept: atomic conditional assignment; losing the race is not an error
- decline: persisted on the request, appended to the ledger, fed to the live session
- provider release / client cancel: lifecycle transition + session restart or teardown
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from geo.distance import distance_km
from notifications.payloads import RequestAccepted, RequestCanceled, RequestOffer
from providers.policy import SearchPolicy, default_search_policy
from service_requests.models import RequestStatus, ServiceRequest, changed_fields
from service_requests.validation import validate_create_request

from .candidate_filter import Candidate, StoreCandidateSource
from .change_feed import ProviderChangeFeed
from .decline_tracker import DeclineTracker
from .scheduling import ThreadingScheduler
from .search_session import ProximitySearch, SearchState
from .state_machines.request_state import (
    RequestStateException,
    StaleRequestError,
    assign_provider,
    cancel_by_client,
    release_by_provider,
    submit,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderQueue:
    """
    What a provider sees on their radar: oldest request first.
    `reason` explains an empty queue (offline, blocked, no_location).
    """
    requests: List[Tuple[ServiceRequest, float]]
    reason: Optional[str] = None


class Dispatcher:
    """
    Coordinates requests, search sessions and providers for one process.
    """
    def __init__(
        self,
        store,
        scheduler=None,
        push_service=None,
        decline_tracker: Optional[DeclineTracker] = None,
        policy: Optional[SearchPolicy] = None,
        change_feed: Optional[ProviderChangeFeed] = None,
    ):
        self.store = store
        self.scheduler = scheduler or ThreadingScheduler()
        self.push_service = push_service
        self.policy = policy or default_search_policy()
        self.decline_tracker = decline_tracker or DeclineTracker(self.policy.cooldown_retry_seconds)
        self.change_feed = change_feed if change_feed is not None else getattr(store, "feed", None)
        self.candidate_source = StoreCandidateSource(store, self.scheduler, self.policy)

        self._sessions: Dict[str, ProximitySearch] = {}
        self._offered: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()
        # serializes the busy check and the assignment write within this process
        self._assign_lock = threading.Lock()

    # --- Client side ---

    def submit_request(self, client_id: str, data: Mapping[str, Any]) -> ServiceRequest:
        """
        Validate, persist in `searching`, start the search. Validation errors propagate
        before anything is written.
        """
        parsed = validate_create_request(data)
        now = self.scheduler.now()
        request = ServiceRequest.new(
            client_id=client_id,
            service_type=parsed.service_type,
            origin=parsed.origin,
            destination=parsed.destination,
            vehicle_type=parsed.vehicle_type,
            payment_method=parsed.payment_method,
            now=now,
        )
        request = self.store.insert_request(submit(request, now))
        logger.info("Request %s submitted by client %s (%s)", request.id, client_id, request.service_type.value)
        self.start_search(request.id)
        return request

    def start_search(self, request_id: str) -> ProximitySearch:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestStateException(f"Request {request_id} does not exist")
        if request.canonical_status != RequestStatus.SEARCHING or request.provider_id is not None:
            raise RequestStateException(f"Request {request_id} is not searching (status {request.status.value})")

        with self._lock:
            previous = self._sessions.pop(request_id, None)
            session = ProximitySearch(
                request,
                self.candidate_source,
                self.decline_tracker,
                self.scheduler,
                policy=self.policy,
                change_feed=self.change_feed,
                on_state_change=self._handle_state_change,
                on_candidates=self._handle_candidates,
                on_decline_cleared=self._handle_decline_cleared,
            )
            self._sessions[request_id] = session
            self._offered.setdefault(request_id, set())
        if previous is not None:
            previous.dispose()
        session.start()
        return session

    def session_for(self, request_id: str) -> Optional[ProximitySearch]:
        with self._lock:
            return self._sessions.get(request_id)

    def client_cancel(self, request_id: str, client_id: str, reason: Optional[str] = None) -> ServiceRequest:
        request = self._require_request(request_id)
        now = self.scheduler.now()
        canceled = cancel_by_client(request, client_id, now, reason)
        updated = self._apply(request, canceled)

        self._end_session(request_id)
        self.decline_tracker.clear_request(request_id)
        self._revoke_all(request_id, reason="canceled")

        if request.provider_id is not None:
            self._notify(request.provider_id, request_id, RequestCanceled(request_id, "client", reason))
        logger.info("Request %s canceled by client (%s)", request_id, reason or "no reason")
        return updated

    # --- Provider side ---

    def resolve_provider_acceptance(self, request_id: str, provider_id: str) -> bool:
        """
        Race Condition Resolver: called when a provider hits "Accept".
        Exactly one provider can win; everyone else gets False and the search goes on.
        """
        if self.decline_tracker.is_excluded(request_id, provider_id):
            logger.info("Provider %s tried to accept %s while excluded", provider_id, request_id)
            return False

        request = self.store.get_request(request_id)
        if request is None or request.canonical_status != RequestStatus.SEARCHING or request.provider_id:
            return False

        try:
            assigned = assign_provider(request, provider_id, self.scheduler.now())
        except RequestStateException:
            return False

        with self._assign_lock:
            if provider_id in self.store.busy_provider_ids():
                logger.info("Provider %s is already serving another request, %s stays open", provider_id, request_id)
                return False
            updated = self.store.update_request_if(
                request_id,
                RequestStatus.SEARCHING,
                require_unassigned=True,
                **changed_fields(request, assigned),
            )
        if updated is None:
            logger.info("Provider %s lost the race for request %s", provider_id, request_id)
            return False

        self._end_session(request_id)
        others = self._take_offered(request_id) - {provider_id}
        if others and self.push_service:
            self.push_service.revoke_offer(sorted(others), request_id, "taken")
        self._withdraw_busy_provider(provider_id)
        self._notify(updated.client_id, request_id, RequestAccepted(request_id, provider_id))
        logger.info("Request %s assigned to provider %s", request_id, provider_id)
        return True

    def decline_request(self, request_id: str, provider_id: str) -> ServiceRequest:
        request = self._require_request(request_id)
        if request.canonical_status != RequestStatus.SEARCHING:
            raise RequestStateException(f"Request {request_id} is not searching (status {request.status.value})")

        now = self.scheduler.now()
        # validates the decline; the write itself is a single atomic add in the store
        release_by_provider(request, provider_id, now)
        updated = self.store.add_declined_provider(request_id, provider_id, RequestStatus.SEARCHING, updated_at=now)
        if updated is None:
            raise StaleRequestError(request_id, request.status)
        self.store.append_decline(request_id, provider_id, now)

        with self._lock:
            self._offered.get(request_id, set()).discard(provider_id)
        session = self.session_for(request_id)
        if session is not None and session.is_active:
            session.decline(provider_id)
        else:
            self.decline_tracker.record_decline(request_id, provider_id, now)
        return updated

    def provider_cancel(self, request_id: str, provider_id: str) -> ServiceRequest:
        """
        The assigned provider walks away: back to searching, without them.
        """
        request = self._require_request(request_id)
        now = self.scheduler.now()
        updated = self._apply(request, release_by_provider(request, provider_id, now))
        self.store.append_decline(request_id, provider_id, now)
        self.decline_tracker.record_decline(request_id, provider_id, now)

        self._notify(
            updated.client_id, request_id, RequestCanceled(request_id, "provider", "provider_released")
        )
        session = self.session_for(request_id)
        if session is not None and session.is_active:
            session.decline(provider_id)
        else:
            self.start_search(request_id)
        return updated

    def pending_requests_for_provider(self, provider_id: str) -> ProviderQueue:
        """
        Provider-side queue: searching, unassigned requests inside the provider's radar
        range, for a service they offer, that they have not declined and did not create.
        """
        provider = self.store.get_provider(provider_id)
        if provider is None or not provider.is_online:
            return ProviderQueue([], reason="offline")
        if provider.is_blocked or provider.is_financially_blocked(self.policy.max_pending_fee_balance):
            return ProviderQueue([], reason="blocked")
        if provider.location is None:
            return ProviderQueue([], reason="no_location")

        queue = []
        for request in self.store.list_requests(RequestStatus.SEARCHING):
            if request.provider_id is not None or request.client_id == provider_id:
                continue
            if not provider.offers(request.service_type):
                continue
            if provider_id in request.declined_provider_ids:
                continue
            if self.decline_tracker.is_excluded(request.id, provider_id):
                continue
            distance = distance_km(provider.location, request.origin.coordinates)
            if distance <= provider.radar_range_km:
                queue.append((request, distance))
        return ProviderQueue(queue)

    def shutdown(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.cancel()
        logger.info("Dispatcher stopped %d live searches", len(sessions))

    # --- Session callbacks ---

    def _handle_candidates(self, session: ProximitySearch, candidates: List[Candidate]) -> None:
        request_id = session.request_id
        current = {candidate.provider_id for candidate in candidates}
        with self._lock:
            offered = self._offered.setdefault(request_id, set())
            new = [candidate for candidate in candidates if candidate.provider_id not in offered]
            gone = offered - current
            offered.clear()
            offered.update(current)

        if gone and self.push_service:
            self.push_service.revoke_offer(sorted(gone), request_id, "search_moved_on")
        for candidate in new:
            offer = RequestOffer(
                request_id=request_id,
                service_type=session.service_type.value,
                origin_address=session.request.origin.address,
                distance_km=round(candidate.distance_km, 2),
                radius_km=session.radius_km,
            )
            self._notify(candidate.provider_id, request_id, offer)

    def _handle_state_change(self, session: ProximitySearch, state: SearchState) -> None:
        logger.debug("Search %s -> %s", session.request_id, state.value)
        if state == SearchState.TIMEOUT:
            self._revoke_all(session.request_id, reason="timeout")

    def _handle_decline_cleared(self, session: ProximitySearch, provider_id: str) -> None:
        self.store.remove_declined_provider(
            session.request_id, provider_id, RequestStatus.SEARCHING, updated_at=self.scheduler.now()
        )

    # --- Helpers ---

    def _require_request(self, request_id: str) -> ServiceRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestStateException(f"Request {request_id} does not exist")
        return request

    def _apply(self, before: ServiceRequest, after: ServiceRequest) -> ServiceRequest:
        changes = changed_fields(before, after)
        if not changes:
            return before
        updated = self.store.update_request_if(before.id, before.status, **changes)
        if updated is None:
            raise StaleRequestError(before.id, before.status)
        return updated

    def _end_session(self, request_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(request_id, None)
        if session is not None:
            session.dispose()

    def _withdraw_busy_provider(self, provider_id: str) -> None:
        """
        A provider who just took work leaves every other live search.
        Their offers there are revoked through the candidate callback.
        """
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.drop_candidate(provider_id)

    def _take_offered(self, request_id: str) -> Set[str]:
        with self._lock:
            return self._offered.pop(request_id, set())

    def _revoke_all(self, request_id: str, reason: str) -> None:
        offered = self._take_offered(request_id)
        if offered and self.push_service:
            self.push_service.revoke_offer(sorted(offered), request_id, reason)

    def _notify(self, user_id: str, request_id: str, payload) -> None:
        if not self.push_service:
            return
        try:
            self.push_service.notify(user_id, request_id, payload)
        except Exception:
            logger.exception("Push to %s for request %s failed", user_id, request_id)
