"""
Purpose: Apply lifecycle transitions against the store.
What it does:
Reads the request, runs the pure transition from state_machines.request_state and
writes the difference with one conditional update guarded on the status that was read.
If the row moved in between, StaleRequestError is raised and nothing is written.

client_confirm_finish also settles the platform fee (fees.settlement).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from fees.settlement import FeeInvariantError, SettlementError, SettlementResult, settle_request
from service_requests.models import Party, ServiceRequest, changed_fields, utc_now
from service_requests.validation import parse_money

from .state_machines import request_state
from .state_machines.request_state import RequestStateException, StaleRequestError

logger = logging.getLogger(__name__)


class RequestLifecycle:
    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # --- Negotiation ---

    def propose_value(self, request_id: str, by: Party, actor_id: str, value) -> ServiceRequest:
        amount = parse_money(value)
        request = self._load(request_id)
        self._require_party(request, by, actor_id)
        return self._commit(request, request_state.propose_value(request, amount, by, self.clock()))

    def accept_value(self, request_id: str, by: Party, actor_id: str) -> ServiceRequest:
        request = self._load(request_id)
        self._require_party(request, by, actor_id)
        return self._commit(request, request_state.accept_value(request, by, self.clock()))

    def confirm_value(self, request_id: str, actor_id: str) -> ServiceRequest:
        request = self._load(request_id)
        self._require_party(request, Party.CLIENT, actor_id)
        return self._commit(request, request_state.confirm_value(request, self.clock()))

    def reopen_negotiation(self, request_id: str, by: Party, actor_id: str) -> ServiceRequest:
        request = self._load(request_id)
        self._require_party(request, by, actor_id)
        return self._commit(request, request_state.reopen_negotiation(request, self.clock()))

    # --- Payment and service ---

    def mark_paid(self, request_id: str) -> ServiceRequest:
        """
        Called by the payment webhook / poller once the gateway reports the payment,
        or by the provider confirming a direct payment.
        """
        request = self._load(request_id)
        return self._commit(request, request_state.mark_paid(request, self.clock()))

    def provider_finish(self, request_id: str, provider_id: str) -> ServiceRequest:
        request = self._load(request_id)
        return self._commit(request, request_state.provider_finish(request, provider_id, self.clock()))

    def client_confirm_finish(self, request_id: str, client_id: str) -> ServiceRequest:
        request = self._load(request_id)
        now = self.clock()
        finished = self._commit(request, request_state.client_confirm_finish(request, client_id, now))
        try:
            self.settle(request_id, now)
        except (FeeInvariantError, SettlementError):
            # the request stays finished; settlement is retried from the settle endpoint
            logger.error("Settlement of request %s failed after client confirmation", request_id, exc_info=True)
        return finished

    def dispute_finish(self, request_id: str, client_id: str) -> ServiceRequest:
        request = self._load(request_id)
        return self._commit(request, request_state.dispute_finish(request, client_id, self.clock()))

    def settle(self, request_id: str, now: Optional[datetime] = None) -> SettlementResult:
        return settle_request(self.store, request_id, now or self.clock())

    # --- Helpers ---

    def _load(self, request_id: str) -> ServiceRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise RequestStateException(f"Request {request_id} does not exist")
        return request

    @staticmethod
    def _require_party(request: ServiceRequest, by: Party, actor_id: str) -> None:
        expected = request.client_id if by == Party.CLIENT else request.provider_id
        if expected != actor_id:
            raise RequestStateException(f"{actor_id} is not the {by.value} of request {request.id}")

    def _commit(self, before: ServiceRequest, after: ServiceRequest) -> ServiceRequest:
        changes = changed_fields(before, after)
        if not changes:
            return before
        updated = self.store.update_request_if(before.id, before.status, **changes)
        if updated is None:
            raise StaleRequestError(before.id, before.status)
        logger.info("Request %s: %s -> %s", before.id, before.status.value, updated.status.value)
        return updated
