"""
Purpose: Completion guard for requests the client never confirms.
What it does:
Periodically scans `pending_client_confirmation` requests whose provider asked to finish
more than `timeout_minutes` ago and force-finishes them with reason `client_timeout`.

- each transition is a conditional update gated on the status, so a client confirming
  at the same moment wins or loses cleanly (never both)
- both parties are notified; push failures are logged only
- the fee is settled right after the transition
- running the sweep twice is harmless: finished rows no longer match
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from fees.settlement import FeeInvariantError, SettlementError, settle_request
from notifications.payloads import AutoFinished
from service_requests.models import changed_fields

from .scheduling import ScheduledTask
from .state_machines.request_state import (
    AUTO_FINISH_REASON,
    AUTO_FINISH_TIMEOUT_MINUTES,
    RequestStateException,
    auto_finish,
)

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class SweepReport:
    processed: int = 0
    failed: int = 0
    details: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"processed": self.processed, "failed": self.failed, "details": self.details}


def run_auto_finish_sweep(
    store,
    now: datetime,
    timeout_minutes: float = AUTO_FINISH_TIMEOUT_MINUTES,
    push_service=None,
) -> SweepReport:
    report = SweepReport()
    cutoff = now - timedelta(minutes=timeout_minutes)

    for request in store.expired_pending_confirmations(cutoff):
        try:
            finished = auto_finish(request, now, timeout_minutes)
        except RequestStateException as e:
            report.failed += 1
            report.details.append({"request_id": request.id, "status": "error", "error": str(e)})
            continue

        updated = store.update_request_if(request.id, request.status, **changed_fields(request, finished))
        if updated is None:
            # the client confirmed or disputed first
            logger.info("Auto-finish of %s skipped: request changed concurrently", request.id)
            report.details.append({"request_id": request.id, "status": "skipped"})
            continue

        report.processed += 1
        logger.info("Auto-finished request %s (%s)", request.id, AUTO_FINISH_REASON)

        if push_service is not None:
            payload = AutoFinished(request_id=request.id, reason=AUTO_FINISH_REASON)
            for user_id in (updated.client_id, updated.provider_id):
                if user_id is None:
                    continue
                try:
                    push_service.notify(user_id, request.id, payload)
                except Exception:
                    logger.exception("Auto-finish notification to %s failed", user_id)

        detail = {"request_id": request.id, "status": "finished"}
        try:
            settlement = settle_request(store, request.id, now)
            detail["fee_cents"] = settlement.record.application_fee_cents
        except (FeeInvariantError, SettlementError) as e:
            logger.error("Settlement after auto-finish of %s failed: %s", request.id, e)
            detail["settlement_error"] = str(e)
        report.details.append(detail)

    if report.processed or report.failed:
        logger.info("Auto-finish sweep: %d processed, %d failed", report.processed, report.failed)
    return report


class AutoFinishSweeper:
    """
    Runs the sweep on a scheduler every `interval_seconds`.
    """
    def __init__(
        self,
        store,
        scheduler,
        push_service=None,
        timeout_minutes: float = AUTO_FINISH_TIMEOUT_MINUTES,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ):
        self.store = store
        self.scheduler = scheduler
        self.push_service = push_service
        self.timeout_minutes = timeout_minutes
        self.interval_seconds = interval_seconds
        self.last_report: Optional[SweepReport] = None
        self._task: Optional[ScheduledTask] = None

    def run_once(self) -> SweepReport:
        self.last_report = run_auto_finish_sweep(
            self.store, self.scheduler.now(), self.timeout_minutes, self.push_service
        )
        return self.last_report

    def start(self) -> None:
        if self._task is None or self._task.cancelled:
            self._task = self.scheduler.call_every(self.interval_seconds, self.run_once, name="auto-finish-sweep")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
