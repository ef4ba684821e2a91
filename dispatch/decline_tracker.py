#Purpose: Remember which providers turned down which request, and when.
#Keeps a declined provider out of the search for that request until the
#cooldown-retry path explicitly clears it.
#Typical responsibilities:
#record / re-record a decline (clock resets on every decline)
#answer "is this provider excluded for this request?"
#expose the single retry clock of a request (oldest outstanding decline + cooldown)
#drop everything for a request once it terminates
#Output: DeclineRecord snapshots. Thread-safe, in-memory, one tracker per process.

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 10.0


@dataclass(frozen=True)
class DeclineRecord:
    request_id: str
    provider_id: str
    declined_at: datetime


class DeclineTracker:
    """
    Per-request decline bookkeeping.

    Only one retry clock runs per request: it starts at the oldest outstanding
    decline, not per provider. A provider who declined first is therefore retried
    first even when later declines exist.
    """

    def __init__(self, cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS):
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._declines: Dict[str, Dict[str, DeclineRecord]] = {}
        self._lock = threading.Lock()

    # --- Public API ---

    def record_decline(self, request_id: str, provider_id: str, now: datetime) -> DeclineRecord:
        """
        Idempotent append; re-declining resets that pair's clock to `now`.
        """
        record = DeclineRecord(request_id, provider_id, now)
        with self._lock:
            self._declines.setdefault(request_id, {})[provider_id] = record
        logger.debug("Provider %s declined request %s at %s", provider_id, request_id, now.isoformat())
        return record

    def seed(self, request_id: str, provider_ids: Iterable[str], now: datetime) -> List[DeclineRecord]:
        """
        Record declines persisted elsewhere (e.g. on the request row) that this
        tracker has not seen yet. Known pairs keep their original clock.
        """
        added: List[DeclineRecord] = []
        with self._lock:
            pairs = self._declines.setdefault(request_id, {})
            for provider_id in provider_ids:
                if provider_id not in pairs:
                    pairs[provider_id] = DeclineRecord(request_id, provider_id, now)
                    added.append(pairs[provider_id])
            if not pairs:
                del self._declines[request_id]
        return added

    def is_excluded(self, request_id: str, provider_id: str) -> bool:
        """
        True while the pair is recorded, even after its cooldown has elapsed.
        An elapsed cooldown alone does not make the provider eligible again: only
        clear_for_retry() does, once the cooldown retry re-offers the request.
        """
        with self._lock:
            return provider_id in self._declines.get(request_id, {})

    def excluded_ids(self, request_id: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._declines.get(request_id, {}))

    def clear_for_retry(self, request_id: str, provider_id: str) -> bool:
        """
        Make the provider eligible again. Cooldown-retry path only.
        """
        with self._lock:
            pairs = self._declines.get(request_id)
            if not pairs or provider_id not in pairs:
                return False
            del pairs[provider_id]
            if not pairs:
                del self._declines[request_id]
        logger.info("Cleared decline of provider %s for request %s (cooldown retry)", provider_id, request_id)
        return True

    def clear_request(self, request_id: str) -> None:
        with self._lock:
            self._declines.pop(request_id, None)

    # --- Retry clock ---

    def outstanding(self, request_id: str) -> List[DeclineRecord]:
        """
        Outstanding declines, oldest first.
        """
        with self._lock:
            records = list(self._declines.get(request_id, {}).values())
        return sorted(records, key=lambda record: record.declined_at)

    def oldest_decline(self, request_id: str) -> Optional[DeclineRecord]:
        records = self.outstanding(request_id)
        return records[0] if records else None

    def retry_due_at(self, request_id: str) -> Optional[datetime]:
        oldest = self.oldest_decline(request_id)
        if oldest is None:
            return None
        return oldest.declined_at + self.cooldown

    def remaining_cooldown(self, request_id: str, now: datetime) -> float:
        """
        Seconds until the request's retry clock elapses (0.0 when elapsed or idle).
        """
        due = self.retry_due_at(request_id)
        if due is None:
            return 0.0
        return max(0.0, (due - now).total_seconds())
