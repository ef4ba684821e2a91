"""
Purpose: Tagged push payloads.
What it does:
Every notification that leaves the dispatch core is one of these records.
to_dict() produces the JSON body; the "type" key tells the app which card to render.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, ClassVar, Dict, Optional, Union


@dataclass(frozen=True)
class RequestOffer:
    TYPE: ClassVar[str] = "request_offer"

    request_id: str
    service_type: str
    origin_address: str
    distance_km: float
    radius_km: float

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.TYPE, **asdict(self)}


@dataclass(frozen=True)
class OfferRevoked:
    """Silent push: drop the offer card (someone else took it, or the search moved on)."""
    TYPE: ClassVar[str] = "offer_revoked"

    request_id: str
    reason: str = "taken"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.TYPE, **asdict(self)}


@dataclass(frozen=True)
class RequestAccepted:
    TYPE: ClassVar[str] = "request_accepted"

    request_id: str
    provider_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.TYPE, **asdict(self)}


@dataclass(frozen=True)
class RequestCanceled:
    TYPE: ClassVar[str] = "request_canceled"

    request_id: str
    canceled_by: str
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.TYPE, **asdict(self)}


@dataclass(frozen=True)
class AutoFinished:
    TYPE: ClassVar[str] = "auto_finished"

    request_id: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.TYPE, **asdict(self)}


Payload = Union[RequestOffer, OfferRevoked, RequestAccepted, RequestCanceled, AutoFinished]
