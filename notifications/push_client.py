#Purpose: The push gateway "adapter/client".
#Sole responsibility: deliver tagged payloads to user devices over HTTP.
#Encapsulates gateway-specific details:
#URL construction and auth header
#timeouts
#turning transport failures into log lines (delivery is fire-and-forget)
#It should not contain dispatch rules.


from dotenv import load_dotenv
import logging
import os
from typing import Iterable, Optional

import requests

from .payloads import OfferRevoked, Payload, RequestOffer

# Read push gateway settings from environment
# Example in .env:
# PUSH_GATEWAY_URL=https://push.example.com
# PUSH_API_KEY=secret
load_dotenv()
PUSH_GATEWAY_URL = os.getenv("PUSH_GATEWAY_URL")
PUSH_API_KEY = os.getenv("PUSH_API_KEY")

logger = logging.getLogger(__name__)


class PushClient:
    """
    Push Adapter / Client

    Sole responsibility:
    - POST one payload per recipient to {base_url}/notify
    - Never raise: a failed push is logged and the caller moves on
    """
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, timeout: int = 5):
        self.base_url = base_url or PUSH_GATEWAY_URL
        self.api_key = api_key or PUSH_API_KEY
        self.timeout = timeout

        if not self.base_url:
            raise ValueError("Push gateway URL not set. Please set PUSH_GATEWAY_URL in the .env file.")

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def notify(self, user_id: str, request_id: str, payload: Payload) -> bool:
        """
        Deliver one payload. Returns True when the gateway accepted it.
        """
        body = {
            "user_id": user_id,
            "request_id": request_id,
            "payload": payload.to_dict(),
        }
        try:
            response = requests.post(
                f"{self.base_url.rstrip('/')}/notify",
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Push to {user_id} for request {request_id} failed: {e}")
            return False
        return True

    def broadcast_offer(self, provider_ids: Iterable[str], offer: RequestOffer) -> int:
        delivered = 0
        for provider_id in provider_ids:
            if self.notify(provider_id, offer.request_id, offer):
                delivered += 1
        return delivered

    def revoke_offer(self, provider_ids: Iterable[str], request_id: str, reason: str = "taken") -> int:
        revoked = OfferRevoked(request_id=request_id, reason=reason)
        delivered = 0
        for provider_id in provider_ids:
            if self.notify(provider_id, request_id, revoked):
                delivered += 1
        return delivered
