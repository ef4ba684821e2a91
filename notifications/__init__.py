from .payloads import AutoFinished, OfferRevoked, Payload, RequestAccepted, RequestCanceled, RequestOffer
from .push_client import PushClient

__all__ = ["AutoFinished",
           "OfferRevoked",
             "Payload",
             "RequestAccepted",
             "RequestCanceled",
             "RequestOffer",
               "PushClient"
               ]
