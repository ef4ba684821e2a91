"""
Purpose: Package entry + stable exports.
What it does:

Marks service_requests as a Python package and re-exports the public API so
other modules can do:

from service_requests import ServiceRequest, RequestStatus, validate_create_request

Should not contain business logic.
"""
from .models import (
    Location,
    Party,
    PaymentMethod,
    PaymentStatus,
    RequestStatus,
    ServiceRequest,
    ServiceType,
)
from .validation import CreateRequestInput, RequestValidationError, validate_create_request

__all__ = ["ServiceRequest",
           "RequestStatus",
             "ServiceType",
               "Location",
               "Party",
               "PaymentMethod",
               "PaymentStatus",
               "CreateRequestInput",
               "RequestValidationError",
               "validate_create_request",
               ]
