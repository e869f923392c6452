"""External batch facilities used by two-phase runners."""

from pytaskdeps.facility.base import BatchFacility, FacilityError, OutputNotReadyError
from pytaskdeps.facility.memory import InMemoryBatchFacility, Submission, request_fingerprint

__all__ = [
    "BatchFacility",
    "FacilityError",
    "OutputNotReadyError",
    "InMemoryBatchFacility",
    "Submission",
    "request_fingerprint",
]
