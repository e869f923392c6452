"""External asynchronous facility interface.

Two-phase runners submit work to a facility under a correlation id and
collect the output on a later scheduler pass. The engine treats the
facility as at-least-once: resubmitting the same correlation id must not
create a second unit of work.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


class FacilityError(Exception):
    """Submission to or retrieval from the external facility failed."""

    kind = "facility_error"

    def __init__(self, message: str, correlation_id: str | None = None):
        super().__init__(message)
        self.correlation_id = correlation_id

    def is_retryable(self) -> bool:
        """Facility failures are fatal for the task unless a subclass says otherwise."""
        return False


class OutputNotReadyError(FacilityError):
    """The request was accepted but has no output yet.

    Not a failure: the task stays IN_PROGRESS and is re-checked on a later pass.
    """

    kind = "output_not_ready"

    def __init__(self, correlation_id: str):
        super().__init__(f"Output not ready for {correlation_id}", correlation_id)

    def is_retryable(self) -> bool:
        return True


@runtime_checkable
class BatchFacility(Protocol):
    """Protocol for an external batch service (e.g. a batch inference API)."""

    async def submit(self, correlation_id: str, request: dict[str, Any]) -> None:
        """Submit a request under ``correlation_id``.

        Raises:
            FacilityError: If the submission was rejected
        """
        ...

    async def fetch(self, correlation_id: str) -> dict[str, Any]:
        """Return the stored output for ``correlation_id``.

        Repeatable read: calling it again returns the same output.

        Raises:
            OutputNotReadyError: If there is no output yet
            FacilityError: If the request failed or is unknown
        """
        ...
