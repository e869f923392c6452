"""In-memory batch facility for tests and demos.

Requests are stored per correlation id together with an xxhash fingerprint
of the request body. Resubmitting an id with the same body is a no-op;
resubmitting it with a different body is rejected.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import xxhash

from pytaskdeps.facility.base import FacilityError, OutputNotReadyError
from pytaskdeps.models import utc_now

logger = logging.getLogger(__name__)

Responder = Callable[[dict[str, Any]], dict[str, Any] | Awaitable[dict[str, Any]]]


def request_fingerprint(request: dict[str, Any]) -> int:
    """Stable 63-bit hash of a request body."""
    canonical = json.dumps(request, sort_keys=True, separators=(",", ":"), default=str)
    return xxhash.xxh64(canonical.encode("utf-8")).intdigest() & 0x7FFFFFFFFFFFFFFF


@dataclass
class Submission:
    """One request accepted by the facility."""

    correlation_id: str
    request: dict[str, Any]
    fingerprint: int
    submitted_at: datetime = field(default_factory=utc_now)
    output: dict[str, Any] | None = None
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.output is not None or self.error is not None


class InMemoryBatchFacility:
    """Batch facility that keeps requests and outputs in memory.

    Outputs come from ``responder`` (sync or async callable taking the
    request body). With ``auto_complete=True`` the responder runs at
    submission time; otherwise outputs appear only after ``complete()`` or
    ``complete_all()``, which lets tests observe the IN_PROGRESS phase.

    Usage:
        facility = InMemoryBatchFacility(responder=lambda req: {"value": 1})
        await facility.submit("abc", {"prompt": "..."})
        await facility.complete_all()
        output = await facility.fetch("abc")
    """

    def __init__(self, responder: Responder | None = None, auto_complete: bool = False):
        self._responder = responder
        self._auto_complete = auto_complete
        self._submissions: dict[str, Submission] = {}
        self._lock = asyncio.Lock()
        self.submit_calls = 0

    def __repr__(self) -> str:
        return f"InMemoryBatchFacility(submissions={len(self._submissions)})"

    @property
    def submission_count(self) -> int:
        """Number of distinct requests accepted (duplicates excluded)."""
        return len(self._submissions)

    @property
    def submissions(self) -> list[Submission]:
        return list(self._submissions.values())

    def pending_ids(self) -> list[str]:
        return [cid for cid, s in self._submissions.items() if not s.is_finished]

    async def submit(self, correlation_id: str, request: dict[str, Any]) -> None:
        fingerprint = request_fingerprint(request)
        async with self._lock:
            self.submit_calls += 1
            existing = self._submissions.get(correlation_id)
            if existing is not None:
                if existing.fingerprint != fingerprint:
                    raise FacilityError(
                        f"Correlation id {correlation_id} was already used for a different request",
                        correlation_id,
                    )
                logger.debug(f"Duplicate submission ignored: {correlation_id}")
                return
            submission = Submission(
                correlation_id=correlation_id,
                request=copy.deepcopy(request),
                fingerprint=fingerprint,
            )
            self._submissions[correlation_id] = submission

        logger.debug(f"Accepted request {correlation_id} (fingerprint={fingerprint:x})")
        if self._auto_complete and self._responder is not None:
            await self.complete(correlation_id)

    async def fetch(self, correlation_id: str) -> dict[str, Any]:
        async with self._lock:
            submission = self._submissions.get(correlation_id)
            if submission is None:
                raise FacilityError(f"Unknown correlation id: {correlation_id}", correlation_id)
            if submission.error is not None:
                raise FacilityError(submission.error, correlation_id)
            if submission.output is None:
                raise OutputNotReadyError(correlation_id)
            return copy.deepcopy(submission.output)

    async def complete(self, correlation_id: str, output: dict[str, Any] | None = None) -> None:
        """Record the output of a request, computing it with the responder if not given."""
        submission = self._get(correlation_id)
        if output is None:
            if self._responder is None:
                raise FacilityError("No output given and no responder configured", correlation_id)
            output = self._responder(copy.deepcopy(submission.request))
            if inspect.isawaitable(output):
                output = await output
        async with self._lock:
            submission.output = copy.deepcopy(output)

    async def complete_all(self) -> int:
        """Complete every unfinished request with the responder.

        Returns:
            Number of requests completed
        """
        pending = self.pending_ids()
        for correlation_id in pending:
            await self.complete(correlation_id)
        return len(pending)

    async def fail(self, correlation_id: str, message: str) -> None:
        """Mark a request as failed; later fetches raise FacilityError."""
        submission = self._get(correlation_id)
        async with self._lock:
            submission.error = message

    def _get(self, correlation_id: str) -> Submission:
        submission = self._submissions.get(correlation_id)
        if submission is None:
            raise FacilityError(f"Unknown correlation id: {correlation_id}", correlation_id)
        return submission
