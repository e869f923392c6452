"""
Two-phase execution: submit now, collect later.

A ``TwoPhaseRunner`` does not compute its result while the scheduler
waits. ``execute_task`` persists a fresh correlation id into the payload,
then submits the request to the external facility and leaves the task
IN_PROGRESS. A later scheduler pass calls ``check_output``, which reads
the output back with ``get_result`` and completes the task.

Crash safety: the correlation id is persisted before submission and
``requestSubmitted`` is recorded after it. A task found IN_PROGRESS with a
correlation id but no ``requestSubmitted`` flag is resubmitted under the
same id, which the facility deduplicates. A task claimed but interrupted
before its correlation id was written gets a fresh id and is submitted.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any

from uuid_extensions import uuid7

from pytaskdeps.facility import BatchFacility, FacilityError
from pytaskdeps.models import Task, TaskStatus, TaskWithDependencies
from pytaskdeps.runners.base import CORRELATION_KEY, BaseRunner, parse_facility_output
from pytaskdeps.runners.errors import ConfigurationError, TaskNotFoundError
from pytaskdeps.runners.outcome import AwaitingOutput, Completed, DispatchResult, TaskOutcome

SUBMITTED_KEY = "requestSubmitted"


class TwoPhaseRunner(BaseRunner):
    """Base class for handlers whose work runs on an external facility.

    Subclasses implement ``build_request`` and usually ``handle_output``.
    """

    @property
    def facility(self) -> BatchFacility:
        if self.context.facility is None:
            raise ConfigurationError(
                "Two-phase runner requires a batch facility", runner_name=self.runner_name
            )
        return self.context.facility

    @abstractmethod
    async def build_request(self, work: TaskWithDependencies) -> dict[str, Any]:
        """Build the request body submitted to the facility."""
        pass

    def parse_output(self, output: dict[str, Any], correlation_id: str) -> dict[str, Any]:
        """Turn raw facility output into the parsed result."""
        return parse_facility_output(output, correlation_id)

    async def handle_output(self, task: Task, output: dict[str, Any]) -> TaskOutcome:
        """Decide the task's outcome from its parsed output.

        Default: complete and record the output under ``"result"``.
        """
        return Completed({"result": output})

    async def get_result(self, correlation_id: str) -> dict[str, Any]:
        """Fetch and parse the output stored under ``correlation_id``.

        Repeatable read: never resubmits and may be called any number of times.

        Raises:
            OutputNotReadyError: If the facility has no output yet
            FacilityError: If the request failed or the output cannot be parsed
        """
        output = await self.facility.fetch(correlation_id)
        return self.parse_output(output, correlation_id)

    async def execute_task(self, work: TaskWithDependencies) -> TaskOutcome:
        task = work.task
        correlation_id = str(uuid7())
        request = await self.build_request(work)

        # Persist first: a crash after this point resubmits under the same id
        await self.store.merge_payload(
            task.id,
            {CORRELATION_KEY: correlation_id, "initiatedAt": self.context.now_iso()},
        )
        await self._submit(task.id, correlation_id, request)
        return AwaitingOutput(correlation_id)

    async def check_output(self, task_id: int) -> DispatchResult:
        await self.open()
        try:
            return await self._check_output(task_id)
        finally:
            await self.close()

    async def _check_output(self, task_id: int) -> DispatchResult:
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status is not TaskStatus.IN_PROGRESS:
            return DispatchResult.SKIPPED

        correlation_id = task.payload.get(CORRELATION_KEY)
        if not correlation_id:
            # Claimed, then interrupted before the correlation id was written
            self.log(logging.WARNING, "No correlation id, submitting again", task_id=task_id)
            work = await self.store.get_task_with_dependencies(task_id)
            if work is None:
                raise TaskNotFoundError(task_id)
            outcome = await self.execute_task(work)
            if isinstance(outcome, AwaitingOutput):
                return DispatchResult.WAITING
            return await self.apply_outcome(task_id, outcome)

        if not task.payload.get(SUBMITTED_KEY):
            self.log(
                logging.WARNING,
                "Submission not confirmed, resubmitting",
                task_id=task_id,
                correlation_id=correlation_id,
            )
            work = await self.store.get_task_with_dependencies(task_id)
            if work is None:
                raise TaskNotFoundError(task_id)
            await self._submit(task_id, correlation_id, await self.build_request(work))
            return DispatchResult.WAITING

        try:
            output = await self.get_result(correlation_id)
        except FacilityError as e:
            if not e.is_retryable():
                raise
            self.log(logging.DEBUG, "Output not ready", task_id=task_id, correlation_id=correlation_id)
            return DispatchResult.WAITING

        outcome = await self.handle_output(task, output)
        if isinstance(outcome, AwaitingOutput):
            return DispatchResult.WAITING
        return await self.apply_outcome(task_id, outcome)

    async def _submit(self, task_id: int, correlation_id: str, request: dict[str, Any]) -> None:
        await self.facility.submit(correlation_id, request)
        await self.store.merge_payload(task_id, {SUBMITTED_KEY: True})
        self.log(logging.DEBUG, "Request submitted", task_id=task_id, correlation_id=correlation_id)
