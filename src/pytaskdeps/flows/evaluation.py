"""User evaluation flow.

Graph built for one user (``worth_samples`` defaults to 3):

    ScientistCheckRunner (root)
     └─ per sample:
          RandomizePromptRunner (worth prompt)
           └─ WorthAssessmentRunner
                ├─ ThresholdGateRunner (worth > threshold?)
                │    └─ RandomizePromptRunner (injection prompt)
                │         └─ PromptInjectionRunner
                └─ MedianRunner (over all worth assessments)

A non-scientist cancels the root and, through propagation, every task
except the median, which opts out and records a median of 0. A worth
assessment at or below the threshold cancels only its own injection branch.
"""

from __future__ import annotations

import logging
from typing import Any

from pytaskdeps.flows.builder import FlowBuilder
from pytaskdeps.models import TaskStatus
from pytaskdeps.runners.prompt import INJECTION_PROMPT, WORTH_PROMPT
from pytaskdeps.runners.utility import DEFAULT_THRESHOLD
from pytaskdeps.storage import TaskStore

logger = logging.getLogger(__name__)

WORTH_FIELD = "worthAsFractionOfGDP"


async def build_evaluation_flow(
    builder: FlowBuilder,
    user_id: int,
    user_data: dict[str, Any],
    *,
    worth_samples: int = 3,
    threshold: float = DEFAULT_THRESHOLD,
    ban_duration: str = "1y",
) -> int:
    """Create the evaluation graph for one user.

    Returns:
        Id of the root task
    """
    if worth_samples < 1:
        raise ValueError(f"worth_samples must be positive, got {worth_samples}")

    root = await builder.add_task(
        "ScientistCheckRunner", {"userId": user_id, "userData": user_data}
    )

    worth_tasks = []
    for _ in range(worth_samples):
        randomize = await builder.add_task(
            "RandomizePromptRunner",
            {"userId": user_id, "originalPrompt": WORTH_PROMPT},
            depends_on=[root],
        )
        worth = await builder.add_task(
            "WorthAssessmentRunner",
            {"userId": user_id, "userData": user_data},
            depends_on=[randomize],
        )
        worth_tasks.append(worth)

    for check_number, worth in enumerate(worth_tasks, start=1):
        gate = await builder.add_task(
            "ThresholdGateRunner",
            {"userId": user_id, "threshold": threshold, "valueField": WORTH_FIELD},
            depends_on=[worth],
        )
        randomize = await builder.add_task(
            "RandomizePromptRunner",
            {"userId": user_id, "originalPrompt": INJECTION_PROMPT},
            depends_on=[gate],
        )
        await builder.add_task(
            "PromptInjectionRunner",
            {
                "userId": user_id,
                "userData": user_data,
                "checkNumber": check_number,
                "banDuration": ban_duration,
                "banReason": "Prompt injection detected",
            },
            depends_on=[randomize],
        )

    await builder.add_task(
        "MedianRunner",
        {
            "userId": user_id,
            "valueField": WORTH_FIELD,
            "sourceHandler": "WorthAssessmentRunner",
        },
        depends_on=worth_tasks,
    )

    logger.info(f"Evaluation flow for user {user_id} created with root task {root.id}")
    return root.id


async def get_evaluation_result(store: TaskStore, user_id: int) -> dict[str, Any] | None:
    """Return the most recently completed median for ``user_id``, or None."""
    medians = [
        task
        for task in await store.list_tasks(TaskStatus.COMPLETED)
        if task.handler_name == "MedianRunner" and task.payload.get("userId") == user_id
    ]
    if not medians:
        return None

    latest = max(medians, key=lambda t: (t.completed_at is not None, t.completed_at, t.id))
    return {
        "taskId": latest.id,
        "median": latest.payload.get("median"),
        "sourceValues": latest.payload.get("sourceValues", []),
        "completedAt": latest.payload.get("completedAt"),
    }
