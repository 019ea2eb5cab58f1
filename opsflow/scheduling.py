"""Trigger evaluation: cron next-run times and threshold conditions."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.triggers.cron import CronTrigger

from .contracts import ThresholdCondition
from .errors import WorkflowConfigError
from .persistence import WorkflowRepository
from .records import RecordStore

logger = logging.getLogger(__name__)


def parse_cron(expression: str) -> CronTrigger:
    """Parse a five-field crontab expression, evaluated in UTC."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone.utc)
    except ValueError as e:
        raise WorkflowConfigError(f"Invalid cron expression {expression!r}: {e}") from e


def next_cron_run(expression: str, after: datetime) -> Optional[datetime]:
    """Return the first fire time strictly after ``after``."""
    return parse_cron(expression).get_next_fire_time(None, after + timedelta(seconds=1))


ThresholdEvaluator = Callable[[ThresholdCondition, RecordStore, WorkflowRepository], Awaitable[bool]]


async def inventory_below(
    condition: ThresholdCondition, records: RecordStore, repository: WorkflowRepository
) -> bool:
    """Any stock line whose available quantity is under its reorder level."""
    for inv in await records.query("inventory"):
        available = float(inv.get("quantity", 0)) - float(inv.get("reserved_quantity", 0))
        if available < float(inv.get("reorder_level", 0)):
            return True
    return False


async def pending_approvals(
    condition: ThresholdCondition, records: RecordStore, repository: WorkflowRepository
) -> bool:
    open_tickets = [t for t in await repository.list_tickets() if t.is_open]
    return len(open_tickets) >= (condition.threshold if condition.threshold is not None else 10)


async def exception_count(
    condition: ThresholdCondition, records: RecordStore, repository: WorkflowRepository
) -> bool:
    open_records = await repository.list_exceptions(status="open")
    return len(open_records) >= (condition.threshold if condition.threshold is not None else 5)


THRESHOLD_EVALUATORS: Dict[str, ThresholdEvaluator] = {
    "inventory_below": inventory_below,
    "pending_approvals": pending_approvals,
    "exception_count": exception_count,
}


async def evaluate_threshold(
    condition: ThresholdCondition, records: RecordStore, repository: WorkflowRepository
) -> bool:
    evaluator = THRESHOLD_EVALUATORS.get(condition.type)
    if evaluator is None:
        logger.warning(f"Unknown threshold condition type: {condition.type}")
        return False
    return await evaluator(condition, records, repository)
