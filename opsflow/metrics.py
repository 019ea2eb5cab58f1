"""Daily per-workflow metric rollups, always derived from stored runs."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from .config import MetricsConfig
from .contracts import WorkflowMetric
from .persistence import WorkflowRepository
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class MetricsRecorder:
    """Recomputes a workflow's metric for a day from its runs and decisions.

    Recomputing instead of incrementing keeps a run that passes through
    ``awaiting_approval`` before completing from being counted twice.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[MetricsConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repository = repository
        self._config = config or MetricsConfig()
        self._clock = clock or SystemClock()

    async def refresh(self, workflow_id: str, day: Optional[date] = None) -> WorkflowMetric:
        day = day or self._clock.now().date()
        metric = WorkflowMetric(workflow_id=workflow_id, day=day)
        run_ids = set()
        for run in await self._repository.list_runs(workflow_id=workflow_id):
            if run.created_at.date() != day:
                continue
            run_ids.add(run.id)
            metric.total_runs += 1
            if run.status == "completed":
                metric.successful_runs += 1
            elif run.status == "failed":
                metric.failed_runs += 1
            elif run.status == "awaiting_approval":
                metric.awaiting_runs += 1
            metric.items_processed += run.items_processed
            metric.total_value += run.total_value
            metric.tokens_used += run.tokens_used
            metric.total_duration_ms += run.duration_ms or 0

        for decision in await self._repository.list_decisions():
            if decision.run_id in run_ids:
                metric.ai_decisions += 1
                if decision.override is not None:
                    metric.ai_overrides += 1

        metric.estimated_minutes_saved = metric.items_processed * self._config.minutes_saved_per_item
        metric.estimated_cost_saved = round(
            metric.estimated_minutes_saved / 60 * self._config.hourly_rate, 2
        )
        await self._repository.save_metric(metric)
        return metric

    async def rebuild(self, day: Optional[date] = None) -> list[WorkflowMetric]:
        """Recompute the metric of every workflow for ``day``."""
        day = day or self._clock.now().date()
        workflow_ids = []
        for run in await self._repository.list_runs():
            if run.created_at.date() == day and run.workflow_id not in workflow_ids:
                workflow_ids.append(run.workflow_id)
        metrics = [await self.refresh(wid, day) for wid in workflow_ids]
        logger.info(f"Rebuilt {len(metrics)} workflow metrics for {day.isoformat()}")
        return metrics

    async def for_day(self, day: Optional[date] = None) -> list[WorkflowMetric]:
        return await self._repository.list_metrics(day or self._clock.now().date())
