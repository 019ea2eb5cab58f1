"""Batch triage of exceptions left open by other workflows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import Field

from .base import ProcessorConfig, processor

if TYPE_CHECKING:
    from ..runtime import ExecutionContext


class TriageConfig(ProcessorConfig):
    max_exceptions: Optional[int] = Field(default=None, ge=1)


@processor("exception_handling", TriageConfig)
async def exception_handling(ctx: "ExecutionContext") -> Dict[str, Any]:
    """Let AI resolve open exceptions it is confident about and escalate the rest."""
    config: TriageConfig = ctx.config
    handler = ctx.engine.exceptions

    async def fetch_open() -> Dict[str, Any]:
        return {"open": [r.id for r in await handler.list_open()]}

    fetched = await ctx.require(1, "Fetch Open Exceptions", "data_fetch", fetch_open)
    open_count = len(fetched.data["open"])
    if config.max_exceptions is not None:
        open_count = min(open_count, config.max_exceptions)
    if not open_count:
        return {"resolved": [], "escalated": []}
    ctx.processed(open_count)

    async def triage() -> Dict[str, Any]:
        summary = await handler.triage_open(ctx, limit=config.max_exceptions)
        return summary.model_dump(mode="json")

    result = await ctx.require(2, "Triage Exceptions", "ai_decision", triage)
    ctx.succeeded(len(result.data["resolved"]))
    ctx.failed(len(result.data["escalated"]))
    return result.data
