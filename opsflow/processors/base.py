"""Processor registry.

A processor is an ``async`` function that receives an
:class:`~opsflow.runtime.ExecutionContext` and returns the run's output
data. Each one is registered under the ``workflow_type`` that definitions
refer to, together with the pydantic model its ``execution_config`` must
satisfy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from ..runtime import ExecutionContext

ProcessorFn = Callable[["ExecutionContext"], Awaitable[Optional[Dict[str, Any]]]]


class ProcessorConfig(BaseModel):
    """Base for processor execution configs; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


@dataclass(frozen=True)
class Processor:
    workflow_type: str
    fn: ProcessorFn
    config_model: Type[ProcessorConfig]
    description: str = ""


PROCESSORS: Dict[str, Processor] = {}


def processor(
    workflow_type: str, config_model: Type[ProcessorConfig] = ProcessorConfig
) -> Callable[[ProcessorFn], ProcessorFn]:
    """Register the decorated coroutine as the processor for ``workflow_type``."""

    def decorator(fn: ProcessorFn) -> ProcessorFn:
        PROCESSORS[workflow_type] = Processor(
            workflow_type=workflow_type,
            fn=fn,
            config_model=config_model,
            description=(fn.__doc__ or "").strip().splitlines()[0] if fn.__doc__ else "",
        )
        return fn

    return decorator


def get_processor(workflow_type: str) -> Optional[Processor]:
    return PROCESSORS.get(workflow_type)
