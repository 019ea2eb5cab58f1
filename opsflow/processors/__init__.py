"""Built-in workflow processors, registered by ``workflow_type`` on import."""

from . import fulfillment, inventory, logistics, planning, procurement, production, triage  # noqa: F401
from .base import PROCESSORS, Processor, ProcessorConfig, get_processor, processor

__all__ = ["PROCESSORS", "Processor", "ProcessorConfig", "get_processor", "processor"]
