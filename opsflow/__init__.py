"""opsflow: autonomous workflow orchestration for supply-chain operations."""

from .app import OpsflowApp, create_app
from .approvals import ApprovalManager, ApprovalOutcome
from .config import OpsflowConfig, load_config
from .contracts import WorkflowDefinition, WorkflowResult, WorkflowRun
from .engine import WorkflowEngine
from .events import EventBus
from .exception_handler import ExceptionHandler
from .orchestrator import Orchestrator
from .persistence import get_repository
from .pipeline import PipelineExecutor
from .processors import processor
from .records import InMemoryRecordStore
from .runtime import ExecutionContext
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ApprovalManager",
    "ApprovalOutcome",
    "EventBus",
    "ExceptionHandler",
    "ExecutionContext",
    "InMemoryRecordStore",
    "OpsflowApp",
    "OpsflowConfig",
    "Orchestrator",
    "PipelineExecutor",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowResult",
    "WorkflowRun",
    "create_app",
    "get_repository",
    "get_transport",
    "load_config",
    "processor",
]
