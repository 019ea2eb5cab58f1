"""Assemble an engine, pipeline executor and orchestrator from configuration."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import OpsflowConfig, load_config
from .decisions import DecisionInvoker
from .engine import WorkflowEngine
from .notifications import Notifier
from .orchestrator import Orchestrator
from .persistence import SQLiteWorkflowRepository, WorkflowRepository, get_repository
from .pipeline import PipelineExecutor
from .records import InMemoryRecordStore, RecordStore
from .transports import BaseTransport, get_transport
from .utils.clock import Clock

logger = logging.getLogger(__name__)


@dataclass
class OpsflowApp:
    config: OpsflowConfig
    repository: WorkflowRepository
    transport: BaseTransport
    engine: WorkflowEngine
    pipelines: PipelineExecutor
    orchestrator: Orchestrator

    async def close(self) -> None:
        await self.transport.disconnect()
        if isinstance(self.repository, SQLiteWorkflowRepository):
            self.repository.close()


async def create_app(
    config: Optional[OpsflowConfig] = None,
    records: Optional[RecordStore] = None,
    repository: Optional[WorkflowRepository] = None,
    decision_invoker: Optional[DecisionInvoker] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
) -> OpsflowApp:
    """Build and connect every component.

    The pipeline executor is created after the engine so its approval
    listener runs after the engine has resumed the stage run.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = get_transport(config=config)
    await transport.connect()

    engine = WorkflowEngine(
        repository,
        records if records is not None else InMemoryRecordStore(),
        decision_invoker=decision_invoker,
        notifier=notifier,
        transport=transport,
        config=config,
        clock=clock,
    )
    pipelines = PipelineExecutor(engine)
    orchestrator = Orchestrator(engine, pipelines)
    logger.debug(
        f"opsflow ready: {type(repository).__name__}, {type(transport).__name__}, "
        f"decision model {config.decisions.model or 'unset'}"
    )
    return OpsflowApp(config, repository, transport, engine, pipelines, orchestrator)
