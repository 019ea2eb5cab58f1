"""Decision invoker boundary around the external reasoning service."""

from __future__ import annotations

import json
import logging
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model
from pydantic_ai import Agent

from .contracts import AutonomousDecision, DecisionOverride
from .errors import DecisionError
from .persistence import WorkflowRepository
from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert supply chain AI making autonomous decisions for an ERP system.
Analyze the data provided and make the best decision based on cost, lead time,
quality and reliability, risk, and the stated business rules.
Reply with a single JSON object and nothing else, of the form
{"choice": <decision>, "reasoning": <string>, "confidence": <number 0-100>}."""


class DecisionRequest(BaseModel):
    """What the orchestrator asks the reasoning service."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    decision_type: str
    prompt: str
    options: List[Any] = Field(default_factory=list)
    output_shape: Optional[Type[BaseModel]] = None


class DecisionResponse(BaseModel):
    choice: Any
    confidence: float = Field(ge=0, le=100)
    reasoning: str = ""
    tokens_used: int = 0


class DecisionInvoker(Protocol):
    async def invoke(self, request: DecisionRequest) -> DecisionResponse:
        """Return a validated decision or raise ``DecisionError``."""


def _envelope_for(request: DecisionRequest) -> Type[BaseModel]:
    choice_type: Any = request.output_shape or Any
    return create_model(
        "DecisionEnvelope",
        choice=(choice_type, ...),
        reasoning=(str, ""),
        confidence=(float, Field(ge=0, le=100)),
    )


def parse_decision(
    raw: Union[str, Dict[str, Any]], request: DecisionRequest, tokens_used: int = 0
) -> DecisionResponse:
    """Validate a raw reply against the request's strict output shape.

    Fails closed: anything that is not valid JSON of the expected shape, or
    a choice outside the candidate options, raises ``DecisionError``.
    """
    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecisionError(f"{request.decision_type}: reply is not JSON: {e}") from e
    else:
        payload = raw
    if not isinstance(payload, dict):
        raise DecisionError(f"{request.decision_type}: reply is not a JSON object")

    try:
        envelope = _envelope_for(request).model_validate(payload)
    except ValidationError as e:
        raise DecisionError(
            f"{request.decision_type}: reply does not match the output shape: {e}"
        ) from e

    choice = envelope.choice
    if request.output_shape is None and request.options and choice not in request.options:
        raise DecisionError(
            f"{request.decision_type}: choice {choice!r} is not one of {request.options!r}"
        )
    return DecisionResponse(
        choice=choice,
        confidence=envelope.confidence,
        reasoning=envelope.reasoning,
        tokens_used=tokens_used,
    )


def render_prompt(request: DecisionRequest) -> str:
    parts = [request.prompt]
    if request.options:
        parts.append(f"Candidate options: {json.dumps(request.options, default=str)}")
    if request.output_shape is not None:
        schema = json.dumps(request.output_shape.model_json_schema())
        parts.append(f"The value of \"choice\" must match this JSON schema: {schema}")
    elif request.options:
        parts.append("The value of \"choice\" must be exactly one of the candidate options.")
    return "\n\n".join(parts)


class AgentDecisionInvoker:
    """Decision invoker backed by a pydantic-ai ``Agent``.

    ``model`` is anything pydantic-ai accepts as a model: a name such as
    ``openai:gpt-4o`` or a ``Model`` instance. The agent is built on first
    use so that constructing the invoker never needs provider credentials.
    """

    def __init__(self, model: Any, system_prompt: str = SYSTEM_PROMPT) -> None:
        self._model = model
        self._system_prompt = system_prompt
        self._agent: Optional[Agent] = None

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(self._model, system_prompt=self._system_prompt)
        return self._agent

    async def invoke(self, request: DecisionRequest) -> DecisionResponse:
        try:
            result = await self.agent.run(render_prompt(request))
        except Exception as e:
            raise DecisionError(f"{request.decision_type}: decision service failed: {e}") from e

        tokens = getattr(result.usage(), "total_tokens", 0) or 0
        output = result.output
        if isinstance(output, BaseModel):
            output = output.model_dump()
        return parse_decision(output, request, tokens_used=tokens)


Responder = Callable[[DecisionRequest], Union[str, Dict[str, Any]]]


class ScriptedDecisionInvoker:
    """In-process invoker that replays scripted replies.

    Replies are queued per decision type; a ``default`` responder handles
    anything unscripted. Replies go through the same validation as real
    model output, so malformed scripts fail closed too.
    """

    def __init__(self, default: Optional[Responder] = None) -> None:
        self._scripts: Dict[str, Deque[Union[str, Dict[str, Any], Responder]]] = defaultdict(deque)
        self._default = default
        self.requests: List[DecisionRequest] = []

    def script(self, decision_type: str, *replies: Union[str, Dict[str, Any], Responder]) -> None:
        self._scripts[decision_type].extend(replies)

    async def invoke(self, request: DecisionRequest) -> DecisionResponse:
        self.requests.append(request)
        queue = self._scripts.get(request.decision_type)
        if queue:
            reply = queue.popleft()
        elif self._default is not None:
            reply = self._default
        else:
            raise DecisionError(f"No scripted reply for {request.decision_type}")
        if callable(reply):
            reply = reply(request)
        return parse_decision(reply, request)


class UnconfiguredDecisionInvoker:
    """Used when no decision model is configured: every call fails closed."""

    async def invoke(self, request: DecisionRequest) -> DecisionResponse:
        raise DecisionError(f"{request.decision_type}: no decision model configured")


def build_decision_invoker(model: Optional[str]) -> "DecisionInvoker":
    if not model:
        return UnconfiguredDecisionInvoker()
    return AgentDecisionInvoker(model)


NO_DEFAULT = object()


class DecisionService:
    """Asks the invoker and keeps an audit record of every decision."""

    def __init__(
        self,
        invoker: DecisionInvoker,
        repository: WorkflowRepository,
        min_confidence: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.invoker = invoker
        self.min_confidence = min_confidence
        self._repository = repository
        self._clock = clock or SystemClock()

    async def decide(
        self,
        decision_type: str,
        prompt: str,
        options: Optional[List[Any]] = None,
        output_shape: Optional[Type[BaseModel]] = None,
        default: Any = NO_DEFAULT,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> AutonomousDecision:
        """Return a recorded decision.

        When the invoker fails and the caller supplied ``default``, a
        fallback decision with zero confidence is recorded instead;
        without a default the ``DecisionError`` propagates.
        """
        request = DecisionRequest(
            decision_type=decision_type,
            prompt=prompt,
            options=options or [],
            output_shape=output_shape,
        )
        try:
            response = await self.invoker.invoke(request)
        except DecisionError as e:
            if default is NO_DEFAULT:
                raise
            logger.warning(f"Decision {decision_type} fell back to default: {e}")
            decision = AutonomousDecision(
                run_id=run_id,
                workflow_id=workflow_id,
                decision_type=decision_type,
                prompt=prompt,
                options=request.options,
                choice=default,
                confidence=0,
                reasoning=f"fallback: {e}",
                fallback=True,
                created_at=self._clock.now(),
            )
        else:
            choice = response.choice
            if isinstance(choice, BaseModel):
                choice = choice.model_dump(mode="json")
            decision = AutonomousDecision(
                run_id=run_id,
                workflow_id=workflow_id,
                decision_type=decision_type,
                prompt=prompt,
                options=request.options,
                choice=choice,
                confidence=response.confidence,
                reasoning=response.reasoning,
                tokens_used=response.tokens_used,
                created_at=self._clock.now(),
            )
        await self._repository.save_decision(decision)
        return decision

    async def override(
        self,
        decision_id: str,
        overridden_by: str,
        reason: str,
        replacement: Any = None,
    ) -> AutonomousDecision:
        decision = await self._repository.get_decision(decision_id)
        if decision is None:
            raise DecisionError(f"Decision {decision_id} not found")
        if decision.override is not None:
            raise DecisionError(f"Decision {decision_id} was already overridden")
        decision.override = DecisionOverride(
            overridden_by=overridden_by,
            reason=reason,
            replacement=replacement,
            overridden_at=self._clock.now(),
        )
        await self._repository.save_decision(decision)
        logger.info(f"Decision {decision_id} ({decision.decision_type}) overridden by {overridden_by}")
        return decision
