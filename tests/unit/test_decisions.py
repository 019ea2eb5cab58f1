"""Decision boundary tests: strict parsing, fallbacks and overrides."""

import pytest
from pydantic import BaseModel
from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import FunctionModel

from opsflow.decisions import (
    AgentDecisionInvoker,
    DecisionRequest,
    DecisionService,
    ScriptedDecisionInvoker,
    UnconfiguredDecisionInvoker,
    parse_decision,
)
from opsflow.errors import DecisionError
from opsflow.persistence import InMemoryWorkflowRepository


class VendorPick(BaseModel):
    vendor_id: int
    quantity: float


def test_parse_accepts_valid_option():
    request = DecisionRequest(decision_type="select_vendor", prompt="pick", options=["a", "b"])
    response = parse_decision('{"choice": "b", "reasoning": "cheaper", "confidence": 82}', request)
    assert response.choice == "b"
    assert response.confidence == 82


@pytest.mark.parametrize(
    "raw",
    [
        "definitely vendor a",
        '["a"]',
        '{"choice": "c", "confidence": 90}',
        '{"choice": "a", "confidence": 140}',
        '{"reasoning": "no choice"}',
    ],
)
def test_parse_fails_closed(raw):
    request = DecisionRequest(decision_type="select_vendor", prompt="pick", options=["a", "b"])
    with pytest.raises(DecisionError):
        parse_decision(raw, request)


def test_parse_validates_output_shape():
    request = DecisionRequest(decision_type="reorder", prompt="how much", output_shape=VendorPick)
    response = parse_decision({"choice": {"vendor_id": 7, "quantity": 12}, "confidence": 70}, request)
    assert response.choice == VendorPick(vendor_id=7, quantity=12)

    with pytest.raises(DecisionError):
        parse_decision({"choice": {"vendor_id": "seven"}, "confidence": 70}, request)


@pytest.mark.asyncio
async def test_service_records_decisions():
    repo = InMemoryWorkflowRepository()
    invoker = ScriptedDecisionInvoker()
    invoker.script("select_vendor", {"choice": "a", "reasoning": "lead time", "confidence": 91})
    service = DecisionService(invoker, repo)

    decision = await service.decide("select_vendor", "pick", options=["a", "b"], run_id="r1")

    assert decision.choice == "a"
    assert not decision.fallback
    assert [d.id for d in await repo.list_decisions(run_id="r1")] == [decision.id]


@pytest.mark.asyncio
async def test_service_falls_back_to_default():
    service = DecisionService(UnconfiguredDecisionInvoker(), InMemoryWorkflowRepository())

    decision = await service.decide("select_vendor", "pick", options=["a", "b"], default="a")

    assert decision.fallback
    assert decision.choice == "a"
    assert decision.confidence == 0


@pytest.mark.asyncio
async def test_service_without_default_propagates():
    invoker = ScriptedDecisionInvoker()
    invoker.script("select_vendor", "not json")
    service = DecisionService(invoker, InMemoryWorkflowRepository())

    with pytest.raises(DecisionError):
        await service.decide("select_vendor", "pick", options=["a", "b"])


@pytest.mark.asyncio
async def test_override_is_recorded_once():
    repo = InMemoryWorkflowRepository()
    service = DecisionService(ScriptedDecisionInvoker(default=lambda r: {"choice": "a", "confidence": 75}), repo)
    decision = await service.decide("select_vendor", "pick", options=["a", "b"])

    overridden = await service.override(decision.id, "maria", "vendor on hold", replacement="b")

    assert overridden.override.replacement == "b"
    assert overridden.choice == "a"
    with pytest.raises(DecisionError):
        await service.override(decision.id, "maria", "again")


@pytest.mark.asyncio
async def test_agent_invoker_parses_model_output():
    def reply(messages, info):
        return ModelResponse(parts=[TextPart('{"choice": "b", "reasoning": "fast", "confidence": 66}')])

    invoker = AgentDecisionInvoker(FunctionModel(reply))
    request = DecisionRequest(decision_type="select_vendor", prompt="pick", options=["a", "b"])

    response = await invoker.invoke(request)

    assert response.choice == "b"
    assert response.confidence == 66
