from __future__ import annotations

import allure
import pytest

from agent_relay.orchestrator.errors import WorkflowConfigError
from agent_relay.orchestrator.models import PhaseMode
from agent_relay.orchestrator.workflow import Phase, Workflow, default_workflow

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Workflow Table"),
]


def _keys(waves) -> list[tuple[str, ...]]:
    return [tuple(slot.key for slot in wave) for wave in waves]


def test_default_workflow_phase_order() -> None:
    workflow = default_workflow()

    assert [phase.name for phase in workflow.phases] == [
        "analysis",
        "research",
        "trading",
        "risk",
        "portfolio",
    ]
    assert [phase.name for phase in workflow.phases if phase.optional] == ["trading"]
    assert not any(phase.hard_required for phase in workflow.phases)


def test_parallel_phase_is_one_wave() -> None:
    analysis = default_workflow().phase("analysis")

    assert _keys(analysis.waves()) == [
        ("macro", "market", "news", "social_media", "fundamentals"),
    ]


def test_sequential_debate_repeats_rounds_then_synthesizes() -> None:
    research = default_workflow(debate_rounds=2).phase("research")

    assert _keys(research.waves()) == [
        ("bull#1",),
        ("bear#1",),
        ("bull#2",),
        ("bear#2",),
        ("research_manager",),
    ]
    assert [slot.round for slot in research.slots()] == [1, 1, 2, 2, 0]


def test_single_round_keeps_bare_role_keys() -> None:
    risk = default_workflow().phase("risk")

    assert _keys(risk.waves()) == [("risky", "safe", "neutral"), ("risk_manager",)]
    assert risk.slot("risky") is not None
    assert risk.slot("risky#1") is None


def test_validate_skips_normalizes_and_rejects_required() -> None:
    workflow = default_workflow()

    assert workflow.validate_skips(["trading", "trading"]) == ("trading",)
    with pytest.raises(WorkflowConfigError, match="required"):
        workflow.validate_skips(["analysis"])
    with pytest.raises(WorkflowConfigError, match="Unknown phase"):
        workflow.validate_skips(["lunch"])


def test_next_phase_honours_skips() -> None:
    workflow = default_workflow()

    assert workflow.first_phase().name == "analysis"
    nxt = workflow.next_phase("research", ["trading"])
    assert nxt is not None
    assert nxt.name == "risk"
    assert workflow.next_phase("portfolio") is None


def test_hard_required_phases_are_flagged() -> None:
    workflow = default_workflow(hard_required=["analysis"])

    assert workflow.phase("analysis").hard_required is True
    assert workflow.phase("research").hard_required is False
    with pytest.raises(WorkflowConfigError, match="Unknown hard-required"):
        default_workflow(hard_required=["lunch"])


def test_invalid_tables_are_rejected() -> None:
    with pytest.raises(WorkflowConfigError, match="at least one phase"):
        Workflow(phases=())
    with pytest.raises(WorkflowConfigError, match="Duplicate"):
        Workflow(
            phases=(
                Phase(name="a", mode=PhaseMode.SEQUENTIAL, roles=("x",)),
                Phase(name="a", mode=PhaseMode.SEQUENTIAL, roles=("y",)),
            ),
        )
    with pytest.raises(WorkflowConfigError, match="synthesizer"):
        Workflow(
            phases=(Phase(name="a", mode=PhaseMode.SEQUENTIAL, roles=("x",), max_rounds=2),),
        )
    with pytest.raises(WorkflowConfigError, match="max_rounds"):
        default_workflow(debate_rounds=0)
