"""Static phase table: which roles run in which phase, and in what order."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from agent_relay.orchestrator.errors import WorkflowConfigError
from agent_relay.orchestrator.models import PhaseMode, TaskView


class PhaseName(str, Enum):
    ANALYSIS = "analysis"
    RESEARCH = "research"
    TRADING = "trading"
    RISK = "risk"
    PORTFOLIO = "portfolio"


class Role(str, Enum):
    MACRO = "macro"
    MARKET = "market"
    NEWS = "news"
    SOCIAL_MEDIA = "social_media"
    FUNDAMENTALS = "fundamentals"
    BULL = "bull"
    BEAR = "bear"
    RESEARCH_MANAGER = "research_manager"
    TRADER = "trader"
    RISKY = "risky"
    SAFE = "safe"
    NEUTRAL = "neutral"
    RISK_MANAGER = "risk_manager"
    PORTFOLIO_MANAGER = "portfolio_manager"


@dataclass(frozen=True, slots=True)
class Slot:
    """One schedulable worker position inside a phase.

    ``round`` is 0 outside debate rounds. ``key`` is how the slot's result is
    stored under the phase in ``phase_results``.
    """

    phase: str
    role: str
    round: int
    key: str


@dataclass(frozen=True, slots=True)
class Phase:
    """Static phase definition."""

    name: str
    mode: PhaseMode
    roles: tuple[str, ...]
    max_rounds: int | None = None
    optional: bool = False
    hard_required: bool = False

    def waves(self) -> list[tuple[Slot, ...]]:
        """Slots grouped into waves; a wave starts only after the previous one is terminal.

        Sequential phases put every slot in its own wave, parallel phases put a
        whole round in one wave. With ``max_rounds`` set, all roles but the last
        repeat once per round and the last role synthesizes in a final wave.
        """

        if self.max_rounds is None:
            slots = tuple(Slot(self.name, role, 0, role) for role in self.roles)
            return self._group(slots)

        *debaters, synthesizer = self.roles
        keyed_by_round = self.max_rounds > 1
        waves: list[tuple[Slot, ...]] = []
        for round_no in range(1, self.max_rounds + 1):
            round_slots = tuple(
                Slot(
                    self.name,
                    role,
                    round_no,
                    f"{role}#{round_no}" if keyed_by_round else role,
                )
                for role in debaters
            )
            waves.extend(self._group(round_slots))
        waves.append((Slot(self.name, synthesizer, 0, synthesizer),))
        return waves

    def slots(self) -> list[Slot]:
        return [slot for wave in self.waves() for slot in wave]

    def slot(self, key: str) -> Slot | None:
        for candidate in self.slots():
            if candidate.key == key:
                return candidate
        return None

    def _group(self, slots: tuple[Slot, ...]) -> list[tuple[Slot, ...]]:
        if self.mode == PhaseMode.PARALLEL:
            return [slots]
        return [(slot,) for slot in slots]


@dataclass(slots=True)
class PhaseProgress:
    """Where a task stands inside one phase, derived from persisted state only."""

    complete: bool
    wave: tuple[Slot, ...] = ()
    errored: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Workflow:
    """Ordered list of phases a task is driven through."""

    phases: tuple[Phase, ...]

    def __post_init__(self) -> None:
        if not self.phases:
            raise WorkflowConfigError("Workflow needs at least one phase.")
        names = [phase.name for phase in self.phases]
        if len(set(names)) != len(names):
            raise WorkflowConfigError(f"Duplicate phase names: {names}")
        for phase in self.phases:
            if not phase.roles:
                raise WorkflowConfigError(f"Phase {phase.name} has no roles.")
            if len(set(phase.roles)) != len(phase.roles):
                raise WorkflowConfigError(f"Phase {phase.name} repeats a role.")
            if phase.max_rounds is not None:
                if phase.max_rounds < 1:
                    raise WorkflowConfigError(f"Phase {phase.name} max_rounds must be >= 1.")
                if len(phase.roles) < 2:
                    raise WorkflowConfigError(
                        f"Phase {phase.name} with rounds needs debaters and a synthesizer.",
                    )

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise WorkflowConfigError(f"Unknown phase: {name}")

    def validate_skips(self, skip_phases: Iterable[str]) -> tuple[str, ...]:
        """Return normalized skip list; only optional phases may be skipped."""

        normalized: list[str] = []
        for name in skip_phases:
            phase = self.phase(name)
            if not phase.optional:
                raise WorkflowConfigError(f"Phase {name} is required and cannot be skipped.")
            if name not in normalized:
                normalized.append(name)
        return tuple(normalized)

    def first_phase(self, skip_phases: Iterable[str] = ()) -> Phase:
        skipped = set(skip_phases)
        for phase in self.phases:
            if phase.name not in skipped:
                return phase
        raise WorkflowConfigError("Every phase is skipped.")

    def next_phase(self, name: str, skip_phases: Iterable[str] = ()) -> Phase | None:
        skipped = set(skip_phases)
        names = [phase.name for phase in self.phases]
        for phase in self.phases[names.index(name) + 1 :]:
            if phase.name not in skipped:
                return phase
        return None

    def progress(self, task: TaskView, phase: Phase) -> PhaseProgress:
        """First wave that still has slots without a terminal result."""

        errored: list[str] = []
        for wave in phase.waves():
            pending = False
            for slot in wave:
                result = task.result_for(phase.name, slot.key)
                if result is None:
                    pending = True
                elif not result.succeeded:
                    errored.append(slot.key)
            if pending:
                return PhaseProgress(complete=False, wave=wave, errored=errored)
        return PhaseProgress(complete=True, errored=errored)


def default_workflow(
    *,
    debate_rounds: int = 2,
    hard_required: Iterable[str] = (),
) -> Workflow:
    """Built-in Phase x Role table for one analyzed subject."""

    hard = {str(name) for name in hard_required}
    table = (
        Phase(
            name=PhaseName.ANALYSIS.value,
            mode=PhaseMode.PARALLEL,
            roles=(
                Role.MACRO.value,
                Role.MARKET.value,
                Role.NEWS.value,
                Role.SOCIAL_MEDIA.value,
                Role.FUNDAMENTALS.value,
            ),
        ),
        Phase(
            name=PhaseName.RESEARCH.value,
            mode=PhaseMode.SEQUENTIAL,
            roles=(Role.BULL.value, Role.BEAR.value, Role.RESEARCH_MANAGER.value),
            max_rounds=debate_rounds,
        ),
        Phase(
            name=PhaseName.TRADING.value,
            mode=PhaseMode.SEQUENTIAL,
            roles=(Role.TRADER.value,),
            optional=True,
        ),
        Phase(
            name=PhaseName.RISK.value,
            mode=PhaseMode.PARALLEL,
            roles=(
                Role.RISKY.value,
                Role.SAFE.value,
                Role.NEUTRAL.value,
                Role.RISK_MANAGER.value,
            ),
            max_rounds=1,
        ),
        Phase(
            name=PhaseName.PORTFOLIO.value,
            mode=PhaseMode.SEQUENTIAL,
            roles=(Role.PORTFOLIO_MANAGER.value,),
        ),
    )
    unknown = hard - {phase.name for phase in table}
    if unknown:
        raise WorkflowConfigError(f"Unknown hard-required phases: {sorted(unknown)}")
    return Workflow(
        phases=tuple(
            Phase(
                name=phase.name,
                mode=phase.mode,
                roles=phase.roles,
                max_rounds=phase.max_rounds,
                optional=phase.optional,
                hard_required=phase.name in hard,
            )
            for phase in table
        ),
    )
