"""Per-phase, per-role outcome record of a task."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_relay.orchestrator.models import TaskView
from agent_relay.orchestrator.workflow import Workflow


class SlotState(str, Enum):
    NOT_RUN = "not_run"
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class SlotReport:
    key: str
    role: str
    state: SlotState
    attempt: int | None = None
    error_kind: str | None = None
    error: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PhaseReport:
    name: str
    mode: str
    skipped: bool
    slots: list[SlotReport] = field(default_factory=list)


@dataclass(slots=True)
class TaskReport:
    task_id: str
    subject: str
    status: str
    current_phase: str | None
    error_summary: str | None
    phases: list[PhaseReport] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "subject": self.subject,
            "status": self.status,
            "current_phase": self.current_phase,
            "error_summary": self.error_summary,
            "phases": [
                {
                    "name": phase.name,
                    "mode": phase.mode,
                    "skipped": phase.skipped,
                    "slots": [
                        {
                            "key": slot.key,
                            "role": slot.role,
                            "state": slot.state.value,
                            "attempt": slot.attempt,
                            "error_kind": slot.error_kind,
                            "error": slot.error,
                            "payload": slot.payload,
                        }
                        for slot in phase.slots
                    ],
                }
                for phase in self.phases
            ],
        }


def build_task_report(task: TaskView, workflow: Workflow) -> TaskReport:
    """Collect the recorded outcome of every slot in workflow order."""

    skipped = set(task.skip_phases)
    report = TaskReport(
        task_id=task.task_id,
        subject=task.subject,
        status=task.status.value,
        current_phase=task.current_phase,
        error_summary=task.error_summary,
    )
    for phase in workflow.phases:
        phase_report = PhaseReport(
            name=phase.name,
            mode=phase.mode.value,
            skipped=phase.name in skipped,
        )
        for slot in phase.slots():
            result = task.result_for(phase.name, slot.key)
            mark = task.dispatch_for(phase.name, slot.key)
            if result is not None:
                phase_report.slots.append(
                    SlotReport(
                        key=slot.key,
                        role=slot.role,
                        state=SlotState.SUCCESS if result.succeeded else SlotState.ERROR,
                        attempt=result.attempt,
                        error_kind=result.error_kind.value if result.error_kind else None,
                        error=result.error,
                        payload=dict(result.payload),
                    ),
                )
            elif mark is not None:
                phase_report.slots.append(
                    SlotReport(
                        key=slot.key,
                        role=slot.role,
                        state=SlotState.PENDING,
                        attempt=mark.attempt,
                    ),
                )
            else:
                phase_report.slots.append(
                    SlotReport(key=slot.key, role=slot.role, state=SlotState.NOT_RUN),
                )
        report.phases.append(phase_report)
    return report


def render_report_lines(report: TaskReport) -> list[str]:
    lines = [
        f"task_id={report.task_id}",
        f"subject={report.subject}",
        f"status={report.status}",
        f"current_phase={report.current_phase or '-'}",
    ]
    if report.error_summary:
        lines.append(f"error_summary={report.error_summary}")
    for phase in report.phases:
        if phase.skipped:
            lines.append(f"phase {phase.name} ({phase.mode}): skipped")
            continue
        lines.append(f"phase {phase.name} ({phase.mode}):")
        for slot in phase.slots:
            line = f"  {slot.key}: {slot.state.value}"
            if slot.attempt is not None:
                line += f" attempt={slot.attempt}"
            if slot.state == SlotState.ERROR:
                line += f" kind={slot.error_kind or 'other'} error={slot.error or '-'}"
            elif slot.state == SlotState.SUCCESS and "summary" in slot.payload:
                line += f" summary={slot.payload['summary']}"
            lines.append(line)
    return lines
