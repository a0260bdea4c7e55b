"""
Onboarding step status machine.

    pending -> in_progress -> completed | blocked | skipped
    pending -> blocked | skipped

`completed` is terminal. Completing a step requires every id in its
`dependsOn` to be completed or skipped. Apart from those two rules any status
may be set from any other.

Functions here only touch the step objects they are given (template or
session step rows, persistent or transient); forwarding the returned
StepEvent to the audit log / activity feed is the caller's job.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from utils import DependencyNotSatisfiedError, ValidationError, iso_utc_now


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"


class StepType(str, Enum):
    DOCUMENT = "document"
    TRAINING = "training"
    MEETING = "meeting"
    SETUP = "setup"
    REVIEW = "review"
    TASK = "task"
    APPROVAL = "approval"


class StepCategory(str, Enum):
    ADMIN = "admin"
    TRAINING = "training"
    EQUIPMENT = "equipment"
    SOCIAL = "social"
    PERFORMANCE = "performance"


# Statuses that release a dependent step.
SATISFYING_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


def _parse_enum(enum_cls, value: Any, field: str):
    raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field}: {raw or '(empty)'}", details={"field": field, "allowed": allowed})


def parse_status(value: Any) -> StepStatus:
    return _parse_enum(StepStatus, value, "status")


def parse_step_type(value: Any) -> StepType:
    return _parse_enum(StepType, value, "type")


def parse_category(value: Any) -> StepCategory:
    return _parse_enum(StepCategory, value, "category")


def status_label(status: StepStatus) -> str:
    if status is StepStatus.PENDING:
        return "pending"
    if status is StepStatus.IN_PROGRESS:
        return "in progress"
    if status is StepStatus.COMPLETED:
        return "completed"
    if status is StepStatus.BLOCKED:
        return "blocked"
    if status is StepStatus.SKIPPED:
        return "skipped"
    raise AssertionError(f"unhandled status {status!r}")


@dataclass(frozen=True)
class StepEvent:
    stepId: str
    title: str
    fromStatus: StepStatus
    toStatus: StepStatus
    at: str

    @property
    def changed(self) -> bool:
        return self.fromStatus is not self.toStatus

    def describe(self) -> str:
        return f'"{self.title}" marked as {status_label(self.toStatus)}'

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.stepId,
            "title": self.title,
            "fromStatus": self.fromStatus.value,
            "toStatus": self.toStatus.value,
            "at": self.at,
        }


def unmet_dependencies(step, all_steps: Iterable) -> list[str]:
    """Ids in step.dependsOn that are not completed/skipped (unknown ids count as unmet)."""

    by_id = {str(s.stepId): s for s in all_steps}
    unmet: list[str] = []
    for dep_id in list(step.dependsOn or []):
        dep = by_id.get(str(dep_id))
        if dep is None or parse_status(dep.status or StepStatus.PENDING) not in SATISFYING_STATUSES:
            unmet.append(str(dep_id))
    return unmet


def set_status(step, new_status: Any, all_steps: Iterable, *, at: Optional[str] = None) -> StepEvent:
    target = parse_status(new_status)
    current = parse_status(step.status or StepStatus.PENDING)

    if current is StepStatus.COMPLETED and target is not StepStatus.COMPLETED:
        raise ValidationError(
            f"Step {step.stepId} is completed and cannot move to {target.value}",
            details={"stepId": str(step.stepId), "status": current.value},
        )

    if target is StepStatus.COMPLETED and current is not StepStatus.COMPLETED:
        unmet = unmet_dependencies(step, all_steps)
        if unmet:
            raise DependencyNotSatisfiedError(str(step.stepId), unmet)

    step.status = target.value
    return StepEvent(
        stepId=str(step.stepId),
        title=str(step.title or ""),
        fromStatus=current,
        toStatus=target,
        at=at or iso_utc_now(),
    )


def find_cycle(steps: Iterable) -> Optional[list[str]]:
    """
    Return one dependency cycle as a closed path ([a, b, c, a]) or None.

    Edges point from a step to the steps it depends on; ids that are not part
    of `steps` are ignored here (they are reported separately).
    """

    graph: dict[str, list[str]] = {}
    for s in steps:
        graph[str(s.stepId)] = [str(d) for d in (s.dependsOn or [])]

    white, grey, black = 0, 1, 2
    color = {node: white for node in graph}

    for root in graph:
        if color[root] != white:
            continue
        color[root] = grey
        path = [root]
        # One iterator per node on the path, so deep chains do not recurse.
        stack = [iter(graph[root])]
        while stack:
            for nxt in stack[-1]:
                if nxt not in graph:
                    continue
                if color[nxt] == grey:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append(iter(graph[nxt]))
                    break
            else:
                stack.pop()
                color[path.pop()] = black
    return None


def unknown_dependencies(steps: Iterable) -> dict[str, list[str]]:
    steps = list(steps)
    ids = {str(s.stepId) for s in steps}
    out: dict[str, list[str]] = {}
    for s in steps:
        missing = [str(d) for d in (s.dependsOn or []) if str(d) not in ids]
        if missing:
            out[str(s.stepId)] = missing
    return out
