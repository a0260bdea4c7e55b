from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

from services.step_machine import StepCategory, StepType


@dataclass(frozen=True)
class StepTemplate:
    """Reusable blueprint for one onboarding step; copied by value into templates."""

    id: str
    title: str
    type: StepType
    category: StepCategory
    estimatedHours: float
    description: str

    def to_dict(self) -> dict:
        out = asdict(self)
        out["type"] = self.type.value
        out["category"] = self.category.value
        return out


_CATALOG: tuple[StepTemplate, ...] = (
    StepTemplate("welcome", "Welcome & Orientation", StepType.MEETING, StepCategory.SOCIAL, 3, "Introduction to venue and team"),
    StepTemplate("equipment", "Equipment Training", StepType.TRAINING, StepCategory.EQUIPMENT, 8, "Hands-on equipment familiarization"),
    StepTemplate("safety", "Safety Training", StepType.TRAINING, StepCategory.ADMIN, 4, "Safety protocols and procedures"),
    StepTemplate("systems", "System Access Setup", StepType.SETUP, StepCategory.ADMIN, 2, "User accounts and system access"),
    StepTemplate("shadow", "Job Shadow Experience", StepType.TRAINING, StepCategory.PERFORMANCE, 8, "Shadow experienced team member"),
    StepTemplate("review", "Performance Review", StepType.REVIEW, StepCategory.PERFORMANCE, 2, "Formal performance evaluation"),
    StepTemplate("documentation", "Document Submission", StepType.DOCUMENT, StepCategory.ADMIN, 1, "Submit required paperwork"),
)

_BY_ID = {st.id: st for st in _CATALOG}


def list_available() -> list[StepTemplate]:
    return list(_CATALOG)


def get_step_template(step_template_id: str) -> Optional[StepTemplate]:
    return _BY_ID.get(str(step_template_id or "").strip())
