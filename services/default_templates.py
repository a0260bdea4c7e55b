from __future__ import annotations

from typing import Any

from models import OnboardingTemplate, OnboardingTemplateStep
from services.template_builder import new_step_id


# Steps reference each other by "key"; keys are swapped for real step ids on install.
DEFAULT_TEMPLATES: tuple[dict[str, Any], ...] = (
    {
        "name": "Sound Engineer Complete",
        "department": "Technical",
        "position": "Sound Engineer",
        "description": "Comprehensive onboarding for technical sound engineering roles",
        "estimatedDays": 14,
        "requiredDocuments": ["Resume", "Portfolio", "Certifications", "Background Check"],
        "assignees": ["Alex Chen", "Senior Engineer", "HR Manager"],
        "tags": ["technical", "audio", "equipment"],
        "isDefault": True,
        "steps": [
            {
                "key": "welcome",
                "catalogId": "welcome",
                "title": "Welcome & Orientation",
                "description": "Introduction to venue, team, and company culture",
                "stepType": "meeting",
                "category": "social",
                "estimatedHours": 3,
                "assignedTo": "Alex Chen",
                "instructions": "Conduct venue tour, introduce team members, explain company values and expectations",
                "completionCriteria": ["Venue tour completed", "Team introductions made", "Employee handbook reviewed"],
            },
            {
                "key": "equipment",
                "catalogId": "equipment",
                "title": "Equipment Familiarization",
                "description": "Learn venue's audio equipment and systems",
                "stepType": "training",
                "category": "equipment",
                "estimatedHours": 16,
                "assignedTo": "Senior Engineer",
                "dependsOn": ["welcome"],
                "documents": ["Equipment Manual", "Safety Guidelines"],
                "instructions": "Hands-on training with all audio equipment, mixing boards, and software systems",
                "completionCriteria": ["Can operate mixing board", "Understands signal flow", "Knows emergency procedures"],
            },
            {
                "key": "safety",
                "catalogId": "safety",
                "title": "Safety Training",
                "description": "Complete venue safety protocols and certifications",
                "stepType": "training",
                "category": "admin",
                "estimatedHours": 4,
                "assignedTo": "Safety Manager",
                "documents": ["Safety Manual", "Emergency Procedures"],
                "completionCriteria": ["Safety quiz passed", "Emergency procedures understood", "PPE training completed"],
            },
            {
                "key": "systems",
                "catalogId": "systems",
                "title": "System Access Setup",
                "description": "Configure user accounts and system permissions",
                "stepType": "setup",
                "category": "admin",
                "estimatedHours": 2,
                "assignedTo": "IT Department",
                "instructions": "Set up email, software licenses, access cards, and system permissions",
                "completionCriteria": ["Email account active", "Software access granted", "Security badge issued"],
            },
            {
                "key": "shadow",
                "catalogId": "shadow",
                "title": "First Event Shadow",
                "description": "Shadow experienced engineer during live event",
                "stepType": "training",
                "category": "performance",
                "estimatedHours": 8,
                "assignedTo": "Senior Engineer",
                "dependsOn": ["equipment", "safety"],
                "instructions": "Observe and assist during actual event, take notes, ask questions",
                "completionCriteria": ["Event shadowing completed", "Performance notes submitted", "Feedback received"],
            },
            {
                "key": "review",
                "catalogId": "review",
                "title": "30-Day Review",
                "description": "Performance review and feedback session",
                "stepType": "review",
                "category": "performance",
                "estimatedHours": 2,
                "assignedTo": "Alex Chen",
                "dependsOn": ["shadow"],
                "dueDate": "Day 30",
                "instructions": "Conduct comprehensive review of performance, address any concerns, set goals",
                "completionCriteria": ["Review meeting completed", "Performance goals set", "Development plan created"],
            },
        ],
    },
    {
        "name": "Security Staff Basic",
        "department": "Security",
        "position": "Security Guard",
        "description": "Essential onboarding for security personnel",
        "estimatedDays": 7,
        "requiredDocuments": ["Security License", "Background Check", "First Aid Cert"],
        "assignees": ["Security Chief", "Training Coordinator"],
        "tags": ["security", "safety", "crowd-control"],
        "isDefault": False,
        "steps": [
            {
                "key": "protocols",
                "title": "Security Protocols Training",
                "description": "Learn venue security procedures and protocols",
                "stepType": "training",
                "category": "training",
                "estimatedHours": 8,
                "assignedTo": "Security Chief",
            },
            {
                "key": "comms",
                "title": "Communication Systems",
                "description": "Radio and communication equipment training",
                "stepType": "training",
                "category": "equipment",
                "estimatedHours": 2,
                "assignedTo": "Security Chief",
            },
        ],
    },
)


def build_default_template(spec: dict[str, Any], venue_id: str) -> OnboardingTemplate:
    """Unsaved template (no templateId) for `venue_id`; pass it to save_template."""

    ids = {st["key"]: new_step_id() for st in spec["steps"]}
    steps = []
    for i, st in enumerate(spec["steps"]):
        steps.append(
            OnboardingTemplateStep(
                stepId=ids[st["key"]],
                catalogId=st.get("catalogId", ""),
                title=st["title"],
                description=st.get("description", ""),
                stepType=st["stepType"],
                category=st["category"],
                required=bool(st.get("required", True)),
                estimatedHours=float(st["estimatedHours"]),
                assignedTo=st.get("assignedTo", ""),
                dependsOn=[ids[k] for k in st.get("dependsOn", [])],
                dueDate=st.get("dueDate", ""),
                status="pending",
                completionCriteria=list(st.get("completionCriteria", [])),
                documents=list(st.get("documents", [])),
                instructions=st.get("instructions", ""),
                notes="",
                orderNo=i,
            )
        )

    tpl = OnboardingTemplate(
        templateId="",
        venueId=venue_id,
        name=spec["name"],
        department=spec["department"],
        position=spec["position"],
        description=spec["description"],
        estimatedDays=int(spec["estimatedDays"]),
        requiredDocuments=list(spec["requiredDocuments"]),
        assignees=list(spec["assignees"]),
        tags=list(spec["tags"]),
        isDefault=bool(spec["isDefault"]),
        useCount=0,
        lastUsedAt="",
    )
    tpl.steps = steps
    return tpl
