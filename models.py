from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from db import Base


class Setting(Base):
    __tablename__ = "settings"
    __table_args__ = (UniqueConstraint("venueId", "key", name="uq_settings_venue_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    # "" = global default
    venueId = Column(String, nullable=False, default="", index=True)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class VenueMember(Base):
    __tablename__ = "venue_members"
    __table_args__ = (UniqueConstraint("venueId", "userId", name="uq_venue_members_venue_user"),)

    memberId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    displayName = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class PermissionOverride(Base):
    __tablename__ = "permission_overrides"
    __table_args__ = (UniqueConstraint("venueId", "userId", "permission", name="uq_permission_overrides"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    venueId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, index=True)
    permission = Column(String, nullable=False)
    granted = Column(Boolean, nullable=False, default=True)
    reason = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class _StepFields:
    """Columns shared by template blueprints and per-session step instances."""

    stepId = Column(String, primary_key=True)
    catalogId = Column(String, nullable=False, default="")
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    stepType = Column(String, nullable=False, default="task")
    category = Column(String, nullable=False, default="admin")
    required = Column(Boolean, nullable=False, default=True)
    estimatedHours = Column(Float, nullable=False, default=1.0)
    assignedTo = Column(String, nullable=False, default="")
    dependsOn = Column(JSON, nullable=False, default=list)
    dueDate = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending")
    completionCriteria = Column(JSON, nullable=False, default=list)
    documents = Column(JSON, nullable=False, default=list)
    instructions = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    orderNo = Column(Integer, nullable=False, default=0)


class OnboardingTemplate(Base):
    __tablename__ = "onboarding_templates"

    templateId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    department = Column(String, nullable=False, default="", index=True)
    position = Column(String, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    estimatedDays = Column(Integer, nullable=False, default=0)
    requiredDocuments = Column(JSON, nullable=False, default=list)
    assignees = Column(JSON, nullable=False, default=list)
    tags = Column(JSON, nullable=False, default=list)
    isDefault = Column(Boolean, nullable=False, default=False)
    useCount = Column(Integer, nullable=False, default=0)
    lastUsedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")

    steps = relationship(
        "OnboardingTemplateStep",
        order_by="OnboardingTemplateStep.orderNo",
        cascade="all, delete-orphan",
    )


class OnboardingTemplateStep(_StepFields, Base):
    __tablename__ = "onboarding_template_steps"

    templateId = Column(String, ForeignKey("onboarding_templates.templateId", ondelete="CASCADE"), nullable=True, index=True)


class Candidate(Base):
    __tablename__ = "candidates"

    candidateId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    phone = Column(Text, nullable=False, default="")
    position = Column(String, nullable=False, default="")
    department = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    stage = Column(String, nullable=False, default="application", index=True)
    applicationDate = Column(Text, nullable=False, default="")
    skills = Column(JSON, nullable=False, default=list)
    # [{"name", "status", "ref"}]; "ref" is the identifier returned by file storage.
    documents = Column(JSON, nullable=False, default=list)
    assignedManager = Column(String, nullable=False, default="")
    startDate = Column(Text, nullable=False, default="")
    employmentType = Column(String, nullable=False, default="full_time")
    rejectionReason = Column(Text, nullable=False, default="")
    backgroundCheckCompleted = Column(Boolean, nullable=False, default=False)
    backgroundCheckDate = Column(Text, nullable=False, default="")
    trainingCompleted = Column(Boolean, nullable=False, default=False)
    trainingCompletionDate = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class OnboardingSession(Base):
    __tablename__ = "onboarding_sessions"

    sessionId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, index=True)
    candidateId = Column(String, nullable=False, index=True)
    templateId = Column(String, nullable=False, default="", index=True)
    templateName = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="in_progress", index=True)
    startedAt = Column(Text, nullable=False, default="")
    completedAt = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False, default=1)
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")

    steps = relationship(
        "OnboardingSessionStep",
        order_by="OnboardingSessionStep.orderNo",
        cascade="all, delete-orphan",
    )


class OnboardingSessionStep(_StepFields, Base):
    __tablename__ = "onboarding_session_steps"

    sessionId = Column(String, ForeignKey("onboarding_sessions.sessionId", ondelete="CASCADE"), nullable=True, index=True)
    completedAt = Column(Text, nullable=False, default="")
    completedBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    resourceType = Column(String, nullable=False, default="", index=True)
    resourceId = Column(String, nullable=False, default="", index=True)
    details = Column(JSON, nullable=False, default=dict)
    timestamp = Column(Text, nullable=False, default="", index=True)
    ipAddress = Column(String, nullable=False, default="")
    userAgent = Column(Text, nullable=False, default="")


class ActivityEntry(Base):
    __tablename__ = "activity_feed"

    activityId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, default="", index=True)
    sessionId = Column(String, nullable=False, default="", index=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    kind = Column(String, nullable=False, default="info")
    message = Column(Text, nullable=False, default="")
    payload = Column(JSON, nullable=False, default=dict)
    at = Column(Text, nullable=False, default="", index=True)
    actorUserId = Column(String, nullable=False, default="")


class StaffMember(Base):
    __tablename__ = "staff_members"

    staffId = Column(String, primary_key=True)
    venueId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=False, default="")
    # Set when the row was created by completing a candidate's onboarding.
    candidateId = Column(String, nullable=False, default="", index=True)
    name = Column(Text, nullable=False, default="")
    position = Column(String, nullable=False, default="")
    department = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="active", index=True)
    trainingCompleted = Column(Boolean, nullable=False, default=False)
    hiredAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class StaffCertification(Base):
    __tablename__ = "staff_certifications"

    certId = Column(String, primary_key=True)
    staffId = Column(String, nullable=False, index=True)
    venueId = Column(String, nullable=False, index=True)
    name = Column(Text, nullable=False, default="")
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
