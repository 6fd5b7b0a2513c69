"""SQLAlchemy models for the governance database."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: _JSON,
        list[str]: _JSON,
        list[dict[str, Any]]: _JSON,
    }


# =============================================================================
# ENUMS (stored as plain strings)
# =============================================================================


class TaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    STOPPED = "stopped"
    ARCHIVED = "archived"
    SYSTEM_ALERT = "system_alert"


class EvaluationResult(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    UNCLEAR = "unclear"


class RequestType(StrEnum):
    SEND_MEMO = "send_memo"
    START_TASK = "start_task"
    CONTINUE_TASK = "continue_task"
    SUGGEST_NEXT_TASK = "suggest_next_task"
    REVIEW_OUTPUT = "review_output"


class RequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ActionType(StrEnum):
    MARK_EXTERNAL = "mark_external"
    DELEGATE_TO_HUMAN = "delegate_to_human"


class ActionStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AuthorityLevel(StrEnum):
    OBSERVER = "observer"
    ADVISOR = "advisor"
    OPERATOR = "operator"
    EXECUTIVE = "executive"
    ORCHESTRATOR = "orchestrator"


class RoleWorkflowStatus(StrEnum):
    IDLE = "idle"
    AWAITING_APPROVAL = "awaiting_approval"


class ObjectiveStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


# =============================================================================
# COMPANY-SCOPED TABLES
# =============================================================================


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class CompanyMember(Base):
    __tablename__ = "company_members"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, default="member")  # 'owner', 'member'
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (UniqueConstraint("company_id", "user_id"),)


class ApiToken(Base):
    """Bearer tokens for human callers (only the sha256 digest is stored)."""

    __tablename__ = "api_tokens"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Role(Base):
    """AI role definition: persona, mandate and authority level."""

    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mandate: Mapped[str] = mapped_column(Text, default="")
    system_prompt: Mapped[str] = mapped_column(Text, default="")
    authority_level: Mapped[str] = mapped_column(String, default=AuthorityLevel.ADVISOR.value)
    is_activated: Mapped[bool] = mapped_column(Boolean, default=False)
    workflow_status: Mapped[str] = mapped_column(String, default=RoleWorkflowStatus.IDLE.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )

    @property
    def label(self) -> str:
        return self.display_name or self.name


class CompanyContext(Base):
    """Company stage and grounding gate."""

    __tablename__ = "company_context"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE"), unique=True
    )
    stage: Mapped[str] = mapped_column(String, default="early")
    is_grounded: Mapped[bool] = mapped_column(Boolean, default=False)


class CompanyGrounding(Base):
    """Confirmed foundational facts about a company."""

    __tablename__ = "company_grounding"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    status: Mapped[str] = mapped_column(String, default="draft")  # 'draft', 'confirmed'
    products: Mapped[list[dict[str, Any]]] = mapped_column(_JSON, default=list)
    entities: Mapped[list[dict[str, Any]]] = mapped_column(_JSON, default=list)
    intended_customer: Mapped[str | None] = mapped_column(Text, nullable=True)
    constraints: Mapped[list[dict[str, Any]]] = mapped_column(_JSON, default=list)
    not_yet_exists: Mapped[list[dict[str, Any]]] = mapped_column(_JSON, default=list)
    aspirations: Mapped[list[dict[str, Any]]] = mapped_column(_JSON, default=list)
    current_state_summary: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    technical_context: Mapped[dict[str, Any] | None] = mapped_column(_JSON, nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CompanyMemory(Base):
    """Shared organizational knowledge pinned by users."""

    __tablename__ = "company_memory"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


# =============================================================================
# TASK-SCOPED TABLES
# =============================================================================


class Task(Base):
    """Work item assigned to a role, with a bounded retry budget."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    role_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("roles.id", ondelete="CASCADE")
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    completion_criteria: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String, default=TaskStatus.PENDING.value)
    current_attempt: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    completion_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    requires_verification: Mapped[bool] = mapped_column(Boolean, default=False)
    depends_on: Mapped[list[str]] = mapped_column(_JSON, default=list)
    dependency_status: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_tasks_role_status", "role_id", "status"),
        Index("idx_tasks_company", "company_id"),
    )


class TaskAttempt(Base):
    """Append-only log of execution attempts."""

    __tablename__ = "task_attempts"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id", ondelete="CASCADE")
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    model_output: Mapped[str] = mapped_column(Text, default="")
    evaluation_result: Mapped[str] = mapped_column(String, nullable=False)
    evaluation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (UniqueConstraint("task_id", "attempt_number"),)


class DeadLetterEntry(Base):
    """Task that exhausted its retry budget, awaiting human disposition."""

    __tablename__ = "dead_letter_queue"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id", ondelete="CASCADE")
    )
    role_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("roles.id"))
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    failure_reason: Mapped[str] = mapped_column(Text, nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False)
    last_output: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class WorkflowRequest(Base):
    """AI-proposed action held until a human (or policy) approves or denies it."""

    __tablename__ = "workflow_requests"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    requesting_role_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("roles.id"))
    target_role_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("roles.id"), nullable=True
    )
    request_type: Mapped[str] = mapped_column(String, nullable=False)
    summary: Mapped[str] = mapped_column(Text, default="")
    proposed_content: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String, default=RequestStatus.PENDING.value)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_task_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_workflow_requests_status", "company_id", "status"),)


class OutputAction(Base):
    """Handoff of completed work to execution outside this system."""

    __tablename__ = "output_actions"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    task_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("tasks.id", ondelete="CASCADE")
    )
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    action_type: Mapped[str] = mapped_column(String, nullable=False)
    action_data: Mapped[dict[str, Any]] = mapped_column(_JSON, default=dict)
    status: Mapped[str] = mapped_column(String, default=ActionStatus.PENDING.value)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String, nullable=True)


class RoleObjective(Base):
    __tablename__ = "role_objectives"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    role_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("roles.id", ondelete="CASCADE")
    )
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String, default=ObjectiveStatus.ACTIVE.value)
    priority: Mapped[int] = mapped_column(Integer, default=1)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class RoleMemo(Base):
    """Inter-role communication created by an approved send_memo request."""

    __tablename__ = "role_memos"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    from_role_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("roles.id"))
    to_role_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("roles.id"))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    workflow_request_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("workflow_requests.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class RoleMessage(Base):
    """A role's activity stream: chat, memos and audit entries."""

    __tablename__ = "role_messages"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    role_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("roles.id", ondelete="CASCADE")
    )
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    sender: Mapped[str] = mapped_column(String, nullable=False)  # 'ai', 'user', 'system'
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )

    __table_args__ = (Index("idx_role_messages_role", "role_id", "created_at"),)


class CompanyWebhook(Base):
    __tablename__ = "company_webhooks"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    url: Mapped[str] = mapped_column(String, nullable=False)
    secret: Mapped[str | None] = mapped_column(String, nullable=True)
    headers: Mapped[dict[str, Any]] = mapped_column(_JSON, default=dict)
    event_types: Mapped[list[str]] = mapped_column(_JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    webhook_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("company_webhooks.id", ondelete="CASCADE")
    )
    output_action_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("output_actions.id"), nullable=True
    )
    company_id: Mapped[str] = mapped_column(Uuid(as_uuid=False), ForeignKey("companies.id"))
    payload: Mapped[dict[str, Any]] = mapped_column(_JSON, default=dict)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )


class Notification(Base):
    """In-app notification addressed to a human user."""

    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(Uuid(as_uuid=False), primary_key=True, default=_new_id)
    company_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("companies.id", ondelete="CASCADE")
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now()
    )
