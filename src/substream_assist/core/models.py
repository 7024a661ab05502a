"""SQLAlchemy ORM models for Substream Assist.

All tables use the `assist_` prefix. Owner-scoped tables extend OwnedModel,
which supplies id (UUID), owner_id, and created_at columns.

Domain model:
  Subscription     : the user's tracked subscription (category is the only column written here)
  AssistPermission : per-owner "AI assistance enabled" flag
  Proposal         : time-boxed backend suggestion awaiting user action
  Patch            : applied RECATEGORIZE mutation plus its exact inverse
  ActionLogEntry   : one row per explain/propose/apply/rollback call
  AuditEntry       : append-only dotted-name audit trail
"""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from substream_assist.database import Base, OwnedModel


class BillingInterval(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class ProposalType(str, enum.Enum):
    RECATEGORIZE = "RECATEGORIZE"
    SAVINGS_LIST = "SAVINGS_LIST"


class ProposalStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    DISMISSED = "DISMISSED"
    EXPIRED = "EXPIRED"
    APPLIED = "APPLIED"
    ROLLED_BACK = "ROLLED_BACK"


class PatchType(str, enum.Enum):
    RECATEGORIZE = "RECATEGORIZE"


class PatchStatus(str, enum.Enum):
    APPLIED = "APPLIED"
    ROLLED_BACK = "ROLLED_BACK"


class ActionType(str, enum.Enum):
    EXPLAIN = "EXPLAIN"
    PROPOSE = "PROPOSE"
    APPLY = "APPLY"
    ROLLBACK = "ROLLBACK"


class ExplainTopic(str, enum.Enum):
    DUPLICATE = "duplicate"
    YEARLY_VS_MONTHLY = "yearly_vs_monthly"
    CATEGORY_RATIONALE = "category_rationale"


def _enum_column(enum_cls: type[enum.Enum], length: int = 32) -> Enum:
    return Enum(enum_cls, native_enum=False, length=length, validate_strings=True)


class Subscription(OwnedModel):
    """A subscription tracked by the owner.

    Owned by the subscription CRUD surface; this service reads it to build
    redacted summaries and writes only `category` during apply/rollback.

    Table: assist_subscriptions
    """

    __tablename__ = "assist_subscriptions"
    __table_args__ = (CheckConstraint("amount >= 0", name="ck_assist_subscriptions_amount_non_negative"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    billing_interval: Mapped[BillingInterval] = mapped_column(
        _enum_column(BillingInterval),
        nullable=False,
        default=BillingInterval.MONTHLY,
    )
    next_billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AssistPermission(Base):
    """Per-owner capability flag gating explain/propose/apply/rollback.

    Table: assist_permissions
    """

    __tablename__ = "assist_permissions"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ai_assist_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Proposal(OwnedModel):
    """A stored backend suggestion with lifecycle status and expiry.

    payload shapes:
      RECATEGORIZE: {"recommendations": [{subscriptionId, fromCategory, toCategory, rationale?, confidence?}]}
      SAVINGS_LIST: {"suggestions": [{subscriptionId, suggestion, estimatedSavings?, rationale?, confidence?}]}

    Table: assist_proposals
    """

    __tablename__ = "assist_proposals"
    __table_args__ = (Index("ix_assist_proposals_owner_status", "owner_id", "status"),)

    type: Mapped[ProposalType] = mapped_column(_enum_column(ProposalType), nullable=False)
    status: Mapped[ProposalStatus] = mapped_column(
        _enum_column(ProposalStatus),
        nullable=False,
        default=ProposalStatus.ACTIVE,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str] = mapped_column(String(300), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    applied_patch_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)


class Patch(OwnedModel):
    """An applied mutation and its precomputed inverse.

    forward_patch and rollback_patch are lists of
    {subscriptionId, fromCategory, toCategory}; rollback_patch[i] mirrors
    forward_patch[i] with the categories swapped.

    Table: assist_patches
    """

    __tablename__ = "assist_patches"

    proposal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("assist_proposals.id"),
        nullable=False,
        index=True,
    )
    type: Mapped[PatchType] = mapped_column(_enum_column(PatchType), nullable=False)
    status: Mapped[PatchStatus] = mapped_column(
        _enum_column(PatchStatus),
        nullable=False,
        default=PatchStatus.APPLIED,
    )
    forward_patch: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    rollback_patch: Mapped[list[dict[str, Any]]] = mapped_column(JSONB, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ActionLogEntry(OwnedModel):
    """One row per explain/propose/apply/rollback call. Never updated.

    Table: assist_action_logs
    """

    __tablename__ = "assist_action_logs"
    __table_args__ = (Index("ix_assist_action_logs_owner_created", "owner_id", "created_at"),)

    action_type: Mapped[ActionType] = mapped_column(_enum_column(ActionType), nullable=False)
    topic: Mapped[str | None] = mapped_column(String(64), nullable=True)
    input_redacted: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    output_summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)


class AuditEntry(OwnedModel):
    """Append-only audit row with a dotted action name.

    Table: assist_audit_logs
    """

    __tablename__ = "assist_audit_logs"
    __table_args__ = (Index("ix_assist_audit_logs_owner_created", "owner_id", "created_at"),)

    action: Mapped[str] = mapped_column(String(128), nullable=False)
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONB, nullable=False, default=dict)
