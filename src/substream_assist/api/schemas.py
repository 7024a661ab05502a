"""Pydantic request and response schemas for the Substream Assist API.

All API inputs and outputs are typed Pydantic models, never raw dicts.
Stored JSON payloads (proposal payloads, patches, log metadata) are
returned as stored, with their camelCase keys.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from substream_assist.core.domain import ExplainResult
from substream_assist.core.models import (
    ActionType,
    ExplainTopic,
    PatchStatus,
    PatchType,
    ProposalStatus,
    ProposalType,
)


# ---------------------------------------------------------------------------
# Shared schemas
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Body returned for every AssistError."""

    message: str
    reason: str
    details: dict[str, Any] | None = None


class AssistStatusResponse(BaseModel):
    enabled: bool
    provider: str


class PermissionResponse(BaseModel):
    ai_assist_enabled: bool


class PermissionUpdateRequest(BaseModel):
    ai_assist_enabled: bool


# ---------------------------------------------------------------------------
# Explain / propose
# ---------------------------------------------------------------------------


class ExplainRequest(BaseModel):
    """Request body for POST /assist/explain."""

    topic: ExplainTopic
    subscription_ids: list[str] | None = Field(
        default=None,
        max_length=100,
        description="Subset to explain; all of the caller's subscriptions when omitted",
    )


class ExplainItemResponse(BaseModel):
    subscription_id: str
    summary: str
    rationale: str | None = None


class ExplainResponse(BaseModel):
    topic: ExplainTopic
    items: list[ExplainItemResponse]
    confidence: float | None = None
    provider: str

    @classmethod
    def from_result(cls, topic: ExplainTopic, result: ExplainResult, provider: str) -> "ExplainResponse":
        return cls(
            topic=topic,
            items=[
                ExplainItemResponse(subscription_id=i.subscription_id, summary=i.summary, rationale=i.rationale)
                for i in result.items
            ],
            confidence=result.confidence,
            provider=provider,
        )


class ProposeRequest(BaseModel):
    """Request body for POST /assist/propose."""

    type: ProposalType
    subscription_ids: list[str] | None = Field(default=None, max_length=100)


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


class ProposalResponse(BaseModel):
    """Response schema for a single proposal."""

    id: uuid.UUID
    owner_id: str
    type: ProposalType
    status: ProposalStatus
    title: str
    summary: str
    payload: dict[str, Any]
    confidence: float | None
    created_at: datetime
    expires_at: datetime
    applied_patch_id: uuid.UUID | None = None

    model_config = {"from_attributes": True}


class ProposalListResponse(BaseModel):
    items: list[ProposalResponse]


class ApplyProposalRequest(BaseModel):
    """Request body for POST /assist/proposals/{id}/apply."""

    approved: bool = Field(default=False, description="Must be true; the user explicitly approved the change")


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


class PatchResponse(BaseModel):
    """Response schema for a single patch."""

    id: uuid.UUID
    proposal_id: uuid.UUID
    type: PatchType
    status: PatchStatus
    forward_patch: list[dict[str, Any]]
    rollback_patch: list[dict[str, Any]]
    applied_at: datetime
    rolled_back_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProposalDigest(BaseModel):
    id: uuid.UUID
    type: ProposalType
    status: ProposalStatus
    title: str

    model_config = {"from_attributes": True}


class PatchDetailResponse(PatchResponse):
    proposal: ProposalDigest | None = None


class PatchListResponse(BaseModel):
    items: list[PatchResponse]


# ---------------------------------------------------------------------------
# Action log / audit
# ---------------------------------------------------------------------------


class ActionLogResponse(BaseModel):
    """Response schema for one action log entry."""

    id: uuid.UUID
    action_type: ActionType
    topic: str | None
    input_redacted: dict[str, Any]
    output_summary: str | None
    confidence: float | None
    provider: str
    success: bool
    latency_ms: int
    error_reason: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ActionLogPageResponse(BaseModel):
    items: list[ActionLogResponse]
    next_cursor: uuid.UUID | None = None


class AuditEntryResponse(BaseModel):
    id: uuid.UUID
    action: str
    metadata: dict[str, Any] = Field(validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditPageResponse(BaseModel):
    items: list[AuditEntryResponse]
    total: int
    page: int
    page_size: int
