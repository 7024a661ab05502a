"""FastAPI router for the Substream Assist API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here.

Endpoints:
  GET    /api/v1/assist/status                         Assist enabled flag and active provider
  GET    /api/v1/assist/permissions                    Read the assist-enabled flag
  PATCH  /api/v1/assist/permissions                    Toggle the assist-enabled flag
  POST   /api/v1/assist/explain                        Explain subscriptions for a topic
  POST   /api/v1/assist/propose                        Generate and store a proposal
  GET    /api/v1/assist/proposals                      List proposals (lazy expiry)
  GET    /api/v1/assist/proposals/{id}                 Proposal detail (lazy expiry)
  POST   /api/v1/assist/proposals/{id}/dismiss         Dismiss an ACTIVE proposal
  POST   /api/v1/assist/proposals/{id}/apply           Apply a RECATEGORIZE proposal
  GET    /api/v1/assist/patches                        List patches
  GET    /api/v1/assist/patches/{id}                   Patch detail with proposal digest
  POST   /api/v1/assist/patches/{id}/rollback          Roll back an APPLIED patch
  GET    /api/v1/assist/logs                           Cursor-paginated action log
  GET    /api/v1/assist/audit                          Page-paginated audit trail
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from substream_assist.adapters.repositories import SqlAlchemyUnitOfWork
from substream_assist.api.auth import get_owner_id
from substream_assist.api.schemas import (
    ActionLogPageResponse,
    ActionLogResponse,
    ApplyProposalRequest,
    AssistStatusResponse,
    AuditEntryResponse,
    AuditPageResponse,
    ExplainRequest,
    ExplainResponse,
    PatchDetailResponse,
    PatchListResponse,
    PatchResponse,
    PermissionResponse,
    PermissionUpdateRequest,
    ProposalDigest,
    ProposalListResponse,
    ProposalResponse,
    ProposeRequest,
)
from substream_assist.core.interfaces import IRecommendationBackend, IUnitOfWork
from substream_assist.core.models import ProposalStatus
from substream_assist.core.services import (
    ActivityService,
    PatchService,
    ProposalService,
    RecommendationService,
)
from substream_assist.database import get_db_session
from substream_assist.settings import Settings, get_settings

router = APIRouter(prefix="/assist", tags=["assist"])

OwnerId = Annotated[str, Depends(get_owner_id)]


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def get_unit_of_work(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> IUnitOfWork:
    """Build a unit of work over the request's database session."""
    return SqlAlchemyUnitOfWork(session)


def get_recommendation_backend(request: Request) -> IRecommendationBackend:
    """Return the backend constructed once in the application lifespan."""
    return request.app.state.recommendation_backend


def _get_recommendation_service(
    uow: Annotated[IUnitOfWork, Depends(get_unit_of_work)],
    backend: Annotated[IRecommendationBackend, Depends(get_recommendation_backend)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RecommendationService:
    return RecommendationService(uow=uow, backend=backend, settings=settings)


def _get_proposal_service(
    uow: Annotated[IUnitOfWork, Depends(get_unit_of_work)],
) -> ProposalService:
    return ProposalService(uow=uow)


def _get_patch_service(
    uow: Annotated[IUnitOfWork, Depends(get_unit_of_work)],
    backend: Annotated[IRecommendationBackend, Depends(get_recommendation_backend)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> PatchService:
    return PatchService(uow=uow, backend=backend, settings=settings)


def _get_activity_service(
    uow: Annotated[IUnitOfWork, Depends(get_unit_of_work)],
    backend: Annotated[IRecommendationBackend, Depends(get_recommendation_backend)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ActivityService:
    return ActivityService(uow=uow, backend=backend, settings=settings)


# ---------------------------------------------------------------------------
# Status and permissions
# ---------------------------------------------------------------------------


@router.get("/status", response_model=AssistStatusResponse)
async def get_assist_status(
    owner_id: OwnerId,
    service: Annotated[ActivityService, Depends(_get_activity_service)],
) -> AssistStatusResponse:
    """Report whether assistance is enabled for the caller and which provider is active."""
    enabled, provider = await service.get_status(owner_id)
    return AssistStatusResponse(enabled=enabled, provider=provider)


@router.get("/permissions", response_model=PermissionResponse)
async def get_permissions(
    owner_id: OwnerId,
    service: Annotated[ActivityService, Depends(_get_activity_service)],
) -> PermissionResponse:
    enabled, _ = await service.get_status(owner_id)
    return PermissionResponse(ai_assist_enabled=enabled)


@router.patch("/permissions", response_model=PermissionResponse)
async def update_permissions(
    body: PermissionUpdateRequest,
    owner_id: OwnerId,
    service: Annotated[ActivityService, Depends(_get_activity_service)],
) -> PermissionResponse:
    """Enable or disable AI assistance for the caller."""
    enabled = await service.set_assist_enabled(owner_id, body.ai_assist_enabled)
    return PermissionResponse(ai_assist_enabled=enabled)


# ---------------------------------------------------------------------------
# Explain / propose
# ---------------------------------------------------------------------------


@router.post("/explain", response_model=ExplainResponse)
async def explain(
    body: ExplainRequest,
    owner_id: OwnerId,
    service: Annotated[RecommendationService, Depends(_get_recommendation_service)],
    backend: Annotated[IRecommendationBackend, Depends(get_recommendation_backend)],
) -> ExplainResponse:
    """Explain the caller's subscriptions with respect to a topic."""
    result = await service.explain(owner_id, body.topic, body.subscription_ids)
    return ExplainResponse.from_result(body.topic, result, backend.name)


@router.post("/propose", response_model=ProposalResponse, status_code=status.HTTP_201_CREATED)
async def propose(
    body: ProposeRequest,
    owner_id: OwnerId,
    service: Annotated[RecommendationService, Depends(_get_recommendation_service)],
) -> ProposalResponse:
    """Generate a RECATEGORIZE or SAVINGS_LIST proposal."""
    proposal = await service.propose(owner_id, body.type, body.subscription_ids)
    return ProposalResponse.model_validate(proposal)


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


@router.get("/proposals", response_model=ProposalListResponse)
async def list_proposals(
    owner_id: OwnerId,
    service: Annotated[ProposalService, Depends(_get_proposal_service)],
    status_filter: Annotated[list[ProposalStatus] | None, Query(alias="status")] = None,
) -> ProposalListResponse:
    """List proposals. Without a status filter, EXPIRED and ROLLED_BACK are excluded."""
    proposals = await service.list_proposals(owner_id, status_filter)
    return ProposalListResponse(items=[ProposalResponse.model_validate(p) for p in proposals])


@router.get("/proposals/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(
    proposal_id: uuid.UUID,
    owner_id: OwnerId,
    service: Annotated[ProposalService, Depends(_get_proposal_service)],
) -> ProposalResponse:
    proposal = await service.get_proposal(owner_id, proposal_id)
    return ProposalResponse.model_validate(proposal)


@router.post("/proposals/{proposal_id}/dismiss", response_model=ProposalResponse)
async def dismiss_proposal(
    proposal_id: uuid.UUID,
    owner_id: OwnerId,
    service: Annotated[ProposalService, Depends(_get_proposal_service)],
) -> ProposalResponse:
    proposal = await service.dismiss_proposal(owner_id, proposal_id)
    return ProposalResponse.model_validate(proposal)


@router.post("/proposals/{proposal_id}/apply", response_model=PatchResponse)
async def apply_proposal(
    proposal_id: uuid.UUID,
    owner_id: OwnerId,
    service: Annotated[PatchService, Depends(_get_patch_service)],
    body: ApplyProposalRequest | None = None,
) -> PatchResponse:
    """Apply an approved RECATEGORIZE proposal and return the resulting patch."""
    approved = body.approved if body is not None else False
    patch = await service.apply_proposal(owner_id, proposal_id, approved=approved)
    return PatchResponse.model_validate(patch)


# ---------------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------------


@router.get("/patches", response_model=PatchListResponse)
async def list_patches(
    owner_id: OwnerId,
    service: Annotated[PatchService, Depends(_get_patch_service)],
) -> PatchListResponse:
    patches = await service.list_patches(owner_id)
    return PatchListResponse(items=[PatchResponse.model_validate(p) for p in patches])


@router.get("/patches/{patch_id}", response_model=PatchDetailResponse)
async def get_patch(
    patch_id: uuid.UUID,
    owner_id: OwnerId,
    service: Annotated[PatchService, Depends(_get_patch_service)],
) -> PatchDetailResponse:
    patch, proposal = await service.get_patch(owner_id, patch_id)
    return PatchDetailResponse(
        **PatchResponse.model_validate(patch).model_dump(),
        proposal=ProposalDigest.model_validate(proposal) if proposal is not None else None,
    )


@router.post("/patches/{patch_id}/rollback", response_model=PatchResponse)
async def rollback_patch(
    patch_id: uuid.UUID,
    owner_id: OwnerId,
    service: Annotated[PatchService, Depends(_get_patch_service)],
) -> PatchResponse:
    """Restore the categories a patch changed."""
    patch = await service.rollback_patch(owner_id, patch_id)
    return PatchResponse.model_validate(patch)


# ---------------------------------------------------------------------------
# Action log / audit
# ---------------------------------------------------------------------------


@router.get("/logs", response_model=ActionLogPageResponse)
async def list_action_logs(
    owner_id: OwnerId,
    service: Annotated[ActivityService, Depends(_get_activity_service)],
    limit: Annotated[int, Query(ge=1, le=50)] = 20,
    cursor: uuid.UUID | None = None,
) -> ActionLogPageResponse:
    """Newest-first action log; pass next_cursor back as cursor for the next page."""
    items, next_cursor = await service.list_action_logs(owner_id, limit=limit, cursor=cursor)
    return ActionLogPageResponse(
        items=[ActionLogResponse.model_validate(i) for i in items],
        next_cursor=next_cursor,
    )


@router.get("/audit", response_model=AuditPageResponse)
async def list_audit_entries(
    owner_id: OwnerId,
    service: Annotated[ActivityService, Depends(_get_activity_service)],
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> AuditPageResponse:
    items, total = await service.list_audit_entries(owner_id, page=page, page_size=page_size)
    return AuditPageResponse(
        items=[AuditEntryResponse.model_validate(i) for i in items],
        total=total,
        page=page,
        page_size=page_size,
    )
