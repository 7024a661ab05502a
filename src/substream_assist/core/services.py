"""Business logic services for Substream Assist.

All services depend on the unit-of-work and backend interfaces (not concrete
implementations) and receive dependencies via constructor injection.
No framework code (FastAPI, SQLAlchemy) belongs here.

Key invariants:
- PermissionGate: runs first in explain, propose, apply, and rollback; denial is always 403.
- RecommendationService: backend calls are bounded by a timeout and never retried.
- ProposalService: every list/detail read expires due ACTIVE proposals first.
- PatchService: apply and rollback mutate subscriptions, the patch, and the proposal
  in one transaction; rollback entries are the exact mirror of forward entries.
- Every explain/propose/apply/rollback call writes exactly one action log entry.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Collection, Sequence, TypeVar

from substream_assist.core.activity import ActivityRecorder, AuditTrail, Clock, utcnow
from substream_assist.core.backend_contract import BackendOutputError
from substream_assist.core.domain import ExplainResult, ProposalDraft
from substream_assist.core.interfaces import IRecommendationBackend, IUnitOfWork
from substream_assist.core.lifecycle import (
    APPLICABLE_TYPES,
    DEFAULT_VISIBLE_STATUSES,
    can_transition_patch,
    can_transition_proposal,
    require_patch_transition,
    require_proposal_transition,
)
from substream_assist.core.models import (
    ActionLogEntry,
    ActionType,
    AuditEntry,
    ExplainTopic,
    Patch,
    PatchStatus,
    PatchType,
    Proposal,
    ProposalStatus,
    ProposalType,
    Subscription,
)
from substream_assist.core.patch_builder import (
    PatchPayloadError,
    build_recategorize_patch,
    parse_patch_entries,
    parse_recommendations,
)
from substream_assist.core.redaction import describe_input, summarize_subscriptions
from substream_assist.errors import (
    AssistError,
    BackendError,
    ConflictError,
    ErrorCode,
    InfrastructureError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from substream_assist.observability import get_logger
from substream_assist.settings import Settings

logger = get_logger(__name__)

T = TypeVar("T")

PERMISSION_FLAG = "ai_assist_enabled"


def aggregate_confidence(items: Sequence[dict[str, Any]], fallback: float | None) -> float | None:
    """Mean of per-item confidences rounded to 2 decimals, else the fallback."""
    values = [
        float(item["confidence"])
        for item in items
        if isinstance(item.get("confidence"), (int, float)) and not isinstance(item.get("confidence"), bool)
    ]
    if values:
        return round(sum(values) / len(values), 2)
    return round(fallback, 2) if fallback is not None else None


async def expire_due_proposals(uow: IUnitOfWork, owner_id: str, now: datetime) -> int:
    """Lazily move the owner's overdue ACTIVE proposals to EXPIRED."""
    async with uow.atomic():
        expired = await uow.proposals.expire_due(owner_id, now)
    if expired:
        logger.info("proposals_expired", owner_id=owner_id, count=expired)
    return expired


async def load_owned_subscriptions(
    uow: IUnitOfWork,
    owner_id: str,
    subscription_ids: Sequence[str],
) -> list[Subscription]:
    """Load the named subscriptions in request order, or raise 404 if any is missing or foreign."""
    wanted = list(dict.fromkeys(subscription_ids))
    found = {str(s.id): s for s in await uow.subscriptions.list_by_ids(owner_id, wanted)}
    missing = [sid for sid in wanted if sid not in found]
    if missing:
        raise NotFoundError(
            "Subscription not found",
            error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
            details={"subscriptionIds": missing},
        )
    return [found[sid] for sid in wanted]


class PermissionGate:
    """Single assist-enabled capability shared by every mutating entry point."""

    def __init__(self, uow: IUnitOfWork) -> None:
        self._uow = uow

    async def check_assist_enabled(self, owner_id: str) -> None:
        """Raise PermissionDeniedError unless the owner enabled AI assistance.

        Raises:
            PermissionDeniedError: Always with the same message and reason,
                whichever entry point asked.
        """
        if not await self._uow.permissions.is_assist_enabled(owner_id):
            raise PermissionDeniedError()


class RecommendationService:
    """Explain and propose: ask the backend, log the call, store proposals."""

    def __init__(
        self,
        uow: IUnitOfWork,
        backend: IRecommendationBackend,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize RecommendationService with required dependencies."""
        self._uow = uow
        self._backend = backend
        self._settings = settings
        self._clock = clock
        self._gate = PermissionGate(uow)
        self._recorder = ActivityRecorder(
            uow,
            provider=backend.name,
            output_summary_max_chars=settings.output_summary_max_chars,
            clock=clock,
        )

    async def explain(
        self,
        owner_id: str,
        topic: ExplainTopic,
        subscription_ids: Sequence[str] | None = None,
    ) -> ExplainResult:
        """Explain the owner's subscriptions with respect to a topic.

        Args:
            owner_id: Caller identity.
            topic: duplicate | yearly_vs_monthly | category_rationale
            subscription_ids: Optional subset; all of the owner's subscriptions when omitted.

        Returns:
            The validated ExplainResult. Nothing is persisted besides the log entries.
        """
        async with self._recorder.track(owner_id, ActionType.EXPLAIN, topic=topic.value) as trace:
            await self._gate.check_assist_enabled(owner_id)
            subscriptions = await self._load_subscriptions(owner_id, subscription_ids)
            summaries = summarize_subscriptions(subscriptions)
            trace.input_redacted = describe_input(summaries, topic=topic.value)
            await trace.requested(topic=topic.value, subscriptionCount=len(summaries))

            result = await self._call_backend(self._backend.explain(topic.value, summaries))

            await trace.succeed(
                output_summary=" ".join(item.summary for item in result.items),
                confidence=result.confidence,
                itemCount=len(result.items),
            )
        return result

    async def propose(
        self,
        owner_id: str,
        proposal_type: ProposalType,
        subscription_ids: Sequence[str] | None = None,
    ) -> Proposal:
        """Generate and store an ACTIVE proposal of the given type.

        RECATEGORIZE recommendations are stamped with each subscription's live
        category as fromCategory, which is what apply later checks for staleness.
        """
        async with self._recorder.track(owner_id, ActionType.PROPOSE, topic=proposal_type.value) as trace:
            await self._gate.check_assist_enabled(owner_id)
            subscriptions = await self._load_subscriptions(owner_id, subscription_ids)
            summaries = summarize_subscriptions(subscriptions)
            trace.input_redacted = describe_input(summaries, type=proposal_type.value)
            await trace.requested(type=proposal_type.value, subscriptionCount=len(summaries))

            if proposal_type == ProposalType.RECATEGORIZE:
                draft = await self._call_backend(self._backend.propose_recategorize(summaries))
                payload = self._stamp_from_categories(draft, subscriptions)
                items = payload["recommendations"]
                if not items:
                    raise ValidationError(
                        "No category changes to propose",
                        error_code=ErrorCode.NO_RECOMMENDATIONS,
                    )
            else:
                draft = await self._call_backend(self._backend.propose_savings_list(summaries))
                payload = draft.payload
                items = payload["suggestions"]

            now = self._clock()
            proposal = Proposal(
                id=uuid.uuid4(),
                owner_id=owner_id,
                type=proposal_type,
                status=ProposalStatus.ACTIVE,
                title=draft.title[:200],
                summary=draft.summary[:300],
                payload=payload,
                confidence=aggregate_confidence(items, draft.confidence),
                created_at=now,
                expires_at=now + timedelta(days=self._settings.proposal_ttl_days),
            )
            async with self._uow.atomic():
                await self._uow.proposals.create(proposal)

            await trace.succeed(
                output_summary=proposal.summary,
                confidence=proposal.confidence,
                proposalId=str(proposal.id),
                itemCount=len(items),
            )

        logger.info(
            "proposal_created",
            owner_id=owner_id,
            proposal_id=str(proposal.id),
            proposal_type=proposal_type.value,
            item_count=len(items),
        )
        return proposal

    async def _load_subscriptions(
        self,
        owner_id: str,
        subscription_ids: Sequence[str] | None,
    ) -> list[Subscription]:
        if subscription_ids:
            subscriptions = await load_owned_subscriptions(self._uow, owner_id, subscription_ids)
        else:
            subscriptions = await self._uow.subscriptions.list_by_owner(owner_id)
        if not subscriptions:
            raise ValidationError("No subscriptions to analyze", error_code=ErrorCode.NO_SUBSCRIPTIONS)
        return subscriptions

    @staticmethod
    def _stamp_from_categories(draft: ProposalDraft, subscriptions: list[Subscription]) -> dict[str, Any]:
        live = {str(s.id): s.category for s in subscriptions}
        # Entries that would leave the category unchanged are dropped.
        recommendations = [
            {**rec, "fromCategory": live[rec["subscriptionId"]]}
            for rec in draft.payload["recommendations"]
            if rec["toCategory"] != live[rec["subscriptionId"]]
        ]
        return {**draft.payload, "recommendations": recommendations}

    async def _call_backend(self, call: Awaitable[T]) -> T:
        timeout = self._settings.backend_timeout_seconds
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise BackendError(
                "Recommendation backend timed out",
                error_code=ErrorCode.BACKEND_TIMEOUT,
                details={"timeoutSeconds": timeout},
            ) from exc
        except BackendOutputError as exc:
            logger.warning("backend_invalid_output", provider=self._backend.name, error=str(exc))
            raise BackendError(
                "Recommendation backend returned invalid output",
                error_code=ErrorCode.BACKEND_INVALID_OUTPUT,
            ) from exc
        except AssistError:
            raise
        except Exception as exc:
            logger.warning("backend_call_failed", provider=self._backend.name, error=str(exc))
            raise BackendError("Recommendation backend failed", error_code=ErrorCode.BACKEND_ERROR) from exc


class ProposalService:
    """Read and dismiss proposals. Reads always apply lazy expiry first."""

    def __init__(self, uow: IUnitOfWork, clock: Clock = utcnow) -> None:
        self._uow = uow
        self._clock = clock
        self._audit = AuditTrail(uow, clock)

    async def list_proposals(
        self,
        owner_id: str,
        statuses: Collection[ProposalStatus] | None = None,
    ) -> list[Proposal]:
        """List proposals; by default ACTIVE, APPLIED, and DISMISSED only."""
        await expire_due_proposals(self._uow, owner_id, self._clock())
        wanted = frozenset(statuses) if statuses else DEFAULT_VISIBLE_STATUSES
        return await self._uow.proposals.list_by_owner(owner_id, wanted)

    async def get_proposal(self, owner_id: str, proposal_id: uuid.UUID) -> Proposal:
        await expire_due_proposals(self._uow, owner_id, self._clock())
        proposal = await self._uow.proposals.get_for_owner(owner_id, proposal_id)
        if proposal is None:
            raise NotFoundError("Proposal not found", error_code=ErrorCode.PROPOSAL_NOT_FOUND)
        return proposal

    async def dismiss_proposal(self, owner_id: str, proposal_id: uuid.UUID) -> Proposal:
        """Move an ACTIVE proposal to DISMISSED.

        Raises:
            NotFoundError: Proposal missing or owned by someone else.
            ValidationError: Proposal is not ACTIVE (including just-expired ones).
        """
        proposal = await self.get_proposal(owner_id, proposal_id)
        if not can_transition_proposal(proposal.status, ProposalStatus.DISMISSED):
            raise ValidationError(
                f"Proposal is {proposal.status.value} and cannot be dismissed",
                error_code=ErrorCode.INVALID_STATUS,
            )

        async with self._uow.atomic():
            moved = await self._uow.proposals.transition(
                proposal.id, ProposalStatus.ACTIVE, ProposalStatus.DISMISSED
            )
            if not moved:
                raise ValidationError("Proposal is no longer active", error_code=ErrorCode.INVALID_STATUS)
            await self._audit.write(
                owner_id,
                "ai.proposal_dismissed",
                {"proposalId": str(proposal.id), "type": proposal.type.value},
            )

        logger.info("proposal_dismissed", owner_id=owner_id, proposal_id=str(proposal.id))
        return proposal


class PatchService:
    """Apply RECATEGORIZE proposals as patches and roll them back."""

    def __init__(
        self,
        uow: IUnitOfWork,
        backend: IRecommendationBackend,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize PatchService with required dependencies."""
        self._uow = uow
        self._clock = clock
        self._gate = PermissionGate(uow)
        self._recorder = ActivityRecorder(
            uow,
            provider=backend.name,
            output_summary_max_chars=settings.output_summary_max_chars,
            clock=clock,
        )

    async def apply_proposal(self, owner_id: str, proposal_id: uuid.UUID, approved: bool) -> Patch:
        """Apply an ACTIVE RECATEGORIZE proposal.

        Preconditions are checked in order and each failure is logged with its
        own reason: permission, proposal existence, explicit approval, type,
        status, payload shape, subscription existence, then staleness. The
        category updates, the Patch row, and the proposal's move to APPLIED
        commit together or not at all.

        Args:
            owner_id: Caller identity.
            proposal_id: Proposal to apply.
            approved: Explicit user approval; False is rejected.

        Returns:
            The new Patch in APPLIED status.

        Raises:
            PermissionDeniedError: 403 when assistance is disabled.
            NotFoundError: 404 for a missing proposal or subscription.
            ValidationError: 400 for approval, type, status, or payload failures.
            ConflictError: 409 when a live category differs from fromCategory.
            InfrastructureError: 500 when the transaction fails unexpectedly.
        """
        async with self._recorder.track(
            owner_id,
            ActionType.APPLY,
            topic=ProposalType.RECATEGORIZE.value,
            input_redacted={"proposalId": str(proposal_id)},
        ) as trace:
            await self._gate.check_assist_enabled(owner_id)
            await expire_due_proposals(self._uow, owner_id, self._clock())

            proposal = await self._uow.proposals.get_for_owner(owner_id, proposal_id)
            if proposal is None:
                raise NotFoundError("Proposal not found", error_code=ErrorCode.PROPOSAL_NOT_FOUND)
            trace.topic = proposal.type.value
            await trace.requested(proposalId=str(proposal.id), type=proposal.type.value)

            if not approved:
                raise ValidationError("Approval required", error_code=ErrorCode.APPROVAL_REQUIRED)
            if proposal.type not in APPLICABLE_TYPES:
                raise ValidationError(
                    f"{proposal.type.value} proposals cannot be applied",
                    error_code=ErrorCode.UNSUPPORTED_TYPE,
                )
            if proposal.status != ProposalStatus.ACTIVE:
                raise ValidationError(
                    f"Proposal is {proposal.status.value}",
                    error_code=ErrorCode.INVALID_STATUS,
                )
            try:
                built = build_recategorize_patch(parse_recommendations(proposal.payload))
            except PatchPayloadError as exc:
                raise ValidationError(str(exc), error_code=ErrorCode.INVALID_PAYLOAD) from exc

            subscriptions = await load_owned_subscriptions(self._uow, owner_id, built.subscription_ids)
            trace.input_redacted = describe_input(
                summarize_subscriptions(subscriptions), proposalId=str(proposal.id)
            )
            live = {str(s.id): s.category for s in subscriptions}
            stale = [e.subscription_id for e in built.forward if live[e.subscription_id] != e.from_category]
            if stale:
                raise ConflictError(
                    "Subscription category changed since the proposal was created",
                    error_code=ErrorCode.STALE_SUBSCRIPTION_CATEGORY,
                    details={"subscriptionIds": stale},
                )

            now = self._clock()
            patch = Patch(
                id=uuid.uuid4(),
                owner_id=owner_id,
                proposal_id=proposal.id,
                type=PatchType.RECATEGORIZE,
                status=PatchStatus.APPLIED,
                forward_patch=built.forward_dicts(),
                rollback_patch=built.rollback_dicts(),
                applied_at=now,
                created_at=now,
            )
            require_proposal_transition(ProposalStatus.ACTIVE, ProposalStatus.APPLIED)
            async with self._uow.atomic():
                # Proposal row lock first; it serializes concurrent applies.
                moved = await self._uow.proposals.transition(
                    proposal.id,
                    ProposalStatus.ACTIVE,
                    ProposalStatus.APPLIED,
                    applied_patch_id=patch.id,
                )
                if not moved:
                    raise ValidationError("Proposal is no longer active", error_code=ErrorCode.INVALID_STATUS)
                for entry in built.forward:
                    updated = await self._uow.subscriptions.update_category_if_matches(
                        owner_id, entry.subscription_id, entry.from_category, entry.to_category
                    )
                    if not updated:
                        raise ConflictError(
                            "Subscription category changed while applying",
                            error_code=ErrorCode.STALE_SUBSCRIPTION_CATEGORY,
                            details={"subscriptionIds": [entry.subscription_id]},
                        )
                await self._uow.patches.create(patch)

            await trace.succeed(
                output_summary=proposal.summary,
                confidence=proposal.confidence,
                proposalId=str(proposal.id),
                patchId=str(patch.id),
                changeCount=len(built.forward),
            )

        logger.info(
            "proposal_applied",
            owner_id=owner_id,
            proposal_id=str(proposal_id),
            patch_id=str(patch.id),
            change_count=len(built.forward),
        )
        return patch

    async def rollback_patch(self, owner_id: str, patch_id: uuid.UUID) -> Patch:
        """Restore the categories recorded in a patch's rollback entries.

        No staleness check is made: while the patch is APPLIED, rollback is
        unconditionally available, and its status is the mutex that lets only
        one rollback succeed.
        """
        async with self._recorder.track(
            owner_id,
            ActionType.ROLLBACK,
            topic=PatchType.RECATEGORIZE.value,
            input_redacted={"patchId": str(patch_id)},
        ) as trace:
            await self._gate.check_assist_enabled(owner_id)

            patch = await self._uow.patches.get_for_owner(owner_id, patch_id)
            if patch is None:
                raise NotFoundError("Patch not found", error_code=ErrorCode.PATCH_NOT_FOUND)
            trace.topic = patch.type.value
            await trace.requested(patchId=str(patch.id), proposalId=str(patch.proposal_id))

            if not can_transition_patch(patch.status, PatchStatus.ROLLED_BACK):
                raise ValidationError(f"Patch is {patch.status.value}", error_code=ErrorCode.INVALID_STATUS)
            try:
                entries = parse_patch_entries(patch.rollback_patch, allow_null_target=True)
            except PatchPayloadError as exc:
                raise ValidationError(str(exc), error_code=ErrorCode.INVALID_PATCH) from exc

            subscriptions = await load_owned_subscriptions(
                self._uow, owner_id, [e.subscription_id for e in entries]
            )
            trace.input_redacted = describe_input(summarize_subscriptions(subscriptions), patchId=str(patch.id))

            now = self._clock()
            require_patch_transition(PatchStatus.APPLIED, PatchStatus.ROLLED_BACK)
            require_proposal_transition(ProposalStatus.APPLIED, ProposalStatus.ROLLED_BACK)
            async with self._uow.atomic():
                moved = await self._uow.patches.transition(
                    patch.id, PatchStatus.APPLIED, PatchStatus.ROLLED_BACK, rolled_back_at=now
                )
                if not moved:
                    raise ValidationError("Patch is no longer applied", error_code=ErrorCode.INVALID_STATUS)
                for entry in entries:
                    restored = await self._uow.subscriptions.set_category(
                        owner_id, entry.subscription_id, entry.to_category
                    )
                    if not restored:
                        raise NotFoundError(
                            "Subscription not found",
                            error_code=ErrorCode.SUBSCRIPTION_NOT_FOUND,
                            details={"subscriptionIds": [entry.subscription_id]},
                        )
                proposal_moved = await self._uow.proposals.transition(
                    patch.proposal_id, ProposalStatus.APPLIED, ProposalStatus.ROLLED_BACK
                )
                if not proposal_moved:
                    raise InfrastructureError(
                        "Owning proposal is not in APPLIED status",
                        error_code=ErrorCode.TRANSACTION_FAILED,
                        details={"proposalId": str(patch.proposal_id)},
                    )

            await trace.succeed(
                output_summary=f"Restored {len(entries)} subscription categories",
                patchId=str(patch.id),
                proposalId=str(patch.proposal_id),
                changeCount=len(entries),
            )

        logger.info("patch_rolled_back", owner_id=owner_id, patch_id=str(patch_id), change_count=len(entries))
        return patch

    async def list_patches(self, owner_id: str) -> list[Patch]:
        return await self._uow.patches.list_by_owner(owner_id)

    async def get_patch(self, owner_id: str, patch_id: uuid.UUID) -> tuple[Patch, Proposal | None]:
        """Return a patch together with its owning proposal."""
        patch = await self._uow.patches.get_for_owner(owner_id, patch_id)
        if patch is None:
            raise NotFoundError("Patch not found", error_code=ErrorCode.PATCH_NOT_FOUND)
        proposal = await self._uow.proposals.get_for_owner(owner_id, patch.proposal_id)
        return patch, proposal


class ActivityService:
    """Assist status, the permission toggle, and log listings."""

    def __init__(
        self,
        uow: IUnitOfWork,
        backend: IRecommendationBackend,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self._uow = uow
        self._provider = backend.name
        self._settings = settings
        self._clock = clock
        self._audit = AuditTrail(uow, clock)

    async def get_status(self, owner_id: str) -> tuple[bool, str]:
        """Return (assist enabled, provider name)."""
        return await self._uow.permissions.is_assist_enabled(owner_id), self._provider

    async def set_assist_enabled(self, owner_id: str, enabled: bool) -> bool:
        """Set the assist-enabled flag and audit the change. Returns the new value."""
        async with self._uow.atomic():
            previous = await self._uow.permissions.set_assist_enabled(owner_id, enabled, self._clock())
            await self._audit.write(
                owner_id,
                "trust.permission.updated",
                {"flag": PERMISSION_FLAG, "oldValue": previous, "newValue": enabled},
            )
        logger.info("assist_permission_updated", owner_id=owner_id, enabled=enabled, previous=previous)
        return enabled

    async def list_action_logs(
        self,
        owner_id: str,
        limit: int = 20,
        cursor: uuid.UUID | None = None,
    ) -> tuple[list[ActionLogEntry], uuid.UUID | None]:
        """Newest-first page of action log entries plus the cursor for the next page."""
        if not 1 <= limit <= self._settings.action_log_page_size_max:
            raise ValidationError(
                f"limit must be between 1 and {self._settings.action_log_page_size_max}",
                error_code=ErrorCode.INVALID_PAYLOAD,
            )
        rows = await self._uow.action_logs.list_by_owner(owner_id, limit + 1, cursor)
        next_cursor = rows[limit - 1].id if len(rows) > limit else None
        items = rows[:limit]
        await self._audit.record(owner_id, "ai.logs_viewed", count=len(items))
        return items, next_cursor

    async def list_audit_entries(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[AuditEntry], int]:
        """Page through the owner's audit trail. Returns (items, total)."""
        if page < 1 or not 1 <= page_size <= self._settings.audit_page_size_max:
            raise ValidationError("Invalid pagination parameters", error_code=ErrorCode.INVALID_PAYLOAD)
        items = await self._uow.audit_logs.list_by_owner(owner_id, (page - 1) * page_size, page_size)
        total = await self._uow.audit_logs.count_by_owner(owner_id)
        return items, total
