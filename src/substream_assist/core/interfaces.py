"""Abstract interfaces (Protocol classes) for Substream Assist.

Services depend on these interfaces, not concrete implementations. The
SQLAlchemy repositories, the in-memory test fakes, and both
recommendation backends all satisfy them structurally.
"""

import uuid
from datetime import datetime
from typing import Any, AsyncContextManager, Collection, Protocol, runtime_checkable

from substream_assist.core.domain import ExplainResult, ProposalDraft, SubscriptionSummary
from substream_assist.core.models import (
    ActionLogEntry,
    AuditEntry,
    Patch,
    PatchStatus,
    Proposal,
    ProposalStatus,
    Subscription,
)


@runtime_checkable
class ISubscriptionRepository(Protocol):
    """Owner-scoped reads and category writes on subscriptions."""

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        """List every subscription the owner has, oldest first."""
        ...

    async def list_by_ids(self, owner_id: str, subscription_ids: Collection[str]) -> list[Subscription]:
        """Return the owner's subscriptions among the given ids. Unknown or malformed ids are skipped."""
        ...

    async def update_category_if_matches(
        self,
        owner_id: str,
        subscription_id: str,
        expected_category: str | None,
        new_category: str | None,
    ) -> bool:
        """Set category only if it currently equals expected_category (null-aware). Returns True on update."""
        ...

    async def set_category(self, owner_id: str, subscription_id: str, new_category: str | None) -> bool:
        """Set category unconditionally. Returns False if the row is gone."""
        ...


@runtime_checkable
class IPermissionRepository(Protocol):
    """Per-owner assist-enabled flag."""

    async def is_assist_enabled(self, owner_id: str) -> bool:
        """Return the flag, defaulting to False when no row exists."""
        ...

    async def set_assist_enabled(self, owner_id: str, enabled: bool, now: datetime) -> bool:
        """Upsert the flag and return its previous value."""
        ...


@runtime_checkable
class IProposalRepository(Protocol):
    """Proposal persistence with compare-and-set status transitions."""

    async def create(self, proposal: Proposal) -> Proposal:
        """Persist a new proposal."""
        ...

    async def get_for_owner(self, owner_id: str, proposal_id: uuid.UUID) -> Proposal | None:
        """Fetch a proposal only if the owner owns it."""
        ...

    async def list_by_owner(self, owner_id: str, statuses: Collection[ProposalStatus]) -> list[Proposal]:
        """List the owner's proposals in the given statuses, newest first."""
        ...

    async def expire_due(self, owner_id: str, now: datetime) -> int:
        """Move the owner's ACTIVE proposals with expires_at <= now to EXPIRED. Returns the count."""
        ...

    async def transition(
        self,
        proposal_id: uuid.UUID,
        expected: ProposalStatus,
        target: ProposalStatus,
        **changes: Any,
    ) -> bool:
        """Move status from expected to target, applying extra column changes. False if status differed."""
        ...


@runtime_checkable
class IPatchRepository(Protocol):
    """Patch persistence."""

    async def create(self, patch: Patch) -> Patch:
        """Persist a new patch."""
        ...

    async def get_for_owner(self, owner_id: str, patch_id: uuid.UUID) -> Patch | None:
        """Fetch a patch only if the owner owns it."""
        ...

    async def list_by_owner(self, owner_id: str) -> list[Patch]:
        """List the owner's patches, newest first."""
        ...

    async def transition(
        self,
        patch_id: uuid.UUID,
        expected: PatchStatus,
        target: PatchStatus,
        **changes: Any,
    ) -> bool:
        """Compare-and-set status move. False if status differed."""
        ...


@runtime_checkable
class IActionLogRepository(Protocol):
    """Append-only action log."""

    async def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        """Persist one action log entry."""
        ...

    async def list_by_owner(
        self,
        owner_id: str,
        limit: int,
        cursor: uuid.UUID | None = None,
    ) -> list[ActionLogEntry]:
        """Newest-first page of entries strictly older than the cursor entry."""
        ...


@runtime_checkable
class IAuditRepository(Protocol):
    """Append-only audit trail."""

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Persist one audit entry."""
        ...

    async def list_by_owner(self, owner_id: str, offset: int, limit: int) -> list[AuditEntry]:
        """Newest-first page of audit entries."""
        ...

    async def count_by_owner(self, owner_id: str) -> int:
        """Total audit entries for the owner."""
        ...


@runtime_checkable
class IUnitOfWork(Protocol):
    """Transaction boundary over every repository.

    Writes made inside `async with uow.atomic():` commit together when the
    block exits normally and are all discarded when it raises.
    """

    subscriptions: ISubscriptionRepository
    permissions: IPermissionRepository
    proposals: IProposalRepository
    patches: IPatchRepository
    action_logs: IActionLogRepository
    audit_logs: IAuditRepository

    def atomic(self) -> AsyncContextManager[None]:
        """Open a transaction scope."""
        ...


@runtime_checkable
class IRecommendationBackend(Protocol):
    """Opaque suggestion source. Implementations validate their own output
    through core.backend_contract before returning it.
    """

    name: str

    async def explain(self, topic: str, summaries: list[SubscriptionSummary]) -> ExplainResult:
        """Explain the subscriptions with respect to a topic."""
        ...

    async def propose_recategorize(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        """Suggest new categories."""
        ...

    async def propose_savings_list(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        """Suggest savings opportunities."""
        ...
