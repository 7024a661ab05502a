"""Shared test fixtures for substream-assist tests.

The in-memory unit of work mirrors the SQLAlchemy one closely enough for
service tests: repositories assign ids like the database would, and
atomic() snapshots every row so a raised exception restores all of them.
"""

import sys
from pathlib import Path

# Ensure the src/ layout is importable without installing the package.
_SRC_PATH = Path(__file__).parent.parent / "src"
if str(_SRC_PATH) not in sys.path:
    sys.path.insert(0, str(_SRC_PATH))

import copy
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncIterator, Collection

import pytest
from sqlalchemy import inspect as sa_inspect

from substream_assist.adapters.mock_backend import MockRecommendationBackend
from substream_assist.core.lifecycle import is_due_for_expiry
from substream_assist.core.models import (
    ActionLogEntry,
    AssistPermission,
    AuditEntry,
    BillingInterval,
    Patch,
    PatchStatus,
    Proposal,
    ProposalStatus,
    ProposalType,
    Subscription,
)
from substream_assist.settings import Settings


class SimulatedDatabaseError(RuntimeError):
    """Raised by the in-memory store when a failure point is armed."""


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _to_uuid(value: Any) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _column_keys(obj: Any) -> list[str]:
    return [attr.key for attr in sa_inspect(type(obj)).column_attrs]


class InMemoryStore:
    """Rows for every table plus optional failure points, e.g. store.fail_on.add("patches.create")."""

    def __init__(self) -> None:
        self.subscriptions: dict[uuid.UUID, Subscription] = {}
        self.permissions: dict[str, AssistPermission] = {}
        self.proposals: dict[uuid.UUID, Proposal] = {}
        self.patches: dict[uuid.UUID, Patch] = {}
        self.action_logs: list[ActionLogEntry] = []
        self.audit_logs: list[AuditEntry] = []
        self.fail_on: set[str] = set()

    def maybe_fail(self, point: str) -> None:
        if point in self.fail_on:
            raise SimulatedDatabaseError(f"simulated failure at {point}")

    def audit_actions(self, owner_id: str | None = None) -> list[str]:
        return [e.action for e in self.audit_logs if owner_id is None or e.owner_id == owner_id]

    def _rows(self) -> list[Any]:
        return [
            *self.subscriptions.values(),
            *self.permissions.values(),
            *self.proposals.values(),
            *self.patches.values(),
        ]

    def snapshot(self) -> dict[str, Any]:
        return {
            "rows": [(row, {k: copy.deepcopy(getattr(row, k)) for k in _column_keys(row)}) for row in self._rows()],
            "subscriptions": dict(self.subscriptions),
            "permissions": dict(self.permissions),
            "proposals": dict(self.proposals),
            "patches": dict(self.patches),
            "action_logs": len(self.action_logs),
            "audit_logs": len(self.audit_logs),
        }

    def restore(self, snapshot: dict[str, Any]) -> None:
        for row, values in snapshot["rows"]:
            for key, value in values.items():
                setattr(row, key, value)
        self.subscriptions = snapshot["subscriptions"]
        self.permissions = snapshot["permissions"]
        self.proposals = snapshot["proposals"]
        self.patches = snapshot["patches"]
        del self.action_logs[snapshot["action_logs"]:]
        del self.audit_logs[snapshot["audit_logs"]:]


class _Repository:
    def __init__(self, store: InMemoryStore, clock: FrozenClock) -> None:
        self._store = store
        self._clock = clock

    def _stamp(self, row: Any) -> Any:
        if getattr(row, "id", None) is None:
            row.id = uuid.uuid4()
        if getattr(row, "created_at", None) is None:
            row.created_at = self._clock()
        return row


class InMemorySubscriptionRepository(_Repository):
    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        rows = [s for s in self._store.subscriptions.values() if s.owner_id == owner_id]
        return sorted(rows, key=lambda s: (s.created_at, str(s.id)))

    async def list_by_ids(self, owner_id: str, subscription_ids: Collection[str]) -> list[Subscription]:
        wanted = {u for u in (_to_uuid(v) for v in subscription_ids) if u is not None}
        return [s for s in self._store.subscriptions.values() if s.owner_id == owner_id and s.id in wanted]

    def _owned(self, owner_id: str, subscription_id: str) -> Subscription | None:
        key = _to_uuid(subscription_id)
        row = self._store.subscriptions.get(key) if key is not None else None
        return row if row is not None and row.owner_id == owner_id else None

    async def update_category_if_matches(
        self,
        owner_id: str,
        subscription_id: str,
        expected_category: str | None,
        new_category: str | None,
    ) -> bool:
        self._store.maybe_fail("subscriptions.update")
        row = self._owned(owner_id, subscription_id)
        if row is None or row.category != expected_category:
            return False
        row.category = new_category
        return True

    async def set_category(self, owner_id: str, subscription_id: str, new_category: str | None) -> bool:
        self._store.maybe_fail("subscriptions.set")
        row = self._owned(owner_id, subscription_id)
        if row is None:
            return False
        row.category = new_category
        return True


class InMemoryPermissionRepository(_Repository):
    async def is_assist_enabled(self, owner_id: str) -> bool:
        row = self._store.permissions.get(owner_id)
        return bool(row and row.ai_assist_enabled)

    async def set_assist_enabled(self, owner_id: str, enabled: bool, now: datetime) -> bool:
        row = self._store.permissions.get(owner_id)
        if row is None:
            self._store.permissions[owner_id] = AssistPermission(
                owner_id=owner_id, ai_assist_enabled=enabled, updated_at=now
            )
            return False
        previous = row.ai_assist_enabled
        row.ai_assist_enabled = enabled
        row.updated_at = now
        return previous


class InMemoryProposalRepository(_Repository):
    async def create(self, proposal: Proposal) -> Proposal:
        self._store.maybe_fail("proposals.create")
        self._stamp(proposal)
        self._store.proposals[proposal.id] = proposal
        return proposal

    async def get_for_owner(self, owner_id: str, proposal_id: uuid.UUID) -> Proposal | None:
        row = self._store.proposals.get(proposal_id)
        return row if row is not None and row.owner_id == owner_id else None

    async def list_by_owner(self, owner_id: str, statuses: Collection[ProposalStatus]) -> list[Proposal]:
        rows = [p for p in self._store.proposals.values() if p.owner_id == owner_id and p.status in statuses]
        return sorted(rows, key=lambda p: (p.created_at, str(p.id)), reverse=True)

    async def expire_due(self, owner_id: str, now: datetime) -> int:
        count = 0
        for p in self._store.proposals.values():
            if p.owner_id == owner_id and is_due_for_expiry(p.status, p.expires_at, now):
                p.status = ProposalStatus.EXPIRED
                count += 1
        return count

    async def transition(
        self,
        proposal_id: uuid.UUID,
        expected: ProposalStatus,
        target: ProposalStatus,
        **changes: Any,
    ) -> bool:
        self._store.maybe_fail("proposals.transition")
        row = self._store.proposals.get(proposal_id)
        if row is None or row.status != expected:
            return False
        row.status = target
        for key, value in changes.items():
            setattr(row, key, value)
        return True


class InMemoryPatchRepository(_Repository):
    async def create(self, patch: Patch) -> Patch:
        self._store.maybe_fail("patches.create")
        self._stamp(patch)
        self._store.patches[patch.id] = patch
        return patch

    async def get_for_owner(self, owner_id: str, patch_id: uuid.UUID) -> Patch | None:
        row = self._store.patches.get(patch_id)
        return row if row is not None and row.owner_id == owner_id else None

    async def list_by_owner(self, owner_id: str) -> list[Patch]:
        rows = [p for p in self._store.patches.values() if p.owner_id == owner_id]
        return sorted(rows, key=lambda p: (p.applied_at, str(p.id)), reverse=True)

    async def transition(
        self,
        patch_id: uuid.UUID,
        expected: PatchStatus,
        target: PatchStatus,
        **changes: Any,
    ) -> bool:
        self._store.maybe_fail("patches.transition")
        row = self._store.patches.get(patch_id)
        if row is None or row.status != expected:
            return False
        row.status = target
        for key, value in changes.items():
            setattr(row, key, value)
        return True


class InMemoryActionLogRepository(_Repository):
    async def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        self._store.maybe_fail("action_logs.append")
        self._store.action_logs.append(self._stamp(entry))
        return entry

    async def list_by_owner(
        self,
        owner_id: str,
        limit: int,
        cursor: uuid.UUID | None = None,
    ) -> list[ActionLogEntry]:
        rows = sorted(
            (e for e in self._store.action_logs if e.owner_id == owner_id),
            key=lambda e: (e.created_at, str(e.id)),
            reverse=True,
        )
        if cursor is not None:
            anchor = next((e for e in rows if e.id == cursor), None)
            if anchor is None:
                return []
            rows = [e for e in rows if (e.created_at, str(e.id)) < (anchor.created_at, str(anchor.id))]
        return rows[:limit]


class InMemoryAuditRepository(_Repository):
    async def append(self, entry: AuditEntry) -> AuditEntry:
        self._store.audit_logs.append(self._stamp(entry))
        return entry

    async def list_by_owner(self, owner_id: str, offset: int, limit: int) -> list[AuditEntry]:
        rows = [e for e in reversed(self._store.audit_logs) if e.owner_id == owner_id]
        return rows[offset : offset + limit]

    async def count_by_owner(self, owner_id: str) -> int:
        return sum(1 for e in self._store.audit_logs if e.owner_id == owner_id)


class InMemoryUnitOfWork:
    """IUnitOfWork over an InMemoryStore with snapshot/restore transactions."""

    def __init__(self, store: InMemoryStore, clock: FrozenClock) -> None:
        self.store = store
        self.subscriptions = InMemorySubscriptionRepository(store, clock)
        self.permissions = InMemoryPermissionRepository(store, clock)
        self.proposals = InMemoryProposalRepository(store, clock)
        self.patches = InMemoryPatchRepository(store, clock)
        self.action_logs = InMemoryActionLogRepository(store, clock)
        self.audit_logs = InMemoryAuditRepository(store, clock)
        self.commits = 0
        self.rollbacks = 0
        self._depth = 0

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._depth:
            yield
            return
        snapshot = self.store.snapshot()
        self._depth = 1
        try:
            yield
        except BaseException:
            self.store.restore(snapshot)
            self.rollbacks += 1
            raise
        else:
            self.commits += 1
        finally:
            self._depth = 0


class Seeder:
    """Synchronous helpers that put rows straight into the store."""

    def __init__(self, store: InMemoryStore, clock: FrozenClock) -> None:
        self._store = store
        self._clock = clock

    def enable_assist(self, owner_id: str, enabled: bool = True) -> None:
        self._store.permissions[owner_id] = AssistPermission(
            owner_id=owner_id, ai_assist_enabled=enabled, updated_at=self._clock()
        )

    def subscription(
        self,
        owner_id: str,
        name: str = "AWS",
        category: str | None = "Work",
        amount: str = "12.00",
        billing_interval: BillingInterval = BillingInterval.MONTHLY,
        currency: str = "USD",
        is_trial: bool = False,
    ) -> Subscription:
        row = Subscription(
            id=uuid.uuid4(),
            owner_id=owner_id,
            name=name,
            amount=Decimal(amount),
            currency=currency,
            billing_interval=billing_interval,
            next_billing_date=date(2026, 11, 1),
            category=category,
            is_trial=is_trial,
            created_at=self._clock(),
        )
        self._store.subscriptions[row.id] = row
        return row

    def proposal(
        self,
        owner_id: str,
        payload: dict[str, Any],
        proposal_type: ProposalType = ProposalType.RECATEGORIZE,
        status: ProposalStatus = ProposalStatus.ACTIVE,
        expires_at: datetime | None = None,
        confidence: float | None = 0.6,
    ) -> Proposal:
        now = self._clock()
        row = Proposal(
            id=uuid.uuid4(),
            owner_id=owner_id,
            type=proposal_type,
            status=status,
            title="Recategorize suggestions",
            summary="Bulk recategorize proposal",
            payload=payload,
            confidence=confidence,
            created_at=now,
            expires_at=expires_at or now + timedelta(days=14),
            applied_patch_id=None,
        )
        self._store.proposals[row.id] = row
        return row

    def recategorize_proposal(self, owner_id: str, moves: list[tuple[Subscription, str]], **kwargs: Any) -> Proposal:
        """RECATEGORIZE proposal whose fromCategory values match the subscriptions right now."""
        payload = {
            "recommendations": [
                {"subscriptionId": str(sub.id), "fromCategory": sub.category, "toCategory": to_category}
                for sub, to_category in moves
            ]
        }
        return self.proposal(owner_id, payload, **kwargs)


@pytest.fixture
def settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="test",
        recommendation_backend="mock",
        openai_api_key=None,
        backend_timeout_seconds=0.2,
        proposal_ttl_days=14,
        output_summary_max_chars=500,
    )


@pytest.fixture
def owner_id() -> str:
    """Provide a consistent test owner ID."""
    return "owner-001"


@pytest.fixture
def other_owner_id() -> str:
    return "owner-002"


@pytest.fixture
def now() -> datetime:
    """Provide a consistent reference time."""
    return datetime(2026, 10, 16, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now: datetime) -> FrozenClock:
    return FrozenClock(now)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow(store: InMemoryStore, clock: FrozenClock) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(store, clock)


@pytest.fixture
def seed(store: InMemoryStore, clock: FrozenClock) -> Seeder:
    return Seeder(store, clock)


@pytest.fixture
def backend() -> MockRecommendationBackend:
    return MockRecommendationBackend()
