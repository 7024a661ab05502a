"""SQLAlchemy repositories for Substream Assist.

All repositories implement the interfaces defined in core/interfaces.py and
share the request's AsyncSession through SqlAlchemyUnitOfWork. Status and
category writes are issued as conditional UPDATEs so a concurrent writer
that got there first makes the statement match zero rows.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Generic, TypeVar

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from substream_assist.core.models import (
    ActionLogEntry,
    AssistPermission,
    AuditEntry,
    Patch,
    PatchStatus,
    Proposal,
    ProposalStatus,
    Subscription,
)
from substream_assist.database import Base
from substream_assist.observability import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


def _parse_uuids(values: Collection[str]) -> list[uuid.UUID]:
    parsed: list[uuid.UUID] = []
    for value in values:
        try:
            parsed.append(uuid.UUID(str(value)))
        except ValueError:
            continue
    return parsed


def _category_matches(expected: str | None) -> Any:
    if expected is None:
        return Subscription.category.is_(None)
    return Subscription.category == expected


class BaseRepository(Generic[ModelT]):
    """Shared session handling and inserts."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def _add(self, instance: ModelT) -> ModelT:
        self._session.add(instance)
        await self._session.flush()
        return instance


class SubscriptionRepository(BaseRepository[Subscription]):
    """Repository for assist_subscriptions."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Subscription)

    async def list_by_owner(self, owner_id: str) -> list[Subscription]:
        query = (
            select(Subscription)
            .where(Subscription.owner_id == owner_id)
            .order_by(Subscription.created_at, Subscription.id)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_by_ids(self, owner_id: str, subscription_ids: Collection[str]) -> list[Subscription]:
        ids = _parse_uuids(subscription_ids)
        if not ids:
            return []
        query = select(Subscription).where(Subscription.owner_id == owner_id, Subscription.id.in_(ids))
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def update_category_if_matches(
        self,
        owner_id: str,
        subscription_id: str,
        expected_category: str | None,
        new_category: str | None,
    ) -> bool:
        ids = _parse_uuids([subscription_id])
        if not ids:
            return False
        statement = (
            update(Subscription)
            .where(
                Subscription.id == ids[0],
                Subscription.owner_id == owner_id,
                _category_matches(expected_category),
            )
            .values(category=new_category)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1

    async def set_category(self, owner_id: str, subscription_id: str, new_category: str | None) -> bool:
        ids = _parse_uuids([subscription_id])
        if not ids:
            return False
        statement = (
            update(Subscription)
            .where(Subscription.id == ids[0], Subscription.owner_id == owner_id)
            .values(category=new_category)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1


class PermissionRepository(BaseRepository[AssistPermission]):
    """Repository for assist_permissions."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AssistPermission)

    async def is_assist_enabled(self, owner_id: str) -> bool:
        row = await self._session.get(AssistPermission, owner_id)
        return bool(row and row.ai_assist_enabled)

    async def set_assist_enabled(self, owner_id: str, enabled: bool, now: datetime) -> bool:
        row = await self._session.get(AssistPermission, owner_id, with_for_update=True)
        if row is None:
            await self._add(AssistPermission(owner_id=owner_id, ai_assist_enabled=enabled, updated_at=now))
            return False
        previous = row.ai_assist_enabled
        row.ai_assist_enabled = enabled
        row.updated_at = now
        await self._session.flush()
        return previous


class ProposalRepository(BaseRepository[Proposal]):
    """Repository for assist_proposals."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Proposal)

    async def create(self, proposal: Proposal) -> Proposal:
        return await self._add(proposal)

    async def get_for_owner(self, owner_id: str, proposal_id: uuid.UUID) -> Proposal | None:
        query = select(Proposal).where(Proposal.id == proposal_id, Proposal.owner_id == owner_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_owner(self, owner_id: str, statuses: Collection[ProposalStatus]) -> list[Proposal]:
        query = (
            select(Proposal)
            .where(Proposal.owner_id == owner_id, Proposal.status.in_(list(statuses)))
            .order_by(Proposal.created_at.desc(), Proposal.id.desc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def expire_due(self, owner_id: str, now: datetime) -> int:
        statement = (
            update(Proposal)
            .where(
                Proposal.owner_id == owner_id,
                Proposal.status == ProposalStatus.ACTIVE,
                Proposal.expires_at <= now,
            )
            .values(status=ProposalStatus.EXPIRED)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(statement)
        return result.rowcount or 0

    async def transition(
        self,
        proposal_id: uuid.UUID,
        expected: ProposalStatus,
        target: ProposalStatus,
        **changes: Any,
    ) -> bool:
        statement = (
            update(Proposal)
            .where(Proposal.id == proposal_id, Proposal.status == expected)
            .values(status=target, **changes)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1


class PatchRepository(BaseRepository[Patch]):
    """Repository for assist_patches."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, Patch)

    async def create(self, patch: Patch) -> Patch:
        return await self._add(patch)

    async def get_for_owner(self, owner_id: str, patch_id: uuid.UUID) -> Patch | None:
        query = select(Patch).where(Patch.id == patch_id, Patch.owner_id == owner_id)
        result = await self._session.execute(query)
        return result.scalar_one_or_none()

    async def list_by_owner(self, owner_id: str) -> list[Patch]:
        query = (
            select(Patch)
            .where(Patch.owner_id == owner_id)
            .order_by(Patch.applied_at.desc(), Patch.id.desc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def transition(
        self,
        patch_id: uuid.UUID,
        expected: PatchStatus,
        target: PatchStatus,
        **changes: Any,
    ) -> bool:
        statement = (
            update(Patch)
            .where(Patch.id == patch_id, Patch.status == expected)
            .values(status=target, **changes)
            .execution_options(synchronize_session="fetch")
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1


class ActionLogRepository(BaseRepository[ActionLogEntry]):
    """Repository for assist_action_logs. Append-only."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, ActionLogEntry)

    async def append(self, entry: ActionLogEntry) -> ActionLogEntry:
        return await self._add(entry)

    async def list_by_owner(
        self,
        owner_id: str,
        limit: int,
        cursor: uuid.UUID | None = None,
    ) -> list[ActionLogEntry]:
        query = select(ActionLogEntry).where(ActionLogEntry.owner_id == owner_id)
        if cursor is not None:
            anchor = (
                select(ActionLogEntry.created_at)
                .where(ActionLogEntry.id == cursor, ActionLogEntry.owner_id == owner_id)
                .scalar_subquery()
            )
            query = query.where(
                or_(
                    ActionLogEntry.created_at < anchor,
                    and_(ActionLogEntry.created_at == anchor, ActionLogEntry.id < cursor),
                )
            )
        query = query.order_by(ActionLogEntry.created_at.desc(), ActionLogEntry.id.desc()).limit(limit)
        result = await self._session.execute(query)
        return list(result.scalars().all())


class AuditRepository(BaseRepository[AuditEntry]):
    """Repository for assist_audit_logs. Append-only."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, AuditEntry)

    async def append(self, entry: AuditEntry) -> AuditEntry:
        return await self._add(entry)

    async def list_by_owner(self, owner_id: str, offset: int, limit: int) -> list[AuditEntry]:
        query = (
            select(AuditEntry)
            .where(AuditEntry.owner_id == owner_id)
            .order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def count_by_owner(self, owner_id: str) -> int:
        query = select(func.count()).select_from(AuditEntry).where(AuditEntry.owner_id == owner_id)
        result = await self._session.execute(query)
        return int(result.scalar_one())


class SqlAlchemyUnitOfWork:
    """Unit of work over one AsyncSession.

    atomic() commits on normal exit and rolls back on any exception. Nested
    atomic() blocks join the outermost one.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._depth = 0
        self.subscriptions = SubscriptionRepository(session)
        self.permissions = PermissionRepository(session)
        self.proposals = ProposalRepository(session)
        self.patches = PatchRepository(session)
        self.action_logs = ActionLogRepository(session)
        self.audit_logs = AuditRepository(session)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield
        except BaseException:
            await self._session.rollback()
            logger.debug("unit_of_work_rolled_back")
            raise
        else:
            await self._session.commit()
        finally:
            self._depth = 0
