"""Unit tests for PatchService: apply, rollback, and patch reads."""

import uuid

import pytest

from substream_assist.core import services as services_module
from substream_assist.core.models import ActionType, PatchStatus, PatchType, ProposalStatus, ProposalType
from substream_assist.core.services import PatchService, RecommendationService
from substream_assist.errors import (
    ConflictError,
    ErrorCode,
    InfrastructureError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)


@pytest.fixture
def service(uow, backend, settings, clock) -> PatchService:
    return PatchService(uow=uow, backend=backend, settings=settings, clock=clock)


@pytest.fixture
def enabled(seed, owner_id: str) -> None:
    seed.enable_assist(owner_id)


@pytest.mark.usefixtures("enabled")
class TestApplyProposal:
    """Tests for PatchService.apply_proposal."""

    @pytest.mark.asyncio
    async def test_apply_moves_categories_and_records_patch(self, service, seed, store, owner_id: str, now) -> None:
        aws = seed.subscription(owner_id, name="AWS", category="Work")
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])

        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert aws.category == "Cloud"
        assert patch.status == PatchStatus.APPLIED
        assert patch.type == PatchType.RECATEGORIZE
        assert patch.proposal_id == proposal.id
        assert patch.applied_at == now
        assert patch.forward_patch == [{"subscriptionId": str(aws.id), "fromCategory": "Work", "toCategory": "Cloud"}]
        assert patch.rollback_patch == [{"subscriptionId": str(aws.id), "fromCategory": "Cloud", "toCategory": "Work"}]
        assert proposal.status == ProposalStatus.APPLIED
        assert proposal.applied_patch_id == patch.id
        assert store.patches == {patch.id: patch}

    @pytest.mark.asyncio
    async def test_rollback_entries_mirror_forward_entries(self, service, seed, owner_id: str) -> None:
        first = seed.subscription(owner_id, category="Work")
        second = seed.subscription(owner_id, category=None)
        third = seed.subscription(owner_id, category="Fun")
        proposal = seed.recategorize_proposal(owner_id, [(first, "Cloud"), (second, "Ops"), (third, "Fun")])

        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert len(patch.rollback_patch) == len(patch.forward_patch) == 3
        for forward, rollback in zip(patch.forward_patch, patch.rollback_patch):
            assert rollback["subscriptionId"] == forward["subscriptionId"]
            assert rollback["fromCategory"] == forward["toCategory"]
            assert rollback["toCategory"] == forward["fromCategory"]

    @pytest.mark.asyncio
    async def test_apply_writes_one_log_and_audit_pair(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])

        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert len(store.action_logs) == 1
        entry = store.action_logs[0]
        assert entry.action_type == ActionType.APPLY
        assert entry.success is True
        assert entry.topic == "RECATEGORIZE"
        assert entry.input_redacted["proposalId"] == str(proposal.id)
        assert store.audit_actions(owner_id) == ["ai.apply_requested", "ai.apply_succeeded"]
        assert store.audit_logs[-1].metadata_["patchId"] == str(patch.id)

    @pytest.mark.asyncio
    async def test_stale_category_rejects_whole_batch(self, service, seed, store, owner_id: str) -> None:
        fresh = seed.subscription(owner_id, category="Work")
        stale = seed.subscription(owner_id, category="Work")
        proposal = seed.recategorize_proposal(owner_id, [(fresh, "Cloud"), (stale, "Cloud")])
        stale.category = "Personal"

        with pytest.raises(ConflictError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == ErrorCode.STALE_SUBSCRIPTION_CATEGORY
        assert exc_info.value.details == {"subscriptionIds": [str(stale.id)]}
        assert fresh.category == "Work"
        assert stale.category == "Personal"
        assert proposal.status == ProposalStatus.ACTIVE
        assert store.patches == {}
        assert store.action_logs[0].error_reason == "stale_subscription_category"

    @pytest.mark.asyncio
    async def test_second_apply_is_invalid_status(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        await service.apply_proposal(owner_id, proposal.id, approved=True)

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS
        assert len(store.patches) == 1
        assert [e.success for e in store.action_logs] == [True, False]

    @pytest.mark.asyncio
    async def test_approval_is_required(self, service, seed, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=False)

        assert exc_info.value.error_code == ErrorCode.APPROVAL_REQUIRED
        assert aws.category == "Work"
        assert proposal.status == ProposalStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_savings_list_cannot_be_applied(self, service, seed, owner_id: str) -> None:
        gym = seed.subscription(owner_id, name="Gym")
        proposal = seed.proposal(
            owner_id,
            {"suggestions": [{"subscriptionId": str(gym.id), "suggestion": "Switch to annual"}]},
            proposal_type=ProposalType.SAVINGS_LIST,
        )

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.UNSUPPORTED_TYPE
        assert proposal.status == ProposalStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_dismissed_proposal_is_invalid_status(self, service, seed, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")], status=ProposalStatus.DISMISSED)

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS

    @pytest.mark.asyncio
    async def test_expired_proposal_is_invalid_status(self, service, seed, clock, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        clock.advance(days=14)

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS
        assert proposal.status == ProposalStatus.EXPIRED
        assert aws.category == "Work"

    @pytest.mark.asyncio
    async def test_malformed_payload_is_invalid_payload(self, service, seed, owner_id: str) -> None:
        proposal = seed.proposal(owner_id, {"recommendations": [{"toCategory": "Cloud"}]})

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.INVALID_PAYLOAD

    @pytest.mark.asyncio
    async def test_unknown_proposal_is_not_found(self, service, store, owner_id: str) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.apply_proposal(owner_id, uuid.uuid4(), approved=True)

        assert exc_info.value.error_code == ErrorCode.PROPOSAL_NOT_FOUND
        assert store.action_logs[0].error_reason == "proposal_not_found"

    @pytest.mark.asyncio
    async def test_foreign_proposal_is_not_found(self, service, seed, owner_id: str, other_owner_id: str) -> None:
        seed.enable_assist(other_owner_id)
        theirs = seed.subscription(other_owner_id)
        proposal = seed.recategorize_proposal(other_owner_id, [(theirs, "Cloud")])

        with pytest.raises(NotFoundError):
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert theirs.category == "Work"

    @pytest.mark.asyncio
    async def test_deleted_subscription_is_not_found(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        del store.subscriptions[aws.id]

        with pytest.raises(NotFoundError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.SUBSCRIPTION_NOT_FOUND
        assert exc_info.value.details == {"subscriptionIds": [str(aws.id)]}
        assert proposal.status == ProposalStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_store_failure_rolls_back_category_updates(self, service, seed, store, uow, owner_id: str) -> None:
        first = seed.subscription(owner_id, category="Work")
        second = seed.subscription(owner_id, category="Home")
        proposal = seed.recategorize_proposal(owner_id, [(first, "Cloud"), (second, "Cloud")])
        store.fail_on.add("patches.create")

        with pytest.raises(InfrastructureError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.error_code == ErrorCode.TRANSACTION_FAILED
        assert (first.category, second.category) == ("Work", "Home")
        assert proposal.status == ProposalStatus.ACTIVE
        assert proposal.applied_patch_id is None
        assert store.patches == {}
        assert uow.rollbacks == 1
        assert len(store.action_logs) == 1
        assert store.action_logs[0].error_reason == "transaction_failed"

    @pytest.mark.asyncio
    async def test_failed_proposal_transition_rolls_back(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        store.fail_on.add("proposals.transition")

        with pytest.raises(InfrastructureError):
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert aws.category == "Work"
        assert store.patches == {}

    @pytest.mark.asyncio
    async def test_concurrent_apply_loser_is_invalid_status(
        self, service, seed, store, owner_id: str, monkeypatch
    ) -> None:
        aws = seed.subscription(owner_id, category="Work")
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        winner_patch_id = uuid.uuid4()
        check_transition = services_module.require_proposal_transition

        def winner_commits_first(current: ProposalStatus, target: ProposalStatus) -> None:
            # Another request applies the same proposal after our prechecks passed.
            proposal.status = ProposalStatus.APPLIED
            proposal.applied_patch_id = winner_patch_id
            aws.category = "Cloud"
            check_transition(current, target)

        monkeypatch.setattr(services_module, "require_proposal_transition", winner_commits_first)

        with pytest.raises(ValidationError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS
        assert store.patches == {}
        assert proposal.applied_patch_id == winner_patch_id
        assert aws.category == "Cloud"
        assert store.action_logs[-1].error_reason == "invalid_status"

    @pytest.mark.asyncio
    async def test_generated_proposal_keeps_long_categories(
        self, service, uow, backend, settings, clock, seed, owner_id: str
    ) -> None:
        acme = seed.subscription(owner_id, name="Acme Widgets", category="Household utilities and maintenance")
        aws = seed.subscription(owner_id, name="AWS", category="Work")
        recommendations = RecommendationService(uow=uow, backend=backend, settings=settings, clock=clock)
        proposal = await recommendations.propose(owner_id, ProposalType.RECATEGORIZE)

        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert acme.category == "Household utilities and maintenance"
        assert aws.category == "Cloud"
        assert [e["subscriptionId"] for e in patch.forward_patch] == [str(aws.id)]

    @pytest.mark.asyncio
    async def test_null_from_category_round_trip(self, service, seed, owner_id: str) -> None:
        untagged = seed.subscription(owner_id, name="Dropbox", category=None)
        proposal = seed.recategorize_proposal(owner_id, [(untagged, "Cloud")])

        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        assert untagged.category == "Cloud"
        assert patch.rollback_patch[0]["toCategory"] is None

        await service.rollback_patch(owner_id, patch.id)
        assert untagged.category is None


@pytest.mark.usefixtures("enabled")
class TestRollbackPatch:
    """Tests for PatchService.rollback_patch."""

    @pytest.mark.asyncio
    async def test_apply_then_rollback_restores_everything(self, service, seed, store, clock, owner_id: str) -> None:
        aws = seed.subscription(owner_id, name="AWS", category="Work")
        netflix = seed.subscription(owner_id, name="Netflix", category="Fun")
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud"), (netflix, "Entertainment")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        clock.advance(minutes=5)

        rolled_back = await service.rollback_patch(owner_id, patch.id)

        assert rolled_back is patch
        assert (aws.category, netflix.category) == ("Work", "Fun")
        assert patch.status == PatchStatus.ROLLED_BACK
        assert patch.rolled_back_at == clock()
        assert proposal.status == ProposalStatus.ROLLED_BACK
        rollback_log = store.action_logs[-1]
        assert rollback_log.action_type == ActionType.ROLLBACK
        assert rollback_log.success is True
        assert rollback_log.output_summary == "Restored 2 subscription categories"
        assert store.audit_actions(owner_id) == [
            "ai.apply_requested",
            "ai.apply_succeeded",
            "ai.rollback_requested",
            "ai.rollback_succeeded",
        ]

    @pytest.mark.asyncio
    async def test_rollback_ignores_later_manual_edits(self, service, seed, owner_id: str) -> None:
        aws = seed.subscription(owner_id, category="Work")
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Ops")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        aws.category = "Infra"

        await service.rollback_patch(owner_id, patch.id)

        assert aws.category == "Work"

    @pytest.mark.asyncio
    async def test_second_rollback_is_invalid_status(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        await service.rollback_patch(owner_id, patch.id)
        aws.category = "Later"

        with pytest.raises(ValidationError) as exc_info:
            await service.rollback_patch(owner_id, patch.id)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS
        assert aws.category == "Later"
        assert store.action_logs[-1].error_reason == "invalid_status"

    @pytest.mark.asyncio
    async def test_concurrent_rollback_loser_touches_nothing(
        self, service, seed, store, clock, owner_id: str, monkeypatch
    ) -> None:
        aws = seed.subscription(owner_id, category="Work")
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        winner_time = clock()
        check_transition = services_module.require_patch_transition

        def winner_commits_first(current: PatchStatus, target: PatchStatus) -> None:
            # Another request rolls the patch back and the user edits the row afterwards.
            patch.status = PatchStatus.ROLLED_BACK
            patch.rolled_back_at = winner_time
            proposal.status = ProposalStatus.ROLLED_BACK
            aws.category = "Manual"
            check_transition(current, target)

        monkeypatch.setattr(services_module, "require_patch_transition", winner_commits_first)
        clock.advance(minutes=1)
        store.fail_on.add("subscriptions.set")

        with pytest.raises(ValidationError) as exc_info:
            await service.rollback_patch(owner_id, patch.id)

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == ErrorCode.INVALID_STATUS
        assert aws.category == "Manual"
        assert patch.rolled_back_at == winner_time
        assert store.action_logs[-1].error_reason == "invalid_status"

    @pytest.mark.asyncio
    async def test_unknown_patch_is_not_found(self, service, owner_id: str) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.rollback_patch(owner_id, uuid.uuid4())

        assert exc_info.value.error_code == ErrorCode.PATCH_NOT_FOUND

    @pytest.mark.asyncio
    async def test_corrupt_rollback_patch_is_invalid_patch(self, service, seed, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        patch.rollback_patch = [{"fromCategory": "Cloud"}]

        with pytest.raises(ValidationError) as exc_info:
            await service.rollback_patch(owner_id, patch.id)

        assert exc_info.value.error_code == ErrorCode.INVALID_PATCH
        assert aws.category == "Cloud"
        assert patch.status == PatchStatus.APPLIED

    @pytest.mark.asyncio
    async def test_inconsistent_proposal_aborts_rollback(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        proposal.status = ProposalStatus.DISMISSED

        with pytest.raises(InfrastructureError):
            await service.rollback_patch(owner_id, patch.id)

        assert aws.category == "Cloud"
        assert patch.status == PatchStatus.APPLIED
        assert patch.rolled_back_at is None

    @pytest.mark.asyncio
    async def test_rollback_requires_permission(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)
        seed.enable_assist(owner_id, enabled=False)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.rollback_patch(owner_id, patch.id)

        assert exc_info.value.to_dict() == {"message": "AI assistance disabled", "reason": "permission_denied"}
        assert aws.category == "Cloud"
        assert store.audit_actions(owner_id)[-1] == "ai.rollback_failed"


class TestPermissionGate:
    @pytest.mark.asyncio
    async def test_apply_denied_without_permission_row(self, service, seed, store, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.apply_proposal(owner_id, proposal.id, approved=True)

        assert exc_info.value.status_code == 403
        assert aws.category == "Work"
        assert store.action_logs[0].error_reason == "permission_denied"
        assert store.audit_actions(owner_id) == ["ai.apply_failed"]


@pytest.mark.usefixtures("enabled")
class TestPatchReads:
    @pytest.mark.asyncio
    async def test_get_patch_includes_proposal(self, service, seed, owner_id: str) -> None:
        aws = seed.subscription(owner_id)
        proposal = seed.recategorize_proposal(owner_id, [(aws, "Cloud")])
        patch = await service.apply_proposal(owner_id, proposal.id, approved=True)

        found, owning = await service.get_patch(owner_id, patch.id)

        assert found is patch
        assert owning is proposal

    @pytest.mark.asyncio
    async def test_list_patches_newest_first(self, service, seed, clock, owner_id: str) -> None:
        first_sub = seed.subscription(owner_id)
        second_sub = seed.subscription(owner_id)
        first = await service.apply_proposal(
            owner_id, seed.recategorize_proposal(owner_id, [(first_sub, "Cloud")]).id, approved=True
        )
        clock.advance(seconds=1)
        second = await service.apply_proposal(
            owner_id,
            seed.recategorize_proposal(owner_id, [(second_sub, "Cloud")]).id,
            approved=True,
        )

        assert await service.list_patches(owner_id) == [second, first]

    @pytest.mark.asyncio
    async def test_foreign_patch_is_not_found(self, service, seed, owner_id: str, other_owner_id: str) -> None:
        seed.enable_assist(other_owner_id)
        theirs = seed.subscription(other_owner_id)
        proposal = seed.recategorize_proposal(other_owner_id, [(theirs, "Cloud")])
        patch = await service.apply_proposal(other_owner_id, proposal.id, approved=True)

        with pytest.raises(NotFoundError):
            await service.get_patch(owner_id, patch.id)
        with pytest.raises(NotFoundError):
            await service.rollback_patch(owner_id, patch.id)

        assert theirs.category == "Cloud"
        assert await service.list_patches(owner_id) == []
