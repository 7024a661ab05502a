"""Immutable value objects passed between services and the recommendation backend.

None of these are persisted directly; they are the redacted, validated
shapes that cross the backend boundary and feed the patch builder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from substream_assist.core.models import BillingInterval


@dataclass(frozen=True)
class SubscriptionSummary:
    """Redacted view of a subscription, safe to send to an external backend.

    Never carries owner, session, or device identifiers.
    """

    subscription_id: str
    name: str
    amount: Decimal
    currency: str
    billing_interval: BillingInterval
    next_billing_date: date
    category: str | None
    is_trial: bool

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase wire shape used in backend prompts."""
        return {
            "id": self.subscription_id,
            "name": self.name,
            "amount": str(self.amount),
            "currency": self.currency,
            "billingInterval": self.billing_interval.value,
            "nextBillingDate": self.next_billing_date.isoformat(),
            "category": self.category,
            "isTrial": self.is_trial,
        }


@dataclass(frozen=True)
class ExplainItem:
    subscription_id: str
    summary: str
    rationale: str | None = None


@dataclass(frozen=True)
class ExplainResult:
    """Ordered explanation items plus an optional overall confidence in [0, 1]."""

    items: tuple[ExplainItem, ...]
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [
                {"subscriptionId": i.subscription_id, "summary": i.summary, "rationale": i.rationale}
                for i in self.items
            ],
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ProposalDraft:
    """Validated backend output for a propose call, before it is stored."""

    title: str
    summary: str
    payload: dict[str, Any]
    confidence: float | None = None


@dataclass(frozen=True)
class PatchEntry:
    """One category move: subscription_id goes from from_category to to_category."""

    subscription_id: str
    from_category: str | None
    to_category: str | None

    def mirrored(self) -> PatchEntry:
        return PatchEntry(
            subscription_id=self.subscription_id,
            from_category=self.to_category,
            to_category=self.from_category,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "fromCategory": self.from_category,
            "toCategory": self.to_category,
        }


@dataclass(frozen=True)
class BuiltPatch:
    """Forward entries and their exact mirror, computed together at apply time."""

    forward: tuple[PatchEntry, ...]
    rollback: tuple[PatchEntry, ...] = field(default=())

    @property
    def subscription_ids(self) -> list[str]:
        return [entry.subscription_id for entry in self.forward]

    def forward_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.forward]

    def rollback_dicts(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.rollback]
