"""Deterministic offline recommendation backend.

Produces stable, templated output from the redacted summaries alone, with
no network access. Used in development, tests, and whenever the live
backend is not configured. Output goes through the same contract
validation as the live backend.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from substream_assist.core.backend_contract import (
    validate_explain_output,
    validate_recategorize_output,
    validate_savings_output,
)
from substream_assist.core.domain import ExplainResult, ProposalDraft, SubscriptionSummary
from substream_assist.core.models import BillingInterval, ExplainTopic

EXPLAIN_CONFIDENCE = 0.42
RECATEGORIZE_CONFIDENCE = 0.6
SAVINGS_CONFIDENCE = 0.55
ANNUAL_SAVINGS_RATE = Decimal("0.10")
FALLBACK_CATEGORY = "General"

# First matching keyword wins, so more specific names come first.
CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Cloud", ("aws", "azure", "gcp", "cloud", "dropbox", "drive", "backblaze", "digitalocean")),
    ("Entertainment", ("netflix", "spotify", "hulu", "disney", "youtube", "hbo", "twitch", "music")),
    ("Productivity", ("github", "slack", "notion", "figma", "zoom", "jira", "office", "adobe")),
    ("Health", ("gym", "fitness", "peloton", "strava", "headspace", "calm")),
    ("News", ("news", "times", "journal", "post", "substack", "medium")),
    ("Education", ("coursera", "udemy", "duolingo", "masterclass", "skillshare")),
)


def _cadence(interval: BillingInterval) -> str:
    return "yearly" if interval == BillingInterval.YEARLY else "monthly"


def _format_amount(summary: SubscriptionSummary) -> str:
    return f"{summary.currency} {summary.amount.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def suggest_category(name: str, current: str | None) -> str | None:
    """Keyword match on the subscription name.

    Untagged subscriptions without a keyword match get FALLBACK_CATEGORY.
    Returns None when the suggestion would not change the current category.
    """
    lowered = name.lower()
    suggested = next(
        (category for category, keywords in CATEGORY_KEYWORDS if any(k in lowered for k in keywords)),
        None,
    )
    if suggested is None and not current:
        suggested = FALLBACK_CATEGORY
    if suggested is None or suggested == current:
        return None
    return suggested


class MockRecommendationBackend:
    """Implements IRecommendationBackend without any external calls."""

    name = "mock"

    async def explain(self, topic: str, summaries: list[SubscriptionSummary]) -> ExplainResult:
        raw = {
            "items": [
                {
                    "subscriptionId": s.subscription_id,
                    "summary": self._explain_summary(topic, s),
                    "rationale": self._explain_rationale(topic, s),
                }
                for s in summaries
            ],
            "confidence": EXPLAIN_CONFIDENCE,
        }
        return validate_explain_output(raw, [s.subscription_id for s in summaries])

    async def propose_recategorize(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        recommendations: list[dict[str, Any]] = []
        for s in summaries:
            target = suggest_category(s.name, s.category)
            if target is None:
                continue
            recommendations.append(
                {
                    "subscriptionId": s.subscription_id,
                    "fromCategory": s.category,
                    "toCategory": target,
                    "rationale": f'Categorized based on name "{s.name}"',
                    "confidence": RECATEGORIZE_CONFIDENCE,
                }
            )
        raw = {
            "title": "Recategorize suggestions",
            "summary": "Bulk recategorize proposal",
            "payload": {"recommendations": recommendations},
            "confidence": RECATEGORIZE_CONFIDENCE,
        }
        return validate_recategorize_output(raw, [s.subscription_id for s in summaries])

    async def propose_savings_list(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        suggestions: list[dict[str, Any]] = []
        for s in summaries:
            if s.billing_interval == BillingInterval.YEARLY:
                continue
            estimate = (s.amount * 12 * ANNUAL_SAVINGS_RATE).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            suggestions.append(
                {
                    "subscriptionId": s.subscription_id,
                    "suggestion": f"Switching {s.name} to annual may save ~10%",
                    "estimatedSavings": float(estimate),
                    "rationale": "Annual plans are commonly discounted against twelve monthly charges.",
                    "confidence": SAVINGS_CONFIDENCE,
                }
            )
        if not suggestions:
            suggestions = [
                {
                    "subscriptionId": s.subscription_id,
                    "suggestion": f"Review whether {s.name} is still used before it renews",
                    "confidence": SAVINGS_CONFIDENCE,
                }
                for s in summaries
            ]
        raw = {
            "title": "Savings candidates",
            "summary": "Savings candidate list",
            "payload": {"suggestions": suggestions},
            "confidence": SAVINGS_CONFIDENCE,
        }
        return validate_savings_output(raw, [s.subscription_id for s in summaries])

    @staticmethod
    def _explain_summary(topic: str, s: SubscriptionSummary) -> str:
        cadence = _cadence(s.billing_interval)
        amount = _format_amount(s)
        if topic == ExplainTopic.DUPLICATE.value:
            return f"{s.name} might overlap with another service. It bills {cadence} at {amount}."
        if topic == ExplainTopic.YEARLY_VS_MONTHLY.value:
            return f"{s.name} bills on a {cadence} cadence at {amount}. Confirm that timing fits your usage."
        if topic == ExplainTopic.CATEGORY_RATIONALE.value:
            return f"{s.name} is treated as {s.category or 'uncategorized'} with a {cadence} charge of {amount}."
        return f"{s.name} has a {cadence} charge of {amount}."

    @staticmethod
    def _explain_rationale(topic: str, s: SubscriptionSummary) -> str:
        if topic == ExplainTopic.DUPLICATE.value:
            return "Check recent statements to confirm you still need overlapping services."
        if topic == ExplainTopic.YEARLY_VS_MONTHLY.value:
            if s.billing_interval == BillingInterval.YEARLY:
                return "Annual billing can lower total cost if you keep the service long term."
            return "Monthly billing keeps flexibility to pause or cancel sooner."
        if topic == ExplainTopic.CATEGORY_RATIONALE.value:
            if s.category:
                return f'Category comes from your saved tag "{s.category}".'
            return "No category was set; consider tagging it for clearer reports."
        return "Review details to ensure this subscription still makes sense."
