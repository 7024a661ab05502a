"""Reduce full subscription records to what may leave the service.

summarize_subscription() builds the view sent to a recommendation backend;
audit_view() and describe_input() build the smaller view written to the
action log and audit trail. Raw ORM rows never reach either sink.
"""

from typing import Any, Iterable, Sequence

from substream_assist.core.domain import SubscriptionSummary
from substream_assist.core.models import Subscription

NAME_MAX_CHARS = 64
CURRENCY_MAX_CHARS = 8

_SECRET_MARKERS = ("password", "secret", "token", "api_key", "apikey", "authorization", "cookie", "session")


def summarize_subscription(subscription: Subscription) -> SubscriptionSummary:
    category = subscription.category or None
    return SubscriptionSummary(
        subscription_id=str(subscription.id),
        name=subscription.name[:NAME_MAX_CHARS],
        amount=subscription.amount,
        currency=subscription.currency[:CURRENCY_MAX_CHARS],
        billing_interval=subscription.billing_interval,
        next_billing_date=subscription.next_billing_date,
        category=category,
        is_trial=subscription.is_trial,
    )


def summarize_subscriptions(subscriptions: Iterable[Subscription]) -> list[SubscriptionSummary]:
    return [summarize_subscription(s) for s in subscriptions]


def audit_view(summary: SubscriptionSummary) -> dict[str, Any]:
    """Minimal per-subscription record for logs: no name, no amount."""
    return {
        "subscriptionId": summary.subscription_id,
        "billingInterval": summary.billing_interval.value,
        "category": summary.category,
        "isTrial": summary.is_trial,
    }


def describe_input(summaries: Sequence[SubscriptionSummary], **extra: Any) -> dict[str, Any]:
    """Build the redacted input description stored on an action log entry."""
    description: dict[str, Any] = {
        "subscriptionCount": len(summaries),
        "subscriptions": [audit_view(s) for s in summaries],
    }
    description.update({k: v for k, v in extra.items() if v is not None})
    return description


def truncate_summary(text: str | None, max_chars: int = 500) -> str | None:
    """Cap text at max_chars, ending in '...' when it had to be cut."""
    if text is None or len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def scrub_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Drop secret-looking keys, recursively, before audit metadata is stored."""
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if any(marker in key.lower() for marker in _SECRET_MARKERS):
            continue
        if isinstance(value, dict):
            value = scrub_metadata(value)
        cleaned[key] = value
    return cleaned
