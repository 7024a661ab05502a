"""Validate RECATEGORIZE payloads and build forward/rollback patches.

The rollback patch is computed exactly once, at apply time, by mirroring
the forward patch. It is never recomputed from live data afterwards.
"""

from typing import Any

from substream_assist.core.domain import BuiltPatch, PatchEntry


class PatchPayloadError(ValueError):
    """Raised when a proposal payload or stored patch is malformed."""


def _optional_category(entry: dict[str, Any], key: str, index: int) -> str | None:
    value = entry.get(key)
    if value is not None and not isinstance(value, str):
        raise PatchPayloadError(f"Entry {index}: {key} must be a string or null")
    return value


def _parse_entries(entries: Any, allow_null_target: bool, label: str) -> tuple[PatchEntry, ...]:
    if not isinstance(entries, list) or not entries:
        raise PatchPayloadError(f"{label} must be a non-empty list")

    parsed: list[PatchEntry] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise PatchPayloadError(f"Entry {index}: must be an object")

        subscription_id = entry.get("subscriptionId")
        if not isinstance(subscription_id, str) or not subscription_id:
            raise PatchPayloadError(f"Entry {index}: subscriptionId must be a string")
        if subscription_id in seen:
            raise PatchPayloadError(f"Entry {index}: duplicate subscriptionId {subscription_id}")
        seen.add(subscription_id)

        to_category = entry.get("toCategory")
        if to_category is None and not allow_null_target:
            raise PatchPayloadError(f"Entry {index}: toCategory must be a string")
        if to_category is not None and not isinstance(to_category, str):
            raise PatchPayloadError(f"Entry {index}: toCategory must be a string")

        parsed.append(
            PatchEntry(
                subscription_id=subscription_id,
                from_category=_optional_category(entry, "fromCategory", index),
                to_category=to_category,
            )
        )
    return tuple(parsed)


def parse_recommendations(payload: Any) -> tuple[PatchEntry, ...]:
    """Parse a stored RECATEGORIZE payload into forward entries.

    Args:
        payload: The proposal payload, expected as {"recommendations": [...]}.

    Returns:
        One PatchEntry per recommendation, in payload order.

    Raises:
        PatchPayloadError: If the payload violates any validation rule.
    """
    if not isinstance(payload, dict):
        raise PatchPayloadError("Payload must be an object")
    return _parse_entries(payload.get("recommendations"), allow_null_target=False, label="recommendations")


def parse_patch_entries(raw: Any, allow_null_target: bool = True) -> tuple[PatchEntry, ...]:
    """Parse a stored forward or rollback patch list.

    Rollback entries may carry a null toCategory when the original category was unset.
    """
    return _parse_entries(raw, allow_null_target=allow_null_target, label="patch")


def build_recategorize_patch(forward: tuple[PatchEntry, ...]) -> BuiltPatch:
    """Pair forward entries with their mirrored rollback entries."""
    if not forward:
        raise PatchPayloadError("Cannot build an empty patch")
    return BuiltPatch(forward=forward, rollback=tuple(entry.mirrored() for entry in forward))
