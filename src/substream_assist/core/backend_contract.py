"""Output schema every recommendation backend must satisfy.

Both the deterministic and the live backend run their raw output through
the validate_* functions below before handing it to the services, so the
services only ever see ExplainResult and ProposalDraft values that passed
one shared schema. Any violation raises BackendOutputError.
"""

from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from substream_assist.core.domain import ExplainItem, ExplainResult, ProposalDraft


class BackendOutputError(ValueError):
    """Raised when backend output does not match the contract."""


class _ContractModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ExplainItemOutput(_ContractModel):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    summary: str = Field(min_length=1, max_length=400)
    rationale: str | None = Field(default=None, min_length=1, max_length=400)


class ExplainOutput(_ContractModel):
    items: list[ExplainItemOutput] = Field(min_length=1)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class RecategorizeRecommendationOutput(_ContractModel):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    from_category: str | None = Field(default=None, alias="fromCategory", max_length=64)
    to_category: str = Field(alias="toCategory", min_length=1, max_length=64)
    rationale: str | None = Field(default=None, max_length=400)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class RecategorizePayloadOutput(_ContractModel):
    recommendations: list[RecategorizeRecommendationOutput]


class SavingsSuggestionOutput(_ContractModel):
    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    suggestion: str = Field(min_length=1, max_length=400)
    estimated_savings: float | None = Field(default=None, alias="estimatedSavings", ge=0.0)
    rationale: str | None = Field(default=None, max_length=400)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class SavingsPayloadOutput(_ContractModel):
    suggestions: list[SavingsSuggestionOutput] = Field(min_length=1)


class RecategorizeProposalOutput(_ContractModel):
    title: str = Field(min_length=1, max_length=200)
    summary: str = Field(min_length=1, max_length=300)
    payload: RecategorizePayloadOutput
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class SavingsProposalOutput(_ContractModel):
    title: str = Field(min_length=1, max_length=200)
    summary: str = Field(min_length=1, max_length=300)
    payload: SavingsPayloadOutput
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


def _check_references(referenced: list[str], allowed_ids: Iterable[str], unique: bool) -> None:
    allowed = set(allowed_ids)
    unknown = sorted({sid for sid in referenced if sid not in allowed})
    if unknown:
        raise BackendOutputError(f"Backend referenced unknown subscriptions: {', '.join(unknown)}")
    if unique and len(set(referenced)) != len(referenced):
        raise BackendOutputError("Backend referenced the same subscription more than once")


def validate_explain_output(raw: Any, allowed_ids: Iterable[str]) -> ExplainResult:
    """Validate raw explain output and convert it to an ExplainResult."""
    try:
        parsed = ExplainOutput.model_validate(raw)
    except PydanticValidationError as exc:
        raise BackendOutputError(f"Invalid explain output: {exc.error_count()} error(s)") from exc

    _check_references([item.subscription_id for item in parsed.items], allowed_ids, unique=False)
    return ExplainResult(
        items=tuple(
            ExplainItem(subscription_id=i.subscription_id, summary=i.summary, rationale=i.rationale)
            for i in parsed.items
        ),
        confidence=parsed.confidence,
    )


def validate_recategorize_output(raw: Any, allowed_ids: Iterable[str]) -> ProposalDraft:
    """Validate raw RECATEGORIZE proposal output and convert it to a ProposalDraft."""
    try:
        parsed = RecategorizeProposalOutput.model_validate(raw)
    except PydanticValidationError as exc:
        raise BackendOutputError(f"Invalid recategorize output: {exc.error_count()} error(s)") from exc

    recommendations = parsed.payload.recommendations
    _check_references([r.subscription_id for r in recommendations], allowed_ids, unique=True)
    return ProposalDraft(
        title=parsed.title,
        summary=parsed.summary,
        payload={
            "recommendations": [
                r.model_dump(by_alias=True, exclude_none=True) for r in recommendations
            ]
        },
        confidence=parsed.confidence,
    )


def validate_savings_output(raw: Any, allowed_ids: Iterable[str]) -> ProposalDraft:
    """Validate raw SAVINGS_LIST proposal output and convert it to a ProposalDraft."""
    try:
        parsed = SavingsProposalOutput.model_validate(raw)
    except PydanticValidationError as exc:
        raise BackendOutputError(f"Invalid savings output: {exc.error_count()} error(s)") from exc

    suggestions = parsed.payload.suggestions
    _check_references([s.subscription_id for s in suggestions], allowed_ids, unique=False)
    return ProposalDraft(
        title=parsed.title,
        summary=parsed.summary,
        payload={"suggestions": [s.model_dump(by_alias=True, exclude_none=True) for s in suggestions]},
        confidence=parsed.confidence,
    )
