"""Live recommendation backend over the OpenAI chat completions API.

Sends only redacted subscription summaries, asks for a JSON object, and
runs the parsed reply through the shared backend contract. Any HTTP,
transport, or decoding problem surfaces as an exception that the
services translate into a backend failure.

API docs: https://platform.openai.com/docs/api-reference/chat
"""

import json
from typing import Any

import httpx

from substream_assist.core.backend_contract import (
    BackendOutputError,
    validate_explain_output,
    validate_recategorize_output,
    validate_savings_output,
)
from substream_assist.core.domain import ExplainResult, ProposalDraft, SubscriptionSummary
from substream_assist.observability import get_logger
from substream_assist.settings import Settings

logger = get_logger(__name__)

SYSTEM_PROMPT = (
    "You review personal subscription data with short, neutral statements. "
    "Do not make decisions for the user. Respond ONLY with valid JSON matching requiredSchema."
)


class OpenAIRecommendationBackend:
    """Implements IRecommendationBackend against an OpenAI-compatible endpoint.

    Args:
        settings: Supplies the API key, model, base URL, and timeout.
        transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
    """

    name = "openai"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not settings.openai_api_key:
            raise ValueError("openai_api_key is required for the openai recommendation backend")
        self._api_key = settings.openai_api_key
        self._model = settings.openai_model
        self._base_url = settings.openai_base_url.rstrip("/")
        self._timeout = settings.backend_timeout_seconds
        self._transport = transport

    async def explain(self, topic: str, summaries: list[SubscriptionSummary]) -> ExplainResult:
        raw = await self._complete(
            task="Provide a short explanation for each subscription with respect to the topic.",
            summaries=summaries,
            extra={"topic": topic},
            schema={
                "items": "Array of { subscriptionId, summary (<=400 chars), rationale? (<=400 chars) }",
                "confidence": "Optional number 0-1 expressing certainty",
            },
        )
        return validate_explain_output(raw, [s.subscription_id for s in summaries])

    async def propose_recategorize(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        raw = await self._complete(
            task="Suggest a clearer category for each subscription that would benefit from one.",
            summaries=summaries,
            extra={},
            schema={
                "title": "Short title (<=200 chars)",
                "summary": "One sentence summary (<=300 chars)",
                "payload": {
                    "recommendations": "Array of { subscriptionId, fromCategory, toCategory, rationale?, confidence? }"
                },
                "confidence": "Optional number 0-1",
            },
        )
        return validate_recategorize_output(raw, [s.subscription_id for s in summaries])

    async def propose_savings_list(self, summaries: list[SubscriptionSummary]) -> ProposalDraft:
        raw = await self._complete(
            task="List subscriptions where the user could plausibly save money, with a short suggestion each.",
            summaries=summaries,
            extra={},
            schema={
                "title": "Short title (<=200 chars)",
                "summary": "One sentence summary (<=300 chars)",
                "payload": {
                    "suggestions": "Array of { subscriptionId, suggestion, estimatedSavings?, rationale?, confidence? }"
                },
                "confidence": "Optional number 0-1",
            },
        )
        return validate_savings_output(raw, [s.subscription_id for s in summaries])

    async def _complete(
        self,
        task: str,
        summaries: list[SubscriptionSummary],
        extra: dict[str, Any],
        schema: dict[str, Any],
    ) -> Any:
        """POST one chat completion and return the decoded JSON content.

        Raises:
            httpx.HTTPError: On HTTP or connection errors.
            BackendOutputError: When the reply has no content or is not JSON.
        """
        user_content = {
            "task": task,
            **extra,
            "subscriptions": [s.to_payload() for s in summaries],
            "requiredSchema": schema,
        }
        body = {
            "model": self._model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps(user_content)},
            ],
        }
        url = f"{self._base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self._api_key}"}

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.error(
                    "openai_http_error",
                    url=url,
                    status_code=exc.response.status_code,
                    response_text=exc.response.text[:500],
                )
                raise
            except httpx.RequestError as exc:
                logger.error("openai_connection_error", url=url, error=str(exc))
                raise

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise BackendOutputError("Unexpected completion envelope") from exc
        if not content:
            raise BackendOutputError("Empty response from recommendation backend")
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise BackendOutputError("Recommendation backend reply is not JSON") from exc
