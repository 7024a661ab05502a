"""Action log and audit trail bookkeeping.

ActivityRecorder.track() wraps one explain/propose/apply/rollback call:

    async with recorder.track(owner_id, ActionType.APPLY, topic="RECATEGORIZE") as trace:
        ...
        await trace.requested(proposalId=str(proposal_id))
        ...
        await trace.succeed(output_summary=proposal.summary, confidence=proposal.confidence)

Exactly one ActionLogEntry is written per call. AssistError escaping the
block is recorded as a failure and re-raised; any other exception is
recorded as a transaction failure and re-raised as InfrastructureError.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable

from substream_assist.core.interfaces import IUnitOfWork
from substream_assist.core.models import ActionLogEntry, ActionType, AuditEntry
from substream_assist.core.redaction import scrub_metadata, truncate_summary
from substream_assist.errors import AssistError, ErrorCode, InfrastructureError
from substream_assist.observability import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionTrace:
    """Bookkeeping handle for a single tracked call."""

    def __init__(
        self,
        recorder: ActivityRecorder,
        owner_id: str,
        action_type: ActionType,
        topic: str | None,
        input_redacted: dict[str, Any] | None,
    ) -> None:
        self._recorder = recorder
        self.owner_id = owner_id
        self.action_type = action_type
        self.topic = topic
        self.input_redacted: dict[str, Any] = input_redacted or {}
        self.finished = False
        self._started = time.perf_counter()

    @property
    def kind(self) -> str:
        return self.action_type.value.lower()

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    async def requested(self, **metadata: Any) -> None:
        await self._recorder.audit_trail.record(self.owner_id, f"ai.{self.kind}_requested", **metadata)

    async def succeed(
        self,
        output_summary: str | None,
        confidence: float | None = None,
        **metadata: Any,
    ) -> None:
        await self._finish(True, output_summary, confidence, None, metadata)

    async def fail(self, error: AssistError, **metadata: Any) -> None:
        await self._finish(False, None, None, error, metadata)

    async def _finish(
        self,
        success: bool,
        output_summary: str | None,
        confidence: float | None,
        error: AssistError | None,
        metadata: dict[str, Any],
    ) -> None:
        if self.finished:
            raise RuntimeError(f"{self.kind} trace already finished")
        self.finished = True
        latency_ms = self.elapsed_ms()

        entry = ActionLogEntry(
            owner_id=self.owner_id,
            action_type=self.action_type,
            topic=self.topic,
            input_redacted=self.input_redacted,
            output_summary=truncate_summary(output_summary, self._recorder.output_summary_max_chars),
            confidence=confidence,
            provider=self._recorder.provider,
            success=success,
            latency_ms=latency_ms,
            error_reason=error.reason if error is not None else None,
            created_at=self._recorder.clock(),
        )
        outcome = "succeeded" if success else "failed"
        audit_metadata: dict[str, Any] = {"latencyMs": latency_ms, **metadata}
        if error is not None:
            audit_metadata["reason"] = error.reason

        async with self._recorder.uow.atomic():
            await self._recorder.uow.action_logs.append(entry)
            await self._recorder.audit_trail.write(self.owner_id, f"ai.{self.kind}_{outcome}", audit_metadata)

        log = logger.info if success else logger.warning
        log(
            f"assist_{self.kind}_{outcome}",
            owner_id=self.owner_id,
            topic=self.topic,
            provider=self._recorder.provider,
            latency_ms=latency_ms,
            reason=error.reason if error is not None else None,
        )


class AuditTrail:
    """Append-only audit writer. Metadata is scrubbed of secret-looking keys."""

    def __init__(self, uow: IUnitOfWork, clock: Clock = utcnow) -> None:
        self._uow = uow
        self._clock = clock

    async def write(self, owner_id: str, action: str, metadata: dict[str, Any]) -> None:
        """Append an audit entry inside the caller's transaction."""
        await self._uow.audit_logs.append(
            AuditEntry(
                owner_id=owner_id,
                action=action,
                metadata_=scrub_metadata(metadata),
                created_at=self._clock(),
            )
        )

    async def record(self, owner_id: str, action: str, **metadata: Any) -> None:
        """Append and commit a standalone audit entry."""
        async with self._uow.atomic():
            await self.write(owner_id, action, metadata)


class ActivityRecorder:
    """Writes action log entries and their audit entries through a unit of work."""

    def __init__(
        self,
        uow: IUnitOfWork,
        provider: str,
        output_summary_max_chars: int = 500,
        clock: Clock = utcnow,
    ) -> None:
        self.uow = uow
        self.provider = provider
        self.output_summary_max_chars = output_summary_max_chars
        self.clock = clock
        self.audit_trail = AuditTrail(uow, clock)

    @asynccontextmanager
    async def track(
        self,
        owner_id: str,
        action_type: ActionType,
        topic: str | None = None,
        input_redacted: dict[str, Any] | None = None,
    ) -> AsyncIterator[ActionTrace]:
        """Track one call, guaranteeing a single action log entry for it."""
        trace = ActionTrace(self, owner_id, action_type, topic, input_redacted)
        try:
            yield trace
        except AssistError as exc:
            if not trace.finished:
                await self._record_failure(trace, exc)
            raise
        except Exception as exc:
            error = InfrastructureError(
                f"{action_type.value.title()} failed unexpectedly",
                error_code=ErrorCode.TRANSACTION_FAILED,
            )
            logger.exception("assist_action_unexpected_error", owner_id=owner_id, action=trace.kind)
            if not trace.finished:
                await self._record_failure(trace, error)
            raise error from exc
        else:
            if not trace.finished:
                logger.warning("assist_action_trace_unfinished", owner_id=owner_id, action=trace.kind)

    async def _record_failure(self, trace: ActionTrace, error: AssistError) -> None:
        try:
            await trace.fail(error)
        except Exception:
            # The original error still propagates to the caller.
            logger.exception("assist_action_log_write_failed", owner_id=trace.owner_id, action=trace.kind)
