"""
Job Processor - Token-aware wrapper around queue job handlers.

Processing discipline for every job:
1. Mark the generation record `processing`
2. Run the handler (bounded by a timeout)
3. On success, debit tokens per the queue's policy, then mark `completed`
4. On failure, optionally charge, then retry (attempts left) or dead-letter
5. If a step after a successful debit fails, credit the tokens back; a failed
   credit back is escalated as a critical alert and is never retried

Handlers are plain coroutines `async def handler(job) -> JobResult`.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from tokengate.exceptions import RollbackFailedError, TokenChargeError, TokenGateError
from tokengate.models.api import OperationType
from tokengate.models.domain import TokenCreditOptions, TokenDebitOptions, TokenOperationResult
from tokengate.observability.alerts import AlertManager
from tokengate.observability.logging import log_context
from tokengate.observability.metrics import metrics, track_job
from tokengate.services.generations import GenerationService
from tokengate.services.token_service import TokenService
from tokengate.worker.policy import TokenPolicy

logger = get_logger(__name__)

ProgressReporter = Callable[[Any], Awaitable[None]]


# ============================================================================
# Job Types
# ============================================================================


@dataclass
class Job:
    """
    One delivery of a queued job.

    `attempts_made` counts this delivery (1 on the first run).
    """

    id: str
    queue: str
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: UUID | None = None
    generation_id: UUID | None = None
    attempts_made: int = 1
    max_attempts: int = 3
    progress_reporter: ProgressReporter | None = None

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)


@dataclass(frozen=True)
class JobResult:
    """What a handler returns. `retryable=False` skips queue retries."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True


class JobStatus(str, Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    ROLLBACK_FAILED = "rollback_failed"


@dataclass(frozen=True)
class JobOutcome:
    status: JobStatus
    result: JobResult | None = None
    error: str | None = None
    tokens_charged: int = 0
    ledger_entry_id: UUID | None = None
    retry_scheduled: bool = False


JobHandler = Callable[[Job], Awaitable[JobResult]]


# ============================================================================
# Processing
# ============================================================================


async def process_job(
    job: Job,
    policy: TokenPolicy,
    handler: JobHandler,
    *,
    token_service: TokenService,
    generations: GenerationService | None = None,
    alerts: AlertManager | None = None,
    timeout: float | None = None,
) -> JobOutcome:
    """
    Run one job delivery under the queue's token policy.

    Never raises for job failures; the outcome says whether the queue should
    retry.
    """
    with log_context(job_id=job.id, queue=job.queue), track_job(job.queue) as tracker:
        logger.info(
            "job_started",
            attempt=job.attempts_made,
            max_attempts=job.max_attempts,
            token_charging=policy.enabled,
        )
        outcome = await _process(job, policy, handler, token_service, generations, alerts, timeout)
        tracker.set_status(outcome.status.value)
        return outcome


async def update_progress(job: Job, progress: Any) -> None:
    """Forward handler progress to the queue infrastructure."""
    if job.progress_reporter is None:
        return
    await job.progress_reporter(progress)
    logger.debug("job_progress_updated", job_id=job.id, progress=progress)


async def _process(
    job: Job,
    policy: TokenPolicy,
    handler: JobHandler,
    token_service: TokenService,
    generations: GenerationService | None,
    alerts: AlertManager | None,
    timeout: float | None,
) -> JobOutcome:
    try:
        if generations is not None and job.generation_id is not None:
            await generations.mark_processing(job.generation_id)
        result = await _execute(job, handler, timeout)
    except TimeoutError:
        result = JobResult(success=False, error=f"Job timed out after {timeout}s")
    except TokenGateError as e:
        result = JobResult(success=False, error=str(e), retryable=False)
    except Exception as e:
        logger.exception("job_handler_raised", error=str(e))
        result = JobResult(success=False, error=str(e) or type(e).__name__)

    if not result.success:
        return await _handle_failure(
            job,
            policy,
            result.error or "Job failed",
            result.retryable,
            token_service,
            generations,
            alerts,
            result=result,
            charge=True,
        )

    # Charge only after the work succeeded
    debit: TokenOperationResult | None = None
    tokens_charged = 0
    if policy.enabled and job.user_id is not None:
        tokens_charged = policy.cost()
        debit = await token_service.debit(
            job.user_id,
            TokenDebitOptions(
                operation_type=policy.operation_type,
                amount=tokens_charged,
                metadata={
                    "job_id": job.id,
                    "queue": job.queue,
                    "generation_id": str(job.generation_id) if job.generation_id else None,
                },
            ),
        )
        if not debit.success:
            charge_error = TokenChargeError(debit.error or "debit refused")
            logger.error(
                "job_token_debit_failed",
                user_id=str(job.user_id),
                amount=tokens_charged,
                deficit=debit.deficit,
                error=debit.error,
            )
            if alerts is not None:
                await alerts.alert_queue_failure(
                    job.queue, charge_error, {"job_id": job.id, "user_id": str(job.user_id)}
                )
            # Insufficient balance will not change on retry
            return await _handle_failure(
                job,
                policy,
                str(charge_error),
                debit.deficit is None,
                token_service,
                generations,
                alerts,
                result=result,
                charge=False,
            )
        logger.info(
            "job_tokens_debited",
            user_id=str(job.user_id),
            amount=tokens_charged,
            new_balance=debit.new_balance,
            ledger_entry_id=str(debit.ledger_entry_id),
        )

    try:
        if generations is not None and job.generation_id is not None:
            await generations.mark_completed(
                job.generation_id,
                result_urls=(result.data or {}).get("urls"),
                tokens_used=tokens_charged,
            )
    except Exception as e:
        error = f"Finalization failed: {e}"
        logger.error("job_finalization_failed", error=str(e))
        if debit is not None:
            rolled_back = await _rollback(job, tokens_charged, debit, error, token_service, alerts)
            if not rolled_back:
                await _record_failure(generations, job, error, dead_lettered=True)
                return JobOutcome(
                    status=JobStatus.ROLLBACK_FAILED,
                    result=result,
                    error=error,
                    tokens_charged=tokens_charged,
                    ledger_entry_id=debit.ledger_entry_id,
                )
        return await _handle_failure(
            job,
            policy,
            error,
            True,
            token_service,
            generations,
            alerts,
            result=result,
            charge=False,
        )

    logger.info("job_completed", tokens_charged=tokens_charged)
    return JobOutcome(
        status=JobStatus.COMPLETED,
        result=result,
        tokens_charged=tokens_charged,
        ledger_entry_id=debit.ledger_entry_id if debit else None,
    )


async def _execute(job: Job, handler: JobHandler, timeout: float | None) -> JobResult:
    if timeout is None:
        return await handler(job)
    return await asyncio.wait_for(handler(job), timeout=timeout)


async def _handle_failure(
    job: Job,
    policy: TokenPolicy,
    error: str,
    retryable: bool,
    token_service: TokenService,
    generations: GenerationService | None,
    alerts: AlertManager | None,
    result: JobResult | None = None,
    charge: bool = True,
) -> JobOutcome:
    tokens_charged = 0
    ledger_entry_id = None

    if charge and policy.enabled and policy.charge_on_failure and job.user_id is not None:
        amount = policy.cost()
        failure_charge = await token_service.debit(
            job.user_id,
            TokenDebitOptions(
                operation_type=policy.operation_type,
                amount=amount,
                metadata={"job_id": job.id, "queue": job.queue, "failed": True},
            ),
        )
        if failure_charge.success:
            tokens_charged = amount
            ledger_entry_id = failure_charge.ledger_entry_id
            logger.info("job_failure_charged", user_id=str(job.user_id), amount=amount)
        else:
            logger.warning(
                "job_failure_charge_failed",
                user_id=str(job.user_id),
                amount=amount,
                error=failure_charge.error,
            )

    attempts_left = job.attempts_left
    logger.warning(
        "job_failed",
        attempt=job.attempts_made,
        attempts_left=attempts_left,
        retryable=retryable,
        error=error,
    )

    if retryable and attempts_left > 0:
        logger.info("job_retry_scheduled", attempts_left=attempts_left)
        return JobOutcome(
            status=JobStatus.RETRYING,
            result=result,
            error=error,
            tokens_charged=tokens_charged,
            ledger_entry_id=ledger_entry_id,
            retry_scheduled=True,
        )

    if not retryable:
        await _record_failure(generations, job, error, dead_lettered=False)
        return JobOutcome(
            status=JobStatus.FAILED,
            result=result,
            error=error,
            tokens_charged=tokens_charged,
            ledger_entry_id=ledger_entry_id,
        )

    logger.error(
        "job_dead_lettered",
        attempts=job.attempts_made,
        payload=job.payload,
        error=error,
    )
    if alerts is not None:
        await alerts.alert_queue_failure(
            job.queue,
            TokenGateError(error),
            {"job_id": job.id, "attempts": job.attempts_made, "payload": job.payload},
        )
    await _record_failure(generations, job, error, dead_lettered=True)
    return JobOutcome(
        status=JobStatus.DEAD_LETTERED,
        result=result,
        error=error,
        tokens_charged=tokens_charged,
        ledger_entry_id=ledger_entry_id,
    )


async def _rollback(
    job: Job,
    amount: int,
    debit: TokenOperationResult,
    error: str,
    token_service: TokenService,
    alerts: AlertManager | None,
) -> bool:
    """Credit back a debit whose job could not be finalized."""
    logger.warning(
        "token_rollback_started",
        user_id=str(job.user_id),
        amount=amount,
        original_ledger_entry_id=str(debit.ledger_entry_id),
    )
    credit = await token_service.credit(
        job.user_id,
        TokenCreditOptions(
            operation_type=OperationType.REFUND,
            amount=amount,
            metadata={
                "rollback": True,
                "original_ledger_entry_id": str(debit.ledger_entry_id),
                "reason": "Processing failure after token deduction",
                "job_id": job.id,
                "queue": job.queue,
                "error": error,
            },
        ),
    )
    if credit.success:
        logger.info(
            "token_rollback_succeeded",
            user_id=str(job.user_id),
            amount=amount,
            new_balance=credit.new_balance,
            ledger_entry_id=str(credit.ledger_entry_id),
        )
        metrics.record_job(job.queue, "rollback", 0.0)
        return True

    rollback_error = RollbackFailedError(
        job.user_id, amount, debit.ledger_entry_id, credit.error or "credit failed"
    )
    logger.critical(
        "token_rollback_failed",
        user_id=str(job.user_id),
        amount=amount,
        original_ledger_entry_id=str(debit.ledger_entry_id),
        error=credit.error,
    )
    metrics.record_error("rollback_failed", job.queue)
    if alerts is not None:
        await alerts.alert_critical_error(
            rollback_error,
            {
                "job_id": job.id,
                "queue": job.queue,
                "user_id": str(job.user_id),
                "amount": amount,
                "original_ledger_entry_id": str(debit.ledger_entry_id),
            },
        )
    return False


async def _record_failure(
    generations: GenerationService | None, job: Job, error: str, dead_lettered: bool
) -> None:
    """Best-effort status update; a failing record write never fails the job twice."""
    if generations is None or job.generation_id is None:
        return
    try:
        await generations.mark_failed(job.generation_id, error, dead_lettered=dead_lettered)
    except (TokenGateError, SQLAlchemyError) as e:
        logger.warning(
            "generation_status_update_failed",
            generation_id=str(job.generation_id),
            error=str(e),
        )
