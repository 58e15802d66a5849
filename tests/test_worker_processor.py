"""
Tests for the token-aware job processor.

Charge after success, credit back on finalization failure, retry and
dead-letter decisions.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from tokengate.db.models import TokenOperation
from tokengate.exceptions import TokenGateError
from tokengate.models.api import GenerationStatus, OperationType
from tokengate.models.domain import TokenOperationResult
from tokengate.observability.alerts import AlertManager, AlertType
from tokengate.services.generations import GenerationService
from tokengate.services.token_service import TokenService
from tokengate.worker.policy import NO_CHARGE, TokenPolicy, get_token_policy
from tokengate.worker.processor import Job, JobResult, JobStatus, process_job, update_progress

IMAGE_POLICY = TokenPolicy(enabled=True, operation_type=OperationType.IMAGE_GENERATION)


@pytest.fixture
def generations(session_factory):
    return GenerationService(session_factory)


@pytest.fixture
def queue_alerts():
    return AlertManager(webhook_url="", thresholds={AlertType.QUEUE_FAILURE: 1})


@pytest.fixture
async def user(make_user):
    return await make_user(tokens_balance=100)


@pytest.fixture
async def generation(user, make_generation):
    return await make_generation(user.id)


def make_job(user, generation=None, attempts_made=1, max_attempts=3):
    return Job(
        id=f"job-{uuid4().hex[:8]}",
        queue="image-generation",
        payload={"prompt": "a lighthouse at dusk"},
        user_id=user.id,
        generation_id=generation.id if generation else None,
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


async def succeed(job):
    return JobResult(success=True, data={"urls": ["https://cdn.example/out.png"]})


async def fail(job):
    return JobResult(success=False, error="upstream 503")


async def ledger_rows(session_factory, user_id):
    async with session_factory() as session:
        result = await session.execute(
            select(TokenOperation).where(TokenOperation.user_id == user_id)
        )
        return list(result.scalars())


class TestPolicies:
    def test_queue_policies(self):
        assert get_token_policy("image-generation").cost() == 10
        assert get_token_policy("chat-processing").cost() == 5
        assert not get_token_policy("payment-processing").enabled
        assert get_token_policy("unknown-queue") is NO_CHARGE

    def test_explicit_amount_wins(self):
        policy = TokenPolicy(
            enabled=True, operation_type=OperationType.SORA_IMAGE, amount=25
        )

        assert policy.cost() == 25


class TestSuccess:
    """Tests for successful jobs."""

    async def test_charges_after_success(
        self, token_service, generations, user, generation, load_user
    ):
        outcome = await process_job(
            make_job(user, generation),
            IMAGE_POLICY,
            succeed,
            token_service=token_service,
            generations=generations,
        )

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.tokens_charged == 10
        assert outcome.ledger_entry_id is not None
        assert (await load_user(user.id)).tokens_balance == 90
        stored = await generations.get(generation.id)
        assert stored.status == GenerationStatus.COMPLETED
        assert stored.tokens_used == 10
        assert stored.result_urls == ["https://cdn.example/out.png"]

    async def test_ledger_entry_references_job(self, token_service, user, session_factory):
        job = make_job(user)

        await process_job(job, IMAGE_POLICY, succeed, token_service=token_service)

        [entry] = await ledger_rows(session_factory, user.id)
        assert entry.metadata_["job_id"] == job.id
        assert entry.metadata_["queue"] == "image-generation"

    async def test_uncharged_queue(self, token_service, user, load_user):
        outcome = await process_job(make_job(user), NO_CHARGE, succeed, token_service=token_service)

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.tokens_charged == 0
        assert (await load_user(user.id)).tokens_balance == 100


class TestChargeRefused:
    """Tests for debits refused after the work succeeded."""

    async def test_insufficient_balance_fails_without_retry(
        self, token_service, generations, make_user, make_generation, queue_alerts, load_user
    ):
        poor = await make_user(tokens_balance=5)
        generation = await make_generation(poor.id)

        outcome = await process_job(
            make_job(poor, generation),
            IMAGE_POLICY,
            succeed,
            token_service=token_service,
            generations=generations,
            alerts=queue_alerts,
        )

        assert outcome.status == JobStatus.FAILED
        assert not outcome.retry_scheduled
        assert "Insufficient tokens" in outcome.error
        assert (await load_user(poor.id)).tokens_balance == 5
        stored = await generations.get(generation.id)
        assert stored.status == GenerationStatus.FAILED
        assert not stored.dead_lettered
        assert [a.type for a in queue_alerts.fired] == [AlertType.QUEUE_FAILURE]


class TestRollback:
    """Tests for crediting back a debit whose job could not be finalized."""

    @pytest.fixture
    def broken_generations(self):
        generations = MagicMock(spec=GenerationService)
        generations.mark_completed.side_effect = TokenGateError("record store unavailable")
        return generations

    async def test_finalization_failure_restores_balance(
        self, token_service, broken_generations, user, generation, load_user, session_factory
    ):
        outcome = await process_job(
            make_job(user, generation),
            IMAGE_POLICY,
            succeed,
            token_service=token_service,
            generations=broken_generations,
        )

        assert outcome.status == JobStatus.RETRYING
        assert (await load_user(user.id)).tokens_balance == 100
        rows = await ledger_rows(session_factory, user.id)
        debit = next(r for r in rows if r.tokens_amount < 0)
        refund = next(r for r in rows if r.tokens_amount > 0)
        assert refund.operation_type == OperationType.REFUND
        assert refund.tokens_amount == 10
        assert refund.metadata_["rollback"] is True
        assert refund.metadata_["original_ledger_entry_id"] == str(debit.id)

    @pytest.mark.parametrize(
        "error", [ConnectionResetError("connection reset"), RuntimeError("event loop closed")]
    )
    async def test_any_finalization_error_restores_balance(
        self, token_service, user, generation, load_user, error
    ):
        generations = MagicMock(spec=GenerationService)
        generations.mark_completed.side_effect = error

        outcome = await process_job(
            make_job(user, generation),
            IMAGE_POLICY,
            succeed,
            token_service=token_service,
            generations=generations,
        )

        assert outcome.status == JobStatus.RETRYING
        assert str(error) in outcome.error
        assert (await load_user(user.id)).tokens_balance == 100

    async def test_rollback_failure_is_escalated_and_not_retried(
        self, session_factory, broken_generations, user, generation, load_user
    ):
        alerts = AlertManager(webhook_url="")
        token_service = TokenService(session_factory)
        token_service.credit = AsyncMock(
            return_value=TokenOperationResult(
                success=False, new_balance=0, tokens_spent=0, error="ledger offline"
            )
        )

        outcome = await process_job(
            make_job(user, generation),
            IMAGE_POLICY,
            succeed,
            token_service=token_service,
            generations=broken_generations,
            alerts=alerts,
        )

        assert outcome.status == JobStatus.ROLLBACK_FAILED
        assert not outcome.retry_scheduled
        assert outcome.tokens_charged == 10
        assert (await load_user(user.id)).tokens_balance == 90
        assert [a.type for a in alerts.fired] == [AlertType.CRITICAL_ERROR]
        assert "original_ledger_entry_id" in alerts.fired[0].context
        broken_generations.mark_failed.assert_awaited_once()
        assert broken_generations.mark_failed.await_args.kwargs["dead_lettered"] is True


class TestFailures:
    """Tests for failing handlers."""

    async def test_retry_scheduled_while_attempts_left(
        self, token_service, generations, user, generation, load_user
    ):
        outcome = await process_job(
            make_job(user, generation, attempts_made=1),
            IMAGE_POLICY,
            fail,
            token_service=token_service,
            generations=generations,
        )

        assert outcome.status == JobStatus.RETRYING
        assert outcome.retry_scheduled
        assert (await load_user(user.id)).tokens_balance == 100
        stored = await generations.get(generation.id)
        assert stored.status == GenerationStatus.PROCESSING

    async def test_last_attempt_dead_letters(
        self, token_service, generations, user, generation, queue_alerts
    ):
        outcome = await process_job(
            make_job(user, generation, attempts_made=3, max_attempts=3),
            IMAGE_POLICY,
            fail,
            token_service=token_service,
            generations=generations,
            alerts=queue_alerts,
        )

        assert outcome.status == JobStatus.DEAD_LETTERED
        assert outcome.error == "upstream 503"
        stored = await generations.get(generation.id)
        assert stored.status == GenerationStatus.FAILED
        assert stored.dead_lettered
        assert len(queue_alerts.fired) == 1

    async def test_non_retryable_result(self, token_service, generations, user, generation):
        async def invalid_prompt(job):
            return JobResult(success=False, error="prompt rejected", retryable=False)

        outcome = await process_job(
            make_job(user, generation),
            IMAGE_POLICY,
            invalid_prompt,
            token_service=token_service,
            generations=generations,
        )

        assert outcome.status == JobStatus.FAILED
        stored = await generations.get(generation.id)
        assert not stored.dead_lettered
        assert (await generations.retry(generation.id)).status == GenerationStatus.PENDING

    async def test_handler_exception_is_retryable(self, token_service, user):
        async def explode(job):
            raise RuntimeError("segfault in encoder")

        outcome = await process_job(
            make_job(user), IMAGE_POLICY, explode, token_service=token_service
        )

        assert outcome.status == JobStatus.RETRYING
        assert outcome.error == "segfault in encoder"

    async def test_domain_error_is_not_retried(self, token_service, user):
        async def refuse(job):
            raise TokenGateError("content policy violation")

        outcome = await process_job(
            make_job(user), IMAGE_POLICY, refuse, token_service=token_service
        )

        assert outcome.status == JobStatus.FAILED

    async def test_timeout(self, token_service, user):
        async def hang(job):
            await asyncio.sleep(5)
            return JobResult(success=True)

        outcome = await process_job(
            make_job(user), IMAGE_POLICY, hang, token_service=token_service, timeout=0.01
        )

        assert outcome.status == JobStatus.RETRYING
        assert outcome.error == "Job timed out after 0.01s"

    async def test_charge_on_failure(self, token_service, user, load_user):
        policy = TokenPolicy(
            enabled=True,
            operation_type=OperationType.IMAGE_GENERATION,
            charge_on_failure=True,
        )

        outcome = await process_job(make_job(user), policy, fail, token_service=token_service)

        assert outcome.tokens_charged == 10
        assert (await load_user(user.id)).tokens_balance == 90


class TestProgress:
    async def test_update_progress_forwards_to_reporter(self, user):
        reporter = AsyncMock()
        job = make_job(user)
        job.progress_reporter = reporter

        await update_progress(job, {"percent": 40})

        reporter.assert_awaited_once_with({"percent": 40})

    async def test_update_progress_without_reporter(self, user):
        await update_progress(make_job(user), 50)
