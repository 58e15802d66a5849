"""
Job Queue - dramatiq broker setup and per-queue actor registration.

Each queue gets one async actor. Retry count, backoff and time limit come
from the queue's retry config; the token policy from its policy table. The
actor runs `process_job` and asks dramatiq for a retry only when the outcome
schedules one, so business failures and rollback failures are never retried.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import AsyncIO, CurrentMessage, Retries, TimeLimit
from dramatiq.middleware.prometheus import Prometheus
from structlog import get_logger

from tokengate.config import get_retry_config, settings
from tokengate.exceptions import RetryRequested
from tokengate.kv.store import KeyValueStore
from tokengate.observability.alerts import AlertManager
from tokengate.services.generations import GenerationService
from tokengate.services.token_service import TokenService
from tokengate.worker.policy import TokenPolicy, get_token_policy
from tokengate.worker.processor import Job, JobHandler, ProgressReporter, process_job

logger = get_logger(__name__)

# dramatiq's hard limit sits behind the processor's own timeout
TIME_LIMIT_GRACE_MS = 30_000
MAX_BACKOFF_MS = 300_000
PROGRESS_TTL_SECONDS = 3600


@dataclass(frozen=True)
class QueueRegistration:
    queue_name: str
    handler: JobHandler
    policy: TokenPolicy | None = None
    concurrency: int | None = None


@dataclass
class WorkerContext:
    """Services shared by every actor of a worker process."""

    token_service: TokenService
    generations: GenerationService | None = None
    alerts: AlertManager | None = None
    progress_store: KeyValueStore | None = None


def setup_broker(
    redis_url: str | None = None, broker: dramatiq.Broker | None = None
) -> dramatiq.Broker:
    """Configure the broker and the middleware job processing relies on."""
    if broker is None:
        broker = RedisBroker(url=redis_url or settings.redis_url)

    # Metrics are exported by the service's own registry
    broker.middleware[:] = [mw for mw in broker.middleware if not isinstance(mw, Prometheus)]

    existing = {type(mw).__name__ for mw in broker.middleware}
    if "TimeLimit" not in existing:
        broker.add_middleware(TimeLimit())
    if "Retries" not in existing:
        broker.add_middleware(Retries())
    if "AsyncIO" not in existing:
        broker.add_middleware(AsyncIO())
    if "CurrentMessage" not in existing:
        broker.add_middleware(CurrentMessage())

    dramatiq.set_broker(broker)
    return broker


def actor_name_for(queue_name: str) -> str:
    return f"{settings.queue_name_prefix}_{queue_name.replace('-', '_')}"


def make_job_runner(
    registration: QueueRegistration, context: WorkerContext
) -> Callable[[str, dict[str, Any]], Awaitable[None]]:
    """
    Build the coroutine a queue's actor runs for each delivery.

    Raises RetryRequested when the outcome schedules a retry.
    """
    queue_name = registration.queue_name
    retry_config = get_retry_config(queue_name)
    policy = registration.policy or get_token_policy(queue_name)
    semaphore = asyncio.Semaphore(registration.concurrency or settings.worker_concurrency)
    timeout = retry_config.timeout_ms / 1000

    async def run_job(job_id: str, payload: dict[str, Any]) -> None:
        message = CurrentMessage.get_current_message()
        retries = message.options.get("retries", 0) if message is not None else 0
        job = Job(
            id=job_id,
            queue=queue_name,
            payload=payload,
            user_id=_parse_uuid(payload.get("user_id")),
            generation_id=_parse_uuid(payload.get("generation_id")),
            attempts_made=retries + 1,
            max_attempts=retry_config.attempts,
            progress_reporter=_progress_reporter(context.progress_store, job_id),
        )
        async with semaphore:
            outcome = await process_job(
                job,
                policy,
                registration.handler,
                token_service=context.token_service,
                generations=context.generations,
                alerts=context.alerts,
                timeout=timeout,
            )
        if outcome.retry_scheduled:
            raise RetryRequested(job_id, outcome.error or "retry requested")

    return run_job


def register_queue(
    broker: dramatiq.Broker, registration: QueueRegistration, context: WorkerContext
) -> dramatiq.Actor:
    """
    Declare the actor that processes one queue.

    Returns:
        The dramatiq actor; pass it to `enqueue`.
    """
    queue_name = registration.queue_name
    retry_config = get_retry_config(queue_name)
    policy = registration.policy or get_token_policy(queue_name)

    actor = dramatiq.actor(
        make_job_runner(registration, context),
        broker=broker,
        actor_name=actor_name_for(queue_name),
        queue_name=queue_name,
        max_retries=retry_config.attempts - 1,
        min_backoff=retry_config.backoff_ms,
        max_backoff=MAX_BACKOFF_MS,
        time_limit=retry_config.timeout_ms + TIME_LIMIT_GRACE_MS,
    )
    logger.info(
        "queue_registered",
        queue=queue_name,
        actor=actor.actor_name,
        attempts=retry_config.attempts,
        token_charging=policy.enabled,
    )
    return actor


def enqueue(
    actor: dramatiq.Actor,
    job_id: str,
    *,
    user_id: UUID | None = None,
    generation_id: UUID | None = None,
    payload: dict[str, Any] | None = None,
    delay_ms: int | None = None,
) -> dramatiq.Message:
    """Send a job to the actor's queue."""
    body = dict(payload or {})
    if user_id is not None:
        body["user_id"] = str(user_id)
    if generation_id is not None:
        body["generation_id"] = str(generation_id)
    message = actor.send_with_options(args=(job_id, body), delay=delay_ms)
    logger.info(
        "job_enqueued", job_id=job_id, queue=actor.queue_name, message_id=message.message_id
    )
    return message


def progress_key(job_id: str) -> str:
    return f"{settings.queue_name_prefix}:progress:{job_id}"


async def get_progress(store: KeyValueStore, job_id: str) -> Any:
    """Last progress reported by a job, or None."""
    raw = await store.get(progress_key(job_id))
    return json.loads(raw) if raw is not None else None


def _progress_reporter(store: KeyValueStore | None, job_id: str) -> ProgressReporter | None:
    if store is None:
        return None

    async def report(progress: Any) -> None:
        await store.set(progress_key(job_id), json.dumps(progress), ttl=PROGRESS_TTL_SECONDS)

    return report


def _parse_uuid(value: Any) -> UUID | None:
    if value is None:
        return None
    return value if isinstance(value, UUID) else UUID(str(value))
