"""
Generation Service - Status machine for generation records.

    pending -> processing -> completed | failed
    failed -> pending          (explicit retry, not dead-lettered)

`completed` and a dead-lettered `failed` are terminal.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokengate.db.models import Generation, utc_now
from tokengate.db.session import SessionFactory, transaction
from tokengate.exceptions import InvalidStatusTransitionError, RecordNotFoundError
from tokengate.models.api import GenerationStatus

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[GenerationStatus, frozenset[GenerationStatus]] = {
    GenerationStatus.PENDING: frozenset({GenerationStatus.PROCESSING, GenerationStatus.FAILED}),
    GenerationStatus.PROCESSING: frozenset(
        {GenerationStatus.COMPLETED, GenerationStatus.FAILED, GenerationStatus.PROCESSING}
    ),
    GenerationStatus.COMPLETED: frozenset(),
    GenerationStatus.FAILED: frozenset({GenerationStatus.PENDING}),
}


class GenerationService:
    """Moves generation records through their lifecycle."""

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock

    async def get(self, generation_id: UUID) -> Generation | None:
        async with self.session_factory() as session:
            return await session.get(Generation, generation_id)

    async def mark_processing(self, generation_id: UUID) -> Generation:
        """
        Mark a record as being worked on.

        Re-entering `processing` is allowed: a queue redelivery after a worker
        crash finds the record still in that state.
        """
        async with transaction(self.session_factory) as session:
            generation = await self._transition(
                session, generation_id, GenerationStatus.PROCESSING
            )
            if generation.started_at is None:
                generation.started_at = self.clock()
        logger.debug("generation_processing", generation_id=str(generation_id))
        return generation

    async def mark_completed(
        self,
        generation_id: UUID,
        result_urls: list[str] | None = None,
        tokens_used: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> Generation:
        async with transaction(self.session_factory) as session:
            generation = await self._transition(session, generation_id, GenerationStatus.COMPLETED)
            generation.result_urls = result_urls
            generation.tokens_used = tokens_used
            generation.error_message = None
            generation.completed_at = self.clock()
            if metadata:
                generation.metadata_ = {**(generation.metadata_ or {}), **metadata}
        logger.info(
            "generation_completed",
            generation_id=str(generation_id),
            tokens_used=tokens_used,
        )
        return generation

    async def mark_failed(
        self, generation_id: UUID, error: str, dead_lettered: bool = False
    ) -> Generation:
        """Record a failure; a dead-lettered failure can no longer be retried."""
        async with transaction(self.session_factory) as session:
            generation = await self._transition(session, generation_id, GenerationStatus.FAILED)
            generation.error_message = error
            generation.dead_lettered = dead_lettered
            generation.completed_at = self.clock()
        logger.info(
            "generation_failed",
            generation_id=str(generation_id),
            dead_lettered=dead_lettered,
            error=error,
        )
        return generation

    async def retry(self, generation_id: UUID) -> Generation:
        """Send a failed, non-dead-lettered record back to pending."""
        async with transaction(self.session_factory) as session:
            generation = await self._load(session, generation_id)
            if generation.dead_lettered:
                raise InvalidStatusTransitionError(
                    generation_id, "dead_lettered", GenerationStatus.PENDING.value
                )
            generation = await self._transition(session, generation_id, GenerationStatus.PENDING)
            generation.retry_count += 1
            generation.error_message = None
            generation.started_at = None
            generation.completed_at = None
        logger.info(
            "generation_retry_requested",
            generation_id=str(generation_id),
            retry_count=generation.retry_count,
        )
        return generation

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _load(self, session: AsyncSession, generation_id: UUID) -> Generation:
        stmt = select(Generation).where(Generation.id == generation_id).with_for_update()
        generation = (await session.execute(stmt)).scalar_one_or_none()
        if generation is None:
            raise RecordNotFoundError(generation_id)
        return generation

    async def _transition(
        self, session: AsyncSession, generation_id: UUID, target: GenerationStatus
    ) -> Generation:
        generation = await self._load(session, generation_id)
        current = GenerationStatus(generation.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransitionError(generation_id, current.value, target.value)
        generation.status = target
        return generation
