"""
Celery Tasks for Async Message Dispatch

The worker side of the admission pipeline: each ``dispatch_message`` job
carries only a message id. The dispatcher decides the outcome; this module
decides whether the job is retried and records a ``dispatch_jobs`` audit row
when the job finishes.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import delete, select

from app.workers.celery_app import celery_app
from app.workers.dispatch_queue import CeleryDispatchQueue, DispatchQueue
from app.core.config import settings
from app.core.logging import bind_dispatch_context, get_logger, set_correlation_id
from app.core.vault import get_vault
from app.db.database import SessionFactory, task_session_factory, utcnow
from app.db.models.dispatch_job import DispatchJob, DispatchJobState
from app.db.models.message import Message, MessageStatus
from app.domain.services.message_status import MessageStatusService
from app.domain.services.dispatch_service import (
    DispatchOutcome,
    DispatchResult,
    MessageDispatcher,
    _calculate_backoff_seconds,
)

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop; close it before the loop goes away
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _build_dispatcher(session_factory: SessionFactory) -> MessageDispatcher:
    return MessageDispatcher(session_factory, get_vault())


_OUTCOME_JOB_STATE = {
    DispatchOutcome.SENT: DispatchJobState.COMPLETED,
    DispatchOutcome.SKIPPED: DispatchJobState.COMPLETED,
    DispatchOutcome.RETRYABLE_FAILURE: DispatchJobState.FAILED,
    DispatchOutcome.FATAL_FAILURE: DispatchJobState.FAILED,
    DispatchOutcome.DROPPED: DispatchJobState.FAILED,
}


async def _record_job(
    session_factory: SessionFactory,
    task_id: str,
    result: DispatchResult,
    attempts: int,
) -> None:
    async with session_factory() as db:
        job = await db.get(DispatchJob, task_id)
        if job is None:
            job = DispatchJob(id=task_id, message_id=result.message_id)
            db.add(job)
        job.state = _OUTCOME_JOB_STATE[result.outcome]
        job.outcome = result.outcome.value
        job.attempts = attempts
        job.error = result.error
        job.finished_at = utcnow()
        await db.commit()


async def _dispatch_attempt(
    message_id: str,
    *,
    task_id: str,
    attempt: int,
    final_attempt: bool,
) -> DispatchResult:
    with bind_dispatch_context(message_id=message_id, attempt=attempt):
        async with task_session_factory() as session_factory:
            result = await _build_dispatcher(session_factory).dispatch(message_id)
            if not result.retryable or final_attempt:
                await _record_job(session_factory, task_id, result, attempt)
            return result


def _retry_countdown(retries: int) -> int:
    return _calculate_backoff_seconds(
        retries,
        base_seconds=settings.DISPATCH_RETRY_BASE_SECONDS,
        max_backoff_seconds=settings.DISPATCH_MAX_BACKOFF_SECONDS,
    )


async def _fail_after_error(message_id: str, *, task_id: str, attempts: int, error: str) -> None:
    """Last attempt raised: the message and the audit row end up FAILED"""
    async with task_session_factory() as session_factory:
        async with session_factory() as db:
            await MessageStatusService(db).mark_as_failed(message_id, error)
            await db.commit()
        await _record_job(
            session_factory,
            task_id,
            DispatchResult(message_id, DispatchOutcome.RETRYABLE_FAILURE, error=error),
            attempts,
        )


@celery_app.task(
    bind=True,
    name="app.workers.tasks.dispatch_message",
    max_retries=settings.DISPATCH_MAX_ATTEMPTS - 1,
)
def dispatch_message(self, message_id: str) -> dict:
    """
    One dispatch attempt for a queued message.

    A retryable provider failure, or an exception raised while handling the
    job (database down, connection dropped mid-commit), is retried with
    exponential backoff until DISPATCH_MAX_ATTEMPTS attempts have run. The
    message then stays FAILED with the error of the last attempt.
    """
    retries = self.request.retries or 0
    attempt = retries + 1
    final_attempt = retries >= self.max_retries
    task_id = self.request.id or message_id

    try:
        result = run_async(_dispatch_attempt(
            message_id,
            task_id=task_id,
            attempt=attempt,
            final_attempt=final_attempt,
        ))
    except Exception as e:
        error = f"{type(e).__name__}: {e}"
        if not final_attempt:
            countdown = _retry_countdown(retries)
            logger.warning(
                "Dispatch attempt raised, retrying",
                extra_data={
                    "message_id": message_id,
                    "attempt": attempt,
                    "countdown": countdown,
                    "error": error,
                },
                exc_info=True,
            )
            raise self.retry(countdown=countdown, exc=e)

        logger.error(
            "Dispatch attempt raised, retries exhausted",
            extra_data={"message_id": message_id, "attempts": attempt, "error": error},
            exc_info=True,
        )
        run_async(_fail_after_error(message_id, task_id=task_id, attempts=attempt, error=error))
        return {
            "message_id": message_id,
            "outcome": DispatchOutcome.RETRYABLE_FAILURE.value,
            "external_id": None,
            "error": error,
            "attempt": attempt,
        }

    if result.retryable and not final_attempt:
        countdown = _retry_countdown(retries)
        logger.info(
            "Dispatch attempt failed, retrying",
            extra_data={
                "message_id": message_id,
                "attempt": attempt,
                "max_attempts": self.max_retries + 1,
                "countdown": countdown,
                "error": result.error,
            },
        )
        raise self.retry(countdown=countdown)

    if result.retryable:
        logger.warning(
            "Dispatch retries exhausted",
            extra_data={"message_id": message_id, "attempts": attempt, "error": result.error},
        )

    return {
        "message_id": message_id,
        "outcome": result.outcome.value,
        "external_id": result.external_id,
        "error": result.error,
        "attempt": attempt,
    }


async def _sweep_orphans(
    session_factory: SessionFactory,
    queue: DispatchQueue,
    *,
    older_than_seconds: int,
    limit: int = 500,
) -> list[str]:
    """
    Re-enqueue QUEUED messages whose job never reached the broker.

    ``enqueued_at`` is stamped after every successful enqueue, so a message
    still waiting behind a backlog is never queued a second time.
    """
    cutoff = utcnow() - timedelta(seconds=older_than_seconds)
    async with session_factory() as db:
        result = await db.execute(
            select(Message.id)
            .where(
                Message.status == MessageStatus.QUEUED,
                Message.attempts == 0,
                Message.enqueued_at.is_(None),
                Message.created_at < cutoff,
            )
            .order_by(Message.created_at)
            .limit(limit)
        )
        message_ids = list(result.scalars().all())

        requeued = []
        for message_id in message_ids:
            try:
                await queue.enqueue(message_id)
            except Exception as e:
                # broker is down; the next sweep picks the rest up
                logger.error(
                    "Failed to re-enqueue orphaned message",
                    extra_data={"message_id": message_id, "error": str(e)},
                    exc_info=True,
                )
                break
            await MessageStatusService(db).mark_enqueued(message_id)
            await db.commit()
            requeued.append(message_id)
    return requeued


@celery_app.task(name="app.workers.tasks.sweep_orphaned_messages")
def sweep_orphaned_messages() -> dict:
    """Recover messages whose enqueue failed after admission inserted them"""

    async def _sweep():
        async with task_session_factory() as session_factory:
            requeued = await _sweep_orphans(
                session_factory,
                CeleryDispatchQueue(),
                older_than_seconds=settings.ORPHAN_SWEEP_AGE_SECONDS,
            )
        if requeued:
            logger.warning(
                "Re-enqueued orphaned messages",
                extra_data={"count": len(requeued)},
            )
        return {"requeued": len(requeued)}

    return run_async(_sweep())


async def _purge_jobs(
    session_factory: SessionFactory,
    state: str,
    *,
    keep_count: int,
    max_age: timedelta,
) -> int:
    """Delete audit rows older than max_age, and all but the newest keep_count"""
    cutoff = utcnow() - max_age
    async with session_factory() as db:
        result = await db.execute(
            delete(DispatchJob)
            .where(DispatchJob.state == state, DispatchJob.finished_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0

        overflow = await db.execute(
            select(DispatchJob.id)
            .where(DispatchJob.state == state)
            .order_by(DispatchJob.finished_at.desc(), DispatchJob.id.desc())
            .offset(keep_count)
        )
        overflow_ids = list(overflow.scalars().all())
        if overflow_ids:
            result = await db.execute(
                delete(DispatchJob)
                .where(DispatchJob.id.in_(overflow_ids))
                .execution_options(synchronize_session=False)
            )
            deleted += result.rowcount or 0

        await db.commit()
    return deleted


@celery_app.task(name="app.workers.tasks.cleanup_dispatch_jobs")
def cleanup_dispatch_jobs() -> dict:
    """Retention for the dispatch_jobs audit table"""

    async def _cleanup():
        async with task_session_factory() as session_factory:
            completed = await _purge_jobs(
                session_factory,
                DispatchJobState.COMPLETED,
                keep_count=settings.DISPATCH_KEEP_COMPLETED_COUNT,
                max_age=timedelta(hours=settings.DISPATCH_KEEP_COMPLETED_HOURS),
            )
            failed = await _purge_jobs(
                session_factory,
                DispatchJobState.FAILED,
                keep_count=settings.DISPATCH_KEEP_FAILED_COUNT,
                max_age=timedelta(days=settings.DISPATCH_KEEP_FAILED_DAYS),
            )
        logger.info(
            "Cleaned up dispatch jobs",
            extra_data={"completed_deleted": completed, "failed_deleted": failed},
        )
        return {"completed_deleted": completed, "failed_deleted": failed}

    return run_async(_cleanup())
