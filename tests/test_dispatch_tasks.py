"""
בדיקות ל-Celery tasks - retry loop, sweep של הודעות יתומות, retention של dispatch_jobs.

הטאסקים רצים eagerly דרך ``task.apply()``: Celery מריץ את ה-retries
באופן סינכרוני, כך שכל מחזור הניסיונות נבדק בקריאה אחת.
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.dispatch_job import DispatchJob, DispatchJobState
from app.db.models.message import MessageStatus
from app.domain.services.connectors import SendResult
from app.domain.services.dispatch_service import MessageDispatcher
from app.domain.services.message_status import MessageStatusService
from app.workers.tasks import (
    _purge_jobs,
    _sweep_orphans,
    dispatch_message,
)


@contextmanager
def _patch_run_async_for_test():
    """
    מוק ל-run_async שמאפשר להריץ טאסקי Celery sync מתוך בדיקה async.

    הטאסקים של Celery הם sync ומשתמשים ב-run_async() שיוצר event loop חדש.
    בבדיקות async כבר רץ event loop - לכן מחליפים את run_async בגרסה
    שמריצה את ה-coroutine ב-loop חדש בתוך thread נפרד.
    """
    import concurrent.futures

    def _test_run_async(coro):
        """מריץ coroutine ב-loop חדש בתוך thread - עוקף את ההגבלה של nested loops"""
        from app.core.logging import set_correlation_id
        set_correlation_id()

        def _run_in_thread():
            new_loop = asyncio.new_event_loop()
            try:
                return new_loop.run_until_complete(coro)
            finally:
                new_loop.close()

        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(_run_in_thread)
            return future.result(timeout=30)

    with patch("app.workers.tasks.run_async", side_effect=_test_run_async):
        yield


@contextmanager
def _patch_dispatcher(vault, factory):
    """הדיספצ'ר של ה-worker עם connector מזויף"""
    with patch(
        "app.workers.tasks._build_dispatcher",
        side_effect=lambda session_factory: MessageDispatcher(session_factory, vault, factory),
    ):
        yield


async def _jobs_for(session_factory, message_id):
    async with session_factory() as session:
        result = await session.execute(
            select(DispatchJob).where(DispatchJob.message_id == message_id)
        )
        return list(result.scalars().all())


@pytest.fixture
async def queued_message(project_setup, message_factory):
    setup = project_setup
    return await message_factory(
        setup["project"].id, setup["connector"].id, setup["template"].id,
    )


class TestDispatchMessageTask:

    @pytest.mark.unit
    async def test_success_records_completed_job(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        queued_message, fetch_message
    ):
        factory = fake_connector_factory(SendResult.ok("wamid.OK"))

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory):
            eager = dispatch_message.apply(args=[queued_message.id])

        result = eager.get()
        assert result["outcome"] == "sent"
        assert result["external_id"] == "wamid.OK"
        assert result["attempt"] == 1

        message = await fetch_message(queued_message.id)
        assert message.status == MessageStatus.SENT
        assert message.attempts == 1

        jobs = await _jobs_for(session_factory, queued_message.id)
        assert len(jobs) == 1
        assert jobs[0].state == DispatchJobState.COMPLETED
        assert jobs[0].outcome == "sent"

    @pytest.mark.unit
    async def test_retries_until_attempts_exhausted(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        queued_message, fetch_message
    ):
        """ספק שנכשל תמיד - DISPATCH_MAX_ATTEMPTS ניסיונות ואז FAILED עם השגיאה האחרונה"""
        factory = fake_connector_factory(
            SendResult.failed("timeout #1"),
            SendResult.failed("timeout #2"),
            SendResult.failed("timeout #3"),
        )

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory):
            eager = dispatch_message.apply(args=[queued_message.id])

        result = eager.get()
        assert result["outcome"] == "retryable_failure"
        assert result["attempt"] == settings.DISPATCH_MAX_ATTEMPTS
        assert len(factory.connector.calls) == settings.DISPATCH_MAX_ATTEMPTS

        message = await fetch_message(queued_message.id)
        assert message.status == MessageStatus.FAILED
        assert message.attempts == settings.DISPATCH_MAX_ATTEMPTS
        assert message.error == f"timeout #{settings.DISPATCH_MAX_ATTEMPTS}"

        # רשומת audit אחת בלבד - בסוף הניסיון האחרון
        jobs = await _jobs_for(session_factory, queued_message.id)
        assert len(jobs) == 1
        assert jobs[0].state == DispatchJobState.FAILED
        assert jobs[0].attempts == settings.DISPATCH_MAX_ATTEMPTS

    @pytest.mark.unit
    async def test_recovers_on_second_attempt(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        queued_message, fetch_message
    ):
        factory = fake_connector_factory(
            SendResult.failed("503 from provider"),
            SendResult.ok("wamid.SECOND"),
        )

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory):
            result = dispatch_message.apply(args=[queued_message.id]).get()

        assert result["outcome"] == "sent"
        assert result["attempt"] == 2

        message = await fetch_message(queued_message.id)
        assert message.status == MessageStatus.SENT
        assert message.external_message_id == "wamid.SECOND"
        assert message.error is None
        assert message.attempts == 2

    @pytest.mark.unit
    async def test_fatal_failure_is_not_retried(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        project_factory, connector_factory, template_factory, message_factory, fetch_message
    ):
        project = await project_factory()
        connector = await connector_factory(project.id, credentials_encrypted="garbage")
        template = await template_factory(project.id)
        message = await message_factory(project.id, connector.id, template.id)
        factory = fake_connector_factory()

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory):
            result = dispatch_message.apply(args=[message.id]).get()

        assert result["outcome"] == "fatal_failure"
        assert result["attempt"] == 1
        assert factory.connector.calls == []

        stored = await fetch_message(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.attempts == 1

        jobs = await _jobs_for(session_factory, message.id)
        assert [j.state for j in jobs] == [DispatchJobState.FAILED]

    @pytest.mark.unit
    async def test_redelivered_job_skips_provider(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        project_setup, message_factory
    ):
        setup = project_setup
        message = await message_factory(
            setup["project"].id, setup["connector"].id, setup["template"].id,
            status=MessageStatus.SENT, external_message_id="wamid.DONE", attempts=1,
        )
        factory = fake_connector_factory()

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory):
            result = dispatch_message.apply(args=[message.id]).get()

        assert result["outcome"] == "skipped"
        assert factory.connector.calls == []
        jobs = await _jobs_for(session_factory, message.id)
        assert jobs[0].state == DispatchJobState.COMPLETED

    @pytest.mark.unit
    async def test_handler_exception_is_retried(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        queued_message, fetch_message
    ):
        """DB נופל בזמן רישום SENT - הניסיון הבא משלים את ההודעה ולא משאיר אותה QUEUED"""
        factory = fake_connector_factory(SendResult.ok("wamid.FIRST"), SendResult.ok("wamid.SECOND"))
        original_mark_as_sent = MessageStatusService.mark_as_sent
        calls = []

        async def _flaky_mark_as_sent(status_service, *args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OperationalError("UPDATE messages", {}, ConnectionError("connection reset"))
            return await original_mark_as_sent(status_service, *args, **kwargs)

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory), \
                patch.object(MessageStatusService, "mark_as_sent", _flaky_mark_as_sent):
            result = dispatch_message.apply(args=[queued_message.id]).get()

        assert result["outcome"] == "sent"
        assert result["attempt"] == 2
        assert len(factory.connector.calls) == 2

        message = await fetch_message(queued_message.id)
        assert message.status == MessageStatus.SENT
        assert message.external_message_id == "wamid.SECOND"
        assert message.attempts == 2

        jobs = await _jobs_for(session_factory, queued_message.id)
        assert [j.state for j in jobs] == [DispatchJobState.COMPLETED]

    @pytest.mark.unit
    async def test_handler_exception_on_every_attempt_fails_message(
        self, patch_task_sessions, session_factory, vault, fake_connector_factory,
        queued_message, fetch_message
    ):
        """חריגה בכל ניסיון - בסוף FAILED עם טקסט החריגה ורשומת audit של FAILED"""
        factory = fake_connector_factory(SendResult.ok("wamid.X"))

        async def _broken_mark_as_sent(status_service, *args, **kwargs):
            raise OperationalError("UPDATE messages", {}, ConnectionError("database is down"))

        with _patch_run_async_for_test(), _patch_dispatcher(vault, factory), \
                patch.object(MessageStatusService, "mark_as_sent", _broken_mark_as_sent):
            result = dispatch_message.apply(args=[queued_message.id]).get()

        assert result["outcome"] == "retryable_failure"
        assert result["attempt"] == settings.DISPATCH_MAX_ATTEMPTS
        assert "OperationalError" in result["error"]

        message = await fetch_message(queued_message.id)
        assert message.status == MessageStatus.FAILED
        assert message.attempts == settings.DISPATCH_MAX_ATTEMPTS
        assert "database is down" in message.error

        jobs = await _jobs_for(session_factory, queued_message.id)
        assert len(jobs) == 1
        assert jobs[0].state == DispatchJobState.FAILED
        assert jobs[0].attempts == settings.DISPATCH_MAX_ATTEMPTS


class TestOrphanSweep:

    @pytest.mark.unit
    async def test_requeues_only_stale_unattempted_messages(
        self, session_factory, dispatch_queue, project_setup, message_factory
    ):
        setup = project_setup
        ids = (setup["project"].id, setup["connector"].id, setup["template"].id)
        old = utcnow() - timedelta(minutes=10)

        orphan = await message_factory(*ids, created_at=old)
        await message_factory(*ids)  # fresh - enqueue may still be in flight
        await message_factory(*ids, created_at=old, attempts=1, status=MessageStatus.FAILED)
        await message_factory(*ids, created_at=old, attempts=1)  # worker already picked it up
        await message_factory(*ids, created_at=old, status=MessageStatus.SENT, external_message_id="x")

        requeued = await _sweep_orphans(session_factory, dispatch_queue, older_than_seconds=300)

        assert requeued == [orphan.id]
        assert dispatch_queue.enqueued == [orphan.id]

    @pytest.mark.unit
    async def test_stops_on_broker_error(
        self, session_factory, dispatch_queue, project_setup, message_factory
    ):
        setup = project_setup
        ids = (setup["project"].id, setup["connector"].id, setup["template"].id)
        old = utcnow() - timedelta(minutes=10)
        await message_factory(*ids, created_at=old)
        await message_factory(*ids, created_at=old - timedelta(minutes=1))

        dispatch_queue.fail_with = ConnectionError("broker down")
        requeued = await _sweep_orphans(session_factory, dispatch_queue, older_than_seconds=300)

        assert requeued == []

    @pytest.mark.unit
    async def test_enqueued_message_is_not_requeued(
        self, session_factory, dispatch_queue, project_setup, message_factory
    ):
        """הודעה שממתינה ב-broker מאחורי backlog - לא נכנסת לתור פעם שנייה"""
        setup = project_setup
        ids = (setup["project"].id, setup["connector"].id, setup["template"].id)
        old = utcnow() - timedelta(minutes=10)
        await message_factory(*ids, created_at=old, enqueued_at=old)

        requeued = await _sweep_orphans(session_factory, dispatch_queue, older_than_seconds=300)

        assert requeued == []
        assert dispatch_queue.enqueued == []

    @pytest.mark.unit
    async def test_repeated_sweeps_enqueue_once(
        self, session_factory, dispatch_queue, project_setup, message_factory, fetch_message
    ):
        setup = project_setup
        ids = (setup["project"].id, setup["connector"].id, setup["template"].id)
        orphan = await message_factory(*ids, created_at=utcnow() - timedelta(minutes=10))

        await _sweep_orphans(session_factory, dispatch_queue, older_than_seconds=300)
        await _sweep_orphans(session_factory, dispatch_queue, older_than_seconds=300)

        assert dispatch_queue.enqueued == [orphan.id]
        message = await fetch_message(orphan.id)
        assert message.enqueued_at is not None


class TestDispatchJobRetention:

    async def _add_jobs(self, session_factory, state, ages):
        now = utcnow()
        async with session_factory() as session:
            for i, age in enumerate(ages):
                session.add(DispatchJob(
                    id=f"{state}-{i}",
                    message_id=f"m{i}",
                    state=state,
                    outcome="sent" if state == DispatchJobState.COMPLETED else "retryable_failure",
                    attempts=1,
                    finished_at=now - age,
                ))
            await session.commit()

    async def _count(self, session_factory, state):
        async with session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(DispatchJob).where(DispatchJob.state == state)
            )
            return result.scalar_one()

    @pytest.mark.unit
    async def test_purges_by_age(self, session_factory):
        await self._add_jobs(session_factory, DispatchJobState.COMPLETED, [
            timedelta(hours=1),
            timedelta(hours=30),
            timedelta(hours=48),
        ])

        deleted = await _purge_jobs(
            session_factory,
            DispatchJobState.COMPLETED,
            keep_count=100,
            max_age=timedelta(hours=24),
        )

        assert deleted == 2
        assert await self._count(session_factory, DispatchJobState.COMPLETED) == 1

    @pytest.mark.unit
    async def test_keeps_newest_count(self, session_factory):
        await self._add_jobs(session_factory, DispatchJobState.FAILED, [
            timedelta(minutes=m) for m in range(1, 6)
        ])

        deleted = await _purge_jobs(
            session_factory,
            DispatchJobState.FAILED,
            keep_count=2,
            max_age=timedelta(days=7),
        )

        assert deleted == 3
        async with session_factory() as session:
            remaining = (await session.execute(select(DispatchJob.id))).scalars().all()
        assert sorted(remaining) == ["failed-0", "failed-1"]

    @pytest.mark.unit
    async def test_other_state_untouched(self, session_factory):
        await self._add_jobs(session_factory, DispatchJobState.COMPLETED, [timedelta(days=30)])
        await self._add_jobs(session_factory, DispatchJobState.FAILED, [timedelta(days=1)])

        await _purge_jobs(
            session_factory,
            DispatchJobState.COMPLETED,
            keep_count=0,
            max_age=timedelta(hours=24),
        )

        assert await self._count(session_factory, DispatchJobState.COMPLETED) == 0
        assert await self._count(session_factory, DispatchJobState.FAILED) == 1
