"""
워커 실행 루프 테스트
"""
import asyncio
from unittest.mock import AsyncMock, Mock

from sqlalchemy import select

from dropship_worker.models import WorkerJob
from dropship_worker.services import job_queue as jobs
from dropship_worker.services.job_queue import JobQueue
from dropship_worker.worker import Worker, build_handlers


def make_queue(session_factory):
    return JobQueue(session_factory, attempts=2, backoff_seconds=0)


async def test_execute_success_completes_job(session_factory, test_session):
    queue = make_queue(session_factory)
    handler = AsyncMock(return_value={"status": "FULFILLED"})
    worker = Worker(queue, {jobs.PROCESS_ORDER: handler}, concurrency=1, idle_sleep=0)
    queue.add(jobs.PROCESS_ORDER, {"shopeeOrderId": "o-1"})

    assert await worker.run_once() is True

    handler.assert_awaited_once_with({"shopeeOrderId": "o-1"})
    assert test_session.execute(select(WorkerJob)).scalars().all() == []
    assert await worker.run_once() is False


async def test_execute_failure_is_retried(session_factory, test_session):
    queue = make_queue(session_factory)
    handler = AsyncMock(side_effect=RuntimeError("temporary"))
    worker = Worker(queue, {jobs.POLL_SHOP: handler}, concurrency=1, idle_sleep=0)
    job = queue.add(jobs.POLL_SHOP, {"shopId": "s"})

    assert await worker.execute(queue.claim()) == "retrying"
    assert await worker.execute(queue.claim()) == jobs.FAILED

    test_session.expire_all()
    failed = test_session.get(WorkerJob, job.id)
    assert failed.status == jobs.FAILED
    assert "RuntimeError: temporary" in failed.last_error


async def test_unknown_job_name_fails(session_factory):
    queue = make_queue(session_factory)
    worker = Worker(queue, {}, concurrency=1, idle_sleep=0)
    queue.add("mystery-job", {})

    assert await worker.execute(queue.claim()) == "retrying"


async def test_run_until_stopped(session_factory):
    queue = make_queue(session_factory)
    pool = Mock()
    pool.shutdown = AsyncMock()
    pool.evict_idle = AsyncMock(return_value=0)
    worker = None

    async def handler(data):
        worker.stop()
        return {"ok": True}

    worker = Worker(queue, {jobs.SCRAPE_PREVIEW: handler}, concurrency=2, idle_sleep=0.01, pool=pool)
    queue.add(jobs.SCRAPE_PREVIEW, {"productUrl": "https://www.amazon.co.jp/dp/B000TEST01"})

    await asyncio.wait_for(worker.run(), timeout=5)

    assert queue.counts() == {}
    pool.shutdown.assert_awaited_once()


async def test_build_handlers_routes_payloads():
    queue = Mock()
    pipeline = Mock(process_order=AsyncMock(return_value={"status": "FULFILLED"}))
    poller = Mock(poll_shop=AsyncMock(return_value={"status": "ok"}))
    verifier = Mock(verify=AsyncMock(return_value={}))
    automation = Mock(preview=AsyncMock(return_value={"ok": True}))

    handlers = build_handlers(queue, pipeline, poller, verifier, automation)

    assert set(handlers) == set(jobs.JOB_NAMES)
    await handlers[jobs.PROCESS_ORDER]({"shopeeOrderId": "o-1", "shopId": "s", "retrySource": "UI"})
    pipeline.process_order.assert_awaited_once_with("o-1", retry_source="UI")
    await handlers[jobs.POLL_SHOP]({"shopId": "s"})
    poller.poll_shop.assert_awaited_once_with("s")
    await handlers[jobs.VERIFY_CREDENTIALS]({"shopId": "s"})
    verifier.verify.assert_awaited_once_with("s")
    await handlers[jobs.SCRAPE_PREVIEW]({"productUrl": "u"})
    automation.preview.assert_awaited_once_with("u")


async def test_toggle_handler_registers_polling(session_factory):
    queue = make_queue(session_factory)
    handlers = build_handlers(queue, Mock(), Mock(), Mock(), Mock())

    result = await handlers[jobs.TOGGLE_AUTO_SHIPPING]({"shopId": "shop-1", "active": True})

    assert result["active"] is True
    assert [r.name for r in queue.get_repeatable_jobs()] == [jobs.POLL_SHOP]

    await handlers[jobs.TOGGLE_AUTO_SHIPPING]({"shopId": "shop-1", "active": False})
    assert queue.get_repeatable_jobs() == []
