from __future__ import annotations

import asyncio
import logging
import signal
import time
from typing import Any, Awaitable, Callable

from sqlalchemy.orm import Session

from dropship_worker.models import WorkerJob
from dropship_worker.services import job_queue as jobs
from dropship_worker.services.alerts import AlertSender
from dropship_worker.services.browser.amazon_automation import AmazonAutomation
from dropship_worker.services.browser.session_pool import SessionPool
from dropship_worker.services.credential_check import CredentialVerifier
from dropship_worker.services.job_queue import JobQueue
from dropship_worker.services.order_pipeline import OrderPipeline
from dropship_worker.settings import settings
from dropship_worker.sync.shopee_order_sync import ShopeeOrderSync, set_auto_shipping

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]

# 스케줄러 주기 (초)
_PROMOTE_INTERVAL = 1.0
_MAINTENANCE_INTERVAL = 60.0


def build_handlers(
    queue: JobQueue,
    pipeline: OrderPipeline,
    poller: ShopeeOrderSync,
    verifier: CredentialVerifier,
    automation: AmazonAutomation,
) -> dict[str, Handler]:
    async def process_order(data: dict[str, Any]) -> Any:
        return await pipeline.process_order(data["shopeeOrderId"], retry_source=data.get("retrySource"))

    async def poll_shop(data: dict[str, Any]) -> Any:
        return await poller.poll_shop(data["shopId"])

    async def toggle_auto_shipping(data: dict[str, Any]) -> Any:
        return set_auto_shipping(queue, data["shopId"], bool(data.get("active")))

    async def verify_credentials(data: dict[str, Any]) -> Any:
        return await verifier.verify(data["shopId"])

    async def scrape_preview(data: dict[str, Any]) -> Any:
        return await automation.preview(data["productUrl"])

    return {
        jobs.PROCESS_ORDER: process_order,
        jobs.POLL_SHOP: poll_shop,
        jobs.TOGGLE_AUTO_SHIPPING: toggle_auto_shipping,
        jobs.VERIFY_CREDENTIALS: verify_credentials,
        jobs.SCRAPE_PREVIEW: scrape_preview,
    }


class Worker:
    """
    고정 크기 워커 풀.

    동시 실행 수(concurrency)가 곧 동시에 열리는 브라우저 페이지 수의 상한입니다.
    진행 중인 구매는 중간에 취소하지 않고, stop() 이후에는 새 작업만 가져가지 않습니다.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, Handler],
        concurrency: int | None = None,
        idle_sleep: float | None = None,
        pool: SessionPool | None = None,
    ) -> None:
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency or settings.worker_concurrency
        self.idle_sleep = settings.worker_idle_sleep_seconds if idle_sleep is None else idle_sleep
        self.pool = pool
        self._stop = asyncio.Event()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("[WORKER] Stop requested; finishing in-flight jobs")
        self._stop.set()

    async def execute(self, job: WorkerJob) -> str:
        """작업 하나를 실행하고 큐에 결과를 반영합니다. 반환값: completed / retrying / failed"""
        handler = self.handlers.get(job.name)
        started = time.time()
        try:
            if handler is None:
                raise ValueError(f"unknown job name: {job.name}")
            result = await handler(dict(job.data or {}))
        except Exception as e:
            logger.exception(f"[WORKER] {job.name} job {job.id} raised")
            return self.queue.fail(job.id, f"{type(e).__name__}: {e}")

        self.queue.complete(job.id, result if isinstance(result, dict) else None)
        logger.info(f"[WORKER] {job.name} job {job.id} completed in {time.time() - started:.1f}s")
        return jobs.COMPLETED

    async def run_once(self) -> bool:
        job = self.queue.claim()
        if job is None:
            return False
        await self.execute(job)
        return True

    async def _consume(self, slot: int) -> None:
        while not self._stop.is_set():
            try:
                worked = await self.run_once()
            except Exception:
                # 큐 자체(DB) 오류는 잠시 쉬고 다시 시도
                logger.exception(f"[WORKER] Slot {slot} queue error")
                worked = False
            if not worked:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.idle_sleep)
                except asyncio.TimeoutError:
                    pass

    async def _schedule(self) -> None:
        last_maintenance = time.monotonic()
        while not self._stop.is_set():
            try:
                self.queue.promote_repeatables()
                if time.monotonic() - last_maintenance >= _MAINTENANCE_INTERVAL:
                    last_maintenance = time.monotonic()
                    self.queue.recover_stalled()
                    if self.pool is not None:
                        await self.pool.evict_idle()
            except Exception:
                logger.exception("[WORKER] Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=_PROMOTE_INTERVAL)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        logger.info(f"[WORKER] Starting with concurrency={self.concurrency}")
        self.queue.recover_stalled()
        tasks = [asyncio.create_task(self._consume(i)) for i in range(self.concurrency)]
        tasks.append(asyncio.create_task(self._schedule()))
        try:
            await asyncio.gather(*tasks)
        finally:
            # 브라우저 종료는 모든 작업이 끝난 뒤 한 번만
            if self.pool is not None:
                await self.pool.shutdown()
            logger.info("[WORKER] Stopped")


def create_worker(session_factory: Callable[[], Session]) -> Worker:
    queue = JobQueue(session_factory)
    pool = SessionPool()
    automation = AmazonAutomation(pool)
    alerts = AlertSender()
    pipeline = OrderPipeline(session_factory, queue, automation)
    poller = ShopeeOrderSync(session_factory, pipeline, alerts)
    verifier = CredentialVerifier(session_factory, automation, alerts)
    handlers = build_handlers(queue, pipeline, poller, verifier, automation)
    return Worker(queue, handlers, pool=pool)


async def run_worker(session_factory: Callable[[], Session]) -> None:
    worker = create_worker(session_factory)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows 이벤트 루프는 시그널 핸들러 미지원
            pass
    await worker.run()
