from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from dropship_worker.models import RepeatableJob, WorkerJob
from dropship_worker.settings import settings

logger = logging.getLogger(__name__)

# 작업 이름 (메시지 포맷은 배포 단위 내에서 고정)
PROCESS_ORDER = "process-order"
POLL_SHOP = "poll-shop"
TOGGLE_AUTO_SHIPPING = "toggle-auto-shipping"
VERIFY_CREDENTIALS = "verify-credentials"
SCRAPE_PREVIEW = "scrape-preview"

JOB_NAMES = (PROCESS_ORDER, POLL_SHOP, TOGGLE_AUTO_SHIPPING, VERIFY_CREDENTIALS, SCRAPE_PREVIEW)

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def repeat_key(name: str, job_id: str, every_ms: int) -> str:
    return f"{name}:{job_id}:{every_ms}"


class JobQueue:
    """
    DB 기반 작업 큐 (at-least-once).

    - 작업 점유는 SELECT ... FOR UPDATE SKIP LOCKED (PostgreSQL)
    - 실패 시 지수 백오프로 재시도, 시도 횟수 소진 시 failed로 보관 (remove_on_fail=False)
    - 반복 작업은 RepeatableJob 등록 후 promote_repeatables()가 주기마다 인스턴스를 만듭니다.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        attempts: int | None = None,
        backoff_seconds: float | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.attempts = attempts or settings.job_attempts
        self.backoff_seconds = settings.job_backoff_seconds if backoff_seconds is None else backoff_seconds

    def add(
        self,
        name: str,
        data: dict[str, Any] | None = None,
        job_id: str | None = None,
        delay_seconds: float = 0,
        attempts: int | None = None,
        remove_on_complete: bool = True,
        remove_on_fail: bool = False,
    ) -> WorkerJob:
        """
        작업을 등록합니다. job_id가 이미 있으면 새로 만들지 않고 기존 작업을 돌려줍니다.
        """
        with self.session_factory() as session:
            if job_id:
                existing = session.execute(
                    select(WorkerJob).where(WorkerJob.job_key == job_id)
                ).scalars().first()
                if existing:
                    logger.debug(f"[QUEUE] Job {job_id} already exists ({existing.status})")
                    return existing

            job = self._new_job(name, data, job_id, delay_seconds, attempts, remove_on_complete, remove_on_fail)
            session.add(job)
            session.commit()
            logger.info(f"[QUEUE] Added {name} job {job.id}")
            return job

    def _new_job(
        self,
        name: str,
        data: dict[str, Any] | None,
        job_id: str | None = None,
        delay_seconds: float = 0,
        attempts: int | None = None,
        remove_on_complete: bool = True,
        remove_on_fail: bool = False,
        repeat: str | None = None,
    ) -> WorkerJob:
        return WorkerJob(
            id=uuid.uuid4(),
            name=name,
            data=dict(data or {}),
            job_key=job_id,
            repeat_key=repeat,
            status=WAITING,
            attempts_made=0,
            max_attempts=attempts or self.attempts,
            backoff_seconds=self.backoff_seconds,
            remove_on_complete=remove_on_complete,
            remove_on_fail=remove_on_fail,
            run_at=utcnow() + timedelta(seconds=delay_seconds),
        )

    def claim(self, now: datetime | None = None) -> WorkerJob | None:
        """실행 가능한 작업 하나를 active로 점유합니다."""
        now = now or utcnow()
        with self.session_factory() as session:
            stmt = (
                select(WorkerJob)
                .where(WorkerJob.status == WAITING)
                .where(WorkerJob.run_at <= now)
                .order_by(WorkerJob.run_at, WorkerJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            job = session.execute(stmt).scalars().first()
            if job is None:
                return None

            job.status = ACTIVE
            job.started_at = now
            job.attempts_made += 1
            session.commit()
            return job

    def complete(self, job_id: uuid.UUID, result: dict[str, Any] | None = None) -> None:
        with self.session_factory() as session:
            job = session.get(WorkerJob, job_id)
            if job is None:
                return
            if job.remove_on_complete:
                session.delete(job)
            else:
                job.status = COMPLETED
                job.result = result
                job.finished_at = utcnow()
            session.commit()

    def fail(self, job_id: uuid.UUID, error: str) -> str:
        """
        실패 처리. 재시도 여지가 있으면 백오프 후 waiting, 아니면 failed.

        Returns:
            "retrying" 또는 "failed"
        """
        with self.session_factory() as session:
            job = session.get(WorkerJob, job_id)
            if job is None:
                return FAILED

            job.last_error = (error or "")[:2000]
            if job.attempts_made < job.max_attempts:
                delay = job.backoff_seconds * (2 ** max(0, job.attempts_made - 1))
                job.status = WAITING
                job.run_at = utcnow() + timedelta(seconds=delay)
                job.started_at = None
                session.commit()
                logger.warning(
                    f"[QUEUE] {job.name} job {job.id} failed (attempt {job.attempts_made}/{job.max_attempts}), "
                    f"retrying in {delay:.1f}s: {error}"
                )
                return "retrying"

            if job.remove_on_fail:
                session.delete(job)
            else:
                job.status = FAILED
                job.finished_at = utcnow()
            session.commit()
            logger.error(f"[QUEUE] {job.name} job {job_id} failed permanently: {error}")
            return FAILED

    def recover_stalled(self, timeout_seconds: float | None = None, now: datetime | None = None) -> int:
        """중단된 프로세스가 남긴 active 작업을 waiting으로 되돌립니다."""
        timeout = settings.job_stall_timeout_seconds if timeout_seconds is None else timeout_seconds
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout)
        with self.session_factory() as session:
            stalled = session.execute(
                select(WorkerJob)
                .where(WorkerJob.status == ACTIVE)
                .where(WorkerJob.started_at < cutoff)
                .with_for_update(skip_locked=True)
            ).scalars().all()
            for job in stalled:
                job.status = WAITING
                job.run_at = now
                job.started_at = None
                job.last_error = "stalled"
            session.commit()
        if stalled:
            logger.warning(f"[QUEUE] Recovered {len(stalled)} stalled job(s)")
        return len(stalled)

    # ------------------------------------------------------------------
    # 반복 작업
    # ------------------------------------------------------------------

    def add_repeatable(self, name: str, data: dict[str, Any], job_id: str, every_ms: int) -> RepeatableJob:
        """같은 키가 이미 등록돼 있으면 데이터만 갱신합니다 (중복 등록 없음)."""
        key = repeat_key(name, job_id, every_ms)
        with self.session_factory() as session:
            existing = session.execute(select(RepeatableJob).where(RepeatableJob.key == key)).scalars().first()
            if existing:
                existing.data = dict(data)
                session.commit()
                logger.info(f"[QUEUE] Repeatable {key} already registered")
                return existing

            repeatable = RepeatableJob(
                key=key,
                name=name,
                job_id=job_id,
                data=dict(data),
                every_ms=every_ms,
                next_run_at=utcnow(),
            )
            session.add(repeatable)
            session.commit()
            logger.info(f"[QUEUE] Registered repeatable {key}")
            return repeatable

    def get_repeatable_jobs(self) -> list[RepeatableJob]:
        with self.session_factory() as session:
            return list(session.execute(select(RepeatableJob).order_by(RepeatableJob.key)).scalars().all())

    def remove_repeatable_by_key(self, key: str) -> bool:
        """등록 해제와 함께 아직 시작 안 한 인스턴스도 지웁니다."""
        with self.session_factory() as session:
            removed = session.execute(delete(RepeatableJob).where(RepeatableJob.key == key)).rowcount
            session.execute(
                delete(WorkerJob).where(WorkerJob.repeat_key == key).where(WorkerJob.status == WAITING)
            )
            session.commit()
        if removed:
            logger.info(f"[QUEUE] Removed repeatable {key}")
        return bool(removed)

    def promote_repeatables(self, now: datetime | None = None) -> int:
        """
        주기가 된 반복 작업의 인스턴스를 만듭니다.
        같은 등록의 이전 인스턴스가 아직 waiting/active면 이번 회차는 건너뜁니다.
        """
        now = now or utcnow()
        created = 0
        with self.session_factory() as session:
            due = session.execute(
                select(RepeatableJob)
                .where(RepeatableJob.next_run_at <= now)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for repeatable in due:
                in_flight = session.execute(
                    select(func.count())
                    .select_from(WorkerJob)
                    .where(WorkerJob.repeat_key == repeatable.key)
                    .where(WorkerJob.status.in_((WAITING, ACTIVE)))
                ).scalar_one()
                repeatable.next_run_at = now + timedelta(milliseconds=repeatable.every_ms)
                if in_flight:
                    logger.debug(f"[QUEUE] {repeatable.key} still in flight, skipping this tick")
                    continue

                session.add(self._new_job(repeatable.name, repeatable.data, repeat=repeatable.key))
                created += 1
            session.commit()
        return created

    def counts(self) -> dict[str, int]:
        with self.session_factory() as session:
            rows = session.execute(
                select(WorkerJob.status, func.count()).group_by(WorkerJob.status)
            ).all()
        return {status: count for status, count in rows}
