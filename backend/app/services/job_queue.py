from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy.engine import Connection

from backend.app.models import JobStatus, JobType, QueueJobRecord, QueueRunSummary, utc_now
from backend.app.observability import MetricsRegistry
from backend.app.services.retry import backoff_delay
from backend.app.services.sanitize import redact_sensitive_data
from backend.app.store import DataStore

logger = logging.getLogger("whatsapp_inbox.queue")

JobHandler = Callable[[dict[str, Any]], None]
ExhaustedHook = Callable[[dict[str, Any], Exception], None]


class UnknownJobTypeError(Exception):
    pass


class JobQueue:
    """Persisted job queue drained by an external trigger.

    A job moves pending -> processing -> done, back to pending with a backoff delay
    after a handler failure, or to failed once attempts reach max_attempts. A job
    left in processing longer than the claim timeout is claimable again.
    """

    def __init__(
        self,
        store: DataStore,
        *,
        handlers: Optional[dict[JobType, JobHandler]] = None,
        batch_size: int = 10,
        default_max_attempts: int = 3,
        backoff_seconds: int = 30,
        backoff_max_seconds: int = 900,
        claim_timeout_seconds: int = 600,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self.store = store
        self.handlers: dict[JobType, JobHandler] = dict(handlers or {})
        self.exhausted_hooks: dict[JobType, ExhaustedHook] = {}
        self.batch_size = batch_size
        self.default_max_attempts = default_max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.metrics = metrics

    def register(
        self,
        job_type: JobType,
        handler: JobHandler,
        on_exhausted: Optional[ExhaustedHook] = None,
    ) -> None:
        self.handlers[job_type] = handler
        if on_exhausted is not None:
            self.exhausted_hooks[job_type] = on_exhausted

    def add_job(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        max_attempts: Optional[int] = None,
        *,
        next_eligible_at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> QueueJobRecord:
        job = self.store.insert_job(
            job_type=job_type,
            payload=payload,
            max_attempts=max_attempts or self.default_max_attempts,
            next_eligible_at=next_eligible_at,
            conn=conn,
        )
        logger.info("job_enqueued job_id=%s job_type=%s", job.id, job_type.value)
        return job

    def process_queue(self, now: Optional[datetime] = None) -> QueueRunSummary:
        run_at = now or utc_now()
        stale_before = run_at - timedelta(seconds=self.claim_timeout_seconds)
        jobs = self.store.list_due_jobs(run_at, self.batch_size, stale_before=stale_before)
        summary = QueueRunSummary(picked=len(jobs))
        for job in jobs:
            if not self.store.claim_job(job.id, at=run_at, stale_before=stale_before):
                summary.skipped += 1
                continue
            if job.status == JobStatus.processing:
                logger.warning(
                    "job_reclaimed job_id=%s job_type=%s claimed_at=%s",
                    job.id,
                    job.job_type.value,
                    job.claimed_at,
                )
            try:
                self._dispatch(job)
            except Exception as exc:
                status = self._record_failure(job, exc, run_at)
                if status == JobStatus.failed:
                    summary.failed += 1
                else:
                    summary.retried += 1
                continue
            self.store.complete_job(job.id, utc_now())
            self._observe(JobStatus.done)
            summary.done += 1
            logger.info("job_done job_id=%s job_type=%s", job.id, job.job_type.value)
        if jobs:
            logger.info(
                "queue_run picked=%s done=%s retried=%s failed=%s skipped=%s",
                summary.picked,
                summary.done,
                summary.retried,
                summary.failed,
                summary.skipped,
            )
        return summary

    def _dispatch(self, job: QueueJobRecord) -> None:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            raise UnknownJobTypeError(f"no handler registered for {job.job_type.value}")
        handler(job.payload)

    def _record_failure(self, job: QueueJobRecord, exc: Exception, run_at: datetime) -> JobStatus:
        attempts = job.attempts + 1
        error = f"{type(exc).__name__}: {exc}"
        if attempts >= job.max_attempts:
            status = JobStatus.failed
            next_eligible_at = None
        else:
            status = JobStatus.pending
            delay = backoff_delay(attempts, self.backoff_seconds, self.backoff_max_seconds)
            next_eligible_at = run_at + timedelta(seconds=delay)
        self.store.record_job_failure(
            job.id,
            attempts=attempts,
            error=error,
            status=status,
            next_eligible_at=next_eligible_at,
        )
        self._observe(status)
        logger.warning(
            "job_failed job_id=%s job_type=%s attempts=%s max_attempts=%s status=%s "
            "error=%s payload=%s",
            job.id,
            job.job_type.value,
            attempts,
            job.max_attempts,
            status.value,
            error,
            redact_sensitive_data(job.payload),
        )
        if status == JobStatus.failed:
            self._run_exhausted_hook(job, exc)
        return status

    def _run_exhausted_hook(self, job: QueueJobRecord, exc: Exception) -> None:
        hook = self.exhausted_hooks.get(job.job_type)
        if hook is None:
            return
        try:
            hook(job.payload, exc)
        except Exception:
            # the job row already reads failed
            logger.exception(
                "job_exhausted_hook_failed job_id=%s job_type=%s", job.id, job.job_type.value
            )

    def _observe(self, status: JobStatus) -> None:
        if self.metrics:
            label = "retried" if status == JobStatus.pending else status.value
            self.metrics.record_job(status=label)
