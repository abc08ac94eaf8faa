"""
Background job scheduler.

Jobs run on a thread pool and are mirrored into a SQLite job table so their
progress can be inspected from another process. Member jobs (``sync_node``
and ``sync_batch``) process their node ids one at a time: a failing member is
recorded and the batch carries on, retryable failures are retried in later
attempts, and a batch is only failed when every member failed. Cancelling a
job stops it before its next member; work already persisted stays persisted.
"""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .error_tracker import ErrorCategory, ErrorSeverity, ErrorTracker, SyncException
from .logging_manager import get_logger
from .models import Job, JobKind, JobStatus, NodeResult, NodeState, utcnow
from .storage import SqliteDatabase

logger = get_logger(__name__)

MemberHandler = Callable[[str, Job], NodeResult]
TaskHandler = Callable[[Job], Optional[Dict[str, Any]]]

MEMBER_KINDS = (JobKind.SYNC_NODE, JobKind.SYNC_BATCH)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class JobStore:
    """Durable job table. Readable by the inspection CLI while a sync runs."""

    def __init__(self, state_dir: Union[str, Path], filename: str = "jobs.db"):
        self.db = SqliteDatabase(Path(state_dir) / filename)
        with self.db.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    total INTEGER NOT NULL DEFAULT 0,
                    completed_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    node_results TEXT NOT NULL DEFAULT '{}',
                    error_detail TEXT,
                    depends_on TEXT NOT NULL DEFAULT '[]',
                    not_before TEXT,
                    result TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")

    def save(self, job: Job) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO jobs (job_id, kind, status, payload, attempt_count, created_at, completed_at, "
                "total, completed_count, failed_count, node_results, error_detail, depends_on, not_before, result) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job.job_id, job.kind.value, job.status.value, json.dumps(job.payload, default=str),
                    job.attempt_count, job.created_at.isoformat(),
                    job.completed_at.isoformat() if job.completed_at else None,
                    job.total, job.completed_count, job.failed_count,
                    json.dumps(job.node_results, default=str), job.error_detail, json.dumps(job.depends_on),
                    job.not_before.isoformat() if job.not_before else None,
                    json.dumps(job.result, default=str) if job.result is not None else None,
                ),
            )

    def _row_to_job(self, row) -> Job:
        return Job(
            kind=JobKind(row["kind"]),
            payload=json.loads(row["payload"]),
            job_id=row["job_id"],
            status=JobStatus(row["status"]),
            attempt_count=row["attempt_count"],
            created_at=_parse_time(row["created_at"]),
            completed_at=_parse_time(row["completed_at"]),
            total=row["total"],
            completed_count=row["completed_count"],
            failed_count=row["failed_count"],
            node_results=json.loads(row["node_results"]),
            error_detail=row["error_detail"],
            depends_on=json.loads(row["depends_on"]),
            not_before=_parse_time(row["not_before"]),
            result=json.loads(row["result"]) if row["result"] else None,
        )

    def get(self, job_id: str) -> Optional[Job]:
        with self.db.reader() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list(self, status: Optional[JobStatus] = None, limit: int = 50) -> List[Job]:
        with self.db.reader() as conn:
            if status:
                rows = conn.execute("SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC LIMIT ?",
                                    (status.value, limit)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)).fetchall()
        return [self._row_to_job(row) for row in rows]

    def unfinished(self) -> List[Job]:
        with self.db.reader() as conn:
            rows = conn.execute("SELECT * FROM jobs WHERE status IN (?, ?) ORDER BY created_at",
                                (JobStatus.QUEUED.value, JobStatus.RUNNING.value)).fetchall()
        return [self._row_to_job(row) for row in rows]


class JobScheduler:
    """
    Thread pool executor for sync jobs.

    Handlers are registered per job kind before jobs are enqueued: a member
    handler for ``sync_node``/``sync_batch`` (called once per node id) and a
    task handler for ``resolve_links``.
    """

    def __init__(self, store: JobStore, max_workers: int = 4, max_attempts: int = 3,
                 retry_delay_seconds: float = 2.0, error_tracker: Optional[ErrorTracker] = None):
        self.store = store
        self.max_workers = max_workers
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.error_tracker = error_tracker or ErrorTracker()
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notionsync-job")
        self.jobs: Dict[str, Job] = {}
        self.job_lock = threading.Lock()
        self._member_handlers: Dict[JobKind, MemberHandler] = {}
        self._task_handlers: Dict[JobKind, TaskHandler] = {}
        self._done: Dict[str, threading.Event] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._shutdown = False

    def register_member_handler(self, kind: JobKind, handler: MemberHandler) -> None:
        if kind not in MEMBER_KINDS:
            raise ValueError(f"{kind.value} jobs have no members")
        self._member_handlers[kind] = handler

    def register_task_handler(self, kind: JobKind, handler: TaskHandler) -> None:
        self._task_handlers[kind] = handler

    # Public contract

    def enqueue(self, job: Job) -> str:
        if job.kind not in self._member_handlers and job.kind not in self._task_handlers:
            raise ValueError(f"No handler registered for {job.kind.value} jobs")
        if job.kind in MEMBER_KINDS:
            job.total = len(job.member_ids)
        with self.job_lock:
            self.jobs[job.job_id] = job
            self._done[job.job_id] = threading.Event()
        self.store.save(job)
        logger.info(f"Enqueued {job.kind.value} job {job.job_id}",
                    extra={'details': {'job_id': job.job_id, 'total': job.total, 'depends_on': job.depends_on}})
        self._dispatch_if_ready(job.job_id)
        return job.job_id

    def status(self, job_id: str) -> Optional[Job]:
        with self.job_lock:
            job = self.jobs.get(job_id)
        return job if job is not None else self.store.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not reached a terminal state. Persisted members stay persisted."""
        with self.job_lock:
            job = self.jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return False
            was_running = job.status == JobStatus.RUNNING
            job.status = JobStatus.CANCELLED
            job.completed_at = utcnow()
            timer = self._timers.pop(job_id, None)
        if timer:
            timer.cancel()
        self.store.save(job)
        logger.info(f"Cancelled job {job.job_id}", extra={'details': {'job_id': job_id}})
        if not was_running:
            self._finish(job)
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Jobs this scheduler no longer tracks count as done."""
        event = self._done.get(job_id)
        return event.wait(timeout) if event else True

    def resume(self) -> List[str]:
        """Re-enqueue jobs a previous process left queued or running."""
        resumed = []
        for job in self.store.unfinished():
            job.status = JobStatus.QUEUED
            job.not_before = None
            self.enqueue(job)
            resumed.append(job.job_id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} unfinished jobs")
        return resumed

    def shutdown(self, wait: bool = True) -> None:
        self._shutdown = True
        with self.job_lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self.executor.shutdown(wait=wait)

    # Dispatching

    def _dependencies_done(self, job: Job) -> bool:
        for dependency in job.depends_on:
            other = self.status(dependency)
            if other is not None and not other.status.is_terminal:
                return False
        return True

    def _dispatch_if_ready(self, job_id: str) -> None:
        with self.job_lock:
            job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.QUEUED or not self._dependencies_done(job):
            return
        delay = 0.0
        if job.not_before is not None:
            delay = max(0.0, (job.not_before - utcnow()).total_seconds())
        if delay > 0:
            timer = threading.Timer(delay, self._submit, args=(job_id,))
            timer.daemon = True
            with self.job_lock:
                self._timers[job_id] = timer
            timer.start()
        else:
            self._submit(job_id)

    def _submit(self, job_id: str) -> None:
        with self.job_lock:
            self._timers.pop(job_id, None)
        if self._shutdown:
            return
        self.executor.submit(self._execute_job, job_id)

    def _execute_job(self, job_id: str) -> None:
        with self.job_lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return
            job.status = JobStatus.RUNNING
            job.attempt_count += 1
        self.store.save(job)
        logger.info(f"Running {job.kind.value} job {job_id} (attempt {job.attempt_count}/{self.max_attempts})")

        try:
            if job.kind in MEMBER_KINDS:
                retry = self._run_members(job)
            else:
                job.result = self._task_handlers[job.kind](job)
                retry = False
                self._complete(job, JobStatus.COMPLETED)
        except Exception as e:
            logger.error(f"Job {job_id} raised: {e}", exc_info=True)
            with self.job_lock:
                job.error_detail = str(e)
            retry = True
            if job.attempt_count >= self.max_attempts:
                self.error_tracker.report(
                    f"Job {job_id} failed after {job.attempt_count} attempts: {e}",
                    severity=ErrorSeverity.ERROR,
                    category=ErrorCategory.JOB,
                    details={'job_id': job_id, 'kind': job.kind.value},
                )
                self._complete(job, JobStatus.FAILED)
                return

        if retry:
            self._requeue(job)

    def _run_members(self, job: Job) -> bool:
        """Process outstanding members. Returns True when the job should be retried."""
        handler = self._member_handlers[job.kind]
        for node_id in job.member_ids:
            with self.job_lock:
                if job.status == JobStatus.CANCELLED:
                    break
                previous = job.node_results.get(node_id)
            if previous and (previous['state'] == NodeState.REGISTERED.value or not previous.get('retryable')):
                continue
            result = self._run_member(handler, node_id, job)
            self._record_member(job, node_id, result, previous)

        with self.job_lock:
            if job.status == JobStatus.CANCELLED:
                cancelled = True
            else:
                cancelled = False
                retryable = [r for r in job.node_results.values()
                             if r['state'] == NodeState.FAILED.value and r.get('retryable')]
        if cancelled:
            self.store.save(job)
            self._finish(job)
            return False
        if retryable and job.attempt_count < self.max_attempts:
            return True
        final = JobStatus.FAILED if job.total and job.failed_count == job.total else JobStatus.COMPLETED
        self._complete(job, final)
        return False

    def _run_member(self, handler: MemberHandler, node_id: str, job: Job) -> NodeResult:
        try:
            return handler(node_id, job)
        except SyncException as e:
            logger.error(f"Member {node_id} of job {job.job_id} failed: {e.message}")
            return NodeResult(node_id, NodeState.FAILED, error=e.message, retryable=e.retryable)
        except Exception as e:
            logger.error(f"Member {node_id} of job {job.job_id} raised: {e}", exc_info=True)
            return NodeResult(node_id, NodeState.FAILED, error=str(e), retryable=False)

    def _record_member(self, job: Job, node_id: str, result: NodeResult, previous: Optional[Dict[str, Any]]) -> None:
        with self.job_lock:
            if previous and previous['state'] == NodeState.FAILED.value:
                job.failed_count -= 1
            if result.ok:
                job.completed_count += 1
            else:
                job.failed_count += 1
            entry = result.to_dict()
            entry['attempts'] = (previous or {}).get('attempts', 0) + 1
            job.node_results[node_id] = entry
        # Progress is observable while the batch runs
        self.store.save(job)

    def _requeue(self, job: Job) -> None:
        with self.job_lock:
            if job.status == JobStatus.CANCELLED:
                return
            job.status = JobStatus.QUEUED
            delay = self.retry_delay_seconds * (2 ** (job.attempt_count - 1))
            job.not_before = utcnow() + timedelta(seconds=delay)
        self.store.save(job)
        logger.warning(f"Retrying job {job.job_id} in {delay:.1f}s")
        self._dispatch_if_ready(job.job_id)

    def _complete(self, job: Job, status: JobStatus) -> None:
        with self.job_lock:
            if job.status == JobStatus.CANCELLED:
                status = JobStatus.CANCELLED
            job.status = status
            job.completed_at = job.completed_at or utcnow()
        self.store.save(job)
        logger.info(
            f"Job {job.job_id} {status.value}: {job.completed_count}/{job.total} completed, {job.failed_count} failed",
            extra={'details': job.to_dict()},
        )
        self._finish(job)

    def _finish(self, job: Job) -> None:
        with self.job_lock:
            # Terminal jobs are served from the store from here on
            self.jobs.pop(job.job_id, None)
            self._timers.pop(job.job_id, None)
            event = self._done.pop(job.job_id, None)
        if event:
            event.set()
        with self.job_lock:
            waiting = [other.job_id for other in self.jobs.values()
                       if job.job_id in other.depends_on and other.status == JobStatus.QUEUED]
        for job_id in waiting:
            self._dispatch_if_ready(job_id)
