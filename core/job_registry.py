"""Job registry: owns every scan job and drives its lifecycle.

The registry is the only writer of job state. Each submitted job gets one
background asyncio task that spawns the engine, relays progress and records
the outcome. Callers only ever receive copies of jobs.

On every terminal transition the registry, in this order:
    1. appends a HistoryEntry to the history store
    2. runs the vulnerability analyzer (completed jobs with a parsed result)
    3. publishes the job's events through the broadcaster
so a subscriber never sees a terminal event without its history record.
"""

import asyncio
import threading
import uuid
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone

from engine.arguments import build_argv
from engine.base import EngineHandle, EngineLauncher, EngineOutcome, SpawnError
from results.analyzer import VulnerabilityAnalyzer, summarize
from results.parser import DecodeError, decode_result

from .broadcaster import Event, EventBroadcaster, EventType
from .history import HistoryStore
from .logging_config import get_job_logger, get_logger
from .metrics import (
    record_findings,
    record_scan_completion,
    record_scan_submission,
    update_active_jobs_count,
    update_history_size,
)
from .targets import (
    normalize_targets,
    validate_output_format,
    validate_port_spec,
    validate_timeout,
)
from .types import (
    VALID_TRANSITIONS,
    ErrorKind,
    HistoryEntry,
    InvalidRequest,
    JobState,
    ScanJob,
    ScanRequest,
    StateTransitionError,
)

logger = get_logger(__name__)

DEFAULT_JOB_RETENTION = 100
SUMMARY_MAX_LEN = 200


def generate_job_id() -> str:
    """Generate an opaque job ID (32 hex characters)."""
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _seconds_between(start: str | None, end: str | None) -> float:
    if not start or not end:
        return 0.0
    delta = datetime.fromisoformat(end) - datetime.fromisoformat(start)
    return round(max(delta.total_seconds(), 0.0), 3)


def summarize_job(job: ScanJob) -> str:
    """Short human-readable outcome for history listings."""
    if job.state is JobState.COMPLETED:
        if job.parsed_result is not None:
            return f"{len(job.parsed_result.hosts)} hosts found"
        return "Scan completed"
    if job.state is JobState.STOPPED:
        return "Scan stopped"
    message = (job.error_message or "Scan failed").strip().splitlines()
    summary = message[0] if message else "Scan failed"
    if len(summary) > SUMMARY_MAX_LEN:
        summary = summary[: SUMMARY_MAX_LEN - 3] + "..."
    return summary


def validate_request(request: ScanRequest) -> ScanRequest:
    """
    Syntactic request checks.

    Raises:
        InvalidRequest: empty or flag-like targets, malformed port spec,
            bad timeout/format
    """
    return replace(
        request,
        targets=normalize_targets(request.targets),
        ports=validate_port_spec(request.ports),
        timeout=validate_timeout(request.timeout),
        output_format=validate_output_format(request.output_format),
    )


class JobRegistry:
    """
    Tracks scan jobs from submission to a terminal state.

    Args:
        launcher: Starts engine processes
        broadcaster: Receives lifecycle events
        history: Receives one entry per terminal job
        analyzer: Turns completed results into findings
        job_retention: Terminal jobs kept queryable by ID (oldest evicted)
    """

    def __init__(
        self,
        launcher: EngineLauncher,
        broadcaster: EventBroadcaster,
        history: HistoryStore,
        analyzer: VulnerabilityAnalyzer | None = None,
        job_retention: int = DEFAULT_JOB_RETENTION,
    ):
        self.launcher = launcher
        self.broadcaster = broadcaster
        self.history = history
        self.analyzer = analyzer or VulnerabilityAnalyzer()
        self.job_retention = job_retention

        self._jobs: dict[str, ScanJob] = {}
        self._handles: dict[str, EngineHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._retired: deque[str] = deque()
        self._lock = threading.RLock()
        self._closing = False

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def submit(self, request: ScanRequest) -> str:
        """
        Register a job and start it in the background.

        Returns the job ID immediately; the engine runs asynchronously.

        Raises:
            InvalidRequest: request rejected, no job created
        """
        if self._closing:
            raise InvalidRequest("Registry is shutting down")
        request = validate_request(request)
        argv = tuple(build_argv(request))

        with self._lock:
            job_id = generate_job_id()
            while job_id in self._jobs:
                job_id = generate_job_id()
            self._jobs[job_id] = ScanJob(
                job_id=job_id,
                request=request,
                created_at=utc_now(),
                argv=argv,
            )
            self._done[job_id] = asyncio.Event()
            active = self._active_count()

        record_scan_submission(request.kind)
        update_active_jobs_count(active)
        logger.info(
            "job_submitted",
            job_id=job_id,
            kind=request.kind,
            targets=list(request.targets),
            ports=request.ports,
        )

        task = asyncio.get_running_loop().create_task(self._run(job_id))
        with self._lock:
            self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._forget_task(jid))
        return job_id

    def stop(self, job_id: str) -> bool:
        """
        Cancel a running job.

        The engine is sent a termination request and the job is marked
        stopped right away; process exit is not awaited.

        Returns:
            True if the job was running, False otherwise (no mutation)
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state is not JobState.RUNNING:
                return False
            handle = self._handles.get(job_id)

        if handle is not None:
            handle.terminate()
        self._finish(job_id, JobState.STOPPED)
        return True

    def get(self, job_id: str) -> ScanJob | None:
        """Snapshot of a job, or None if the ID is unknown (or evicted)."""
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def list_history(self, limit: int = 10) -> list[HistoryEntry]:
        """Most recent terminal jobs, newest first."""
        return self.history.recent(limit)

    def active(self) -> list[ScanJob]:
        """Snapshots of jobs that have not reached a terminal state."""
        with self._lock:
            return [replace(job) for job in self._jobs.values() if not job.is_terminal]

    async def wait(self, job_id: str, timeout: float | None = None) -> ScanJob | None:
        """
        Wait until a job reaches a terminal state.

        Raises:
            TimeoutError: timeout elapsed first
        """
        with self._lock:
            done = self._done.get(job_id)
        if done is None:
            return self.get(job_id)
        if timeout is None:
            await done.wait()
        else:
            await asyncio.wait_for(done.wait(), timeout)
        return self.get(job_id)

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop every running job and wait for the background tasks to exit."""
        self._closing = True
        with self._lock:
            running = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state is JobState.RUNNING
            ]
        for job_id in running:
            self.stop(job_id)

        with self._lock:
            tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("registry_shutdown_timeout", pending=len(pending))
        logger.info("registry_shutdown_complete", stopped=len(running))

    # -------------------------------------------------------------------------
    # Background execution
    # -------------------------------------------------------------------------

    async def _run(self, job_id: str) -> None:
        log = get_job_logger(__name__, job_id)
        try:
            await self._execute(job_id, log)
        except Exception as e:
            log.error("job_task_failed", error=str(e), exc_info=True)
            self._fail_unexpected(job_id, e)

    def _fail_unexpected(self, job_id: str, error: Exception) -> None:
        """Fail a job whose task raised, unless it already reached a terminal state."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            pending = job.state is JobState.PENDING
            handle = self._handles.pop(job_id, None)

        if handle is not None:
            handle.terminate()
        self._finish(
            job_id,
            JobState.FAILED,
            error_kind=ErrorKind.SPAWN_FAILURE if pending else ErrorKind.ENGINE_FAILURE,
            error_message=f"{error.__class__.__name__}: {error!s}",
        )

    async def _execute(self, job_id: str, log) -> None:
        with self._lock:
            job = self._jobs[job_id]
            argv = job.argv
            output_format = job.request.output_format

        try:
            handle = await self.launcher.spawn(argv)
        except SpawnError as e:
            log.error("job_spawn_failed", error=str(e))
            self._finish(
                job_id,
                JobState.FAILED,
                error_kind=ErrorKind.SPAWN_FAILURE,
                error_message=str(e),
            )
            return

        with self._lock:
            self._handles[job_id] = handle
            self._transition(job, JobState.RUNNING)
            job.started_at = utc_now()
        log.info("job_running", pid=getattr(handle, "pid", None))
        self._publish(
            EventType.STARTED, job_id, command=" ".join(argv), targets=list(job.request.targets)
        )

        if self._closing:
            self.stop(job_id)

        pump = asyncio.ensure_future(self._relay_progress(job_id, handle))
        try:
            outcome = await handle.wait()
            await pump
        except asyncio.CancelledError:
            handle.terminate()
            pump.cancel()
            with self._lock:
                still_running = job.state is JobState.RUNNING
            if still_running:
                self._finish(job_id, JobState.STOPPED)
            raise
        except Exception as e:
            log.error("job_wait_failed", error=str(e), exc_info=True)
            handle.terminate()
            pump.cancel()
            with self._lock:
                still_running = job.state is JobState.RUNNING
            if still_running:
                self._finish(
                    job_id,
                    JobState.FAILED,
                    error_kind=ErrorKind.ENGINE_FAILURE,
                    error_message=f"{e.__class__.__name__}: {e!s}",
                )
            return
        finally:
            with self._lock:
                self._handles.pop(job_id, None)

        self._record_outcome(job_id, outcome, output_format, log)

    def _record_outcome(self, job_id, outcome: EngineOutcome, output_format, log) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            if job.is_terminal:
                # Terminal records are frozen; late output only reaches the log
                log.info(
                    "job_exit_after_stop",
                    exit_code=outcome.exit_code,
                    output_chars=len(outcome.output),
                )
                return

        if not outcome.succeeded:
            detail = outcome.error_detail()
            log.warning("job_engine_failed", exit_code=outcome.exit_code, error=detail)
            self._finish(
                job_id,
                JobState.FAILED,
                raw_output=outcome.output,
                exit_code=outcome.exit_code,
                error_kind=ErrorKind.ENGINE_FAILURE,
                error_message=detail,
            )
            return

        try:
            parsed = decode_result(outcome.stdout, output_format)
        except DecodeError as e:
            log.warning("job_decode_failed", error=str(e))
            self._finish(
                job_id,
                JobState.FAILED,
                raw_output=outcome.output,
                exit_code=outcome.exit_code,
                error_kind=ErrorKind.DECODE_FAILURE,
                error_message=str(e),
            )
            return

        self._finish(
            job_id,
            JobState.COMPLETED,
            raw_output=outcome.output,
            exit_code=outcome.exit_code,
            parsed_result=parsed,
            progress=100,
        )

    async def _relay_progress(self, job_id: str, handle: EngineHandle) -> None:
        """Republish the engine's progress stream while the job is running."""
        while True:
            percent = await handle.progress.get()
            if percent is None:
                return
            with self._lock:
                job = self._jobs.get(job_id)
                if job is None or job.state is not JobState.RUNNING:
                    continue
                job.progress = percent
            self._publish(EventType.PROGRESS, job_id, percent=percent)

    # -------------------------------------------------------------------------
    # State handling
    # -------------------------------------------------------------------------

    @staticmethod
    def _transition(job: ScanJob, new_state: JobState) -> None:
        if new_state not in VALID_TRANSITIONS.get(job.state, set()):
            raise StateTransitionError(
                f"Invalid transition: {job.state.value} → {new_state.value}"
            )
        job.state = new_state

    def _finish(self, job_id: str, state: JobState, **fields) -> None:
        """Move a job to a terminal state, then record history, analyze, publish."""
        with self._lock:
            job = self._jobs[job_id]
            self._transition(job, state)
            job.ended_at = utc_now()
            for key, value in fields.items():
                setattr(job, key, value)
            duration = _seconds_between(job.started_at or job.created_at, job.ended_at)
            entry = HistoryEntry(
                job_id=job_id,
                state=state,
                started_at=job.started_at,
                ended_at=job.ended_at,
                duration_seconds=duration,
                summary=summarize_job(job),
                command=" ".join(job.argv),
                kind=job.request.kind,
            )
            snapshot = replace(job)
            done = self._done.pop(job_id, None)
            self._retire(job_id)
            active = self._active_count()

        findings = None
        try:
            # 1. history
            self.history.append(entry)
            update_history_size(len(self.history))

            # 2. analysis
            if state is JobState.COMPLETED and snapshot.parsed_result is not None:
                findings = self.analyzer.analyze(snapshot.parsed_result)
                record_findings([f.severity.value for f in findings])

            # 3. events
            if state is JobState.COMPLETED:
                if snapshot.parsed_result is not None:
                    result = snapshot.parsed_result.to_dict()
                else:
                    result = snapshot.raw_output
                self._publish(EventType.RESULT, job_id, result=result)
                if findings is not None:
                    self._publish(
                        EventType.FINDINGS,
                        job_id,
                        findings=[f.to_dict() for f in findings],
                        summary=summarize(findings),
                    )
                self._publish(EventType.COMPLETE, job_id, duration_seconds=duration)
            elif state is JobState.FAILED:
                self._publish(
                    EventType.ERROR,
                    job_id,
                    message=snapshot.error_message or "Scan failed",
                    error_kind=snapshot.error_kind.value if snapshot.error_kind else None,
                )
            else:
                self._publish(EventType.STOPPED, job_id)
        finally:
            record_scan_completion(snapshot.request.kind, state.value, duration)
            update_active_jobs_count(active)
            if done is not None:
                done.set()

        logger.info(
            "job_finished",
            job_id=job_id,
            state=state.value,
            duration_seconds=duration,
            findings=len(findings) if findings is not None else None,
        )

    def _publish(self, event_type: EventType, job_id: str, **payload) -> None:
        self.broadcaster.publish(Event(type=event_type, job_id=job_id, payload=payload))

    def _retire(self, job_id: str) -> None:
        """Track terminal jobs and evict the oldest beyond job_retention (lock held)."""
        self._retired.append(job_id)
        while len(self._retired) > self.job_retention:
            evicted = self._retired.popleft()
            self._jobs.pop(evicted, None)
            logger.debug("job_evicted", job_id=evicted)

    def _forget_task(self, job_id: str) -> None:
        with self._lock:
            self._tasks.pop(job_id, None)

    def _active_count(self) -> int:
        return sum(1 for job in self._jobs.values() if not job.is_terminal)
