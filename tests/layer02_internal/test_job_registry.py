"""Tests for JobRegistry lifecycle, events and history against a fake engine."""

import asyncio
import re

import pytest

from core.broadcaster import EventBroadcaster, EventType
from core.history import HistoryStore
from core.job_registry import JobRegistry, generate_job_id, summarize_job
from core.types import (
    ErrorKind,
    InvalidRequest,
    JobState,
    OutputFormat,
    ScanJob,
    ScanRequest,
)
from engine.base import EngineHandle, EngineLauncher, EngineOutcome
from engine.runner import ProcessRunner


def request(*targets, **kwargs) -> ScanRequest:
    return ScanRequest(targets=targets or ("192.168.1.10",), **kwargs)


async def wait_for_event(subscription, job_id, event_type, timeout=10.0):
    while True:
        event = await subscription.get(timeout=timeout)
        assert event is not None, "subscription closed early"
        if event.job_id == job_id and event.type is event_type:
            return event


class TestJobIds:
    """Job ID generation."""

    def test_generate_job_id_format(self):
        """IDs are 32 lowercase hex characters."""
        assert re.fullmatch(r"[0-9a-f]{32}", generate_job_id())

    @pytest.mark.asyncio
    async def test_concurrent_submissions_get_unique_ids(self, registry):
        """Concurrent submissions never share an ID."""
        ids = await asyncio.gather(
            *(registry.submit(request(f"10.0.0.{i}")) for i in range(10))
        )

        assert len(set(ids)) == 10
        for job_id in ids:
            await registry.wait(job_id, timeout=10)

    @pytest.mark.asyncio
    async def test_identical_requests_tracked_independently(self, registry):
        same = request("10.0.0.5", ports="21,23,445")
        first, second = await asyncio.gather(registry.submit(same), registry.submit(same))

        assert first != second
        jobs = [await registry.wait(job_id, timeout=10) for job_id in (first, second)]
        assert [j.job_id for j in jobs] == [first, second]
        assert all(j.state is JobState.COMPLETED for j in jobs)
        assert len(registry.list_history()) == 2


class TestSubmitValidation:
    """Requests rejected before a job exists."""

    @pytest.mark.asyncio
    async def test_empty_targets_rejected(self, registry):
        """No job is created and no event is published."""
        subscription = registry.broadcaster.subscribe()

        with pytest.raises(InvalidRequest, match="No targets specified"):
            await registry.submit(ScanRequest(targets=()))

        assert registry.active() == []
        assert subscription.pending() == 0

    @pytest.mark.asyncio
    async def test_malformed_ports_rejected(self, registry):
        with pytest.raises(InvalidRequest):
            await registry.submit(request(ports="22;rm -rf /"))

    @pytest.mark.asyncio
    async def test_non_positive_timeout_rejected(self, registry):
        with pytest.raises(InvalidRequest):
            await registry.submit(request(timeout=0))

    @pytest.mark.asyncio
    async def test_single_string_target_split(self, registry):
        job_id = await registry.submit(ScanRequest(targets="10.0.0.5, 10.0.0.6"))

        assert registry.get(job_id).request.targets == ("10.0.0.5", "10.0.0.6")
        await registry.wait(job_id, timeout=10)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["--help", "-p", "10.0.0.5\x00", "a b"])
    async def test_flag_like_or_malformed_target_rejected(self, registry, target):
        subscription = registry.broadcaster.subscribe()

        with pytest.raises(InvalidRequest, match="Invalid target"):
            await registry.submit(request(target))

        assert registry.active() == []
        assert subscription.pending() == 0


class TestSuccessfulScan:
    """Engine exits 0 with a valid JSON document."""

    @pytest.mark.asyncio
    async def test_submit_returns_before_engine_finishes(self, registry):
        """submit() hands back an ID while the job is still pending."""
        job_id = await registry.submit(request())

        job = registry.get(job_id)
        assert job is not None
        assert job.state in (JobState.PENDING, JobState.RUNNING)
        await registry.wait(job_id, timeout=10)

    @pytest.mark.asyncio
    async def test_completed_job_record(self, registry):
        job_id = await registry.submit(request("192.168.1.10", "192.168.1.11"))
        job = await registry.wait(job_id, timeout=10)

        assert job.state is JobState.COMPLETED
        assert job.exit_code == 0
        assert job.progress == 100
        assert job.started_at is not None
        assert job.ended_at is not None
        assert job.error_kind is None
        assert [h.target for h in job.parsed_result.hosts] == ["192.168.1.10", "192.168.1.11"]
        assert "Scanning" in job.raw_output

    @pytest.mark.asyncio
    async def test_event_sequence(self, registry, collect_events):
        """started, progress..., result, findings, complete; in that order."""
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        events = await collect_events(subscription, job_id)
        types = [e.type for e in events]

        assert types[0] is EventType.STARTED
        assert types[-3:] == [EventType.RESULT, EventType.FINDINGS, EventType.COMPLETE]
        middle = types[1:-3]
        assert all(t is EventType.PROGRESS for t in middle)

        percents = [e.payload["percent"] for e in events if e.type is EventType.PROGRESS]
        assert percents == sorted(set(percents))
        assert all(0 < p <= 100 for p in percents)

        started = events[0].payload
        assert started["targets"] == ["192.168.1.10"]
        assert started["command"].startswith("192.168.1.10 -p 1-1000 -t 3 -o json")

    @pytest.mark.asyncio
    async def test_findings_for_risky_ports(self, registry, collect_events):
        """FTP, Telnet and SMB open -> HIGH, CRITICAL, HIGH (port 80 has no rule)."""
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        events = await collect_events(subscription, job_id)
        findings_event = next(e for e in events if e.type is EventType.FINDINGS)
        findings = findings_event.payload["findings"]

        assert [(f["port"], f["severity"]) for f in findings] == [
            (21, "HIGH"),
            (23, "CRITICAL"),
            (445, "HIGH"),
        ]
        assert findings_event.payload["summary"] == {
            "LOW": 0,
            "MEDIUM": 0,
            "HIGH": 2,
            "CRITICAL": 1,
        }

    @pytest.mark.asyncio
    async def test_history_recorded_before_terminal_event(self, registry):
        """A subscriber seeing 'complete' can already find the history entry."""
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        await wait_for_event(subscription, job_id, EventType.COMPLETE)

        entry = registry.history.find(job_id)
        assert entry is not None
        assert entry.state is JobState.COMPLETED
        assert entry.summary == "1 hosts found"

    @pytest.mark.asyncio
    async def test_json_extracted_from_surrounding_text(self, make_registry):
        """Banner lines around the JSON document are tolerated."""
        registry = make_registry("banner")
        job_id = await registry.submit(request())
        job = await registry.wait(job_id, timeout=10)

        assert job.state is JobState.COMPLETED
        assert job.parsed_result.hosts[0].ports[0].port == 22

    @pytest.mark.asyncio
    async def test_text_output_kept_raw(self, make_registry, collect_events):
        """Non-JSON formats complete without a parsed result or findings."""
        registry = make_registry("text")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request(output_format=OutputFormat.NORMAL))

        events = await collect_events(subscription, job_id)
        job = registry.get(job_id)

        assert job.state is JobState.COMPLETED
        assert job.parsed_result is None
        assert EventType.FINDINGS not in [e.type for e in events]
        result_event = next(e for e in events if e.type is EventType.RESULT)
        assert "22/tcp open" in result_event.payload["result"]
        assert registry.history.find(job_id).summary == "Scan completed"


class TestFailedScan:
    """Spawn, engine and decode failures."""

    @pytest.mark.asyncio
    async def test_engine_exit_nonzero(self, make_registry, collect_events):
        """Exit code 2 with stderr -> exactly one error event, no result."""
        registry = make_registry("fail")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        events = await collect_events(subscription, job_id)
        types = [e.type for e in events]
        job = registry.get(job_id)

        assert types.count(EventType.ERROR) == 1
        assert EventType.RESULT not in types
        assert EventType.COMPLETE not in types
        assert job.state is JobState.FAILED
        assert job.exit_code == 2
        assert job.error_kind is ErrorKind.ENGINE_FAILURE
        assert "unreachable" in job.error_message
        assert events[-1].payload["error_kind"] == "engine_failure"

    @pytest.mark.asyncio
    async def test_error_detail_falls_back_to_stdout(self, make_registry):
        registry = make_registry("fail_stdout")
        job = await registry.wait(await registry.submit(request()), timeout=10)

        assert job.error_message == "bad port range"

    @pytest.mark.asyncio
    async def test_error_detail_falls_back_to_exit_code(self, make_registry):
        registry = make_registry("fail_silent")
        job = await registry.wait(await registry.submit(request()), timeout=10)

        assert job.error_message == "Scan failed with code 3"

    @pytest.mark.asyncio
    async def test_decode_failure(self, make_registry, collect_events):
        """Exit 0 but no JSON when JSON was requested."""
        registry = make_registry("garbage")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        events = await collect_events(subscription, job_id)
        job = registry.get(job_id)

        assert job.state is JobState.FAILED
        assert job.error_kind is ErrorKind.DECODE_FAILURE
        assert job.raw_output.strip() == "this is not json"
        assert [e.type for e in events][-1] is EventType.ERROR

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path, collect_events):
        """Missing executable -> failed without ever running."""
        registry = JobRegistry(
            launcher=ProcessRunner(str(tmp_path / "missing-rmap")),
            broadcaster=EventBroadcaster(),
            history=HistoryStore(),
        )
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        events = await collect_events(subscription, job_id)
        job = registry.get(job_id)

        assert [e.type for e in events] == [EventType.ERROR]
        assert job.state is JobState.FAILED
        assert job.error_kind is ErrorKind.SPAWN_FAILURE
        assert job.started_at is None
        assert registry.history.find(job_id).state is JobState.FAILED


class HeldHandle(EngineHandle):
    """In-memory engine that runs until terminated."""

    def __init__(self):
        self.progress = asyncio.Queue()
        self.terminated = False
        self._exited = asyncio.Event()

    async def wait(self) -> EngineOutcome:
        await self._exited.wait()
        return EngineOutcome(exit_code=-15, stdout="", stderr="", output="")

    def terminate(self) -> None:
        self.terminated = True
        self.progress.put_nowait(None)
        self._exited.set()


class StubLauncher(EngineLauncher):
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.handles: list[HeldHandle] = []

    async def spawn(self, argv):
        if self.error is not None:
            raise self.error
        handle = HeldHandle()
        self.handles.append(handle)
        return handle


class StartRejectingBroadcaster(EventBroadcaster):
    def publish(self, event):
        if event.type is EventType.STARTED:
            raise RuntimeError("transport down")
        return super().publish(event)


class TestUnexpectedErrors:
    """Exceptions outside the engine's own failure modes still end the job."""

    @pytest.mark.asyncio
    async def test_launcher_error_fails_pending_job(self, collect_events):
        registry = JobRegistry(
            launcher=StubLauncher(ValueError("embedded null byte")),
            broadcaster=EventBroadcaster(),
            history=HistoryStore(),
        )
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        job = await registry.wait(job_id, timeout=5)
        events = await collect_events(subscription, job_id)

        assert job.state is JobState.FAILED
        assert job.error_kind is ErrorKind.SPAWN_FAILURE
        assert job.error_message == "ValueError: embedded null byte"
        assert [e.type for e in events] == [EventType.ERROR]
        assert registry.history.find(job_id).state is JobState.FAILED
        await registry.shutdown(timeout=5)

    @pytest.mark.asyncio
    async def test_error_after_spawn_fails_running_job(self):
        launcher = StubLauncher()
        registry = JobRegistry(
            launcher=launcher,
            broadcaster=StartRejectingBroadcaster(),
            history=HistoryStore(),
        )
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())

        job = await registry.wait(job_id, timeout=5)

        assert job.state is JobState.FAILED
        assert job.error_kind is ErrorKind.ENGINE_FAILURE
        assert job.error_message == "RuntimeError: transport down"
        assert launcher.handles[0].terminated
        assert registry.active() == []
        assert [e.type for e in subscription.drain()] == [EventType.ERROR]
        await registry.shutdown(timeout=5)


class TestStop:
    """Cancellation of running jobs."""

    @pytest.mark.asyncio
    async def test_stop_running_job(self, make_registry, collect_events):
        registry = make_registry("slow")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())
        await wait_for_event(subscription, job_id, EventType.STARTED)

        assert registry.stop(job_id) is True

        job = registry.get(job_id)
        assert job.state is JobState.STOPPED
        assert job.ended_at is not None

        events = await collect_events(subscription, job_id)
        assert events[-1].type is EventType.STOPPED
        assert EventType.ERROR not in [e.type for e in events]
        assert registry.history.find(job_id).summary == "Scan stopped"

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, make_registry):
        registry = make_registry("slow")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())
        await wait_for_event(subscription, job_id, EventType.STARTED)

        assert registry.stop(job_id) is True
        assert registry.stop(job_id) is False
        assert len(registry.history) == 1

    @pytest.mark.asyncio
    async def test_stop_completed_job_is_noop(self, registry):
        job_id = await registry.submit(request())
        await registry.wait(job_id, timeout=10)
        before = registry.get(job_id)

        assert registry.stop(job_id) is False
        assert registry.get(job_id) == before

    @pytest.mark.asyncio
    async def test_stop_unknown_job(self, registry):
        assert registry.stop("0" * 32) is False

    @pytest.mark.asyncio
    async def test_stopped_job_record_frozen(self, make_registry):
        """Engine output arriving after the stop does not touch the terminal record."""
        registry = make_registry("slow")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())
        await wait_for_event(subscription, job_id, EventType.STARTED)
        await asyncio.sleep(0.3)

        registry.stop(job_id)
        stopped = registry.get(job_id)
        await registry.shutdown(timeout=5)

        job = registry.get(job_id)
        assert job == stopped
        assert job.state is JobState.STOPPED
        assert job.exit_code is None
        assert job.raw_output == ""

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_jobs(self, make_registry):
        registry = make_registry("slow")
        subscription = registry.broadcaster.subscribe()
        job_id = await registry.submit(request())
        await wait_for_event(subscription, job_id, EventType.STARTED)

        await registry.shutdown(timeout=5)

        assert registry.get(job_id).state is JobState.STOPPED
        assert registry.active() == []
        with pytest.raises(InvalidRequest):
            await registry.submit(request())


class TestHistoryAndRetention:
    """Bounded history and job eviction."""

    @pytest.mark.asyncio
    async def test_history_evicts_oldest(self, make_registry):
        registry = make_registry("ok", history_capacity=2)
        ids = []
        for _ in range(3):
            job_id = await registry.submit(request())
            await registry.wait(job_id, timeout=10)
            ids.append(job_id)

        history = registry.list_history()
        assert [e.job_id for e in history] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_retention_evicts_terminal_jobs(self, make_registry):
        registry = make_registry("ok", job_retention=1)
        first = await registry.submit(request())
        await registry.wait(first, timeout=10)
        second = await registry.submit(request())
        await registry.wait(second, timeout=10)

        assert registry.get(first) is None
        assert registry.get(second) is not None
        assert registry.history.find(first) is not None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, registry):
        job_id = await registry.submit(request())
        await registry.wait(job_id, timeout=10)

        snapshot = registry.get(job_id)
        snapshot.state = JobState.FAILED

        assert registry.get(job_id).state is JobState.COMPLETED


class TestSummarizeJob:
    """History summary text."""

    def _job(self, **kwargs) -> ScanJob:
        return ScanJob(job_id="a" * 32, request=request(), created_at="2025-01-01T00:00:00+00:00", **kwargs)

    def test_failed_summary_uses_first_line(self):
        job = self._job(state=JobState.FAILED, error_message="boom\ntraceback...")
        assert summarize_job(job) == "boom"

    def test_failed_summary_truncated(self):
        job = self._job(state=JobState.FAILED, error_message="x" * 500)
        summary = summarize_job(job)
        assert len(summary) == 200
        assert summary.endswith("...")

    def test_failed_summary_default(self):
        job = self._job(state=JobState.FAILED)
        assert summarize_job(job) == "Scan failed"
