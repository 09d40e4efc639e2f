"""
Layer 02 Internal Test Fixtures.

The engine is replaced by a Python script run with the current interpreter.
Its first argument selects a behavior; the remaining arguments are the ones
the orchestrator built (targets, -p, -t, -o, -A).
"""

import sys
import textwrap

import pytest

from core.broadcaster import EventBroadcaster, EventType
from core.history import HistoryStore
from core.job_registry import JobRegistry
from engine.runner import ProcessRunner
from results.analyzer import VulnerabilityAnalyzer


FAKE_ENGINE = textwrap.dedent(
    """
    import json
    import sys
    import time

    mode = sys.argv[1]
    args = sys.argv[2:]
    targets = []
    for arg in args:
        if arg.startswith("-"):
            break
        targets.append(arg)


    def result(ports):
        return {
            "hosts": [
                {
                    "target": t,
                    "ports": [
                        {"port": p, "protocol": "tcp", "state": s, "service": svc}
                        for p, s, svc in ports
                    ],
                    "scan_time": 0.01,
                }
                for t in targets
            ],
            "scan_info": {"version": "0.2.0", "total_hosts": len(targets), "scan_time": 0.02},
        }


    if mode == "ok":
        sys.stderr.write("Scanning... 10%\\n")
        sys.stderr.flush()
        time.sleep(0.05)
        sys.stderr.write("Scanning... 50%\\n")
        sys.stderr.flush()
        time.sleep(0.05)
        print(json.dumps(result([
            (21, "open", "ftp"),
            (23, "open", "telnet"),
            (80, "open", "http"),
            (445, "open", "microsoft-ds"),
            (3389, "closed", None),
        ])))
    elif mode == "banner":
        print("R-Map 0.2.0 starting")
        print(json.dumps(result([(22, "open", "ssh")])))
        print("done")
    elif mode == "text":
        print("PORT   STATE  SERVICE")
        print("22/tcp open   ssh")
    elif mode == "argv":
        print(json.dumps(result([])))
        sys.stderr.write(json.dumps(args))
    elif mode == "fail":
        sys.stderr.write("Host unreachable\\n")
        sys.exit(2)
    elif mode == "fail_stdout":
        print("bad port range")
        sys.exit(1)
    elif mode == "fail_silent":
        sys.exit(3)
    elif mode == "garbage":
        print("this is not json")
    elif mode == "slow":
        sys.stderr.write("Scanning... 5%\\n")
        sys.stderr.flush()
        time.sleep(30)
    elif mode == "stubborn":
        import signal
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        sys.stderr.write("ignoring SIGTERM 1%\\n")
        sys.stderr.flush()
        time.sleep(30)
    """
)


# =============================================================================
# Fake Engine Fixtures
# =============================================================================

@pytest.fixture
def fake_engine(tmp_path):
    """Path to the fake engine script."""
    script = tmp_path / "fake_rmap.py"
    script.write_text(FAKE_ENGINE)
    return str(script)


@pytest.fixture
def engine_command(fake_engine):
    """Factory: command prefix running the fake engine in a given mode."""

    def _command(mode: str) -> list[str]:
        return [sys.executable, fake_engine, mode]

    return _command


@pytest.fixture
async def make_registry(engine_command):
    """Factory: JobRegistry wired to the fake engine; all are shut down afterwards."""
    created = []

    def _make(mode: str = "ok", history_capacity: int = 10, job_retention: int = 100,
              queue_size: int = 256, kill_grace_seconds: float = 0.5):
        registry = JobRegistry(
            launcher=ProcessRunner(engine_command(mode), kill_grace_seconds=kill_grace_seconds),
            broadcaster=EventBroadcaster(queue_size=queue_size),
            history=HistoryStore(capacity=history_capacity),
            analyzer=VulnerabilityAnalyzer(),
            job_retention=job_retention,
        )
        created.append(registry)
        return registry

    yield _make

    for registry in created:
        await registry.shutdown(timeout=5)


@pytest.fixture
def registry(make_registry):
    """Registry using the well-behaved fake engine."""
    return make_registry("ok")


async def _collect_events(subscription, job_id, timeout=10.0):
    terminal = {EventType.COMPLETE, EventType.ERROR, EventType.STOPPED}
    events = []
    while True:
        event = await subscription.get(timeout=timeout)
        if event is None:
            return events
        if event.job_id != job_id:
            continue
        events.append(event)
        if event.type in terminal:
            return events


@pytest.fixture
def collect_events():
    """Coroutine function reading a job's events up to its terminal event."""
    return _collect_events
