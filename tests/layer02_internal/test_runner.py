"""Tests for the engine process runner."""

import asyncio
import json
import signal

import pytest

from engine.base import EngineOutcome, SpawnError
from engine.runner import ProcessRunner


class TestProcessRunner:
    """Spawning and collecting output."""

    @pytest.mark.asyncio
    async def test_argv_passed_after_command(self, engine_command):
        """The built argument vector reaches the engine unchanged."""
        runner = ProcessRunner(engine_command("argv"))
        argv = ["10.0.0.1", "10.0.0.2", "-p", "22,80", "-t", "3", "-o", "json", "-A"]

        outcome = await runner.run(argv)

        assert outcome.exit_code == 0
        assert json.loads(outcome.stderr) == argv

    @pytest.mark.asyncio
    async def test_stdout_and_stderr_captured_separately(self, engine_command):
        outcome = await ProcessRunner(engine_command("ok")).run(["10.0.0.1"])

        assert outcome.succeeded
        assert outcome.stdout.lstrip().startswith("{")
        assert "Scanning" in outcome.stderr
        assert "Scanning" in outcome.output
        assert '"hosts"' in outcome.output

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, engine_command):
        outcome = await ProcessRunner(engine_command("fail")).run(["10.0.0.1"])

        assert outcome.exit_code == 2
        assert not outcome.succeeded
        assert outcome.error_detail() == "Host unreachable"

    @pytest.mark.asyncio
    async def test_missing_executable_raises_spawn_error(self, tmp_path):
        runner = ProcessRunner(str(tmp_path / "no-such-engine"))

        with pytest.raises(SpawnError):
            await runner.spawn(["10.0.0.1"])

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            ProcessRunner([])


class TestProgressStream:
    """Progress scraped from engine output."""

    @pytest.mark.asyncio
    async def test_progress_values_then_sentinel(self, engine_command):
        handle = await ProcessRunner(engine_command("ok")).spawn(["10.0.0.1"])

        values = []
        while True:
            value = await asyncio.wait_for(handle.progress.get(), 10)
            if value is None:
                break
            values.append(value)
        await handle.wait()

        assert values
        assert values == sorted(set(values))
        assert values[-1] == 50

    @pytest.mark.asyncio
    async def test_no_progress_markers(self, engine_command):
        handle = await ProcessRunner(engine_command("garbage")).spawn(["10.0.0.1"])

        assert await asyncio.wait_for(handle.progress.get(), 10) is None
        outcome = await handle.wait()
        assert outcome.succeeded


class TestTerminate:
    """Graceful termination and forced kill."""

    @pytest.mark.asyncio
    async def test_terminate_sends_sigterm(self, engine_command):
        handle = await ProcessRunner(engine_command("slow")).spawn(["10.0.0.1"])
        assert await asyncio.wait_for(handle.progress.get(), 10) == 5

        handle.terminate()
        outcome = await asyncio.wait_for(handle.wait(), 10)

        assert outcome.exit_code == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_kill_after_grace_period(self, engine_command):
        """An engine ignoring SIGTERM is killed once the grace period ends."""
        runner = ProcessRunner(engine_command("stubborn"), kill_grace_seconds=0.5)
        handle = await runner.spawn(["10.0.0.1"])
        assert await asyncio.wait_for(handle.progress.get(), 10) == 1

        handle.terminate()
        outcome = await asyncio.wait_for(handle.wait(), 10)

        assert outcome.exit_code == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_noop(self, engine_command):
        handle = await ProcessRunner(engine_command("ok")).spawn(["10.0.0.1"])
        outcome = await handle.wait()

        handle.terminate()

        assert outcome.exit_code == 0


class TestEngineOutcome:
    """Error detail selection."""

    def test_error_detail_prefers_stderr(self):
        outcome = EngineOutcome(exit_code=1, stdout="out", stderr=" err \n", output="")
        assert outcome.error_detail() == "err"

    def test_error_detail_stdout_fallback(self):
        outcome = EngineOutcome(exit_code=1, stdout="out", stderr="", output="")
        assert outcome.error_detail() == "out"

    def test_error_detail_exit_code_fallback(self):
        outcome = EngineOutcome(exit_code=7, stdout="", stderr="  ", output="")
        assert outcome.error_detail() == "Scan failed with code 7"
