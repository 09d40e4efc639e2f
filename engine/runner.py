"""Process runner for the external R-Map scan engine."""

import asyncio
import codecs
import contextlib
from typing import Sequence

from core.logging_config import get_logger

from .base import EngineHandle, EngineLauncher, EngineOutcome, SpawnError
from .progress import ProgressTracker

logger = get_logger(__name__)

CHUNK_SIZE = 4096
DEFAULT_KILL_GRACE_SECONDS = 5.0


class EngineProcess(EngineHandle):
    """
    One running engine process.

    Both pipes are read continuously into accumulators; each chunk is run
    through the progress heuristic and forward-moving percentages are pushed
    to ``progress``. The queue gets a None sentinel once both pipes hit EOF.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        self._process = process
        self.pid = process.pid
        self.kill_grace_seconds = kill_grace_seconds
        self.progress: asyncio.Queue = asyncio.Queue()

        self._tracker = ProgressTracker()
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self._combined: list[str] = []
        self._kill_task: asyncio.Task | None = None
        self._reader = asyncio.ensure_future(self._read_streams())

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def _read_streams(self) -> None:
        try:
            await asyncio.gather(
                self._pump(self._process.stdout, self._stdout),
                self._pump(self._process.stderr, self._stderr),
            )
        finally:
            self.progress.put_nowait(None)

    async def _pump(self, stream: asyncio.StreamReader | None, sink: list[str]) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    sink.append(tail)
                    self._combined.append(tail)
                return

            text = decoder.decode(data)
            if not text:
                continue
            sink.append(text)
            self._combined.append(text)

            percent = self._tracker.feed(text)
            if percent is not None:
                self.progress.put_nowait(percent)

    async def wait(self) -> EngineOutcome:
        await self._reader
        exit_code = await self._process.wait()
        return EngineOutcome(
            exit_code=exit_code,
            stdout="".join(self._stdout),
            stderr="".join(self._stderr),
            output="".join(self._combined),
        )

    def terminate(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            return

        logger.info("engine_terminate_sent", pid=self.pid)
        if self._kill_task is None:
            self._kill_task = asyncio.ensure_future(self._kill_after_grace())

    async def _kill_after_grace(self) -> None:
        try:
            await asyncio.wait_for(self._process.wait(), self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "engine_kill_after_grace",
                pid=self.pid,
                grace_seconds=self.kill_grace_seconds,
            )
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()


class ProcessRunner(EngineLauncher):
    """
    Spawns the engine executable.

    Args:
        command: Engine executable path, or a command prefix such as
            ``[sys.executable, "fake_engine.py"]``
        kill_grace_seconds: Delay between SIGTERM and SIGKILL on terminate
    """

    def __init__(
        self,
        command: str | Sequence[str],
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ):
        if isinstance(command, str):
            command = [command]
        if not command:
            raise ValueError("Engine command must not be empty")
        self.command = list(command)
        self.kill_grace_seconds = kill_grace_seconds

    async def spawn(self, argv: Sequence[str]) -> EngineProcess:
        cmd = [*self.command, *argv]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("engine_spawn_failed", command=self.command, error=str(exc))
            raise SpawnError(str(exc)) from exc

        logger.debug("engine_spawned", pid=process.pid, argv=list(argv))
        return EngineProcess(process, kill_grace_seconds=self.kill_grace_seconds)

    async def run(self, argv: Sequence[str]) -> EngineOutcome:
        """Spawn and wait in one call, ignoring progress."""
        handle = await self.spawn(argv)
        return await handle.wait()
