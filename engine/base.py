"""Engine interface abstraction so the registry can run real or fake engines."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence


class SpawnError(Exception):
    """Raised when the engine executable cannot be started."""

    pass


@dataclass(frozen=True)
class EngineOutcome:
    """What an engine run produced once its process exited."""

    exit_code: int
    stdout: str
    stderr: str
    output: str  # stdout and stderr combined in arrival order

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def error_detail(self) -> str:
        """stderr, falling back to stdout, falling back to the exit code."""
        return (
            self.stderr.strip()
            or self.stdout.strip()
            or f"Scan failed with code {self.exit_code}"
        )


class EngineHandle(ABC):
    """A live engine process."""

    #: Strictly increasing percentages, terminated by a None sentinel
    progress: asyncio.Queue

    @abstractmethod
    async def wait(self) -> EngineOutcome:
        """Wait for the process to exit and return its captured output."""
        pass

    @abstractmethod
    def terminate(self) -> None:
        """
        Ask the process to exit without waiting for it.

        Implementations escalate to a hard kill after a grace period.
        """
        pass


class EngineLauncher(ABC):
    """Starts engine processes."""

    @abstractmethod
    async def spawn(self, argv: Sequence[str]) -> EngineHandle:
        """
        Start the engine with argv.

        Raises:
            SpawnError: executable missing, not executable, etc.
        """
        pass
