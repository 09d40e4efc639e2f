"""Core type definitions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobState(Enum):
    """Valid scan job states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


# Valid state transitions
VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED, JobState.STOPPED},
    JobState.COMPLETED: set(),  # Terminal state
    JobState.FAILED: set(),  # Terminal state
    JobState.STOPPED: set(),  # Terminal state
}

TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.STOPPED})


class ErrorKind(Enum):
    """Why a job ended in FAILED."""

    SPAWN_FAILURE = "spawn_failure"
    ENGINE_FAILURE = "engine_failure"
    DECODE_FAILURE = "decode_failure"


class OutputFormat(Enum):
    """Result encodings the engine can be asked for."""

    JSON = "json"
    XML = "xml"
    NORMAL = "normal"


class StateTransitionError(Exception):
    """Raised when invalid state transition is attempted."""

    pass


class InvalidRequest(ValueError):
    """Raised when a scan request is rejected before a job is created."""

    pass


@dataclass(frozen=True)
class ScanRequest:
    """Scan request parameters."""

    targets: tuple[str, ...]
    ports: str = "1-1000"
    timeout: float = 3
    service_detection: bool = False
    output_format: OutputFormat = OutputFormat.JSON
    kind: str = "scan"

    def to_dict(self) -> dict[str, Any]:
        return {
            "targets": list(self.targets),
            "ports": self.ports,
            "timeout": self.timeout,
            "service_detection": self.service_detection,
            "output_format": self.output_format.value,
            "kind": self.kind,
        }


@dataclass(frozen=True)
class PortResult:
    port: int
    protocol: str
    state: str
    service: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class HostResult:
    target: str
    ports: tuple[PortResult, ...] = ()
    hostname: str | None = None
    scan_time: float = 0.0


@dataclass(frozen=True)
class ScanInfo:
    version: str = ""
    total_hosts: int = 0
    scan_time: float = 0.0


@dataclass(frozen=True)
class ParsedResult:
    """Structured engine result (host -> port -> state/service/version)."""

    hosts: tuple[HostResult, ...]
    scan_info: ScanInfo = field(default_factory=ScanInfo)

    def to_dict(self) -> dict[str, Any]:
        """Convert back to the engine's JSON shape."""
        hosts = []
        for host in self.hosts:
            entry: dict[str, Any] = {"target": host.target}
            if host.hostname is not None:
                entry["hostname"] = host.hostname
            ports = []
            for p in host.ports:
                port_entry: dict[str, Any] = {
                    "port": p.port,
                    "protocol": p.protocol,
                    "state": p.state,
                }
                if p.service is not None:
                    port_entry["service"] = p.service
                if p.version is not None:
                    port_entry["version"] = p.version
                ports.append(port_entry)
            entry["ports"] = ports
            entry["scan_time"] = host.scan_time
            hosts.append(entry)
        return {
            "hosts": hosts,
            "scan_info": {
                "version": self.scan_info.version,
                "total_hosts": self.scan_info.total_hosts,
                "scan_time": self.scan_info.scan_time,
            },
        }


@dataclass
class ScanJob:
    """Scan job representation.

    The registry owns the live instance; everything handed out is a copy.
    """

    job_id: str
    request: ScanRequest
    created_at: str
    state: JobState = JobState.PENDING
    argv: tuple[str, ...] = ()
    started_at: str | None = None
    ended_at: str | None = None
    progress: int = 0
    raw_output: str = ""
    parsed_result: ParsedResult | None = None
    exit_code: int | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self, include_output: bool = False) -> dict[str, Any]:
        """Convert ScanJob to dict for JSON serialization."""
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "state": self.state.value,
            "request": self.request.to_dict(),
            "command": " ".join(self.argv),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "progress": self.progress,
            "exit_code": self.exit_code,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "result": self.parsed_result.to_dict() if self.parsed_result else None,
        }
        if include_output:
            data["raw_output"] = self.raw_output
        return data


@dataclass(frozen=True)
class HistoryEntry:
    """Read-only snapshot of a job taken when it became terminal."""

    job_id: str
    state: JobState
    started_at: str | None
    ended_at: str
    duration_seconds: float
    summary: str
    command: str = ""
    kind: str = "scan"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": self.duration_seconds,
            "summary": self.summary,
            "command": self.command,
            "kind": self.kind,
        }


class Severity(Enum):
    """Finding severities, ordered from least to most severe."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class Finding:
    """Risk observation for an open port that matched a rule."""

    host: str
    port: int
    service: str
    severity: Severity
    issue: str
    recommendation: str
    version: str = "Unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "service": self.service,
            "severity": self.severity.value,
            "issue": self.issue,
            "recommendation": self.recommendation,
            "version": self.version,
        }
