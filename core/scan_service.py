"""Request façade: the operation set external collaborators call.

MCP tools, the HTTP routes and the CLI all go through ScanService. It only
shapes requests (defaults, port presets, validation) and delegates to the
job registry and broadcaster.
"""

from typing import Any, Iterable

from engine.base import EngineLauncher
from engine.runner import ProcessRunner
from results.analyzer import VulnerabilityAnalyzer
from results.rules import RuleTable, load_rule_table

from .broadcaster import EventBroadcaster, Subscription
from .config import Settings
from .health import check_all_dependencies
from .history import HistoryStore
from .job_registry import JobRegistry
from .logging_config import get_logger
from .targets import normalize_targets, validate_output_format
from .types import Finding, HistoryEntry, InvalidRequest, JobState, ScanJob, ScanRequest

logger = get_logger(__name__)

DEFAULT_PORTS = "1-1000"
DEFAULT_TIMEOUT = 3

# Top 20 ports
QUICK_SCAN_PORTS = (
    "21,22,23,25,53,80,110,111,135,139,143,443,445,993,995,1723,3306,3389,5900,8080"
)

SERVICE_DETECTION_PORTS = "22,80,443,3306,5432,8080"

# Common vulnerable service ports
VULNERABILITY_PORTS = (
    "21,22,23,25,53,69,79,80,110,111,135,139,143,161,389,443,445,512,513,514,"
    "1433,1521,3306,3389,5432,5900,5984,6379,8020,8080,8443,9200,27017"
)
VULNERABILITY_TIMEOUT = 5

DISCOVERY_QUICK_PORTS = "22,80,443,445,3389"
DISCOVERY_FULL_PORTS = "1-1000"
DISCOVERY_TIMEOUT = 2


class ScanService:
    """Start/stop/query/discover operations over the orchestration core."""

    def __init__(
        self,
        registry: JobRegistry,
        settings: Settings | None = None,
    ):
        self.registry = registry
        self.broadcaster: EventBroadcaster = registry.broadcaster
        self.settings = settings or Settings()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        launcher: EngineLauncher | None = None,
        rules: RuleTable | None = None,
    ) -> "ScanService":
        """Wire runner, broadcaster, history, analyzer and registry from settings."""
        launcher = launcher or ProcessRunner(
            settings.engine_path, kill_grace_seconds=settings.kill_grace_seconds
        )
        if rules is None:
            rules = load_rule_table(settings.rules_file)

        registry = JobRegistry(
            launcher=launcher,
            broadcaster=EventBroadcaster(queue_size=settings.subscriber_queue_size),
            history=HistoryStore(capacity=settings.history_capacity),
            analyzer=VulnerabilityAnalyzer(rules),
            job_retention=settings.job_retention,
        )
        logger.info(
            "scan_service_initialized",
            engine_path=settings.engine_path,
            history_capacity=settings.history_capacity,
            rules=len(rules),
        )
        return cls(registry, settings=settings)

    # -------------------------------------------------------------------------
    # Start operations
    # -------------------------------------------------------------------------

    async def start_scan(
        self,
        targets: Iterable[str] | str,
        ports: str | None = None,
        timeout: float | None = None,
        service_detection: bool = False,
        output_format: str = "json",
        kind: str = "scan",
    ) -> str:
        """
        Start a scan job.

        Raises:
            InvalidRequest: rejected before any job is created
        """
        request = ScanRequest(
            targets=normalize_targets(targets),
            ports=ports or DEFAULT_PORTS,
            timeout=DEFAULT_TIMEOUT if timeout is None else timeout,
            service_detection=bool(service_detection),
            output_format=validate_output_format(output_format),
            kind=kind,
        )
        return await self.registry.submit(request)

    async def quick_scan(self, targets: Iterable[str] | str) -> str:
        """Fast scan of the top 20 ports."""
        return await self.start_scan(targets, ports=QUICK_SCAN_PORTS, kind="quick")

    async def service_detection(
        self, targets: Iterable[str] | str, ports: str | None = None
    ) -> str:
        """Scan with service/version detection enabled."""
        return await self.start_scan(
            targets,
            ports=ports or SERVICE_DETECTION_PORTS,
            service_detection=True,
            kind="service",
        )

    async def vulnerability_scan(self, targets: Iterable[str] | str) -> str:
        """Scan common vulnerable service ports with detection enabled."""
        return await self.start_scan(
            targets,
            ports=VULNERABILITY_PORTS,
            timeout=VULNERABILITY_TIMEOUT,
            service_detection=True,
            kind="vulnerability",
        )

    async def discover(self, network: str, quick_mode: bool = True) -> str:
        """
        Discover devices on a network.

        Uses a small port preset (or 1-1000 when quick_mode is off) and a
        shorter timeout than a regular scan.
        """
        if not isinstance(network, str) or not network.strip():
            raise InvalidRequest("Network not specified")
        return await self.start_scan(
            [network.strip()],
            ports=DISCOVERY_QUICK_PORTS if quick_mode else DISCOVERY_FULL_PORTS,
            timeout=DISCOVERY_TIMEOUT,
            output_format="json",
            kind="discovery",
        )

    # -------------------------------------------------------------------------
    # Stop / query operations
    # -------------------------------------------------------------------------

    def stop_scan(self, job_id: str) -> dict[str, Any]:
        """Best-effort cancellation; always answers, never raises."""
        stopped = self.registry.stop(job_id)
        job = self.registry.get(job_id)
        return {
            "job_id": job_id,
            "stopped": stopped,
            "state": job.state.value if job else None,
        }

    def get_job(self, job_id: str) -> ScanJob | None:
        return self.registry.get(job_id)

    def get_history_entry(self, job_id: str) -> HistoryEntry | None:
        return self.registry.history.find(job_id)

    def list_history(self, limit: int = 10) -> list[HistoryEntry]:
        return self.registry.list_history(limit)

    def list_active(self) -> list[ScanJob]:
        return self.registry.active()

    def get_findings(self, job_id: str) -> list[Finding] | None:
        """
        Recompute findings for a job.

        Returns:
            None for unknown jobs, an empty list for jobs without a
            structured completed result
        """
        job = self.registry.get(job_id)
        if job is None:
            return None
        if job.state is not JobState.COMPLETED:
            return []
        return self.registry.analyzer.analyze(job.parsed_result)

    async def wait(self, job_id: str, timeout: float | None = None) -> ScanJob | None:
        return await self.registry.wait(job_id, timeout=timeout)

    # -------------------------------------------------------------------------
    # Events / lifecycle
    # -------------------------------------------------------------------------

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        return self.broadcaster.subscribe(maxsize=maxsize)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return self.broadcaster.unsubscribe(subscription)

    def health(self) -> dict[str, Any]:
        status = check_all_dependencies(
            self.settings.engine_path,
            active_jobs=len(self.registry.active()),
            subscribers=self.broadcaster.subscriber_count,
        )
        status["history_size"] = len(self.registry.history)
        return status

    async def shutdown(self) -> None:
        await self.registry.shutdown()
        self.broadcaster.close_all()
