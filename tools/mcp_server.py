"""FastMCP server exposing the scan orchestration core."""
from contextlib import asynccontextmanager

from fastmcp import FastMCP
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from core.config import load_settings
from core.logging_config import configure_logging, get_logger
from core.metrics import metrics_response, record_tool_call
from core.scan_service import ScanService
from core.types import InvalidRequest
from results.analyzer import summarize


# =============================================================================
# FastMCP Server Configuration
# =============================================================================
settings = load_settings()
configure_logging(log_level=settings.log_level)
logger = get_logger(__name__)

mcp = FastMCP("R-Map Scanner")

service = ScanService.from_settings(settings)

logger.info(
    "mcp_server_initialized",
    engine_path=settings.engine_path,
    history_capacity=settings.history_capacity,
)


def _rejected(tool: str, error: InvalidRequest) -> dict:
    record_tool_call(tool, "error")
    logger.info("tool_rejected", tool=tool, error=str(error))
    return {"error": "Invalid request", "message": str(error), "status_code": 400}


def _started(tool: str, job_id: str, **extra) -> dict:
    record_tool_call(tool, "success")
    logger.info("tool_invocation", tool=tool, job_id=job_id)
    return {"job_id": job_id, "status": "started", **extra}


# =============================================================================
# MCP Tools
# =============================================================================

@mcp.tool()
async def run_scan(
    targets: list[str],
    ports: str = "1-1000",
    timeout: float = 3,
    service_detection: bool = False,
    output_format: str = "json",
) -> dict:
    """
    Scan specific ports on target hosts.

    The scan runs in the background; poll get_scan_status() with the
    returned job_id.

    Args:
        targets: Target hosts, IPs or CIDR ranges
        ports: Port specification (e.g., "22,80,443" or "1-1000")
        timeout: Connection timeout in seconds (forwarded to the engine)
        service_detection: Enable service/version detection
        output_format: json|xml|normal (findings need json)

    Returns:
        {"job_id": "...", "status": "started", "message": "..."}
    """
    try:
        job_id = await service.start_scan(
            targets,
            ports=ports,
            timeout=timeout,
            service_detection=service_detection,
            output_format=output_format,
        )
    except InvalidRequest as e:
        return _rejected("run_scan", e)
    return _started("run_scan", job_id, message="Scan initiated successfully")


@mcp.tool()
async def quick_scan(targets: list[str]) -> dict:
    """
    Fast scan of the top 20 ports.

    Args:
        targets: Target hosts or networks
    """
    try:
        job_id = await service.quick_scan(targets)
    except InvalidRequest as e:
        return _rejected("quick_scan", e)
    return _started("quick_scan", job_id)


@mcp.tool()
async def service_detection(targets: list[str], ports: str | None = None) -> dict:
    """
    Scan with service/version detection.

    Args:
        targets: Target hosts or networks
        ports: Ports to scan (default: 22,80,443,3306,5432,8080)
    """
    try:
        job_id = await service.service_detection(targets, ports=ports)
    except InvalidRequest as e:
        return _rejected("service_detection", e)
    return _started("service_detection", job_id)


@mcp.tool()
async def network_discovery(network: str, quick_mode: bool = True) -> dict:
    """
    Discover devices on a network.

    Args:
        network: Network in CIDR notation (e.g., "192.168.1.0/24")
        quick_mode: Probe a handful of common ports instead of 1-1000

    Returns:
        {"job_id": "...", "status": "discovering", "network": "...", "mode": "quick|full"}
    """
    try:
        job_id = await service.discover(network, quick_mode=quick_mode)
    except InvalidRequest as e:
        return _rejected("network_discovery", e)
    record_tool_call("network_discovery", "success")
    return {
        "job_id": job_id,
        "status": "discovering",
        "network": network,
        "mode": "quick" if quick_mode else "full",
    }


@mcp.tool()
async def vulnerability_scan(targets: list[str]) -> dict:
    """
    Scan common vulnerable service ports; findings are computed on completion.

    Args:
        targets: Target hosts
    """
    try:
        job_id = await service.vulnerability_scan(targets)
    except InvalidRequest as e:
        return _rejected("vulnerability_scan", e)
    return _started("vulnerability_scan", job_id, message="Vulnerability scan started")


@mcp.tool()
async def stop_scan(job_id: str) -> dict:
    """
    Stop a running scan.

    Args:
        job_id: Job ID returned by a start tool

    Returns:
        {"job_id": "...", "stopped": true|false, "state": "..."}
    """
    ack = service.stop_scan(job_id)
    record_tool_call("stop_scan", "success")
    if ack["state"] is None:
        return {**ack, "error": f"Job {job_id} not found", "status_code": 404}
    if not ack["stopped"]:
        ack["message"] = f"Job is not running (state: {ack['state']})"
    else:
        ack["message"] = "Scan terminated successfully"
    return ack


@mcp.tool()
async def get_scan_status(job_id: str, include_output: bool = False) -> dict:
    """
    Get the current state of a scan job.

    Args:
        job_id: Job ID returned by a start tool
        include_output: Include the engine's raw output text

    Returns:
        Job record (state, timestamps, progress, error, result), or the
        history entry if the job has aged out of the registry
    """
    record_tool_call("get_scan_status", "success")
    job = service.get_job(job_id)
    if job is not None:
        return job.to_dict(include_output=include_output)

    entry = service.get_history_entry(job_id)
    if entry is not None:
        return entry.to_dict()

    return {"error": f"Job {job_id} not found", "status_code": 404}


@mcp.tool()
async def list_history(limit: int = 10) -> dict:
    """
    List recently finished jobs, newest first.

    Args:
        limit: Maximum number of entries (default: 10)
    """
    record_tool_call("list_history", "success")
    entries = service.list_history(limit)
    return {"history": [e.to_dict() for e in entries], "total": len(entries)}


@mcp.tool()
async def get_findings(job_id: str) -> dict:
    """
    Vulnerability findings for a completed job.

    Args:
        job_id: Job ID returned by a start tool

    Returns:
        {"job_id": "...", "findings": [...], "summary": {"HIGH": 2, ...}}
    """
    record_tool_call("get_findings", "success")
    findings = service.get_findings(job_id)
    if findings is None:
        return {"error": f"Job {job_id} not found", "status_code": 404}
    return {
        "job_id": job_id,
        "findings": [f.to_dict() for f in findings],
        "summary": summarize(findings),
    }


# =============================================================================
# Health & Metrics Endpoint Functions
# =============================================================================

async def health(request):
    """
    Health check endpoint.

    Returns:
        200 OK if the engine is executable, 503 Service Unavailable otherwise
    """
    health_status = service.health()

    if health_status["status"] == "healthy":
        return JSONResponse(status_code=200, content=health_status)
    return JSONResponse(status_code=503, content=health_status)


async def metrics(request):
    """Prometheus metrics endpoint."""
    return PlainTextResponse(metrics_response())


# =============================================================================
# ASGI App Configuration
# =============================================================================
# Served by run_server.py through uvicorn; MCP clients connect on /mcp.
app = mcp.http_app(path="/mcp", transport="streamable-http", stateless_http=True)

app.routes.append(Route("/health", endpoint=health, methods=["GET"]))
app.routes.append(Route("/metrics", endpoint=metrics, methods=["GET"]))


# =============================================================================
# Lifespan
# =============================================================================
_session_lifespan = app.router.lifespan_context


@asynccontextmanager
async def stop_scans_on_exit(asgi_app):
    """Stop every running scan when the server exits so no engine outlives it."""
    try:
        yield
    finally:
        logger.info("server_shutdown", active_jobs=len(service.list_active()))
        await service.shutdown()


@asynccontextmanager
async def lifespan(asgi_app):
    async with _session_lifespan(asgi_app) as state, stop_scans_on_exit(asgi_app):
        yield state


app.router.lifespan_context = lifespan
