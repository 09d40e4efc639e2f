"""Engine argument vector construction.

The engine reads its arguments positionally, so the order below is part of
its contract: targets, then -p, -t, -o, then the optional -A flag.
"""

from core.types import ScanRequest

PORTS_FLAG = "-p"
TIMEOUT_FLAG = "-t"
OUTPUT_FLAG = "-o"
DETECTION_FLAG = "-A"


def format_timeout(timeout: float) -> str:
    """Render whole seconds without a trailing ".0"."""
    if float(timeout).is_integer():
        return str(int(timeout))
    return str(timeout)


def build_argv(request: ScanRequest) -> list[str]:
    """Build the engine argument vector for a request."""
    argv = [
        *request.targets,
        PORTS_FLAG, request.ports,
        TIMEOUT_FLAG, format_timeout(request.timeout),
        OUTPUT_FLAG, request.output_format.value,
    ]
    if request.service_detection:
        argv.append(DETECTION_FLAG)
    return argv
