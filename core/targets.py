"""Target and port-spec syntax checks applied before a job is created."""

import ipaddress
import re
from typing import Iterable, Union

from .types import InvalidRequest, OutputFormat

# Type alias for IP address or network objects
IPorNetwork = Union[
    ipaddress.IPv4Address,
    ipaddress.IPv6Address,
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
]

# "80", "1-1000", "22,80,443", "1-1024,8080"
PORT_SPEC_RE = re.compile(r"^\d{1,5}(-\d{1,5})?(,\d{1,5}(-\d{1,5})?)*$")

# Hostnames, IPv4/IPv6 literals and CIDR ranges; no whitespace, no leading dash
TARGET_RE = re.compile(r"^[A-Za-z0-9_.:\[\]/%-]+$")


def parse_target(target_str: str) -> IPorNetwork | None:
    """
    Parse an IP address or CIDR string into an ipaddress object.

    Args:
        target_str: IP address (e.g., "192.168.1.1") or CIDR (e.g., "192.168.1.0/24")

    Returns:
        IPv4Address/IPv6Address for IPs, IPv4Network/IPv6Network for CIDRs,
        None for hostnames or invalid input.
    """
    target_str = target_str.strip()
    if not target_str:
        return None

    try:
        if "/" in target_str:
            # strict=False allows host bits: "192.168.1.5/24" -> "192.168.1.0/24"
            return ipaddress.ip_network(target_str, strict=False)
        return ipaddress.ip_address(target_str)
    except ValueError:
        return None


def normalize_targets(targets: Iterable[str] | str | None) -> tuple[str, ...]:
    """
    Validate and normalize a target list.

    A single string is accepted and split on commas/whitespace, the way the
    engine's own command line accepts it.

    Raises:
        InvalidRequest: empty list, blank entries or entries that would be
            read by the engine as flags
    """
    if targets is None:
        raise InvalidRequest("No targets specified")
    if isinstance(targets, str):
        targets = re.split(r"[,\s]+", targets)

    normalized = []
    for target in targets:
        if not isinstance(target, str):
            raise InvalidRequest(f"Target must be a string, got {type(target).__name__}")
        target = target.strip()
        if not target:
            continue
        if target.startswith("-") or not TARGET_RE.match(target):
            raise InvalidRequest(f"Invalid target: {target!r}")
        normalized.append(target)

    if not normalized:
        raise InvalidRequest("No targets specified")
    return tuple(normalized)


def validate_port_spec(ports: str) -> str:
    """Check port spec syntax only; the engine decides what is valid."""
    if not isinstance(ports, str):
        raise InvalidRequest("Port specification must be a string")
    spec = ports.replace(" ", "")
    if not PORT_SPEC_RE.match(spec):
        raise InvalidRequest(f"Malformed port specification: {ports!r}")
    return spec


def validate_timeout(timeout: float) -> float:
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise InvalidRequest("Timeout must be a number of seconds")
    if timeout <= 0:
        raise InvalidRequest(f"Timeout must be positive, got {timeout}")
    return timeout


def validate_output_format(output_format: str | OutputFormat) -> OutputFormat:
    if isinstance(output_format, OutputFormat):
        return output_format
    try:
        return OutputFormat(str(output_format).lower())
    except ValueError:
        valid = ", ".join(f.value for f in OutputFormat)
        raise InvalidRequest(
            f"Unknown output format {output_format!r} (expected one of: {valid})"
        ) from None


def host_sort_key(host: str) -> tuple:
    """
    Sort key ordering IPv4 before IPv6 (numerically) before hostnames.

    Keeps "10.0.0.9" ahead of "10.0.0.10", which plain string ordering does not.
    """
    parsed = parse_target(host)
    if isinstance(parsed, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return (0, parsed.version, int(parsed), host)
    if isinstance(parsed, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return (0, parsed.version, int(parsed.network_address), host)
    return (1, 0, 0, host.lower())
