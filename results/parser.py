"""Decode the engine's structured (JSON) output."""

import json
from typing import Any

from core.types import HostResult, OutputFormat, ParsedResult, PortResult, ScanInfo


class DecodeError(ValueError):
    """Raised when structured output was requested but cannot be decoded."""

    pass


def _extract_json(raw: str) -> Any:
    """
    Parse raw output as JSON.

    The engine may print banners or progress lines around the document, so
    if the whole text does not parse, the outermost {...} span is tried.
    """
    text = raw.strip()
    if not text:
        raise DecodeError("Engine produced no output")

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise DecodeError("No JSON document found in engine output")
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON in engine output: {e}") from e


def _parse_port(data: Any) -> PortResult:
    if not isinstance(data, dict):
        raise DecodeError("Port entry is not an object")
    try:
        port = int(data["port"])
    except (KeyError, TypeError, ValueError):
        raise DecodeError(f"Port entry has no valid 'port': {data!r}") from None
    if "state" not in data:
        raise DecodeError(f"Port {port} has no 'state'")
    return PortResult(
        port=port,
        protocol=str(data.get("protocol", "tcp")),
        state=str(data["state"]),
        service=data.get("service"),
        version=data.get("version"),
    )


def _parse_host(data: Any) -> HostResult:
    if not isinstance(data, dict):
        raise DecodeError("Host entry is not an object")
    if not data.get("target"):
        raise DecodeError("Host entry has no 'target'")
    ports = data.get("ports") or []
    if not isinstance(ports, list):
        raise DecodeError(f"Host {data['target']}: 'ports' is not a list")
    return HostResult(
        target=str(data["target"]),
        hostname=data.get("hostname"),
        ports=tuple(_parse_port(p) for p in ports),
        scan_time=float(data.get("scan_time") or 0.0),
    )


def parse_scan_result(data: Any) -> ParsedResult:
    """
    Convert a decoded JSON document into a ParsedResult.

    Expected shape:
        {
            "hosts": [{"target", "hostname"?, "ports": [{"port", "protocol",
                       "state", "service"?, "version"?}], "scan_time"}],
            "scan_info": {"version", "total_hosts", "scan_time"}
        }
    """
    if not isinstance(data, dict):
        raise DecodeError("Engine result is not a JSON object")
    hosts = data.get("hosts")
    if not isinstance(hosts, list):
        raise DecodeError("Engine result has no 'hosts' list")

    try:
        parsed_hosts = tuple(_parse_host(h) for h in hosts)
        info = data.get("scan_info") or {}
        scan_info = ScanInfo(
            version=str(info.get("version", "")),
            total_hosts=int(info.get("total_hosts", len(parsed_hosts))),
            scan_time=float(info.get("scan_time") or 0.0),
        )
    except DecodeError:
        raise
    except (TypeError, ValueError, AttributeError) as e:
        raise DecodeError(f"Malformed engine result: {e}") from e

    return ParsedResult(hosts=parsed_hosts, scan_info=scan_info)


def decode_result(raw: str, output_format: OutputFormat) -> ParsedResult | None:
    """
    Decode engine output for the requested format.

    Returns:
        ParsedResult for JSON output, None for formats that are kept as text

    Raises:
        DecodeError: JSON was requested but the output does not honor it
    """
    if output_format is not OutputFormat.JSON:
        return None
    return parse_scan_result(_extract_json(raw))
