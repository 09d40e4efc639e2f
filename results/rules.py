"""Port risk rule table used by the vulnerability analyzer.

The table is built once at process start and is read-only afterwards.
A YAML file can override or extend the defaults:

    3389:
      service: RDP
      severity: CRITICAL
      issue: Remote desktop exposed
      recommendation: Use VPN, enable NLA, restrict access
    8080:
      service: HTTP-alt
      severity: LOW
      issue: Alternate web port exposed
"""

from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

from core.logging_config import get_logger
from core.types import Severity

logger = get_logger(__name__)

DEFAULT_RECOMMENDATION = "Review security configuration"


@dataclass(frozen=True)
class Rule:
    port: int
    service: str
    severity: Severity
    issue: str
    recommendation: str = DEFAULT_RECOMMENDATION


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(21, "FTP", Severity.HIGH, "Unencrypted file transfer",
         "Use SFTP or FTPS with encryption"),
    Rule(23, "Telnet", Severity.CRITICAL, "Unencrypted remote access",
         "Disable and use SSH instead"),
    Rule(139, "NetBIOS", Severity.HIGH, "Legacy protocol exposure",
         "Disable if not required, use firewall rules"),
    Rule(445, "SMB", Severity.HIGH, "File sharing exposed",
         "Restrict access, use SMBv3 with encryption"),
    Rule(3389, "RDP", Severity.HIGH, "Remote desktop exposed",
         "Use VPN, enable NLA, restrict access"),
    Rule(5900, "VNC", Severity.HIGH, "Remote desktop exposed",
         "Use SSH tunneling or VPN"),
    Rule(3306, "MySQL", Severity.MEDIUM, "Database exposed",
         "Bind to localhost, use SSL, strong passwords"),
    Rule(5432, "PostgreSQL", Severity.MEDIUM, "Database exposed",
         "Use SSL, restrict pg_hba.conf"),
    Rule(6379, "Redis", Severity.HIGH, "In-memory database exposed",
         "Bind to localhost, require authentication"),
    Rule(9200, "Elasticsearch", Severity.HIGH, "Search engine exposed",
         "Enable authentication, use TLS"),
    Rule(27017, "MongoDB", Severity.HIGH, "NoSQL database exposed",
         "Enable authentication, bind to localhost"),
)

RuleTable = Mapping[int, Rule]


def _rule_from_config(port: int, config: dict) -> Rule:
    if not isinstance(config, dict):
        raise ValueError(f"Rule for port {port}: expected mapping")
    for key in ("service", "severity", "issue"):
        if not config.get(key):
            raise ValueError(f"Rule for port {port}: missing '{key}'")
    try:
        severity = Severity(str(config["severity"]).upper())
    except ValueError:
        raise ValueError(
            f"Rule for port {port}: unknown severity {config['severity']!r}"
        ) from None
    return Rule(
        port=port,
        service=str(config["service"]),
        severity=severity,
        issue=str(config["issue"]),
        recommendation=str(config.get("recommendation") or DEFAULT_RECOMMENDATION),
    )


def load_rule_table(rules_file: str | None = None) -> RuleTable:
    """
    Build the rule table from the defaults plus optional YAML overrides.

    Args:
        rules_file: YAML mapping of port -> rule fields

    Returns:
        Read-only mapping of port -> Rule

    Raises:
        ValueError: malformed rules file
    """
    rules: dict[int, Rule] = {rule.port: rule for rule in DEFAULT_RULES}

    if rules_file:
        path = Path(rules_file)
        if not path.exists():
            logger.warning("rules_file_missing", rules_file=str(path))
        else:
            with open(path) as f:
                config = yaml.safe_load(f) or {}
            if not isinstance(config, dict):
                raise ValueError(f"Rules file {path} must contain a mapping")

            for raw_port, rule_config in config.items():
                try:
                    port = int(raw_port)
                except (TypeError, ValueError):
                    raise ValueError(f"Invalid port in rules file: {raw_port!r}") from None
                rules[port] = _rule_from_config(port, rule_config)

            logger.info("rules_file_loaded", rules_file=str(path), overrides=len(config))

    return MappingProxyType(dict(sorted(rules.items())))
