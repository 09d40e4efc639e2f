"""Vulnerability analyzer: matches open ports against the rule table."""

from core.targets import host_sort_key
from core.types import Finding, ParsedResult, Severity

from .rules import RuleTable, load_rule_table

OPEN_STATE = "open"


class VulnerabilityAnalyzer:
    """
    Produces Findings for open ports that have a rule.

    Output order is host ascending (IP-aware), then port ascending, so the
    same parsed result always yields the same sequence.
    """

    def __init__(self, rules: RuleTable | None = None):
        self.rules = rules if rules is not None else load_rule_table()

    def analyze(self, result: ParsedResult | None) -> list[Finding]:
        if result is None:
            return []

        findings = []
        for host in sorted(result.hosts, key=lambda h: host_sort_key(h.target)):
            seen: set[int] = set()
            for port in sorted(host.ports, key=lambda p: (p.port, p.protocol)):
                if port.state.lower() != OPEN_STATE or port.port in seen:
                    continue
                rule = self.rules.get(port.port)
                if rule is None:
                    continue
                seen.add(port.port)
                findings.append(
                    Finding(
                        host=host.target,
                        port=port.port,
                        service=rule.service,
                        severity=rule.severity,
                        issue=rule.issue,
                        recommendation=rule.recommendation,
                        version=port.version or "Unknown",
                    )
                )
        return findings


def summarize(findings: list[Finding]) -> dict[str, int]:
    """Count findings per severity, every severity present (zero if unused)."""
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts
