"""Best-effort progress scraping from engine output.

This is a heuristic layer only. Nothing here influences whether a job ends
completed or failed; that is decided by the exit code and the result decoder.
"""

import re

PERCENT_RE = re.compile(r"(\d{1,3})%")


def extract_percent(text: str) -> int | None:
    """Highest percentage marker (0-100) in text, or None if there is none."""
    values = [int(m) for m in PERCENT_RE.findall(text)]
    values = [v for v in values if 0 <= v <= 100]
    if not values:
        return None
    return max(values)


class ProgressTracker:
    """Reports a percentage only when it moves forward."""

    def __init__(self) -> None:
        self.last = 0

    def feed(self, chunk: str) -> int | None:
        """
        Inspect one output chunk.

        Returns:
            The new percentage if it is strictly greater than the last one
            reported, else None.
        """
        percent = extract_percent(chunk)
        if percent is None or percent <= self.last:
            return None
        self.last = percent
        return percent
