"""
Progress marker detection in script output.

Recognized shapes, tried in order (case-insensitive, anywhere in the line):

    progress: 45%          -> 45.0
    completed: 45%         -> 45.0
    45% complete           -> 45.0
    completed: 50/100      -> 50.0
    task: 2 of 10          -> 20.0
"""

import logging
import re
from typing import Optional, Pattern, Tuple


logger = logging.getLogger(__name__)


_NUMBER = r"(\d+(?:\.\d+)?)"


class ProgressDetector:
    """Stateless matcher from a text line to an optional percentage."""

    # (pattern, is_ratio)
    PATTERNS: Tuple[Tuple[Pattern[str], bool], ...] = (
        (re.compile(rf"\bprogress:?\s*{_NUMBER}%", re.IGNORECASE), False),
        (re.compile(rf"\bcompleted:?\s*{_NUMBER}%", re.IGNORECASE), False),
        (re.compile(rf"\b{_NUMBER}%\s*complete", re.IGNORECASE), False),
        (re.compile(rf"\bcompleted:?\s*{_NUMBER}/{_NUMBER}", re.IGNORECASE), True),
        (re.compile(rf"\btask:?\s*{_NUMBER}\s*of\s*{_NUMBER}", re.IGNORECASE), True),
    )

    def parse(self, line: Optional[str]) -> Optional[float]:
        """Return the percentage encoded in ``line``, or None."""
        if line is None or not line.strip():
            return None

        for pattern, is_ratio in self.PATTERNS:
            match = pattern.search(line)
            if not match:
                continue
            try:
                if is_ratio:
                    current = float(match.group(1))
                    total = float(match.group(2))
                    return (current / total) * 100.0
                return float(match.group(1))
            except (ValueError, ZeroDivisionError):
                logger.warning(f"Failed to parse progress number from: {line}")

        return None


_default_detector = ProgressDetector()


def parse_progress(line: Optional[str]) -> Optional[float]:
    """Module-level shortcut for :meth:`ProgressDetector.parse`."""
    return _default_detector.parse(line)
