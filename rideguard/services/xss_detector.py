# rideguard/services/xss_detector.py
"""
Telemetry-only XSS detection.

Scans request data for known attack patterns and reports where they
occur. It never modifies the data and never blocks a request; the
markup sanitizer does the actual cleaning.
"""
import re
from dataclasses import dataclass
from typing import Any, List
import logging

from rideguard.core.exceptions import SanitizationDepthError
from rideguard.services.json_visitor import DEFAULT_MAX_DEPTH, JsonVisitor

logger = logging.getLogger(__name__)

XSS_PATTERNS = [
    re.compile(r"<script[\s\S]*?>[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<iframe[\s\S]*?>[\s\S]*?</iframe>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"onload\s*=", re.IGNORECASE),
    re.compile(r"onclick\s*=", re.IGNORECASE),
    re.compile(r"onerror\s*=", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
]

EXCERPT_LENGTH = 100


@dataclass(frozen=True)
class XSSFinding:
    pattern: str
    location: str
    value: str


def excerpt(value: str, length: int = EXCERPT_LENGTH) -> str:
    return value[:length] + ("..." if len(value) > length else "")


class XSSDetector(JsonVisitor):
    """Collects pattern matches from string leaves; returns the input untouched"""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH):
        super().__init__(max_depth)
        self._findings: List[XSSFinding] = []

    def visit_string(self, value: str, path: str) -> Any:
        for pattern in XSS_PATTERNS:
            if pattern.search(value):
                self._findings.append(
                    XSSFinding(pattern=pattern.pattern, location=path, value=excerpt(value))
                )
        return value

    def scan(self, value: Any, location: str) -> List[XSSFinding]:
        """
        Scan one request location ("body", "query", "params").

        Structures nested past the depth limit are scanned as far as the
        limit allows; rejecting them is the pipeline's job.
        """
        self._findings = []
        try:
            self.visit(value, location)
        except SanitizationDepthError:
            logger.debug(f"XSS scan of {location} stopped at depth limit")
        except Exception as e:
            logger.warning(f"XSS detection error for {location}: {e}")
        findings, self._findings = self._findings, []
        return findings
