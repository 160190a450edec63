"""Log collection from the driver components for E2E failure reports.

Collects logs since the start of a test from:
- Controller pods
- Node pods
- lvmd pods

Driver components log either zap JSON lines or klog text lines; both are
parsed into LogEntry so errors can be picked out for the report.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from .config import LogSettings
from .errors import HarnessError
from .k8s_client import K8sClient

log = logging.getLogger(__name__)

KLOG_LEVELS = {"I": "INFO", "W": "WARNING", "E": "ERROR", "F": "FATAL"}


@dataclass
class LogEntry:
    """A parsed log entry."""

    level: str
    message: str
    source: str
    raw: str


@dataclass
class CollectedLogs:
    """Collection of logs from all sources."""

    controller: str
    node: str
    lvmd: str
    start_time: datetime
    end_time: datetime

    def sources(self) -> list[tuple[str, str]]:
        return [("controller", self.controller), ("node", self.node), ("lvmd", self.lvmd)]


class LogCollector:
    """Collect driver logs and pick out errors."""

    # I1019 12:00:00.000000  1 file.go:42] message
    KLOG_PATTERN = re.compile(r"^([IWEF])\d{4}\s+[\d:.]+\s+\d+\s+[^\]]+\]\s?(.*)$")

    ERROR_PATTERNS = [
        re.compile(r"error", re.IGNORECASE),
        re.compile(r"failed", re.IGNORECASE),
        re.compile(r"panic", re.IGNORECASE),
    ]

    def __init__(self, k8s: K8sClient, settings: LogSettings | None = None):
        """Initialize log collector.

        Args:
            k8s: K8sClient instance (its namespace is not used)
            settings: Namespace and label selectors of the driver pods
        """
        self.settings = settings or LogSettings()
        self.k8s = k8s.with_namespace(self.settings.namespace)
        self.start_time: datetime | None = None

    def start_collection(self) -> None:
        """Mark the start time for log collection."""
        self.start_time = datetime.now(timezone.utc)

    def _since_duration(self) -> str:
        """Duration since start for kubectl --since."""
        if not self.start_time:
            return "5m"
        delta = datetime.now(timezone.utc) - self.start_time
        return f"{int(delta.total_seconds()) + 10}s"

    def _get_logs_for_pods(self, label: str, since: str | None = None) -> str:
        since = since or self._since_duration()
        try:
            pods = self.k8s.list_resources("pods", label_selector=label)
        except HarnessError as e:
            log.warning("Cannot list pods with %s: %s", label, e)
            return ""

        all_logs = []
        for pod in pods:
            name = pod["metadata"]["name"]
            output = self.k8s.get_pod_logs(name, since=since)
            if output:
                all_logs.append(f"=== Pod: {name} ===")
                all_logs.append(output)
        return "\n".join(all_logs)

    def collect_all(self, since: str | None = None) -> CollectedLogs:
        """Collect logs from all driver components.

        Args:
            since: Duration to look back (defaults to time since start_collection)
        """
        end_time = datetime.now(timezone.utc)
        return CollectedLogs(
            controller=self._get_logs_for_pods(self.settings.controller_label, since),
            node=self._get_logs_for_pods(self.settings.node_label, since),
            lvmd=self._get_logs_for_pods(self.settings.lvmd_label, since),
            start_time=self.start_time or end_time,
            end_time=end_time,
        )

    def parse_log_line(self, line: str, source: str) -> LogEntry:
        """Parse a zap JSON or klog line; anything else is kept as UNKNOWN."""
        if line.startswith("{"):
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                data = None
            if isinstance(data, dict):
                return LogEntry(
                    level=str(data.get("level", "UNKNOWN")).upper(),
                    message=str(data.get("msg", line)),
                    source=source,
                    raw=line,
                )

        match = self.KLOG_PATTERN.match(line)
        if match:
            return LogEntry(
                level=KLOG_LEVELS[match.group(1)],
                message=match.group(2),
                source=source,
                raw=line,
            )

        return LogEntry(level="UNKNOWN", message=line, source=source, raw=line)

    def find_errors(self, logs: CollectedLogs) -> list[LogEntry]:
        """Extract error entries from logs.

        Structured lines count by level; unstructured lines by keyword.
        """
        errors = []
        for source, content in logs.sources():
            for line in content.splitlines():
                if not line.strip() or line.startswith("=== Pod:"):
                    continue
                entry = self.parse_log_line(line, source)
                if entry.level == "UNKNOWN":
                    if any(p.search(line) for p in self.ERROR_PATTERNS):
                        errors.append(entry)
                elif entry.level in ("ERROR", "FATAL", "PANIC", "DPANIC"):
                    errors.append(entry)
        return errors

    def format_for_report(self, logs: CollectedLogs, max_lines: int = 50) -> str:
        """Format logs for inclusion in a test report.

        Args:
            logs: Collected logs
            max_lines: Maximum lines per source
        """
        sections = []
        for name, content in logs.sources():
            lines = content.strip().splitlines()
            if not lines:
                continue

            sections.append(f"\n{'=' * 60}")
            sections.append(f"{name} logs")
            sections.append("=" * 60)
            if len(lines) > max_lines:
                sections.append(f"[Showing last {max_lines} of {len(lines)} lines]")
                lines = lines[-max_lines:]
            sections.extend(lines)

        return "\n".join(sections)
