"""Build reporting."""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

# Terminal node statuses
COMMITTED = 'committed'
UNCHANGED = 'unchanged'
FAILED = 'failed'
SKIPPED = 'skipped'
PLANNED = 'planned'
PENDING = 'pending'

COUNT_KEYS = ('CREATE', 'TOUCH', 'DELETE', 'REBUILD', 'NONE', 'FAILED', 'SKIPPED')


@dataclass
class NodeOutcome:
    """What happened to one node during a pass."""
    id: str
    kind: str
    action: str  # CREATE, TOUCH, DELETE, REBUILD, NONE or '' if never classified
    status: str  # committed, unchanged, failed, skipped, planned, pending
    message: str = ''
    duration: float = 0.0
    external_id: str = ''

    def to_dict(self) -> dict:
        d = {'id': self.id, 'kind': self.kind, 'action': self.action, 'status': self.status}
        if self.message:
            d['message'] = self.message
        if self.duration:
            d['duration'] = round(self.duration, 2)
        if self.external_id:
            d['external_id'] = self.external_id
        return d


@dataclass
class BuildReport:
    """Collects per-node outcomes of a build pass and writes report files."""
    topology: str
    dry_run: bool = False
    outcomes: list[NodeOutcome] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    error: Optional[str] = None

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start(self):
        """Mark pass start."""
        self.started_at = datetime.now()

    def finish(self):
        """Mark pass end."""
        self.finished_at = datetime.now()

    def record(self, outcome: NodeOutcome) -> None:
        """Record a node outcome (thread-safe)."""
        with self._lock:
            self.outcomes.append(outcome)

    def get(self, node_id: str) -> Optional[NodeOutcome]:
        """Most recent outcome for a node id."""
        for outcome in reversed(self.outcomes):
            if outcome.id == node_id:
                return outcome
        return None

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def counts(self) -> dict[str, int]:
        """Node counts per action; failed and skipped nodes are counted apart."""
        counts = {key: 0 for key in COUNT_KEYS}
        for outcome in self.outcomes:
            if outcome.status == FAILED:
                counts['FAILED'] += 1
            elif outcome.status == SKIPPED:
                counts['SKIPPED'] += 1
            elif outcome.action:
                counts[outcome.action] += 1
        return counts

    @property
    def failures(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == FAILED]

    @property
    def skipped(self) -> list[NodeOutcome]:
        return [o for o in self.outcomes if o.status == SKIPPED]

    @property
    def success(self) -> bool:
        return not self.failures and not self.skipped and not self.cancelled and self.error is None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def actions(self) -> dict[str, str]:
        """Map of node id to classified action."""
        return {o.id: o.action for o in self.outcomes if o.action}

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'topology': self.topology,
            'dry_run': self.dry_run,
            'success': self.success,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration, 1),
            'counts': self.counts,
            'failures': [{'id': o.id, 'message': o.message} for o in self.failures],
            'skipped': [o.id for o in self.skipped],
            'nodes': [o.to_dict() for o in self.outcomes],
        }
        if self.error:
            result['error'] = self.error
        return result

    def summary(self) -> str:
        """One-line summary of counts."""
        counts = self.counts
        parts = [f"{key.lower()}={counts[key]}" for key in COUNT_KEYS]
        status = 'cancelled' if self.cancelled else ('ok' if self.success else 'failed')
        return f"{self.topology}: {status} ({', '.join(parts)})"

    def write(self, report_dir: Path) -> list[Path]:
        """Write JSON and Markdown reports.

        Returns:
            Paths written
        """
        report_dir.mkdir(parents=True, exist_ok=True)
        return [self._write_json(report_dir), self._write_markdown(report_dir)]

    def _write_json(self, report_dir: Path) -> Path:
        filename = self._report_filename(report_dir, 'json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self, report_dir: Path) -> Path:
        status = 'PASSED' if self.success else ('CANCELLED' if self.cancelled else 'FAILED')
        lines = [
            f"# {self.topology}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "| " + " | ".join(COUNT_KEYS) + " |",
            "|" + "---|" * len(COUNT_KEYS),
            "| " + " | ".join(str(self.counts[k]) for k in COUNT_KEYS) + " |",
            "",
            "## Nodes",
            "",
            "| Node | Action | Status | Duration | Message |",
            "|------|--------|--------|----------|---------|",
        ]

        for o in self.outcomes:
            status_emoji = {COMMITTED: '✅', UNCHANGED: '➖', FAILED: '❌', SKIPPED: '⏭️', PLANNED: '📝', PENDING: '⏸️'}.get(o.status, '❓')
            lines.append(f"| {o.id} | {o.action or '-'} | {status_emoji} {o.status} | {o.duration:.1f}s | {o.message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename(report_dir, 'md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        """Generate report filename.

        Includes the topology name to avoid collisions between parallel builds.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        slug = self.topology.replace('/', '-')
        return report_dir / f"{timestamp}.{slug}.{status}.{ext}"
