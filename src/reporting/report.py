"""Apply reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from orchestrator.executor import ApplyResult


@dataclass
class ApplyReport:
    """Writes JSON and Markdown reports for an apply."""
    report_dir: Path
    manifest_name: str = ''
    mode: str = 'normal'
    result: Optional[ApplyResult] = None
    started_at: Optional[datetime] = None
    written: list[Path] = field(default_factory=list)

    def write(self, result: ApplyResult) -> list[Path]:
        """Write both report files and return their paths."""
        self.result = result
        self.started_at = (
            datetime.fromtimestamp(result.started_at) if result.started_at else datetime.now()
        )
        self.report_dir.mkdir(parents=True, exist_ok=True)
        self.written = [self._write_json(), self._write_markdown()]
        return self.written

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        assert self.result is not None
        data = {
            'manifest': self.manifest_name,
            'mode': self.mode,
            'started_at': self.started_at.isoformat() if self.started_at else None,
        }
        data.update(self.result.to_dict())
        return data

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        assert self.result is not None
        result = self.result
        if result.success:
            status = 'SUCCEEDED'
        elif result.partial:
            status = 'PARTIAL'
        else:
            status = 'FAILED'

        lines = [
            f"# Apply: {self.manifest_name or 'plan'}",
            "",
            f"**Mode**: {self.mode}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {result.duration:.1f}s",
            "",
            "## Operations",
            "",
            "| Resource | Action | Status | Attempts | Duration | Message |",
            "|----------|--------|--------|----------|----------|---------|",
        ]

        for s in result.operations.values():
            status_emoji = {
                'succeeded': '✅', 'failed': '❌', 'skipped': '⏭️', 'canceled': '🛑',
            }.get(s.status, '❓')
            duration = f"{s.duration:.1f}s" if s.duration is not None else '-'
            lines.append(
                f"| {s.resource_id} | {s.action} | {status_emoji} {s.status} | "
                f"{s.attempts} | {duration} | {s.error or ''} |"
            )

        if result.rollback:
            lines.extend(["", "## Rollback", ""])
            for s in result.rollback:
                lines.append(f"- {s.resource_id}: {s.status}{f' ({s.error})' if s.error else ''}")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes the manifest name so reports from different stacks don't collide.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'succeeded' if self.result and self.result.success else 'failed'
        slug = self.manifest_name.replace('/', '-') if self.manifest_name else ''
        if slug:
            return self.report_dir / f"{timestamp}.{slug}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{status}.{ext}"
