"""Run reports: one JSON and one markdown file per scenario run."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from common import ActionResult

STATUS_MARKS = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}


@dataclass
class PhaseResult:
    """Outcome of one scenario phase."""
    name: str
    status: str  # 'passed', 'failed', 'skipped'
    description: str = ''
    message: str = ''
    duration: float = 0.0

    @property
    def headline(self) -> str:
        # Engine failures span many lines; tables show the first
        return self.message.splitlines()[0] if self.message else ''


@dataclass
class RunReport:
    """Phase results and final state of a single run.

    Files are named <timestamp>.<scenario>.<run_id>.<passed|failed>.<ext>
    so reports from different runs never overwrite each other.
    """
    scenario: str
    module: str
    run_id: str
    report_dir: Path
    phases: list[PhaseResult] = field(default_factory=list)
    state_history: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _pending: dict = field(default_factory=dict, repr=False)

    def start(self):
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def begin(self, name: str, description: str):
        """Note a phase has started; record() fills in the outcome."""
        self._pending[name] = (description, time.monotonic())

    def record(self, name: str, result: ActionResult) -> PhaseResult:
        description, began = self._pending.pop(name, (name, None))
        duration = result.duration
        if not duration and began is not None:
            duration = time.monotonic() - began
        phase = PhaseResult(
            name=name,
            status='passed' if result.success else 'failed',
            description=description,
            message=result.message,
            duration=duration,
        )
        self.phases.append(phase)
        return phase

    def record_error(self, name: str, error: BaseException) -> PhaseResult:
        """Record a phase that raised instead of returning a result."""
        return self.record(name, ActionResult(success=False, message=f"{type(error).__name__}: {error}"))

    def skip(self, name: str, description: str):
        self.phases.append(PhaseResult(name=name, status='skipped', description=description))

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def failures(self) -> list[PhaseResult]:
        return [p for p in self.phases if p.status == 'failed']

    def finish(self, success: bool, state_history: Optional[list[str]] = None) -> tuple[Path, Path]:
        """Finalize and write both report files. Returns (json_path, md_path)."""
        self.finished_at = datetime.now()
        self.success = success
        self.state_history = list(state_history or [])

        json_path = self._path('json')
        json_path.write_text(json.dumps(self.summary(), indent=2), encoding='utf-8')
        md_path = self._path('md')
        md_path.write_text(self._markdown(), encoding='utf-8')
        return json_path, md_path

    def summary(self) -> dict:
        """Full report document as written to the JSON file."""
        return {
            'scenario': self.scenario,
            'module': self.module,
            'run_id': self.run_id,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'states': self.state_history,
            'phases': [
                {
                    'name': p.name,
                    'description': p.description,
                    'status': p.status,
                    'message': p.message,
                    'duration': p.duration,
                }
                for p in self.phases
            ],
        }

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Compact result for --json-output.

        JSON-serializable context values are included, except private keys
        and raw engine output (keys ending in _output).
        """
        result = {
            'scenario': self.scenario,
            'run_id': self.run_id,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'final_state': self.state_history[-1] if self.state_history else None,
            'phases': [
                {'name': p.name, 'status': p.status, 'duration': round(p.duration, 1)}
                for p in self.phases
            ],
        }
        if self.failures:
            result['error'] = self.failures[0].message

        kept = {}
        for key, value in (context or {}).items():
            if key.startswith('_') or key.endswith('_output'):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                continue
            kept[key] = value
        if kept:
            result['context'] = kept
        return result

    def _markdown(self) -> str:
        lines = [
            f"# {self.scenario}",
            "",
            f"**Module**: {self.module}",
            f"**Run ID**: {self.run_id}",
            f"**Status**: {'PASSED' if self.success else 'FAILED'}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            f"**States**: {' -> '.join(self.state_history) or 'N/A'}",
            "",
            "## Phases",
            "",
            "| Phase | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ]
        for p in self.phases:
            mark = STATUS_MARKS.get(p.status, '❓')
            lines.append(f"| {p.name} | {mark} {p.status} | {p.duration:.1f}s | {p.headline} |")

        if self.failures:
            lines.extend(["", "## Failures", ""])
            for p in self.failures:
                lines.extend([f"### {p.name}", "", "```", p.message or '(no message)', "```", ""])

        return '\n'.join(lines) + '\n'

    def _path(self, ext: str) -> Path:
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        parts = [timestamp, self.scenario.replace('/', '-'), self.run_id]
        parts.append('passed' if self.success else 'failed')
        return self.report_dir / f"{'.'.join(p for p in parts if p)}.{ext}"
