"""Common utilities and types for the module test harness."""

import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    """Result returned by an action."""
    success: bool
    message: str = ''
    duration: float = 0.0
    context_updates: dict = field(default_factory=dict)
    continue_on_failure: bool = False


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    capture: bool = True,
    env: Optional[dict] = None,
    new_session: bool = False
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    A timeout of None waits for the process to exit. With new_session the
    child leaves the terminal's process group, so a Ctrl-C aimed at the
    harness does not reach it.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            start_new_session=new_session,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def format_command_failure(what: str, cmd: list[str], rc: int, out: str, err: str) -> str:
    """Build a failure message with enough context to diagnose without rerunning."""
    lines = [
        f"{what} failed (exit {rc})",
        f"  command: {shlex.join(cmd)}",
    ]
    if out and out.strip():
        lines.append(f"  stdout:\n{_indent(out)}")
    if err and err.strip():
        lines.append(f"  stderr:\n{_indent(err)}")
    return '\n'.join(lines)


def _indent(text: str, prefix: str = '    ') -> str:
    return '\n'.join(prefix + line for line in text.rstrip().splitlines())
