"""Environment bootstrap actions.

Some CI sandboxes check out the module as a different user than the one
running the harness, and git then refuses to read the repository when the
engine resolves git-sourced modules. Marking the directory as a safe
directory fixes that. Failures here never stop a run.
"""

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, format_command_failure, run_command
from config import HarnessConfig

logger = logging.getLogger(__name__)


@dataclass
class TrustWorkdirAction:
    """Mark a directory as a git safe.directory (non-fatal)."""
    name: str
    path: Optional[Path] = None  # Defaults to the module directory
    timeout: int = 30

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        """Run git config --global --add safe.directory <path>."""
        start = time.time()
        path = self.path or config.module_dir

        if shutil.which('git') is None:
            logger.warning(f"[{self.name}] git not found, skipping safe.directory bootstrap")
            return ActionResult(
                success=True,
                message="git not installed, nothing to trust",
                duration=time.time() - start
            )

        cmd = ['git', 'config', '--global', '--add', 'safe.directory', str(path)]
        rc, out, err = run_command(cmd, timeout=self.timeout)
        if rc != 0:
            message = format_command_failure('git safe.directory bootstrap', cmd, rc, out, err)
            logger.warning(f"[{self.name}] {message}")
            return ActionResult(
                success=False,
                message=message,
                duration=time.time() - start,
                continue_on_failure=True
            )

        return ActionResult(
            success=True,
            message=f"Marked {path} as safe.directory",
            duration=time.time() - start
        )
