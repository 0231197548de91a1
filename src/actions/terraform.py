"""Provisioning engine actions (terraform/tofu)."""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from common import ActionResult, format_command_failure, run_command
from config import HarnessConfig
from options import InvocationOptions, var_args

logger = logging.getLogger(__name__)


def state_paths(config: HarnessConfig, run_id: str) -> tuple[Path, Path]:
    """Return (data_dir, state_file) for a run.

    Each run gets its own state directory so runs never share state.
    TF_DATA_DIR must NOT contain terraform.tfstate, so providers and
    modules go into a 'data/' subdirectory.
    """
    state_dir = config.state_root / run_id
    return state_dir / 'data', state_dir / 'terraform.tfstate'


def engine_env(config: HarnessConfig, options: InvocationOptions) -> dict:
    """Build the engine environment for a run."""
    data_dir, _ = state_paths(config, options.run_id)
    return {
        **os.environ,
        'TF_DATA_DIR': str(data_dir),
        'TF_IN_AUTOMATION': '1',
        'TF_INPUT': '0',
        **dict(options.env),
    }


def _check_module_dir(options: InvocationOptions, start: float):
    if not options.module_dir.exists():
        return ActionResult(
            success=False,
            message=f"Module directory not found: {options.module_dir}",
            duration=time.time() - start
        )
    return None


@dataclass
class TerraformInitAction:
    """Run engine init against the module."""
    name: str
    options: InvocationOptions

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        """Execute init (with -upgrade when requested)."""
        start = time.time()
        if missing := _check_module_dir(self.options, start):
            return missing

        data_dir, _ = state_paths(config, self.options.run_id)
        data_dir.mkdir(parents=True, exist_ok=True)

        cmd = [config.binary, 'init', '-input=false', '-no-color']
        if self.options.upgrade:
            cmd.append('-upgrade')

        logger.info(f"[{self.name}] Running {config.binary} init in {self.options.module_dir}...")
        rc, out, err = run_command(
            cmd,
            cwd=self.options.module_dir,
            timeout=config.get_timeout('init'),
            env=engine_env(config, self.options),
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=format_command_failure(f"{config.binary} init", cmd, rc, out, err),
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"{config.binary} init completed for {config.name}",
            duration=time.time() - start
        )


@dataclass
class TerraformApplyAction:
    """Run engine apply with the assembled options.

    stdout is stored in the context under result_key so a verifier can
    inspect the resource summary.
    """
    name: str
    options: InvocationOptions
    result_key: str = 'apply_output'

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        """Execute apply with an explicit per-run state file."""
        start = time.time()
        if missing := _check_module_dir(self.options, start):
            return missing

        _, state_file = state_paths(config, self.options.run_id)
        state_file.parent.mkdir(parents=True, exist_ok=True)

        cmd = [
            config.binary, 'apply', '-input=false', '-auto-approve', '-no-color',
            f'-state={state_file}',
        ] + var_args(self.options)

        logger.info(f"[{self.name}] Running {config.binary} apply (state: {state_file})...")
        rc, out, err = run_command(
            cmd,
            cwd=self.options.module_dir,
            timeout=config.get_timeout('apply'),
            env=engine_env(config, self.options),
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=format_command_failure(f"{config.binary} apply", cmd, rc, out, err),
                duration=time.time() - start,
                context_updates={self.result_key: out},
            )

        return ActionResult(
            success=True,
            message=f"{config.binary} apply completed for {config.name} (run {self.options.run_id})",
            duration=time.time() - start,
            context_updates={self.result_key: out},
        )


@dataclass
class TerraformOutputAction:
    """Read a single named output from the run's state."""
    name: str
    options: InvocationOptions
    output_name: str

    @property
    def context_key(self) -> str:
        return f'output_{self.output_name}'

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        """Execute output -json and decode the value."""
        start = time.time()
        _, state_file = state_paths(config, self.options.run_id)

        cmd = [config.binary, 'output', '-no-color', '-json', f'-state={state_file}', self.output_name]
        logger.debug(f"[{self.name}] Reading output {self.output_name}")
        rc, out, err = run_command(
            cmd,
            cwd=self.options.module_dir,
            timeout=config.get_timeout('output'),
            env=engine_env(config, self.options),
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=format_command_failure(f"{config.binary} output {self.output_name}", cmd, rc, out, err),
                duration=time.time() - start
            )

        try:
            value = json.loads(out)
        except json.JSONDecodeError as e:
            return ActionResult(
                success=False,
                message=f"Output {self.output_name} is not valid JSON: {e}\n  stdout: {out.strip()}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Read output {self.output_name}",
            duration=time.time() - start,
            context_updates={self.context_key: value},
        )


@dataclass
class TerraformDestroyAction:
    """Run engine destroy for the run's state.

    Safe to call on a run that never created anything: without a state
    file there is nothing to destroy. The engine runs in its own session
    so a terminal interrupt cannot cancel a destroy halfway.
    """
    name: str
    options: InvocationOptions

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        """Execute destroy with the same options used for apply."""
        start = time.time()
        _, state_file = state_paths(config, self.options.run_id)

        if not state_file.exists():
            return ActionResult(
                success=True,
                message=f"No state file found for run {self.options.run_id}, nothing to destroy",
                duration=time.time() - start
            )

        if missing := _check_module_dir(self.options, start):
            return missing

        cmd = [
            config.binary, 'destroy', '-input=false', '-auto-approve', '-no-color',
            f'-state={state_file}',
        ] + var_args(self.options)

        logger.info(f"[{self.name}] Running {config.binary} destroy (state: {state_file})...")
        rc, out, err = run_command(
            cmd,
            cwd=self.options.module_dir,
            timeout=config.get_timeout('destroy'),
            env=engine_env(config, self.options),
            new_session=True,
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=format_command_failure(f"{config.binary} destroy", cmd, rc, out, err),
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"{config.binary} destroy completed for {config.name} (run {self.options.run_id})",
            duration=time.time() - start
        )
