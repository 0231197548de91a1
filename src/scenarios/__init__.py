"""Scenario definitions and orchestration."""

import logging
import time
from typing import Any, Optional, Protocol, runtime_checkable

from common import ActionResult
from config import HarnessConfig
from identity import generate_run_id, normalize_run_id
from lifecycle import APPLIED, DESTROYED, INITIALIZED, VERIFIED, RunState, Teardown
from options import InvocationOptions, assemble_options
from reporting import RunReport

logger = logging.getLogger(__name__)

# Phase name -> state reached when the phase passes
PHASE_TRANSITIONS = {
    'init': INITIALIZED,
    'apply': APPLIED,
    'reapply': APPLIED,
}
VERIFY_PREFIX = 'verify'


@runtime_checkable
class Scenario(Protocol):
    """Protocol for scenario definitions.

    Class attributes:
        name: Scenario identifier (e.g., 'examples-complete')
        description: Human-readable description
        enabled: Value for the module's 'enabled' variable, None to omit (default: None)
        expected_runtime: Expected runtime in seconds for listing (default: None)
    """
    name: str
    description: str

    def get_phases(self, config: HarnessConfig, options: InvocationOptions) -> list[tuple[str, Any, str]]:
        """Return list of (phase_name, action, description) tuples."""
        ...

    def get_teardown(self, config: HarnessConfig, options: InvocationOptions) -> Any:
        """Return the action that destroys everything the phases created."""
        ...


class Orchestrator:
    """Coordinates scenario execution.

    The teardown is registered before the first phase runs and executed
    in a finally block, so it runs whether phases pass, fail, raise, or
    the process is signalled.
    """

    def __init__(
        self,
        scenario: Scenario,
        config: HarnessConfig,
        run_id: Optional[str] = None,
        var_files: Optional[list[str]] = None,
        extra_vars: Optional[dict] = None,
        skip_phases: Optional[list[str]] = None,
        dry_run: bool = False
    ):
        self.scenario = scenario
        self.config = config
        self.skip_phases = skip_phases or []
        self.dry_run = dry_run
        self.run_id = normalize_run_id(run_id) if run_id else generate_run_id()
        self.options = assemble_options(
            module_dir=config.module_dir,
            var_files=config.var_files + list(var_files or []),
            run_id=self.run_id,
            enabled=getattr(scenario, 'enabled', None),
            extra_vars={**config.variables, **(extra_vars or {})},
        )
        self.state = RunState(run_id=self.run_id)
        self.report = RunReport(
            scenario=scenario.name,
            module=config.name,
            run_id=self.run_id,
            report_dir=config.report_dir,
        )
        self.context: dict[str, Any] = {}

    def preview(self) -> bool:
        """Show what would be executed without running. Returns True."""
        phases = self.scenario.get_phases(self.config, self.options)
        teardown = self.scenario.get_teardown(self.config, self.options)

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {self.scenario.name}")
        print(f"  Module: {self.config.module_dir}")
        print(f"  Run ID: {self.run_id}")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("Phases to execute:")
        phase_count = 0
        skip_count = 0

        for phase_name, action, description in phases:
            action_type = type(action).__name__
            if phase_name in self.skip_phases:
                print(f"  [SKIP] {phase_name}: {description}")
                skip_count += 1
            else:
                print(f"  [ OK ] {phase_name}: {description}")
                phase_count += 1
            print(f"         Action: {action_type}")
            print("")

        print(f"  [ALWAYS] destroy: {type(teardown).__name__}")
        print("")
        print("Variables:")
        print(f"  var files: {', '.join(self.options.var_files) or 'none'}")
        for name, value in self.options.variables.as_dict().items():
            print(f"  {name} = {value!r}")
        print("")

        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {phase_count} phases to execute, {skip_count} to skip, destroy always")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Remove --dry-run to execute the scenario.")
        print("")

        return True

    def run(self) -> bool:
        """Run all phases, then destroy. Returns True if everything passed."""
        if self.dry_run:
            return self.preview()

        logger.info(f"Starting scenario '{self.scenario.name}' for {self.config.module_dir} (run {self.run_id})")
        self.report.start()
        start_time = time.time()

        destroy_action = self.scenario.get_teardown(self.config, self.options)
        teardown = Teardown(lambda: self._destroy(destroy_action), label=f'run {self.run_id}')
        teardown.register()

        phases_passed = False
        destroy_ok = False
        try:
            phases_passed = self._run_phases()
        finally:
            try:
                destroy_ok = self._run_teardown(teardown)
            finally:
                teardown.unregister()
                total_time = time.time() - start_time
                logger.info(f"Scenario completed in {total_time:.1f}s (final state: {self.state.status})")
                self.report.finish(phases_passed and destroy_ok, self.state.statuses)

        return phases_passed and destroy_ok

    def _run_phases(self) -> bool:
        phases = self.scenario.get_phases(self.config, self.options)
        all_passed = True
        verify_phases = 0

        for phase_name, action, description in phases:
            if not all_passed and not phase_name.startswith(VERIFY_PREFIX):
                break

            if phase_name in self.skip_phases:
                logger.info(f"Skipping phase: {phase_name}")
                self.report.skip(phase_name, description)
                continue

            logger.info(f"Running phase: {phase_name} - {description}")
            self.report.begin(phase_name, description)

            try:
                result = action.run(self.config, self.context)
            except Exception as e:
                logger.exception(f"Phase {phase_name} raised exception")
                self.report.record_error(phase_name, e)
                self.state.fail(f"{phase_name} raised {e!r}")
                return False

            self.context.update(result.context_updates or {})
            self.report.record(phase_name, result)
            if result.success:
                logger.info(f"Phase {phase_name} passed")
                self._advance(PHASE_TRANSITIONS.get(phase_name))
                if phase_name.startswith(VERIFY_PREFIX):
                    verify_phases += 1
                continue

            if result.continue_on_failure:
                logger.warning(f"Phase {phase_name} failed (continuing): {result.message}")
                continue

            logger.error(f"Phase {phase_name} failed: {result.message}")
            self.state.fail(result.message)
            all_passed = False
            # Verification failures still let the remaining verifications report
            if not phase_name.startswith(VERIFY_PREFIX):
                break

        if all_passed and verify_phases:
            self._advance(VERIFIED)
        return all_passed

    def _advance(self, next_status: Optional[str]):
        """Move the run state forward when the phase order allows it.

        Skipped phases leave gaps (e.g. apply without a recorded init);
        the state then stays where it is rather than aborting the run.
        """
        if not next_status:
            return
        if self.state.can_transition(next_status):
            self.state.transition(next_status)
        else:
            logger.debug(f"Run {self.run_id}: staying {self.state.status}, {next_status} not reachable")

    def _run_teardown(self, teardown: Teardown) -> bool:
        self.report.begin('destroy', 'Destroy all resources for this run')
        result = teardown.run('normal' if self.state.status == VERIFIED else self.state.status)
        self.report.record('destroy', result)
        return result.success

    def _destroy(self, action) -> ActionResult:
        result = action.run(self.config, self.context)
        if result.success and self.state.status != DESTROYED:
            self.state.transition(DESTROYED)
        return result


# Registry of available scenarios
_scenarios: dict[str, type[Scenario]] = {}


def register_scenario(cls: type[Scenario]) -> type[Scenario]:
    """Decorator to register a scenario class."""
    _scenarios[cls.name] = cls
    return cls


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in _scenarios:
        available = list(_scenarios.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return _scenarios[name]()


def list_scenarios() -> list[str]:
    """List available scenario names."""
    return sorted(_scenarios.keys())


# Import scenarios to trigger registration
from scenarios import examples_complete  # noqa: E402, F401
