"""Run lifecycle: state tracking, guaranteed teardown, and the test-facing driver.

A run moves through configured -> initialized -> applied -> verified ->
destroyed, with failed reachable from any live state. Teardown is
registered before the first engine call and fires on every exit path:
normal return, assertion failure, exception, termination signal, and
interpreter exit.

Usage from a test:

    config = load_harness_config()
    with prepare_run(config) as run:
        run.init_and_apply()
        run.verify_outputs(expectations_from_mapping(config.expectations))
"""

import atexit
import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from actions.terraform import (
    TerraformApplyAction,
    TerraformDestroyAction,
    TerraformInitAction,
    TerraformOutputAction,
)
from common import ActionResult
from config import HarnessConfig
from identity import generate_run_id, normalize_run_id
from options import InvocationOptions, assemble_options
from verify import Expectation, VerifyNoChangesAction, VerifyOutputsAction

logger = logging.getLogger(__name__)

CONFIGURED = 'configured'
INITIALIZED = 'initialized'
APPLIED = 'applied'
VERIFIED = 'verified'
DESTROYED = 'destroyed'
FAILED = 'failed'

_TRANSITIONS = {
    CONFIGURED: {INITIALIZED, FAILED, DESTROYED},
    INITIALIZED: {APPLIED, FAILED, DESTROYED},
    APPLIED: {APPLIED, VERIFIED, FAILED, DESTROYED},
    VERIFIED: {APPLIED, FAILED, DESTROYED},
    FAILED: {DESTROYED},
    DESTROYED: set(),
}

TEARDOWN_SIGNALS = tuple(
    getattr(signal, name) for name in ('SIGTERM', 'SIGINT', 'SIGHUP') if hasattr(signal, name)
)


class LifecycleError(Exception):
    """A lifecycle step failed or an illegal transition was requested."""

    def __init__(self, phase: str, result: Optional[ActionResult] = None, message: str = ''):
        self.phase = phase
        self.result = result
        super().__init__(message or (result.message if result else phase))


@dataclass
class RunState:
    """Lifecycle state of a single run.

    Attributes:
        run_id: Run identity the state belongs to
        status: Current state
        history: (state, timestamp) pairs in transition order
        error: Message of the failure that moved the run to failed
    """
    run_id: str
    status: str = CONFIGURED
    history: list = field(default_factory=list)
    error: Optional[str] = None

    def __post_init__(self):
        if not self.history:
            self.history.append((self.status, time.time()))

    def can_transition(self, new_status: str) -> bool:
        return new_status in _TRANSITIONS[self.status]

    def transition(self, new_status: str) -> None:
        if not self.can_transition(new_status):
            raise LifecycleError(
                'transition',
                message=f"Illegal transition for run {self.run_id}: {self.status} -> {new_status}",
            )
        logger.debug(f"Run {self.run_id}: {self.status} -> {new_status}")
        self.status = new_status
        self.history.append((new_status, time.time()))

    def fail(self, error: str) -> None:
        self.error = error
        if self.status not in (FAILED, DESTROYED):
            self.transition(FAILED)

    @property
    def statuses(self) -> list[str]:
        return [status for status, _ in self.history]

    @property
    def is_destroyed(self) -> bool:
        return self.status == DESTROYED


class Teardown:
    """Guaranteed, idempotent destroy for one run.

    register() hooks the destroy into interpreter exit and converts
    termination signals into SystemExit so that enclosing finally blocks
    and context managers unwind normally. run() may be called any number
    of times; once a destroy has succeeded later calls return that result
    without touching the engine.
    """

    def __init__(self, destroy: Callable[[], ActionResult], label: str = ''):
        self._destroy = destroy
        self.label = label
        self.calls = 0
        self.result: Optional[ActionResult] = None
        self._lock = threading.Lock()
        self._destroying = False
        self._registered = False
        self._previous_handlers: dict = {}

    @property
    def completed(self) -> bool:
        return self.result is not None and self.result.success

    def register(self) -> None:
        """Install the exit hook and signal handlers."""
        if self._registered:
            return
        atexit.register(self._run_at_exit)
        # signal.signal only works from the main thread
        if threading.current_thread() is threading.main_thread():
            for signum in TEARDOWN_SIGNALS:
                self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        self._registered = True
        logger.debug(f"Teardown registered for {self.label}")

    def unregister(self) -> None:
        """Remove the exit hook and restore previous signal handlers."""
        if not self._registered:
            return
        atexit.unregister(self._run_at_exit)
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        self._registered = False

    def run(self, reason: str = 'normal') -> ActionResult:
        """Destroy the run's resources unless already destroyed."""
        with self._lock:
            self.calls += 1
            if self.completed:
                logger.debug(f"Teardown for {self.label} already completed, skipping ({reason})")
                return self.result

            logger.info(f"Running teardown for {self.label} ({reason})")
            self._destroying = True
            try:
                result = self._destroy()
            except Exception as e:
                # run() never raises; a raising destroy is a failed destroy
                logger.exception(f"Teardown for {self.label} raised")
                result = ActionResult(success=False, message=f"Destroy raised {type(e).__name__}: {e}")
            finally:
                self._destroying = False
            self.result = result

        if not result.success:
            logger.error(f"Teardown for {self.label} failed: {result.message}")
        return result

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        if self._destroying:
            logger.warning(f"Received {name} during teardown, letting destroy finish")
            return
        logger.warning(f"Received {name}, unwinding to run teardown for {self.label}")
        raise SystemExit(128 + signum)

    def _run_at_exit(self):
        if self.completed:
            return
        logger.warning(f"Interpreter exiting before teardown for {self.label} completed")
        self.run('atexit')


class TerraformRun:
    """Context manager driving one run of the engine from a test.

    Every step raises LifecycleError on failure. Leaving the block always
    runs the teardown; a failing destroy is raised on a clean exit and
    logged when another exception is already propagating.
    """

    def __init__(self, config: HarnessConfig, options: InvocationOptions):
        self.config = config
        self.options = options
        self.state = RunState(run_id=options.run_id)
        self.context: dict[str, Any] = {}
        self.teardown = Teardown(self._destroy, label=f'run {options.run_id}')

    @property
    def run_id(self) -> str:
        return self.options.run_id

    def __enter__(self) -> 'TerraformRun':
        self.teardown.register()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            result = self.teardown.run('exit' if exc_type is None else f'{exc_type.__name__}')
        finally:
            self.teardown.unregister()

        if not result.success:
            if exc_type is None:
                raise LifecycleError('destroy', result)
            logger.error(f"Destroy failed while handling {exc_type.__name__}: {result.message}")
        return False

    def _step(self, phase: str, action, next_status: Optional[str]) -> ActionResult:
        if next_status and not self.state.can_transition(next_status):
            raise LifecycleError(
                phase,
                message=f"Cannot {phase} run {self.run_id} while {self.state.status}",
            )
        logger.info(f"Run {self.run_id}: {phase}")
        try:
            result = action.run(self.config, self.context)
        except Exception as e:
            self.state.fail(f"{phase} raised {e!r}")
            raise
        self.context.update(result.context_updates or {})
        if not result.success:
            self.state.fail(result.message)
            raise LifecycleError(phase, result)
        if next_status:
            self.state.transition(next_status)
        return result

    def init(self) -> ActionResult:
        return self._step('init', TerraformInitAction(name='init', options=self.options), INITIALIZED)

    def apply(self) -> str:
        """Apply and return the engine's stdout."""
        self._step('apply', TerraformApplyAction(name='apply', options=self.options), APPLIED)
        return self.context['apply_output']

    def init_and_apply(self) -> str:
        self.init()
        return self.apply()

    def reapply(self) -> str:
        """Apply the identical options again and return the engine's stdout."""
        action = TerraformApplyAction(name='reapply', options=self.options, result_key='reapply_output')
        self._step('reapply', action, APPLIED)
        return self.context['reapply_output']

    def output(self, name: str) -> Any:
        action = TerraformOutputAction(name='output', options=self.options, output_name=name)
        self._step(f'output {name}', action, None)
        return self.context[action.context_key]

    def verify_outputs(self, expectations: list[Expectation]) -> None:
        """Assert every expected output; raises AssertionError on mismatch."""
        action = VerifyOutputsAction(name='verify-outputs', options=self.options, expectations=expectations)
        self._verify(action)

    def verify_no_changes(self) -> None:
        """Assert the last re-apply reported zero changes."""
        self._verify(VerifyNoChangesAction(name='verify-no-changes'))

    def _verify(self, action) -> None:
        result = action.run(self.config, self.context)
        self.context.update(result.context_updates or {})
        if not result.success:
            self.state.fail(result.message)
            raise AssertionError(result.message)
        if self.state.status != VERIFIED:
            self.state.transition(VERIFIED)

    def destroy(self) -> ActionResult:
        """Destroy now; the exit teardown then becomes a no-op."""
        result = self.teardown.run('explicit')
        if not result.success:
            raise LifecycleError('destroy', result)
        return result

    def _destroy(self) -> ActionResult:
        result = TerraformDestroyAction(name='destroy', options=self.options).run(self.config, self.context)
        if result.success and not self.state.is_destroyed:
            self.state.transition(DESTROYED)
        return result


def prepare_run(
    config: HarnessConfig,
    enabled: Optional[bool] = None,
    run_id: Optional[str] = None,
    var_files: Optional[list[str]] = None,
    extra_vars: Optional[dict] = None,
) -> TerraformRun:
    """Generate the run id, assemble options, and return the run driver.

    var_files defaults to the configured overlays; extra_vars are merged
    over the configured inline variables.
    """
    run_id = normalize_run_id(run_id) if run_id else generate_run_id()
    options = assemble_options(
        module_dir=config.module_dir,
        var_files=config.var_files if var_files is None else var_files,
        run_id=run_id,
        enabled=enabled,
        extra_vars={**config.variables, **(extra_vars or {})},
    )
    logger.info(f"Prepared run {run_id} for {config.module_dir}")
    return TerraformRun(config, options)
