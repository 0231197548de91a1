"""Tests for lifecycle module - run state, teardown guarantees, test driver."""

import os
import signal
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import ActionResult
from lifecycle import (
    APPLIED,
    CONFIGURED,
    DESTROYED,
    FAILED,
    INITIALIZED,
    VERIFIED,
    LifecycleError,
    RunState,
    Teardown,
    TerraformRun,
    prepare_run,
)
from verify import Expectation

EXPECTATION = Expectation(
    output='lambda_forwarder_log_function_name',
    template='eg-ue2-test-datadog-lambda-forwarder-{run_id}-logs',
)


class TestRunState:
    """Test RunState transitions."""

    def test_happy_path(self):
        state = RunState(run_id='abc')
        for status in (INITIALIZED, APPLIED, APPLIED, VERIFIED, DESTROYED):
            state.transition(status)
        assert state.statuses == [CONFIGURED, INITIALIZED, APPLIED, APPLIED, VERIFIED, DESTROYED]
        assert state.is_destroyed

    def test_illegal_transition(self):
        state = RunState(run_id='abc')
        with pytest.raises(LifecycleError, match='configured -> applied'):
            state.transition(APPLIED)

    def test_reapply_after_verified(self):
        state = RunState(run_id='abc')
        for status in (INITIALIZED, APPLIED, VERIFIED):
            state.transition(status)
        assert state.can_transition(APPLIED)
        state.transition(APPLIED)
        assert state.statuses[-2:] == [VERIFIED, APPLIED]

    def test_can_transition_does_not_change_state(self):
        state = RunState(run_id='abc')
        assert state.can_transition(APPLIED) is False
        assert state.can_transition(INITIALIZED) is True
        assert state.statuses == [CONFIGURED]

    def test_destroyed_is_terminal(self):
        state = RunState(run_id='abc')
        state.transition(DESTROYED)
        with pytest.raises(LifecycleError):
            state.transition(INITIALIZED)

    def test_fail_then_destroy(self):
        state = RunState(run_id='abc')
        state.transition(INITIALIZED)
        state.fail('apply broke')
        assert state.status == FAILED
        assert state.error == 'apply broke'
        state.fail('again')
        assert state.statuses.count(FAILED) == 1
        state.transition(DESTROYED)

    def test_failed_cannot_resume(self):
        state = RunState(run_id='abc')
        state.fail('boom')
        with pytest.raises(LifecycleError):
            state.transition(APPLIED)


class TestTeardown:
    """Test Teardown idempotence and hooks."""

    def test_runs_once_after_success(self):
        destroy = MagicMock(return_value=ActionResult(success=True, message='gone'))
        teardown = Teardown(destroy, label='run x')
        teardown.run()
        teardown.run()
        teardown.run('atexit')
        assert destroy.call_count == 1
        assert teardown.calls == 3
        assert teardown.completed

    def test_retries_after_failure(self):
        destroy = MagicMock(side_effect=[
            ActionResult(success=False, message='throttled'),
            ActionResult(success=True, message='gone'),
        ])
        teardown = Teardown(destroy)
        assert teardown.run().success is False
        assert teardown.run().success is True
        assert destroy.call_count == 2

    def test_raising_destroy_becomes_failed_result(self):
        destroy = MagicMock(side_effect=RuntimeError('engine vanished'))
        teardown = Teardown(destroy, label='run x')
        result = teardown.run()
        assert result.success is False
        assert 'Destroy raised RuntimeError: engine vanished' in result.message
        assert not teardown.completed
        assert teardown._destroying is False

    def test_register_installs_and_restores_signal_handlers(self):
        teardown = Teardown(MagicMock(return_value=ActionResult(success=True)))
        previous = signal.getsignal(signal.SIGTERM)
        teardown.register()
        try:
            assert signal.getsignal(signal.SIGTERM) == teardown._handle_signal
        finally:
            teardown.unregister()
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_signal_raises_system_exit(self):
        teardown = Teardown(MagicMock(return_value=ActionResult(success=True)))
        with pytest.raises(SystemExit) as exc_info:
            teardown._handle_signal(signal.SIGTERM, None)
        assert exc_info.value.code == 128 + signal.SIGTERM

    def test_signal_ignored_while_destroying(self):
        def destroy():
            teardown._handle_signal(signal.SIGINT, None)
            return ActionResult(success=True)

        teardown = Teardown(destroy)
        assert teardown.run().success is True

    def test_atexit_hook_runs_pending_teardown(self):
        destroy = MagicMock(return_value=ActionResult(success=True))
        teardown = Teardown(destroy)
        teardown._run_at_exit()
        teardown._run_at_exit()
        assert destroy.call_count == 1

    def test_sigterm_unwinds_through_finally(self):
        """A delivered SIGTERM reaches the finally block that runs teardown."""
        destroy = MagicMock(return_value=ActionResult(success=True))
        teardown = Teardown(destroy)
        teardown.register()
        try:
            with pytest.raises(SystemExit):
                try:
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(5)
                finally:
                    teardown.run('signal')
        finally:
            teardown.unregister()
        destroy.assert_called_once()


class TestTerraformRun:
    """Test the TerraformRun driver with a fake engine."""

    def test_destroy_once_on_success(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, run_id='28424') as run:
                run.init_and_apply()
                run.verify_outputs([EXPECTATION])

        assert engine.calls == ['init', 'apply', 'output', 'destroy']
        assert run.state.statuses == [CONFIGURED, INITIALIZED, APPLIED, VERIFIED, DESTROYED]

    def test_explicit_destroy_makes_exit_noop(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, run_id='28424') as run:
                run.init_and_apply()
                run.destroy()

        assert engine.count('destroy') == 1
        assert run.teardown.calls == 2

    def test_fault_after_apply_still_destroys(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(RuntimeError, match='injected'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    raise RuntimeError('injected')

        assert engine.count('destroy') == 1
        assert run.state.is_destroyed

    def test_verification_failure_raises_assertion_and_destroys(self, harness_config, fake_engine):
        engine = fake_engine(output='"wrong-name"')
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(AssertionError, match='mismatch'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    run.verify_outputs([EXPECTATION])

        assert engine.count('destroy') == 1
        assert FAILED in run.state.statuses
        assert run.state.status == DESTROYED

    def test_init_failure_destroy_is_noop(self, harness_config, fake_engine):
        """Nothing was applied, so teardown finds no state and skips the engine."""
        engine = fake_engine(fail_on='init')
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(LifecycleError) as exc_info:
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()

        assert exc_info.value.phase == 'init'
        assert 'terraform init failed' in str(exc_info.value)
        assert engine.calls == ['init']
        assert run.teardown.completed
        assert run.state.status == DESTROYED

    def test_destroy_failure_on_clean_exit_raises(self, harness_config, fake_engine):
        engine = fake_engine(fail_on='destroy')
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(LifecycleError) as exc_info:
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()

        assert exc_info.value.phase == 'destroy'

    def test_destroy_failure_does_not_mask_original_error(self, harness_config, fake_engine):
        engine = fake_engine(fail_on='destroy')
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(RuntimeError, match='original'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    raise RuntimeError('original')

    def test_reapply_and_verify_no_changes(self, harness_config, fake_engine):
        engine = fake_engine(apply_stdout='Apply complete! Resources: 0 added, 0 changed, 0 destroyed.')
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, enabled=False, run_id='28424') as run:
                run.init_and_apply()
                output = run.reapply()
                run.verify_no_changes()

        assert 'Resources: 0 added, 0 changed, 0 destroyed.' in output
        assert engine.count('apply') == 2
        assert run.state.statuses[-2:] == [VERIFIED, DESTROYED]

    def test_drift_fails_verification(self, harness_config, fake_engine):
        engine = fake_engine(apply_stdout='Apply complete! Resources: 0 added, 1 changed, 0 destroyed.')
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(AssertionError, match='not idempotent'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    run.reapply()
                    run.verify_no_changes()

    def test_reapply_after_verify_outputs(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, run_id='28424') as run:
                run.init_and_apply()
                run.verify_outputs([EXPECTATION])
                run.reapply()
                run.verify_no_changes()

        assert engine.calls == ['init', 'apply', 'output', 'apply', 'destroy']
        assert run.state.statuses == [
            CONFIGURED, INITIALIZED, APPLIED, VERIFIED, APPLIED, VERIFIED, DESTROYED,
        ]

    def test_illegal_step_rejected_before_engine_runs(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(LifecycleError, match='Cannot reapply run 28424 while configured'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.reapply()

        assert engine.calls == []
        assert run.state.status == DESTROYED

    def test_bad_destroy_timeout_does_not_mask_original_error(self, harness_config, fake_engine):
        """A destroy that raises is reported as failed; the block's error still propagates."""
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(RuntimeError, match='original'):
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    harness_config.timeouts = {'destroy': '5m'}
                    raise RuntimeError('original')

        assert engine.count('destroy') == 0
        assert run.teardown.result.success is False
        assert 'Destroy raised ConfigError' in run.teardown.result.message

    def test_bad_destroy_timeout_on_clean_exit_raises(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with pytest.raises(LifecycleError) as exc_info:
                with prepare_run(harness_config, run_id='28424') as run:
                    run.init_and_apply()
                    harness_config.timeouts = {'destroy': '5m'}

        assert exc_info.value.phase == 'destroy'
        assert 'Invalid timeout for destroy' in str(exc_info.value)

    def test_destroy_runs_in_own_session(self, harness_config, fake_engine):
        engine = fake_engine()
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, run_id='28424') as run:
                run.init_and_apply()

        sessions = dict(zip(engine.calls, (kw.get('new_session', False) for kw in engine.kwargs)))
        assert sessions == {'init': False, 'apply': False, 'destroy': True}

    def test_output(self, harness_config, fake_engine):
        engine = fake_engine(output='"value"')
        with patch('actions.terraform.run_command', side_effect=engine):
            with prepare_run(harness_config, run_id='28424') as run:
                run.init_and_apply()
                assert run.output('anything') == 'value'


class TestPrepareRun:
    """Test prepare_run option assembly."""

    def test_generates_run_id(self, harness_config):
        run = prepare_run(harness_config)
        assert run.run_id
        assert run.options.variables.attributes == (run.run_id,)

    def test_distinct_runs_distinct_ids(self, harness_config):
        assert prepare_run(harness_config).run_id != prepare_run(harness_config).run_id

    def test_uses_configured_var_files_by_default(self, harness_config):
        run = prepare_run(harness_config, run_id='abc1')
        assert run.options.var_files == ('fixtures.us-east-2.tfvars',)

    def test_var_file_override(self, harness_config):
        run = prepare_run(harness_config, run_id='abc2', var_files=['a.tfvars', 'b.tfvars'])
        assert run.options.var_files == ('a.tfvars', 'b.tfvars')

    def test_enabled_flag(self, harness_config):
        run = prepare_run(harness_config, enabled=False, run_id='abc3')
        assert run.options.variables.enabled is False

    def test_returns_terraform_run(self, harness_config):
        assert isinstance(prepare_run(harness_config), TerraformRun)
