"""Scenarios for the module's complete example.

examples-complete provisions the example, checks its outputs against the
configured expectations, then destroys it. examples-complete-disabled
applies the example with enabled=false twice and expects the second apply
to change nothing.
"""

from actions import (
    TerraformApplyAction,
    TerraformDestroyAction,
    TerraformInitAction,
    TrustWorkdirAction,
)
from config import HarnessConfig
from options import InvocationOptions
from scenarios import register_scenario
from verify import VerifyNoChangesAction, VerifyOutputsAction, expectations_from_mapping


def _bootstrap_phases(config: HarnessConfig) -> list[tuple[str, object, str]]:
    if not config.trust_workdir:
        return []
    return [
        ('bootstrap', TrustWorkdirAction(
            name='trust-workdir',
        ), 'Mark module directory as git safe.directory'),
    ]


@register_scenario
class ExamplesComplete:
    """Provision the complete example and verify its outputs."""

    name = 'examples-complete'
    description = 'Init, apply, verify outputs against run id, destroy'
    expected_runtime = 300

    def get_phases(self, config: HarnessConfig, options: InvocationOptions) -> list[tuple[str, object, str]]:
        """Return phases for the complete example."""
        return _bootstrap_phases(config) + [
            ('init', TerraformInitAction(
                name='init',
                options=options,
            ), 'Initialize module and upgrade providers'),

            ('apply', TerraformApplyAction(
                name='apply',
                options=options,
            ), 'Apply module with run id attribute'),

            ('verify_outputs', VerifyOutputsAction(
                name='verify-outputs',
                options=options,
                expectations=expectations_from_mapping(config.expectations),
            ), 'Verify outputs match expected names'),
        ]

    def get_teardown(self, config: HarnessConfig, options: InvocationOptions) -> TerraformDestroyAction:
        return TerraformDestroyAction(name='destroy', options=options)


@register_scenario
class ExamplesCompleteDisabled:
    """Apply the disabled example twice and check for drift."""

    name = 'examples-complete-disabled'
    description = 'Apply with enabled=false twice, expect no changes, destroy'
    enabled = False
    expected_runtime = 60

    def get_phases(self, config: HarnessConfig, options: InvocationOptions) -> list[tuple[str, object, str]]:
        """Return phases for the idempotence check."""
        return _bootstrap_phases(config) + [
            ('init', TerraformInitAction(
                name='init',
                options=options,
            ), 'Initialize module and upgrade providers'),

            ('apply', TerraformApplyAction(
                name='apply',
                options=options,
            ), 'Apply disabled module'),

            ('reapply', TerraformApplyAction(
                name='reapply',
                options=options,
                result_key='reapply_output',
            ), 'Apply identical configuration again'),

            ('verify_no_changes', VerifyNoChangesAction(
                name='verify-no-changes',
                result_key='reapply_output',
            ), 'Verify second apply changed nothing'),
        ]

    def get_teardown(self, config: HarnessConfig, options: InvocationOptions) -> TerraformDestroyAction:
        return TerraformDestroyAction(name='destroy', options=options)
