"""Outcome verification for applied runs.

Compares named outputs against literals rendered from the run id, and
checks the engine's resource summary for drift on a repeated apply.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from actions.terraform import TerraformOutputAction
from common import ActionResult
from config import HarnessConfig
from options import InvocationOptions

logger = logging.getLogger(__name__)

NO_CHANGES_SUMMARY = 'Resources: 0 added, 0 changed, 0 destroyed.'

_SUMMARY_PATTERN = re.compile(r'Resources: (\d+) added, (\d+) changed, (\d+) destroyed\.')
_ANSI_PATTERN = re.compile(r'\x1b\[[0-9;]*m')


@dataclass(frozen=True)
class Expectation:
    """An output expected to equal a template rendered with the run id.

    Example:
        Expectation('lambda_forwarder_log_function_name',
                    'eg-ue2-test-datadog-lambda-forwarder-{run_id}-logs')
    """
    output: str
    template: str

    def expected_value(self, run_id: str) -> str:
        return self.template.format(run_id=run_id)


@dataclass(frozen=True)
class ResourceCounts:
    added: int
    changed: int
    destroyed: int

    @property
    def is_noop(self) -> bool:
        return self.added == 0 and self.changed == 0 and self.destroyed == 0


def expectations_from_mapping(mapping: dict) -> list[Expectation]:
    """Build expectations from the config's output -> template mapping."""
    return [Expectation(output=name, template=template) for name, template in mapping.items()]


def check_output(expectation: Expectation, actual, run_id: str) -> Optional[str]:
    """Return a failure message on mismatch, None when the output matches."""
    expected = expectation.expected_value(run_id)
    if actual == expected:
        return None
    return (
        f"Output '{expectation.output}' mismatch:\n"
        f"  expected: {expected!r}\n"
        f"  actual:   {actual!r}"
    )


def _strip_ansi(text: str) -> str:
    return _ANSI_PATTERN.sub('', text)


def extract_resource_summary(text: str) -> Optional[str]:
    """Extract the last 'Resources: N added, M changed, P destroyed.' line."""
    matches = list(_SUMMARY_PATTERN.finditer(_strip_ansi(text or '')))
    if not matches:
        return None
    return matches[-1].group(0)


def parse_resource_counts(text: str) -> Optional[ResourceCounts]:
    summary = extract_resource_summary(text)
    if summary is None:
        return None
    match = _SUMMARY_PATTERN.match(summary)
    added, changed, destroyed = (int(g) for g in match.groups())
    return ResourceCounts(added=added, changed=changed, destroyed=destroyed)


def check_no_changes(text: str) -> Optional[str]:
    """Return a failure message unless the summary reports no changes."""
    summary = extract_resource_summary(text)
    if summary is None:
        return f"No resource summary found in engine output (expected {NO_CHANGES_SUMMARY!r})"
    if summary != NO_CHANGES_SUMMARY:
        return (
            "Configuration is not idempotent:\n"
            f"  expected: {NO_CHANGES_SUMMARY!r}\n"
            f"  actual:   {summary!r}"
        )
    return None


@dataclass
class VerifyOutputsAction:
    """Read each expected output and compare it to its rendered literal.

    Every expectation is checked; all mismatches are reported together.
    """
    name: str
    options: InvocationOptions
    expectations: list[Expectation] = field(default_factory=list)

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        start = time.time()
        if not self.expectations:
            return ActionResult(
                success=False,
                message="No output expectations configured",
                duration=time.time() - start
            )

        failures = []
        outputs = {}
        for expectation in self.expectations:
            read = TerraformOutputAction(
                name=f'{self.name}-{expectation.output}',
                options=self.options,
                output_name=expectation.output,
            )
            result = read.run(config, context)
            if not result.success:
                failures.append(result.message)
                continue

            actual = result.context_updates[read.context_key]
            outputs[expectation.output] = actual
            if message := check_output(expectation, actual, self.options.run_id):
                failures.append(message)
            else:
                logger.info(f"[{self.name}] {expectation.output} = {actual!r}")

        context_updates = {'outputs': outputs}
        if failures:
            return ActionResult(
                success=False,
                message='\n'.join(failures),
                duration=time.time() - start,
                context_updates=context_updates,
            )

        return ActionResult(
            success=True,
            message=f"{len(self.expectations)} output(s) matched",
            duration=time.time() - start,
            context_updates=context_updates,
        )


@dataclass
class VerifyNoChangesAction:
    """Check a captured apply result reports zero changes."""
    name: str
    result_key: str = 'reapply_output'

    def run(self, config: HarnessConfig, context: dict) -> ActionResult:
        start = time.time()
        text = context.get(self.result_key)
        if text is None:
            return ActionResult(
                success=False,
                message=f"No {self.result_key} in context",
                duration=time.time() - start
            )

        if message := check_no_changes(text):
            return ActionResult(
                success=False,
                message=message,
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=NO_CHANGES_SUMMARY,
            duration=time.time() - start
        )
