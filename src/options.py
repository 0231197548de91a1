"""Invocation options for the provisioning engine.

Options are assembled once per run and never mutated. Variable semantics
are not validated here; the engine rejects malformed values itself.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

RESERVED_VARIABLES = ('attributes', 'enabled')


@dataclass(frozen=True)
class ModuleVariables:
    """Inline variables passed with -var.

    attributes carries the run id as a naming suffix. enabled is only
    passed when set, so the module default applies otherwise.
    """
    attributes: tuple[str, ...]
    enabled: Optional[bool] = None
    extra: tuple[tuple[str, Any], ...] = ()

    def __post_init__(self):
        for name, _ in self.extra:
            if name in RESERVED_VARIABLES:
                raise ValueError(f"Variable '{name}' is set by the harness and cannot be overridden")

    def as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {'attributes': list(self.attributes)}
        if self.enabled is not None:
            result['enabled'] = self.enabled
        for name, value in self.extra:
            result[name] = value
        return result


@dataclass(frozen=True)
class InvocationOptions:
    """Everything needed to invoke the engine for one run."""
    module_dir: Path
    run_id: str
    variables: ModuleVariables
    var_files: tuple[str, ...] = ()
    upgrade: bool = True
    env: tuple[tuple[str, str], ...] = field(default=())


def assemble_options(
    module_dir: Path,
    var_files: list[str],
    run_id: str,
    enabled: Optional[bool] = None,
    extra_vars: Optional[dict[str, Any]] = None,
    env: Optional[dict[str, str]] = None,
) -> InvocationOptions:
    """Build the invocation options for a run.

    upgrade is always True so each run pulls current provider versions.
    """
    variables = ModuleVariables(
        attributes=(run_id,),
        enabled=enabled,
        extra=tuple((extra_vars or {}).items()),
    )
    return InvocationOptions(
        module_dir=Path(module_dir),
        run_id=run_id,
        variables=variables,
        var_files=tuple(var_files),
        upgrade=True,
        env=tuple((env or {}).items()),
    )


def format_var_value(value: Any) -> str:
    """Format a variable value for -var.

    Strings are passed raw; lists, maps, booleans and numbers are HCL,
    which accepts the JSON encoding of each.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value)


def var_args(options: InvocationOptions) -> list[str]:
    """Return -var-file and -var arguments in precedence order."""
    args = [f'-var-file={f}' for f in options.var_files]
    for name, value in options.variables.as_dict().items():
        args.extend(['-var', f'{name}={format_var_value(value)}'])
    return args
