#!/usr/bin/env python3
"""CLI entry point for module-harness.

Usage:
- ./run.sh scenario run examples-complete [-c harness.yaml]
- ./run.sh scenario list
- ./run.sh preflight [-c harness.yaml]
"""

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path

from config import ConfigError, load_harness_config
from identity import IdentityError
from scenarios import Orchestrator, get_scenario, list_scenarios
from validation import format_preflight_results, run_preflight_checks, validate_readiness

NOUN_COMMANDS = {
    "scenario": "Run or list test scenarios (run/list)",
    "preflight": "Check engine, module and registry readiness",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"module-harness {get_version()}")
    print()
    print("Usage: ./run.sh <noun> [action] [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Examples:")
    print("  ./run.sh scenario run examples-complete")
    print("  ./run.sh scenario run examples-complete-disabled -c test/harness.yaml")
    print("  ./run.sh scenario run examples-complete --run-id 28424 --dry-run")
    print("  ./run.sh preflight")


def _parse_var(value: str) -> tuple[str, str]:
    """Parse NAME=VALUE from --var."""
    if '=' not in value:
        raise argparse.ArgumentTypeError(f"Invalid --var '{value}'. Expected NAME=VALUE")
    name, raw = value.split('=', 1)
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid --var '{value}'. Variable name cannot be empty")
    return name, raw


def _configure_logging(args):
    # --json-output keeps stdout for the report; logs go to stderr
    if getattr(args, 'json_output', False):
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(stderr_handler)

    if getattr(args, 'verbose', False):
        logging.getLogger().setLevel(logging.DEBUG)


def _add_common_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to harness.yaml (default: $MODULE_HARNESS_CONFIG, ./harness.yaml, ./test/harness.yaml)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )


def scenario_list_main() -> int:
    """List registered scenarios."""
    print("Available scenarios:")
    for name in list_scenarios():
        scenario = get_scenario(name)
        runtime = getattr(scenario, 'expected_runtime', None)
        if runtime:
            runtime_str = f"~{runtime // 60}m" if runtime >= 60 else f"~{runtime}s"
            print(f"  {name:30} {runtime_str:>6}  {scenario.description}")
        else:
            print(f"  {name:30}         {scenario.description}")
    return 0


def scenario_run_main(argv: list) -> int:
    """Run one scenario: init, apply, verify, always destroy."""
    parser = argparse.ArgumentParser(
        prog='module-harness scenario run',
        description='Provision the module, verify it, and destroy it'
    )
    parser.add_argument('scenario', choices=list_scenarios(), help='Scenario name')
    _add_common_args(parser)
    parser.add_argument(
        '--run-id',
        help='Reuse a specific run id instead of generating one (lowercase alphanumeric)'
    )
    parser.add_argument(
        '--var-file',
        action='append',
        default=[],
        help='Extra var file overlay, applied after configured ones (repeatable)'
    )
    parser.add_argument(
        '--var',
        action='append',
        type=_parse_var,
        default=[],
        metavar='NAME=VALUE',
        help='Extra inline variable (repeatable)'
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Directory for test reports (overrides harness.yaml)'
    )
    parser.add_argument(
        '--skip', '-s',
        action='append',
        default=[],
        help='Phases to skip (can be repeated; destroy is never skipped)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be executed without running actions'
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip preflight checks before scenario execution'
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs go to stderr)'
    )
    args = parser.parse_args(argv)
    _configure_logging(args)

    try:
        config = load_harness_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1
    if args.report_dir:
        config.report_dir = args.report_dir

    scenario = get_scenario(args.scenario)

    if not args.skip_preflight and not args.dry_run:
        errors = validate_readiness(config)
        if errors:
            print("\nPre-flight validation failed:")
            for error in errors:
                for i, line in enumerate(error.split('\n')):
                    prefix = "  ✗ " if i == 0 else "    "
                    print(f"{prefix}{line}")
            print("\nUse --skip-preflight to bypass these checks")
            print()
            return 1
        logger.info("Pre-flight validation passed")

    try:
        orchestrator = Orchestrator(
            scenario=scenario,
            config=config,
            run_id=args.run_id,
            var_files=args.var_file,
            extra_vars=dict(args.var),
            skip_phases=args.skip,
            dry_run=args.dry_run,
        )
    except (IdentityError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    success = orchestrator.run()

    if args.json_output and not args.dry_run:
        print(json.dumps(orchestrator.report.to_dict(orchestrator.context), indent=2))

    return 0 if success else 1


def dispatch_scenario(argv: list) -> int:
    """Dispatch 'scenario' noun to run/list."""
    if not argv or argv[0] in ('-h', '--help'):
        print("Usage: ./run.sh scenario <action> [options]")
        print()
        print("Actions:")
        print("  run       Run a scenario (always destroys what it created)")
        print("  list      List available scenarios")
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action == 'run':
        return scenario_run_main(rest)
    if action == 'list':
        return scenario_list_main()

    print(f"Error: Unknown scenario action '{action}'")
    print("Available actions: run, list")
    return 1


def preflight_main(argv: list) -> int:
    """Run standalone preflight checks."""
    parser = argparse.ArgumentParser(
        prog='module-harness preflight',
        description='Check engine, module and provider registry readiness'
    )
    _add_common_args(parser)
    parser.add_argument(
        '--offline',
        action='store_true',
        help='Skip the provider registry check'
    )
    args = parser.parse_args(argv)
    _configure_logging(args)

    try:
        config = load_harness_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    success, results = run_preflight_checks(config, check_registry=not args.offline)
    print(format_preflight_results(str(config.module_dir), results))
    return 0 if success else 1


def main(argv=None):
    """CLI entry point, dispatches to noun handlers."""
    argv = sys.argv[1:] if argv is None else argv

    if not argv:
        print_usage()
        return 0

    noun, rest = argv[0], argv[1:]
    if noun in ('-h', '--help'):
        print_usage()
        return 0
    if noun == '--version':
        print(f"module-harness {get_version()}")
        return 0
    if noun == 'scenario':
        return dispatch_scenario(rest)
    if noun == 'preflight':
        return preflight_main(rest)

    print(f"Error: Unknown command '{noun}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
