"""Pre-flight validation checks for harness runs.

Catches environment problems before any resource is provisioned, with
actionable error messages:
- engine binary installed and runnable
- module directory and var files present
- provider registry reachable (init always runs with -upgrade)
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Optional

import requests

from common import run_command
from config import HarnessConfig

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------

def validate_engine(binary: str) -> tuple[list[str], Optional[str]]:
    """Check the engine binary is on PATH and report its version.

    Returns:
        (errors, version) tuple; version is None when unknown
    """
    path = shutil.which(binary)
    if path is None:
        return [
            f"Engine binary '{binary}' not found on PATH\n"
            f"  Install it, or set 'binary' in harness.yaml / MODULE_HARNESS_BINARY"
        ], None

    logger.debug(f"Found {binary} at {path}")
    rc, out, err = run_command([binary, 'version', '-json'], timeout=30)
    if rc != 0:
        return [f"'{binary} version' failed: {err.strip() or out.strip()}"], None

    try:
        version = json.loads(out).get('terraform_version')
    except json.JSONDecodeError:
        # Older releases have no -json; first line is "Terraform vX.Y.Z"
        version = out.splitlines()[0].split()[-1].lstrip('v') if out.strip() else None
    return [], version


# -----------------------------------------------------------------------------
# Module
# -----------------------------------------------------------------------------

def validate_module(module_dir: Path, var_files: list[str]) -> list[str]:
    """Check the module directory and every var file exist."""
    errors = []

    if not module_dir.is_dir():
        errors.append(
            f"Module directory not found: {module_dir}\n"
            f"  Set 'module_dir' in harness.yaml (relative to the config file)"
        )
        return errors

    if not any(module_dir.glob('*.tf')) and not any(module_dir.glob('*.tf.json')):
        errors.append(f"No .tf files in module directory: {module_dir}")

    for var_file in var_files:
        # The engine resolves var files relative to the module directory
        path = Path(var_file)
        if not path.is_absolute():
            path = module_dir / path
        if not path.exists():
            errors.append(f"Var file not found: {path}")

    return errors


# -----------------------------------------------------------------------------
# Provider registry
# -----------------------------------------------------------------------------

def validate_registry(registry_url: str, timeout: float = 10.0) -> list[str]:
    """Check the provider registry answers its service discovery document."""
    try:
        resp = requests.get(registry_url, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        return [
            f"Cannot connect to provider registry {registry_url}: {e}\n"
            f"  init runs with -upgrade and needs registry access"
        ]
    except requests.exceptions.Timeout:
        return [f"Timeout connecting to provider registry {registry_url}"]
    except requests.exceptions.RequestException as e:
        return [
            f"Provider registry check failed for {registry_url!r}: {e}\n"
            f"  Set registry_url in harness.yaml to a full https:// URL"
        ]

    if resp.status_code != 200:
        return [f"Provider registry returned {resp.status_code} for {registry_url}"]

    try:
        services = resp.json()
    except ValueError:
        return [f"Provider registry returned non-JSON discovery document: {resp.text[:100]}"]

    if 'providers.v1' not in services:
        return [f"Provider registry at {registry_url} does not advertise providers.v1"]
    return []


# -----------------------------------------------------------------------------
# Aggregate checks
# -----------------------------------------------------------------------------

def validate_readiness(config: HarnessConfig, check_registry: bool = True) -> list[str]:
    """Validate prerequisites before running a scenario.

    Returns:
        List of error messages (empty if ready)
    """
    errors, _ = validate_engine(config.binary)
    errors.extend(validate_module(config.module_dir, config.var_files))
    if check_registry:
        errors.extend(validate_registry(config.registry_url))
    return errors


def run_preflight_checks(config: HarnessConfig, check_registry: bool = True) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Returns:
        (success, results) tuple where results contains check details
    """
    results: dict[str, dict[str, list[str]]] = {
        'engine': {'passed': [], 'failed': []},
        'module': {'passed': [], 'failed': []},
        'registry': {'passed': [], 'failed': []},
    }

    engine_errors, version = validate_engine(config.binary)
    if engine_errors:
        results['engine']['failed'].extend(engine_errors)
    else:
        results['engine']['passed'].append(f"{config.binary} {version or 'version unknown'}")

    module_errors = validate_module(config.module_dir, config.var_files)
    if module_errors:
        results['module']['failed'].extend(module_errors)
    else:
        results['module']['passed'].append(f"Module: {config.module_dir}")
        for var_file in config.var_files:
            results['module']['passed'].append(f"Var file: {var_file}")

    if check_registry:
        registry_errors = validate_registry(config.registry_url)
        if registry_errors:
            results['registry']['failed'].extend(registry_errors)
        else:
            results['registry']['passed'].append(f"Registry reachable: {config.registry_url}")

    all_failed = [item for category in results.values() for item in category['failed']]
    return len(all_failed) == 0, results


def format_preflight_results(label: str, results: dict) -> str:
    """Format preflight check results for display."""
    lines = [f"\nPreflight checks for '{label}':\n"]

    category_names = {
        'engine': 'Engine',
        'module': 'Module',
        'registry': 'Provider registry',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(len(cat['failed']) == 0 for cat in results.values())
    if all_passed:
        lines.append("All checks passed. Ready to run scenarios.")
    else:
        lines.append("Some checks failed. Fix issues before running scenarios.")

    return '\n'.join(lines)
