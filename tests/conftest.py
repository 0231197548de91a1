"""Shared pytest fixtures for module-harness tests."""

import os
import shutil
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

FIXTURE_MODULE = Path(__file__).parent / 'fixtures' / 'local_module'


def _has_engine():
    """Check if the provisioning engine binary is on PATH."""
    binary = os.environ.get('MODULE_HARNESS_BINARY', 'terraform')
    return shutil.which(binary) is not None


def _has_infrastructure():
    """Check if a real module and cloud credentials are available."""
    if not _has_engine():
        return False
    if not os.environ.get('MODULE_HARNESS_CONFIG'):
        return False
    return bool(os.environ.get('AWS_ACCESS_KEY_ID') or os.environ.get('AWS_PROFILE'))


def pytest_collection_modifyitems(config, items):
    """Skip engine/infrastructure tests when the environment lacks them."""
    skip_engine = pytest.mark.skip(reason="requires terraform (engine binary not on PATH)")
    skip_infra = pytest.mark.skip(
        reason="requires infrastructure (MODULE_HARNESS_CONFIG and AWS credentials)"
    )
    has_engine = _has_engine()
    has_infra = _has_infrastructure()
    for item in items:
        if "requires_terraform" in item.keywords and not has_engine:
            item.add_marker(skip_engine)
        if "requires_infrastructure" in item.keywords and not has_infra:
            item.add_marker(skip_infra)


@pytest.fixture
def module_dir(tmp_path):
    """Create a minimal module directory with a var file."""
    module = tmp_path / 'module'
    module.mkdir()
    (module / 'main.tf').write_text('output "name" { value = "x" }\n')
    (module / 'fixtures.us-east-2.tfvars').write_text('region = "us-east-2"\n')
    return module


@pytest.fixture
def harness_config(tmp_path, module_dir, monkeypatch):
    """HarnessConfig loaded from a temporary harness.yaml.

    State and reports go under tmp_path.
    """
    from config import HarnessConfig

    monkeypatch.delenv('MODULE_HARNESS_BINARY', raising=False)
    config_file = tmp_path / 'harness.yaml'
    config_file.write_text("""
binary: terraform
module_dir: module
var_files:
  - fixtures.us-east-2.tfvars
expectations:
  lambda_forwarder_log_function_name: "eg-ue2-test-datadog-lambda-forwarder-{run_id}-logs"
state_root: .states
report_dir: reports
""")
    return HarnessConfig(config_file=config_file)


@pytest.fixture
def options(harness_config):
    """Invocation options for run id 28424."""
    from options import assemble_options
    return assemble_options(
        module_dir=harness_config.module_dir,
        var_files=harness_config.var_files,
        run_id='28424',
    )


@pytest.fixture
def fixture_config(tmp_path):
    """HarnessConfig for a copy of the provider-free fixture module, state under tmp_path."""
    from config import HarnessConfig
    module_copy = tmp_path / 'local_module'
    shutil.copytree(FIXTURE_MODULE, module_copy)
    config = HarnessConfig(config_file=module_copy / 'harness.yaml')
    config.state_root = tmp_path / '.states'
    config.report_dir = tmp_path / 'reports'
    return config


class FakeEngine:
    """Stand-in for run_command that records engine subcommands.

    apply writes the state file named by -state= so destroy has something
    to act on. output renders {run_id} from the run's TF_DATA_DIR.
    """

    def __init__(self, fail_on=None, output='"eg-ue2-test-datadog-lambda-forwarder-{run_id}-logs"',
                 apply_stdout='Apply complete! Resources: 0 added, 0 changed, 0 destroyed.'):
        self.calls = []
        self.kwargs = []
        self.fail_on = fail_on
        self.output = output
        self.apply_stdout = apply_stdout

    def __call__(self, cmd, **kwargs):
        sub = cmd[1]
        self.calls.append(sub)
        self.kwargs.append(kwargs)
        if sub == self.fail_on:
            return 1, '', f'Error: {sub} failed'
        if sub == 'apply':
            state = next(arg for arg in cmd if arg.startswith('-state='))
            Path(state.split('=', 1)[1]).write_text('{}')
            return 0, self.apply_stdout, ''
        if sub == 'output':
            run_id = Path(kwargs['env']['TF_DATA_DIR']).parent.name
            return 0, self.output.format(run_id=run_id), ''
        return 0, '', ''

    def count(self, sub):
        return self.calls.count(sub)


@pytest.fixture
def fake_engine():
    """Factory for FakeEngine; patch actions.terraform.run_command with the result."""
    return FakeEngine
