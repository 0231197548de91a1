"""Reusable harness actions."""

from actions.terraform import (
    TerraformInitAction,
    TerraformApplyAction,
    TerraformOutputAction,
    TerraformDestroyAction,
)
from actions.bootstrap import TrustWorkdirAction

__all__ = [
    'TerraformInitAction',
    'TerraformApplyAction',
    'TerraformOutputAction',
    'TerraformDestroyAction',
    'TrustWorkdirAction',
]
