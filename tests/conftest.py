"""Pytest configuration and fixtures."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from azure_mock import TEST_SUBSCRIPTION_ID  # noqa: E402
from policyctl.config import Config, LogFormat  # noqa: E402

ALLOWED_LOCATION_RULE = {
    "if": {"field": "location", "notEquals": "eastus"},
    "then": {"effect": "deny"},
}

STACK_YAML = """\
apiVersion: policyctl/v1
kind: PolicyStack
spec:
  definitions:
    allowed_location:
      name: allowed-location-eastus
      displayName: Allowed location (eastus)
      mode: All
      ruleFile: allowed-location.json
      metadata:
        category: General
  assignments:
    allowed_location:
      name: allowed-location-eastus
      displayName: Allowed location (eastus)
      definition: allowed_location
"""


def write_stack(
    directory: Path,
    stack_yaml: str = STACK_YAML,
    rules: dict[str, object] | None = None,
) -> Path:
    """Write a stack manifest and its rule documents; return the manifest path."""
    directory.mkdir(parents=True, exist_ok=True)
    if rules is None:
        rules = {"allowed-location.json": ALLOWED_LOCATION_RULE}
    for name, content in rules.items():
        text = content if isinstance(content, str) else json.dumps(content, indent=2)
        (directory / name).write_text(text, encoding="utf-8")
    stack_file = directory / "stack.yaml"
    stack_file.write_text(stack_yaml, encoding="utf-8")
    return stack_file


@pytest.fixture
def stack_file(tmp_path: Path) -> Path:
    """The allowed-location stack used across tests."""
    return write_stack(tmp_path / "policies")


@pytest.fixture
def config(tmp_path: Path, stack_file: Path) -> Config:
    """Configuration pointing at the test stack and a private state dir."""
    return Config(
        stack_file=stack_file,
        state_dir=tmp_path / "state",
        subscription_id=TEST_SUBSCRIPTION_ID,
        log_format=LogFormat.TEXT,
    )
