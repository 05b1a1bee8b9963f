"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_cloud imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from typing import Any  # noqa: E402

import pytest  # noqa: E402
import yaml  # noqa: E402

from stackctl.config import Config  # noqa: E402


@pytest.fixture
def write_stack(tmp_path: Path):
    """Write a stack file and return its path."""

    def _write(resources: list[dict[str, Any]], name: str = "test-stack") -> Path:
        path = tmp_path / "stack.yaml"
        path.write_text(yaml.safe_dump({"name": name, "resources": resources}, sort_keys=False))
        return path

    return _write


@pytest.fixture
def make_config(tmp_path: Path):
    """Config pointing at a temp snapshot, with retries that do not wait."""

    def _make(spec_file: Path, **overrides: Any) -> Config:
        values: dict[str, Any] = {
            "spec_file": spec_file,
            "state_file": tmp_path / "state" / "state.json",
            "backoff_base_seconds": 0.0,
            "backoff_max_seconds": 0.0,
        }
        values.update(overrides)
        return Config(**values)

    return _make
