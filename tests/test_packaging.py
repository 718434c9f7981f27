"""Tests for the declared package metadata."""

import tomllib
from pathlib import Path

PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def load_dependencies() -> list[str]:
    with PYPROJECT.open("rb") as f:
        return tomllib.load(f)["project"]["dependencies"]


class TestDependencies:
    def test_mcp_pinned_to_v1(self):
        """The server uses the 1.x lowlevel decorator API, so mcp stays below 2."""
        mcp = [dep for dep in load_dependencies() if dep.startswith("mcp")]
        assert mcp == ["mcp>=1.0,<2"]

    def test_runtime_stack(self):
        """httpx, mcp and pydantic are the runtime dependencies."""
        names = sorted(dep.split(">")[0].split("<")[0] for dep in load_dependencies())
        assert names == ["httpx", "mcp", "pydantic"]
