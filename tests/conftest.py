"""
Shared fixtures: mocked container runtime and source trees.
No Docker daemon or Redis server is required by the suite.
"""
import json
from unittest.mock import MagicMock

import pytest

from app.executor.build_executor import SandboxBuildExecutor, SandboxSpec


def make_runtime(exit_codes=(0, 0), outputs=None):
    """
    MagicMock runtime whose successive exec calls return the given exit codes
    and output chunks.
    """
    outputs = outputs or [["added 120 packages\n"], ["build success\n"]]
    runtime = MagicMock()
    runtime.create.return_value = "container-123"

    calls = iter(range(len(exit_codes)))

    def _exec_stream(container_id, command):
        i = next(calls)
        chunks = outputs[i] if i < len(outputs) else []
        return f"exec-{i}", iter(chunks)

    runtime.exec_stream.side_effect = _exec_stream
    runtime.exec_exit_code.side_effect = lambda exec_id: exit_codes[int(exec_id.split("-")[1])]
    return runtime


@pytest.fixture
def runtime():
    return make_runtime()


@pytest.fixture
def executor(runtime):
    return SandboxBuildExecutor(runtime=runtime, spec=SandboxSpec(phase_timeout_seconds=5))


@pytest.fixture
def react_tree(tmp_path):
    src = tmp_path / "src-tree"
    src.mkdir()
    (src / "package.json").write_text(json.dumps({"dependencies": {"react": "^18.0.0"}}))
    (src / "index.js").write_text("console.log('hello')\n")
    return src
