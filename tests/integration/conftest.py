"""Fixtures for integration tests running a fake nx executable."""

import asyncio
import json
import sys
import textwrap
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

import pytest

from nx_test_orchestrator.config import WorkspaceSettings

FAKE_NX = textwrap.dedent(
    """
    import json
    import os
    import sys
    import time
    from pathlib import Path

    here = Path(__file__).parent
    key = " ".join(sys.argv[1:])
    with (here / "calls.log").open("a") as calls:
        calls.write(key + "\\n")
    with (here / "pids.log").open("a") as pids:
        pids.write(f"{os.getpid()}\\n")

    responses = json.loads((here / "responses.json").read_text())
    response = responses.get(key, responses.get("*"))
    if response is None:
        sys.stderr.write(f"Unknown command: {key}\\n")
        sys.exit(1)

    sys.stdout.write(response.get("stdout", ""))
    sys.stdout.flush()
    sys.stderr.write(response.get("stderr", ""))
    sys.stderr.flush()
    time.sleep(response.get("sleep", 0))
    sys.exit(response.get("exit_code", 0))
    """
)


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create an nx workspace directory."""
    (tmp_path / "nx.json").write_text("{}")
    return tmp_path


@pytest.fixture
def fake_nx(workspace: Path) -> Callable[..., WorkspaceSettings]:
    """Return a function installing a scripted nx executable."""
    bin_dir = workspace / "bin"
    bin_dir.mkdir()
    script = bin_dir / "nx.py"
    script.write_text(FAKE_NX)

    def _install(
        responses: Mapping[str, Mapping[str, Any]], **overrides: Any
    ) -> WorkspaceSettings:
        (bin_dir / "responses.json").write_text(json.dumps(responses))
        return WorkspaceSettings(
            workspace_root=workspace,
            nx_command=(sys.executable, str(script)),
            **overrides,
        )

    return _install


@pytest.fixture
def nx_calls(workspace: Path) -> Callable[[], list[str]]:
    """Return a function listing the argument strings nx was invoked with."""

    def _calls() -> list[str]:
        log = workspace / "bin" / "calls.log"
        return log.read_text().splitlines() if log.exists() else []

    return _calls


@pytest.fixture
def started_nx(workspace: Path) -> Callable[[], Awaitable[int]]:
    """Return a function waiting for the first nx process and returning its pid."""

    async def _started() -> int:
        log = workspace / "bin" / "pids.log"
        for _ in range(200):
            if log.exists() and (pids := log.read_text().split()):
                return int(pids[0])
            await asyncio.sleep(0.05)
        raise AssertionError("nx was not started")

    return _started
