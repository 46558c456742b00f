"""Shared fixtures for CLI tests.

Every test gets its own SQLite ledger file so commands run against a real
store without touching the working directory.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from cli.app import app


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def invoke(runner: CliRunner, db_url: str) -> Callable[..., Any]:
    """Invoke the CLI against the test ledger.

    ``invoke("balance", "user-1")`` returns the click result;
    ``invoke(..., as_json=True)`` parses stdout as JSON after asserting a
    zero exit code.
    """

    def _invoke(*args: str, as_json: bool = False) -> Any:
        options = ["--database-url", db_url]
        if as_json:
            options.insert(0, "--json")
        result = runner.invoke(app, [*options, *args])
        if not as_json:
            return result
        assert result.exit_code == 0, result.output
        return json.loads(result.stdout)

    return _invoke
