"""
Smoke Tests for CLI Commands.

These tests verify that CLI commands run without errors and produce output.
They don't validate correctness deeply - just that commands work.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent


@pytest.fixture
def cli_env(tmp_path):
    """Point the CLI at a throwaway SQLite database."""
    env = dict(os.environ)
    env["DATABASE_URL"] = f"sqlite:///{tmp_path / 'learnloop.db'}"
    env["LOG_LEVEL"] = "WARNING"
    env["COLUMNS"] = "200"
    return env


def run_cli_command(command: str, env: dict | None = None, timeout: int = 30) -> tuple[int, str, str]:
    """
    Run a CLI command and return exit code, stdout, stderr.

    Args:
        command: The command to run (after 'python -m learnloop.cli.main')
        env: Environment for the subprocess
        timeout: Maximum time to wait

    Returns:
        Tuple of (exit_code, stdout, stderr)
    """
    full_command = f"{sys.executable} -m learnloop.cli.main {command}"

    result = subprocess.run(
        full_command,
        shell=True,
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        timeout=timeout,
        env=env,
    )

    return result.returncode, result.stdout, result.stderr


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        code, stdout, stderr = run_cli_command("--help")

        assert code == 0, f"Help failed: {stderr}"
        assert "learnloop" in stdout.lower()
        assert "Commands" in stdout

    @pytest.mark.parametrize("group", ["db", "input", "feedback", "output", "worker", "dlq", "breaker"])
    def test_group_help(self, group):
        code, stdout, stderr = run_cli_command(f"{group} --help")

        assert code == 0, f"{group} help failed: {stderr}"

    def test_version(self):
        code, stdout, _ = run_cli_command("version")

        assert code == 0
        assert "0.1.0" in stdout


class TestCLIWithDatabase:
    """Commands that need tables, run against a temporary SQLite file."""

    def test_init_then_submit(self, cli_env):
        assert run_cli_command("db init", cli_env)[0] == 0

        code, stdout, stderr = run_cli_command('input submit "Sprint review notes" --kind summary', cli_env)

        assert code == 0, stderr
        assert "queued on medium" in stdout

    def test_empty_dead_letter_queue(self, cli_env):
        run_cli_command("db init", cli_env)

        code, stdout, _ = run_cli_command("dlq list", cli_env)
        assert code == 0
        assert "empty" in stdout

        code, stdout, _ = run_cli_command("dlq stats", cli_env)
        assert code == 0
        assert "Total failures" in stdout

    def test_requeue_missing_record_fails(self, cli_env):
        run_cli_command("db init", cli_env)

        code, stdout, _ = run_cli_command("dlq requeue 999", cli_env)

        assert code == 1
        assert "not found" in stdout

    def test_breaker_status(self, cli_env):
        code, stdout, stderr = run_cli_command("breaker status", cli_env)

        assert code == 0, stderr
        assert "Circuit breakers" in stdout
