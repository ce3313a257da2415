"""Running tai straight from a source checkout through start.py."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

SCRIPT = Path(__file__).resolve().parents[1] / "start.py"


def _run_start(*args: str, cwd: Path, env: dict[str, str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, str(SCRIPT), *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=env,
        check=False,
    )


def _clean_env(tmp_path: Path) -> dict[str, str]:
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith("TAI_") and key not in {"ANTHROPIC_API_KEY", "OPENAI_API_KEY"}
    }
    env["TAI_CONFIG_DIR"] = str(tmp_path / "global")
    return env


def test_start_help_lists_request_options(tmp_path: Path) -> None:
    result = _run_start("--help", cwd=tmp_path, env=_clean_env(tmp_path))

    assert result.returncode == 0
    assert "--nocontext" in result.stdout
    assert "--clear-history" in result.stdout
    assert "tai config" in result.stdout


def test_start_config_reads_environment_override(tmp_path: Path) -> None:
    env = _clean_env(tmp_path)
    env["TAI_MODEL"] = "claude-from-env"

    result = _run_start("config", "model", cwd=tmp_path, env=env)

    assert result.returncode == 0
    assert result.stdout.strip() == "claude-from-env"


def test_start_config_rejects_unknown_key(tmp_path: Path) -> None:
    result = _run_start("config", "colour", cwd=tmp_path, env=_clean_env(tmp_path))

    assert result.returncode == 2
    assert "Unknown config key: colour" in result.stderr
