"""Filesystem locations for config, context and history files."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

CONFIG_FILENAME = ".config.tai"
GLOBAL_CONFIG_FILENAME = "config.tai"
CONTEXT_FILENAME = ".context.tai"
CONTEXT_SUFFIX = ".context.tai"
HISTORY_FILENAME = "history.jsonl"


def find_git_root(cwd: Path) -> Path | None:
    """Return the enclosing git work tree, if any."""
    try:
        process = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            cwd=cwd,
            check=False,
            text=True,
        )
    except OSError:
        return None
    if process.returncode != 0:
        return None
    root = process.stdout.strip()
    return Path(root) if root else None


@dataclass
class TaiPaths:
    """Centralizes filesystem paths for one invocation."""

    cwd: Path
    global_dir: Path
    project_root: Path | None = field(default=None)

    @classmethod
    def discover(cls, cwd: Path | None = None, environ: dict[str, str] | None = None) -> TaiPaths:
        env = os.environ if environ is None else environ
        working = (cwd or Path.cwd()).resolve()
        override = env.get("TAI_CONFIG_DIR")
        global_dir = (
            Path(override).expanduser()
            if override
            else Path.home() / ".config" / "tai"
        )
        return cls(cwd=working, global_dir=global_dir, project_root=find_git_root(working))

    def _local_file(self, name: str) -> Path | None:
        candidate = self.cwd / name
        if candidate.is_file():
            return candidate
        if self.project_root is not None:
            candidate = self.project_root / name
            if candidate.is_file():
                return candidate
        return None

    @property
    def local_config_file(self) -> Path | None:
        return self._local_file(CONFIG_FILENAME)

    @property
    def local_config_target(self) -> Path:
        """Where ``config <key> <value>`` writes without ``--global``."""
        return (self.project_root or self.cwd) / CONFIG_FILENAME

    @property
    def local_context_file(self) -> Path | None:
        return self._local_file(CONTEXT_FILENAME)

    @property
    def global_config_file(self) -> Path:
        return self.global_dir / GLOBAL_CONFIG_FILENAME

    @property
    def context_dir(self) -> Path:
        return self.global_dir / "context"

    def named_context_file(self, name: str) -> Path:
        return self.context_dir / f"{name}{CONTEXT_SUFFIX}"

    @property
    def history_file(self) -> Path:
        return self.global_dir / HISTORY_FILENAME

    @property
    def log_dir(self) -> Path:
        return self.global_dir / "logs"
