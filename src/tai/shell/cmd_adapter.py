"""Windows Command Prompt adapter."""

from __future__ import annotations

import subprocess

from .base import CommandResult, ShellAdapter, normalize_output


class CmdAdapter(ShellAdapter):
    """Adapter for command execution via ``cmd.exe``."""

    def __init__(self, executable: str = "cmd.exe") -> None:
        self.executable = executable

    @property
    def name(self) -> str:
        return "cmd"

    def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.log_request(command, timeout=timeout)
        started = self.monotonic_now()
        try:
            process = subprocess.run(
                [self.executable, "/d", "/s", "/c", command],
                stdin=subprocess.DEVNULL,
                capture_output=True,
                cwd=cwd,
                timeout=timeout,
                check=False,
                text=False,
            )
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=process.returncode,
                stdout=normalize_output(process.stdout),
                stderr=normalize_output(process.stderr),
                duration_seconds=self.monotonic_now() - started,
            )
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=124,
                stdout=normalize_output(exc.stdout),
                stderr=normalize_output(exc.stderr),
                timed_out=True,
                duration_seconds=self.monotonic_now() - started,
            )
        except OSError as exc:
            reason = f"{self.name} executable not found: {self.executable} ({exc.strerror or exc})"
            result = CommandResult(
                command=command,
                shell=self.name,
                returncode=127,
                stdout="",
                stderr=reason,
                executed=False,
                duration_seconds=self.monotonic_now() - started,
                spawn_error=reason,
            )

        self.log_result(result)
        return result
