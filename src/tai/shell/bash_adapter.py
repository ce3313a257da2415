"""POSIX shell adapter implementation."""

from __future__ import annotations

import shutil
import subprocess

from .base import CommandResult, ShellAdapter, normalize_output


class BashAdapter(ShellAdapter):
    """Adapter for command execution via ``sh -c`` or ``bash -c``."""

    def __init__(self, executable: str | None = None, *, fallback_to_sh: bool = True) -> None:
        self.executable = executable or _default_executable(fallback_to_sh=fallback_to_sh)

    @property
    def name(self) -> str:
        return "bash" if self.executable.endswith("bash") else "sh"

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
                [self.executable, "-c", command],
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
            reason = f"{self.name} could not start: {exc.strerror or exc}"
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


def _default_executable(*, fallback_to_sh: bool) -> str:
    if fallback_to_sh and shutil.which("sh"):
        return "sh"
    if shutil.which("bash"):
        return "bash"
    return "sh"
