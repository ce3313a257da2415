"""Error taxonomy shared by the resolver, gateway and task loop."""

from __future__ import annotations


class TaiError(Exception):
    """Base class for errors surfaced to the user."""

    exit_code = 1


class ConfigError(TaiError):
    """Invalid value for a known key, or an unreadable config file."""

    exit_code = 2

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ContextLoadError(TaiError):
    """A context document exists but could not be read."""

    def __init__(self, name: str, path: str, reason: str) -> None:
        super().__init__(f"Failed to read context '{name}' at {path}: {reason}")
        self.name = name
        self.path = path
        self.reason = reason


class GatewayError(TaiError):
    """The model request failed or returned something unusable."""

    exit_code = 3

    def __init__(self, message: str, *, kind: str = "provider", status: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class ExecutionError(TaiError):
    """A proposed command could not be spawned."""

    def __init__(self, command: str, reason: str) -> None:
        super().__init__(f"Failed to execute command: {reason}")
        self.command = command
        self.reason = reason


class TaskLimitError(TaiError):
    """The task loop reached its step ceiling before the model finished."""

    exit_code = 4

    def __init__(self, max_steps: int, steps: list[object] | None = None) -> None:
        super().__init__(
            f"Step limit reached ({max_steps}/{max_steps}) before the task completed. "
            "Raise max_steps or continue with a new request."
        )
        self.max_steps = max_steps
        self.steps = list(steps or [])
