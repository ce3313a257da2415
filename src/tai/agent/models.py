"""Data models used by the task loop and execution gate."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

TaskStatus = Literal["completed", "cancelled", "copied", "truncated"]

TRUNCATED_STOP_REASON = "max_tokens"


class Decision(str, Enum):
    EXECUTE = "execute"
    CANCEL = "cancel"
    COPY = "copy"


class GateState(str, Enum):
    """States of a single proposed command."""

    PROPOSED = "proposed"
    EXECUTING = "executing"
    CANCELLED = "cancelled"
    COPIED = "copied"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class CommandCandidate:
    """A command block pulled out of a model response, not yet executed."""

    command: str
    language: str
    start: int
    end: int
    ignored_blocks: tuple[str, ...] = ()


@dataclass(slots=True)
class ExecutionResult:
    """Normalized shell execution output returned to the model."""

    stdout: str
    stderr: str
    returncode: int
    duration: float
    timed_out: bool = False


@dataclass(slots=True)
class GateOutcome:
    """Terminal state of the execution gate for one candidate."""

    state: GateState
    command: str
    result: ExecutionResult | None = None
    error: str | None = None
    copied: bool = False

    @property
    def executed(self) -> bool:
        return self.state is GateState.COMPLETED


@dataclass(slots=True)
class ModelResponse:
    """Text returned by the model and why generation stopped."""

    text: str
    stop_reason: str | None = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == TRUNCATED_STOP_REASON


@dataclass(slots=True)
class TaskStep:
    """One propose/confirm/execute iteration."""

    index: int
    messages: tuple[dict[str, str], ...]
    response: ModelResponse
    candidate: CommandCandidate | None = None
    outcome: GateOutcome | None = None

    @property
    def state(self) -> GateState | None:
        return self.outcome.state if self.outcome else None


@dataclass(slots=True)
class TaskOutcome:
    status: TaskStatus
    steps: list[TaskStep] = field(default_factory=list)
