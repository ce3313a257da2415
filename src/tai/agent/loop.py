"""Bounded propose/confirm/execute loop for a single utterance."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from tai.agent.extractor import extract_command
from tai.agent.gate import ExecutionGate
from tai.agent.models import (
    CommandCandidate,
    ExecutionResult,
    GateOutcome,
    GateState,
    ModelResponse,
    TaskOutcome,
    TaskStatus,
    TaskStep,
)
from tai.context import ContextBlock
from tai.errors import TaskLimitError
from tai.history import ConversationTurn, HistoryStore, TurnStatus
from tai.llm.client import Prompt, build_messages, build_system_prompt

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... [{omitted} characters truncated] ...\n"

StepCallback = Callable[[TaskStep], None]


class ModelClient(Protocol):
    def send(self, prompt: Prompt) -> ModelResponse: ...


_TURN_STATUS: dict[GateState, TurnStatus] = {
    GateState.COMPLETED: "executed",
    GateState.CANCELLED: "cancelled",
    GateState.COPIED: "copied",
    GateState.FAILED: "failed",
}


class TaskLoop:
    """Runs model turns until the reply carries no command, the user stops, or the ceiling hits."""

    def __init__(
        self,
        *,
        client: ModelClient,
        gate: ExecutionGate,
        history: HistoryStore,
        context: ContextBlock | None = None,
        max_steps: int = 10,
        output_limit: int = 4000,
        history_limit: int = 10,
        history_window: timedelta | None = timedelta(minutes=60),
        runtime_context: str | None = None,
        word_budget: int | None = None,
        log_dir: str | Path | None = None,
        on_response: StepCallback | None = None,
        on_step: StepCallback | None = None,
    ) -> None:
        if max_steps <= 0:
            raise ValueError("max_steps must be positive")
        self.client = client
        self.gate = gate
        self.history = history
        self.context = context or ContextBlock()
        self.max_steps = max_steps
        self.output_limit = output_limit
        self.history_limit = history_limit
        self.history_window = history_window
        self.runtime_context = runtime_context
        self.word_budget = word_budget
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.on_response = on_response
        self.on_step = on_step

    def run(self, utterance: str, *, piped_input: str | None = None) -> TaskOutcome:
        system = build_system_prompt(
            self.context,
            self.history.recent(self.history_limit, max_age=self.history_window),
            runtime_context=self.runtime_context,
            word_budget=self.word_budget,
        )
        exchanges: list[tuple[str, str]] = []
        steps: list[TaskStep] = []

        for index in range(1, self.max_steps + 1):
            messages = build_messages(utterance, exchanges, piped_input=piped_input)
            response = self.client.send(Prompt(system=system, messages=messages))
            candidate = extract_command(response.text)
            step = TaskStep(
                index=index,
                messages=tuple(dict(message) for message in messages),
                response=response,
                candidate=candidate,
            )
            if self.on_response:
                self.on_response(step)

            if candidate is None:
                self._finalize(step, utterance)
                steps.append(step)
                # A reply cut off mid-fence has no candidate but did not finish the task.
                status: TaskStatus = "truncated" if response.truncated else "completed"
                return TaskOutcome(status=status, steps=steps)

            step.outcome = self.gate.process(candidate)
            self._finalize(step, utterance)
            steps.append(step)

            if step.outcome.state is GateState.CANCELLED:
                return TaskOutcome(status="cancelled", steps=steps)
            if step.outcome.state is GateState.COPIED:
                return TaskOutcome(status="copied", steps=steps)

            exchanges.append((response.text, self._observation(candidate, step.outcome)))

        LOGGER.warning(
            "task_step_limit_reached",
            extra={"max_steps": self.max_steps, "utterance": utterance},
        )
        raise TaskLimitError(self.max_steps, steps)

    def _finalize(self, step: TaskStep, utterance: str) -> None:
        turn = self._turn_for(step, utterance)
        self.history.append(turn)
        self._append_log(step, utterance=utterance, status=turn.status)
        if self.on_step:
            self.on_step(step)

    def _turn_for(self, step: TaskStep, utterance: str) -> ConversationTurn:
        outcome = step.outcome
        if outcome is None or step.candidate is None:
            return ConversationTurn(utterance=utterance, response=step.response.text)

        exit_code = outcome.result.returncode if outcome.result else None
        output: str | None = None
        if outcome.state is GateState.FAILED:
            output = outcome.error
        elif outcome.result is not None:
            output = self._format_result(outcome.result, limit=self.output_limit)
        return ConversationTurn(
            utterance=utterance,
            response=step.response.text,
            command=step.candidate.command,
            status=_TURN_STATUS[outcome.state],
            exit_code=exit_code,
            output=output,
        )

    def _observation(self, candidate: CommandCandidate, outcome: GateOutcome) -> str:
        if outcome.state is GateState.FAILED:
            return (
                f"Command `{candidate.command}` could not be started: {outcome.error}\n"
                "Decide the next step, or answer without a command if you are done."
            )
        result = outcome.result
        if result is None:
            return f"Command `{candidate.command}` produced no result."
        header = f"Command `{candidate.command}` exited with code {result.returncode}"
        if result.timed_out:
            header = f"{header} (timed out)"
        return (
            f"{header}.\n{self._format_result(result, limit=self.output_limit)}\n"
            "Decide the next step, or answer without a command if you are done."
        )

    @staticmethod
    def _format_result(result: ExecutionResult, *, limit: int) -> str:
        return (
            f"returncode={result.returncode}\n"
            f"duration={result.duration:.4f}s\n"
            f"stdout:\n{_trim(result.stdout, limit)}\n"
            f"stderr:\n{_trim(result.stderr, limit)}"
        )

    def _append_log(self, step: TaskStep, *, utterance: str, status: str) -> None:
        if self.log_dir is None:
            return
        outcome = step.outcome
        result = outcome.result if outcome else None
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "utterance": utterance,
            "model": getattr(self.client, "model", None),
            "shell": getattr(self.gate.shell, "name", self.gate.shell.__class__.__name__),
            "working_directory": self.gate.working_directory,
            "step_index": step.index,
            "status": status,
            "stop_reason": step.response.stop_reason,
            "command": step.candidate.command if step.candidate else None,
            "ignored_blocks": len(step.candidate.ignored_blocks) if step.candidate else 0,
            "returncode": result.returncode if result else None,
            "duration": result.duration if result else None,
            "timed_out": result.timed_out if result else False,
            "error": outcome.error if outcome else None,
        }
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
            with day_file.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")
        except OSError as exc:
            LOGGER.warning("session_log_unwritable", extra={"log_dir": str(self.log_dir), "error": str(exc)})


def _trim(text: str, limit: int) -> str:
    """Keep the head and tail of ``text`` so the total stays near ``limit`` characters."""
    if limit <= 0 or len(text) <= limit:
        return text
    head = limit // 2
    tail = limit - head
    omitted = len(text) - limit
    return f"{text[:head]}{TRUNCATION_MARKER.format(omitted=omitted)}{text[-tail:]}"
