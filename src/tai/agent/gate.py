"""Confirmation gate in front of every proposed command."""

from __future__ import annotations

import logging
from collections.abc import Callable

import pyperclip

from tai.agent.models import CommandCandidate, Decision, ExecutionResult, GateOutcome, GateState
from tai.errors import ExecutionError
from tai.shell import ShellAdapter

LOGGER = logging.getLogger(__name__)

# Returns the raw answer line, or None when no answer arrived (EOF, timeout).
ConfirmCommand = Callable[[str], str | None]
CopyCommand = Callable[[str], bool]
ReportWarning = Callable[[str], None]


def parse_decision(answer: str | None) -> Decision:
    """Map a confirmation answer to a decision; anything unrecognized cancels."""
    if not answer:
        return Decision.CANCEL
    first = answer.strip()[:1].lower()
    if first == "y":
        return Decision.EXECUTE
    if first == "c":
        return Decision.COPY
    return Decision.CANCEL


def copy_to_clipboard(text: str) -> bool:
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as exc:
        LOGGER.warning("clipboard_unavailable", extra={"error": str(exc)})
        return False
    return True


class ExecutionGate:
    """Resolves one candidate at a time: Proposed -> Executing/Cancelled/Copied."""

    def __init__(
        self,
        *,
        shell: ShellAdapter,
        confirm: ConfirmCommand,
        copy: CopyCommand = copy_to_clipboard,
        working_directory: str | None = None,
        command_timeout: float | None = None,
        report_warning: ReportWarning | None = None,
    ) -> None:
        self.shell = shell
        self.confirm = confirm
        self.copy = copy
        self.working_directory = working_directory
        self.command_timeout = command_timeout
        self.report_warning = report_warning
        self.state: GateState | None = None
        self._resolving = False

    def process(self, candidate: CommandCandidate) -> GateOutcome:
        if self._resolving:
            raise RuntimeError("execution gate is already resolving a command")
        self._resolving = True
        try:
            return self._resolve(candidate)
        finally:
            self._resolving = False

    def _resolve(self, candidate: CommandCandidate) -> GateOutcome:
        command = candidate.command
        self._transition(GateState.PROPOSED)
        decision = parse_decision(self.confirm(command))
        LOGGER.info("gate_decision", extra={"decision": decision.value})

        if decision is Decision.CANCEL:
            self._transition(GateState.CANCELLED)
            return GateOutcome(state=GateState.CANCELLED, command=command)

        if decision is Decision.COPY:
            copied = self.copy(command)
            if not copied:
                self._warn("Failed to copy the command to the clipboard.")
            self._transition(GateState.COPIED)
            return GateOutcome(state=GateState.COPIED, command=command, copied=copied)

        self._transition(GateState.EXECUTING)
        command_result = self.shell.execute(
            command,
            cwd=self.working_directory,
            timeout=self.command_timeout,
        )
        result = ExecutionResult(
            stdout=command_result.stdout,
            stderr=command_result.stderr,
            returncode=command_result.returncode,
            duration=command_result.duration_seconds,
            timed_out=command_result.timed_out,
        )
        if not command_result.executed:
            error = ExecutionError(command, command_result.spawn_error or command_result.stderr)
            self._warn(str(error))
            self._transition(GateState.FAILED)
            return GateOutcome(
                state=GateState.FAILED,
                command=command,
                result=result,
                error=str(error),
            )

        self._transition(GateState.COMPLETED)
        return GateOutcome(state=GateState.COMPLETED, command=command, result=result)

    def _transition(self, state: GateState) -> None:
        LOGGER.debug(
            "gate_transition",
            extra={"from_state": self.state.value if self.state else None, "to_state": state.value},
        )
        self.state = state

    def _warn(self, message: str) -> None:
        LOGGER.warning("gate_warning", extra={"detail": message})
        if self.report_warning:
            self.report_warning(message)
