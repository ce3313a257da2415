"""Console rendering for model replies, commands and results."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape

from tai.agent.models import GateState, TaskStep


class Renderer:
    """Writes prose and results to stdout; warnings and errors go to stderr."""

    def __init__(self, console: Console | None = None, err_console: Console | None = None) -> None:
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)

    def show_response(self, step: TaskStep) -> None:
        text = step.response.text.strip()
        if text:
            self.console.print(Markdown(text))
        else:
            self.console.print("[dim](empty response)[/dim]")
        if step.response.truncated:
            self.warning(
                "The reply was cut off at the max_tokens limit; any unfinished command was not"
                " offered. Raise it with 'tai config max_tokens <n>'."
            )
        if step.candidate and step.candidate.ignored_blocks:
            self.console.print(
                f"[dim]Only the first command is offered; {len(step.candidate.ignored_blocks)}"
                " other block(s) were treated as explanation.[/dim]"
            )

    def show_step(self, step: TaskStep) -> None:
        outcome = step.outcome
        if outcome is None:
            return
        if outcome.state is GateState.CANCELLED:
            self.console.print("[dim]Command not executed.[/dim]")
            return
        if outcome.state is GateState.COPIED:
            if outcome.copied:
                self.console.print("[green]Command copied to clipboard.[/green]")
            return
        if outcome.state is GateState.FAILED:
            # the gate already reported the spawn error as a warning
            return

        result = outcome.result
        if result is None:
            return
        if result.stdout:
            self.console.print(result.stdout.rstrip("\n"), markup=False, highlight=False)
        if result.stderr:
            self.err_console.print(result.stderr.rstrip("\n"), markup=False, highlight=False)
        if result.timed_out:
            self.warning(f"Command timed out after {result.duration:.1f}s.")
        elif result.returncode != 0:
            self.console.print(f"[dim]exit code {result.returncode}[/dim]")

    def show_settings(self, rows: list[tuple[str, str]]) -> None:
        width = max((len(key) for key, _ in rows), default=0)
        for key, value in rows:
            self.console.print(f"{key.ljust(width)}  {escape(value)}", highlight=False)

    def info(self, message: str) -> None:
        self.console.print(escape(message), highlight=False)

    def warning(self, message: str) -> None:
        self.err_console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]Error:[/red] {escape(message)}")
