"""Command-line interface for tai."""

from __future__ import annotations

import argparse
import logging
import os
import platform
import select
import shutil
import sys
from collections.abc import Callable, Sequence
from datetime import timedelta
from pathlib import Path
from typing import TextIO, cast

from .agent.gate import ConfirmCommand, ExecutionGate
from .agent.loop import TaskLoop
from .config import (
    RECOGNIZED_KEYS,
    Settings,
    coerce_value,
    describe_settings,
    describe_value,
    load_config_file,
    load_settings,
    resolve_settings,
    set_config_value,
)
from .context import ContextBlock, assemble_context, split_existing_contexts
from .errors import ConfigError, GatewayError, TaiError
from .history import HistoryStore
from .llm.client import LLMClient, response_word_budget
from .paths import TaiPaths
from .render import Renderer
from .shell import create_shell_adapter

LOGGER = logging.getLogger(__name__)

CONFIRM_PROMPT = "Execute this command? [y/N/c] "
ENTRY_PROMPT = "> "
CONTINUATION_PROMPT = "... "
EXIT_WORDS = {"exit", "quit"}
TTY_PATH = "/dev/tty"

ReadLine = Callable[[str], str]


class CLIArgs(argparse.Namespace):
    message: list[str]
    context: str | None
    nocontext: bool
    clear_history: bool


class ConfigArgs(argparse.Namespace):
    key: str | None
    value: str | None
    global_: bool


def build_runtime_context(shell_name: str, working_directory: str | None) -> str:
    """Build startup orientation context for the model."""
    effective_cwd = working_directory or str(Path.cwd())
    return "\n".join(
        [
            "Runtime environment context:",
            f"- operating_system: {platform.system()} {platform.release()}",
            f"- architecture: {platform.machine()}",
            f"- os_name: {os.name}",
            f"- shell: {shell_name}",
            f"- working_directory: {effective_cwd}",
            "Use this context to orient command choices to this machine.",
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tai",
        description="Terminal AI assistant",
        epilog="Run 'tai config [key [value]] [--global]' to show or change settings.",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--context", help="Add the named context from the context directory")
    group.add_argument(
        "--nocontext",
        action="store_true",
        help="Send no local, named or global context with this request",
    )
    parser.add_argument(
        "--clear-history",
        action="store_true",
        help="Remove all stored conversation history",
    )
    parser.add_argument(
        "message",
        nargs="*",
        help="Request for the assistant; omit it to start an interactive session",
    )
    return parser


def build_config_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tai config", description="Show or change tai settings")
    parser.add_argument("key", nargs="?", help="Setting to show or change")
    parser.add_argument("value", nargs="?", help="New value for the setting")
    parser.add_argument(
        "--global",
        dest="global_",
        action="store_true",
        help="Read from or write to the global config file instead of the project file",
    )
    return parser


def configure_logging(environ: dict[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    level_name = env.get("TAI_LOG_LEVEL", "WARNING").upper()
    level = logging.getLevelName(level_name)
    logging.basicConfig(
        level=level if isinstance(level, int) else logging.WARNING,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    arguments = list(sys.argv[1:] if argv is None else argv)
    renderer = Renderer()
    try:
        if arguments and arguments[0] == "config":
            config_args = cast(ConfigArgs, build_config_parser().parse_args(arguments[1:]))
            return run_config(config_args, renderer)
        args = cast(CLIArgs, build_parser().parse_args(arguments))
        return run(args, renderer)
    except TaiError as exc:
        renderer.error(str(exc))
        return exc.exit_code
    except KeyboardInterrupt:
        renderer.error("Interrupted.")
        return 130
    except OSError as exc:
        LOGGER.error("cli_os_error", extra={"error": str(exc)})
        renderer.error(str(exc))
        return 1


def run(
    args: CLIArgs,
    renderer: Renderer,
    *,
    stdin: TextIO | None = None,
    paths: TaiPaths | None = None,
) -> int:
    stdin = stdin or sys.stdin
    paths = paths or TaiPaths.discover()
    settings = load_settings(paths)
    history = HistoryStore(paths.history_file, limit=settings.history_limit)
    utterance = " ".join(args.message).strip()

    if args.clear_history:
        history.clear()
        renderer.info("History cleared.")
        if not utterance:
            return 0

    context = assemble_context(
        settings,
        paths,
        context_name=args.context,
        nocontext=args.nocontext,
    )
    for warning in context.warnings:
        renderer.warning(warning)

    piped_input: str | None = None
    if not stdin.isatty():
        # Read once before any model call.
        piped_input = stdin.read()
        if not utterance:
            utterance, piped_input = piped_input.strip(), None
        if not utterance:
            LOGGER.info("empty_piped_input")
            return 0

    loop = build_task_loop(
        settings,
        paths,
        history,
        renderer,
        context=context,
        confirm=build_confirm(
            renderer,
            use_tty=not stdin.isatty(),
            timeout=settings.confirm_timeout,
        ),
    )
    LOGGER.debug(
        "session_started",
        extra={
            "contexts": context.labels,
            "shell": settings.shell,
            "provider": settings.provider,
            "model": settings.model,
        },
    )

    if utterance:
        loop.run(utterance, piped_input=piped_input)
        return 0
    return interactive_session(loop, renderer)


def build_task_loop(
    settings: Settings,
    paths: TaiPaths,
    history: HistoryStore,
    renderer: Renderer,
    *,
    context: ContextBlock,
    confirm: ConfirmCommand,
) -> TaskLoop:
    adapter = create_shell_adapter(settings.shell)
    working_directory = str(paths.cwd)
    gate = ExecutionGate(
        shell=adapter,
        confirm=confirm,
        working_directory=working_directory,
        command_timeout=settings.command_timeout,
        report_warning=renderer.warning,
    )
    window_minutes = settings.history_window_minutes
    return TaskLoop(
        client=LLMClient.from_settings(settings),
        gate=gate,
        history=history,
        context=context,
        max_steps=settings.max_steps,
        output_limit=settings.output_limit,
        history_limit=settings.history_limit,
        history_window=timedelta(minutes=window_minutes) if window_minutes else None,
        runtime_context=build_runtime_context(adapter.name, working_directory),
        word_budget=response_word_budget(shutil.get_terminal_size(fallback=(80, 50)).lines),
        log_dir=settings.log_dir or paths.log_dir,
        on_response=renderer.show_response,
        on_step=renderer.show_step,
    )


def interactive_session(
    loop: TaskLoop,
    renderer: Renderer,
    *,
    read_line: ReadLine = input,
) -> int:
    """Run entries until exit; the result is the highest exit code of any failed entry."""
    renderer.info("Enter a request and finish it with an empty line. Type 'exit' to quit.")
    exit_code = 0
    while True:
        utterance = read_entry(read_line)
        if utterance is None or utterance.lower() in EXIT_WORDS:
            return exit_code
        if not utterance:
            continue
        try:
            loop.run(utterance)
        except GatewayError as exc:
            if exc.kind == "auth":
                raise
            renderer.error(str(exc))
            exit_code = max(exit_code, exc.exit_code)
        except TaiError as exc:
            renderer.error(str(exc))
            exit_code = max(exit_code, exc.exit_code)


def read_entry(read_line: ReadLine = input) -> str | None:
    """Read lines until a blank one; ``None`` means input ended before anything was typed."""
    lines: list[str] = []
    prompt = ENTRY_PROMPT
    while True:
        try:
            line = read_line(prompt)
        except EOFError:
            return "\n".join(lines).strip() if lines else None
        if not line.strip():
            if lines:
                return "\n".join(lines).strip()
            continue
        if not lines and line.strip().lower() in EXIT_WORDS:
            return line.strip()
        lines.append(line.rstrip())
        prompt = CONTINUATION_PROMPT


def build_confirm(renderer: Renderer, *, use_tty: bool, timeout: float | None) -> ConfirmCommand:
    def confirm(command: str) -> str | None:
        LOGGER.debug("confirmation_requested", extra={"command_length": len(command)})
        if use_tty:
            try:
                with open(TTY_PATH, "r+", encoding="utf-8") as tty:
                    return prompt_line(CONFIRM_PROMPT, tty, tty, timeout=timeout)
            except OSError:
                renderer.warning("No terminal is available to confirm the command; cancelled.")
                return None
        if timeout is None:
            try:
                return input(CONFIRM_PROMPT)
            except EOFError:
                return None
        return prompt_line(CONFIRM_PROMPT, sys.stdin, sys.stdout, timeout=timeout)

    return confirm


def prompt_line(
    prompt: str,
    stream_in: TextIO,
    stream_out: TextIO,
    *,
    timeout: float | None = None,
) -> str | None:
    """Prompt and read one line; ``None`` on EOF or when ``timeout`` seconds pass."""
    stream_out.write(prompt)
    stream_out.flush()
    if timeout is not None and os.name != "nt":
        ready, _, _ = select.select([stream_in], [], [], timeout)
        if not ready:
            stream_out.write("\n")
            stream_out.flush()
            LOGGER.info("confirmation_timed_out", extra={"timeout_seconds": timeout})
            return None
    line = stream_in.readline()
    if not line:
        return None
    return line


def run_config(args: ConfigArgs, renderer: Renderer, *, paths: TaiPaths | None = None) -> int:
    paths = paths or TaiPaths.discover()
    if args.key is not None and args.key not in RECOGNIZED_KEYS:
        raise ConfigError(f"Unknown config key: {args.key}", key=args.key)

    if args.value is None:
        settings = _settings_for_display(paths, global_only=args.global_)
        if args.key is None:
            renderer.show_settings(describe_settings(settings))
        else:
            renderer.info(describe_value(args.key, settings.get(args.key)))
        return 0

    target = paths.global_config_file if args.global_ else paths.local_config_target
    value: object = args.value
    if args.key == "global_contexts":
        names = cast(list[str], coerce_value(args.key, args.value))
        present, missing = split_existing_contexts(names, paths)
        for name in missing:
            renderer.warning(
                f"Context '{name}' not found at {paths.named_context_file(name)}; skipping."
            )
        value = present
    stored = set_config_value(target, args.key, value)
    renderer.info(f"Set {args.key} = {describe_value(args.key, stored)} in {target}")
    return 0


def _settings_for_display(paths: TaiPaths, *, global_only: bool) -> Settings:
    if global_only:
        return resolve_settings({}, {}, load_config_file(paths.global_config_file))
    return load_settings(paths)


if __name__ == "__main__":
    raise SystemExit(main())
