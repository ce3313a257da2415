from __future__ import annotations

import io
import json
import os
from pathlib import Path
from types import SimpleNamespace

import pytest
import toml

from tai import cli
from tai.agent.models import ModelResponse
from tai.errors import GatewayError, TaskLimitError
from tai.llm.client import Prompt
from tai.shell import CommandResult


class TtyInput(io.StringIO):
    def isatty(self) -> bool:
        return True


class FakeShell:
    name = "fake"

    def __init__(self) -> None:
        self.commands: list[str] = []

    def execute(self, command: str, *, cwd=None, timeout=None) -> CommandResult:
        self.commands.append(command)
        return CommandResult(command=command, shell=self.name, returncode=0, stdout="done\n", stderr="")


class FakeClient:
    model = "fake-model"

    def __init__(self, replies: list[str]) -> None:
        self.replies = list(replies)
        self.prompts: list[Prompt] = []

    def send(self, prompt: Prompt) -> ModelResponse:
        self.prompts.append(prompt)
        return ModelResponse(text=self.replies.pop(0) if self.replies else "Done.")


@pytest.fixture
def workspace(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SimpleNamespace:
    project = tmp_path / "project"
    project.mkdir()
    global_dir = tmp_path / "global"
    for key in list(os.environ):
        if key.startswith("TAI_") or key in {"ANTHROPIC_API_KEY", "OPENAI_API_KEY"}:
            monkeypatch.delenv(key)
    monkeypatch.setenv("TAI_CONFIG_DIR", str(global_dir))
    monkeypatch.chdir(project)
    monkeypatch.setattr("tai.paths.find_git_root", lambda _cwd: None)
    monkeypatch.setattr("sys.stdin", TtyInput(""))
    return SimpleNamespace(project=project, global_dir=global_dir)


def _install_fakes(monkeypatch: pytest.MonkeyPatch, replies: list[str]) -> tuple[FakeClient, FakeShell]:
    client = FakeClient(replies)
    shell = FakeShell()
    monkeypatch.setattr(cli, "LLMClient", SimpleNamespace(from_settings=lambda _settings: client))
    monkeypatch.setattr(cli, "create_shell_adapter", lambda _name: shell)
    return client, shell


def _history_lines(workspace: SimpleNamespace) -> list[dict[str, object]]:
    path = workspace.global_dir / "history.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args([])
    assert args.message == []
    assert args.context is None
    assert args.nocontext is False
    assert args.clear_history is False


def test_parser_collects_message_words() -> None:
    args = cli.build_parser().parse_args(["--context", "k8s", "list", "pods"])
    assert args.message == ["list", "pods"]
    assert args.context == "k8s"


def test_parser_rejects_context_with_nocontext() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["--context", "k8s", "--nocontext", "hi"])


def test_main_declined_command_exits_zero(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    command = "curl -I https://google.com | grep -i 'cache-control'"
    client, shell = _install_fakes(monkeypatch, [f"Try this:\n```bash\n{command}\n```"])
    prompts: list[str] = []

    def fake_input(prompt: str = "") -> str:
        prompts.append(prompt)
        return "n"

    monkeypatch.setattr("builtins.input", fake_input)

    exit_code = cli.main(["whats", "the", "cache-control", "setting", "of", "google.com"])

    assert exit_code == 0
    assert prompts == [cli.CONFIRM_PROMPT]
    assert shell.commands == []
    assert len(client.prompts) == 1
    assert client.prompts[0].messages[0]["content"] == "whats the cache-control setting of google.com"
    assert [entry["status"] for entry in _history_lines(workspace)] == ["cancelled"]
    assert "Command not executed." in capsys.readouterr().out


def test_main_confirmed_command_runs_in_working_directory(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    client, shell = _install_fakes(monkeypatch, ["```bash\nmake build\n```", "Build finished."])
    monkeypatch.setattr("builtins.input", lambda _prompt="": "y")

    assert cli.main(["build", "it"]) == 0
    assert shell.commands == ["make build"]
    assert [entry["status"] for entry in _history_lines(workspace)] == ["executed", "answered"]
    assert "working_directory: " + str(workspace.project.resolve()) in client.prompts[0].system
    assert "done" in capsys.readouterr().out


def test_main_eof_on_confirmation_cancels(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _client, shell = _install_fakes(monkeypatch, ["```bash\nrm -rf build\n```"])

    def raise_eof(_prompt: str = "") -> str:
        raise EOFError

    monkeypatch.setattr("builtins.input", raise_eof)

    assert cli.main(["clean"]) == 0
    assert shell.commands == []


def test_main_missing_api_key_exits_with_gateway_code(
    workspace: SimpleNamespace,
    capsys: pytest.CaptureFixture[str],
) -> None:
    exit_code = cli.main(["hello"])

    assert exit_code == GatewayError.exit_code
    assert "ANTHROPIC_API_KEY" in capsys.readouterr().err
    assert not (workspace.global_dir / "history.jsonl").exists()


def test_main_invalid_config_exits_before_model_call(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    client, _shell = _install_fakes(monkeypatch, ["unused"])
    monkeypatch.setenv("TAI_TEMPERATURE", "5")

    assert cli.main(["hello"]) == 2
    assert client.prompts == []
    assert "temperature" in capsys.readouterr().err


def test_main_step_limit_exits_with_task_limit_code(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_fakes(monkeypatch, ["```bash\necho again\n```"] * 3)
    monkeypatch.setattr("builtins.input", lambda _prompt="": "y")
    monkeypatch.setenv("TAI_MAX_STEPS", "2")

    assert cli.main(["repeat"]) == TaskLimitError.exit_code
    assert "Step limit reached (2/2)" in capsys.readouterr().err
    assert len(_history_lines(workspace)) == 2


def test_main_piped_input_becomes_part_of_utterance(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, _shell = _install_fakes(monkeypatch, ["Two lines."])
    monkeypatch.setattr("sys.stdin", io.StringIO("alpha\nbeta\n"))

    assert cli.main(["count", "the", "lines"]) == 0
    first = client.prompts[0].messages[0]["content"]
    assert first.startswith("count the lines")
    assert "Input:\n```\nalpha\nbeta\n```" in first


def test_main_warns_when_reply_is_cut_off(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _client, shell = _install_fakes(monkeypatch, [])
    cut_off = ModelResponse(text="Run:\n```bash\nfind / -name '*.log' | xargs", stop_reason="max_tokens")
    monkeypatch.setattr(
        cli, "LLMClient", SimpleNamespace(from_settings=lambda _settings: SimpleNamespace(send=lambda _p: cut_off))
    )

    assert cli.main(["find", "logs"]) == 0
    assert shell.commands == []
    assert "cut off at the max_tokens limit" in capsys.readouterr().err


def test_main_empty_piped_input_exits_quietly(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, _shell = _install_fakes(monkeypatch, ["unused"])
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    assert cli.main([]) == 0
    assert client.prompts == []
    assert not (workspace.global_dir / "history.jsonl").exists()


def test_main_clear_history(workspace: SimpleNamespace, capsys: pytest.CaptureFixture[str]) -> None:
    workspace.global_dir.mkdir()
    history = workspace.global_dir / "history.jsonl"
    history.write_text(
        '{"utterance": "a", "response": "b", "timestamp": "2024-01-01T00:00:00+00:00"}\n',
        encoding="utf-8",
    )

    assert cli.main(["--clear-history"]) == 0
    assert history.read_text(encoding="utf-8") == ""
    assert "History cleared." in capsys.readouterr().out


def test_main_warns_about_missing_context(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    client, _shell = _install_fakes(monkeypatch, ["Hi."])
    (workspace.project / ".context.tai").write_text("project uses poetry", encoding="utf-8")

    assert cli.main(["--context", "absent", "hello"]) == 0
    assert "Context 'absent' not found" in capsys.readouterr().err
    assert "project uses poetry" in client.prompts[0].system


def test_config_set_writes_local_file(workspace: SimpleNamespace, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["config", "temperature", "0.4"]) == 0

    assert toml.load(workspace.project / ".config.tai") == {"temperature": 0.4}
    assert "Set temperature = 0.4" in capsys.readouterr().out


def test_config_show_masks_api_key(
    workspace: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-secret")

    assert cli.main(["config"]) == 0
    out = capsys.readouterr().out
    assert "anthropic_api_key" in out
    assert "***" in out
    assert "sk-secret" not in out


def test_config_show_masks_secret_like_extra_keys(
    workspace: SimpleNamespace,
    capsys: pytest.CaptureFixture[str],
) -> None:
    (workspace.project / ".config.tai").write_text(
        'github_token = "ghp-secret"\nteam = "infra"\n', encoding="utf-8"
    )

    assert cli.main(["config"]) == 0
    out = capsys.readouterr().out
    assert "github_token" in out
    assert "ghp-secret" not in out
    assert "infra" in out


def test_config_single_key_and_global_scope(
    workspace: SimpleNamespace,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert cli.main(["config", "model", "claude-global", "--global"]) == 0
    (workspace.project / ".config.tai").write_text('model = "claude-local"\n', encoding="utf-8")
    capsys.readouterr()

    assert cli.main(["config", "model"]) == 0
    assert capsys.readouterr().out.strip() == "claude-local"
    assert cli.main(["config", "model", "--global"]) == 0
    assert capsys.readouterr().out.strip() == "claude-global"


def test_config_unknown_key_is_config_error(
    workspace: SimpleNamespace,
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert cli.main(["config", "colour"]) == 2
    assert "Unknown config key: colour" in capsys.readouterr().err


def test_config_global_contexts_drops_missing_names(
    workspace: SimpleNamespace,
    capsys: pytest.CaptureFixture[str],
) -> None:
    context_dir = workspace.global_dir / "context"
    context_dir.mkdir(parents=True)
    (context_dir / "k8s.context.tai").write_text("cluster", encoding="utf-8")

    assert cli.main(["config", "global_contexts", "k8s,ghost", "--global"]) == 0

    assert toml.load(workspace.global_dir / "config.tai") == {"global_contexts": ["k8s"]}
    assert "Context 'ghost' not found" in capsys.readouterr().err


def test_read_entry_reads_until_blank_line() -> None:
    lines = iter(["", "first line", "second line", ""])

    assert cli.read_entry(lambda _prompt: next(lines)) == "first line\nsecond line"


def test_read_entry_returns_none_on_eof() -> None:
    def raise_eof(_prompt: str) -> str:
        raise EOFError

    assert cli.read_entry(raise_eof) is None


def test_read_entry_exit_word_ends_immediately() -> None:
    lines = iter(["quit"])

    assert cli.read_entry(lambda _prompt: next(lines)) == "quit"


def test_interactive_session_runs_entries_until_exit(capsys: pytest.CaptureFixture[str]) -> None:
    utterances: list[str] = []

    class FakeLoop:
        def run(self, utterance: str) -> None:
            utterances.append(utterance)
            if utterance == "offline":
                raise GatewayError("Model request transport error: down", kind="network")

    lines = iter(["list files", "", "offline", "", "exit"])
    renderer = cli.Renderer()

    exit_code = cli.interactive_session(FakeLoop(), renderer, read_line=lambda _prompt: next(lines))

    assert exit_code == GatewayError.exit_code
    assert utterances == ["list files", "offline"]
    assert "transport error" in capsys.readouterr().err


def test_interactive_session_exits_zero_when_every_entry_succeeds() -> None:
    class FakeLoop:
        def run(self, _utterance: str) -> None:
            return None

    lines = iter(["list files", ""])

    assert cli.interactive_session(FakeLoop(), cli.Renderer(), read_line=lambda _prompt: next(lines)) == 0


def test_interactive_session_reports_highest_exit_code(capsys: pytest.CaptureFixture[str]) -> None:
    class FakeLoop:
        def run(self, utterance: str) -> None:
            if utterance == "offline":
                raise GatewayError("Model request transport error: down", kind="network")
            raise TaskLimitError(2, [])

    lines = iter(["offline", "", "keep going", "", "quit"])

    exit_code = cli.interactive_session(FakeLoop(), cli.Renderer(), read_line=lambda _prompt: next(lines))

    assert exit_code == TaskLimitError.exit_code
    err = capsys.readouterr().err
    assert "transport error" in err
    assert "Step limit reached (2/2)" in err


def test_interactive_session_stops_on_auth_error() -> None:
    class FakeLoop:
        def run(self, _utterance: str) -> None:
            raise GatewayError("bad key", kind="auth")

    lines = iter(["hello", ""])

    with pytest.raises(GatewayError):
        cli.interactive_session(FakeLoop(), cli.Renderer(), read_line=lambda _prompt: next(lines))


@pytest.mark.skipif(os.name == "nt", reason="select() needs a POSIX pipe")
def test_prompt_line_times_out_to_none() -> None:
    read_fd, write_fd = os.pipe()
    out = io.StringIO()
    try:
        with os.fdopen(read_fd, "r") as stream_in:
            assert cli.prompt_line("Execute? ", stream_in, out, timeout=0.05) is None
    finally:
        os.close(write_fd)
    assert out.getvalue() == "Execute? \n"


def test_prompt_line_reads_answer() -> None:
    out = io.StringIO()

    assert cli.prompt_line("Execute? ", io.StringIO("y\n"), out) == "y\n"
    assert cli.prompt_line("Execute? ", io.StringIO(""), out) is None


def test_build_runtime_context_contains_shell_and_directory() -> None:
    context = cli.build_runtime_context("sh", "/tmp/work")

    assert "Runtime environment context:" in context
    assert "shell: sh" in context
    assert "working_directory: /tmp/work" in context
