"""Find the actionable shell command in a model response."""

from __future__ import annotations

import re
from dataclasses import dataclass

from tai.agent.models import CommandCandidate

SHELL_LANGUAGES = frozenset(
    {"", "bash", "sh", "shell", "zsh", "cmd", "bat", "powershell", "pwsh", "ps1"}
)

# Opening fence, optional info string, body, closing fence at the same indent.
# Fences nested in list items are indented, so any indent is accepted.
_FENCE_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^\n`]*)\n"
    r"(?P<body>.*?)\n?"
    r"^(?P=indent)(?P=fence)[ \t]*$",
    re.DOTALL | re.MULTILINE,
)


@dataclass(slots=True, frozen=True)
class FencedBlock:
    language: str
    body: str
    start: int
    end: int


def iter_fenced_blocks(text: str) -> list[FencedBlock]:
    blocks: list[FencedBlock] = []
    for match in _FENCE_PATTERN.finditer(text):
        info = match.group("info").strip()
        language = info.split()[0].lower() if info else ""
        indent = match.group("indent")
        body = match.group("body")
        start = match.start("body")
        if indent and body.startswith(indent):
            start += len(indent)
        blocks.append(
            FencedBlock(
                language=language,
                body=_strip_indent(body, indent),
                start=start,
                end=match.end("body"),
            )
        )
    return blocks


def _strip_indent(body: str, indent: str) -> str:
    if not indent:
        return body
    return "\n".join(
        line[len(indent) :] if line.startswith(indent) else line.lstrip(" \t")
        for line in body.split("\n")
    )


def find_command_blocks(text: str) -> list[FencedBlock]:
    """Return the fenced blocks that hold a shell command, in source order."""
    return [
        block
        for block in iter_fenced_blocks(text)
        if block.language in SHELL_LANGUAGES and block.body.strip()
    ]


def extract_command(text: str) -> CommandCandidate | None:
    """Return the first shell block as the candidate; later ones stay explanatory."""
    blocks = find_command_blocks(text)
    if not blocks:
        return None
    first, rest = blocks[0], blocks[1:]
    return CommandCandidate(
        command=first.body,
        language=first.language,
        start=first.start,
        end=first.end,
        ignored_blocks=tuple(block.body for block in rest),
    )
