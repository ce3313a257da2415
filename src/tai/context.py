"""Assembly of local, named and global context documents."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from tai.config import Settings
from tai.errors import ContextLoadError
from tai.paths import CONTEXT_SUFFIX, TaiPaths

LOGGER = logging.getLogger(__name__)

ContextSource = Literal["local", "named", "global"]


@dataclass(slots=True)
class ContextSegment:
    name: str
    source: ContextSource
    text: str

    @property
    def label(self) -> str:
        if self.source == "global":
            return f"global:{self.name}"
        return self.name


@dataclass(slots=True)
class ContextBlock:
    """Ordered context segments plus any warnings raised while loading them."""

    segments: list[ContextSegment] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.segments

    @property
    def labels(self) -> list[str]:
        return [segment.label for segment in self.segments]

    def render(self) -> str:
        if not self.segments:
            return ""
        parts = ["## Additional Context", ""]
        for segment in self.segments:
            parts.append(f"### Context from {segment.label}")
            parts.append("")
            parts.append(segment.text.strip())
            parts.append("")
        return "\n".join(parts).rstrip() + "\n"


def assemble_context(
    settings: Settings,
    paths: TaiPaths,
    *,
    context_name: str | None = None,
    nocontext: bool = False,
) -> ContextBlock:
    """Build the context block: local, then the explicit name, then the global list."""
    block = ContextBlock()
    if nocontext:
        return block

    local_file = paths.local_context_file
    if local_file is not None:
        _append_segment(block, "local", "local", local_file)

    loaded: set[str] = set()
    if context_name:
        _append_named(block, paths, context_name, "named", loaded)
    for name in settings.global_contexts:
        _append_named(block, paths, name, "global", loaded)

    LOGGER.debug(
        "context_assembled",
        extra={"segments": block.labels, "warnings": len(block.warnings)},
    )
    return block


def split_existing_contexts(names: Iterable[str], paths: TaiPaths) -> tuple[list[str], list[str]]:
    """Partition context names into those with files on disk and those without."""
    present: list[str] = []
    missing: list[str] = []
    for name in names:
        if paths.named_context_file(name).is_file():
            present.append(name)
        else:
            missing.append(name)
    return present, missing


def read_context_file(name: str, path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        reason = exc.strerror if isinstance(exc, OSError) and exc.strerror else str(exc)
        raise ContextLoadError(name, str(path), reason) from exc


def _append_named(
    block: ContextBlock,
    paths: TaiPaths,
    name: str,
    source: ContextSource,
    loaded: set[str],
) -> None:
    if name in loaded:
        return
    loaded.add(name)
    path = paths.named_context_file(name)
    if not path.is_file():
        message = f"Context '{name}' not found ({name}{CONTEXT_SUFFIX} in {paths.context_dir})"
        LOGGER.warning("context_missing", extra={"context": name, "path": str(path)})
        block.warnings.append(message)
        return
    _append_segment(block, name, source, path)


def _append_segment(block: ContextBlock, name: str, source: ContextSource, path: Path) -> None:
    try:
        text = read_context_file(name, path)
    except ContextLoadError as exc:
        LOGGER.warning("context_unreadable", extra={"context": name, "path": exc.path})
        block.warnings.append(str(exc))
        return
    block.segments.append(ContextSegment(name=name, source=source, text=text))
