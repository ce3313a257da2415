"""Persistent, bounded conversation history."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Literal, cast

from filelock import FileLock

LOGGER = logging.getLogger(__name__)

TurnStatus = Literal["answered", "executed", "cancelled", "copied", "failed"]
VALID_STATUSES: set[TurnStatus] = {"answered", "executed", "cancelled", "copied", "failed"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ConversationTurn:
    """One utterance and the model's reply, with any execution result."""

    utterance: str
    response: str
    command: str | None = None
    status: TurnStatus = "answered"
    exit_code: int | None = None
    output: str | None = None
    timestamp: str = field(default_factory=lambda: _utc_now().isoformat())

    @property
    def created_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: object) -> ConversationTurn:
        if not isinstance(raw, dict):
            raise ValueError("history entry must be an object")
        utterance = raw.get("utterance")
        response = raw.get("response")
        timestamp = raw.get("timestamp")
        if not isinstance(utterance, str) or not isinstance(response, str):
            raise ValueError("history entry is missing utterance/response")
        if not isinstance(timestamp, str):
            raise ValueError("history entry is missing a timestamp")
        if datetime.fromisoformat(timestamp).tzinfo is None:
            raise ValueError("history timestamp must carry a UTC offset")
        status = raw.get("status", "answered")
        if status not in VALID_STATUSES:
            raise ValueError(f"unknown history status: {status!r}")
        command = raw.get("command")
        exit_code = raw.get("exit_code")
        output = raw.get("output")
        return cls(
            utterance=utterance,
            response=response,
            command=command if isinstance(command, str) else None,
            status=cast(TurnStatus, status),
            exit_code=exit_code if isinstance(exit_code, int) else None,
            output=output if isinstance(output, str) else None,
            timestamp=timestamp,
        )


class RecentTurns:
    """Lazy view of the newest turns; reads on first iteration and can be iterated again."""

    def __init__(
        self,
        loader: Callable[[], list[ConversationTurn]],
        *,
        limit: int,
        max_age: timedelta | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._loader = loader
        self._limit = limit
        self._max_age = max_age
        self._now = now
        self._turns: list[ConversationTurn] | None = None

    def _materialize(self) -> list[ConversationTurn]:
        if self._turns is None:
            if self._limit <= 0:
                self._turns = []
                return self._turns
            try:
                turns = self._loader()
            except OSError as exc:
                LOGGER.warning("history_unreadable", extra={"error": str(exc)})
                turns = []
            if self._max_age is not None:
                cutoff = self._now() - self._max_age
                turns = [turn for turn in turns if turn.created_at >= cutoff]
            self._turns = turns[-self._limit :]
        return self._turns

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(self._materialize())

    def __len__(self) -> int:
        return len(self._materialize())

    def __bool__(self) -> bool:
        return bool(self._materialize())


class HistoryStore:
    """Append-only JSON Lines store capped at ``limit`` turns (oldest evicted first).

    Every mutation runs under an exclusive advisory lock on ``<path>.lock``. An append
    is a single ``write`` of one complete line followed by ``fsync``; eviction and clearing
    replace the file atomically. Torn or invalid lines are skipped when reading and are
    compacted away on the next mutation.
    """

    def __init__(self, path: Path, *, limit: int = 10) -> None:
        if limit <= 0:
            raise ValueError("history limit must be positive")
        self.path = path
        self.limit = limit
        self.lock_path = path.with_name(f"{path.name}.lock")

    def _lock(self) -> FileLock:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_path))

    def append(self, turn: ConversationTurn) -> None:
        line = json.dumps(turn.to_dict(), ensure_ascii=False) + "\n"
        with self._lock():
            turns, clean = self._load()
            if clean and len(turns) < self.limit:
                self._append_line(line)
                evicted = 0
            else:
                kept = [*turns, turn][-self.limit :]
                evicted = len(turns) + 1 - len(kept)
                self._rewrite(kept)
        LOGGER.debug(
            "history_appended",
            extra={"path": str(self.path), "status": turn.status, "evicted": evicted},
        )

    def recent(self, n: int, *, max_age: timedelta | None = None) -> RecentTurns:
        return RecentTurns(self.all, limit=n, max_age=max_age)

    def all(self) -> list[ConversationTurn]:
        turns, _ = self._load()
        return turns

    def count(self) -> int:
        return len(self.all())

    def clear(self) -> None:
        with self._lock():
            self._rewrite([])
        LOGGER.info("history_cleared", extra={"path": str(self.path)})

    def _load(self) -> tuple[list[ConversationTurn], bool]:
        if not self.path.exists():
            return [], True
        raw = self.path.read_text(encoding="utf-8", errors="replace")
        turns: list[ConversationTurn] = []
        clean = raw == "" or raw.endswith("\n")
        for line_number, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                turns.append(ConversationTurn.from_dict(json.loads(line)))
            except ValueError as exc:
                clean = False
                LOGGER.warning(
                    "history_line_skipped",
                    extra={"path": str(self.path), "line": line_number, "error": str(exc)},
                )
        return turns, clean

    def _append_line(self, line: str) -> None:
        payload = line.encode("utf-8")
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        try:
            os.write(fd, payload)
            os.fsync(fd)
        finally:
            os.close(fd)

    def _rewrite(self, turns: list[ConversationTurn]) -> None:
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for turn in turns:
                    fh.write(json.dumps(turn.to_dict(), ensure_ascii=False) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
