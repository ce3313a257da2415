"""Run tai from a source checkout without installing the package."""

from __future__ import annotations

import sys
from collections.abc import Sequence
from pathlib import Path

SRC = Path(__file__).resolve().parent / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def run(argv: Sequence[str] | None = None) -> int:
    from tai.cli import main

    return main(argv)


if __name__ == "__main__":
    raise SystemExit(run())
