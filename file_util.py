"""Crash-safe writes for the PRGate state file."""

from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, data: str) -> None:
    """Replace *path* with *data* so readers never see a half-written file.

    If the process dies mid-write the previous contents survive, and the
    scratch file is removed on any failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    scratch = tempfile.NamedTemporaryFile(  # noqa: SIM115
        "w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    )
    try:
        with scratch:
            scratch.write(data)
            scratch.flush()
            os.fsync(scratch.fileno())
        os.replace(scratch.name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(scratch.name)
        raise
