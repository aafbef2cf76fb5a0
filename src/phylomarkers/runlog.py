from __future__ import annotations

import os
import platform
from datetime import datetime, timezone
from pathlib import Path


def now_utc_iso() -> str:
    fixed = os.environ.get("PHYLOMARKERS_FIXED_TIMESTAMP_UTC")
    if fixed:
        return fixed
    return datetime.now(tz=timezone.utc).isoformat()


def run_stamp() -> str:
    """Day stamp of the run directory name (DDMMYYYY)."""
    fixed = os.environ.get("PHYLOMARKERS_FIXED_RUN_STAMP")
    if fixed:
        return fixed
    return datetime.now().strftime("%d%m%Y")


def host_metadata(worker_bound: int) -> dict[str, object]:
    return {
        "run_timestamp_utc": now_utc_iso(),
        "host": platform.node(),
        "platform": platform.platform(),
        "python_version": platform.python_version(),
        "cpu_count": os.cpu_count(),
        "worker_bound": worker_bound,
    }


class RunLog:
    """Progress messages echoed to stdout and appended to the run log file."""

    def __init__(self, path: str | Path | None = None, *, echo: bool = True) -> None:
        self.path = Path(path) if path is not None else None
        self.echo = echo
        self.warnings: list[str] = []
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def attach(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _write(self, level: str, message: str) -> None:
        line = f"[{level}] {message}"
        if self.echo:
            print(line, flush=True)
        if self.path is not None:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(f"{now_utc_iso()}\t{line}\n")
                handle.flush()

    def info(self, message: str) -> None:
        self._write("INFO", message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        self._write("WARNING", message)

    def error(self, message: str) -> None:
        self._write("ERROR", message)
