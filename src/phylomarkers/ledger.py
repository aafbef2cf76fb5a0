from __future__ import annotations

import copy
import hashlib
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import pandas as pd


def sha256_file(path: str | Path) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class StageCounts:
    examined: int
    passed: int
    failed: int
    inconclusive: int = 0
    skipped: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if min(self.examined, self.passed, self.failed, self.inconclusive) < 0:
            raise ValueError("Stage counts must be non-negative.")
        if self.passed + self.failed + self.inconclusive != self.examined:
            raise ValueError(
                "passed + failed + inconclusive must equal examined "
                f"({self.passed}+{self.failed}+{self.inconclusive} != {self.examined})."
            )

    @property
    def survivors(self) -> int:
        return self.passed + self.inconclusive

    def to_dict(self) -> dict[str, Any]:
        return {
            "examined": self.examined,
            "passed": self.passed,
            "failed": self.failed,
            "inconclusive": self.inconclusive,
            "survivors": self.survivors,
            "skipped": self.skipped,
        }


class FilteringLedger:
    """Append-only record of per-stage filtering counts.

    The survivor series is non-increasing: a stage may never report more
    survivors than the previous stage left.
    """

    def __init__(self) -> None:
        self._stages: "OrderedDict[str, StageCounts]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[tuple[str, StageCounts]]:
        return iter(self._stages.items())

    def __contains__(self, stage: str) -> bool:
        return stage in self._stages

    def __getitem__(self, stage: str) -> StageCounts:
        return self._stages[stage]

    @property
    def last_survivors(self) -> int | None:
        if not self._stages:
            return None
        return next(reversed(self._stages.values())).survivors

    def record(self, stage: str, counts: StageCounts) -> None:
        if stage in self._stages:
            raise ValueError(f"Stage '{stage}' is already recorded in the ledger.")
        previous = self.last_survivors
        if previous is not None and counts.examined > previous:
            raise ValueError(
                f"Stage '{stage}' examined {counts.examined} loci but only {previous} survived "
                "the previous stage."
            )
        self._stages[stage] = counts

    def snapshot(self) -> "FilteringLedger":
        return copy.deepcopy(self)

    def survivor_series(self) -> list[int]:
        return [counts.survivors for counts in self._stages.values()]

    def stage_names(self) -> list[str]:
        return list(self._stages)

    def to_records(self) -> list[dict[str, Any]]:
        return [{"stage": name, **counts.to_dict()} for name, counts in self._stages.items()]

    def to_frame(self) -> pd.DataFrame:
        columns = ["stage", "examined", "passed", "failed", "inconclusive", "survivors", "skipped"]
        return pd.DataFrame(self.to_records(), columns=columns)

    def render(self) -> str:
        if not self._stages:
            return "(no stages recorded)"
        width = max(len(name) for name in self._stages)
        lines = []
        for name, counts in self._stages.items():
            line = (
                f"{name.ljust(width)}  examined={counts.examined:<5d} passed={counts.passed:<5d} "
                f"failed={counts.failed:<5d} inconclusive={counts.inconclusive:<5d} "
                f"survivors={counts.survivors}"
            )
            if counts.skipped:
                line += "  [skipped]"
            lines.append(line)
        return "\n".join(lines)


class FileManifest:
    """Ordered logical-name to path registry for produced artifacts."""

    kind = "output"

    def __init__(self) -> None:
        self._entries: "OrderedDict[str, Path]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __getitem__(self, name: str) -> Path:
        return self._entries[name]

    def add(self, name: str, path: str | Path) -> Path:
        path = Path(path)
        self._entries[name] = path
        return path

    def items(self) -> list[tuple[str, Path]]:
        return list(self._entries.items())

    def to_frame(self, relative_to: Path | None = None) -> pd.DataFrame:
        rows = []
        for name, path in self._entries.items():
            shown = path
            if relative_to is not None:
                try:
                    shown = path.relative_to(relative_to)
                except ValueError:
                    shown = path
            rows.append(
                {
                    "name": name,
                    "path": str(shown),
                    "exists": path.exists(),
                    "sha256": sha256_file(path) if path.is_file() else "",
                }
            )
        return pd.DataFrame(rows, columns=["name", "path", "exists", "sha256"])


class OutputManifest(FileManifest):
    kind = "output"


class FigureManifest(FileManifest):
    kind = "figure"
