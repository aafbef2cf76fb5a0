from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class PhylomarkersError(Exception):
    """Base class for pipeline errors."""

    # Filtering ledger at the time of failure, once a run directory exists.
    ledger: Any = None


class StructuralError(PhylomarkersError, ValueError):
    """Input cannot be processed at all (missing files, broken pairs, bad layout)."""


class ValidationError(StructuralError):
    """Locus repository failed its all-or-nothing consistency checks."""


class TaxonMismatchError(StructuralError):
    def __init__(self, locus: str, missing: list[str], extra: list[str]) -> None:
        self.locus = locus
        self.missing = missing
        self.extra = extra
        parts = []
        if missing:
            parts.append(f"missing={','.join(missing)}")
        if extra:
            parts.append(f"extra={','.join(extra)}")
        super().__init__(f"Taxon set of '{locus}' differs from the reference: {'; '.join(parts)}")


class ToolUnavailableError(PhylomarkersError, RuntimeError):
    """No runnable backend (local, docker or singularity) for an external tool."""


class ToolExecutionError(PhylomarkersError, RuntimeError):
    def __init__(self, tool: str, reason: str, stderr_tail: str = "") -> None:
        self.tool = tool
        self.reason = reason
        self.stderr_tail = stderr_tail
        msg = f"{tool} failed: {reason}"
        if stderr_tail:
            msg += f"\n{stderr_tail}"
        super().__init__(msg)


class EstimationError(PhylomarkersError, RuntimeError):
    """No species-tree estimator produced a tree."""

    def __init__(
        self,
        message: str,
        *,
        stage: str = "species_trees",
        counts_before: int | None = None,
        ledger: Any = None,
    ) -> None:
        self.stage = stage
        self.counts_before = counts_before
        self.ledger = ledger
        super().__init__(message)


class StageExhaustionError(PhylomarkersError):
    def __init__(self, stage: str, counts_before: int, ledger: Any) -> None:
        self.stage = stage
        self.counts_before = counts_before
        self.ledger = ledger
        super().__init__(
            f"Stage '{stage}' left no surviving loci ({counts_before} entered the stage)."
        )


@dataclass(frozen=True)
class ItemFailure:
    key: Any
    reason: str
    error_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "reason": self.reason, "error_type": self.error_type}
