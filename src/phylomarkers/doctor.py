from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import PipelineConfig
from .errors import StructuralError, ToolUnavailableError
from .repository import load_repository
from .tools import ALL_TOOLS, ASTRAL, FASTTREE, IQTREE, KDETREES, PAUP, ToolSpec, select_backend


@dataclass
class DoctorCheck:
    name: str
    status: str  # PASS | WARN | FAIL
    message: str
    fix: str | None = None


@dataclass
class DoctorReport:
    checks: list[DoctorCheck]

    @property
    def has_failures(self) -> bool:
        return any(check.status == "FAIL" for check in self.checks)

    def render(self) -> str:
        lines = []
        for check in self.checks:
            lines.append(f"[{check.status}] {check.name}: {check.message}")
            if check.fix:
                lines.append(f"  fix: {check.fix}")
        summary = "FAIL" if self.has_failures else "PASS"
        lines.append(f"\nDoctor summary: {summary}")
        return "\n".join(lines)


def _required_tools(config: PipelineConfig) -> set[str]:
    required = {"CLUSTALO", "PHI"}
    required.add(IQTREE.key if config.search_algorithm == "iqtree" else FASTTREE.key)
    if config.lmap_active:
        required.add(IQTREE.key)
    if config.mode == "phylo":
        required.add(ASTRAL.key)
    if config.eval_clock:
        required.add(PAUP.key)
    return required


def _tool_check(spec: ToolSpec, required: set[str]) -> DoctorCheck:
    try:
        backend, target = select_backend(spec)
    except ToolUnavailableError as exc:
        if spec.key not in required:
            status = "PASS"
            message = f"not found; not needed for this configuration ({exc})"
        elif spec.key == KDETREES.key:
            status = "WARN"
            message = f"not found; the topological outlier filter will be skipped ({exc})"
        else:
            status = "FAIL"
            message = str(exc)
        return DoctorCheck(
            name=f"tool:{spec.container_bin}",
            status=status,
            message=message,
            fix=None if status == "PASS" else f"install {spec.local_bins[0]} or set {spec.env_bin_key}",
        )
    return DoctorCheck(name=f"tool:{spec.container_bin}", status="PASS", message=f"{backend}: {target}")


def run_doctor(
    *,
    config: PipelineConfig | None = None,
    input_dir: str | Path | None = None,
) -> DoctorReport:
    config = (config or PipelineConfig()).validate()
    required = _required_tools(config) | {KDETREES.key}
    checks = [_tool_check(spec, required) for spec in ALL_TOOLS]

    if shutil.which("Rscript") is None:
        checks.append(
            DoctorCheck(
                name="runtime:Rscript",
                status="WARN",
                message="Rscript not on PATH; run_kdetrees.R needs R unless run in a container",
            )
        )

    if input_dir is not None:
        try:
            active = load_repository(
                input_dir, cluster_format=config.cluster_format, min_taxa=config.min_taxa
            )
        except StructuralError as exc:
            checks.append(
                DoctorCheck(
                    name="input:loci",
                    status="FAIL",
                    message=str(exc),
                    fix="every locus needs paired .fna/.faa files holding the same taxa",
                )
            )
        else:
            checks.append(
                DoctorCheck(
                    name="input:loci",
                    status="PASS",
                    message=f"{len(active)} loci with {len(active.taxa)} taxa each",
                )
            )
    return DoctorReport(checks=checks)
