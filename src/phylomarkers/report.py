from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd

from .ledger import FigureManifest, FilteringLedger, OutputManifest
from .schemas import validate_run_manifest_payload


FILTERING_OVERVIEW = "pipeline_filtering_overview.tsv"
OUTPUT_OVERVIEW = "pipeline_output_files_overview.tsv"
FIGURE_OVERVIEW = "pipeline_figure_files_overview.tsv"
RUN_MANIFEST = "run_manifest.json"


def write_tsv(path: Path, df: pd.DataFrame) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, sep="\t", index=False, na_rep="NA")
    return path


def write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, default=str)
        handle.write("\n")
    return path


def write_overviews(
    run_dir: Path,
    ledger: FilteringLedger,
    outputs: OutputManifest,
    figures: FigureManifest,
) -> dict[str, Path]:
    return {
        "filtering": write_tsv(run_dir / FILTERING_OVERVIEW, ledger.to_frame()),
        "outputs": write_tsv(run_dir / OUTPUT_OVERVIEW, outputs.to_frame(relative_to=run_dir)),
        "figures": write_tsv(run_dir / FIGURE_OVERVIEW, figures.to_frame(relative_to=run_dir)),
    }


def write_run_manifest(path: Path, payload: dict[str, Any]) -> Path:
    validate_run_manifest_payload(payload)
    return write_json(path, payload)


def render_summary(
    *,
    status: str,
    ledger: FilteringLedger,
    outputs: OutputManifest,
    figures: FigureManifest,
    warnings: list[str],
    flags: set[str],
    elapsed_sec: float,
) -> str:
    lines = [f"Run status: {status}", "", "Filtering overview:", ledger.render(), ""]
    if len(outputs):
        lines.append("Output files:")
        lines.extend(f"  {name}\t{path}" for name, path in outputs.items())
        lines.append("")
    if len(figures):
        lines.append("Figures:")
        lines.extend(f"  {name}\t{path}" for name, path in figures.items())
        lines.append("")
    if flags:
        lines.append("Flags: " + ", ".join(sorted(flags)))
    if warnings:
        lines.append(f"Warnings ({len(warnings)}):")
        lines.extend(f"  WARNING: {msg}" for msg in warnings)
    lines.append(f"Total runtime: {elapsed_sec:.1f} s")
    return "\n".join(lines)
