from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pandas as pd

from . import __version__
from .clock import ClockTest, clock_table, clock_table_name, clock_test
from .config import PipelineConfig
from .consensus import SpeciesTreeResult, run_species_tree_stage
from .dispatch import DispatchResult, dispatch, resolve_worker_bound
from .errors import EstimationError, StageExhaustionError, StructuralError
from .ledger import FigureManifest, FilteringLedger, OutputManifest, StageCounts
from .phylo import parse_newick
from .popgen import (
    NeutralityBounds,
    is_neutral,
    neutrality_bounds,
    polymorphism_stats,
    polymorphism_table,
)
from .repository import ActiveSet, Locus, load_repository
from .report import RUN_MANIFEST, render_summary, write_overviews, write_run_manifest, write_tsv
from .runlog import RunLog, host_metadata, run_stamp
from .stages import LocusState, build_filter_stages, run_stages
from .supermatrix import (
    Supermatrix,
    concatenate,
    strip_uninformative_columns,
    write_partitions,
    write_supermatrix,
)
from .tools import Collaborators, build_external_collaborators


INPUT_STAGE = "input"
NEUTRALITY_STAGE = "neutrality"
CLOCK_STAGE = "molecular_clock"
PROGRESS_EVERY = 10


@dataclass
class RunResult:
    status: str
    run_dir: Path
    ledger: FilteringLedger
    markers: list[str]
    outputs: OutputManifest
    figures: FigureManifest
    warnings: list[str]
    flags: set[str]
    supermatrix: Supermatrix | None = None
    species: SpeciesTreeResult | None = None
    polymorphism: pd.DataFrame | None = None
    clock: pd.DataFrame | None = None
    neutral_loci: list[str] = field(default_factory=list)


class RunContext:
    """Shared state of one pipeline run, handed to every filter stage."""

    def __init__(
        self,
        config: PipelineConfig,
        collaborators: Collaborators,
        run_dir: Path,
        log: RunLog,
    ) -> None:
        self.config = config
        self.collaborators = collaborators
        self.run_dir = run_dir
        self.log = log
        self.ledger = FilteringLedger()
        self.outputs = OutputManifest()
        self.figures = FigureManifest()
        self.flags: set[str] = set()
        self.worker_bound = resolve_worker_bound(config.n_cores)
        self.quarantined: list[dict[str, str]] = []
        self._states: dict[int, LocusState] = {}

    @property
    def warnings(self) -> list[str]:
        return self.log.warnings

    def register(self, states: list[LocusState]) -> None:
        self._states = {state.locus_id: state for state in states}

    def state_by_id(self, locus_id: int) -> LocusState:
        return self._states[locus_id]

    def stage_dir(self, stage: str) -> Path:
        path = self.run_dir / "work" / stage
        path.mkdir(parents=True, exist_ok=True)
        return path

    def job_dir(self, stage: str, locus: Locus) -> Path:
        path = self.stage_dir(stage) / locus.key
        path.mkdir(parents=True, exist_ok=True)
        return path

    def dispatch(
        self,
        stage: str,
        states: list[LocusState],
        job_fn: Callable[[LocusState], Any],
    ) -> DispatchResult:
        total = len(states)

        def _progress(done: int, n: int) -> None:
            if done % PROGRESS_EVERY == 0 or done == n:
                self.log.info(f"{stage}: {done}/{n} jobs finished")

        self.log.info(f"{stage}: dispatching {total} jobs on {min(self.worker_bound, max(total, 1))} workers")
        result = dispatch(
            states,
            job_fn,
            worker_bound=self.worker_bound,
            key=lambda state: state.locus_id,
            timeout_sec=self.config.job_timeout_sec,
            progress=_progress,
        )
        for failure in result.failures:
            self.log.info(f"{stage}: job for locus {self.state_by_id(failure.key).name} failed ({failure.reason})")
        if result.n_failed:
            self.log.warn(f"{result.n_failed} of {total} {stage} jobs failed")
        return result

    def quarantine(self, stage: str, state: LocusState) -> None:
        target = self.run_dir / "problematic_alignments" / stage
        target.mkdir(parents=True, exist_ok=True)
        if state.alignment_path is not None and state.alignment_path.exists():
            sources = [state.alignment_path]
        else:
            sources = [p for p in state.locus.source_paths if p.exists()]
        for src in sources:
            shutil.copy2(src, target / src.name)
        self.quarantined.append(
            {"locus": state.name, "stage": stage, "reason": state.notes.get(stage, "")}
        )

    def write_table(self, name: str, path: Path, df: pd.DataFrame) -> Path:
        return self.outputs.add(name, write_tsv(path, df))

    def flush_reports(self) -> None:
        if self.quarantined:
            table = pd.DataFrame(self.quarantined, columns=["locus", "stage", "reason"])
            self.write_table(
                "quarantined_loci", self.run_dir / "problematic_alignments" / "quarantined_loci.tsv", table
            )
        write_overviews(self.run_dir, self.ledger, self.outputs, self.figures)


def run_directory(config: PipelineConfig, outdir: str | Path) -> Path:
    return Path(outdir) / f"phylomarkers_run_{config.run_suffix()}_{run_stamp()}"


def _marker_table(states: list[LocusState]) -> pd.DataFrame:
    rows = []
    for state in states:
        tree = state.gene_tree
        rows.append(
            {
                "locus": state.name,
                "n_taxa": state.locus.n_taxa,
                "aln_len": state.alignment.length if state.alignment is not None else None,
                "model": tree.model if tree is not None else None,
                "mean_support": state.metrics.get("mean_support"),
                "lmap_percent_resolved": state.metrics.get("lmap_percent_resolved"),
                "phi_p_normal": state.metrics.get("phi_p_normal"),
                "phi_p_permutation": state.metrics.get("phi_p_permutation"),
                "flags": ",".join(sorted(state.flags)),
            }
        )
    columns = [
        "locus",
        "n_taxa",
        "aln_len",
        "model",
        "mean_support",
        "lmap_percent_resolved",
        "phi_p_normal",
        "phi_p_permutation",
        "flags",
    ]
    return pd.DataFrame(rows, columns=columns)


def _write_concatenation(
    ctx: RunContext,
    states: list[LocusState],
    outdir: Path,
    prefix: str,
) -> tuple[Supermatrix, Path, Path]:
    mol_type = ctx.config.mol_type
    base = "concat_cdnAlns" if mol_type == "DNA" else "concat_protAlns"
    ext = "fna" if mol_type == "DNA" else "faa"
    alignments = [state.alignment for state in states if state.alignment is not None]
    matrix = concatenate(alignments, names=[state.name for state in states])
    full = ctx.outputs.add(f"{prefix}supermatrix", write_supermatrix(matrix, outdir / f"{base}.{ext}"))
    ctx.outputs.add(
        f"{prefix}partitions", write_partitions(matrix, outdir / f"{base}_partitions.txt", mol_type)
    )
    stripped = strip_uninformative_columns(matrix, mol_type)
    if stripped.length == 0:
        ctx.log.warn("the supermatrix holds no variable columns; searching the full matrix")
        return matrix, full, full
    informative = ctx.outputs.add(
        f"{prefix}supermatrix_informative", write_supermatrix(stripped, outdir / f"{base}.{ext}inf")
    )
    ctx.log.info(
        f"supermatrix: {len(states)} markers, {matrix.length} columns, "
        f"{stripped.length} variable columns"
    )
    return matrix, full, informative


def _finish_phylo(
    ctx: RunContext,
    markers: list[LocusState],
    active: ActiveSet,
) -> tuple[Supermatrix, SpeciesTreeResult, pd.DataFrame | None]:
    top_dir = ctx.run_dir / f"top_{len(markers)}_markers"
    top_dir.mkdir(parents=True, exist_ok=True)
    for state in markers:
        if state.alignment_path is not None:
            shutil.copy2(state.alignment_path, top_dir / state.alignment_path.name)
    matrix, _, search_path = _write_concatenation(ctx, markers, top_dir, "")
    ctx.flush_reports()
    trees = [state.gene_tree for state in markers if state.gene_tree is not None]
    species = run_species_tree_stage(
        trees,
        search_path,
        top_dir / "species_trees",
        collaborators=ctx.collaborators,
        config=ctx.config,
        label_map=active.label_map,
        outputs=ctx.outputs,
        log=ctx.log,
    )
    clock = _run_clock_tests(ctx, markers, top_dir) if ctx.config.eval_clock else None
    return matrix, species, clock


def _run_clock_tests(ctx: RunContext, markers: list[LocusState], top_dir: Path) -> pd.DataFrame | None:
    config = ctx.config
    tester = ctx.collaborators.clock_test
    if tester is None:
        ctx.flags.add("clock_test_skipped")
        ctx.log.warn("no molecular clock tester is available; the clock test was skipped")
        return None
    testable = [s for s in markers if s.alignment_path is not None and s.gene_tree is not None]

    def _job(state: LocusState) -> ClockTest:
        assert state.alignment_path is not None and state.gene_tree is not None
        lnl_free, lnl_clock = tester(
            state.alignment_path, state.gene_tree, ctx.job_dir(CLOCK_STAGE, state.locus)
        )
        return clock_test(state.name, lnl_free, lnl_clock, state.gene_tree.n_leaves, config.clock_quantile)

    result = ctx.dispatch(CLOCK_STAGE, testable, _job)
    tests: list[ClockTest] = list(result.results.values())
    table = clock_table(tests)
    name = clock_table_name(config.clock_base_model, config.root_method, config.clock_quantile)
    ctx.write_table("mol_clock_tests", top_dir / name, table)
    attributes = _marker_table(markers).merge(table, on="locus", how="left")
    ctx.write_table(
        "phylogenetic_attributes",
        top_dir / f"phylogenetic_attributes_of_top{len(markers)}_gene_trees.tsv",
        attributes,
    )
    n_clocklike = sum(1 for t in tests if t.clocklike)
    ctx.log.info(
        f"molecular clock: {n_clocklike} of {len(tests)} gene trees are clocklike "
        f"(chi-square quantile {config.clock_quantile:g})"
    )
    return table


def _finish_popgen(
    ctx: RunContext,
    markers: list[LocusState],
    n_taxa: int,
) -> tuple[pd.DataFrame, NeutralityBounds, list[LocusState]]:
    popgen_dir = ctx.run_dir / "popgen_stats"
    bounds = neutrality_bounds(n_taxa, ctx.config.neutrality_alpha)
    ctx.log.info(
        f"neutrality bounds for n={n_taxa}: Tajima's D [{bounds.tajima_lower:.4f}, {bounds.tajima_upper:.4f}], "
        f"Fu and Li's D* [{bounds.fu_li_lower:.4f}, {bounds.fu_li_upper:.4f}]"
    )
    rows = []
    neutral: list[LocusState] = []
    for state in markers:
        assert state.alignment is not None
        tree = parse_newick(state.gene_tree.newick) if state.gene_tree is not None else None
        row = polymorphism_stats(state.name, state.alignment, tree)
        rows.append(row)
        if is_neutral(row, bounds):
            neutral.append(state)
        else:
            state.flags.add("non_neutral")
    table = polymorphism_table(rows)
    ctx.write_table(
        "polymorphism_descript_stats", popgen_dir / "polymorphism_descript_stats.tsv", table
    )
    ctx.ledger.record(
        NEUTRALITY_STAGE,
        StageCounts(
            examined=len(markers),
            passed=len(neutral),
            failed=len(markers) - len(neutral),
            details={"tajima_bounds": [bounds.tajima_lower, bounds.tajima_upper]},
        ),
    )
    if neutral:
        _write_concatenation(ctx, neutral, ctx.run_dir / "neutral_loci", "neutral_")
    else:
        ctx.log.warn("no locus passed the neutrality tests; no neutral supermatrix was written")
    ctx.flush_reports()
    return table, bounds, neutral


def _draw_figures(
    ctx: RunContext,
    states: list[LocusState],
    polymorphism: pd.DataFrame | None,
    bounds: NeutralityBounds | None,
) -> None:
    from .plots import plot_filtering_overview, plot_support_distribution, plot_tajimas_d

    fig_dir = ctx.run_dir / "figures"
    ctx.figures.add(
        "filtering_overview", plot_filtering_overview(ctx.ledger.to_frame(), fig_dir / "filtering_overview.png")
    )
    if ctx.config.mode == "phylo":
        supports = [s.metrics["mean_support"] for s in states if "mean_support" in s.metrics]
        ctx.figures.add(
            "support_values",
            plot_support_distribution(supports, ctx.config.min_support, fig_dir / "support_values.png"),
        )
    elif polymorphism is not None and bounds is not None:
        ctx.figures.add(
            "tajimas_d",
            plot_tajimas_d(polymorphism, bounds.tajima_lower, bounds.tajima_upper, fig_dir / "tajimas_d.png"),
        )


def _manifest_payload(
    ctx: RunContext,
    *,
    status: str,
    error: str | None,
    input_dir: Path,
    markers: list[str],
    elapsed_sec: float,
    command_line: str | None,
) -> dict[str, Any]:
    return {
        "schema_version": 1,
        "command": "run",
        "command_line": command_line,
        "tool_version": __version__,
        "system": host_metadata(ctx.worker_bound),
        "input_dir": str(input_dir),
        "run_dir": str(ctx.run_dir),
        "config": ctx.config.to_dict(),
        "collaborators": dict(ctx.collaborators.names),
        "status": status,
        "error": error,
        "ledger": ctx.ledger.to_records(),
        "markers": markers,
        "flags": sorted(ctx.flags),
        "warnings": list(ctx.warnings),
        "elapsed_sec": round(elapsed_sec, 3),
    }


def run_pipeline(
    config: PipelineConfig,
    input_dir: str | Path,
    outdir: str | Path = ".",
    *,
    collaborators: Collaborators | None = None,
    log: RunLog | None = None,
    command_line: str | None = None,
) -> RunResult:
    """Filter the loci of ``input_dir`` and build the marker supermatrix and species trees.

    Reports of finished stages are flushed before any fatal error propagates.
    """
    config = config.validate()
    input_dir = Path(input_dir)
    log = log or RunLog()
    run_dir = run_directory(config, outdir)
    if run_dir.exists():
        raise StructuralError(f"Run directory already exists: {run_dir}")

    started = time.perf_counter()
    active = load_repository(input_dir, cluster_format=config.cluster_format, min_taxa=config.min_taxa)
    run_dir.mkdir(parents=True)
    log.attach(run_dir / "phylomarkers.log")
    log.info(f"phylomarkers {__version__}: {len(active)} loci with {len(active.taxa)} taxa from {input_dir}")
    log.info(f"run directory: {run_dir}")

    collaborators = collaborators or build_external_collaborators(config)
    ctx = RunContext(config, collaborators, run_dir, log)
    ctx.ledger.record(INPUT_STAGE, StageCounts(examined=len(active), passed=len(active), failed=0))
    ctx.outputs.add("tree_labels", active.write_tree_labels(run_dir / "tree_labels.tsv"))

    states = [LocusState(locus=locus) for locus in active]
    ctx.register(states)

    result = RunResult(
        status="failed",
        run_dir=run_dir,
        ledger=ctx.ledger,
        markers=[],
        outputs=ctx.outputs,
        figures=ctx.figures,
        warnings=ctx.warnings,
        flags=ctx.flags,
    )
    bounds: NeutralityBounds | None = None
    error: str | None = None
    try:
        stages = build_filter_stages(ctx, include_signal=config.mode == "phylo")
        markers = run_stages(states, stages, ctx)
        result.markers = [state.name for state in markers]
        ctx.write_table("marker_loci", run_dir / "marker_loci.tsv", _marker_table(markers))
        if config.mode == "phylo":
            result.supermatrix, result.species, result.clock = _finish_phylo(ctx, markers, active)
        else:
            result.polymorphism, bounds, neutral = _finish_popgen(ctx, markers, len(active.taxa))
            result.neutral_loci = [state.name for state in neutral]
        result.status = "completed"
    except StageExhaustionError as exc:
        result.status = "exhausted"
        error = str(exc)
        log.error(error)
        raise
    except EstimationError as exc:
        result.status = "estimation_failed"
        exc.counts_before = len(result.markers)
        exc.ledger = ctx.ledger.snapshot()
        error = str(exc)
        log.error(error)
        raise
    except Exception as exc:
        if isinstance(exc, StructuralError) and exc.ledger is None:
            exc.ledger = ctx.ledger.snapshot()
        error = str(exc)
        log.error(error)
        raise
    finally:
        try:
            _draw_figures(ctx, states, result.polymorphism, bounds)
        except Exception as err:
            log.warn(f"figures could not be drawn: {err}")
        elapsed = time.perf_counter() - started
        ctx.outputs.add(
            "run_manifest",
            write_run_manifest(
                run_dir / RUN_MANIFEST,
                _manifest_payload(
                    ctx,
                    status=result.status,
                    error=error,
                    input_dir=input_dir,
                    markers=result.markers,
                    elapsed_sec=elapsed,
                    command_line=command_line,
                ),
            ),
        )
        ctx.flush_reports()
        log.info(
            render_summary(
                status=result.status,
                ledger=ctx.ledger,
                outputs=ctx.outputs,
                figures=ctx.figures,
                warnings=ctx.warnings,
                flags=ctx.flags,
                elapsed_sec=elapsed,
            )
        )
    return result
