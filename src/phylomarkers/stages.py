from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import pandas as pd

from .errors import StageExhaustionError, ToolExecutionError, ToolUnavailableError
from .io import Alignment, write_alignment
from .ledger import StageCounts
from .repository import Locus
from .tools import GeneTree, RecombinationResult

if TYPE_CHECKING:
    from .pipeline import RunContext


PASS = "pass"
FAIL = "fail"
INCONCLUSIVE = "inconclusive"
VERDICTS = (PASS, FAIL, INCONCLUSIVE)

STRUCTURAL = "structural"
RECOMBINATION = "recombination"
TRIVIAL_TREES = "trivial_trees"
OUTLIERS = "topological_outliers"
SIGNAL = "phylogenetic_signal"
LMAP = "likelihood_mapping"


@dataclass
class LocusState:
    locus: Locus
    alignment: Alignment | None = None
    alignment_path: Path | None = None
    gene_tree: GeneTree | None = None
    files: dict[str, Path] = field(default_factory=dict)
    flags: set[str] = field(default_factory=set)
    verdicts: dict[str, str] = field(default_factory=dict)
    notes: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    @property
    def locus_id(self) -> int:
        return self.locus.locus_id

    @property
    def name(self) -> str:
        return self.locus.name


@dataclass
class StageOutcome:
    verdicts: dict[int, str]
    reasons: dict[int, str] = field(default_factory=dict)
    skipped: bool = False
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class FilterStage:
    name: str
    run: Callable[[list[LocusState], "RunContext"], StageOutcome]
    prepare: Callable[[list[LocusState], "RunContext"], None] | None = None
    active: bool = True


def _tally(states: list[LocusState], outcome: StageOutcome) -> StageCounts:
    counts = {PASS: 0, FAIL: 0, INCONCLUSIVE: 0}
    for state in states:
        counts[outcome.verdicts[state.locus_id]] += 1
    return StageCounts(
        examined=len(states),
        passed=counts[PASS],
        failed=counts[FAIL],
        inconclusive=counts[INCONCLUSIVE],
        skipped=outcome.skipped,
        details=dict(outcome.details),
    )


def run_stages(
    states: list[LocusState],
    stages: list[FilterStage],
    ctx: "RunContext",
) -> list[LocusState]:
    """Run filter stages in order; each consumes the survivors of the previous one.

    A stage starts only after the previous one has joined all of its jobs.
    Failing loci are quarantined, inconclusive ones stay in the working set.
    """
    for stage in stages:
        if not stage.active:
            continue
        before = len(states)
        ctx.log.info(f"stage {stage.name}: examining {before} loci")
        if stage.prepare is not None:
            stage.prepare(states, ctx)
        outcome = stage.run(states, ctx)
        for state in states:
            verdict = outcome.verdicts.setdefault(state.locus_id, FAIL)
            if verdict not in VERDICTS:
                raise ValueError(f"Stage '{stage.name}' produced unknown verdict '{verdict}'.")
            if verdict == FAIL and state.locus_id not in outcome.reasons:
                outcome.reasons[state.locus_id] = "no_verdict"

        counts = _tally(states, outcome)
        ctx.ledger.record(stage.name, counts)

        survivors: list[LocusState] = []
        for state in states:
            verdict = outcome.verdicts[state.locus_id]
            state.verdicts[stage.name] = verdict
            if state.locus_id in outcome.reasons:
                state.notes[stage.name] = outcome.reasons[state.locus_id]
            if verdict == FAIL:
                ctx.quarantine(stage.name, state)
            else:
                survivors.append(state)

        ctx.log.info(
            f"stage {stage.name}: passed={counts.passed} failed={counts.failed} "
            f"inconclusive={counts.inconclusive}"
            + (" [skipped]" if counts.skipped else "")
        )
        ctx.flush_reports()
        if not survivors:
            raise StageExhaustionError(stage.name, before, ctx.ledger.snapshot())
        if len(survivors) < ctx.config.min_survivors_warning:
            ctx.log.warn(
                f"only {len(survivors)} loci survived stage {stage.name}; "
                f"fewer than {ctx.config.min_survivors_warning} markers remain"
            )
        states = survivors
    return states


# --------------------------------------------------------------------------
# Preparation steps (dispatched, not filters).


def generate_alignments(states: list[LocusState], ctx: "RunContext") -> None:
    mol_type = ctx.config.mol_type
    suffix = "cdnAln.fasta" if mol_type == "DNA" else "protAln.fasta"

    def _job(state: LocusState) -> tuple[Alignment, Path]:
        workdir = ctx.job_dir("alignment", state.locus)
        alignment = ctx.collaborators.aligner(state.locus, workdir, mol_type)
        path = write_alignment(workdir / f"{state.name}_{suffix}", alignment)
        return alignment, path

    result = ctx.dispatch("alignment", states, _job)
    for state in states:
        if state.locus_id in result.results:
            state.alignment, state.alignment_path = result.results[state.locus_id]
            state.files["alignment"] = state.alignment_path
    for failure in result.failures:
        ctx.state_by_id(failure.key).notes["alignment"] = failure.reason


def estimate_gene_trees(states: list[LocusState], ctx: "RunContext") -> None:
    mol_type = ctx.config.mol_type

    def _job(state: LocusState) -> GeneTree:
        assert state.alignment_path is not None
        workdir = ctx.job_dir("gene_trees", state.locus)
        tree = ctx.collaborators.tree_search(state.alignment_path, workdir, mol_type)
        tree = replace(tree, locus_id=state.locus_id)
        if tree.path is None:
            path = workdir / f"{state.name}.nwk"
            path.write_text(tree.newick + "\n", encoding="utf-8")
            tree = replace(tree, path=path)
        return tree

    result = ctx.dispatch("gene_trees", states, _job)
    for state in states:
        if state.locus_id in result.results:
            state.gene_tree = result.results[state.locus_id]
            if state.gene_tree.path is not None:
                state.files["gene_tree"] = state.gene_tree.path
    for failure in result.failures:
        ctx.state_by_id(failure.key).notes["gene_tree"] = failure.reason


# --------------------------------------------------------------------------
# Filter stages.


def screen_structure(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    outcome = StageOutcome(verdicts={})
    for state in states:
        if state.alignment is None:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = f"alignment_failed:{state.notes.get('alignment', '')}"
        elif state.alignment.length == 0:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = "empty_alignment"
        elif state.alignment.taxa != frozenset(state.locus.taxa):
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = "taxon_mismatch"
        else:
            outcome.verdicts[state.locus_id] = PASS
    return outcome


def screen_recombination(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    alpha = ctx.config.recombination_alpha

    def _job(state: LocusState) -> RecombinationResult:
        assert state.alignment_path is not None
        return ctx.collaborators.recombination_test(
            state.alignment_path, ctx.job_dir("recombination", state.locus)
        )

    result = ctx.dispatch("recombination", states, _job)
    outcome = StageOutcome(verdicts={})
    rows = []
    for state in states:
        res = result.results.get(state.locus_id)
        if res is None:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = "recombination_test_failed"
            rows.append({"locus": state.name, "p_normal": None, "p_permutation": None, "verdict": FAIL})
            continue
        state.metrics["phi_p_normal"] = res.p_normal
        state.metrics["phi_p_permutation"] = res.p_permutation
        if res.inconclusive:
            verdict = INCONCLUSIVE
            state.flags.add("too_few_informative_sites")
        elif res.p_normal > alpha and res.p_permutation > alpha:
            verdict = PASS
        else:
            verdict = FAIL
            outcome.reasons[state.locus_id] = "recombinant"
        outcome.verdicts[state.locus_id] = verdict
        rows.append(
            {
                "locus": state.name,
                "p_normal": res.p_normal,
                "p_permutation": res.p_permutation,
                "verdict": verdict,
            }
        )

    n_inconclusive = sum(1 for v in outcome.verdicts.values() if v == INCONCLUSIVE)
    if n_inconclusive:
        ctx.log.warn(
            f"{n_inconclusive} alignments had too few informative sites for the recombination "
            "test; they were retained without evidence of non-recombination"
        )
    table = pd.DataFrame(rows, columns=["locus", "p_normal", "p_permutation", "verdict"])
    ctx.write_table("recombination_tests", ctx.stage_dir(RECOMBINATION) / "recombination_tests.tsv", table)
    outcome.details["n_too_few_informative_sites"] = n_inconclusive
    return outcome


def screen_trivial_trees(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    min_leaves = ctx.config.min_leaves
    outcome = StageOutcome(verdicts={})
    for state in states:
        tree = state.gene_tree
        if tree is None:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = f"tree_search_failed:{state.notes.get('gene_tree', '')}"
        elif tree.n_leaves < min_leaves:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = f"trivial_tree:leaves={tree.n_leaves}"
        else:
            outcome.verdicts[state.locus_id] = PASS
    return outcome


def screen_outliers(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    trees = [state.gene_tree for state in states if state.gene_tree is not None]
    workdir = ctx.stage_dir(OUTLIERS)
    try:
        verdicts = ctx.collaborators.outlier_test(trees, workdir, ctx.config.kde_stringency)
    except (ToolUnavailableError, ToolExecutionError) as exc:
        ctx.log.warn(f"topological outlier test could not run; no outlier filtering applied ({exc})")
        ctx.flags.add("outlier_filter_skipped")
        return StageOutcome(verdicts={state.locus_id: PASS for state in states}, skipped=True)

    outcome = StageOutcome(verdicts={})
    for state in states:
        if verdicts.get(state.locus_id) == "outlier":
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = "kde_outlier"
        else:
            outcome.verdicts[state.locus_id] = PASS
    return outcome


def screen_support(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    threshold = ctx.config.min_support
    defer = ctx.config.signal_combination == "union" and ctx.config.lmap_active
    outcome = StageOutcome(verdicts={})
    rows = []
    for state in states:
        assert state.gene_tree is not None
        mean = state.gene_tree.mean_support
        state.metrics["mean_support"] = mean
        if mean >= threshold:
            outcome.verdicts[state.locus_id] = PASS
        elif defer:
            outcome.verdicts[state.locus_id] = INCONCLUSIVE
            state.flags.add("pending_likelihood_mapping")
        else:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = f"low_support:{mean:.3f}"
        rows.append(
            {
                "locus": state.name,
                "mean_support": round(mean, 6),
                "n_supported_branches": len(state.gene_tree.supports),
                "verdict": outcome.verdicts[state.locus_id],
            }
        )
    table = pd.DataFrame(rows, columns=["locus", "mean_support", "n_supported_branches", "verdict"])
    ctx.write_table("gene_tree_support", ctx.stage_dir(SIGNAL) / "gene_tree_support.tsv", table)
    outcome.details["min_support"] = threshold
    return outcome


def screen_likelihood_mapping(states: list[LocusState], ctx: "RunContext") -> StageOutcome:
    threshold = ctx.config.lmap_threshold
    union = ctx.config.signal_combination == "union"

    def _job(state: LocusState) -> float:
        assert state.alignment_path is not None and state.gene_tree is not None
        return ctx.collaborators.likelihood_mapping(
            state.alignment_path, state.gene_tree, ctx.job_dir("likelihood_mapping", state.locus)
        )

    result = ctx.dispatch("likelihood_mapping", states, _job)
    outcome = StageOutcome(verdicts={})
    rows = []
    for state in states:
        percent = result.results.get(state.locus_id)
        passed_support = state.verdicts.get(SIGNAL) == PASS
        if percent is not None:
            state.metrics["lmap_percent_resolved"] = percent
        meets = percent is not None and percent >= threshold
        if meets or (union and passed_support):
            outcome.verdicts[state.locus_id] = PASS
        else:
            outcome.verdicts[state.locus_id] = FAIL
            outcome.reasons[state.locus_id] = (
                "lmap_failed" if percent is None else f"low_resolved_quartets:{percent:.2f}"
            )
        state.flags.discard("pending_likelihood_mapping")
        rows.append(
            {
                "locus": state.name,
                "percent_fully_resolved": percent,
                "verdict": outcome.verdicts[state.locus_id],
            }
        )
    table = pd.DataFrame(rows, columns=["locus", "percent_fully_resolved", "verdict"])
    ctx.write_table(
        "likelihood_mapping_tests", ctx.stage_dir(LMAP) / "geneTree_lmapping_tests.tsv", table
    )
    outcome.details["min_percent_resolved"] = threshold
    return outcome


def build_filter_stages(ctx: "RunContext", *, include_signal: bool = True) -> list[FilterStage]:
    stages = [
        FilterStage(STRUCTURAL, screen_structure, prepare=generate_alignments),
        FilterStage(RECOMBINATION, screen_recombination),
        FilterStage(TRIVIAL_TREES, screen_trivial_trees, prepare=estimate_gene_trees),
        FilterStage(OUTLIERS, screen_outliers),
    ]
    if include_signal:
        stages.append(FilterStage(SIGNAL, screen_support))
        stages.append(FilterStage(LMAP, screen_likelihood_mapping, active=ctx.config.lmap_active))
    return stages
