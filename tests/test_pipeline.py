import json
import math
from pathlib import Path

import pandas as pd
import pytest

from phylomarkers.config import PipelineConfig
from phylomarkers.errors import EstimationError, StageExhaustionError, StructuralError
from phylomarkers.pipeline import run_directory, run_pipeline
from phylomarkers.runlog import RunLog

from fakes import LOCI, FakeTools, write_loci


@pytest.fixture(autouse=True)
def _fixed_stamp(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PHYLOMARKERS_FIXED_RUN_STAMP", "test")


def _run(tmp_path: Path, tools: FakeTools, outdir: str = "out", **overrides):
    input_dir = tmp_path / "loci"
    if not input_dir.exists():
        write_loci(input_dir)
    config = PipelineConfig(n_cores=2, **overrides)
    return run_pipeline(
        config,
        input_dir,
        tmp_path / outdir,
        collaborators=tools.collaborators(),
        log=RunLog(echo=False),
    )


def _manifest(run_dir: Path) -> dict:
    return json.loads((run_dir / "run_manifest.json").read_text(encoding="utf-8"))


def test_run_directory_name_encodes_settings(tmp_path: Path) -> None:
    path = run_directory(PipelineConfig(), tmp_path)
    assert path.name == "phylomarkers_run_AIR1tDNA_k1.5_m0.65_Thigh_test"


def test_filters_leave_single_marker(tmp_path: Path) -> None:
    tools = FakeTools(recombinant=["geneD"], trivial=["geneC"], outliers=["geneB"])
    result = _run(tmp_path, tools)

    assert result.status == "completed"
    assert result.markers == ["geneA"]
    assert result.ledger.survivor_series() == [4, 4, 3, 2, 1, 1, 1]
    assert result.ledger.stage_names() == [
        "input",
        "structural",
        "recombination",
        "trivial_trees",
        "topological_outliers",
        "phylogenetic_signal",
        "likelihood_mapping",
    ]
    assert any("only 1 loci survived" in w for w in result.warnings)

    run_dir = result.run_dir
    assert (run_dir / "problematic_alignments" / "recombination" / "geneD_cdnAln.fasta").exists()
    assert (run_dir / "problematic_alignments" / "trivial_trees" / "geneC_cdnAln.fasta").exists()
    quarantined = pd.read_csv(run_dir / "problematic_alignments" / "quarantined_loci.tsv", sep="\t")
    assert quarantined["locus"].tolist() == ["geneD", "geneC", "geneB"]
    assert quarantined["reason"].tolist()[2] == "kde_outlier"

    top = run_dir / "top_1_markers"
    assert (top / "geneA_cdnAln.fasta").exists()
    assert (top / "concat_cdnAlns.fna").exists()
    assert (top / "concat_cdnAlns_partitions.txt").read_text(encoding="utf-8") == "DNA, geneA = 1-9\n"
    assert (top / "species_trees" / "species_tree_top1geneTrees.sptree").exists()
    assert (top / "species_trees" / "supermatrix_top1markers.sptree").exists()
    assert result.species is not None and result.species.species_tree is not None

    overview = pd.read_csv(run_dir / "pipeline_filtering_overview.tsv", sep="\t")
    assert overview["survivors"].tolist() == [4, 4, 3, 2, 1, 1, 1]
    outputs = pd.read_csv(run_dir / "pipeline_output_files_overview.tsv", sep="\t")
    assert "run_manifest" in outputs["name"].tolist()
    assert (run_dir / "figures" / "filtering_overview.png").exists()
    assert (run_dir / "tree_labels.tsv").read_text(encoding="utf-8").splitlines()[0] == "t1\tt1"

    manifest = _manifest(run_dir)
    assert manifest["status"] == "completed"
    assert manifest["markers"] == ["geneA"]
    assert [row["survivors"] for row in manifest["ledger"]] == [4, 4, 3, 2, 1, 1, 1]


def test_exhausted_stage_stops_before_concatenation(tmp_path: Path) -> None:
    tools = FakeTools(recombinant=list(LOCI))
    with pytest.raises(StageExhaustionError) as info:
        _run(tmp_path, tools)
    assert info.value.stage == "recombination"
    assert info.value.counts_before == 4
    assert info.value.ledger.survivor_series() == [4, 4, 0]

    run_dir = run_directory(PipelineConfig(), tmp_path / "out")
    assert not list(run_dir.rglob("concat_*"))
    assert not (run_dir / "marker_loci.tsv").exists()
    manifest = _manifest(run_dir)
    assert manifest["status"] == "exhausted"
    assert "recombination" in manifest["error"]
    overview = pd.read_csv(run_dir / "pipeline_filtering_overview.tsv", sep="\t")
    assert overview["stage"].tolist() == ["input", "structural", "recombination"]


def test_signal_combination_intersection_and_union(tmp_path: Path) -> None:
    tools = FakeTools(low_support=["geneC"], lmap={"geneB": 50.0})

    strict = _run(tmp_path, tools, outdir="intersection")
    assert strict.markers == ["geneA", "geneD"]
    assert strict.ledger["phylogenetic_signal"].failed == 1
    assert strict.ledger["likelihood_mapping"].examined == 3
    assert strict.ledger["likelihood_mapping"].failed == 1

    lenient = _run(tmp_path, tools, outdir="union", signal_combination="union")
    assert lenient.markers == ["geneA", "geneB", "geneC", "geneD"]
    assert lenient.ledger["phylogenetic_signal"].inconclusive == 1
    assert lenient.ledger["likelihood_mapping"].passed == 4
    markers = pd.read_csv(lenient.run_dir / "marker_loci.tsv", sep="\t", keep_default_na=False)
    assert "pending_likelihood_mapping" not in "".join(markers["flags"])


def test_likelihood_mapping_can_be_disabled(tmp_path: Path) -> None:
    tools = FakeTools(low_support=["geneC"], lmap={"geneB": 50.0})
    result = _run(tmp_path, tools, likelihood_mapping=False)
    assert "likelihood_mapping" not in result.ledger
    assert result.markers == ["geneA", "geneB", "geneD"]


def test_missing_outlier_tool_passes_loci_through(tmp_path: Path) -> None:
    result = _run(tmp_path, FakeTools(outlier_tool_missing=True))
    counts = result.ledger["topological_outliers"]
    assert counts.skipped
    assert counts.passed == 4
    assert "outlier_filter_skipped" in result.flags
    assert any("outlier" in w for w in result.warnings)
    assert len(result.markers) == 4
    assert "outlier_filter_skipped" in _manifest(result.run_dir)["flags"]


def test_too_few_informative_sites_is_retained(tmp_path: Path) -> None:
    result = _run(tmp_path, FakeTools(too_few_sites=["geneB"], recombinant=["geneD"]))
    counts = result.ledger["recombination"]
    assert (counts.passed, counts.failed, counts.inconclusive) == (2, 1, 1)
    assert "geneB" in result.markers
    assert any("too few informative sites" in w for w in result.warnings)

    markers = pd.read_csv(result.run_dir / "marker_loci.tsv", sep="\t")
    row = markers.set_index("locus").loc["geneB"]
    assert row["flags"] == "too_few_informative_sites"
    assert math.isnan(row["phi_p_normal"])

    tests = pd.read_csv(result.run_dir / "work" / "recombination" / "recombination_tests.tsv", sep="\t")
    assert tests["verdict"].tolist() == ["pass", "inconclusive", "pass", "fail"]


def test_alignment_failure_quarantines_sources(tmp_path: Path) -> None:
    result = _run(tmp_path, FakeTools(failing_alignments=["geneC"]))
    assert result.ledger["structural"].failed == 1
    assert result.markers == ["geneA", "geneB", "geneD"]
    target = result.run_dir / "problematic_alignments" / "structural"
    assert (target / "geneC.fna").exists()
    assert (target / "geneC.faa").exists()
    quarantined = pd.read_csv(result.run_dir / "problematic_alignments" / "quarantined_loci.tsv", sep="\t")
    assert quarantined["reason"].iloc[0].startswith("alignment_failed:")
    assert any("1 of 4 alignment jobs failed" in w for w in result.warnings)


def test_popgen_mode_reports_polymorphism(tmp_path: Path) -> None:
    result = _run(tmp_path, FakeTools(), mode="popgen")
    assert result.status == "completed"
    assert result.run_dir.name.startswith("phylomarkers_run_AIR2tDNA_")
    assert "phylogenetic_signal" not in result.ledger
    assert "likelihood_mapping" not in result.ledger
    assert result.ledger.stage_names()[-1] == "neutrality"
    assert result.ledger["neutrality"].examined == 4
    assert "geneA" in result.neutral_loci

    table = pd.read_csv(result.run_dir / "popgen_stats" / "polymorphism_descript_stats.tsv", sep="\t")
    assert table["Alignment_name"].tolist() == ["geneA", "geneB", "geneC", "geneD"]
    assert table.set_index("Alignment_name").loc["geneA", "segregating_sites"] == 0
    assert (result.run_dir / "neutral_loci" / "concat_cdnAlns.fna").exists()
    assert (result.run_dir / "figures" / "tajimas_d.png").exists()
    assert result.species is None


def test_existing_run_directory_is_rejected(tmp_path: Path) -> None:
    run_directory(PipelineConfig(), tmp_path / "out").mkdir(parents=True)
    with pytest.raises(StructuralError, match="already exists"):
        _run(tmp_path, FakeTools())


def test_boundary_run_filters_one_locus_per_stage(tmp_path: Path) -> None:
    tools = FakeTools(failing_alignments=["geneD"], recombinant=["geneC"], outliers=["geneB"])
    result = _run(tmp_path, tools)

    assert result.status == "completed"
    assert result.markers == ["geneA"]
    assert result.ledger.survivor_series() == [4, 3, 2, 2, 1, 1, 1]
    assert result.ledger["structural"].passed == 3
    assert result.ledger["recombination"].passed == 2
    assert result.ledger["topological_outliers"].passed == 1
    quarantined = pd.read_csv(result.run_dir / "problematic_alignments" / "quarantined_loci.tsv", sep="\t")
    assert quarantined["stage"].tolist() == ["structural", "recombination", "topological_outliers"]
    assert (result.run_dir / "top_1_markers" / "geneA_cdnAln.fasta").exists()


def test_failed_species_tree_estimation_keeps_ledger(tmp_path: Path) -> None:
    with pytest.raises(EstimationError) as info:
        _run(tmp_path, FakeTools(estimators_fail=True))
    assert info.value.stage == "species_trees"
    assert info.value.counts_before == 4
    assert info.value.ledger.survivor_series() == [4, 4, 4, 4, 4, 4, 4]

    run_dir = run_directory(PipelineConfig(), tmp_path / "out")
    manifest = _manifest(run_dir)
    assert manifest["status"] == "estimation_failed"
    assert "No species tree" in manifest["error"]
    assert (run_dir / "marker_loci.tsv").exists()


def test_figure_failure_does_not_mask_run_outcome(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    import phylomarkers.plots as plots

    def _broken(*args, **kwargs):
        raise RuntimeError("no display backend")

    monkeypatch.setattr(plots, "plot_filtering_overview", _broken)
    with pytest.raises(StageExhaustionError):
        _run(tmp_path, FakeTools(recombinant=list(LOCI)))

    run_dir = run_directory(PipelineConfig(), tmp_path / "out")
    manifest = _manifest(run_dir)
    assert manifest["status"] == "exhausted"
    assert any("figures could not be drawn: no display backend" in w for w in manifest["warnings"])
    assert (run_dir / "pipeline_filtering_overview.tsv").exists()


def test_molecular_clock_test_annotates_markers(tmp_path: Path) -> None:
    clock = {"geneA": (-100.0, -101.0), "geneB": (-100.0, -120.0), "geneC": (-250.0, -252.5)}
    result = _run(tmp_path, FakeTools(clock=clock), eval_clock=True)

    assert result.status == "completed"
    assert result.run_dir.name == "phylomarkers_run_AIR1tDNA_k1.5_m0.65_Thigh_K_test"
    assert result.ledger.survivor_series() == [4, 4, 4, 4, 4, 4, 4]
    assert result.clock is not None
    assert result.clock["locus"].tolist() == ["geneA", "geneB", "geneC"]
    assert result.clock["mol_clock"].tolist() == ["yes", "no", "yes"]
    assert any("1 of 4 molecular_clock jobs failed" in w for w in result.warnings)

    top = result.run_dir / "top_4_markers"
    table = pd.read_csv(top / "mol_clock_MGTRG_rmidpoint_q099_ClockTest.tsv", sep="\t")
    assert table["df"].tolist() == [3, 3, 3]
    assert table["LRT"].tolist() == pytest.approx([2.0, 40.0, 5.0])
    attributes = pd.read_csv(top / "phylogenetic_attributes_of_top4_gene_trees.tsv", sep="\t")
    assert attributes["locus"].tolist() == ["geneA", "geneB", "geneC", "geneD"]
    assert math.isnan(attributes.set_index("locus").loc["geneD", "LRT"])


def test_molecular_clock_without_tester_is_skipped(tmp_path: Path) -> None:
    result = _run(tmp_path, FakeTools(), eval_clock=True)
    assert result.status == "completed"
    assert result.clock is None
    assert "clock_test_skipped" in result.flags
    assert any("clock test was skipped" in w for w in result.warnings)
