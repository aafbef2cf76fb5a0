import math

import pytest

from phylomarkers.io import Alignment
from phylomarkers.phylo import parse_newick
from phylomarkers.popgen import (
    POLYMORPHISM_COLUMNS,
    NeutralityBounds,
    fitch_steps,
    is_neutral,
    neutrality_bounds,
    polymorphism_stats,
    polymorphism_table,
    tajimas_d,
)


def _alignment() -> Alignment:
    return Alignment(
        names=("a", "b", "c", "d"),
        sequences=(
            "ACGTACGTAA",
            "ACGTACGTAA",
            "ACGAACGTTA",
            "ACGAACGTTC",
        ),
    )


def test_polymorphism_stats_counts_sites() -> None:
    row = polymorphism_stats("geneA", _alignment(), parse_newick("((a,b),(c,d));"))
    assert row["Alignment_name"] == "geneA"
    assert row["no_seqs"] == 4
    assert row["aln_len"] == 10
    assert row["segregating_sites"] == 3
    assert row["singletons"] == 1
    assert row["pars_info_sites"] == 2
    assert row["avg_perc_identity"] == pytest.approx(490.0 / 6.0)
    assert row["pi_per_gene"] == pytest.approx(11.0 / 6.0)
    assert row["theta_per_gene"] == pytest.approx(18.0 / 11.0)
    assert row["pi_per_site"] == pytest.approx(11.0 / 60.0)
    assert row["tajimas_D"] == pytest.approx(1.0898, abs=1e-3)
    assert row["consistency_idx"] == pytest.approx(1.0)
    assert row["homoplasy_idx"] == pytest.approx(0.0)
    assert not math.isnan(row["fu_and_li_D_star"])


def test_homoplasy_depends_on_gene_tree() -> None:
    row = polymorphism_stats("geneA", _alignment(), parse_newick("((a,c),(b,d));"))
    assert row["consistency_idx"] == pytest.approx(0.5)
    assert row["homoplasy_idx"] == pytest.approx(0.5)

    no_tree = polymorphism_stats("geneA", _alignment())
    assert math.isnan(no_tree["consistency_idx"])


def test_fitch_steps_on_polytomy() -> None:
    tree = parse_newick("(a,b,c,(d,e));")
    states = {"a": "A", "b": "A", "c": "A", "d": "G", "e": "G"}
    assert fitch_steps(tree, states) == 1


def test_invariant_alignment_has_undefined_neutrality_statistics() -> None:
    aln = Alignment(names=("a", "b", "c", "d"), sequences=("ACGT",) * 4)
    row = polymorphism_stats("flat", aln)
    assert row["segregating_sites"] == 0
    assert math.isnan(row["tajimas_D"])
    assert math.isnan(row["fu_and_li_D_star"])
    assert is_neutral(row, neutrality_bounds(4))
    assert math.isnan(tajimas_d(4, 0, 0.0))


def test_neutrality_bounds_and_verdicts() -> None:
    bounds = neutrality_bounds(10, alpha=0.05)
    assert bounds.tajima_lower < 0.0 < bounds.tajima_upper
    assert bounds.fu_li_upper == pytest.approx(1.959964, abs=1e-5)
    assert bounds.fu_li_lower == pytest.approx(-bounds.fu_li_upper)

    strict = NeutralityBounds(tajima_lower=-1.0, tajima_upper=1.0, fu_li_lower=-2.0, fu_li_upper=2.0)
    assert is_neutral({"tajimas_D": 0.5, "fu_and_li_D_star": 0.0}, strict)
    assert not is_neutral({"tajimas_D": 1.5, "fu_and_li_D_star": 0.0}, strict)
    assert not is_neutral({"tajimas_D": float("nan"), "fu_and_li_D_star": -2.5}, strict)


def test_polymorphism_table_has_fixed_columns() -> None:
    table = polymorphism_table([polymorphism_stats("geneA", _alignment())])
    assert list(table.columns) == POLYMORPHISM_COLUMNS
    assert table.loc[0, "tajimas_D"] == pytest.approx(1.0898, abs=1e-3)
