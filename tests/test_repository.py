from pathlib import Path

import pytest

from phylomarkers.errors import StructuralError, ValidationError
from phylomarkers.repository import discover_loci, ingest, load_repository
from phylomarkers.taxa_normalize import (
    deduplicate_labels,
    extract_taxon,
    extract_taxon_field,
    sanitize_file_stem,
)


TAXA = ["Escherichia coli K12", "Salmonella enterica LT2", "Shigella flexneri 2a", "Klebsiella oxytoca"]


def _write_records(path: Path, records: dict[str, str]) -> Path:
    lines: list[str] = []
    for name, seq in records.items():
        lines.append(f">{name}")
        lines.append(seq)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _write_locus(directory: Path, name: str, taxa: list[str] = TAXA) -> None:
    nt = {f"ID:{i}|[{taxon}]|{name}": "ATGAAACTG" for i, taxon in enumerate(taxa, start=1)}
    aa = {f"ID:{i}|[{taxon}]|{name}": "MKL*" for i, taxon in enumerate(taxa, start=1)}
    _write_records(directory / f"{name}.fna", nt)
    _write_records(directory / f"{name}.faa", aa)


def test_extract_taxon_from_cluster_headers() -> None:
    assert extract_taxon("ID:12|[Escherichia coli K12]|dnaA|345", "STD") == "Escherichia_coli_K12"
    assert extract_taxon_field("ID:12|[Escherichia  coli K12]|dnaA", "STD") == "Escherichia coli K12"
    assert extract_taxon("contig_7 some description", "EST") == "contig_7"
    assert extract_taxon("strain(1):a", "STD") == "strain1a"
    with pytest.raises(ValueError, match="taxon label"):
        extract_taxon("[()]", "STD")


def test_label_helpers() -> None:
    assert deduplicate_labels(["a", "a", "b", "a"]) == ["a", "a_2", "b", "a_3"]
    assert deduplicate_labels(["a", "a_2", "a"]) == ["a", "a_2", "a_3"]
    assert sanitize_file_stem("gene(1):x") == "gene1x"


def test_discover_and_ingest_loci(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneB")
    _write_locus(tmp_path, "geneA")
    active = load_repository(tmp_path)
    assert len(active) == 2
    assert [locus.name for locus in active] == ["geneA", "geneB"]
    assert [locus.locus_id for locus in active] == [1, 2]
    first = active.by_id(1)
    assert first.taxa[0] == "Escherichia_coli_K12"
    assert first.n_taxa == 4
    assert first.protein[0].sequence == "MKL"
    assert first.records("DNA")[0].sequence == "ATGAAACTG"
    assert first.key == "1_geneA"
    assert active.label_map["Escherichia_coli_K12"] == "Escherichia coli K12"

    labels = active.write_tree_labels(tmp_path / "out" / "tree_labels.tsv")
    assert labels.read_text(encoding="utf-8").splitlines()[0] == "Escherichia_coli_K12\tEscherichia coli K12"


def test_discover_rejects_missing_directory_and_empty_input(tmp_path: Path) -> None:
    with pytest.raises(StructuralError, match="not found"):
        discover_loci(tmp_path / "missing")
    with pytest.raises(StructuralError, match=".fna"):
        discover_loci(tmp_path)


def test_discover_requires_equal_fna_and_faa_counts(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA")
    _write_records(tmp_path / "geneB.fna", {"a": "ATG"})
    with pytest.raises(ValidationError, match="2 .fna files but 1 .faa"):
        discover_loci(tmp_path)


def test_discover_rejects_unpaired_files(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA")
    _write_records(tmp_path / "geneB.fna", {"a": "ATG"})
    _write_records(tmp_path / "geneC.faa", {"a": "M"})
    with pytest.raises(ValidationError, match="geneB, geneC"):
        discover_loci(tmp_path)


def test_ingest_rejects_inconsistent_taxon_sets(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA")
    _write_locus(tmp_path, "geneB", taxa=TAXA[:3] + ["Yersinia pestis"])
    with pytest.raises(ValidationError, match="taxon set differs"):
        ingest(discover_loci(tmp_path))


def test_ingest_rejects_differing_sequence_counts(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA")
    _write_locus(tmp_path, "geneB", taxa=TAXA + ["Yersinia pestis"])
    with pytest.raises(ValidationError, match="same number of sequences"):
        ingest(discover_loci(tmp_path))


def test_ingest_rejects_nucleotide_protein_count_mismatch(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA")
    _write_records(tmp_path / "geneA.faa", {f"ID:1|[{TAXA[0]}]|geneA": "MKL"})
    with pytest.raises(ValidationError, match="4 nucleotide vs 1 protein"):
        ingest(discover_loci(tmp_path))


def test_ingest_requires_minimum_taxa(tmp_path: Path) -> None:
    _write_locus(tmp_path, "geneA", taxa=TAXA[:3])
    with pytest.raises(ValidationError, match="at least 4"):
        ingest(discover_loci(tmp_path), min_taxa=4)


def test_ingest_cleans_gaps_and_illegal_symbols(tmp_path: Path) -> None:
    nt = {f"ID:{i}|[{taxon}]|g": "AT-G.AA*CTG" for i, taxon in enumerate(TAXA, start=1)}
    aa = {f"ID:{i}|[{taxon}]|g": "M-K#L*" for i, taxon in enumerate(TAXA, start=1)}
    _write_records(tmp_path / "g.fna", nt)
    _write_records(tmp_path / "g.faa", aa)
    locus = load_repository(tmp_path).by_id(1)
    assert locus.nucleotide[0].sequence == "ATGAANCTG"
    assert locus.protein[0].sequence == "MKXL"
