from pathlib import Path

import pytest

from phylomarkers.io import Alignment, read_fasta, read_fasta_records, write_fasta


def test_read_fasta_rectangular_alignment(tmp_path: Path) -> None:
    fasta = tmp_path / "a.fasta"
    fasta.write_text(">s1\nACGT\n>s2\nA-GT\n", encoding="utf-8")
    alignment = read_fasta(fasta)
    assert alignment.n_sequences == 2
    assert alignment.length == 4
    assert alignment.column(1) == "C-"
    assert alignment.taxa == frozenset({"s1", "s2"})


def test_read_fasta_raises_on_non_rectangular_input(tmp_path: Path) -> None:
    fasta = tmp_path / "bad.fasta"
    fasta.write_text(">s1\nACGT\n>s2\nACG\n", encoding="utf-8")
    with pytest.raises(ValueError, match="equal length"):
        read_fasta(fasta)


def test_read_fasta_records_allows_ragged_multiline_sequences(tmp_path: Path) -> None:
    fasta = tmp_path / "cluster.fna"
    fasta.write_text(">ID:1|[Homo sapiens]|geneA\nacgt\nACG\n\n>ID:2|[Mus musculus]|geneA\nATG\n", encoding="utf-8")
    records = read_fasta_records(fasta)
    assert [r.name for r in records] == ["ID:1|[Homo sapiens]|geneA", "ID:2|[Mus musculus]|geneA"]
    assert records[0].sequence == "ACGTACG"
    assert records[1].sequence == "ATG"


def test_read_fasta_records_rejects_headerless_sequence(tmp_path: Path) -> None:
    fasta = tmp_path / "bad.fna"
    fasta.write_text("ACGT\n>s1\nACGT\n", encoding="utf-8")
    with pytest.raises(ValueError, match="without header"):
        read_fasta_records(fasta)


def test_write_fasta_wraps_lines(tmp_path: Path) -> None:
    path = write_fasta(tmp_path / "out" / "x.fasta", ["a", "b"], ["ACGTACGT", "TT"], width=3)
    assert path.read_text(encoding="utf-8") == ">a\nACG\nTAC\nGT\n>b\nTT\n"
    assert read_fasta_records(path)[0].sequence == "ACGTACGT"


def test_alignment_lookup_and_reorder() -> None:
    aln = Alignment(names=("a", "b", "c"), sequences=("AA", "CC", "GG"))
    assert aln.sequence_of("b") == "CC"
    with pytest.raises(KeyError):
        aln.sequence_of("z")
    reordered = aln.reordered(["c", "a", "b"])
    assert reordered.names == ("c", "a", "b")
    assert reordered.sequences == ("GG", "AA", "CC")
