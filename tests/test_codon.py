import pytest

from phylomarkers.codon import SUPPORTED_TABLES, genetic_code, start_codons, thread_codons, translate
from phylomarkers.config import PipelineConfig
from phylomarkers.io import Alignment, SequenceRecord


def test_translate_with_alternative_tables() -> None:
    assert translate("ATGAAATAA") == "MK*"
    assert translate("ATGTGA", table=11) == "M*"
    assert translate("ATGTGA", table=4) == "MW"
    assert translate("ATGNNNAA") == "MX"
    with pytest.raises(ValueError, match="Unsupported genetic code"):
        genetic_code(99)


def test_thread_codons_drops_gap_columns() -> None:
    protein = Alignment(names=("s1", "s2"), sequences=("MK-L", "MKAL"))
    nucleotide = [
        SequenceRecord("s1", "ATGAAACTGTAA"),
        SequenceRecord("s2", "ATGAAAGCTCTG"),
    ]
    codons = thread_codons(protein, nucleotide)
    assert codons.names == ("s1", "s2")
    assert codons.sequences == ("ATGAAACTG", "ATGAAACTG")

    gapped = thread_codons(protein, nucleotide, drop_gap_columns=False)
    assert gapped.sequences == ("ATGAAA---CTG", "ATGAAAGCTCTG")


def test_thread_codons_drops_mismatched_codons() -> None:
    protein = Alignment(names=("s1", "s2"), sequences=("MK", "MK"))
    nucleotide = [SequenceRecord("s1", "ATGAAA"), SequenceRecord("s2", "ATGCCC")]
    assert thread_codons(protein, nucleotide).sequences == ("ATG", "ATG")
    kept = thread_codons(protein, nucleotide, drop_mismatches=False)
    assert kept.sequences == ("ATGAAA", "ATGCCC")


def test_thread_codons_rejects_missing_or_short_sequences() -> None:
    protein = Alignment(names=("s1", "s2"), sequences=("MK", "MK"))
    with pytest.raises(ValueError, match="No nucleotide sequence"):
        thread_codons(protein, [SequenceRecord("s1", "ATGAAA")])
    with pytest.raises(ValueError, match="too short"):
        thread_codons(protein, [SequenceRecord("s1", "ATGAAA"), SequenceRecord("s2", "ATG")])


def test_ncbi_tables_used_by_pal2nal_are_available() -> None:
    assert SUPPORTED_TABLES == (1, 2, 3, 4, 5, 6, 9, 10, 11, 12, 13, 14, 15, 16, 21, 22, 23)
    assert translate("TAATAG", table=6) == "QQ"
    assert translate("AGAAGG", table=5) == "SS"
    assert translate("CTGTGA", table=3) == "TW"
    assert translate("TGA", table=10) == "C"
    assert translate("TCATTA", table=22) == "*L"
    assert translate("TTA", table=23) == "*"


def test_config_accepts_only_supported_codon_tables() -> None:
    assert PipelineConfig(codon_table=5).validate().codon_table == 5
    for table in (0, 7, 8, 99):
        with pytest.raises(ValueError, match="codon_table must be one of"):
            PipelineConfig(codon_table=table).validate()


def test_alternative_start_codon_is_kept_at_first_residue() -> None:
    assert "GTG" in start_codons(11)
    assert "GTG" not in start_codons(1)
    protein = Alignment(names=("s1", "s2"), sequences=("MKV", "MKV"))
    nucleotide = [SequenceRecord("s1", "ATGAAAGTG"), SequenceRecord("s2", "GTGAAAGTG")]
    assert thread_codons(protein, nucleotide).sequences == ("ATGAAAGTG", "GTGAAAGTG")
    # Under the standard code GTG is not an initiator.
    assert thread_codons(protein, nucleotide, table=1).sequences == ("AAAGTG", "AAAGTG")


def test_start_codon_exemption_ignores_internal_methionines() -> None:
    protein = Alignment(names=("s1", "s2"), sequences=("-MK", "KMK"))
    nucleotide = [SequenceRecord("s1", "TTGAAA"), SequenceRecord("s2", "AAAATGAAA")]
    kept = thread_codons(protein, nucleotide, drop_gap_columns=False)
    assert kept.sequences == ("---TTGAAA", "AAAATGAAA")
    internal = Alignment(names=("s1", "s2"), sequences=("KMK", "KMK"))
    nucleotide = [SequenceRecord("s1", "AAATTGAAA"), SequenceRecord("s2", "AAAATGAAA")]
    assert thread_codons(internal, nucleotide).sequences == ("AAAAAA", "AAAAAA")
