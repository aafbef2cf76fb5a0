from __future__ import annotations

import itertools
from typing import Sequence

from .io import Alignment, SequenceRecord


NUCLEOTIDES = ("T", "C", "A", "G")
_STANDARD_AA = "FFLLSSSSYY**CC*WLLLLPPPPHHQQRRRRIIIMTTTTNNKKSSRRVVVVAAAADDEEGGGG"
_CODONS = tuple("".join(p) for p in itertools.product(NUCLEOTIDES, repeat=3))

# NCBI translation tables accepted by pal2nal, as differences from table 1.
_TABLE_OVERRIDES: dict[int, dict[str, str]] = {
    1: {},
    2: {"AGA": "*", "AGG": "*", "ATA": "M", "TGA": "W"},
    3: {"ATA": "M", "CTT": "T", "CTC": "T", "CTA": "T", "CTG": "T", "TGA": "W"},
    4: {"TGA": "W"},
    5: {"AGA": "S", "AGG": "S", "ATA": "M", "TGA": "W"},
    6: {"TAA": "Q", "TAG": "Q"},
    9: {"AAA": "N", "AGA": "S", "AGG": "S", "TGA": "W"},
    10: {"TGA": "C"},
    11: {},
    12: {"CTG": "S"},
    13: {"AGA": "G", "AGG": "G", "ATA": "M", "TGA": "W"},
    14: {"AAA": "N", "AGA": "S", "AGG": "S", "TAA": "Y", "TGA": "W"},
    15: {"TAG": "Q"},
    16: {"TAG": "L"},
    21: {"AAA": "N", "AGA": "S", "AGG": "S", "ATA": "M", "TGA": "W"},
    22: {"TCA": "*", "TAG": "L"},
    23: {"TTA": "*"},
}

# Codons that open a reading frame as Met, per table.
_START_CODONS: dict[int, frozenset[str]] = {
    1: frozenset({"TTG", "CTG", "ATG"}),
    2: frozenset({"ATT", "ATC", "ATA", "ATG", "GTG"}),
    3: frozenset({"ATA", "ATG"}),
    4: frozenset({"TTA", "TTG", "CTG", "ATT", "ATC", "ATA", "ATG", "GTG"}),
    5: frozenset({"TTG", "ATT", "ATC", "ATA", "ATG", "GTG"}),
    6: frozenset({"ATG"}),
    9: frozenset({"ATG", "GTG"}),
    10: frozenset({"ATG"}),
    11: frozenset({"TTG", "CTG", "ATT", "ATC", "ATA", "ATG", "GTG"}),
    12: frozenset({"CTG", "ATG"}),
    13: frozenset({"TTG", "ATA", "ATG", "GTG"}),
    14: frozenset({"ATG"}),
    15: frozenset({"ATG"}),
    16: frozenset({"ATG"}),
    21: frozenset({"ATG", "GTG"}),
    22: frozenset({"ATG"}),
    23: frozenset({"ATT", "ATG", "GTG"}),
}

SUPPORTED_TABLES: tuple[int, ...] = tuple(sorted(_TABLE_OVERRIDES))


def genetic_code(table: int = 11) -> dict[str, str]:
    if table not in _TABLE_OVERRIDES:
        raise ValueError(
            f"Unsupported genetic code table {table}; expected one of {list(SUPPORTED_TABLES)}."
        )
    code = dict(zip(_CODONS, _STANDARD_AA))
    code.update(_TABLE_OVERRIDES[table])
    return code


def start_codons(table: int = 11) -> frozenset[str]:
    genetic_code(table)
    return _START_CODONS[table]


def translate(sequence: str, table: int = 11) -> str:
    code = genetic_code(table)
    seq = sequence.upper().replace("U", "T")
    usable = len(seq) - (len(seq) % 3)
    return "".join(code.get(seq[i : i + 3], "X") for i in range(0, usable, 3))


def thread_codons(
    protein: Alignment,
    nucleotide: Sequence[SequenceRecord],
    *,
    table: int = 11,
    drop_gap_columns: bool = True,
    drop_mismatches: bool = True,
) -> Alignment:
    """Back-translate a protein alignment into a codon alignment.

    Every aligned residue consumes the next codon of the matching nucleotide
    sequence; protein gaps become ``---``. Codon columns with any gap are
    dropped when ``drop_gap_columns`` is set, and columns holding a codon that
    does not translate to its aligned residue are dropped when
    ``drop_mismatches`` is set. An alternative start codon aligned to the
    first residue as ``M`` is not a mismatch. Trailing nucleotides (a stop
    codon or an incomplete codon) are ignored.
    """
    code = genetic_code(table)
    starts = start_codons(table)
    by_name = {rec.name: rec.sequence.upper().replace("U", "T") for rec in nucleotide}
    missing = [name for name in protein.names if name not in by_name]
    if missing:
        raise ValueError(f"No nucleotide sequence for aligned taxa: {', '.join(missing)}")

    codon_rows: list[list[str]] = []
    bad_columns: set[int] = set()
    for name, aligned in zip(protein.names, protein.sequences):
        nt = by_name[name]
        n_residues = sum(1 for aa in aligned if aa not in "-.")
        if len(nt) < 3 * n_residues:
            raise ValueError(
                f"Nucleotide sequence of '{name}' is too short for its protein "
                f"({len(nt)} nt for {n_residues} residues)."
            )
        row: list[str] = []
        pos = 0
        for col, aa in enumerate(aligned):
            if aa in "-.":
                row.append("---")
                continue
            codon = nt[pos : pos + 3]
            pos += 3
            row.append(codon)
            translated = code.get(codon)
            if pos == 3 and aa == "M" and codon in starts:
                continue
            if translated is not None and aa not in "X*" and translated != aa:
                bad_columns.add(col)
        codon_rows.append(row)

    keep: list[int] = []
    for col in range(protein.length):
        if drop_gap_columns and any(row[col] == "---" for row in codon_rows):
            continue
        if drop_mismatches and col in bad_columns:
            continue
        keep.append(col)

    return Alignment(
        names=protein.names,
        sequences=tuple("".join(row[col] for col in keep) for row in codon_rows),
    )
