from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from .errors import TaxonMismatchError
from .io import Alignment, write_fasta


GAP_SYMBOLS = frozenset("-.?")
NUCLEOTIDE_AMBIGUITY = frozenset("NRYSWKMBDHVX")
PROTEIN_AMBIGUITY = frozenset("XBZJ")


@dataclass(frozen=True)
class Partition:
    name: str
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class Supermatrix:
    names: tuple[str, ...]
    sequences: tuple[str, ...]
    partitions: tuple[Partition, ...] = field(default_factory=tuple)

    @property
    def length(self) -> int:
        return len(self.sequences[0]) if self.sequences else 0

    def as_alignment(self) -> Alignment:
        return Alignment(names=self.names, sequences=self.sequences)


def concatenate(
    alignments: Sequence[Alignment],
    names: Sequence[str] | None = None,
) -> Supermatrix:
    """Join alignments column-wise in the given order.

    Rows follow the taxon order of the first alignment; every other alignment
    must hold exactly the same taxon set.
    """
    if not alignments:
        raise ValueError("Cannot concatenate an empty list of alignments.")
    if names is None:
        names = [f"locus_{i}" for i in range(1, len(alignments) + 1)]
    if len(names) != len(alignments):
        raise ValueError("Partition names and alignments are misaligned.")

    reference = alignments[0].names
    ref_set = set(reference)
    rows: dict[str, list[str]] = {taxon: [] for taxon in reference}
    partitions: list[Partition] = []
    offset = 0
    for name, alignment in zip(names, alignments):
        taxa = set(alignment.names)
        if taxa != ref_set:
            raise TaxonMismatchError(
                name,
                missing=sorted(ref_set - taxa),
                extra=sorted(taxa - ref_set),
            )
        for taxon in reference:
            rows[taxon].append(alignment.sequence_of(taxon))
        partitions.append(Partition(name=name, start=offset + 1, end=offset + alignment.length))
        offset += alignment.length

    return Supermatrix(
        names=tuple(reference),
        sequences=tuple("".join(rows[taxon]) for taxon in reference),
        partitions=tuple(partitions),
    )


def _informative_states(column: str, ignore: frozenset[str]) -> set[str]:
    return {ch for ch in column.upper() if ch not in GAP_SYMBOLS and ch not in ignore}


def strip_uninformative_columns(matrix: Supermatrix, mol_type: str = "DNA") -> Supermatrix:
    """Remove columns without variation among resolved states (and all-gap columns)."""
    ignore = NUCLEOTIDE_AMBIGUITY if mol_type == "DNA" else PROTEIN_AMBIGUITY
    if not matrix.sequences:
        return matrix
    keep = []
    for idx in range(matrix.length):
        column = "".join(seq[idx] for seq in matrix.sequences)
        if len(_informative_states(column, ignore)) > 1:
            keep.append(idx)
    return Supermatrix(
        names=matrix.names,
        sequences=tuple("".join(seq[i] for i in keep) for seq in matrix.sequences),
    )


def write_supermatrix(matrix: Supermatrix, path: str | Path) -> Path:
    return write_fasta(path, matrix.names, matrix.sequences)


def write_partitions(matrix: Supermatrix, path: str | Path, mol_type: str = "DNA") -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    kind = "DNA" if mol_type == "DNA" else "WAG"
    lines = [f"{kind}, {p.name} = {p.start}-{p.end}" for p in matrix.partitions]
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    return path
