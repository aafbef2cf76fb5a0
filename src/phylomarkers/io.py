from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence


@dataclass(frozen=True)
class SequenceRecord:
    name: str
    sequence: str


@dataclass(frozen=True)
class Alignment:
    names: tuple[str, ...]
    sequences: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.names:
            raise ValueError("Alignment has no sequences.")
        if len(self.names) != len(self.sequences):
            raise ValueError("Alignment names and sequences are misaligned.")
        lengths = {len(seq) for seq in self.sequences}
        if len(lengths) != 1:
            raise ValueError("All sequences in an alignment must have equal length.")

    @property
    def length(self) -> int:
        return len(self.sequences[0])

    @property
    def n_sequences(self) -> int:
        return len(self.sequences)

    @property
    def taxa(self) -> frozenset[str]:
        return frozenset(self.names)

    def column(self, index: int) -> str:
        return "".join(seq[index] for seq in self.sequences)

    def iter_columns(self) -> Iterable[str]:
        for i in range(self.length):
            yield self.column(i)

    def sequence_of(self, name: str) -> str:
        try:
            return self.sequences[self.names.index(name)]
        except ValueError as exc:
            raise KeyError(f"Taxon not present in alignment: {name}") from exc

    def reordered(self, names: Sequence[str]) -> "Alignment":
        return Alignment(
            names=tuple(names),
            sequences=tuple(self.sequence_of(name) for name in names),
        )


def _normalize_sequence(text: str) -> str:
    return "".join(text.split()).upper()


def read_fasta_records(path: str | Path) -> list[SequenceRecord]:
    """Read FASTA records without requiring equal sequence lengths."""
    path = Path(path)
    names: list[str] = []
    sequences: list[str] = []
    chunks: list[str] = []

    if not path.exists():
        raise FileNotFoundError(f"FASTA file not found: {path}")

    with path.open("r", encoding="utf-8") as handle:
        for line_no, raw in enumerate(handle, start=1):
            line = raw.strip()
            if not line:
                continue
            if line.startswith(">"):
                if names:
                    sequences.append(_normalize_sequence("".join(chunks)))
                    chunks = []
                header = line[1:].strip()
                if not header:
                    raise ValueError(f"Missing FASTA header name at line {line_no} in {path}")
                names.append(header)
                continue
            if not names:
                raise ValueError(f"FASTA sequence without header at line {line_no} in {path}")
            chunks.append(line)

    if names:
        sequences.append(_normalize_sequence("".join(chunks)))

    if not names:
        raise ValueError(f"No FASTA records found in {path}")

    return [SequenceRecord(name=name, sequence=seq) for name, seq in zip(names, sequences)]


def read_fasta(path: str | Path) -> Alignment:
    """Read a FASTA file as a strict rectangular alignment."""
    records = read_fasta_records(path)
    return Alignment(
        names=tuple(rec.name for rec in records),
        sequences=tuple(rec.sequence for rec in records),
    )


def write_fasta(
    path: str | Path,
    names: Sequence[str],
    sequences: Sequence[str],
    width: int = 60,
) -> Path:
    path = Path(path)
    if len(names) != len(sequences):
        raise ValueError("FASTA names and sequences are misaligned.")
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        for name, seq in zip(names, sequences):
            handle.write(f">{name}\n")
            if not seq:
                handle.write("\n")
                continue
            for i in range(0, len(seq), width):
                handle.write(seq[i : i + width] + "\n")
    return path


def write_alignment(path: str | Path, alignment: Alignment) -> Path:
    return write_fasta(path, alignment.names, alignment.sequences)
