from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Sequence

from .errors import StructuralError, ValidationError
from .io import SequenceRecord, read_fasta_records
from .taxa_normalize import (
    deduplicate_labels,
    extract_taxon,
    extract_taxon_field,
    sanitize_file_stem,
)


NUCLEOTIDE_SUFFIX = ".fna"
PROTEIN_SUFFIX = ".faa"
NUCLEOTIDE_SYMBOLS = set("ACGTURYSWKMBDHVN")
PROTEIN_SYMBOLS = set("ACDEFGHIKLMNPQRSTVWYBZXJUO")


@dataclass(frozen=True)
class RawLocus:
    name: str
    nucleotide_path: Path
    protein_path: Path


@dataclass(frozen=True)
class Locus:
    locus_id: int
    name: str
    taxa: tuple[str, ...]
    nucleotide: tuple[SequenceRecord, ...]
    protein: tuple[SequenceRecord, ...]
    source_paths: tuple[Path, Path]

    @property
    def n_taxa(self) -> int:
        return len(self.taxa)

    @property
    def key(self) -> str:
        return f"{self.locus_id}_{self.name}"

    def records(self, mol_type: str) -> tuple[SequenceRecord, ...]:
        return self.nucleotide if mol_type == "DNA" else self.protein


@dataclass
class ActiveSet:
    loci: list[Locus]
    taxa: tuple[str, ...]
    label_map: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.loci)

    def __iter__(self) -> Iterator[Locus]:
        return iter(self.loci)

    def by_id(self, locus_id: int) -> Locus:
        for locus in self.loci:
            if locus.locus_id == locus_id:
                return locus
        raise KeyError(f"Unknown locus id: {locus_id}")

    def write_tree_labels(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            for label in self.taxa:
                handle.write(f"{label}\t{self.label_map.get(label, label)}\n")
        return path


def discover_loci(input_dir: str | Path) -> list[RawLocus]:
    """Pair ``*.fna`` and ``*.faa`` files of a directory by file stem."""
    input_dir = Path(input_dir)
    if not input_dir.is_dir():
        raise StructuralError(f"Input directory not found: {input_dir}")

    fna = {p.stem: p for p in sorted(input_dir.iterdir()) if p.is_file() and p.suffix == NUCLEOTIDE_SUFFIX}
    faa = {p.stem: p for p in sorted(input_dir.iterdir()) if p.is_file() and p.suffix == PROTEIN_SUFFIX}
    if not fna:
        raise StructuralError(f"No {NUCLEOTIDE_SUFFIX} files found in {input_dir}")
    if not faa:
        raise StructuralError(f"No {PROTEIN_SUFFIX} files found in {input_dir}")
    if len(fna) != len(faa):
        raise ValidationError(
            f"Found {len(fna)} {NUCLEOTIDE_SUFFIX} files but {len(faa)} {PROTEIN_SUFFIX} files in {input_dir}"
        )
    unpaired = sorted(set(fna) ^ set(faa))
    if unpaired:
        raise ValidationError(f"Loci without a nucleotide/protein partner: {', '.join(unpaired)}")

    return [
        RawLocus(name=sanitize_file_stem(stem), nucleotide_path=fna[stem], protein_path=faa[stem])
        for stem in sorted(fna)
    ]


def _clean_sequence(seq: str, alphabet: set[str], fill: str, protein: bool) -> str:
    text = seq.upper().replace("-", "").replace(".", "")
    if protein:
        text = text.rstrip("*")
    return "".join(ch if ch in alphabet else fill for ch in text)


def _normalize_records(
    records: Sequence[SequenceRecord],
    *,
    cluster_format: str,
    protein: bool,
    path: Path,
) -> tuple[list[SequenceRecord], dict[str, str]]:
    raw_labels = []
    originals: dict[str, str] = {}
    for rec in records:
        try:
            raw_labels.append(extract_taxon(rec.name, cluster_format))
        except ValueError as exc:
            raise ValidationError(f"{path}: {exc}") from exc
    labels = deduplicate_labels(raw_labels)
    alphabet = PROTEIN_SYMBOLS if protein else NUCLEOTIDE_SYMBOLS
    fill = "X" if protein else "N"
    out: list[SequenceRecord] = []
    for label, rec in zip(labels, records):
        seq = _clean_sequence(rec.sequence, alphabet, fill, protein)
        if not seq:
            raise ValidationError(f"{path}: sequence '{rec.name}' is empty.")
        out.append(SequenceRecord(name=label, sequence=seq))
        originals.setdefault(label, extract_taxon_field(rec.name, cluster_format))
    return out, originals


def ingest(
    raw_loci: Sequence[RawLocus],
    *,
    cluster_format: str = "STD",
    min_taxa: int = 4,
) -> ActiveSet:
    """Load, normalize and validate every locus; any inconsistency rejects the whole set."""
    if not raw_loci:
        raise StructuralError("No loci to ingest.")

    loci: list[Locus] = []
    label_map: dict[str, str] = {}
    reference: tuple[str, ...] | None = None
    reference_name = ""

    for locus_id, raw in enumerate(raw_loci, start=1):
        try:
            nt_raw = read_fasta_records(raw.nucleotide_path)
            aa_raw = read_fasta_records(raw.protein_path)
        except (OSError, ValueError) as exc:
            raise ValidationError(f"Locus '{raw.name}': {exc}") from exc

        if len(nt_raw) != len(aa_raw):
            raise ValidationError(
                f"Locus '{raw.name}': {len(nt_raw)} nucleotide vs {len(aa_raw)} protein sequences."
            )
        nt, originals = _normalize_records(
            nt_raw, cluster_format=cluster_format, protein=False, path=raw.nucleotide_path
        )
        aa, _ = _normalize_records(
            aa_raw, cluster_format=cluster_format, protein=True, path=raw.protein_path
        )
        taxa = tuple(rec.name for rec in nt)
        if set(taxa) != {rec.name for rec in aa}:
            raise ValidationError(
                f"Locus '{raw.name}': nucleotide and protein files hold different taxa."
            )

        if reference is None:
            reference = taxa
            reference_name = raw.name
            if len(reference) < min_taxa:
                raise ValidationError(
                    f"Loci hold {len(reference)} taxa; at least {min_taxa} are required."
                )
        elif len(taxa) != len(reference):
            raise ValidationError(
                f"Locus '{raw.name}' holds {len(taxa)} sequences but '{reference_name}' holds "
                f"{len(reference)}; every locus must contain the same number of sequences."
            )
        elif set(taxa) != set(reference):
            missing = sorted(set(reference) - set(taxa))
            extra = sorted(set(taxa) - set(reference))
            raise ValidationError(
                f"Locus '{raw.name}' taxon set differs from '{reference_name}': "
                f"missing={missing} extra={extra}"
            )

        for label, original in originals.items():
            label_map.setdefault(label, original)
        loci.append(
            Locus(
                locus_id=locus_id,
                name=raw.name,
                taxa=taxa,
                nucleotide=tuple(nt),
                protein=tuple(aa),
                source_paths=(raw.nucleotide_path, raw.protein_path),
            )
        )

    assert reference is not None
    return ActiveSet(loci=loci, taxa=reference, label_map=label_map)


def load_repository(input_dir: str | Path, *, cluster_format: str = "STD", min_taxa: int = 4) -> ActiveSet:
    return ingest(discover_loci(input_dir), cluster_format=cluster_format, min_taxa=min_taxa)
