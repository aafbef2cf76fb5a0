from pathlib import Path

from phylomarkers.errors import ToolExecutionError, ToolUnavailableError
from phylomarkers.io import Alignment
from phylomarkers.tools import Collaborators, RecombinationResult, decode_gene_tree


TAXA = ["t1", "t2", "t3", "t4", "t5"]
LOCI = {
    "geneA": ["ATGAAACTG"] * 5,
    "geneB": ["ATGAAACTG", "ATGAAACTG", "ATGCAACTG", "ATGCAGCTG", "ATGCAGCTG"],
    "geneC": ["ATGAAACTA", "ATGAAACTA", "ATGAAACTG", "ATGAAGCTG", "ATGAAGCTG"],
    "geneD": ["ATGGAACTG", "ATGGAACTG", "ATGAAACTG", "ATGAAACCG", "ATGAAACCG"],
}
FULL_TREE = "((t1:0.1,t2:0.1){s}:0.05,(t4:0.1,t5:0.1){s}:0.05,t3:0.2);"
SMALL_TREE = "((t1:0.1,t2:0.1)0.9:0.1,t3:0.2);"


def write_loci(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name, seqs in LOCI.items():
        nt = []
        aa = []
        for i, (taxon, seq) in enumerate(zip(TAXA, seqs), start=1):
            header = f">ID:{i}|[{taxon}]|{name}"
            nt.extend([header, seq])
            aa.extend([header, "MKL"])
        (directory / f"{name}.fna").write_text("\n".join(nt) + "\n", encoding="utf-8")
        (directory / f"{name}.faa").write_text("\n".join(aa) + "\n", encoding="utf-8")
    return directory


def _locus_of(path: Path) -> str:
    return path.name.split("_")[0]


class FakeTools:
    """Scripted stand-ins for the external aligner, tests and tree searches."""

    def __init__(
        self,
        *,
        failing_alignments=(),
        recombinant=(),
        too_few_sites=(),
        trivial=(),
        outliers=(),
        low_support=(),
        lmap=None,
        outlier_tool_missing=False,
        estimators_fail=False,
        clock=None,
    ) -> None:
        self.failing_alignments = set(failing_alignments)
        self.recombinant = set(recombinant)
        self.too_few_sites = set(too_few_sites)
        self.trivial = set(trivial)
        self.outliers = set(outliers)
        self.low_support = set(low_support)
        self.lmap = dict(lmap or {})
        self.outlier_tool_missing = outlier_tool_missing
        self.estimators_fail = estimators_fail
        self.clock = clock

    def align(self, locus, workdir: Path, mol_type: str) -> Alignment:
        if locus.name in self.failing_alignments:
            raise RuntimeError(f"aligner crashed on {locus.name}")
        records = locus.records(mol_type)
        return Alignment(
            names=tuple(rec.name for rec in records),
            sequences=tuple(rec.sequence for rec in records),
        )

    def recombination(self, alignment_path: Path, workdir: Path) -> RecombinationResult:
        name = _locus_of(alignment_path)
        if name in self.too_few_sites:
            return RecombinationResult(float("nan"), float("nan"), inconclusive=True)
        if name in self.recombinant:
            return RecombinationResult(0.001, 0.01)
        return RecombinationResult(0.6, 0.5)

    def tree_search(self, alignment_path: Path, workdir: Path, mol_type: str):
        name = _locus_of(alignment_path)
        if name in self.trivial:
            newick = SMALL_TREE
        else:
            newick = FULL_TREE.format(s="0.3" if name in self.low_support else "0.95")
        return decode_gene_tree(newick, locus_id=0, model="GTR", scale="unit")

    def outlier_test(self, trees, workdir: Path, stringency: float) -> dict[int, str]:
        if self.outlier_tool_missing:
            raise ToolUnavailableError("kdetrees is not installed")
        return {t.locus_id: "outlier" if t.path.stem in self.outliers else "ok" for t in trees}

    def likelihood_mapping(self, alignment_path: Path, tree, workdir: Path) -> float:
        return self.lmap.get(_locus_of(alignment_path), 90.0)

    def species_tree(self, trees_path: Path, workdir: Path) -> str:
        if self.estimators_fail:
            raise ToolExecutionError("astral4", "rc=1")
        return "((t1,t2),t3,(t4,t5));"

    def supermatrix_tree(self, matrix_path: Path, workdir: Path, constraint, mol_type: str) -> str:
        if self.estimators_fail:
            raise ToolExecutionError("iqtree", "rc=2")
        return "((t1:0.1,t2:0.1):0.05,t3:0.2,(t4:0.1,t5:0.1):0.05);"

    def clock_test(self, alignment_path: Path, tree, workdir: Path) -> tuple[float, float]:
        name = _locus_of(alignment_path)
        if name not in self.clock:
            raise ToolExecutionError("paup", "missing_clock_scores")
        return self.clock[name]

    def collaborators(self) -> Collaborators:
        return Collaborators(
            aligner=self.align,
            recombination_test=self.recombination,
            tree_search=self.tree_search,
            outlier_test=self.outlier_test,
            likelihood_mapping=self.likelihood_mapping,
            species_tree_estimator=self.species_tree,
            constrained_search=self.supermatrix_tree,
            clock_test=self.clock_test if self.clock is not None else None,
            names={"aligner": "fake"},
        )
