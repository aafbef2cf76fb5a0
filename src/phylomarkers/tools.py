from __future__ import annotations

import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from .codon import thread_codons
from .errors import ToolExecutionError, ToolUnavailableError
from .io import Alignment, read_fasta, write_fasta
from .phylo import parse_newick, parse_support_label, to_newick

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .repository import Locus


DOCKER_IMAGE = "vinuesa/get_phylomarkers:latest"

# -mset candidates for gene-tree ModelFinder runs, by search thoroughness.
IQT_DNA_MSETS = {
    "high": None,
    "medium": "K2P,HKY,TN,TNe,TIM,TIMe,TIM2,TIM2e,TIM3,TIM3e,TVM,TVMe,GTR",
    "low": "K2P,HKY,TN,TNe,TVM,TVMe,TIM,TIMe,GTR",
    "lowest": "K2P,HKY,TN,TNe,TVM,TIM,GTR",
}
IQT_PROT_MSETS = {
    "high": None,
    "medium": "LG,WAG,JTT,VT,Dayhoff,rtREV,cpREV,mtREV",
    "low": "LG,WAG,JTT,VT",
    "lowest": "LG,WAG",
}
FASTTREE_SEARCH_FLAGS = {
    "high": ["-bionj", "-slow", "-slownni", "-mlacc", "3"],
    "medium": ["-bionj", "-slownni", "-mlacc", "2"],
    "low": ["-bionj"],
    "lowest": ["-mlnni", "4"],
}
# PAUP* lset settings for the clock-test base models; +G is always added.
PAUP_CLOCK_MODELS = {
    "GTR": "nst=6 rmatrix=estimate basefreq=empirical",
    "TrN": "nst=6 rclass=(a b a a c a) rmatrix=estimate basefreq=empirical",
    "HKY": "nst=2 tratio=estimate basefreq=empirical",
    "K2P": "nst=2 tratio=estimate basefreq=equal",
    "F81": "nst=1 basefreq=empirical",
}


def fasttree_flags(thoroughness: str, spr: int = 4, spr_length: int = 8) -> list[str]:
    flags = list(FASTTREE_SEARCH_FLAGS[thoroughness])
    if thoroughness != "lowest":
        flags += ["-spr", str(spr), "-sprlength", str(spr_length)]
    return flags


@dataclass
class CommandOutcome:
    returncode: int
    stdout: str
    stderr: str
    runtime_sec: float
    command: str


@dataclass(frozen=True)
class ToolSpec:
    key: str
    local_bins: tuple[str, ...]
    container_bin: str

    @property
    def env_bin_key(self) -> str:
        return f"PHYLOMARKERS_{self.key}_BIN"

    @property
    def env_backend_key(self) -> str:
        return f"PHYLOMARKERS_{self.key}_BACKEND"

    @property
    def env_sif_key(self) -> str:
        return f"PHYLOMARKERS_{self.key}_SIF"


CLUSTALO = ToolSpec("CLUSTALO", ("clustalo", "clustal-omega"), "clustalo")
PHI = ToolSpec("PHI", ("Phi", "phi"), "Phi")
IQTREE = ToolSpec("IQTREE", ("iqtree", "iqtree2", "iqtree3"), "iqtree")
FASTTREE = ToolSpec("FASTTREE", ("FastTree", "fasttree", "FastTreeMP"), "FastTree")
KDETREES = ToolSpec("KDETREES", ("run_kdetrees.R",), "run_kdetrees.R")
ASTRAL = ToolSpec("ASTRAL", ("astral4", "astral"), "astral4")
PAUP = ToolSpec("PAUP", ("paup", "paup4"), "paup")

ALL_TOOLS = (CLUSTALO, PHI, IQTREE, FASTTREE, KDETREES, ASTRAL, PAUP)


@dataclass(frozen=True)
class RecombinationResult:
    p_normal: float
    p_permutation: float
    inconclusive: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "p_normal": self.p_normal,
            "p_permutation": self.p_permutation,
            "inconclusive": self.inconclusive,
        }


@dataclass(frozen=True)
class GeneTree:
    locus_id: int
    newick: str
    supports: tuple[float, ...]
    model: str
    n_leaves: int
    path: Path | None = None

    @property
    def mean_support(self) -> float:
        if not self.supports:
            return 0.0
        return float(sum(self.supports) / len(self.supports))


def _stderr_tail(stderr: str, n: int = 20) -> str:
    lines = stderr.strip().splitlines()
    if not lines:
        return ""
    return "\n".join(lines[-n:])


def run_cmd(cmd: list[str], cwd: Path, timeout_sec: int | None = 1800) -> CommandOutcome:
    started = time.perf_counter()
    proc = subprocess.run(
        cmd,
        cwd=str(cwd),
        capture_output=True,
        text=True,
        timeout=timeout_sec,
    )
    runtime = time.perf_counter() - started
    return CommandOutcome(
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        runtime_sec=float(runtime),
        command=" ".join(cmd),
    )


def select_backend(spec: ToolSpec) -> tuple[str, str]:
    """Resolve how to run a tool: ("local", path), ("docker", image) or ("singularity", sif)."""
    backend = os.environ.get(spec.env_backend_key, "auto").strip().lower()
    explicit_bin = os.environ.get(spec.env_bin_key)
    explicit_sif = os.environ.get(spec.env_sif_key)

    def _local() -> str | None:
        if explicit_bin:
            return explicit_bin
        for name in spec.local_bins:
            path = shutil.which(name)
            if path:
                return path
        return None

    if backend == "auto":
        local = _local()
        if local:
            return ("local", local)
        if shutil.which("docker"):
            return ("docker", DOCKER_IMAGE)
        if shutil.which("singularity"):
            return ("singularity", explicit_sif or f"docker://{DOCKER_IMAGE}")
        raise ToolUnavailableError(
            f"No runnable backend for {spec.container_bin} (local/docker/singularity unavailable). "
            f"Tried bins={list(spec.local_bins)}; set {spec.env_bin_key} to override."
        )

    if backend == "local":
        local = _local()
        if local:
            return ("local", local)
        raise ToolUnavailableError(f"{spec.env_bin_key} not set and local binary not found.")

    if backend == "docker":
        if shutil.which("docker"):
            return ("docker", DOCKER_IMAGE)
        raise ToolUnavailableError("docker requested but docker executable was not found.")

    if backend == "singularity":
        if shutil.which("singularity"):
            return ("singularity", explicit_sif or f"docker://{DOCKER_IMAGE}")
        raise ToolUnavailableError("singularity requested but singularity executable was not found.")

    raise ToolUnavailableError(f"Unknown backend '{backend}' in {spec.env_backend_key}.")


class ToolRunner:
    """Runs one external tool inside a job working directory."""

    def __init__(self, spec: ToolSpec, timeout_sec: int | None = 3600) -> None:
        self.spec = spec
        self.timeout_sec = timeout_sec
        self._backend: tuple[str, str] | None = None

    @property
    def backend(self) -> tuple[str, str]:
        if self._backend is None:
            self._backend = select_backend(self.spec)
        return self._backend

    def command(self, args: list[str], workdir: Path) -> list[str]:
        kind, ref = self.backend
        if kind == "local":
            return [ref, *args]
        mount = str(workdir.resolve())
        if kind == "docker":
            return [
                "docker", "run", "--rm",
                "-v", f"{mount}:/work", "-w", "/work",
                ref, self.spec.container_bin, *args,
            ]
        return [
            "singularity", "exec",
            "--bind", f"{mount}:/work", "--pwd", "/work",
            ref, self.spec.container_bin, *args,
        ]

    def run(self, args: list[str], workdir: Path, *, check: bool = True) -> CommandOutcome:
        workdir.mkdir(parents=True, exist_ok=True)
        cmd = self.command(args, workdir)
        try:
            outcome = run_cmd(cmd, workdir, self.timeout_sec)
        except subprocess.TimeoutExpired as exc:
            raise ToolExecutionError(self.spec.container_bin, f"timeout after {exc.timeout}s") from exc
        except FileNotFoundError as exc:
            raise ToolUnavailableError(f"Cannot execute {cmd[0]}: {exc}") from exc
        if check and outcome.returncode != 0:
            raise ToolExecutionError(
                self.spec.container_bin,
                f"rc={outcome.returncode}",
                _stderr_tail(outcome.stderr or outcome.stdout),
            )
        return outcome


def _stage_input(path: Path, workdir: Path) -> str:
    """Make ``path`` visible inside ``workdir`` and return its name there."""
    workdir.mkdir(parents=True, exist_ok=True)
    target = workdir / path.name
    if path.resolve() != target.resolve():
        shutil.copyfile(path, target)
    return target.name


# --------------------------------------------------------------------------
# Decoders for tool output text.

_FLOAT = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"


def decode_phi_log(text: str) -> RecombinationResult:
    """PhiPack report: ``PHI (Permutation): <p>`` and ``PHI (Normal): <p>`` lines."""
    if "Too few" in text:
        return RecombinationResult(p_normal=1.0, p_permutation=1.0, inconclusive=True)

    def _value(label: str) -> float:
        m = re.search(rf"PHI \({label}\):\s*(\S+)", text)
        if not m:
            raise ValueError(f"Phi output lacks the PHI ({label}) line.")
        raw = m.group(1)
        if raw.startswith("--"):
            return 1.0
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid PHI ({label}) p-value: {raw}") from exc

    return RecombinationResult(p_normal=_value("Normal"), p_permutation=_value("Permutation"))


def decode_iqtree_best_model(text: str) -> str:
    m = re.search(r"Best-fit model:\s*(\S+)", text)
    if m:
        return m.group(1)
    m = re.search(r"Model of substitution:\s*(\S+)", text)
    if m:
        return m.group(1)
    raise ValueError("IQ-TREE output does not report a best-fit model.")


def decode_iqtree_best_score(text: str) -> float:
    m = re.search(rf"BEST SCORE FOUND\s*:\s*({_FLOAT})", text)
    if not m:
        raise ValueError("IQ-TREE log does not report BEST SCORE FOUND.")
    return float(m.group(1))


def decode_lmap_report(text: str) -> float:
    """Percent of fully resolved quartets from an IQ-TREE likelihood-mapping report."""
    m = re.search(rf"Number of fully resolved\s+quartets[^\n]*?\(=\s*({_FLOAT})\s*%\)", text)
    if not m:
        raise ValueError("Likelihood-mapping report lacks the fully resolved quartets line.")
    return float(m.group(1))


def decode_paup_lscores(text: str) -> float:
    """Log-likelihood of the first tree in a PAUP* ``lscores`` score file."""
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for idx, line in enumerate(lines):
        header = line.split("\t")
        if "-lnL" not in header:
            continue
        column = header.index("-lnL")
        for row in lines[idx + 1 :]:
            fields = row.split("\t")
            if len(fields) > column and re.fullmatch(_FLOAT, fields[column].strip()):
                return -float(fields[column])
        break
    raise ValueError("PAUP score file lacks a -lnL value.")


def decode_kde_table(text: str, extension: str | None = None) -> dict[str, str]:
    """kdetrees result table: tree file name in the first column, 'outlier' flags a tree."""
    out: dict[str, str] = {}
    for line in text.splitlines():
        fields = line.strip().split("\t")
        if not fields or not fields[0] or fields[0] == "file":
            continue
        name = fields[0].strip().strip('"')
        if extension and name.endswith(f".{extension}"):
            name = name[: -(len(extension) + 1)]
        verdict = "outlier" if any(f.strip().strip('"') == "outlier" for f in fields[1:]) else "ok"
        out[name] = verdict
    return out


def decode_gene_tree(
    newick: str,
    *,
    locus_id: int,
    model: str,
    scale: str = "auto",
    path: Path | None = None,
) -> GeneTree:
    """Parse a gene tree and normalize its branch supports to [0, 1].

    ``scale`` is "percent" for IQ-TREE SH-aLRT/UFBoot labels (0-100), "unit"
    for FastTree SH-like values (0-1) and "auto" to infer percent scale when any
    value exceeds 1. For labels like ``87.5/99`` the first value is used.
    """
    tree = parse_newick(newick)
    nodes = []
    raw: list[float] = []
    for node in tree.internal_nodes():
        value = parse_support_label(node.name)
        if value is None:
            continue
        nodes.append(node)
        raw.append(value)
    if scale == "auto":
        divisor = 100.0 if any(v > 1.0 for v in raw) else 1.0
    elif scale == "percent":
        divisor = 100.0
    elif scale == "unit":
        divisor = 1.0
    else:
        raise ValueError(f"Unknown support scale: {scale}")
    supports = []
    for node, value in zip(nodes, raw):
        norm = min(max(value / divisor, 0.0), 1.0)
        node.support = norm
        node.name = None
        supports.append(norm)
    return GeneTree(
        locus_id=locus_id,
        newick=to_newick(tree),
        supports=tuple(supports),
        model=model,
        n_leaves=tree.n_leaves,
        path=path,
    )


# --------------------------------------------------------------------------
# Collaborator protocol.


@dataclass
class Collaborators:
    """Callables standing for the external algorithms a run depends on."""

    aligner: Callable[["Locus", Path, str], Alignment]
    recombination_test: Callable[[Path, Path], RecombinationResult]
    tree_search: Callable[[Path, Path, str], GeneTree]
    outlier_test: Callable[[list[GeneTree], Path, float], dict[int, str]]
    likelihood_mapping: Callable[[Path, GeneTree, Path], float]
    species_tree_estimator: Callable[[Path, Path], str]
    constrained_search: Callable[[Path, Path, "Path | None", str], str]
    clock_test: Callable[[Path, GeneTree, Path], tuple[float, float]] | None = None
    names: dict[str, str] = field(default_factory=dict)


class ExternalTools:
    """Concrete adapters built on the GET_PHYLOMARKERS tool stack."""

    def __init__(self, config: "PipelineConfig") -> None:
        self.config = config
        timeout = config.job_timeout_sec
        self.clustalo = ToolRunner(CLUSTALO, timeout)
        self.phi = ToolRunner(PHI, timeout)
        self.iqtree = ToolRunner(IQTREE, timeout)
        self.fasttree = ToolRunner(FASTTREE, timeout)
        self.kdetrees = ToolRunner(KDETREES, timeout)
        self.astral = ToolRunner(ASTRAL, None)
        self.paup = ToolRunner(PAUP, timeout)

    # alignment -------------------------------------------------------------

    def align(self, locus: "Locus", workdir: Path, mol_type: str) -> Alignment:
        workdir.mkdir(parents=True, exist_ok=True)
        faa = workdir / f"{locus.name}.faa"
        write_fasta(faa, [r.name for r in locus.protein], [r.sequence for r in locus.protein])
        out_name = f"{locus.name}_cluo.faaln"
        self.clustalo.run(
            ["-i", faa.name, "-o", out_name, "--output-order", "input-order", "--threads", "1", "--force"],
            workdir,
        )
        protein = read_fasta(workdir / out_name)
        if mol_type == "PROT":
            return protein
        return thread_codons(protein, locus.nucleotide, table=self.config.codon_table)

    # recombination -----------------------------------------------------------

    def recombination(self, alignment_path: Path, workdir: Path) -> RecombinationResult:
        name = _stage_input(alignment_path, workdir)
        outcome = self.phi.run(
            ["-f", name, "-p", str(self.config.phi_permutations)], workdir, check=False
        )
        text = outcome.stdout + "\n" + outcome.stderr
        (workdir / f"{Path(name).stem}_Phi.log").write_text(text, encoding="utf-8")
        try:
            return decode_phi_log(text)
        except ValueError as exc:
            raise ToolExecutionError("Phi", f"undecodable_output:rc={outcome.returncode}", str(exc)) from exc

    # gene trees ----------------------------------------------------------------

    def gene_tree(self, alignment_path: Path, workdir: Path, mol_type: str) -> GeneTree:
        name = _stage_input(alignment_path, workdir)
        stem = Path(name).stem
        if self.config.search_algorithm == "fasttree":
            model_flags = ["-nt", "-gtr"] if mol_type == "DNA" else ["-lg"]
            flags = fasttree_flags(
                self.config.thoroughness, self.config.fasttree_spr, self.config.fasttree_spr_length
            )
            outcome = self.fasttree.run(
                ["-quiet", *model_flags, "-gamma", *flags, "-log", f"{stem}.log", name], workdir
            )
            tree_path = workdir / f"{stem}.ph"
            tree_path.write_text(outcome.stdout, encoding="utf-8")
            model = "GTR+G" if mol_type == "DNA" else "LG+G"
            return decode_gene_tree(
                outcome.stdout, locus_id=0, model=model, scale="unit", path=tree_path
            )

        msets = IQT_DNA_MSETS if mol_type == "DNA" else IQT_PROT_MSETS
        args = ["-s", name, "-st", "DNA" if mol_type == "DNA" else "AA", "-m", "MFP"]
        mset = msets[self.config.thoroughness]
        if mset:
            args += ["-mset", mset]
        args += ["-T", "1", "-alrt", "1000", "-fast", "--prefix", stem, "--quiet", "-redo"]
        self.iqtree.run(args, workdir)
        tree_path = workdir / f"{stem}.treefile"
        if not tree_path.exists():
            raise ToolExecutionError("iqtree", "missing_treefile")
        report = workdir / f"{stem}.iqtree"
        model = decode_iqtree_best_model(report.read_text(encoding="utf-8", errors="replace"))
        return decode_gene_tree(
            tree_path.read_text(encoding="utf-8"),
            locus_id=0,
            model=model,
            scale="percent",
            path=tree_path,
        )

    # outliers ------------------------------------------------------------------

    def outliers(self, trees: list[GeneTree], workdir: Path, stringency: float) -> dict[int, str]:
        ext = "treefile" if self.config.search_algorithm == "iqtree" else "ph"
        workdir.mkdir(parents=True, exist_ok=True)
        names: dict[str, int] = {}
        with (workdir / "all_gene_trees.tre").open("w", encoding="utf-8") as handle:
            for tree in trees:
                base = f"locus_{tree.locus_id}"
                names[base] = tree.locus_id
                (workdir / f"{base}.{ext}").write_text(tree.newick + "\n", encoding="utf-8")
                handle.write(tree.newick + "\n")
        self.kdetrees.run([ext, "all_gene_trees.tre", f"{stringency:g}"], workdir, check=False)
        table = workdir / "kde_dfr_file_all_gene_trees.tre.tab"
        if not table.exists() or table.stat().st_size == 0:
            raise ToolUnavailableError(
                "kdetrees did not write kde_dfr_file_all_gene_trees.tre.tab; "
                "check that R with the kdetrees and ape packages is installed."
            )
        verdicts = decode_kde_table(table.read_text(encoding="utf-8"), extension=ext)
        return {names[k]: v for k, v in verdicts.items() if k in names}

    # likelihood mapping -------------------------------------------------------

    def lmap(self, alignment_path: Path, tree: GeneTree, workdir: Path) -> float:
        name = _stage_input(alignment_path, workdir)
        stem = Path(name).stem
        tree_file = workdir / f"{stem}_lmap_input.nwk"
        tree_file.write_text(tree.newick + "\n", encoding="utf-8")
        prefix = f"lmapping_test_{stem}"
        self.iqtree.run(
            [
                "-s", name, "-m", tree.model, "-te", tree_file.name,
                "-lmap", str(self.config.lmap_quartets), "-T", "1",
                "--prefix", prefix, "--quiet", "-redo",
            ],
            workdir,
        )
        report = workdir / f"{prefix}.iqtree"
        if not report.exists():
            raise ToolExecutionError("iqtree", "missing_lmap_report")
        return decode_lmap_report(report.read_text(encoding="utf-8", errors="replace"))

    # molecular clock -----------------------------------------------------------

    def clock(self, alignment_path: Path, tree: GeneTree, workdir: Path) -> tuple[float, float]:
        """Unconstrained and clock-constrained log-likelihoods of ``tree`` under PAUP*."""
        workdir.mkdir(parents=True, exist_ok=True)
        alignment = read_fasta(alignment_path)
        stem = alignment_path.stem
        lset = PAUP_CLOCK_MODELS[self.config.clock_base_model]
        width = max(len(name) for name in alignment.names) + 2
        lines = [
            "#NEXUS",
            "begin data;",
            f"  dimensions ntax={alignment.n_sequences} nchar={alignment.length};",
            "  format datatype=dna missing=? gap=-;",
            "  matrix",
            *(f"  {name.ljust(width)}{seq}" for name, seq in zip(alignment.names, alignment.sequences)),
            "  ;",
            "end;",
            "begin trees;",
            f"  tree gene_tree = [&U] {tree.newick}",
            "end;",
            "begin paup;",
            "  set autoclose=yes warntree=no warnreset=no notifybeep=no monitor=no;",
            "  set criterion=likelihood;",
            f"  lset {lset} rates=gamma shape=estimate clock=no;",
            f"  lscores 1 / scorefile={stem}_unconstr.scores replace=yes;",
            "  lset clock=yes;",
            f"  lscores 1 / scorefile={stem}_clock.scores replace=yes;",
            "  quit;",
            "end;",
        ]
        nexus = workdir / f"{stem}_clock.nex"
        nexus.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self.paup.run(["-n", nexus.name], workdir)
        scores = []
        for kind in ("unconstr", "clock"):
            path = workdir / f"{stem}_{kind}.scores"
            if not path.exists():
                raise ToolExecutionError("paup", f"missing_{kind}_scores")
            scores.append(decode_paup_lscores(path.read_text(encoding="utf-8", errors="replace")))
        return scores[0], scores[1]

    # species trees -------------------------------------------------------------

    def species_tree(self, trees_path: Path, workdir: Path) -> str:
        name = _stage_input(trees_path, workdir)
        out = "astral4_species_tree.sptree"
        threads = str(max(1, self.config.iqt_threads))
        self.astral.run(["-i", name, "-o", out, "-t", threads], workdir)
        path = workdir / out
        if not path.exists() or not path.read_text(encoding="utf-8").strip():
            raise ToolExecutionError("astral4", "missing_species_tree")
        return path.read_text(encoding="utf-8").strip()

    def supermatrix_tree(
        self,
        matrix_path: Path,
        workdir: Path,
        constraint_path: Path | None,
        mol_type: str,
    ) -> str:
        name = _stage_input(matrix_path, workdir)
        if self.config.search_algorithm == "fasttree":
            model_flags = ["-nt", "-gtr"] if mol_type == "DNA" else ["-lg"]
            flags = fasttree_flags(
                self.config.thoroughness, self.config.fasttree_spr, self.config.fasttree_spr_length
            )
            outcome = self.fasttree.run(
                ["-quiet", *model_flags, "-gamma", *flags, "-log", "supermatrix_FT.log", name], workdir
            )
            return outcome.stdout.strip()

        seq_type = "DNA" if mol_type == "DNA" else "AA"
        threads = str(self.config.iqt_threads)
        self.iqtree.run(
            ["-s", name, "-st", seq_type, "-mset", self.config.models, "-m", "MF",
             "-T", threads, "-n", "0", "--prefix", "model_selection", "-redo"],
            workdir,
        )
        best_model = decode_iqtree_best_model(
            (workdir / "model_selection.log").read_text(encoding="utf-8", errors="replace")
        )
        n_runs = self.config.n_iqt_searches if self.config.thoroughness == "high" else 1
        constraint_args: list[str] = []
        if constraint_path is not None:
            constraint_args = ["-g", _stage_input(constraint_path, workdir)]
        best: tuple[float, Path] | None = None
        for rep in range(1, n_runs + 1):
            prefix = f"abayes_run{rep}"
            self.iqtree.run(
                ["-s", name, "-st", seq_type, "-m", best_model, "--abayes", "-B", "1000",
                 "-T", threads, *constraint_args, "--prefix", prefix, "--quiet", "-redo"],
                workdir,
            )
            score = decode_iqtree_best_score(
                (workdir / f"{prefix}.log").read_text(encoding="utf-8", errors="replace")
            )
            if best is None or score > best[0]:
                best = (score, workdir / f"{prefix}.treefile")
        assert best is not None
        return best[1].read_text(encoding="utf-8").strip()


def build_external_collaborators(config: "PipelineConfig") -> Collaborators:
    tools = ExternalTools(config)
    engine = "IQ-TREE" if config.search_algorithm == "iqtree" else "FastTree"
    names = {
        "aligner": "clustalo",
        "recombination_test": "Phi",
        "tree_search": engine,
        "outlier_test": "kdetrees",
        "likelihood_mapping": "IQ-TREE -lmap",
        "species_tree_estimator": "ASTRAL-IV",
        "constrained_search": engine,
    }
    if config.eval_clock:
        names["clock_test"] = "PAUP*"
    return Collaborators(
        aligner=tools.align,
        recombination_test=tools.recombination,
        tree_search=tools.gene_tree,
        outlier_test=tools.outliers,
        likelihood_mapping=tools.lmap,
        species_tree_estimator=tools.species_tree,
        constrained_search=tools.supermatrix_tree,
        clock_test=tools.clock if config.eval_clock else None,
        names=names,
    )
