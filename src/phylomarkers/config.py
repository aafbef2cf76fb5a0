from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from .codon import SUPPORTED_TABLES
from .schemas import validate_config_payload


RUN_MODES = ("phylo", "popgen")
MOL_TYPES = ("DNA", "PROT")
SEARCH_ALGORITHMS = ("iqtree", "fasttree")
THOROUGHNESS_LEVELS = ("high", "medium", "low", "lowest")
ROOT_METHODS = ("midpoint", "outgroup")
CLUSTER_FORMATS = ("STD", "EST")
SIGNAL_COMBINATIONS = ("intersection", "union")
CLOCK_MODELS = ("GTR", "TrN", "HKY", "K2P", "F81")

DEFAULT_IQT_MODELS = {"DNA": "GTR", "PROT": "LG"}


@dataclass(frozen=True)
class PipelineConfig:
    mode: str = "phylo"
    mol_type: str = "DNA"
    min_taxa: int = 4
    n_cores: int | None = None
    search_algorithm: str = "iqtree"
    thoroughness: str = "high"
    kde_stringency: float = 1.5
    min_support: float = 0.65
    min_lmap_percent: float | None = None
    likelihood_mapping: bool = True
    signal_combination: str = "intersection"
    min_leaves: int = 4
    recombination_alpha: float = 0.05
    phi_permutations: int = 1000
    lmap_quartets: int = 2000
    root_method: str = "midpoint"
    outgroup: str | None = None
    cluster_format: str = "STD"
    codon_table: int = 11
    min_survivors_warning: int = 2
    job_timeout_sec: int | None = 3600
    iqt_models: str | None = None
    iqt_threads: int = 2
    n_iqt_searches: int = 5
    fasttree_spr: int = 4
    fasttree_spr_length: int = 8
    eval_clock: bool = False
    clock_base_model: str = "GTR"
    clock_quantile: float = 0.99
    neutrality_alpha: float = 0.05

    def validate(self) -> "PipelineConfig":
        _choice("mode", self.mode, RUN_MODES)
        _choice("mol_type", self.mol_type, MOL_TYPES)
        _choice("search_algorithm", self.search_algorithm, SEARCH_ALGORITHMS)
        _choice("thoroughness", self.thoroughness, THOROUGHNESS_LEVELS)
        _choice("root_method", self.root_method, ROOT_METHODS)
        _choice("cluster_format", self.cluster_format, CLUSTER_FORMATS)
        _choice("signal_combination", self.signal_combination, SIGNAL_COMBINATIONS)
        _choice("clock_base_model", self.clock_base_model, CLOCK_MODELS)
        if self.codon_table not in SUPPORTED_TABLES:
            raise ValueError(
                f"codon_table must be one of {', '.join(map(str, SUPPORTED_TABLES))}; got {self.codon_table!r}."
            )
        if self.mode == "popgen" and self.mol_type != "DNA":
            raise ValueError("popgen mode requires mol_type DNA.")
        if self.eval_clock and (self.mode != "phylo" or self.mol_type != "DNA"):
            raise ValueError("the molecular clock test requires phylo mode with mol_type DNA.")
        if self.min_taxa < 4:
            raise ValueError("min_taxa must be >= 4.")
        if self.min_leaves < 4:
            raise ValueError("min_leaves must be >= 4.")
        if not 0.0 <= self.min_support <= 1.0:
            raise ValueError("min_support must be within [0, 1].")
        if self.min_lmap_percent is not None and not 0.0 <= self.min_lmap_percent <= 100.0:
            raise ValueError("min_lmap_percent must be within [0, 100].")
        if self.kde_stringency <= 0:
            raise ValueError("kde_stringency must be > 0.")
        if not 0.0 < self.recombination_alpha < 1.0:
            raise ValueError("recombination_alpha must be within (0, 1).")
        if not 0.0 < self.neutrality_alpha < 1.0:
            raise ValueError("neutrality_alpha must be within (0, 1).")
        if not 0.0 < self.clock_quantile < 1.0:
            raise ValueError("clock_quantile must be within (0, 1).")
        if self.fasttree_spr < 1 or self.fasttree_spr_length < 1:
            raise ValueError("fasttree_spr and fasttree_spr_length must be >= 1.")
        if self.root_method == "outgroup" and not self.outgroup:
            raise ValueError("outgroup rooting requires an outgroup taxon.")
        if self.n_cores is not None and self.n_cores < 1:
            raise ValueError("n_cores must be >= 1.")
        if self.iqt_threads < 1 or self.n_iqt_searches < 1:
            raise ValueError("iqt_threads and n_iqt_searches must be >= 1.")
        if self.job_timeout_sec is not None and self.job_timeout_sec <= 0:
            raise ValueError("job_timeout_sec must be > 0.")
        return self

    @property
    def lmap_threshold(self) -> float:
        if self.min_lmap_percent is not None:
            return float(self.min_lmap_percent)
        return float(self.min_support) * 100.0

    @property
    def lmap_active(self) -> bool:
        return self.likelihood_mapping and self.search_algorithm == "iqtree"

    @property
    def models(self) -> str:
        return self.iqt_models or DEFAULT_IQT_MODELS[self.mol_type]

    def run_suffix(self) -> str:
        alg = "I" if self.search_algorithm == "iqtree" else "F"
        mode = 1 if self.mode == "phylo" else 2
        suffix = f"A{alg}R{mode}t{self.mol_type}_k{self.kde_stringency:g}_m{self.min_support:g}"
        if alg == "F":
            suffix += f"_s{self.fasttree_spr}_l{self.fasttree_spr_length}"
        suffix += f"_T{self.thoroughness}"
        if self.eval_clock:
            suffix += "_K"
        return suffix

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _choice(label: str, value: str, allowed: tuple[str, ...]) -> None:
    if value not in allowed:
        raise ValueError(f"{label} must be one of {', '.join(allowed)}; got {value!r}.")


def config_from_mapping(payload: dict[str, Any], base: PipelineConfig | None = None) -> PipelineConfig:
    validate_config_payload(payload)
    known = {f.name for f in fields(PipelineConfig)}
    unknown = sorted(set(payload) - known - {"schema_version"})
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    values = {k: v for k, v in payload.items() if k in known}
    return replace(base or PipelineConfig(), **values)


def load_config_file(path: str | Path) -> PipelineConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    return config_from_mapping(payload)
