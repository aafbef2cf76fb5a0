from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from .errors import EstimationError, ToolExecutionError, ToolUnavailableError
from .phylo import TreeNode, midpoint_root, outgroup_root, parse_newick, relabel, splits, to_newick
from .tools import GeneTree

if TYPE_CHECKING:
    from .config import PipelineConfig
    from .ledger import OutputManifest
    from .runlog import RunLog
    from .tools import Collaborators


@dataclass
class SpeciesTreeResult:
    consensus: TreeNode
    species_tree: TreeNode | None = None
    supermatrix_tree: TreeNode | None = None
    files: dict[str, Path] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def split_frequencies(trees: Sequence[TreeNode]) -> "OrderedDict[frozenset[str], float]":
    """Frequency of each non-trivial split, keyed in order of first appearance."""
    if not trees:
        raise ValueError("No trees supplied.")
    taxa = trees[0].leaf_names()
    ref = set(taxa)
    counts: "OrderedDict[frozenset[str], int]" = OrderedDict()
    for idx, tree in enumerate(trees, start=1):
        if set(tree.leaf_names()) != ref:
            raise ValueError(f"Tree {idx} does not share the taxon set of the first tree.")
        for split in splits(tree, taxa):
            counts[split] = counts.get(split, 0) + 1
    n = float(len(trees))
    return OrderedDict((split, count / n) for split, count in counts.items())


def build_consensus(trees: Sequence[TreeNode], threshold: float = 0.5) -> TreeNode:
    """Majority-rule consensus; kept splits carry their frequency as support."""
    if threshold < 0.5:
        raise ValueError("Majority-rule consensus requires threshold >= 0.5.")
    freqs = split_frequencies(trees)
    taxa = trees[0].leaf_names()
    order = {split: idx for idx, split in enumerate(freqs)}
    kept = [split for split, freq in freqs.items() if freq > threshold]
    kept.sort(key=lambda s: (-len(s), order[s]))

    root = TreeNode(children=[TreeNode(name=taxon) for taxon in taxa])
    members: dict[int, frozenset[str]] = {id(child): frozenset([child.name]) for child in root.children}
    members[id(root)] = frozenset(taxa)

    def _locate(node: TreeNode, split: frozenset[str]) -> TreeNode:
        for child in node.children:
            if child.children and split <= members[id(child)]:
                return _locate(child, split)
        return node

    for split in kept:
        parent = _locate(root, split)
        grouped = [child for child in parent.children if members[id(child)] <= split]
        if len(grouped) < 2 or len(grouped) == len(parent.children):
            continue
        clade = TreeNode(children=grouped, support=freqs[split])
        members[id(clade)] = split
        grouped_ids = {id(child) for child in grouped}
        first = next(i for i, child in enumerate(parent.children) if id(child) in grouped_ids)
        rest = [child for child in parent.children if id(child) not in grouped_ids]
        rest.insert(first, clade)
        parent.children = rest
    return root


def root_tree(tree: TreeNode, config: "PipelineConfig", log: "RunLog | None" = None) -> TreeNode:
    if config.root_method == "outgroup" and config.outgroup:
        if config.outgroup in tree.leaf_names():
            return outgroup_root(tree, config.outgroup)
        if log is not None:
            log.warn(f"outgroup '{config.outgroup}' not found in tree; using midpoint rooting")
    return midpoint_root(tree)


def _write_tree(path: Path, tree: TreeNode, label_map: dict[str, str], **kwargs: bool) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_newick(relabel(tree, label_map), **kwargs) + "\n", encoding="utf-8")
    return path


def run_species_tree_stage(
    gene_trees: Sequence[GeneTree],
    matrix_path: Path,
    workdir: Path,
    *,
    collaborators: "Collaborators",
    config: "PipelineConfig",
    label_map: dict[str, str],
    outputs: "OutputManifest",
    log: "RunLog",
) -> SpeciesTreeResult:
    """Consensus of the marker gene trees plus the species-tree estimators.

    A failing estimator is reported as a warning; the stage fails only when
    neither the gene-tree estimator nor the supermatrix search returns a tree.
    """
    workdir.mkdir(parents=True, exist_ok=True)
    trees_path = workdir / "alltrees.nwk"
    trees_path.write_text("".join(t.newick + "\n" for t in gene_trees), encoding="utf-8")
    outputs.add("marker_gene_trees", trees_path)

    parsed = [parse_newick(t.newick) for t in gene_trees]
    consensus = root_tree(build_consensus(parsed), config, log)
    result = SpeciesTreeResult(consensus=consensus)
    result.files["consensus"] = outputs.add(
        "majority_rule_consensus_tree",
        _write_tree(
            workdir / "MJRC_gene_trees_consensus.nwk", consensus, label_map, include_lengths=False
        ),
    )

    constraint_path: Path | None = None
    try:
        newick = collaborators.species_tree_estimator(trees_path, workdir / "species_tree")
        raw = parse_newick(newick)
        constraint_path = workdir / "species_tree" / "species_tree_constraint.nwk"
        constraint_path.parent.mkdir(parents=True, exist_ok=True)
        constraint_path.write_text(
            to_newick(raw, include_lengths=False, include_support=False) + "\n", encoding="utf-8"
        )
        result.species_tree = root_tree(raw, config, log)
        result.files["species_tree"] = outputs.add(
            "species_tree",
            _write_tree(
                workdir / f"species_tree_top{len(gene_trees)}geneTrees.sptree",
                result.species_tree,
                label_map,
            ),
        )
    except (ToolUnavailableError, ToolExecutionError, ValueError) as exc:
        msg = f"species-tree estimator failed: {exc}"
        result.warnings.append(msg)
        log.warn(msg)

    try:
        newick = collaborators.constrained_search(
            matrix_path, workdir / "supermatrix_search", constraint_path, config.mol_type
        )
        result.supermatrix_tree = root_tree(parse_newick(newick), config, log)
        result.files["supermatrix_tree"] = outputs.add(
            "supermatrix_tree",
            _write_tree(
                workdir / f"supermatrix_top{len(gene_trees)}markers.sptree",
                result.supermatrix_tree,
                label_map,
            ),
        )
    except (ToolUnavailableError, ToolExecutionError, ValueError) as exc:
        msg = f"supermatrix tree search failed: {exc}"
        result.warnings.append(msg)
        log.warn(msg)

    if result.species_tree is None and result.supermatrix_tree is None:
        raise EstimationError("No species tree could be estimated: " + "; ".join(result.warnings))
    return result
