from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd
from scipy import stats

from .io import Alignment
from .phylo import TreeNode


POLYMORPHISM_COLUMNS = [
    "Alignment_name",
    "no_seqs",
    "aln_len",
    "avg_perc_identity",
    "pars_info_sites",
    "consistency_idx",
    "homoplasy_idx",
    "segregating_sites",
    "singletons",
    "pi_per_gene",
    "pi_per_site",
    "theta_per_gene",
    "theta_per_site",
    "tajimas_D",
    "fu_and_li_D_star",
]

RESOLVED_BASES = np.array(list("ACGT"))


@dataclass(frozen=True)
class NeutralityBounds:
    tajima_lower: float
    tajima_upper: float
    fu_li_lower: float
    fu_li_upper: float


def _as_matrix(alignment: Alignment) -> np.ndarray:
    return np.array([list(seq.upper()) for seq in alignment.sequences], dtype="<U1").reshape(
        alignment.n_sequences, alignment.length
    )


def _harmonic(n: int, power: int = 1) -> float:
    return float(sum(1.0 / (i**power) for i in range(1, n)))


def average_percent_identity(alignment: Alignment) -> float:
    mat = _as_matrix(alignment)
    resolved = ~np.isin(mat, ["-", ".", "?"])
    n = mat.shape[0]
    scores = []
    for i in range(n):
        for j in range(i + 1, n):
            both = resolved[i] & resolved[j]
            compared = int(both.sum())
            if compared == 0:
                continue
            same = int((mat[i][both] == mat[j][both]).sum())
            scores.append(100.0 * same / compared)
    return float(np.mean(scores)) if scores else float("nan")


def _complete_columns(mat: np.ndarray) -> np.ndarray:
    """Columns where every sequence has an unambiguous base (complete deletion)."""
    if mat.size == 0:
        return mat
    mask = np.isin(mat, RESOLVED_BASES).all(axis=0)
    return mat[:, mask]


def _state_counts(column: np.ndarray) -> list[int]:
    _, counts = np.unique(column, return_counts=True)
    return [int(c) for c in counts]


def fitch_steps(tree: TreeNode, states: dict[str, str]) -> int:
    """Minimum number of changes of one character on the tree (Fitch, polytomies allowed)."""

    def _walk(node: TreeNode) -> tuple[set[str], int]:
        if node.is_leaf:
            return {states[node.name]}, 0
        child_sets = []
        cost = 0
        for child in node.children:
            s, c = _walk(child)
            child_sets.append(s)
            cost += c
        tally: dict[str, int] = {}
        for s in child_sets:
            for ch in s:
                tally[ch] = tally.get(ch, 0) + 1
        best = max(tally.values())
        chosen = {ch for ch, count in tally.items() if count == best}
        return chosen, cost + len(child_sets) - best

    return _walk(tree)[1]


def tajimas_d(n: int, segregating: int, pi: float) -> float:
    if segregating == 0 or n < 4:
        return float("nan")
    a1 = _harmonic(n)
    a2 = _harmonic(n, 2)
    b1 = (n + 1) / (3.0 * (n - 1))
    b2 = 2.0 * (n * n + n + 3) / (9.0 * n * (n - 1))
    c1 = b1 - 1.0 / a1
    c2 = b2 - (n + 2) / (a1 * n) + a2 / (a1 * a1)
    e1 = c1 / a1
    e2 = c2 / (a1 * a1 + a2)
    var = e1 * segregating + e2 * segregating * (segregating - 1)
    if var <= 0:
        return float("nan")
    return float((pi - segregating / a1) / math.sqrt(var))


def fu_li_d_star(n: int, eta: int, eta_singletons: int) -> float:
    if eta == 0 or n < 4:
        return float("nan")
    an = _harmonic(n)
    bn = _harmonic(n, 2)
    an1 = an + 1.0 / n
    cn = 2.0 * (n * an - 2.0 * (n - 1)) / ((n - 1) * (n - 2))
    dn = (
        cn
        + (n - 2) / float((n - 1) ** 2)
        + 2.0 / (n - 1) * (1.5 - (2.0 * an1 - 3.0) / (n - 2) - 1.0 / n)
    )
    ratio = n / float(n - 1)
    v = (ratio**2 * bn + an * an * dn - 2.0 * n * an * (an + 1) / float((n - 1) ** 2)) / (an * an + bn)
    u = ratio * (an - ratio) - v
    var = u * eta + v * eta * eta
    if var <= 0:
        return float("nan")
    return float((ratio * eta - an * eta_singletons) / math.sqrt(var))


def neutrality_bounds(n: int, alpha: float = 0.05) -> NeutralityBounds:
    """Two-sided critical values for Tajima's D (beta approximation) and Fu and Li's D*."""
    a1 = _harmonic(n)
    a2 = _harmonic(n, 2)
    b2 = 2.0 * (n * n + n + 3) / (9.0 * n * (n - 1))
    c2 = b2 - (n + 2) / (a1 * n) + a2 / (a1 * a1)
    e2 = c2 / (a1 * a1 + a2)
    d_min = (2.0 / n - 1.0 / a1) / math.sqrt(e2)
    if n % 2 == 0:
        d_max = (n / (2.0 * (n - 1)) - 1.0 / a1) / math.sqrt(e2)
    else:
        d_max = ((n + 1) / (2.0 * n) - 1.0 / a1) / math.sqrt(e2)
    span = d_max - d_min
    a = -(1.0 + d_min * d_max) * d_max / span
    b = (1.0 + d_min * d_max) * d_min / span
    lower = d_min + span * float(stats.beta.ppf(alpha / 2.0, a, b))
    upper = d_min + span * float(stats.beta.ppf(1.0 - alpha / 2.0, a, b))
    z = float(stats.norm.ppf(1.0 - alpha / 2.0))
    return NeutralityBounds(tajima_lower=lower, tajima_upper=upper, fu_li_lower=-z, fu_li_upper=z)


def polymorphism_stats(name: str, alignment: Alignment, tree: TreeNode | None = None) -> dict[str, Any]:
    n = alignment.n_sequences
    mat = _as_matrix(alignment)
    complete = _complete_columns(mat)
    n_sites = complete.shape[1] if complete.ndim == 2 else 0

    segregating = 0
    singletons = 0
    informative_cols: list[int] = []
    pi = 0.0
    for idx in range(n_sites):
        counts = _state_counts(complete[:, idx])
        if len(counts) < 2:
            continue
        segregating += 1
        singletons += sum(1 for c in counts if c == 1)
        if sum(1 for c in counts if c >= 2) >= 2:
            informative_cols.append(idx)
        pi += (1.0 - sum((c / n) ** 2 for c in counts)) * n / (n - 1.0)

    a1 = _harmonic(n)
    theta = segregating / a1 if a1 > 0 else float("nan")

    ci = float("nan")
    hi = float("nan")
    if tree is not None and informative_cols and set(tree.leaf_names()) == set(alignment.names):
        names = list(alignment.names)
        minimum = 0
        observed = 0
        for idx in informative_cols:
            column = complete[:, idx]
            minimum += len(set(column.tolist())) - 1
            observed += fitch_steps(tree, dict(zip(names, column.tolist())))
        if observed > 0:
            ci = minimum / observed
            hi = 1.0 - ci

    return {
        "Alignment_name": name,
        "no_seqs": n,
        "aln_len": alignment.length,
        "avg_perc_identity": average_percent_identity(alignment),
        "pars_info_sites": len(informative_cols),
        "consistency_idx": ci,
        "homoplasy_idx": hi,
        "segregating_sites": segregating,
        "singletons": singletons,
        "pi_per_gene": pi,
        "pi_per_site": pi / n_sites if n_sites else float("nan"),
        "theta_per_gene": theta,
        "theta_per_site": theta / n_sites if n_sites else float("nan"),
        "tajimas_D": tajimas_d(n, segregating, pi),
        "fu_and_li_D_star": fu_li_d_star(n, segregating, singletons),
    }


def is_neutral(row: dict[str, Any], bounds: NeutralityBounds) -> bool:
    """Neutral unless a statistic falls outside its critical bounds; undefined values cannot reject."""
    d = row["tajimas_D"]
    fl = row["fu_and_li_D_star"]
    if not math.isnan(d) and not bounds.tajima_lower <= d <= bounds.tajima_upper:
        return False
    if not math.isnan(fl) and not bounds.fu_li_lower <= fl <= bounds.fu_li_upper:
        return False
    return True


def polymorphism_table(rows: list[dict[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(rows, columns=POLYMORPHISM_COLUMNS)
    return frame.round(
        {
            "avg_perc_identity": 2,
            "consistency_idx": 4,
            "homoplasy_idx": 4,
            "pi_per_gene": 4,
            "pi_per_site": 6,
            "theta_per_gene": 4,
            "theta_per_site": 6,
            "tajimas_D": 4,
            "fu_and_li_D_star": 4,
        }
    )
