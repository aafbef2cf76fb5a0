from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Sequence

# Matplotlib and fontconfig need a writable cache before the first import.
_CACHE = Path(tempfile.gettempdir()) / "phylomarkers_cache"
(_CACHE / "matplotlib").mkdir(parents=True, exist_ok=True)
os.environ.setdefault("XDG_CACHE_HOME", str(_CACHE))
os.environ.setdefault("MPLCONFIGDIR", str(_CACHE / "matplotlib"))

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd


def _save_placeholder(path: Path, title: str, subtitle: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig = plt.figure(figsize=(8, 5))
    ax = fig.add_subplot(111)
    ax.axis("off")
    ax.text(0.5, 0.62, title, ha="center", va="center", fontsize=14, fontweight="bold")
    ax.text(0.5, 0.45, subtitle, ha="center", va="center", fontsize=10, wrap=True)
    fig.tight_layout()
    fig.savefig(path)
    plt.close(fig)


def plot_filtering_overview(ledger_df: pd.DataFrame, out_png: Path) -> Path:
    out_png.parent.mkdir(parents=True, exist_ok=True)
    if ledger_df.empty:
        _save_placeholder(out_png, "Filtering overview", "No stages were recorded.")
        return out_png

    x = np.arange(len(ledger_df))
    fig = plt.figure(figsize=(max(7, len(ledger_df) * 1.1 + 2), 5))
    ax = fig.add_subplot(111)
    ax.bar(x, ledger_df["passed"], color="#4c9a2a", label="passed")
    ax.bar(x, ledger_df["inconclusive"], bottom=ledger_df["passed"], color="#e1b12c", label="inconclusive")
    ax.bar(
        x,
        ledger_df["failed"],
        bottom=ledger_df["passed"] + ledger_df["inconclusive"],
        color="#c23616",
        label="failed",
    )
    ax.plot(x, ledger_df["survivors"], "k.-", linewidth=1, label="survivors")
    ax.set_xticks(x)
    ax.set_xticklabels(ledger_df["stage"], rotation=30, ha="right")
    ax.set_ylabel("Loci")
    ax.set_title("Loci examined per filtering stage")
    ax.legend(fontsize=8)
    fig.tight_layout()
    fig.savefig(out_png)
    plt.close(fig)
    return out_png


def plot_support_distribution(mean_supports: Sequence[float], threshold: float, out_png: Path) -> Path:
    out_png.parent.mkdir(parents=True, exist_ok=True)
    values = np.asarray([v for v in mean_supports if v is not None], dtype=float)
    if values.size == 0:
        _save_placeholder(out_png, "Gene-tree support", "No gene trees reached the support filter.")
        return out_png

    fig = plt.figure(figsize=(8, 5))
    ax = fig.add_subplot(111)
    ax.hist(values, bins=min(30, max(5, values.size)), range=(0, 1), color="#40739e", alpha=0.85)
    ax.axvline(threshold, color="r", linestyle="--", linewidth=1.2, label=f"min support {threshold:g}")
    ax.set_xlabel("Mean branch support per gene tree")
    ax.set_ylabel("Gene trees")
    ax.set_title("Gene-tree support distribution")
    ax.legend()
    fig.tight_layout()
    fig.savefig(out_png)
    plt.close(fig)
    return out_png


def plot_tajimas_d(table: pd.DataFrame, lower: float, upper: float, out_png: Path) -> Path:
    out_png.parent.mkdir(parents=True, exist_ok=True)
    view = table.dropna(subset=["tajimas_D"]) if not table.empty else table
    if view.empty:
        _save_placeholder(out_png, "Tajima's D", "No locus had segregating sites.")
        return out_png

    x = np.arange(len(view))
    d = view["tajimas_D"].to_numpy(dtype=float)
    outside = (d < lower) | (d > upper)
    fig = plt.figure(figsize=(max(7, len(view) * 0.25 + 2), 5))
    ax = fig.add_subplot(111)
    ax.scatter(x[~outside], d[~outside], s=14, color="#40739e", label="within bounds")
    ax.scatter(x[outside], d[outside], s=14, color="#c23616", label="outside bounds")
    ax.axhline(lower, color="grey", linestyle="--", linewidth=1)
    ax.axhline(upper, color="grey", linestyle="--", linewidth=1)
    ax.set_xlabel("Locus")
    ax.set_ylabel("Tajima's D")
    ax.set_title("Tajima's D per locus with critical bounds")
    ax.legend(fontsize=8)
    fig.tight_layout()
    fig.savefig(out_png)
    plt.close(fig)
    return out_png
