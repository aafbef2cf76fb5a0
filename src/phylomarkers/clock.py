from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

import pandas as pd
from scipy import stats


CLOCK_COLUMNS = [
    "locus",
    "lnL_unconstr",
    "lnL_clock",
    "LRT",
    "X2_crit_val",
    "df",
    "p_val",
    "mol_clock",
]


@dataclass(frozen=True)
class ClockTest:
    """Likelihood-ratio test of a strict molecular clock on one gene tree.

    The clock-constrained tree has ``n_taxa - 2`` fewer free branch lengths
    than the unconstrained one, which sets the degrees of freedom of the
    chi-square reference distribution.
    """

    locus: str
    lnl_unconstrained: float
    lnl_clock: float
    n_taxa: int
    quantile: float = 0.99

    @property
    def df(self) -> int:
        return self.n_taxa - 2

    @property
    def lrt(self) -> float:
        return max(0.0, 2.0 * (self.lnl_unconstrained - self.lnl_clock))

    @property
    def critical_value(self) -> float:
        return float(stats.chi2.ppf(self.quantile, self.df))

    @property
    def p_value(self) -> float:
        return float(stats.chi2.sf(self.lrt, self.df))

    @property
    def clocklike(self) -> bool:
        return self.lrt < self.critical_value

    def to_row(self) -> dict[str, Any]:
        return {
            "locus": self.locus,
            "lnL_unconstr": self.lnl_unconstrained,
            "lnL_clock": self.lnl_clock,
            "LRT": self.lrt,
            "X2_crit_val": self.critical_value,
            "df": self.df,
            "p_val": self.p_value,
            "mol_clock": "yes" if self.clocklike else "no",
        }


def clock_test(
    locus: str,
    lnl_unconstrained: float,
    lnl_clock: float,
    n_taxa: int,
    quantile: float = 0.99,
) -> ClockTest:
    if n_taxa < 3:
        raise ValueError(f"A clock test needs at least 3 taxa; {locus} has {n_taxa}.")
    for label, value in (("unconstrained", lnl_unconstrained), ("clock", lnl_clock)):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite {label} log-likelihood for {locus}: {value}")
    return ClockTest(locus, float(lnl_unconstrained), float(lnl_clock), int(n_taxa), quantile)


def clock_table(tests: list[ClockTest]) -> pd.DataFrame:
    return pd.DataFrame([t.to_row() for t in tests], columns=CLOCK_COLUMNS)


def clock_table_name(base_model: str, root_method: str, quantile: float) -> str:
    q = f"{quantile:g}".replace(".", "")
    return f"mol_clock_M{base_model}G_r{root_method}_q{q}_ClockTest.tsv"
