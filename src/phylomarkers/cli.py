from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from typing import Any

from . import __version__
from .codon import SUPPORTED_TABLES
from .config import (
    CLOCK_MODELS,
    CLUSTER_FORMATS,
    MOL_TYPES,
    ROOT_METHODS,
    RUN_MODES,
    SEARCH_ALGORITHMS,
    SIGNAL_COMBINATIONS,
    THOROUGHNESS_LEVELS,
    PipelineConfig,
    load_config_file,
)
from .errors import EstimationError, StageExhaustionError, StructuralError


EXIT_STRUCTURAL = 2
EXIT_EXHAUSTED = 3
EXIT_ESTIMATION = 4

# CLI flag -> PipelineConfig field, for values that override the config file.
_OVERRIDES = {
    "mode": "mode",
    "mol_type": "mol_type",
    "min_taxa": "min_taxa",
    "n_cores": "n_cores",
    "search_algorithm": "search_algorithm",
    "thoroughness": "thoroughness",
    "kde_stringency": "kde_stringency",
    "min_support": "min_support",
    "min_lmap_percent": "min_lmap_percent",
    "signal_combination": "signal_combination",
    "min_leaves": "min_leaves",
    "alpha": "recombination_alpha",
    "root_method": "root_method",
    "outgroup": "outgroup",
    "cluster_format": "cluster_format",
    "codon_table": "codon_table",
    "timeout_sec": "job_timeout_sec",
    "iqt_models": "iqt_models",
    "iqt_threads": "iqt_threads",
    "n_iqt_searches": "n_iqt_searches",
    "spr": "fasttree_spr",
    "spr_length": "fasttree_spr_length",
    "clock_model": "clock_base_model",
    "clock_quantile": "clock_quantile",
}


def _add_config_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--mode", choices=RUN_MODES, default=None)
    p.add_argument("--mol-type", choices=MOL_TYPES, default=None)
    p.add_argument("--config", default=None, metavar="JSON", help="PipelineConfig values as a JSON object.")
    p.add_argument("--min-taxa", type=int, default=None)
    p.add_argument("--search-algorithm", choices=SEARCH_ALGORITHMS, default=None)
    p.add_argument("--cluster-format", choices=CLUSTER_FORMATS, default=None)
    p.add_argument("--no-lmap", action="store_true", help="Skip the likelihood-mapping filter.")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phylomarkers",
        description=(
            "phylomarkers: select well-behaved phylogenetic markers from orthologous gene "
            "clusters and estimate species trees from them."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run = subparsers.add_parser("run", help="Run the marker-selection pipeline on a directory of loci.")
    run.add_argument("--input-dir", required=True, metavar="DIR", help="Directory of paired .fna/.faa files.")
    run.add_argument("--outdir", default=".", metavar="DIR")
    _add_config_arguments(run)
    run.add_argument("--n-cores", type=int, default=None)
    run.add_argument("--thoroughness", choices=THOROUGHNESS_LEVELS, default=None)
    run.add_argument("--kde-stringency", type=float, default=None)
    run.add_argument("--min-support", type=float, default=None)
    run.add_argument("--min-lmap-percent", type=float, default=None)
    run.add_argument("--signal-combination", choices=SIGNAL_COMBINATIONS, default=None)
    run.add_argument("--min-leaves", type=int, default=None)
    run.add_argument("--alpha", type=float, default=None, help="Recombination test significance level.")
    run.add_argument("--root-method", choices=ROOT_METHODS, default=None)
    run.add_argument("--outgroup", default=None, metavar="TAXON")
    run.add_argument("--codon-table", type=int, choices=SUPPORTED_TABLES, default=None, metavar="N")
    run.add_argument("--timeout-sec", type=int, default=None, help="Per-job timeout.")
    run.add_argument("--iqt-models", default=None, help="Comma-separated model set for the supermatrix.")
    run.add_argument("--iqt-threads", type=int, default=None)
    run.add_argument("--n-iqt-searches", type=int, default=None)
    run.add_argument("--spr", type=int, default=None, help="FastTree SPR rounds.")
    run.add_argument("--spr-length", type=int, default=None, help="FastTree maximum SPR move length.")
    run.add_argument("--eval-clock", action="store_true", help="Test the molecular clock on the marker trees.")
    run.add_argument("--clock-model", choices=CLOCK_MODELS, default=None, help="Base model (+G) for the clock test.")
    run.add_argument("--clock-quantile", type=float, default=None, help="Chi-square quantile for the clock test.")
    run.add_argument("--quiet", action="store_true", help="Only write progress to the run log.")

    # doctor
    doctor = subparsers.add_parser("doctor", help="Report which external tools can be run.")
    doctor.add_argument("--input-dir", default=None, metavar="DIR", help="Also validate a locus directory.")
    _add_config_arguments(doctor)

    return parser


def _config_from_args(args: argparse.Namespace) -> PipelineConfig:
    config = load_config_file(args.config) if args.config else PipelineConfig()
    values: dict[str, Any] = {}
    for flag, name in _OVERRIDES.items():
        value = getattr(args, flag, None)
        if value is not None:
            values[name] = value
    if args.no_lmap:
        values["likelihood_mapping"] = False
    if getattr(args, "eval_clock", False):
        values["eval_clock"] = True
    return replace(config, **values).validate()


def _print_fatal(message: str, ledger: Any) -> None:
    print(f"error: {message}", file=sys.stderr)
    if ledger is not None:
        print(ledger.render(), file=sys.stderr)


def _cmd_run(args: argparse.Namespace) -> int:
    from .pipeline import run_pipeline
    from .runlog import RunLog

    if args.mode is None and not args.config:
        raise ValueError("--mode is required (phylo or popgen) unless given in --config.")
    if args.mol_type is None and not args.config:
        raise ValueError("--mol-type is required (DNA or PROT) unless given in --config.")
    config = _config_from_args(args)
    log = RunLog(echo=not args.quiet)
    try:
        result = run_pipeline(
            config,
            args.input_dir,
            args.outdir,
            log=log,
            command_line="phylomarkers " + " ".join(getattr(args, "_argv", [])),
        )
    except StructuralError as exc:
        _print_fatal(str(exc), exc.ledger)
        return EXIT_STRUCTURAL
    except StageExhaustionError as exc:
        _print_fatal(
            f"stage '{exc.stage}' left no surviving loci ({exc.counts_before} entered the stage)",
            exc.ledger,
        )
        return EXIT_EXHAUSTED
    except EstimationError as exc:
        _print_fatal(
            f"stage '{exc.stage}' failed on {exc.counts_before} markers: {exc}",
            exc.ledger,
        )
        return EXIT_ESTIMATION
    print(f"Markers selected: {len(result.markers)}")
    print(f"Results: {result.run_dir}")
    return 0


def _cmd_doctor(args: argparse.Namespace) -> int:
    from .doctor import run_doctor

    report = run_doctor(config=_config_from_args(args), input_dir=args.input_dir)
    print(report.render())
    return 1 if report.has_failures else 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    args._argv = list(argv if argv is not None else sys.argv[1:])
    try:
        if args.command == "run":
            return _cmd_run(args)
        if args.command == "doctor":
            return _cmd_doctor(args)
    except (ValueError, FileNotFoundError) as exc:
        parser.exit(status=EXIT_STRUCTURAL, message=f"error: {exc}\n")
    parser.exit(status=2, message="error: unknown command\n")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
