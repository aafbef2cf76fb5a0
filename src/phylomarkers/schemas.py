from __future__ import annotations

from typing import Any


def _ensure_type(payload: Any, expected: type | tuple[type, ...], label: str) -> None:
    if not isinstance(payload, expected):
        name = expected.__name__ if isinstance(expected, type) else "/".join(t.__name__ for t in expected)
        raise ValueError(f"{label} must be {name}.")


def _require_keys(payload: dict[str, Any], keys: list[str], label: str) -> None:
    missing = [k for k in keys if k not in payload]
    if missing:
        raise ValueError(f"{label} missing required keys: {', '.join(missing)}")


_NUMERIC_KEYS = (
    "kde_stringency",
    "min_support",
    "min_lmap_percent",
    "recombination_alpha",
    "neutrality_alpha",
    "clock_quantile",
)
_INT_KEYS = (
    "min_taxa",
    "n_cores",
    "min_leaves",
    "phi_permutations",
    "lmap_quartets",
    "codon_table",
    "min_survivors_warning",
    "job_timeout_sec",
    "iqt_threads",
    "n_iqt_searches",
    "fasttree_spr",
    "fasttree_spr_length",
)


def validate_config_payload(payload: dict[str, Any]) -> None:
    _ensure_type(payload, dict, "config payload")
    if "schema_version" in payload and int(payload["schema_version"]) != 1:
        raise ValueError("config schema_version must be 1.")
    for key in _NUMERIC_KEYS:
        value = payload.get(key)
        if value is not None:
            if isinstance(value, bool):
                raise ValueError(f"config {key} must be a number.")
            _ensure_type(value, (int, float), f"config {key}")
    for key in _INT_KEYS:
        value = payload.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValueError(f"config {key} must be int.")
    for key in ("likelihood_mapping", "eval_clock"):
        if key in payload:
            _ensure_type(payload[key], bool, f"config {key}")


def validate_run_manifest_payload(payload: dict[str, Any]) -> None:
    _ensure_type(payload, dict, "run manifest")
    if int(payload.get("schema_version", -1)) != 1:
        raise ValueError("run manifest schema_version must be 1.")
    _require_keys(
        payload,
        ["command", "tool_version", "system", "config", "status", "ledger", "warnings"],
        "run manifest",
    )
    _ensure_type(payload["ledger"], list, "run manifest ledger")
    for idx, row in enumerate(payload["ledger"], start=1):
        _ensure_type(row, dict, f"run manifest ledger[{idx}]")
        _require_keys(row, ["stage", "examined", "passed", "failed", "inconclusive"], f"ledger[{idx}]")
    _ensure_type(payload["warnings"], list, "run manifest warnings")
