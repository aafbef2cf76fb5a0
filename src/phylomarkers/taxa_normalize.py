from __future__ import annotations

import re


SHELL_HOSTILE_CHARS = "'(),[]/:;"
_BRACKET_FIELD = re.compile(r"\[([^\]]+)\]")


def sanitize_label(text: str) -> str:
    """Strip characters that break Newick or shell handling and join words with '_'."""
    out = str(text).strip()
    for ch in SHELL_HOSTILE_CHARS:
        out = out.replace(ch, "")
    out = "_".join(out.split())
    return out.strip("_")


def extract_taxon_field(header: str, cluster_format: str = "STD") -> str:
    """Raw organism field of a FASTA header.

    STD headers come from GET_HOMOLOGUES clusters, e.g.
    ``ID:123|[Escherichia coli K12]|gene|...``; the bracketed organism field is
    used and the first ``|`` field is the fallback. EST headers use the first
    whitespace-delimited token.
    """
    text = str(header).strip()
    fmt = cluster_format.upper()
    if fmt == "STD":
        match = _BRACKET_FIELD.search(text)
        if match:
            raw = match.group(1)
        else:
            raw = text.split("|", 1)[0]
    elif fmt == "EST":
        raw = text.split()[0] if text.split() else ""
    else:
        raise ValueError(f"Unknown cluster format: {cluster_format}")
    return " ".join(raw.split())


def extract_taxon(header: str, cluster_format: str = "STD") -> str:
    label = sanitize_label(extract_taxon_field(header, cluster_format))
    if not label:
        raise ValueError(f"Unable to extract a taxon label from header: {header!r}")
    return label


def sanitize_file_stem(stem: str) -> str:
    out = str(stem)
    for ch in SHELL_HOSTILE_CHARS:
        out = out.replace(ch, "")
    return out


def deduplicate_labels(labels: list[str]) -> list[str]:
    """Suffix repeated labels with _2, _3, ... keeping the first occurrence intact."""
    seen: dict[str, int] = {}
    out: list[str] = []
    used = set(labels)
    for label in labels:
        count = seen.get(label, 0) + 1
        seen[label] = count
        if count == 1:
            out.append(label)
            continue
        candidate = f"{label}_{count}"
        while candidate in used:
            count += 1
            candidate = f"{label}_{count}"
        seen[label] = count
        used.add(candidate)
        out.append(candidate)
    return out
