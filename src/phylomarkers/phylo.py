from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Iterable


@dataclass
class TreeNode:
    name: str | None = None
    length: float = 0.0
    children: list["TreeNode"] = field(default_factory=list)
    support: float | None = None

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def leaf_names(self) -> list[str]:
        names: list[str] = []

        def _walk(node: TreeNode) -> None:
            if node.is_leaf:
                if not node.name:
                    raise ValueError("All leaf nodes must have names.")
                names.append(node.name)
                return
            for child in node.children:
                _walk(child)

        _walk(self)
        return names

    @property
    def n_leaves(self) -> int:
        return len(self.leaf_names())

    def branch_lengths(self) -> list[float]:
        lengths: list[float] = []

        def _walk(node: TreeNode) -> None:
            for child in node.children:
                lengths.append(child.length)
                _walk(child)

        _walk(self)
        return lengths

    def internal_nodes(self, include_root: bool = False) -> list["TreeNode"]:
        out: list[TreeNode] = []

        def _walk(node: TreeNode) -> None:
            if node.children and (include_root or node is not self):
                out.append(node)
            for child in node.children:
                _walk(child)

        _walk(self)
        return out


def parse_newick(newick: str) -> TreeNode:
    text = newick.strip()
    if not text:
        raise ValueError("Newick string is empty.")
    if text.endswith(";"):
        text = text[:-1]
    if not text:
        raise ValueError("Newick string is invalid.")

    idx = 0

    def _skip_ws(pos: int) -> int:
        while pos < len(text) and text[pos].isspace():
            pos += 1
        return pos

    def _read_name(pos: int) -> tuple[str | None, int]:
        pos = _skip_ws(pos)
        start = pos
        while pos < len(text) and text[pos] not in ",():;":
            pos += 1
        token = text[start:pos].strip().strip("'\"")
        return (token if token else None), pos

    def _read_length(pos: int) -> tuple[float, int]:
        pos = _skip_ws(pos)
        if pos >= len(text) or text[pos] != ":":
            return 0.0, pos
        pos += 1
        pos = _skip_ws(pos)
        start = pos
        while pos < len(text) and text[pos] not in ",()":
            pos += 1
        raw = text[start:pos].strip()
        if not raw:
            raise ValueError("Missing branch length after ':'.")
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid branch length: {raw}") from exc
        # Tree searches occasionally report -0.0 or rounding noise on zero-length branches.
        return max(value, 0.0), pos

    def _parse_subtree(pos: int) -> tuple[TreeNode, int]:
        pos = _skip_ws(pos)
        if pos >= len(text):
            raise ValueError("Unexpected end of Newick string.")

        if text[pos] == "(":
            pos += 1
            children: list[TreeNode] = []
            while True:
                child, pos = _parse_subtree(pos)
                children.append(child)
                pos = _skip_ws(pos)
                if pos >= len(text):
                    raise ValueError("Unterminated internal node in Newick string.")
                if text[pos] == ",":
                    pos += 1
                    continue
                if text[pos] == ")":
                    pos += 1
                    break
                raise ValueError(f"Unexpected token '{text[pos]}' in Newick string.")

            name, pos = _read_name(pos)
            length, pos = _read_length(pos)
            return TreeNode(name=name, length=length, children=children), pos

        name, pos = _read_name(pos)
        if not name:
            raise ValueError("Leaf node is missing a name.")
        length, pos = _read_length(pos)
        return TreeNode(name=name, length=length, children=[]), pos

    root, idx = _parse_subtree(idx)
    idx = _skip_ws(idx)
    if idx != len(text):
        raise ValueError(f"Unexpected trailing content in Newick: {text[idx:]}")

    if len(set(root.leaf_names())) != len(root.leaf_names()):
        raise ValueError("Leaf names in Newick tree must be unique.")
    return root


def parse_support_label(label: str | None) -> float | None:
    """Return the first numeric value of an internal-node label such as '87.5/99'."""
    if not label:
        return None
    head = label.split("/", 1)[0].strip()
    try:
        return float(head)
    except ValueError:
        return None


_NEWICK_RESERVED = set(" ,():;[]'\t")


def _quote_label(name: str) -> str:
    if any(ch in _NEWICK_RESERVED for ch in name):
        return "'" + name.replace("'", "''") + "'"
    return name


def _format_number(value: float) -> str:
    return format(float(value), ".10g")


def to_newick(
    tree: TreeNode,
    *,
    include_lengths: bool = True,
    include_support: bool = True,
    support_decimals: int = 3,
) -> str:
    def _render(node: TreeNode, is_root: bool) -> str:
        if node.is_leaf:
            out = _quote_label(node.name or "")
        else:
            inner = ",".join(_render(child, False) for child in node.children)
            label = ""
            if include_support and node.support is not None:
                label = f"{node.support:.{support_decimals}f}"
            elif include_support and node.name:
                label = node.name
            out = f"({inner}){label}"
        if include_lengths and not is_root:
            out += f":{_format_number(node.length)}"
        return out

    return _render(tree, True) + ";"


def relabel(tree: TreeNode, mapping: dict[str, str]) -> TreeNode:
    out = copy.deepcopy(tree)

    def _walk(node: TreeNode) -> None:
        if node.is_leaf and node.name in mapping:
            node.name = mapping[node.name]
        for child in node.children:
            _walk(child)

    _walk(out)
    return out


def splits(tree: TreeNode, taxa: Iterable[str] | None = None) -> list[frozenset[str]]:
    """Non-trivial bipartitions of the tree, in preorder.

    Each split is represented by the side that does not contain the first taxon
    of ``taxa`` (sorted leaf names when omitted), so rooted and unrooted
    renderings of the same topology yield identical splits.
    """
    leaves = list(taxa) if taxa is not None else sorted(tree.leaf_names())
    all_taxa = frozenset(leaves)
    anchor = leaves[0]
    seen: set[frozenset[str]] = set()
    out: list[frozenset[str]] = []

    def _collect(node: TreeNode) -> frozenset[str]:
        if node.is_leaf:
            return frozenset([node.name]) if node.name in all_taxa else frozenset()
        below: frozenset[str] = frozenset()
        for child in node.children:
            below = below | _collect(child)
        return below

    def _walk(node: TreeNode) -> None:
        for child in node.children:
            if child.children:
                side = _collect(child)
                if anchor in side:
                    side = all_taxa - side
                if 2 <= len(side) <= len(all_taxa) - 2 and side not in seen:
                    seen.add(side)
                    out.append(side)
            _walk(child)

    _walk(tree)
    return out


class _Graph:
    """Undirected view of a tree used for re-rooting."""

    def __init__(self, tree: TreeNode) -> None:
        self.nodes: list[TreeNode] = []
        self.adj: dict[int, list[tuple[int, float, str | None, float | None]]] = {}
        self._add(tree, None)

    def _add(self, node: TreeNode, parent: int | None) -> int:
        idx = len(self.nodes)
        self.nodes.append(node)
        self.adj[idx] = []
        if parent is not None:
            label = None if node.is_leaf else node.name
            self.adj[idx].append((parent, node.length, label, node.support))
            self.adj[parent].append((idx, node.length, label, node.support))
        for child in node.children:
            self._add(child, idx)
        return idx

    def leaves(self) -> list[int]:
        return [i for i, node in enumerate(self.nodes) if node.is_leaf]

    def distances_from(self, start: int) -> tuple[dict[int, float], dict[int, int]]:
        dist = {start: 0.0}
        prev: dict[int, int] = {}
        stack = [start]
        while stack:
            cur = stack.pop()
            for nxt, length, _, _ in self.adj[cur]:
                if nxt in dist:
                    continue
                dist[nxt] = dist[cur] + length
                prev[nxt] = cur
                stack.append(nxt)
        return dist, prev

    def edge(self, u: int, v: int) -> tuple[float, str | None, float | None]:
        for nxt, length, label, support in self.adj[u]:
            if nxt == v:
                return length, label, support
        raise KeyError(f"No edge between nodes {u} and {v}")

    def build(self, node: int, parent: int | None) -> TreeNode:
        base = self.nodes[node]
        children: list[TreeNode] = []
        for nxt, length, label, support in self.adj[node]:
            if nxt == parent:
                continue
            child = self.build(nxt, node)
            child.length = length
            if not child.is_leaf:
                child.name = label
                child.support = support
            children.append(child)
        if not children:
            return TreeNode(name=base.name, length=0.0)
        if len(children) == 1 and parent is not None:
            # Former root of degree two: merge its two edges.
            return _Passthrough(children[0])
        return TreeNode(name=None, length=0.0, children=children)

    def root_on_edge(self, u: int, v: int, dist_from_u: float) -> TreeNode:
        length, label, support = self.edge(u, v)
        dist_from_u = min(max(dist_from_u, 0.0), length)
        sides: list[TreeNode] = []
        halves = (
            (self.build(u, v), dist_from_u),
            (self.build(v, u), length - dist_from_u),
        )
        for raw, side_length in halves:
            raw.length = side_length
            if not raw.is_leaf:
                raw.name = label
                raw.support = support
            sides.append(_unwrap(raw))
        left, right = sides
        return TreeNode(name=None, length=0.0, children=[left, right])


class _Passthrough(TreeNode):
    """Marker for a unary node whose single child replaces it."""

    def __init__(self, child: TreeNode) -> None:
        super().__init__(name=None, length=0.0, children=[child])


def _unwrap(node: TreeNode) -> TreeNode:
    def _fix(cur: TreeNode) -> TreeNode:
        if isinstance(cur, _Passthrough):
            inner = _fix(cur.children[0])
            inner.length = cur.length + inner.length
            return inner
        cur.children = [_fix(child) for child in cur.children]
        return cur

    return _fix(node)


def midpoint_root(tree: TreeNode) -> TreeNode:
    """Root the tree at the midpoint of its longest leaf-to-leaf path."""
    graph = _Graph(tree)
    leaves = graph.leaves()
    if len(leaves) < 3:
        return copy.deepcopy(tree)

    best = (-1.0, leaves[0], leaves[0])
    for leaf in leaves:
        dist, _ = graph.distances_from(leaf)
        for other in leaves:
            if dist[other] > best[0]:
                best = (dist[other], leaf, other)
    diameter, a, b = best
    if diameter <= 0:
        return copy.deepcopy(tree)

    dist, prev = graph.distances_from(a)
    path = [b]
    while path[-1] != a:
        path.append(prev[path[-1]])
    path.reverse()

    half = diameter / 2.0
    for u, v in zip(path, path[1:]):
        if dist[v] >= half:
            return graph.root_on_edge(u, v, half - dist[u])
    raise ValueError("Unable to locate tree midpoint.")


def outgroup_root(tree: TreeNode, outgroup: str) -> TreeNode:
    """Root the tree on the branch leading to the outgroup taxon."""
    graph = _Graph(tree)
    for idx, node in enumerate(graph.nodes):
        if node.is_leaf and node.name == outgroup:
            parent, length, _, _ = graph.adj[idx][0]
            return graph.root_on_edge(parent, idx, length / 2.0)
    raise ValueError(f"Outgroup taxon '{outgroup}' was not found in tree leaves.")
