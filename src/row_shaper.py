from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Mapping

logger = logging.getLogger(__name__)

CYCLE_POLICIES = ("drop", "raise", "promote")


def _key(value: Any) -> Any:
    """
    Normalise an id/reference value: missing, None and "" all mean "no value".
    """
    if value is None or value == "":
        return None
    return value


def _group_key(value: Any) -> str:
    if value is None or value == "":
        return ""
    return str(value)


def group_by(rows: Iterable[Mapping] | None, field: str) -> dict[str, list]:
    """
    Bucket rows by the string form of ``row[field]``.

    Rows with no value for the field land under the "" key. Groups keep the
    order in which their key first appears and rows keep their input order.
    """
    groups: dict[str, list] = {}
    for row in rows or ():
        groups.setdefault(_group_key(row.get(field)), []).append(row)
    return groups


def build_tree(
    rows: Iterable[Mapping] | None,
    children: str,
    parent_id: str,
    parent_ref: str,
    *,
    copy: bool = True,
    on_cycle: str = "drop",
) -> list:
    """
    Rebuild a parent/child hierarchy from flat rows.

    Args:
        rows:
            Flat rows in any order.
        children:
            Name of the field that receives each node's child rows.
        parent_id:
            Field holding a row's own id.
        parent_ref:
            Field holding the id of the row's parent.
        copy:
            True => nodes are shallow dict copies, input rows stay untouched.
            False => input rows are mutated in place and returned.
        on_cycle:
            What to do with rows that no root can reach (reference cycles and
            self references): "drop" them, "raise" ValueError, or "promote" the
            first such row of each cycle to an extra root.

    Returns:
        Root rows in input order, each carrying its children recursively.
        Rows whose parent reference is empty or points at an unknown id are
        roots.
    """
    if on_cycle not in CYCLE_POLICIES:
        raise ValueError(f"on_cycle must be one of {CYCLE_POLICIES}, got {on_cycle!r}")

    nodes = [dict(r) if copy else r for r in (rows or ())]

    known_ids = {_key(n.get(parent_id)) for n in nodes}
    known_ids.discard(None)

    by_parent: dict[Any, list[int]] = {}
    roots: list[int] = []
    for idx, node in enumerate(nodes):
        ref = _key(node.get(parent_ref))
        if ref is None or ref not in known_ids:
            roots.append(idx)
        else:
            by_parent.setdefault(ref, []).append(idx)

    placed = [False] * len(nodes)
    _attach_children(roots, nodes, by_parent, placed, children, parent_id)
    result = [nodes[i] for i in roots]

    unreachable = [i for i, done in enumerate(placed) if not done]
    if not unreachable:
        return result

    if on_cycle == "raise":
        ids = [nodes[i].get(parent_id) for i in unreachable]
        raise ValueError(f"Rows form a reference cycle and have no root: ids {ids}")

    if on_cycle == "drop":
        logger.warning("Dropped %d row(s) unreachable from any root", len(unreachable))
        return result

    for idx in unreachable:
        if placed[idx]:
            continue
        logger.debug("Promoting row %r to root to break a reference cycle", nodes[idx].get(parent_id))
        _attach_children([idx], nodes, by_parent, placed, children, parent_id)
        result.append(nodes[idx])
    return result


def _attach_children(
    starts: list[int],
    nodes: list,
    by_parent: dict[Any, list[int]],
    placed: list[bool],
    children: str,
    parent_id: str,
) -> None:
    # Pre-order walk with an explicit stack; a node claims every pending row
    # that references its id the moment it is expanded.
    stack = list(reversed(starts))
    while stack:
        idx = stack.pop()
        placed[idx] = True
        node = nodes[idx]
        own_id = _key(node.get(parent_id))
        claimed = by_parent.pop(own_id, []) if own_id is not None else []
        kids = [i for i in claimed if not placed[i]]
        for i in kids:
            placed[i] = True
        node[children] = [nodes[i] for i in kids]
        stack.extend(reversed(kids))


def walk_tree(tree: Iterable[Mapping], children: str) -> Iterator[tuple[int, Mapping]]:
    """Yield ``(depth, node)`` pairs in pre-order; roots have depth 0."""
    stack = [(0, node) for node in reversed(list(tree))]
    while stack:
        depth, node = stack.pop()
        yield depth, node
        kids = node.get(children) or []
        stack.extend((depth + 1, kid) for kid in reversed(kids))


def group(
    rows: Iterable[Mapping] | None = None,
    *,
    by: str | None = None,
    children: str | None = None,
    parent_id: str | None = None,
    parent_ref: str | None = None,
    **options: Any,
) -> dict[str, list] | list:
    """
    Shape rows either into groups (``by=``) or into a tree
    (``children=``, ``parent_id=``, ``parent_ref=``).
    """
    tree_args = (children, parent_id, parent_ref)
    wants_tree = any(a is not None for a in tree_args)

    if by is not None:
        if wants_tree:
            raise ValueError("Use either 'by' or the tree arguments, not both.")
        if options:
            raise ValueError(f"Unexpected options for grouping: {sorted(options)}")
        return group_by(rows, by)

    if wants_tree:
        if any(a is None for a in tree_args):
            raise ValueError("Tree grouping requires 'children', 'parent_id' and 'parent_ref'.")
        return build_tree(rows, children, parent_id, parent_ref, **options)

    raise ValueError("Provide 'by' or 'children'/'parent_id'/'parent_ref'.")
