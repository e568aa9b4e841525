"""
Lineage graph queries.

Nodes form a strict tree keyed by sound id with explicit parent pointers.
Every walk is bounded by the lineage's node count; exceeding the bound means
the stored graph has a cycle or a dangling parent, which is raised as
StoreInconsistency instead of being truncated.
"""

from collections import defaultdict, deque
from typing import Dict, Iterable, List, Mapping, Optional

from models import (
    VARIATION_TYPES,
    LineageNode,
    LineageStats,
    LineageTreeNode,
    ParameterDrift,
    ParameterShift,
    SoundParameters,
)
from .errors import NotFoundError, StoreInconsistency

DRIFT_FIELDS = ("intensity", "texture", "brightness", "noisiness")


def _index(nodes: Iterable[LineageNode]) -> Dict[str, LineageNode]:
    return {n.sound_id: n for n in nodes}


def _children(nodes: Iterable[LineageNode]) -> Dict[str, List[LineageNode]]:
    children: Dict[str, List[LineageNode]] = defaultdict(list)
    for n in nodes:
        if n.parent_id is not None:
            children[n.parent_id].append(n)
    return children


def ancestor_ids(sound_id: str, nodes: List[LineageNode]) -> List[str]:
    """Parent chain of sound_id, nearest first. The root has no ancestors."""
    by_id = _index(nodes)
    current = by_id.get(sound_id)
    if current is None:
        raise NotFoundError(f"Sound {sound_id} is not part of this lineage")

    ancestors: List[str] = []
    while current.parent_id is not None:
        if len(ancestors) >= len(by_id):
            raise StoreInconsistency(f"Ancestor walk from {sound_id} exceeded {len(by_id)} nodes")
        parent = by_id.get(current.parent_id)
        if parent is None:
            raise StoreInconsistency(
                f"Node {current.sound_id} points at missing parent {current.parent_id}"
            )
        ancestors.append(parent.sound_id)
        current = parent
    return ancestors


def descendant_ids(sound_id: str, nodes: List[LineageNode]) -> List[str]:
    """Breadth-first list of every sound derived from sound_id."""
    children = _children(nodes)
    seen = {sound_id}
    descendants: List[str] = []
    queue = deque(n.sound_id for n in children.get(sound_id, []))

    while queue:
        current = queue.popleft()
        if current in seen:
            raise StoreInconsistency(f"Sound {current} reached twice below {sound_id}")
        seen.add(current)
        descendants.append(current)
        if len(descendants) > len(nodes):
            raise StoreInconsistency(f"Descendant walk from {sound_id} exceeded {len(nodes)} nodes")
        queue.extend(n.sound_id for n in children.get(current, []))
    return descendants


def sibling_ids(sound_id: str, nodes: List[LineageNode]) -> List[str]:
    node = _index(nodes).get(sound_id)
    if node is None or node.parent_id is None:
        return []
    return [n.sound_id for n in nodes if n.parent_id == node.parent_id and n.sound_id != sound_id]


def find_root(nodes: List[LineageNode]) -> Optional[LineageNode]:
    roots = [n for n in nodes if n.parent_id is None]
    if len(roots) > 1:
        raise StoreInconsistency(f"Lineage has {len(roots)} root nodes")
    return roots[0] if roots else None


def build_tree(nodes: List[LineageNode]) -> Optional[LineageTreeNode]:
    """Nest nodes under their parents, starting from the root."""
    root = find_root(nodes)
    if root is None:
        return None

    children = _children(nodes)
    tree = LineageTreeNode(node=root)
    placed = 1
    queue = deque([tree])
    while queue:
        branch = queue.popleft()
        for child in children.get(branch.node.sound_id, []):
            placed += 1
            if placed > len(nodes):
                raise StoreInconsistency("Lineage tree has a cycle")
            sub = LineageTreeNode(node=child)
            branch.children.append(sub)
            queue.append(sub)
    return tree


def parameter_shifts(parent: SoundParameters, child: SoundParameters) -> List[ParameterShift]:
    """Per-field differences between a parent's and a child's parameters."""
    shifts: List[ParameterShift] = []
    for name in DRIFT_FIELDS:
        original = getattr(parent, name)
        new = getattr(child, name)
        if abs(new - original) > 0.01:
            shifts.append(
                ParameterShift(
                    parameter=name,
                    original_value=original,
                    new_value=new,
                    shift_amount=new - original,
                )
            )

    if parent.bpm and child.bpm and parent.bpm != child.bpm:
        shifts.append(
            ParameterShift(
                parameter="bpm",
                original_value=parent.bpm,
                new_value=child.bpm,
                shift_amount=child.bpm - parent.bpm,
            )
        )
    return shifts


def lineage_stats(
    nodes: List[LineageNode],
    parameters: Optional[Mapping[str, SoundParameters]] = None,
) -> LineageStats:
    """Shape and drift summary of one lineage.

    `parameters` maps sound id to that sound's parameters; drift is averaged
    over leaves whose parameters are known and stays zero without it.
    """
    distribution = {vtype: 0 for vtype in VARIATION_TYPES}
    for n in nodes:
        distribution[n.variation_type] += 1

    children = _children(nodes)
    fanouts = [len(kids) for kids in children.values()]
    branching = sum(fanouts) / len(fanouts) if fanouts else 0.0

    drift = ParameterDrift()
    root = find_root(nodes)
    if parameters and root is not None and root.sound_id in parameters:
        base = parameters[root.sound_id]
        leaves = [
            parameters[n.sound_id]
            for n in nodes
            if n.sound_id not in children and n.sound_id in parameters
        ]
        if leaves:
            drift = ParameterDrift(
                **{
                    name: sum(abs(getattr(leaf, name) - getattr(base, name)) for leaf in leaves) / len(leaves)
                    for name in DRIFT_FIELDS
                }
            )

    return LineageStats(
        total_sounds=len(nodes),
        max_depth=max((n.generation for n in nodes), default=0),
        avg_branching_factor=branching,
        variation_type_distribution=distribution,
        parameter_drift=drift,
    )
