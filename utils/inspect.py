# inspect.py

from typing import List

from accelerators.bvh import BVH


def format_bvh_tree(bvh: BVH) -> str:
    """
    Describe the tree recursively from the root, one indented block per node.
    """
    lines: List[str] = []
    _format_node(bvh, bvh.root, 0, lines)
    return "\n".join(lines)


def _format_node(bvh: BVH, node_index: int, indent: int, lines: List[str]):
    if node_index == -1 or node_index >= len(bvh.nodes):
        return

    node = bvh.nodes[node_index]
    prefix = "  " * indent
    lines.append(f"{prefix}Node[{node_index}]:")
    lines.append(f"{prefix}  Bounds:")
    lines.append(f"{prefix}    min: {node.bounds.min_point.tolist()}")
    lines.append(f"{prefix}    max: {node.bounds.max_point.tolist()}")

    if node.is_leaf:
        lines.append(f"{prefix}  Leaf node:")
        lines.append(f"{prefix}    primitive: {node.primitive}")
    else:
        lines.append(f"{prefix}  Interior node:")
        lines.append(f"{prefix}    left: {node.left}")
        lines.append(f"{prefix}    right: {node.right}")
        lines.append(f"{prefix}    Left child:")
        _format_node(bvh, node.left, indent + 2, lines)
        lines.append(f"{prefix}    Right child:")
        _format_node(bvh, node.right, indent + 2, lines)


def format_linear_bvh(bvh: BVH) -> str:
    """Describe the nodes in array order (the flattened layout)."""
    lines = [f"BVH (root={bvh.root}, {len(bvh.nodes)} nodes):"]
    for i, node in enumerate(bvh.nodes):
        lines.append(f"Node[{i}]:")
        lines.append(f"  min: {node.bounds.min_point.tolist()}")
        lines.append(f"  max: {node.bounds.max_point.tolist()}")
        if node.is_leaf:
            lines.append(f"  Leaf node: primitive {node.primitive}")
        else:
            lines.append(f"  Interior node: left {node.left}, right {node.right}")
        lines.append("-" * 40)
    return "\n".join(lines)


def tree_depth(bvh: BVH) -> int:
    depth = 0
    stack = [(bvh.root, 1)]
    while stack:
        index, level = stack.pop()
        depth = max(depth, level)
        node = bvh.nodes[index]
        if not node.is_leaf:
            stack.append((node.left, level + 1))
            stack.append((node.right, level + 1))
    return depth


def sah_cost(bvh: BVH, traversal_cost: float = 1.0, intersection_cost: float = 1.0) -> float:
    """
    Expected cost of a random ray through the tree: every node weighted by
    its surface area relative to the root's.
    """
    root_area = bvh.bounds.surface_area()
    if root_area == 0.0:
        return float(len(bvh.leaves())) * intersection_cost
    cost = 0.0
    for node in bvh.nodes:
        weight = node.bounds.surface_area() / root_area
        cost += weight * (intersection_cost if node.is_leaf else traversal_cost)
    return cost


def bvh_summary(bvh: BVH) -> dict:
    leaves = len(bvh.leaves())
    return {
        "nodes": len(bvh.nodes),
        "leaves": leaves,
        "internal": len(bvh.nodes) - leaves,
        "depth": tree_depth(bvh),
        "sah_cost": sah_cost(bvh),
    }
