# bvh.py
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

import jax.numpy as jnp
import numba
import numpy as np

from accelerators.split import N_BUCKETS, SplitMethod, best_divide, occupancy_grid
from primitives.aabb import AABB, union
from primitives.triangle import PrimitiveArray

logger = logging.getLogger(__name__)

INVALID = -1  # "no child" / "no primitive"


class BVHError(Exception):
    """Base class for BVH construction and layout errors."""


class EmptyPrimitivesError(BVHError, ValueError):
    """A build was requested over zero primitives."""


# -------------------------------
# Data Structures
# -------------------------------

@dataclass(frozen=True)
class BuildConfig:
    split_method: SplitMethod = SplitMethod.SAH
    n_buckets: int = N_BUCKETS
    n_workers: int = 1
    parallel_threshold: int = 4096
    record_splits: bool = False
    record_leaves: bool = False
    occupancy_grid: int = 8

    def __post_init__(self):
        object.__setattr__(self, "split_method", SplitMethod(self.split_method))
        if self.n_buckets < 2:
            raise ValueError(f"n_buckets must be at least 2 (got {self.n_buckets})")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1 (got {self.n_workers})")
        if self.parallel_threshold < 2:
            raise ValueError(f"parallel_threshold must be at least 2 (got {self.parallel_threshold})")
        if self.occupancy_grid < 1:
            raise ValueError(f"occupancy_grid must be at least 1 (got {self.occupancy_grid})")
        if self.record_leaves and not self.record_splits:
            raise ValueError("record_leaves requires record_splits")


@dataclass(frozen=True)
class BVHNode:
    bounds: AABB
    left: int = INVALID
    right: int = INVALID
    primitive: int = INVALID

    def __post_init__(self):
        has_children = self.left != INVALID or self.right != INVALID
        both_children = self.left != INVALID and self.right != INVALID
        has_primitive = self.primitive != INVALID
        if has_primitive == has_children or has_children != both_children:
            raise ValueError(
                f"a node is either a leaf or has two children "
                f"(left={self.left}, right={self.right}, primitive={self.primitive})")

    @classmethod
    def leaf(cls, primitive: int, bounds: AABB) -> "BVHNode":
        return cls(bounds=bounds, primitive=primitive)

    @classmethod
    def internal(cls, left: int, right: int, bounds: AABB) -> "BVHNode":
        return cls(bounds=bounds, left=left, right=right)

    @property
    def is_leaf(self) -> bool:
        return self.primitive != INVALID

    def relinked(self, left: int, right: int) -> "BVHNode":
        return replace(self, left=left, right=right)

    def rebased(self, offset: int) -> "BVHNode":
        if self.is_leaf:
            return self
        return self.relinked(self.left + offset, self.right + offset)


@dataclass(frozen=True)
class SplitRecord:
    """One row per recorded node; leaf rows have axis 0 and split -1."""
    node: int
    axis: int
    split: int
    start: int
    end: int
    occupancy: np.ndarray = field(repr=False, compare=False)
    parent: int = INVALID

    @property
    def is_leaf(self) -> bool:
        return self.split == INVALID

    def rebased(self, offset: int) -> "SplitRecord":
        parent = self.parent + offset if self.parent != INVALID else INVALID
        return replace(self, node=self.node + offset, parent=parent)

    def remapped(self, remap: np.ndarray) -> "SplitRecord":
        parent = int(remap[self.parent]) if self.parent != INVALID else INVALID
        return replace(self, node=int(remap[self.node]), parent=parent)


@dataclass(frozen=True)
class BVH:
    root: int
    nodes: Tuple[BVHNode, ...]
    split_records: Tuple[SplitRecord, ...] = ()

    @property
    def bounds(self) -> AABB:
        return self.nodes[self.root].bounds

    def leaves(self) -> List[BVHNode]:
        return [node for node in self.nodes if node.is_leaf]

    def __len__(self) -> int:
        return len(self.nodes)


class _Segment:
    """Private node list filled by one (sub)tree build."""

    def __init__(self):
        self.nodes: List[BVHNode] = []
        self.records: List[SplitRecord] = []

    def push(self, node: BVHNode) -> int:
        self.nodes.append(node)
        return len(self.nodes) - 1

    def append(self, other: "_Segment", root: int) -> int:
        """Concatenate `other` after this segment's nodes; return its rebased root."""
        offset = len(self.nodes)
        self.nodes.extend(node.rebased(offset) for node in other.nodes)
        self.records.extend(record.rebased(offset) for record in other.records)
        return root + offset


# -------------------------------
# BVH Build
# -------------------------------

def build_bvh(primitives: PrimitiveArray, config: Optional[BuildConfig] = None) -> BVH:
    """
    Build a binary BVH with one primitive per leaf.

    `primitives` is sorted in place; leaves refer to positions in the
    reordered store. Nodes come out in build (post-) order, children
    before parents; use `flatten_bvh` for the traversal layout.
    """
    config = config or BuildConfig()
    n = len(primitives)
    if n == 0:
        raise EmptyPrimitivesError("cannot build a BVH over zero primitives")
    logger.debug("Building BVH over %d primitives with %s", n, config)
    t0 = time.perf_counter()

    segment = _Segment()
    if config.n_workers > 1 and n >= config.parallel_threshold:
        with ThreadPoolExecutor(max_workers=config.n_workers) as pool:
            root = _build_range(primitives, segment, 0, n, config, pool)
    else:
        root = _build_range(primitives, segment, 0, n, config, None)

    records = _link_parents(segment.nodes, segment.records)
    bvh = BVH(root=root, nodes=tuple(segment.nodes), split_records=records)
    logger.info("Built BVH: %d primitives, %d nodes in %.3f s",
                n, len(bvh.nodes), time.perf_counter() - t0)
    return bvh


def _build_range(primitives: PrimitiveArray,
                 segment: _Segment,
                 start: int,
                 end: int,
                 config: BuildConfig,
                 pool: Optional[Executor]) -> int:
    if start >= end:
        raise EmptyPrimitivesError(f"invalid primitive range [{start}, {end})")

    if end - start == 1:
        index = segment.push(BVHNode.leaf(start, primitives.bounds(start)))
        if config.record_leaves:
            segment.records.append(SplitRecord(
                node=index, axis=0, split=INVALID, start=start, end=end,
                occupancy=occupancy_grid(primitives, start, end, config.occupancy_grid)))
        return index

    axis, split = best_divide(primitives, start, end,
                              config.split_method, config.n_buckets, config.n_workers)

    if pool is not None and end - start >= config.parallel_threshold:
        # left half on the pool, right half here; each into its own segment
        future = pool.submit(_build_segment, primitives, start, split, config)
        right_segment = _Segment()
        right_root = _build_range(primitives, right_segment, split, end, config, pool)
        left_segment, left_root = future.result()
        left = segment.append(left_segment, left_root)
        right = segment.append(right_segment, right_root)
    else:
        left = _build_range(primitives, segment, start, split, config, pool)
        right = _build_range(primitives, segment, split, end, config, pool)

    bounds = union(segment.nodes[left].bounds, segment.nodes[right].bounds)
    index = segment.push(BVHNode.internal(left, right, bounds))
    if config.record_splits:
        segment.records.append(SplitRecord(
            node=index, axis=axis, split=split, start=start, end=end,
            occupancy=occupancy_grid(primitives, start, end, config.occupancy_grid)))
    return index


def _build_segment(primitives: PrimitiveArray,
                   start: int,
                   end: int,
                   config: BuildConfig) -> Tuple[_Segment, int]:
    segment = _Segment()
    root = _build_range(primitives, segment, start, end, config, None)
    return segment, root


def _parent_map(nodes) -> Dict[int, int]:
    parents = {}
    for i, node in enumerate(nodes):
        if not node.is_leaf:
            parents[node.left] = i
            parents[node.right] = i
    return parents


def _link_parents(nodes: List[BVHNode], records: List[SplitRecord]) -> Tuple[SplitRecord, ...]:
    if not records:
        return ()
    parents = _parent_map(nodes)
    return tuple(replace(r, parent=parents.get(r.node, INVALID)) for r in records)


# -------------------------------
# Flatten
# -------------------------------

@numba.njit(cache=False)
def _preorder(left, right, root):
    n = left.shape[0]
    order = np.empty(n, dtype=np.int32)
    remap = np.full(n, -1, dtype=np.int32)
    stack = np.empty(2 * n + 1, dtype=np.int32)
    stack[0] = root
    top = 1
    count = 0
    while top > 0:
        top -= 1
        node = stack[top]
        if remap[node] != -1:
            continue
        remap[node] = count
        order[count] = node
        count += 1
        # right pushed first so the left subtree is emitted right after its parent
        if right[node] != -1:
            stack[top] = right[node]
            top += 1
        if left[node] != -1:
            stack[top] = left[node]
            top += 1
    return order[:count], remap


def _child_arrays(bvh: BVH) -> Tuple[np.ndarray, np.ndarray]:
    left = np.array([node.left for node in bvh.nodes], dtype=np.int32)
    right = np.array([node.right for node in bvh.nodes], dtype=np.int32)
    return left, right


def _bad_link(bvh: BVH, left: np.ndarray, right: np.ndarray) -> Optional[str]:
    """Describe the first root or child index outside the node array, if any."""
    n = len(bvh.nodes)
    if not 0 <= bvh.root < n:
        return f"root {bvh.root} outside node array of size {n}"
    for links in (left, right):
        bad = np.flatnonzero((links != INVALID) & ((links < 0) | (links >= n)))
        if bad.size:
            return f"node {bad[0]} has child {links[bad[0]]} outside the node array"
    return None


def flatten_bvh(bvh: BVH) -> BVH:
    """
    Rewrite the tree in depth-first pre-order: each parent is followed by its
    whole left subtree, then its whole right subtree. The root lands at 0.
    """
    left, right = _child_arrays(bvh)
    problem = _bad_link(bvh, left, right)
    if problem:
        raise BVHError(problem)
    order, remap = _preorder(left, right, np.int32(bvh.root))
    nodes = []
    for old in order:
        node = bvh.nodes[old]
        if node.is_leaf:
            nodes.append(node)
        else:
            nodes.append(node.relinked(int(remap[node.left]), int(remap[node.right])))
    records = tuple(record.remapped(remap) for record in bvh.split_records)
    logger.debug("Flattened BVH with %d nodes", len(nodes))
    return BVH(root=int(remap[bvh.root]), nodes=tuple(nodes), split_records=records)


def is_preorder(bvh: BVH) -> bool:
    if not bvh.nodes or bvh.root != 0:
        return False
    left, right = _child_arrays(bvh)
    if _bad_link(bvh, left, right):
        return False
    order, _ = _preorder(left, right, np.int32(bvh.root))
    return len(order) == len(bvh.nodes) and bool(np.all(order == np.arange(len(order))))


# -------------------------------
# Packed BVH and Validation Helpers
# -------------------------------

def pack_bvh(bvh: BVH) -> dict:
    bounds_min = jnp.stack([node.bounds.min_point for node in bvh.nodes], axis=0)
    bounds_max = jnp.stack([node.bounds.max_point for node in bvh.nodes], axis=0)
    left = jnp.array([node.left for node in bvh.nodes], dtype=jnp.int32)
    right = jnp.array([node.right for node in bvh.nodes], dtype=jnp.int32)
    primitive = jnp.array([node.primitive for node in bvh.nodes], dtype=jnp.int32)
    return {
        "bounds_min": bounds_min,
        "bounds_max": bounds_max,
        "left": left,
        "right": right,
        "primitive": primitive,
    }


def validate_bvh(bvh: BVH, primitives: PrimitiveArray) -> None:
    """Raise BVHError at the first broken structural or bounds invariant."""
    n = len(primitives)
    if not 0 <= bvh.root < len(bvh.nodes):
        raise BVHError(f"root {bvh.root} outside node array of size {len(bvh.nodes)}")

    seen_nodes = set()
    seen_prims = set()
    stack = [bvh.root]
    while stack:
        index = stack.pop()
        if index in seen_nodes:
            raise BVHError(f"node {index} is reachable twice")
        seen_nodes.add(index)
        node = bvh.nodes[index]
        if node.is_leaf:
            if not 0 <= node.primitive < n:
                raise BVHError(f"leaf {index} references primitive {node.primitive} of {n}")
            if node.primitive in seen_prims:
                raise BVHError(f"primitive {node.primitive} appears in more than one leaf")
            seen_prims.add(node.primitive)
            if node.bounds != primitives.bounds(node.primitive):
                raise BVHError(f"leaf {index} box differs from its primitive's box")
        else:
            for child in (node.left, node.right):
                if not 0 <= child < len(bvh.nodes):
                    raise BVHError(f"node {index} has child {child} outside the node array")
            expected = union(bvh.nodes[node.left].bounds, bvh.nodes[node.right].bounds)
            if node.bounds != expected:
                raise BVHError(f"node {index} box is not the union of its children")
            stack.extend((node.right, node.left))

    if len(seen_prims) != n:
        raise BVHError(f"{n - len(seen_prims)} primitives are not referenced by any leaf")
    if len(seen_nodes) != 2 * n - 1:
        raise BVHError(f"expected {2 * n - 1} reachable nodes, found {len(seen_nodes)}")
