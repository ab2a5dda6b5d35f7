import numpy as np
import pytest

from accelerators.bvh import (BVH, BVHError, BVHNode, BuildConfig, EmptyPrimitivesError, INVALID,
                              build_bvh, flatten_bvh, validate_bvh)
from accelerators.split import SplitMethod
from conftest import random_soup, triangles_at
from primitives.aabb import AABB, bounding_box_of_range, union
from primitives.triangle import PrimitiveArray


@pytest.mark.parametrize("n", [1, 2, 3, 13, 50])
def test_leaf_and_internal_counts(n):
    prims = random_soup(n)
    bvh = build_bvh(prims)
    leaves = bvh.leaves()
    assert len(leaves) == n
    assert len(bvh.nodes) - len(leaves) == n - 1
    assert sorted(node.primitive for node in leaves) == list(range(n))


def test_boxes_are_exact(soup):
    bvh = build_bvh(soup)
    validate_bvh(bvh, soup)
    for node in bvh.nodes:
        if node.is_leaf:
            assert node.bounds == soup.bounds(node.primitive)
        else:
            assert node.bounds == union(bvh.nodes[node.left].bounds, bvh.nodes[node.right].bounds)
    assert bvh.bounds == bounding_box_of_range(soup, 0, len(soup))


def test_single_primitive_is_one_leaf():
    prims = triangles_at([(1.0, 2.0, 3.0)])
    bvh = build_bvh(prims)
    assert bvh.root == 0
    assert len(bvh.nodes) == 1
    assert bvh.nodes[0].is_leaf
    assert bvh.nodes[0].primitive == 0
    assert bvh.bounds == prims.bounds(0)


def test_empty_input_is_a_typed_error():
    with pytest.raises(EmptyPrimitivesError):
        build_bvh(PrimitiveArray())
    with pytest.raises(ValueError):
        build_bvh(PrimitiveArray())


def test_build_reorders_primitives_without_losing_any(soup):
    before = soup.copy()
    build_bvh(soup)
    assert sorted(soup.original_index) == list(range(len(soup)))
    for i in range(len(soup)):
        j = soup.original_index[i]
        np.testing.assert_array_equal(soup.vertices[i], before.vertices[j])
        assert soup.materials[i] == before.materials[j]


def test_build_order_puts_children_before_parents(soup):
    bvh = build_bvh(soup)
    assert bvh.root == len(bvh.nodes) - 1
    for i, node in enumerate(bvh.nodes):
        if not node.is_leaf:
            assert node.left < i and node.right < i


def test_builds_are_deterministic():
    a, b = random_soup(80, seed=11), random_soup(80, seed=11)
    first, second = build_bvh(a), build_bvh(b)
    assert first.nodes == second.nodes
    np.testing.assert_array_equal(a.original_index, b.original_index)


def test_worker_count_does_not_change_the_tree():
    a, b = random_soup(120, seed=5), random_soup(120, seed=5)
    serial = build_bvh(a, BuildConfig(n_workers=1))
    parallel = build_bvh(b, BuildConfig(n_workers=4, parallel_threshold=8))
    assert parallel.root == serial.root
    assert parallel.nodes == serial.nodes
    np.testing.assert_array_equal(a.original_index, b.original_index)
    validate_bvh(parallel, b)


def test_four_triangles_split_on_x(four_triangles):
    bvh = build_bvh(four_triangles, BuildConfig(record_splits=True))
    root_record = next(r for r in bvh.split_records if r.node == bvh.root)
    assert root_record.axis == 0
    assert root_record.split == 2
    xs = four_triangles.centroids[:, 0]
    assert xs.min() < four_triangles.bounds_min[root_record.split, 0] < xs.max()
    assert bvh.bounds == AABB.from_corners((-0.25, -0.25, 0.0), (6.5, 3.5, 0.0))

    left, right = bvh.nodes[bvh.nodes[bvh.root].left], bvh.nodes[bvh.nodes[bvh.root].right]
    assert left.bounds == AABB.from_corners((-0.25, -0.25, 0.0), (2.5, 1.5, 0.0))
    assert right.bounds == AABB.from_corners((3.75, 1.75, 0.0), (6.5, 3.5, 0.0))


@pytest.mark.parametrize("method", ["sah", "middle_out", "median"])
def test_every_split_method_builds_a_valid_tree(method):
    prims = random_soup(70, seed=2)
    bvh = build_bvh(prims, BuildConfig(split_method=method))
    validate_bvh(bvh, prims)


def test_median_method_balances_the_tree():
    prims = random_soup(16)
    bvh = build_bvh(prims, BuildConfig(split_method=SplitMethod.MEDIAN))
    depths = []
    stack = [(bvh.root, 1)]
    while stack:
        index, depth = stack.pop()
        node = bvh.nodes[index]
        if node.is_leaf:
            depths.append(depth)
        else:
            stack += [(node.left, depth + 1), (node.right, depth + 1)]
    assert set(depths) == {5}


def test_degenerate_geometry_still_builds():
    prims = triangles_at([(3.0, 3.0, 3.0)] * 20)
    bvh = build_bvh(prims, BuildConfig(record_splits=True))
    validate_bvh(bvh, prims)
    assert all(record.axis == 0 for record in bvh.split_records)


def test_split_records_link_parents(soup):
    bvh = build_bvh(soup, BuildConfig(record_splits=True, occupancy_grid=4))
    assert len(bvh.split_records) == len(soup) - 1
    by_node = {record.node: record for record in bvh.split_records}
    for record in bvh.split_records:
        node = bvh.nodes[record.node]
        assert not node.is_leaf
        assert record.start < record.split < record.end
        assert record.occupancy.shape == (64,)
        if record.node == bvh.root:
            assert record.parent == INVALID
        else:
            parent = bvh.nodes[record.parent]
            assert record.node in (parent.left, parent.right)
            assert by_node[record.parent].start <= record.start

    flat = flatten_bvh(bvh)
    for record in flat.split_records:
        if record.parent != INVALID:
            parent = flat.nodes[record.parent]
            assert record.node in (parent.left, parent.right)


def test_split_records_survive_parallel_builds():
    a, b = random_soup(60, seed=9), random_soup(60, seed=9)
    serial = build_bvh(a, BuildConfig(record_splits=True))
    parallel = build_bvh(b, BuildConfig(record_splits=True, n_workers=3, parallel_threshold=10))
    assert [(r.node, r.parent, r.split) for r in serial.split_records] == \
           [(r.node, r.parent, r.split) for r in parallel.split_records]


def test_build_config_validation():
    assert BuildConfig(split_method="median").split_method is SplitMethod.MEDIAN
    with pytest.raises(ValueError):
        BuildConfig(split_method="octree")
    with pytest.raises(ValueError):
        BuildConfig(n_buckets=1)
    with pytest.raises(ValueError):
        BuildConfig(n_workers=0)
    with pytest.raises(ValueError):
        BuildConfig(parallel_threshold=1)


def test_node_is_either_leaf_or_internal():
    bounds = AABB.from_corners((0, 0, 0), (1, 1, 1))
    assert BVHNode.leaf(3, bounds).is_leaf
    assert not BVHNode.internal(0, 1, bounds).is_leaf
    with pytest.raises(ValueError):
        BVHNode(bounds, left=0, right=1, primitive=2)
    with pytest.raises(ValueError):
        BVHNode(bounds)
    with pytest.raises(ValueError):
        BVHNode(bounds, left=0)


def test_validate_bvh_reports_broken_boxes(four_triangles):
    bvh = build_bvh(four_triangles)
    root = bvh.nodes[bvh.root]
    shrunk = BVHNode.internal(root.left, root.right, AABB.from_corners((0, 0, 0), (1, 1, 0)))
    broken = BVH(root=bvh.root, nodes=bvh.nodes[:-1] + (shrunk,))
    with pytest.raises(BVHError):
        validate_bvh(broken, four_triangles)


def test_zero_area_primitives_split_at_the_midpoint():
    prims = PrimitiveArray.from_mesh(np.zeros((3, 3)), np.zeros((24, 3), dtype=np.int32))
    bvh = build_bvh(prims, BuildConfig(record_splits=True))
    validate_bvh(bvh, prims)
    root_record = next(r for r in bvh.split_records if r.node == bvh.root)
    assert (root_record.axis, root_record.split) == (0, 12)
    for record in bvh.split_records:
        assert record.split == record.start + (record.end - record.start) // 2


def test_leaf_records_give_one_row_per_node(soup):
    bvh = build_bvh(soup, BuildConfig(record_splits=True, record_leaves=True, occupancy_grid=2))
    assert len(bvh.split_records) == len(bvh.nodes)
    assert [r.node for r in bvh.split_records] == list(range(len(bvh.nodes)))
    for record in bvh.split_records:
        node = bvh.nodes[record.node]
        assert record.is_leaf == node.is_leaf
        if node.is_leaf:
            assert (record.axis, record.split) == (0, INVALID)
            assert (record.start, record.end) == (node.primitive, node.primitive + 1)
            assert record.occupancy.shape == (8,)
        if record.node != bvh.root:
            parent = bvh.nodes[record.parent]
            assert record.node in (parent.left, parent.right)

    flat = flatten_bvh(bvh)
    for record in flat.split_records:
        assert record.is_leaf == flat.nodes[record.node].is_leaf


def test_leaf_records_match_across_worker_counts():
    a, b = random_soup(50, seed=3), random_soup(50, seed=3)
    config = dict(record_splits=True, record_leaves=True)
    serial = build_bvh(a, BuildConfig(**config))
    parallel = build_bvh(b, BuildConfig(n_workers=2, parallel_threshold=8, **config))
    assert [(r.node, r.parent, r.split) for r in serial.split_records] == \
           [(r.node, r.parent, r.split) for r in parallel.split_records]


def test_leaf_records_need_split_records():
    with pytest.raises(ValueError):
        BuildConfig(record_leaves=True)
