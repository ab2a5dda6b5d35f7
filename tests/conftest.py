"""Shared fixtures for the BVH tests."""

import numpy as np
import pytest

from primitives.triangle import PrimitiveArray

# Offsets from a triangle's centroid; they sum to zero and are exact in float32.
TRIANGLE_OFFSETS = np.array([
    (-0.25, -0.25, 0.0),
    (0.5, -0.25, 0.0),
    (-0.25, 0.5, 0.0),
], dtype=np.float32)

# Coplanar (z = 0) centroids spread over 6 units in x and 3 in y,
# listed out of order so that the builder has to sort them.
FOUR_CENTROIDS = np.array([
    (4.0, 2.0, 0.0),
    (0.0, 0.0, 0.0),
    (6.0, 3.0, 0.0),
    (2.0, 1.0, 0.0),
], dtype=np.float32)


def triangles_at(centroids) -> PrimitiveArray:
    centroids = np.asarray(centroids, dtype=np.float32)
    vertices = (centroids[:, None, :] + TRIANGLE_OFFSETS[None, :, :]).reshape(-1, 3)
    faces = np.arange(len(vertices), dtype=np.int32).reshape(-1, 3)
    return PrimitiveArray.from_mesh(vertices, faces)


def random_soup(n: int, seed: int = 7) -> PrimitiveArray:
    rng = np.random.default_rng(seed)
    centers = rng.uniform(0.0, 10.0, size=(n, 1, 3))
    offsets = rng.uniform(-0.5, 0.5, size=(n, 3, 3))
    vertices = (centers + offsets).reshape(-1, 3).astype(np.float32)
    faces = np.arange(3 * n, dtype=np.int32).reshape(-1, 3)
    materials = rng.integers(0, 4, size=n)
    return PrimitiveArray.from_mesh(vertices, faces, materials)


@pytest.fixture
def four_triangles():
    return triangles_at(FOUR_CENTROIDS)


@pytest.fixture
def soup():
    return random_soup(64)
