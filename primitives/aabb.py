# aabb.py

import jax
import jax.numpy as jnp
from dataclasses import dataclass
from typing import Any, Optional, Tuple
from jax import tree_util

INF = jnp.inf


def _vec3(values) -> jnp.ndarray:
    return jnp.asarray(values, dtype=jnp.float32).reshape(3)


@dataclass(frozen=True, eq=False)
class AABB:
    min_point: jnp.ndarray  # shape (3,)
    max_point: jnp.ndarray  # shape (3,)

    @classmethod
    def empty(cls) -> "AABB":
        """The identity element of `union`: +inf mins, -inf maxes."""
        return cls(jnp.full((3,), INF, dtype=jnp.float32),
                   jnp.full((3,), -INF, dtype=jnp.float32))

    @classmethod
    def from_corners(cls, min_point, max_point) -> "AABB":
        return cls(_vec3(min_point), _vec3(max_point))

    @classmethod
    def from_points(cls, *points) -> "AABB":
        stacked = jnp.stack([_vec3(p) for p in points], axis=0)
        return cls(jnp.min(stacked, axis=0), jnp.max(stacked, axis=0))

    # --- Instance methods (to be called like bounds.surface_area()) ---

    @property
    def centroid(self) -> jnp.ndarray:
        return (self.min_point + self.max_point) * 0.5

    def union(self, other: "AABB") -> "AABB":
        return union(self, other)

    def intersection(self, other: "AABB") -> Optional["AABB"]:
        return intersection(self, other)

    def surface_area(self) -> float:
        return float(get_surface_area(self))

    def is_empty(self) -> bool:
        return bool(is_empty_box(self))

    def contains(self, other: "AABB") -> bool:
        return bool(contains(self, other))

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, AABB):
            return NotImplemented
        return bool(jnp.array_equal(self.min_point, other.min_point)
                    & jnp.array_equal(self.max_point, other.max_point))

    def __repr__(self) -> str:
        return f"AABB(min={self.min_point.tolist()}, max={self.max_point.tolist()})"


# --- Standalone functions (functional style with JIT) ---

@jax.jit
def union(aabb1: AABB, aabb2: AABB) -> AABB:
    new_min = jnp.minimum(aabb1.min_point, aabb2.min_point)
    new_max = jnp.maximum(aabb1.max_point, aabb2.max_point)
    return AABB(new_min, new_max)


@jax.jit
def _overlap(aabb1: AABB, aabb2: AABB) -> Tuple[AABB, jnp.ndarray]:
    new_min = jnp.maximum(aabb1.min_point, aabb2.min_point)
    new_max = jnp.minimum(aabb1.max_point, aabb2.max_point)
    return AABB(new_min, new_max), jnp.all(new_min <= new_max)


def intersection(aabb1: AABB, aabb2: AABB) -> Optional[AABB]:
    """Return the overlap of two boxes, or None when they are disjoint."""
    box, overlaps = _overlap(aabb1, aabb2)
    return box if bool(overlaps) else None


@jax.jit
def is_empty_box(aabb: AABB) -> bool:
    return jnp.any(aabb.min_point > aabb.max_point)


@jax.jit
def get_surface_area(aabb: AABB) -> float:
    diag = aabb.max_point - aabb.min_point
    area = 2.0 * (diag[0] * diag[1] + diag[1] * diag[2] + diag[2] * diag[0])
    # the empty sentinel would otherwise report +inf
    return jnp.where(is_empty_box(aabb), 0.0, area)


@jax.jit
def contains(aabb1: AABB, aabb2: AABB) -> bool:
    cond_min = jnp.all(aabb1.min_point <= aabb2.min_point)
    cond_max = jnp.all(aabb1.max_point >= aabb2.max_point)
    return cond_min & cond_max


def bounding_box_of_range(primitives: Any, start: int, end: int) -> AABB:
    """Union of the boxes of primitives[start:end].

    `primitives` only needs `bounds_min` and `bounds_max` arrays of shape (N, 3).
    """
    if start >= end:
        return AABB.empty()
    bounds_min = jnp.asarray(primitives.bounds_min[start:end])
    bounds_max = jnp.asarray(primitives.bounds_max[start:end])
    return AABB(jnp.min(bounds_min, axis=0), jnp.max(bounds_max, axis=0))


# --- PyTree registration for AABB ---
def _aabb_flatten(aabb: AABB) -> Tuple[Tuple[jnp.ndarray, jnp.ndarray], None]:
    children = (aabb.min_point, aabb.max_point)
    aux = None
    return children, aux


def _aabb_unflatten(aux: None, children: Tuple[jnp.ndarray, jnp.ndarray]) -> AABB:
    return AABB(*children)


tree_util.register_pytree_node(AABB, _aabb_flatten, _aabb_unflatten)
