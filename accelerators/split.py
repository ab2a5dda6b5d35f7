# split.py
import jax
import jax.numpy as jnp
import numpy as np
from enum import Enum
from functools import partial, reduce
from typing import NamedTuple, Tuple

from primitives.aabb import INF

N_BUCKETS = 12  # reference bucket count for the binned SAH


class SplitMethod(str, Enum):
    SAH = "sah"
    MIDDLE_OUT = "middle_out"
    MEDIAN = "median"


# -------------------------------
# Padding helpers
# -------------------------------
# Jitted kernels below see power-of-two lengths only, so they compile once
# per size class instead of once per range length.

def _next_pow2(n: int) -> int:
    return 1 << max(0, (n - 1).bit_length())


def _pad_rows(values: np.ndarray, length: int, fill) -> np.ndarray:
    padded = np.full((length,) + values.shape[1:], fill, dtype=values.dtype)
    padded[:values.shape[0]] = values
    return padded


# -------------------------------
# Parallel moments (fork-join reduce)
# -------------------------------

class Moments(NamedTuple):
    count: float
    mean: np.ndarray  # shape (K,)
    m2: np.ndarray    # sum of squared deviations, shape (K,)

    @classmethod
    def zero(cls, k: int) -> "Moments":
        return cls(0.0, np.zeros(k), np.zeros(k))

    @property
    def variance(self) -> np.ndarray:
        if self.count == 0:
            return np.zeros_like(self.m2)
        return self.m2 / self.count


def combine_moments(a: Moments, b: Moments) -> Moments:
    """Merge two partial results with the parallel variance formula."""
    if b.count == 0:
        return a
    if a.count == 0:
        return b
    count = a.count + b.count
    delta = b.mean - a.mean
    mean = a.mean + delta * (b.count / count)
    m2 = a.m2 + b.m2 + delta * delta * (a.count * b.count / count)
    return Moments(count, mean, m2)


@jax.jit
def _chunk_moments(values: jnp.ndarray, mask: jnp.ndarray):
    # values: (C, S, K), mask: (C, S) with 1.0 for real rows
    count = jnp.sum(mask, axis=1)
    weights = mask[..., None]
    mean = jnp.sum(values * weights, axis=1) / jnp.maximum(count, 1.0)[:, None]
    m2 = jnp.sum(((values - mean[:, None, :]) * weights) ** 2, axis=1)
    return count, mean, m2


def range_moments(values: np.ndarray, n_workers: int = 1) -> Moments:
    """
    Count, mean and M2 of each column of `values` (N, K).

    The rows are split into `n_workers` contiguous chunks; every chunk
    produces a private partial result and the partials are combined once.
    """
    n, k = values.shape
    if n == 0:
        return Moments.zero(k)
    n_chunks = max(1, min(n_workers, n))
    size = _next_pow2(-(-n // n_chunks))
    total = size * n_chunks
    chunks = _pad_rows(values.astype(np.float32), total, 0.0).reshape(n_chunks, size, k)
    mask = np.zeros(total, dtype=np.float32)
    mask[:n] = 1.0
    counts, means, m2s = jax.device_get(
        _chunk_moments(jnp.asarray(chunks), jnp.asarray(mask.reshape(n_chunks, size))))
    partials = [Moments(float(c), np.asarray(mu, dtype=np.float64), np.asarray(m, dtype=np.float64))
                for c, mu, m in zip(counts, means, m2s)]
    return reduce(combine_moments, partials, Moments.zero(k))


# -------------------------------
# Axis selection and ordering
# -------------------------------

def axis_scores(primitives, start: int, end: int, n_workers: int = 1) -> np.ndarray:
    """centroid variance per axis plus the variance of box surface areas."""
    stats = np.concatenate([primitives.centroids[start:end],
                            primitives.bounds_area[start:end, None]], axis=1)
    variance = range_moments(stats, n_workers).variance
    return variance[:3] + variance[3]


def choose_axis(primitives, start: int, end: int, n_workers: int = 1) -> int:
    scores = axis_scores(primitives, start, end, n_workers)
    # strict comparison: ties, and all-zero scores, keep the lowest axis
    best_axis = 0
    best_score = 0.0
    for axis in range(3):
        if scores[axis] > best_score:
            best_score = scores[axis]
            best_axis = axis
    return best_axis


@jax.jit
def _sorted_order(keys: jnp.ndarray) -> jnp.ndarray:
    return jnp.argsort(keys, stable=True)


def sort_range(primitives, start: int, end: int, axis: int) -> None:
    """Stable in-place sort of primitives[start:end] by box minimum on `axis`."""
    count = end - start
    keys = _pad_rows(primitives.bounds_min[start:end, axis], _next_pow2(count), np.inf)
    order = np.asarray(_sorted_order(jnp.asarray(keys)))[:count]
    primitives.permute(start, end, order)


# -------------------------------
# Split position
# -------------------------------

def _areas(bounds_min: jnp.ndarray, bounds_max: jnp.ndarray) -> jnp.ndarray:
    diag = bounds_max - bounds_min
    return 2.0 * (diag[:, 0] * diag[:, 1] + diag[:, 1] * diag[:, 2] + diag[:, 2] * diag[:, 0])


@jax.jit
def _prefix_costs(bounds_min: jnp.ndarray, bounds_max: jnp.ndarray, count: jnp.ndarray) -> jnp.ndarray:
    prefix_min = jax.lax.cummin(bounds_min, axis=0)
    prefix_max = jax.lax.cummax(bounds_max, axis=0)
    suffix_min = jax.lax.cummin(bounds_min, axis=0, reverse=True)
    suffix_max = jax.lax.cummax(bounds_max, axis=0, reverse=True)
    k = jnp.arange(1, bounds_min.shape[0], dtype=jnp.float32)
    left = _areas(prefix_min[:-1], prefix_max[:-1]) * k
    right = _areas(suffix_min[1:], suffix_max[1:]) * (count - k)
    return jnp.where(k < count, left + right, INF)


def split_costs(primitives, start: int, end: int) -> np.ndarray:
    """
    SAH cost of every split of the (already sorted) range.

    Entry `k - 1` is `area(left) * k + area(right) * (n - k)` for the split
    that puts the first `k` primitives on the left, 0 < k < n.
    """
    count = end - start
    length = max(2, _next_pow2(count))
    bounds_min = _pad_rows(primitives.bounds_min[start:end], length, np.inf)
    bounds_max = _pad_rows(primitives.bounds_max[start:end], length, -np.inf)
    costs = _prefix_costs(jnp.asarray(bounds_min), jnp.asarray(bounds_max), jnp.float32(count))
    return np.asarray(costs)[:count - 1]


def median_split(start: int, end: int) -> int:
    return start + (end - start) // 2


def sah_split(primitives, start: int, end: int, n_buckets: int = N_BUCKETS) -> int:
    """
    Binned SAH: evaluate the cost at each boundary between equal-length
    index buckets (the last bucket takes the remainder) and keep the cheapest.

    The midpoint is returned instead when no boundary improves on the
    others: every boundary collapses onto the range start (fewer primitives
    than buckets), or all evaluated boundaries cost the same (for instance
    zero-area boxes). Among distinct costs, the first cheapest boundary wins.
    """
    count = end - start
    costs = split_costs(primitives, start, end)
    bucket_size = count // n_buckets
    boundaries = [(bucket + 1) * bucket_size for bucket in range(n_buckets - 1)]
    boundaries = [b for b in boundaries if 0 < b < count]
    if not boundaries:
        return median_split(start, end)

    candidate_costs = costs[np.asarray(boundaries) - 1]
    best_cost = INF
    best_index = start
    for boundary, cost in zip(boundaries, candidate_costs):
        if cost < best_cost:
            best_cost = cost
            best_index = start + boundary
    if np.all(candidate_costs == best_cost) or best_index <= start or best_index >= end:
        best_index = median_split(start, end)
    return best_index


def middle_out_split(primitives, start: int, end: int) -> int:
    """Walk outwards from the midpoint while the exact SAH cost improves."""
    count = end - start
    costs = split_costs(primitives, start, end)
    mid = count // 2
    best_cost = INF
    best = mid
    for k in range(mid, 0, -1):
        if costs[k - 1] < best_cost:
            best_cost = costs[k - 1]
            best = k
        else:
            break
    for k in range(mid + 1, count):
        if costs[k - 1] < best_cost:
            best_cost = costs[k - 1]
            best = k
        else:
            break
    return start + best


def best_divide(primitives,
                start: int,
                end: int,
                method: SplitMethod = SplitMethod.SAH,
                n_buckets: int = N_BUCKETS,
                n_workers: int = 1) -> Tuple[int, int]:
    """
    Choose the partition axis, sort the range along it and pick a split.

    Returns (axis, split) with start < split < end.
    """
    axis = choose_axis(primitives, start, end, n_workers)
    sort_range(primitives, start, end, axis)
    if method == SplitMethod.SAH:
        split = sah_split(primitives, start, end, n_buckets)
    elif method == SplitMethod.MIDDLE_OUT:
        split = middle_out_split(primitives, start, end)
    else:
        split = median_split(start, end)
    if split <= start or split >= end:
        split = median_split(start, end)
    return axis, split


# -------------------------------
# Occupancy grid for split records
# -------------------------------

@partial(jax.jit, static_argnums=4)
def _occupancy(centroids, mask, bounds_min, bounds_max, grid_size: int):
    lo = jnp.min(bounds_min, axis=0)
    hi = jnp.max(bounds_max, axis=0)
    extent = hi - lo
    safe = jnp.where(extent > 0, extent, 1.0)
    scaled = jnp.where(extent > 0, (centroids - lo) / safe, 0.0) * grid_size
    cell = jnp.clip(scaled.astype(jnp.int32), 0, grid_size - 1)
    flat = cell[:, 0] + cell[:, 1] * grid_size + cell[:, 2] * grid_size * grid_size
    counts = jnp.zeros(grid_size ** 3, dtype=jnp.float32).at[flat].add(mask)
    return counts / jnp.maximum(jnp.max(counts), 1.0)


def occupancy_grid(primitives, start: int, end: int, grid_size: int = 8) -> np.ndarray:
    """
    Centroid histogram of the range over a grid_size**3 lattice spanning the
    range's bounding box, normalised by the fullest cell.
    Cell (x, y, z) is stored at x + y * g + z * g * g.
    """
    count = end - start
    length = _next_pow2(count)
    mask = np.zeros(length, dtype=np.float32)
    mask[:count] = 1.0
    grid = _occupancy(jnp.asarray(_pad_rows(primitives.centroids[start:end], length, 0.0)),
                      jnp.asarray(mask),
                      jnp.asarray(_pad_rows(primitives.bounds_min[start:end], length, np.inf)),
                      jnp.asarray(_pad_rows(primitives.bounds_max[start:end], length, -np.inf)),
                      grid_size)
    return np.asarray(grid)
