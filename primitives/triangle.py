# triangle.py
import jax
import jax.numpy as jnp
import numpy as np
from typing import Iterator, NamedTuple, Sequence, Tuple, Union

from primitives.aabb import AABB


class Primitive(NamedTuple):
    vertex_1: jnp.ndarray  # shape (3,)
    vertex_2: jnp.ndarray  # shape (3,)
    vertex_3: jnp.ndarray  # shape (3,)
    indices: Tuple[int, int, int]  # into the external vertex table
    material: int
    centroid: jnp.ndarray  # shape (3,)
    bounds: AABB
    bounds_area: float
    area: float


@jax.jit
def triangle_geometry(v1: jnp.ndarray, v2: jnp.ndarray, v3: jnp.ndarray):
    """
    Geometric caches for a batch of triangles given as (N, 3) vertex arrays.

    Returns (centroid, bounds_min, bounds_max, bounds_area, area).
    """
    centroid = (v1 + v2 + v3) / 3.0
    bounds_min = jnp.minimum(jnp.minimum(v1, v2), v3)
    bounds_max = jnp.maximum(jnp.maximum(v1, v2), v3)
    diag = bounds_max - bounds_min
    bounds_area = 2.0 * (diag[..., 0] * diag[..., 1]
                         + diag[..., 1] * diag[..., 2]
                         + diag[..., 2] * diag[..., 0])
    area = 0.5 * jnp.linalg.norm(jnp.cross(v2 - v1, v3 - v1), axis=-1)
    return centroid, bounds_min, bounds_max, bounds_area, area


def create_primitive(v1, v2, v3,
                     indices: Tuple[int, int, int] = (-1, -1, -1),
                     material: int = 0) -> Primitive:
    v1 = jnp.asarray(v1, dtype=jnp.float32).reshape(3)
    v2 = jnp.asarray(v2, dtype=jnp.float32).reshape(3)
    v3 = jnp.asarray(v3, dtype=jnp.float32).reshape(3)
    centroid, bmin, bmax, bounds_area, area = triangle_geometry(v1, v2, v3)
    return Primitive(
        vertex_1=v1,
        vertex_2=v2,
        vertex_3=v3,
        indices=tuple(int(i) for i in indices),
        material=int(material),
        centroid=centroid,
        bounds=AABB(bmin, bmax),
        bounds_area=float(bounds_area),
        area=float(area),
    )


class PrimitiveArray:
    """
    Growable struct-of-arrays store of triangle primitives.

    Every column is a numpy array indexed by primitive position. The BVH
    builder reorders positions with `permute` but never edits a record.
    """

    COLUMNS = ("vertices", "indices", "materials", "original_index",
               "centroids", "bounds_min", "bounds_max", "bounds_area", "area")

    def __init__(self):
        self.vertices = np.empty((0, 3, 3), dtype=np.float32)
        self.indices = np.empty((0, 3), dtype=np.int32)
        self.materials = np.empty((0,), dtype=np.int32)
        self.original_index = np.empty((0,), dtype=np.int32)
        self.centroids = np.empty((0, 3), dtype=np.float32)
        self.bounds_min = np.empty((0, 3), dtype=np.float32)
        self.bounds_max = np.empty((0, 3), dtype=np.float32)
        self.bounds_area = np.empty((0,), dtype=np.float32)
        self.area = np.empty((0,), dtype=np.float32)

    @classmethod
    def from_mesh(cls,
                  vertices,
                  faces,
                  material: Union[int, Sequence[int], np.ndarray] = 0) -> "PrimitiveArray":
        """Build one primitive per face of an indexed triangle mesh."""
        prims = cls()
        prims.add_mesh(vertices, faces, material)
        return prims

    @classmethod
    def from_primitives(cls, primitives: Sequence[Primitive]) -> "PrimitiveArray":
        prims = cls()
        for primitive in primitives:
            prims.append(primitive)
        return prims

    def add_mesh(self, vertices, faces, material=0) -> None:
        vertices = np.asarray(vertices, dtype=np.float32)
        faces = np.asarray(faces)
        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise ValueError(f"vertices must have shape (V, 3), got {vertices.shape}")
        if faces.ndim != 2 or faces.shape[1] != 3:
            raise ValueError(f"faces must have shape (F, 3), got {faces.shape}")
        faces = faces.astype(np.int32)
        if faces.size and (faces.min() < 0 or faces.max() >= vertices.shape[0]):
            raise ValueError("face indices out of range of the vertex table")
        materials = np.broadcast_to(np.asarray(material, dtype=np.int32), (faces.shape[0],))

        corners = vertices[faces]  # (F, 3, 3)
        centroid, bmin, bmax, bounds_area, area = triangle_geometry(
            jnp.asarray(corners[:, 0]), jnp.asarray(corners[:, 1]), jnp.asarray(corners[:, 2]))
        first = len(self)
        self._concat(
            vertices=corners,
            indices=faces,
            materials=materials,
            original_index=np.arange(first, first + faces.shape[0], dtype=np.int32),
            centroids=np.asarray(centroid),
            bounds_min=np.asarray(bmin),
            bounds_max=np.asarray(bmax),
            bounds_area=np.asarray(bounds_area),
            area=np.asarray(area),
        )

    def append(self, primitive: Primitive) -> int:
        index = len(self)
        self._concat(
            vertices=np.stack([np.asarray(primitive.vertex_1),
                               np.asarray(primitive.vertex_2),
                               np.asarray(primitive.vertex_3)])[None],
            indices=np.asarray([primitive.indices]),
            materials=np.asarray([primitive.material]),
            original_index=np.asarray([index]),
            centroids=np.asarray(primitive.centroid)[None],
            bounds_min=np.asarray(primitive.bounds.min_point)[None],
            bounds_max=np.asarray(primitive.bounds.max_point)[None],
            bounds_area=np.asarray([primitive.bounds_area]),
            area=np.asarray([primitive.area]),
        )
        return index

    def extend(self, other: "PrimitiveArray") -> None:
        """Append every primitive of `other`, renumbering its original indices."""
        columns = {name: getattr(other, name) for name in self.COLUMNS}
        columns["original_index"] = np.arange(len(self), len(self) + len(other), dtype=np.int32)
        self._concat(**columns)

    def _concat(self, **columns) -> None:
        for name in self.COLUMNS:
            current = getattr(self, name)
            added = np.asarray(columns[name], dtype=current.dtype).reshape((-1,) + current.shape[1:])
            setattr(self, name, np.concatenate([current, added], axis=0))

    def permute(self, start: int, end: int, order: np.ndarray) -> None:
        """Reorder positions [start, end) so that new[start + i] = old[start + order[i]]."""
        order = np.asarray(order)
        if order.shape != (end - start,):
            raise ValueError(f"order must have length {end - start}, got {order.shape}")
        for name in self.COLUMNS:
            column = getattr(self, name)
            column[start:end] = column[start:end][order]

    def bounds(self, index: int) -> AABB:
        return AABB(jnp.asarray(self.bounds_min[index]), jnp.asarray(self.bounds_max[index]))

    def copy(self) -> "PrimitiveArray":
        prims = PrimitiveArray()
        for name in self.COLUMNS:
            setattr(prims, name, getattr(self, name).copy())
        return prims

    def __len__(self) -> int:
        return int(self.materials.shape[0])

    def __getitem__(self, index: int) -> Primitive:
        if index < 0:
            index += len(self)
        if not 0 <= index < len(self):
            raise IndexError(f"primitive index {index} out of range")
        v = self.vertices[index]
        return Primitive(
            vertex_1=jnp.asarray(v[0]),
            vertex_2=jnp.asarray(v[1]),
            vertex_3=jnp.asarray(v[2]),
            indices=tuple(int(i) for i in self.indices[index]),
            material=int(self.materials[index]),
            centroid=jnp.asarray(self.centroids[index]),
            bounds=self.bounds(index),
            bounds_area=float(self.bounds_area[index]),
            area=float(self.area[index]),
        )

    def __iter__(self) -> Iterator[Primitive]:
        for i in range(len(self)):
            yield self[i]

    def __repr__(self) -> str:
        return f"PrimitiveArray(n={len(self)})"
