# buffer.py
"""
Binary layout of a flattened BVH, as read by the traversal kernel.

    header : int32 root, 12 bytes of zero padding            (16 bytes)
    node   : float32[4] min, float32[4] max,                  (48 bytes)
             int32 left, int32 right, int32 triangle, int32 padding

All values are little-endian. Missing children and the primitive of an
internal node are written as -1; the 4th component of each corner is 0.
Any change to this layout must be versioned together with the kernel.
"""
import logging

import jax.numpy as jnp
import numpy as np

from accelerators.bvh import BVH, BVHError, BVHNode, is_preorder, pack_bvh
from primitives.aabb import AABB

logger = logging.getLogger(__name__)

HEADER_DTYPE = np.dtype([
    ("root", "<i4"),
    ("_padding", "<i4", (3,)),
])

NODE_DTYPE = np.dtype([
    ("min", "<f4", (4,)),
    ("max", "<f4", (4,)),
    ("left", "<i4"),
    ("right", "<i4"),
    ("triangle", "<i4"),
    ("_padding", "<i4"),
])

HEADER_SIZE = HEADER_DTYPE.itemsize  # 16
NODE_SIZE = NODE_DTYPE.itemsize      # 48


class BufferLayoutError(BVHError, ValueError):
    """A tree cannot be written in, or a buffer does not match, the wire layout."""


def node_records(bvh: BVH) -> np.ndarray:
    """Structured array of node records in array order."""
    packed = pack_bvh(bvh)
    records = np.zeros(len(bvh.nodes), dtype=NODE_DTYPE)
    records["min"][:, :3] = np.asarray(packed["bounds_min"])
    records["max"][:, :3] = np.asarray(packed["bounds_max"])
    records["left"] = np.asarray(packed["left"])
    records["right"] = np.asarray(packed["right"])
    records["triangle"] = np.asarray(packed["primitive"])
    return records


def serialize_bvh(bvh: BVH) -> bytes:
    """Pack a flattened BVH into the upload buffer."""
    if not is_preorder(bvh):
        raise BufferLayoutError("BVH must be flattened (pre-order, root at 0) before serializing")
    header = np.zeros(1, dtype=HEADER_DTYPE)
    header["root"] = bvh.root
    data = header.tobytes() + node_records(bvh).tobytes()
    logger.debug("Serialized BVH: %d nodes, %d bytes", len(bvh.nodes), len(data))
    return data


def parse_bvh(data: bytes) -> BVH:
    """Read a buffer produced by `serialize_bvh` back into a BVH."""
    if len(data) < HEADER_SIZE + NODE_SIZE or (len(data) - HEADER_SIZE) % NODE_SIZE:
        raise BufferLayoutError(
            f"buffer of {len(data)} bytes is not a {HEADER_SIZE}-byte header "
            f"followed by {NODE_SIZE}-byte nodes")
    header = np.frombuffer(data, dtype=HEADER_DTYPE, count=1)[0]
    records = np.frombuffer(data, dtype=NODE_DTYPE, offset=HEADER_SIZE)
    root = int(header["root"])
    if not 0 <= root < len(records):
        raise BufferLayoutError(f"root {root} outside node array of size {len(records)}")

    nodes = []
    for i, record in enumerate(records):
        left, right = int(record["left"]), int(record["right"])
        for child in (left, right):
            if child != -1 and not 0 <= child < len(records):
                raise BufferLayoutError(f"node {i} has child {child} outside the node array")
        bounds = AABB(jnp.asarray(record["min"][:3]), jnp.asarray(record["max"][:3]))
        try:
            nodes.append(BVHNode(bounds=bounds, left=left, right=right,
                                 primitive=int(record["triangle"])))
        except ValueError as e:
            raise BufferLayoutError(f"node {i}: {e}") from e
    return BVH(root=root, nodes=tuple(nodes))
