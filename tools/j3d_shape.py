"""
Shape vertex extraction

Turns the loaded vertex records of every matrix group of a J3D shape into
flat per-attribute arrays ready for glTF accessors.

Vertex buffers may be shorter than their declared vertex count says. For
each attribute only the vertices whose bytes actually fit are read; an
attribute whose first vertex doesn't fit is absent for that group.
Triangles referencing a vertex that wasn't read are dropped.
"""

import logging
import math
import struct
from dataclasses import dataclass, field
from typing import List, Optional

from j3d_skin import resolve_skin
from j3d_types import Attr, ModelContainer, Shape, ShapeExtractionError

_log = logging.getLogger("j3d2glb.shape")

MAX_INDEX = 0xFFFF

POSITION_SIZE = 12
NORMAL_SIZE = 12
TEXCOORD_SIZE = 8
COLOR_SIZE = 4


@dataclass
class ShapeVertices:
    """Flat vertex streams of one shape"""
    positions: List[float] = field(default_factory=list)
    normals: List[float] = field(default_factory=list)
    texcoords: List[float] = field(default_factory=list)
    colors: List[int] = field(default_factory=list)  # u8 RGBA
    joints: List[int] = field(default_factory=list)
    weights: List[float] = field(default_factory=list)
    indices: List[int] = field(default_factory=list)
    pos_min: List[float] = field(default_factory=lambda: [math.inf] * 3)
    pos_max: List[float] = field(default_factory=lambda: [-math.inf] * 3)

    @property
    def vertex_count(self) -> int:
        return len(self.positions) // 3


def fit_count(buffer_length: int, stride: int, offset: Optional[int],
              bytes_needed: int, declared: int) -> int:
    """How many vertices of one attribute can be read from a buffer"""
    if stride <= 0 or offset is None:
        return 0
    if offset + bytes_needed > buffer_length:
        return 0
    remaining = buffer_length - offset - bytes_needed
    return min(declared, remaining // stride + 1)


def normalize_normals(normals: List[float]):
    """Rescale normals to unit length in place; zero vectors stay zero"""
    for i in range(0, len(normals) - 2, 3):
        x, y, z = normals[i], normals[i + 1], normals[i + 2]
        length = math.sqrt(x * x + y * y + z * z) or 1.0
        normals[i] = x / length
        normals[i + 1] = y / length
        normals[i + 2] = z / length


def extract_shape_vertices(shape: Shape, model: ModelContainer) -> ShapeVertices:
    """Collect positions, normals, UVs, colours, skinning and indices of every matrix group"""
    out = ShapeVertices()
    layout = shape.layout
    stride = layout.stride
    pos_offs = layout.offset_of(Attr.POS)
    nrm_offs = layout.offset_of(Attr.NRM)
    tex_offs = layout.offset_of(Attr.TEX0)
    clr_offs = layout.offset_of(Attr.CLR0)

    vertex_offset = 0
    for group_index, group in enumerate(shape.mtx_groups):
        vb = group.vertex_data.vertex_buffer
        declared = group.vertex_data.vertex_count
        joints, weights = resolve_skin(group.use_mtx_table, model.matrix_definitions, model.envelopes)

        group_count = fit_count(len(vb), stride, pos_offs, POSITION_SIZE, declared)
        for v in range(group_count):
            x, y, z = struct.unpack_from('<3f', vb, v * stride + pos_offs)
            out.positions += (x, y, z)
            out.pos_min = [min(out.pos_min[0], x), min(out.pos_min[1], y), min(out.pos_min[2], z)]
            out.pos_max = [max(out.pos_max[0], x), max(out.pos_max[1], y), max(out.pos_max[2], z)]
            out.joints += joints
            out.weights += weights

        nrm_count = min(fit_count(len(vb), stride, nrm_offs, NORMAL_SIZE, declared), group_count)
        for v in range(nrm_count):
            out.normals += struct.unpack_from('<3f', vb, v * stride + nrm_offs)

        tex_count = min(fit_count(len(vb), stride, tex_offs, TEXCOORD_SIZE, declared), group_count)
        for v in range(tex_count):
            out.texcoords += struct.unpack_from('<2f', vb, v * stride + tex_offs)

        clr_count = min(fit_count(len(vb), stride, clr_offs, COLOR_SIZE, declared), group_count)
        for v in range(clr_count):
            base = v * stride + clr_offs
            out.colors += vb[base:base + 4]

        if group_count < declared:
            _log.debug("Matrix group %d: read %d of %d vertices", group_index, group_count, declared)

        # Whole triangles only, and only if every corner was read
        indices = group.vertex_data.indices
        for t in range(0, len(indices) - len(indices) % 3, 3):
            i0, i1, i2 = indices[t], indices[t + 1], indices[t + 2]
            if i0 < group_count and i1 < group_count and i2 < group_count:
                out.indices += (i0 + vertex_offset, i1 + vertex_offset, i2 + vertex_offset)

        vertex_offset += group_count

    normalize_normals(out.normals)

    if not out.positions or not out.indices:
        raise ShapeExtractionError(
            f"Shape has no usable geometry ({out.vertex_count} vertices, {len(out.indices)} indices)")
    if out.vertex_count - 1 > MAX_INDEX:
        raise ShapeExtractionError(f"Shape has {out.vertex_count} vertices, more than 16-bit indices can address")
    return out
