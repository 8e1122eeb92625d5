#!/usr/bin/env python3
"""
J3D (BMD/BDL) container reader

Parses GameCube J3D model files ("J3D2bmd2", "J3D2bmd3", "J3D2bdl4") into a
ModelContainer. All numeric fields are big-endian.

File layout:
    0x00  magic[8]
    0x08  file size (u32)
    0x0C  chunk count (u32)
    0x10  subversion[16]
    0x20  chunks: tag[4], size (u32, includes the 8-byte header), payload

Mandatory chunks, in this order: INF1 VTX1 EVP1 DRW1 JNT1 SHP1.
MAT3 may follow SHP1. TEX1 is looked up anywhere in the chunk directory.

Usage:
    python j3d_reader.py model.bdl
"""

import logging
import struct
import sys
from typing import Dict, List, Optional, Tuple

from gx_vertex import load_display_list, resolve_vertex_layout
from j3d_types import (
    AABB, Attr, CHUNK_HEADER_SIZE, ChunkEntry, Envelope, HierarchyNode,
    J3D_HEADER_SIZE, J3D_MAGICS, Joint, MANDATORY_CHUNKS, MalformedContainerError,
    MaterialEntry, MatrixDefinition, MatrixKind, ModelContainer, MtxGroup, Shape,
    TextureHeader, VTX1_ARRAY_ATTRS, VertexAttributeFormat, WeightedBone,
    read_string, read_string_table,
)

_log = logging.getLogger("j3d2glb.reader")

SHAPE_ENTRY_SIZE = 0x28
JOINT_ENTRY_SIZE = 0x40
MATERIAL_ENTRY_SIZE = 0x14C
TEXTURE_HEADER_SIZE = 0x20
MATERIAL_TEXTURE_SLOTS = 8


def _u8(data: bytes, offset: int) -> int:
    return data[offset]


def _u16(data: bytes, offset: int) -> int:
    return struct.unpack_from('>H', data, offset)[0]


def _u32(data: bytes, offset: int) -> int:
    return struct.unpack_from('>I', data, offset)[0]


def _f32(data: bytes, offset: int) -> float:
    return struct.unpack_from('>f', data, offset)[0]


def read_inf1(chunk: bytes) -> List[Tuple[int, int]]:
    """Read the INF1 scene graph as a flat list of (node type, value) pairs"""
    offs = _u32(chunk, 0x14)
    nodes = []
    while offs + 4 <= len(chunk):
        node_type, value = struct.unpack_from('>HH', chunk, offs)
        if node_type == HierarchyNode.END:
            break
        nodes.append((node_type, value))
        offs += 4
    return nodes


def read_vtx1(chunk: bytes) -> Tuple[Dict[Attr, VertexAttributeFormat], Dict[Attr, bytes]]:
    """Read the vertex attribute format table and the raw attribute arrays"""
    format_offs = _u32(chunk, 0x08)
    lookup_table = 0x0C

    vat: Dict[Attr, VertexAttributeFormat] = {}
    offs = format_offs
    while offs + 0x10 <= len(chunk):
        raw_attr = _u32(chunk, offs)
        if raw_attr == Attr.NULL:
            break
        comp_cnt = _u32(chunk, offs + 0x04)
        comp_type = _u32(chunk, offs + 0x08)
        comp_shift = _u8(chunk, offs + 0x0C)
        offs += 0x10
        try:
            vat[Attr(raw_attr)] = VertexAttributeFormat(comp_type, comp_cnt, comp_shift)
        except ValueError:
            _log.debug("Ignoring VTX1 format for unknown attribute %d", raw_attr)

    starts = [_u32(chunk, lookup_table + i * 4) for i in range(len(VTX1_ARRAY_ATTRS))]
    arrays: Dict[Attr, bytes] = {}
    for i, attr in enumerate(VTX1_ARRAY_ATTRS):
        start = starts[i]
        if start == 0:
            continue
        # An array ends where the next present array begins
        end = next((s for s in starts[i + 1:] if s != 0), len(chunk))
        arrays[attr] = chunk[start:end]
    return vat, arrays


def read_evp1(chunk: bytes) -> Tuple[List[Envelope], List[List[float]]]:
    """Read envelopes and the inverse bind matrices (column-major 4x4)"""
    envelope_count = _u16(chunk, 0x08)
    count_table = _u32(chunk, 0x0C)
    index_table = _u32(chunk, 0x10)
    weight_table = _u32(chunk, 0x14)
    inverse_bind_table = _u32(chunk, 0x18)

    envelopes = []
    bone_id = 0
    max_bone_index = -1
    for i in range(envelope_count):
        bones = []
        for _ in range(_u8(chunk, count_table + i)):
            joint_index = _u16(chunk, index_table + bone_id * 0x02)
            weight = _f32(chunk, weight_table + bone_id * 0x04)
            bones.append(WeightedBone(joint_index, weight))
            max_bone_index = max(max_bone_index, joint_index)
            bone_id += 1
        envelopes.append(Envelope(bones))

    inverse_binds = []
    for i in range(max_bone_index + 1):
        # Stored as 3x4 row-major
        rows = struct.unpack_from('>12f', chunk, inverse_bind_table + i * 0x30)
        inverse_binds.append([
            rows[0], rows[4], rows[8], 0.0,
            rows[1], rows[5], rows[9], 0.0,
            rows[2], rows[6], rows[10], 0.0,
            rows[3], rows[7], rows[11], 1.0,
        ])
    return envelopes, inverse_binds


def read_drw1(chunk: bytes) -> List[MatrixDefinition]:
    count = _u16(chunk, 0x08)
    kind_table = _u32(chunk, 0x0C)
    data_table = _u32(chunk, 0x10)
    definitions = []
    for i in range(count):
        raw_kind = _u8(chunk, kind_table + i)
        try:
            kind = MatrixKind(raw_kind)
        except ValueError:
            _log.warning("Skipping DRW1 entry %d with unknown kind %d", i, raw_kind)
            continue
        definitions.append(MatrixDefinition(kind, _u16(chunk, data_table + i * 0x02)))
    return definitions


def read_jnt1(chunk: bytes) -> List[Joint]:
    count = _u16(chunk, 0x08)
    data_table = _u32(chunk, 0x0C)
    remap_table = _u32(chunk, 0x10)
    names = read_string_table(chunk, _u32(chunk, 0x14))

    joints = []
    for i in range(count):
        name = names[i] if i < len(names) else f"Joint_{i}"
        offs = data_table + _u16(chunk, remap_table + i * 0x02) * JOINT_ENTRY_SIZE
        joints.append(Joint.from_bytes(chunk, offs, name))
    return joints


def read_shp1(chunk: bytes, vat: Dict[Attr, VertexAttributeFormat],
              arrays: Dict[Attr, bytes]) -> List[Shape]:
    """Read shapes and decode every matrix group's display list"""
    shape_count = _u16(chunk, 0x08)
    shape_table = _u32(chunk, 0x0C)
    remap_table = _u32(chunk, 0x10)
    vtx_decl_table = _u32(chunk, 0x18)
    matrix_table = _u32(chunk, 0x1C)
    display_list_table = _u32(chunk, 0x20)
    mtx_init_table = _u32(chunk, 0x24)
    draw_init_table = _u32(chunk, 0x28)

    for i in range(shape_count):
        if _u16(chunk, remap_table + i * 0x02) != i:
            raise MalformedContainerError("SHP1 remap table is not an identity mapping")

    shapes = []
    for i in range(shape_count):
        entry = shape_table + i * SHAPE_ENTRY_SIZE
        mtx_type = _u8(chunk, entry + 0x00)
        group_count = _u16(chunk, entry + 0x02)
        vtx_decl_index = _u16(chunk, entry + 0x04)
        mtx_init_index = _u16(chunk, entry + 0x06)
        draw_init_index = _u16(chunk, entry + 0x08)
        radius = _f32(chunk, entry + 0x0C)
        bbox = AABB.from_bytes(chunk, entry + 0x10)

        descriptors = []
        offs = vtx_decl_table + vtx_decl_index
        while True:
            raw_attr, index_type = struct.unpack_from('>II', chunk, offs)
            if raw_attr == Attr.NULL:
                break
            descriptors.append((raw_attr, index_type))
            offs += 0x08
        layout = resolve_vertex_layout(descriptors, vat)

        groups = []
        for j in range(group_count):
            draw = draw_init_table + (draw_init_index + j) * 0x08
            dl_size = _u32(chunk, draw + 0x00)
            dl_start = display_list_table + _u32(chunk, draw + 0x04)

            mtx_init = mtx_init_table + (mtx_init_index + j) * 0x08
            use_mtx_count = _u16(chunk, mtx_init + 0x02)
            use_mtx_first = _u32(chunk, mtx_init + 0x04)
            table_offs = matrix_table + use_mtx_first * 0x02
            use_mtx_table = list(struct.unpack_from('>%dH' % use_mtx_count, chunk, table_offs))

            vertex_data = load_display_list(layout, arrays, chunk[dl_start:dl_start + dl_size])
            groups.append(MtxGroup(use_mtx_table, vertex_data))

        shapes.append(Shape(mtx_type, layout, groups, bbox, radius))
    return shapes


def read_mat3(chunk: bytes) -> List[MaterialEntry]:
    """Read material names and their texture slot assignments"""
    count = _u16(chunk, 0x08)
    entry_table = _u32(chunk, 0x0C)
    remap_table = _u32(chunk, 0x10)
    names = read_string_table(chunk, _u32(chunk, 0x14))
    tex_no_table = _u32(chunk, 0x48)

    materials = []
    for i in range(count):
        entry = entry_table + MATERIAL_ENTRY_SIZE * _u16(chunk, remap_table + i * 0x02)
        texture_indexes = []
        for slot in range(MATERIAL_TEXTURE_SLOTS):
            table_index = _u16(chunk, entry + 0x84 + slot * 0x02)
            if table_index == 0xFFFF:
                texture_indexes.append(-1)
            else:
                texture_indexes.append(_u16(chunk, tex_no_table + table_index * 0x02))
        name = names[i] if i < len(names) else f"Material_{i}"
        materials.append(MaterialEntry(i, name, texture_indexes))
    return materials


def read_tex1(chunk: bytes) -> List[TextureHeader]:
    count = _u16(chunk, 0x08)
    header_table = _u32(chunk, 0x0C)
    names = read_string_table(chunk, _u32(chunk, 0x10))
    textures = []
    for i in range(count):
        name = names[i] if i < len(names) else f"tex_{i}"
        textures.append(TextureHeader.from_bytes(chunk, header_table + i * TEXTURE_HEADER_SIZE, name))
    return textures


class J3DReader:
    """Walks the chunk directory of a J3D file and decodes its chunks"""

    def __init__(self, data: bytes):
        if len(data) < J3D_HEADER_SIZE:
            raise MalformedContainerError(f"File too small for a J3D header ({len(data)} bytes)")
        self.data = data
        self.magic = data[0:8]
        if self.magic not in J3D_MAGICS:
            raise MalformedContainerError(f"Unknown magic {self.magic!r}")
        self.file_size = _u32(data, 0x08)
        self.chunk_count = _u32(data, 0x0C)
        self.subversion = read_string(data, 0x10, 0x10)
        self.chunks = self._read_directory()
        self._cursor = 0

    def _read_directory(self) -> List[ChunkEntry]:
        end = len(self.data)
        if J3D_HEADER_SIZE < self.file_size < end:
            end = self.file_size

        chunks = []
        offs = J3D_HEADER_SIZE
        while offs + CHUNK_HEADER_SIZE <= end:
            tag = self.data[offs:offs + 4].decode('ascii', errors='replace')
            size = _u32(self.data, offs + 4)
            if size < CHUNK_HEADER_SIZE or offs + size > len(self.data):
                _log.warning("Chunk %r at 0x%X has bad size %d, stopping directory walk", tag, offs, size)
                break
            chunks.append(ChunkEntry(tag, offs, size))
            offs += size
        return chunks

    def next_chunk(self, tag: str) -> bytes:
        """Return the next chunk in declared order, which must carry this tag"""
        chunk = self.maybe_next_chunk(tag)
        if chunk is None:
            found = self.chunks[self._cursor].tag if self._cursor < len(self.chunks) else 'end of file'
            raise MalformedContainerError(f"Expected chunk {tag}, found {found}")
        return chunk

    def maybe_next_chunk(self, tag: str) -> Optional[bytes]:
        if self._cursor >= len(self.chunks) or self.chunks[self._cursor].tag != tag:
            return None
        entry = self.chunks[self._cursor]
        self._cursor += 1
        return entry.payload(self.data)

    def find_chunk(self, tag: str) -> Optional[bytes]:
        for entry in self.chunks:
            if entry.tag == tag:
                return entry.payload(self.data)
        return None

    def parse(self) -> ModelContainer:
        try:
            return self._parse()
        except (struct.error, IndexError) as e:
            raise MalformedContainerError(f"Truncated chunk data: {e}") from e

    def _parse(self) -> ModelContainer:
        _log.debug("J3D %s (%s), %d chunks: %s", self.magic.decode('ascii'), self.subversion,
                   self.chunk_count, ' '.join(c.tag for c in self.chunks))

        payloads = {tag: self.next_chunk(tag) for tag in MANDATORY_CHUNKS}
        hierarchy = read_inf1(payloads['INF1'])
        vat, arrays = read_vtx1(payloads['VTX1'])
        envelopes, inverse_binds = read_evp1(payloads['EVP1'])
        matrix_definitions = read_drw1(payloads['DRW1'])
        joints = read_jnt1(payloads['JNT1'])
        shapes = read_shp1(payloads['SHP1'], vat, arrays)

        mat3 = self.maybe_next_chunk('MAT3')
        materials = read_mat3(mat3) if mat3 is not None else []

        tex1 = self.find_chunk('TEX1')
        textures = read_tex1(tex1) if tex1 is not None else []

        model = ModelContainer(
            magic=self.magic.decode('ascii'),
            subversion=self.subversion,
            chunk_count=self.chunk_count,
            chunks=self.chunks,
            hierarchy=hierarchy,
            vat=vat,
            arrays=arrays,
            envelopes=envelopes,
            inverse_binds=inverse_binds,
            matrix_definitions=matrix_definitions,
            joints=joints,
            shapes=shapes,
            materials=materials,
            textures=textures,
        )
        assign_shape_materials(model)
        assign_joint_parents(model)
        return model


def assign_shape_materials(model: ModelContainer):
    """Give each shape the material that encloses it in the INF1 hierarchy"""
    current_material = -1
    for node_type, value in model.hierarchy:
        if node_type == HierarchyNode.MATERIAL:
            current_material = value
        elif node_type == HierarchyNode.SHAPE:
            if value >= len(model.shapes):
                raise MalformedContainerError(f"Hierarchy references missing shape {value}")
            if current_material == -1:
                raise MalformedContainerError(f"Shape {value} appears before any material")
            shape = model.shapes[value]
            if shape.material_index != -1:
                raise MalformedContainerError(f"Shape {value} is assigned a material twice")
            shape.material_index = current_material

    for i, shape in enumerate(model.shapes):
        if shape.material_index == -1:
            raise MalformedContainerError(f"Shape {i} has no material in the hierarchy")


def assign_joint_parents(model: ModelContainer):
    """Record each joint's parent joint from the INF1 open/close nesting"""
    stack: List[Optional[int]] = []
    last: Optional[int] = None
    for node_type, value in model.hierarchy:
        if node_type == HierarchyNode.OPEN:
            stack.append(last)
        elif node_type == HierarchyNode.CLOSE:
            if stack:
                last = stack.pop()
        elif node_type == HierarchyNode.JOINT and value < len(model.joints):
            model.joints[value].parent = stack[-1] if stack else None
            last = value


def read_j3d(data: bytes) -> ModelContainer:
    """Parse a J3D model from bytes"""
    return J3DReader(data).parse()


def main():
    if len(sys.argv) < 2:
        print(f"Usage: {sys.argv[0]} model.bmd|model.bdl")
        sys.exit(1)

    with open(sys.argv[1], 'rb') as f:
        data = f.read()

    model = read_j3d(data)
    print(f"{model.magic} ({model.subversion})")
    print(f"  Chunks: {' '.join(c.tag for c in model.chunks)}")
    print(f"  Joints: {len(model.joints)}")
    print(f"  Envelopes: {len(model.envelopes)}")
    print(f"  Shapes: {len(model.shapes)}")
    for i, shape in enumerate(model.shapes):
        vertices = sum(g.vertex_data.vertex_count for g in shape.mtx_groups)
        triangles = sum(len(g.vertex_data.indices) for g in shape.mtx_groups) // 3
        print(f"    Shape {i}: {len(shape.mtx_groups)} groups, {vertices} vertices, "
              f"{triangles} triangles, material {shape.material_index}")
    print(f"  Materials: {len(model.materials)}")
    print(f"  Textures: {len(model.textures)}")


if __name__ == "__main__":
    main()
