"""
GX vertex layout resolution and display list loading.

A J3D shape declares which vertex attributes it uses and how each one is
stored in its display lists (direct data or an 8/16-bit index into a VTX1
array). The VTX1 chunk says how the array elements themselves are encoded
(component type, component count, fixed-point shift).

resolve_vertex_layout() combines both tables into a VertexLayout, and
load_display_list() runs a display list through it, producing
little-endian "loaded" vertex records:

    PNMTXIDX/TEXnMTXIDX  f32 x 1
    POS                  f32 x 3
    NRM                  f32 x 3  (f32 x 9 with binormal/tangent)
    CLR0/CLR1            u8 x 4   (RGBA)
    TEX0..TEX7           f32 x 2

plus a triangle list of indices local to the display list.
"""

import logging
import struct
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Tuple

from j3d_types import (
    Attr, AttrType, AttributeLayout, ColorType, CompCnt, CompType,
    COLOR_ATTRS, LoadedVertexData, MalformedContainerError, MTXIDX_ATTRS,
    TEXCOORD_ATTRS, VertexAttributeFormat, VertexLayout,
)

_log = logging.getLogger("j3d2glb.gx_vertex")

# Display list opcodes
GX_NOP = 0x00
GX_LOAD_CP_REG = 0x08
GX_LOAD_XF_REG = 0x10
GX_LOAD_INDX_A = 0x20
GX_LOAD_INDX_B = 0x28
GX_LOAD_INDX_C = 0x30
GX_LOAD_INDX_D = 0x38
GX_CALL_DL = 0x40
GX_INVAL_VTX = 0x48

GX_DRAW_QUADS = 0x80
GX_DRAW_QUADS_2 = 0x88
GX_DRAW_TRIANGLES = 0x90
GX_DRAW_TRIANGLE_STRIP = 0x98
GX_DRAW_TRIANGLE_FAN = 0xA0
GX_DRAW_LINES = 0xA8
GX_DRAW_LINE_STRIP = 0xB0
GX_DRAW_POINTS = 0xB8

_COMPONENT_STRUCT = {
    CompType.U8: 'B',
    CompType.S8: 'b',
    CompType.U16: 'H',
    CompType.S16: 'h',
    CompType.F32: 'f',
}

_COMPONENT_SIZE = {
    CompType.U8: 1,
    CompType.S8: 1,
    CompType.U16: 2,
    CompType.S16: 2,
    CompType.F32: 4,
}

_COLOR_SIZE = {
    ColorType.RGB565: 2,
    ColorType.RGB8: 3,
    ColorType.RGBX8: 4,
    ColorType.RGBA4: 2,
    ColorType.RGBA6: 3,
    ColorType.RGBA8: 4,
}


def get_component_size(comp_type: int) -> int:
    try:
        return _COMPONENT_SIZE[CompType(comp_type)]
    except ValueError:
        raise MalformedContainerError(f"Unknown component type {comp_type}")


def get_component_count(attr: Attr, comp_cnt: int) -> int:
    """Number of components in one array element"""
    if attr == Attr.POS:
        return 3 if comp_cnt == CompCnt.POS_XYZ else 2
    if attr == Attr.NRM:
        return 9 if comp_cnt == CompCnt.NRM_NBT else 3
    if attr in COLOR_ATTRS:
        return 4 if comp_cnt == CompCnt.CLR_RGBA else 3
    if attr in TEXCOORD_ATTRS:
        return 2 if comp_cnt == CompCnt.TEX_ST else 1
    return 1


def get_attribute_byte_size(vat: Dict[Attr, VertexAttributeFormat], attr: Attr) -> int:
    """Size in bytes of one element of an attribute's array (or of its direct data)"""
    if attr in MTXIDX_ATTRS:
        return 1
    fmt = vat[attr]
    if attr in COLOR_ATTRS:
        # Colour formats give the size of the whole colour, not a component
        try:
            return _COLOR_SIZE[ColorType(fmt.comp_type)]
        except ValueError:
            raise MalformedContainerError(f"Unknown colour format {fmt.comp_type}")
    return get_component_size(fmt.comp_type) * get_component_count(attr, fmt.comp_cnt)


def get_attribute_scale(attr: Attr, fmt: VertexAttributeFormat) -> float:
    """Dequantisation factor; shift only applies to integer component types"""
    if attr in MTXIDX_ATTRS or attr in COLOR_ATTRS:
        return 1.0
    if fmt.comp_type == CompType.F32:
        return 1.0
    shift = fmt.comp_shift
    if attr == Attr.NRM:
        # Hardware normal formats ignore the VAT shift
        if fmt.comp_type == CompType.S8:
            shift = 6
        elif fmt.comp_type == CompType.S16:
            shift = 14
    return 1.0 / (1 << shift)


def get_loaded_size(attr: Attr, comp_count: int, elements: int) -> int:
    """Bytes one attribute occupies in a loaded vertex record"""
    if attr in MTXIDX_ATTRS:
        return 4
    if attr == Attr.POS:
        return 12
    if attr == Attr.NRM:
        return 4 * max(comp_count * elements, 3)
    if attr in COLOR_ATTRS:
        return 4
    return 8


def resolve_vertex_layout(descriptors: Iterable[Tuple[int, int]],
                          vat: Dict[Attr, VertexAttributeFormat]) -> VertexLayout:
    """
    Compile a shape's vertex descriptor table against the VTX1 format table.

    descriptors is a sequence of (attribute id, index type) pairs. The
    result only depends on its inputs.
    """
    uses_nbt = False
    formats: Dict[Attr, Tuple[AttrType, Optional[VertexAttributeFormat]]] = {}

    for raw_attr, raw_type in descriptors:
        try:
            attr = Attr(raw_attr)
            index_type = AttrType(raw_type)
        except ValueError:
            raise MalformedContainerError(f"Bad vertex descriptor ({raw_attr}, {raw_type})")
        if attr == Attr.NULL:
            break
        if index_type == AttrType.NONE:
            continue

        if attr in MTXIDX_ATTRS:
            formats[attr] = (index_type, None)
            continue

        if attr == Attr.NBT:
            # Normal + binormal + tangent is loaded as an extended normal
            uses_nbt = True
            base = vat.get(Attr.NRM) or vat.get(Attr.NBT)
            if base is None:
                raise MalformedContainerError("Shape uses NBT but VTX1 has no normal format")
            formats[Attr.NRM] = (index_type, replace(base, comp_cnt=CompCnt.NRM_NBT))
            continue

        fmt = vat.get(attr)
        if fmt is None:
            raise MalformedContainerError(f"Shape uses {attr.name} but VTX1 has no format for it")
        formats[attr] = (index_type, fmt)

    attributes: Dict[Attr, AttributeLayout] = {}
    stride = 0
    for attr in sorted(formats):
        index_type, fmt = formats[attr]
        if fmt is None:
            entry = AttributeLayout(stride, index_type, CompType.U8, 1, 1)
        else:
            local_vat = {attr: fmt}
            elements = 3 if attr == Attr.NRM and fmt.comp_cnt == CompCnt.NRM_NBT3 else 1
            entry = AttributeLayout(
                offset=stride,
                index_type=index_type,
                comp_type=fmt.comp_type,
                comp_count=get_component_count(attr, fmt.comp_cnt),
                source_size=get_attribute_byte_size(local_vat, attr),
                scale=get_attribute_scale(attr, fmt),
                elements=elements,
            )
        attributes[attr] = entry
        stride += get_loaded_size(attr, entry.comp_count, entry.elements)

    return VertexLayout(stride, attributes, uses_nbt)


def _expand5(v: int) -> int:
    return (v << 3) | (v >> 2)


def _expand6(v: int) -> int:
    return (v << 2) | (v >> 4)


def _expand4(v: int) -> int:
    return (v << 4) | v


def decode_color(data: bytes, offset: int, color_type: int) -> Tuple[int, int, int, int]:
    """Decode one packed GX colour to RGBA8"""
    if color_type == ColorType.RGB565:
        v = struct.unpack_from('>H', data, offset)[0]
        return (_expand5((v >> 11) & 0x1F), _expand6((v >> 5) & 0x3F), _expand5(v & 0x1F), 0xFF)
    if color_type in (ColorType.RGB8, ColorType.RGBX8):
        return (data[offset], data[offset + 1], data[offset + 2], 0xFF)
    if color_type == ColorType.RGBA4:
        v = struct.unpack_from('>H', data, offset)[0]
        return (_expand4((v >> 12) & 0xF), _expand4((v >> 8) & 0xF),
                _expand4((v >> 4) & 0xF), _expand4(v & 0xF))
    if color_type == ColorType.RGBA6:
        v = (data[offset] << 16) | (data[offset + 1] << 8) | data[offset + 2]
        return (_expand6((v >> 18) & 0x3F), _expand6((v >> 12) & 0x3F),
                _expand6((v >> 6) & 0x3F), _expand6(v & 0x3F))
    return (data[offset], data[offset + 1], data[offset + 2], data[offset + 3])


class _AttributeReader:
    """Decodes one attribute from display list / array bytes into loaded bytes"""

    def __init__(self, attr: Attr, entry: AttributeLayout, array: Optional[bytes]):
        self.attr = attr
        self.entry = entry
        self.array = array
        if entry.index_type == AttrType.DIRECT:
            self.dl_size = entry.source_size * entry.elements
        elif entry.index_type == AttrType.INDEX8:
            self.dl_size = entry.elements
        else:
            self.dl_size = 2 * entry.elements
        self.is_color = attr in COLOR_ATTRS
        self.is_mtxidx = attr in MTXIDX_ATTRS
        if not (self.is_color or self.is_mtxidx):
            self.fmt = struct.Struct('>%d%s' % (entry.comp_count, _COMPONENT_STRUCT[CompType(entry.comp_type)]))

    def _decode_element(self, src: bytes, offset: int) -> Optional[List[float]]:
        if offset < 0 or offset + self.entry.source_size > len(src):
            return None
        scale = self.entry.scale
        return [v * scale for v in self.fmt.unpack_from(src, offset)]

    def read(self, dl: bytes, pos: int, out: bytearray):
        entry = self.entry
        sources: List[Tuple[bytes, int]] = []
        if entry.index_type == AttrType.DIRECT:
            for e in range(entry.elements):
                sources.append((dl, pos + e * entry.source_size))
        else:
            array = self.array or b''
            for e in range(entry.elements):
                if entry.index_type == AttrType.INDEX8:
                    index = dl[pos + e]
                else:
                    index = struct.unpack_from('>H', dl, pos + e * 2)[0]
                sources.append((array, index * entry.source_size))

        if self.is_mtxidx:
            src, offs = sources[0]
            out += struct.pack('<f', float(src[offs]) if offs < len(src) else 0.0)
            return

        if self.is_color:
            src, offs = sources[0]
            if offs + entry.source_size <= len(src):
                out += bytes(decode_color(src, offs, entry.comp_type))
            else:
                out += b'\x00\x00\x00\xFF'
            return

        values: List[float] = []
        for src, offs in sources:
            decoded = self._decode_element(src, offs)
            if decoded is None:
                decoded = [0.0] * entry.comp_count
            values.extend(decoded)

        width = get_loaded_size(self.attr, entry.comp_count, entry.elements) // 4
        if len(values) < width:
            values.extend([0.0] * (width - len(values)))
        out += struct.pack('<%df' % width, *values[:width])


def triangulate(primitive: int, base: int, count: int) -> List[int]:
    """Turn one GX draw command into a triangle list"""
    indices: List[int] = []
    if primitive == GX_DRAW_TRIANGLES:
        for i in range(0, count - count % 3, 3):
            indices += (base + i, base + i + 1, base + i + 2)
    elif primitive == GX_DRAW_TRIANGLE_STRIP:
        for i in range(count - 2):
            if i % 2 == 0:
                indices += (base + i, base + i + 1, base + i + 2)
            else:
                indices += (base + i + 1, base + i, base + i + 2)
    elif primitive == GX_DRAW_TRIANGLE_FAN:
        for i in range(1, count - 1):
            indices += (base, base + i, base + i + 1)
    elif primitive in (GX_DRAW_QUADS, GX_DRAW_QUADS_2):
        for i in range(0, count - count % 4, 4):
            indices += (base + i, base + i + 1, base + i + 2)
            indices += (base + i, base + i + 2, base + i + 3)
    return indices


def load_display_list(layout: VertexLayout, arrays: Dict[Attr, bytes],
                      display_list: bytes) -> LoadedVertexData:
    """Decode every draw command of a display list into loaded vertices"""
    readers = []
    for attr in sorted(layout.attributes):
        entry = layout.attributes[attr]
        array = arrays.get(attr)
        if attr == Attr.NRM and layout.uses_nbt and Attr.NBT in arrays:
            array = arrays[Attr.NBT]
        readers.append(_AttributeReader(attr, entry, array))
    vertex_dl_size = sum(r.dl_size for r in readers)

    buffer = bytearray()
    indices: List[int] = []
    vertex_count = 0
    dl = display_list
    pos = 0

    while pos < len(dl):
        cmd = dl[pos]
        pos += 1
        if cmd == GX_NOP or cmd == GX_INVAL_VTX:
            continue
        if cmd == GX_LOAD_CP_REG:
            pos += 5
            continue
        if cmd == GX_LOAD_XF_REG:
            if pos + 4 > len(dl):
                break
            n = (struct.unpack_from('>I', dl, pos)[0] >> 16) + 1
            pos += 4 + n * 4
            continue
        if cmd in (GX_LOAD_INDX_A, GX_LOAD_INDX_B, GX_LOAD_INDX_C, GX_LOAD_INDX_D):
            pos += 4
            continue
        if cmd == GX_CALL_DL:
            pos += 8
            continue
        if not cmd & 0x80:
            _log.debug("Unknown display list opcode 0x%02X at 0x%X", cmd, pos - 1)
            break

        primitive = cmd & 0xF8
        if pos + 2 > len(dl):
            break
        count = struct.unpack_from('>H', dl, pos)[0]
        pos += 2

        base = vertex_count
        loaded = 0
        for _ in range(count):
            if pos + vertex_dl_size > len(dl):
                break
            for reader in readers:
                reader.read(dl, pos, buffer)
                pos += reader.dl_size
            loaded += 1
        vertex_count += loaded
        indices += triangulate(primitive, base, loaded)
        if loaded < count:
            _log.debug("Display list truncated: %d of %d vertices", loaded, count)
            break

    return LoadedVertexData(bytes(buffer), indices, vertex_count)
