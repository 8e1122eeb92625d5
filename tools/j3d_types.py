"""Shared data structures for the J3D (BMD/BDL) model format used by the GameCube conversion tools."""
import logging
import math
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple

J3D_MAGICS = (b'J3D2bmd2', b'J3D2bmd3', b'J3D2bdl4')
J3D_HEADER_SIZE = 0x20
CHUNK_HEADER_SIZE = 8

MANDATORY_CHUNKS = ('INF1', 'VTX1', 'EVP1', 'DRW1', 'JNT1', 'SHP1')

logging.getLogger("j3d2glb").addHandler(logging.NullHandler())


class J3DError(Exception):
    """Base class for conversion errors"""


class MalformedContainerError(J3DError):
    """Bad magic, missing mandatory chunk or broken hierarchy. Aborts the file."""


class ShapeExtractionError(J3DError):
    """A shape could not be turned into geometry. The shape is skipped."""


class TextureEmbedError(J3DError):
    """A texture could not be decoded. The texture is omitted."""


class Attr(IntEnum):
    """GX vertex attribute ids"""
    PNMTXIDX = 0
    TEX0MTXIDX = 1
    TEX1MTXIDX = 2
    TEX2MTXIDX = 3
    TEX3MTXIDX = 4
    TEX4MTXIDX = 5
    TEX5MTXIDX = 6
    TEX6MTXIDX = 7
    TEX7MTXIDX = 8
    POS = 9
    NRM = 10
    CLR0 = 11
    CLR1 = 12
    TEX0 = 13
    TEX1 = 14
    TEX2 = 15
    TEX3 = 16
    TEX4 = 17
    TEX5 = 18
    TEX6 = 19
    TEX7 = 20
    NBT = 25
    NULL = 0xFF


MTXIDX_ATTRS = tuple(Attr(i) for i in range(Attr.PNMTXIDX, Attr.TEX7MTXIDX + 1))
COLOR_ATTRS = (Attr.CLR0, Attr.CLR1)
TEXCOORD_ATTRS = tuple(Attr(i) for i in range(Attr.TEX0, Attr.TEX7 + 1))

# Order of the array offset table in VTX1
VTX1_ARRAY_ATTRS = (
    Attr.POS, Attr.NRM, Attr.NBT, Attr.CLR0, Attr.CLR1,
    Attr.TEX0, Attr.TEX1, Attr.TEX2, Attr.TEX3,
    Attr.TEX4, Attr.TEX5, Attr.TEX6, Attr.TEX7,
)


class AttrType(IntEnum):
    """How an attribute is stored in a display list"""
    NONE = 0
    DIRECT = 1
    INDEX8 = 2
    INDEX16 = 3


class CompType(IntEnum):
    """Component types for POS/NRM/TEX. Colours reuse the same field."""
    U8 = 0
    S8 = 1
    U16 = 2
    S16 = 3
    F32 = 4


class ColorType(IntEnum):
    RGB565 = 0
    RGB8 = 1
    RGBX8 = 2
    RGBA4 = 3
    RGBA6 = 4
    RGBA8 = 5


class CompCnt(IntEnum):
    POS_XY = 0
    POS_XYZ = 1
    NRM_XYZ = 0
    NRM_NBT = 1
    NRM_NBT3 = 2
    CLR_RGB = 0
    CLR_RGBA = 1
    TEX_S = 0
    TEX_ST = 1


class TexFormat(IntEnum):
    I4 = 0x0
    I8 = 0x1
    IA4 = 0x2
    IA8 = 0x3
    RGB565 = 0x4
    RGB5A3 = 0x5
    RGBA8 = 0x6
    C4 = 0x8
    C8 = 0x9
    C14X2 = 0xA
    CMPR = 0xE


class TexPalette(IntEnum):
    IA8 = 0
    RGB565 = 1
    RGB5A3 = 2


class WrapMode(IntEnum):
    CLAMP = 0
    REPEAT = 1
    MIRROR = 2


class TexFilter(IntEnum):
    NEAR = 0
    LINEAR = 1
    NEAR_MIP_NEAR = 2
    LIN_MIP_NEAR = 3
    NEAR_MIP_LIN = 4
    LIN_MIP_LIN = 5


class MatrixKind(IntEnum):
    JOINT = 0x00
    ENVELOPE = 0x01


class HierarchyNode(IntEnum):
    """INF1 scene graph node types"""
    END = 0x00
    OPEN = 0x01
    CLOSE = 0x02
    JOINT = 0x10
    MATERIAL = 0x11
    SHAPE = 0x12


def read_string(data: bytes, offset: int, max_length: int = 255) -> str:
    """Read a NUL-terminated ASCII string"""
    raw = data[offset:offset + max_length]
    end = raw.find(b'\x00')
    if end >= 0:
        raw = raw[:end]
    return raw.decode('ascii', errors='replace')


def read_string_table(data: bytes, offset: int) -> List[str]:
    """J3D name table: u16 count, pad, then (u16 hash, u16 offset) pairs"""
    count = struct.unpack_from('>H', data, offset)[0]
    names = []
    for i in range(count):
        string_offs = struct.unpack_from('>H', data, offset + 0x04 + i * 0x04 + 0x02)[0]
        names.append(read_string(data, offset + string_offs))
    return names


@dataclass
class ChunkEntry:
    """One entry of the chunk directory"""
    tag: str
    offset: int  # start of the chunk header in the file
    size: int    # includes the 8-byte header

    def payload(self, data: bytes) -> bytes:
        return data[self.offset:self.offset + self.size]


@dataclass
class VertexAttributeFormat:
    """VTX1 format entry (component type, count and fixed-point shift)"""
    comp_type: int
    comp_cnt: int
    comp_shift: int


@dataclass
class WeightedBone:
    joint_index: int
    weight: float


@dataclass
class Envelope:
    weighted_bones: List[WeightedBone] = field(default_factory=list)


@dataclass
class MatrixDefinition:
    """DRW1 entry, either a joint or an envelope reference"""
    kind: MatrixKind
    index: int

    @property
    def is_joint(self) -> bool:
        return self.kind == MatrixKind.JOINT


@dataclass
class AABB:
    min: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    max: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0) -> 'AABB':
        values = struct.unpack_from('>6f', data, offset)
        return cls(values[0:3], values[3:6])


def quat_multiply(a: Tuple[float, float, float, float],
                  b: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
    """Hamilton product of two (x, y, z, w) quaternions"""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return (
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def quat_from_euler(rx: float, ry: float, rz: float) -> Tuple[float, float, float, float]:
    """Rotation applied X first, then Y, then Z (q = qz * qy * qx)"""
    qx = (math.sin(rx / 2), 0.0, 0.0, math.cos(rx / 2))
    qy = (0.0, math.sin(ry / 2), 0.0, math.cos(ry / 2))
    qz = (0.0, 0.0, math.sin(rz / 2), math.cos(rz / 2))
    return quat_multiply(qz, quat_multiply(qy, qx))


@dataclass
class JointTransform:
    scale: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    rotation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)
    translation: Tuple[float, float, float] = (0.0, 0.0, 0.0)


@dataclass
class Joint:
    """JNT1 joint (64-byte entry)"""
    name: str
    transform: JointTransform
    bbox: AABB
    calc_flags: int
    parent: Optional[int] = None  # filled from the INF1 hierarchy

    @classmethod
    def from_bytes(cls, data: bytes, offset: int, name: str) -> 'Joint':
        calc_flags = data[offset + 0x02]
        scale = struct.unpack_from('>3f', data, offset + 0x04)
        rx, ry, rz = struct.unpack_from('>3h', data, offset + 0x10)
        translation = struct.unpack_from('>3f', data, offset + 0x18)
        bbox = AABB.from_bytes(data, offset + 0x28)
        rotation = quat_from_euler(rx / 0x7FFF * math.pi,
                                   ry / 0x7FFF * math.pi,
                                   rz / 0x7FFF * math.pi)
        return cls(name, JointTransform(scale, rotation, translation), bbox, calc_flags)


@dataclass
class AttributeLayout:
    """Where one attribute lives in a decoded vertex record, plus its on-disk format"""
    offset: int
    index_type: AttrType
    comp_type: int
    comp_count: int
    source_size: int  # bytes of one element in the VTX1 array / direct data
    scale: float = 1.0
    elements: int = 1  # NBT3 normals carry three separately indexed elements


@dataclass
class VertexLayout:
    stride: int
    attributes: Dict[Attr, AttributeLayout]
    uses_nbt: bool = False

    def offset_of(self, attr: Attr) -> Optional[int]:
        entry = self.attributes.get(attr)
        return entry.offset if entry is not None else None


@dataclass
class LoadedVertexData:
    """Decoded little-endian vertex records and a group-local triangle list"""
    vertex_buffer: bytes
    indices: List[int]
    vertex_count: int


@dataclass
class MtxGroup:
    use_mtx_table: List[int]
    vertex_data: LoadedVertexData


@dataclass
class Shape:
    mtx_type: int
    layout: VertexLayout
    mtx_groups: List[MtxGroup]
    bbox: AABB
    bounding_sphere_radius: float
    material_index: int = -1


@dataclass
class MaterialEntry:
    index: int
    name: str
    texture_indexes: List[int]  # 8 slots, -1 = unused


@dataclass
class TextureHeader:
    """BTI texture header as embedded in TEX1"""
    name: str
    format: int
    width: int
    height: int
    wrap_s: int
    wrap_t: int
    palette_format: int
    palette_count: int
    min_filter: int
    mag_filter: int
    mip_count: int
    data: Optional[bytes]
    palette_data: Optional[bytes]

    @classmethod
    def from_bytes(cls, data: bytes, offset: int, name: str) -> 'TextureHeader':
        fmt = data[offset + 0x00]
        width, height = struct.unpack_from('>HH', data, offset + 0x02)
        wrap_s = data[offset + 0x06]
        wrap_t = data[offset + 0x07]
        palette_format = data[offset + 0x09]
        palette_count, palette_offs = struct.unpack_from('>HI', data, offset + 0x0A)
        min_filter = data[offset + 0x14]
        mag_filter = data[offset + 0x15]
        mip_count = data[offset + 0x18]
        data_offs = struct.unpack_from('>I', data, offset + 0x1C)[0]

        tex_data = data[offset + data_offs:] if data_offs != 0 else None
        palette = None
        if palette_offs != 0:
            start = offset + palette_offs
            palette = data[start:start + palette_count * 2]
        return cls(name, fmt, width, height, wrap_s, wrap_t, palette_format,
                   palette_count, min_filter, mag_filter, mip_count, tex_data, palette)


@dataclass
class ModelContainer:
    """A fully parsed J3D file"""
    magic: str
    subversion: str
    chunk_count: int
    chunks: List[ChunkEntry]
    hierarchy: List[Tuple[int, int]]
    vat: Dict[Attr, VertexAttributeFormat]
    arrays: Dict[Attr, bytes]
    envelopes: List[Envelope]
    inverse_binds: List[List[float]]  # column-major 4x4
    matrix_definitions: List[MatrixDefinition]
    joints: List[Joint]
    shapes: List[Shape]
    materials: List[MaterialEntry] = field(default_factory=list)
    textures: List[TextureHeader] = field(default_factory=list)
