"""
glTF 2.0 document builder and GLB packer

GLTFBuilder accumulates one binary blob plus the JSON arrays that index
into it. Every add_* call appends and returns the index of the new entry.

GLB layout (little-endian):
    Header (12 bytes): magic "glTF", version 2, total length
    JSON chunk: length, type "JSON", JSON padded with spaces to 4 bytes
    BIN chunk (only if the blob isn't empty): length, type "BIN\\0",
              blob padded with zeros to 4 bytes
"""

import base64
import json
import os
import struct
from typing import Any, Dict, List, Optional, Sequence

GLTF_BYTE = 5120
GLTF_UNSIGNED_BYTE = 5121
GLTF_SHORT = 5122
GLTF_UNSIGNED_SHORT = 5123
GLTF_UNSIGNED_INT = 5125
GLTF_FLOAT = 5126

ARRAY_BUFFER = 34962
ELEMENT_ARRAY_BUFFER = 34963

# Components per accessor type
ACCESSOR_TYPES = {
    'SCALAR': 1,
    'VEC2': 2,
    'VEC3': 3,
    'VEC4': 4,
    'MAT2': 4,
    'MAT3': 9,
    'MAT4': 16,
}

MODE_TRIANGLES = 4

GLB_MAGIC = 0x46546C67       # "glTF"
GLB_VERSION = 2
GLB_CHUNK_JSON = 0x4E4F534A  # "JSON"
GLB_CHUNK_BIN = 0x004E4942   # "BIN\0"
GLB_HEADER_SIZE = 12
GLB_CHUNK_HEADER_SIZE = 8
GLB_MIN_SIZE = GLB_HEADER_SIZE + GLB_CHUNK_HEADER_SIZE
GLB_MAX_SIZE = 2 ** 31

GENERATOR = "j3d2glb - J3D model converter"


def align4(value: int) -> int:
    return (value + 3) & ~3


def pad_to_4(data: bytes, pad: bytes = b'\x00') -> bytes:
    return data + pad * (align4(len(data)) - len(data))


def pack_floats(values: Sequence[float]) -> bytes:
    return struct.pack(f'<{len(values)}f', *values)


def pack_u16(values: Sequence[int]) -> bytes:
    return struct.pack(f'<{len(values)}H', *values)


def pack_u8(values: Sequence[int]) -> bytes:
    return bytes(values)


class GLTFBuilder:
    """Accumulates glTF JSON arrays and the binary blob they reference"""

    def __init__(self, generator: str = GENERATOR):
        self.generator = generator
        self.buffer_data: List[bytes] = []
        self.buffer_views: List[Dict[str, Any]] = []
        self.accessors: List[Dict[str, Any]] = []
        self.meshes: List[Dict[str, Any]] = []
        self.nodes: List[Dict[str, Any]] = []
        self.skins: List[Dict[str, Any]] = []
        self.materials: List[Dict[str, Any]] = []
        self.images: List[Dict[str, Any]] = []
        self.textures: List[Dict[str, Any]] = []
        self.samplers: List[Dict[str, Any]] = []
        self.scenes: List[Dict[str, Any]] = []
        self.current_buffer_offset = 0

    def add_buffer_data(self, data: bytes, target: Optional[int] = None,
                        byte_stride: Optional[int] = None) -> int:
        """Append bytes to the blob and return the new buffer view index"""
        byte_length = len(data)
        padded = pad_to_4(bytes(data))
        self.buffer_data.append(padded)

        view: Dict[str, Any] = {
            "buffer": 0,
            "byteOffset": self.current_buffer_offset,
            "byteLength": byte_length,  # padding is not part of the view
        }
        if byte_stride is not None:
            view["byteStride"] = byte_stride
        if target is not None:
            view["target"] = target

        self.buffer_views.append(view)
        self.current_buffer_offset += len(padded)
        return len(self.buffer_views) - 1

    def add_accessor(self, buffer_view: int, component_type: int, count: int, accessor_type: str,
                     min_values: Optional[Sequence[float]] = None,
                     max_values: Optional[Sequence[float]] = None,
                     normalized: Optional[bool] = None) -> int:
        accessor: Dict[str, Any] = {
            "bufferView": buffer_view,
            "componentType": component_type,
            "count": count,
            "type": accessor_type,
        }
        if min_values is not None:
            accessor["min"] = list(min_values)
        if max_values is not None:
            accessor["max"] = list(max_values)
        if normalized is not None:
            accessor["normalized"] = normalized
        self.accessors.append(accessor)
        return len(self.accessors) - 1

    def add_mesh(self, mesh: Dict[str, Any]) -> int:
        self.meshes.append(mesh)
        return len(self.meshes) - 1

    def add_node(self, node: Dict[str, Any]) -> int:
        self.nodes.append(node)
        return len(self.nodes) - 1

    def add_skin(self, skin: Dict[str, Any]) -> int:
        self.skins.append(skin)
        return len(self.skins) - 1

    def add_material(self, material: Dict[str, Any]) -> int:
        self.materials.append(material)
        return len(self.materials) - 1

    def add_image_png(self, name: str, png: bytes) -> int:
        """Embed PNG bytes in the blob and return the image index"""
        view = self.add_buffer_data(png)
        self.images.append({"name": name, "mimeType": "image/png", "bufferView": view})
        return len(self.images) - 1

    def add_sampler(self, sampler: Dict[str, Any]) -> int:
        self.samplers.append(sampler)
        return len(self.samplers) - 1

    def add_texture(self, texture: Dict[str, Any]) -> int:
        self.textures.append(texture)
        return len(self.textures) - 1

    def add_scene(self, scene: Dict[str, Any]) -> int:
        self.scenes.append(scene)
        return len(self.scenes) - 1

    @property
    def binary_length(self) -> int:
        return self.current_buffer_offset

    def build_json(self) -> Dict[str, Any]:
        """Build the glTF document; empty arrays are left out"""
        gltf: Dict[str, Any] = {
            "asset": {
                "version": "2.0",
                "generator": self.generator,
            },
        }
        if self.scenes:
            gltf["scene"] = 0
            gltf["scenes"] = self.scenes

        for key, values in (
            ("nodes", self.nodes),
            ("meshes", self.meshes),
            ("materials", self.materials),
            ("images", self.images),
            ("textures", self.textures),
            ("samplers", self.samplers),
            ("skins", self.skins),
            ("bufferViews", self.buffer_views),
            ("accessors", self.accessors),
        ):
            if values:
                gltf[key] = values

        if self.current_buffer_offset > 0:
            gltf["buffers"] = [{"byteLength": self.current_buffer_offset}]
        return gltf

    def build_glb(self) -> bytes:
        return pack_glb(self.build_json(), b''.join(self.buffer_data))

    def build_gltf(self) -> Dict[str, Any]:
        """Build a standalone .gltf document with the blob as a base64 data URI"""
        gltf = self.build_json()
        if "buffers" in gltf:
            buffer_base64 = base64.b64encode(b''.join(self.buffer_data)).decode('ascii')
            gltf["buffers"] = [{
                "uri": f"data:application/octet-stream;base64,{buffer_base64}",
                "byteLength": self.current_buffer_offset,
            }]
        return gltf


def pack_glb(document: Dict[str, Any], binary: bytes) -> bytes:
    """Serialize a glTF document and its binary blob into GLB bytes"""
    json_bytes = pad_to_4(json.dumps(document, separators=(',', ':')).encode('utf-8'), b' ')
    binary_padded = pad_to_4(binary)

    total_length = GLB_HEADER_SIZE + GLB_CHUNK_HEADER_SIZE + len(json_bytes)
    if binary:
        total_length += GLB_CHUNK_HEADER_SIZE + len(binary_padded)

    chunks = [
        struct.pack('<III', GLB_MAGIC, GLB_VERSION, total_length),
        struct.pack('<II', len(json_bytes), GLB_CHUNK_JSON),
        json_bytes,
    ]
    if binary:
        chunks.append(struct.pack('<II', len(binary_padded), GLB_CHUNK_BIN))
        chunks.append(binary_padded)
    return b''.join(chunks)


def unpack_glb(data: bytes):
    """Split GLB bytes back into (document, binary)"""
    magic, version, length = struct.unpack_from('<III', data, 0)
    if magic != GLB_MAGIC:
        raise ValueError("Not a GLB file")
    json_length, json_type = struct.unpack_from('<II', data, GLB_HEADER_SIZE)
    if json_type != GLB_CHUNK_JSON:
        raise ValueError("First GLB chunk is not JSON")
    start = GLB_HEADER_SIZE + GLB_CHUNK_HEADER_SIZE
    document = json.loads(data[start:start + json_length].decode('utf-8'))

    binary = b''
    offs = start + json_length
    if offs + GLB_CHUNK_HEADER_SIZE <= min(length, len(data)):
        bin_length, bin_type = struct.unpack_from('<II', data, offs)
        if bin_type == GLB_CHUNK_BIN:
            binary = data[offs + GLB_CHUNK_HEADER_SIZE:offs + GLB_CHUNK_HEADER_SIZE + bin_length]
    return document, binary


def is_valid_glb(path: str) -> bool:
    """Check that a file starts with a sane GLB header"""
    if not os.path.isfile(path):
        return False
    try:
        with open(path, 'rb') as f:
            header = f.read(GLB_MIN_SIZE)
    except OSError:
        return False
    if len(header) < GLB_MIN_SIZE:
        return False

    magic, version, length = struct.unpack_from('<III', header, 0)
    if magic != GLB_MAGIC or version != GLB_VERSION:
        return False
    return GLB_MIN_SIZE <= length <= GLB_MAX_SIZE
