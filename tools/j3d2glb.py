#!/usr/bin/env python3
"""
J3D to GLB Converter

Converts GameCube J3D models (.bmd / .bdl) to glTF 2.0. Output is binary
GLB unless the output file name ends in .gltf.

What gets converted:
- Every shape becomes one mesh with a single triangle-list primitive
  (POSITION, NORMAL, TEXCOORD_0, COLOR_0, JOINTS_0, WEIGHTS_0)
- Joints become nodes under a "Skeleton" root, bound through one skin
  using the EVP1 inverse bind matrices
- TEX1 textures are embedded as PNG images
- Materials are flat PBR materials carrying the first texture of the
  MAT3 entry, if any

Shapes and textures that fail to convert are logged and left out.
A malformed container aborts that file only.

Usage:
    j3d2glb model.bdl [more.bmd ...] [-o output_dir]
    j3d2glb models/ -o out/ --exclude bad.bdl
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from gltf_builder import (
    ARRAY_BUFFER, ELEMENT_ARRAY_BUFFER, GLTFBuilder, GLTF_FLOAT, GLTF_UNSIGNED_BYTE,
    GLTF_UNSIGNED_SHORT, MODE_TRIANGLES, is_valid_glb, pack_floats, pack_u8, pack_u16,
)
from gx_texture import decode_texture, texture_to_png
from j3d_reader import read_j3d
from j3d_shape import ShapeVertices, extract_shape_vertices
from j3d_types import (
    Attr, J3DError, ModelContainer, Shape, ShapeExtractionError, TexFilter,
    TextureEmbedError, TextureHeader, WrapMode,
)

_log = logging.getLogger("j3d2glb")

MODEL_EXTENSIONS = ('.bmd', '.bdl')

IDENTITY_MATRIX = [
    1.0, 0.0, 0.0, 0.0,
    0.0, 1.0, 0.0, 0.0,
    0.0, 0.0, 1.0, 0.0,
    0.0, 0.0, 0.0, 1.0,
]

# GX wrap mode -> glTF sampler wrap
WRAP_MODES = {
    WrapMode.CLAMP: 33071,   # CLAMP_TO_EDGE
    WrapMode.REPEAT: 10497,  # REPEAT
    WrapMode.MIRROR: 33648,  # MIRRORED_REPEAT
}

MAG_FILTERS = {
    TexFilter.NEAR: 9728,           # NEAREST
    TexFilter.LINEAR: 9729,         # LINEAR
    TexFilter.NEAR_MIP_NEAR: 9728,
    TexFilter.LIN_MIP_NEAR: 9729,
    TexFilter.NEAR_MIP_LIN: 9728,
    TexFilter.LIN_MIP_LIN: 9729,
}

MIN_FILTERS = {
    TexFilter.NEAR: 9728,           # NEAREST
    TexFilter.LINEAR: 9729,         # LINEAR
    TexFilter.NEAR_MIP_NEAR: 9984,  # NEAREST_MIPMAP_NEAREST
    TexFilter.LIN_MIP_NEAR: 9985,   # LINEAR_MIPMAP_NEAREST
    TexFilter.NEAR_MIP_LIN: 9986,   # NEAREST_MIPMAP_LINEAR
    TexFilter.LIN_MIP_LIN: 9987,    # LINEAR_MIPMAP_LINEAR
}


def map_wrap(mode: int) -> Optional[int]:
    return WRAP_MODES.get(mode)


def map_mag_filter(mode: int) -> Optional[int]:
    return MAG_FILTERS.get(mode)


def map_min_filter(mode: int) -> Optional[int]:
    return MIN_FILTERS.get(mode)


@dataclass
class ExportConfig:
    output_dir: Optional[str] = None  # None = next to each input file
    validate_output: bool = True
    embed_textures: bool = True
    verbose: bool = False
    exclude: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    converted: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)  # (path, reason)
    skipped: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class MaterialSlots:
    """glTF material index per J3D material index, one map per variant"""
    textured: Dict[int, int] = field(default_factory=dict)
    untextured: Dict[int, int] = field(default_factory=dict)


class J3DToGLBConverter:
    """Builds a glTF document from a parsed J3D model.

    The decoder turns one TextureHeader into RGBA8 bytes of its base mip
    level; it is called once per texture, in TEX1 order, before any
    material is built.
    """

    def __init__(self, decoder: Callable[[TextureHeader], bytes] = decode_texture,
                 embed_textures: bool = True):
        self.decoder = decoder
        self.embed_textures = embed_textures

    def build(self, model: ModelContainer) -> GLTFBuilder:
        builder = GLTFBuilder()

        texture_map = self.embed_model_textures(builder, model) if self.embed_textures else {}
        materials = self.build_materials(builder, model, texture_map)

        meshes: List[Tuple[int, int]] = []  # (shape index, mesh index)
        for i, shape in enumerate(model.shapes):
            try:
                vertices = extract_shape_vertices(shape, model)
            except ShapeExtractionError as e:
                _log.warning("Skipping shape %d: %s", i, e)
                continue
            meshes.append((i, self.build_mesh(builder, shape, vertices, materials, bool(model.joints))))

        skin, skeleton_root = self.build_skin(builder, model)

        scene_nodes = [] if skeleton_root is None else [skeleton_root]
        for shape_index, mesh in meshes:
            node = {"name": f"Shape_{shape_index}", "mesh": mesh}
            if skin is not None:
                node["skin"] = skin
            scene_nodes.append(builder.add_node(node))
        builder.add_scene({"name": "Scene", "nodes": scene_nodes})

        _log.debug("Built %d meshes, %d materials, %d textures, %d joints",
                   len(meshes), len(builder.materials), len(builder.textures), len(model.joints))
        return builder

    def convert(self, model: ModelContainer) -> bytes:
        return self.build(model).build_glb()

    def embed_model_textures(self, builder: GLTFBuilder, model: ModelContainer) -> Dict[int, int]:
        """Embed TEX1 textures as PNG images; returns TEX1 index -> glTF texture index"""
        texture_map: Dict[int, int] = {}
        sampler_cache: Dict[Tuple[int, int, int, int], int] = {}

        for i, texture in enumerate(model.textures):
            if not texture.data:
                _log.debug("Texture %d (%s) has no data", i, texture.name)
                continue
            try:
                png = texture_to_png(texture, self.decoder)
            except TextureEmbedError as e:
                _log.warning("Failed to embed texture %s: %s", texture.name, e)
                continue

            image = builder.add_image_png(texture.name, png)

            key = (texture.min_filter, texture.mag_filter, texture.wrap_s, texture.wrap_t)
            sampler = sampler_cache.get(key)
            if sampler is None:
                sampler = builder.add_sampler(self.make_sampler(texture))
                sampler_cache[key] = sampler

            texture_map[i] = builder.add_texture({"name": texture.name, "source": image, "sampler": sampler})
        return texture_map

    @staticmethod
    def make_sampler(texture: TextureHeader) -> Dict[str, int]:
        sampler = {
            "magFilter": map_mag_filter(texture.mag_filter),
            "minFilter": map_min_filter(texture.min_filter),
            "wrapS": map_wrap(texture.wrap_s),
            "wrapT": map_wrap(texture.wrap_t),
        }
        return {k: v for k, v in sampler.items() if v is not None}

    def build_materials(self, builder: GLTFBuilder, model: ModelContainer,
                        texture_map: Dict[int, int]) -> MaterialSlots:
        """Create the textured/untextured material variants the shapes actually use"""
        with_uv = set()
        without_uv = set()
        for shape in model.shapes:
            if shape.layout.offset_of(Attr.TEX0) is not None:
                with_uv.add(shape.material_index)
            else:
                without_uv.add(shape.material_index)

        slots = MaterialSlots()
        for index in sorted(with_uv | without_uv):
            if index in without_uv:
                slots.untextured[index] = builder.add_material(make_material(model, index, None))
            if index in with_uv:
                texture = first_embedded_texture(model, index, texture_map)
                slots.textured[index] = builder.add_material(make_material(model, index, texture))
        return slots

    def build_mesh(self, builder: GLTFBuilder, shape: Shape, vertices: ShapeVertices,
                   materials: MaterialSlots, skinned: bool = True) -> int:
        count = vertices.vertex_count

        attributes = {}
        view = builder.add_buffer_data(pack_floats(vertices.positions), ARRAY_BUFFER)
        attributes["POSITION"] = builder.add_accessor(view, GLTF_FLOAT, count, "VEC3",
                                                      vertices.pos_min, vertices.pos_max)

        for semantic, values, width in (
            ("NORMAL", vertices.normals, 3),
            ("TEXCOORD_0", vertices.texcoords, 2),
            ("COLOR_0", vertices.colors, 4),
        ):
            if not values:
                continue
            if len(values) // width != count:
                # All attributes of a primitive must have the same count
                _log.warning("Shape has %d %s values for %d vertices, dropping %s",
                             len(values) // width, semantic, count, semantic)
                continue
            if semantic == "COLOR_0":
                view = builder.add_buffer_data(pack_u8(values), ARRAY_BUFFER)
                attributes[semantic] = builder.add_accessor(view, GLTF_UNSIGNED_BYTE, count, "VEC4",
                                                            normalized=True)
            else:
                view = builder.add_buffer_data(pack_floats(values), ARRAY_BUFFER)
                attributes[semantic] = builder.add_accessor(view, GLTF_FLOAT, count, f"VEC{width}")

        if skinned:
            view = builder.add_buffer_data(pack_u16(vertices.joints), ARRAY_BUFFER)
            attributes["JOINTS_0"] = builder.add_accessor(view, GLTF_UNSIGNED_SHORT, count, "VEC4")
            view = builder.add_buffer_data(pack_floats(vertices.weights), ARRAY_BUFFER)
            attributes["WEIGHTS_0"] = builder.add_accessor(view, GLTF_FLOAT, count, "VEC4")

        view = builder.add_buffer_data(pack_u16(vertices.indices), ELEMENT_ARRAY_BUFFER)
        indices = builder.add_accessor(view, GLTF_UNSIGNED_SHORT, len(vertices.indices), "SCALAR")

        primitive = {"attributes": attributes, "indices": indices, "mode": MODE_TRIANGLES}
        slots = materials.textured if "TEXCOORD_0" in attributes else materials.untextured
        material = slots.get(shape.material_index)
        if material is None and shape.material_index in materials.textured:
            # UVs were dropped above, fall back to the other variant
            material = materials.textured[shape.material_index]
        if material is not None:
            primitive["material"] = material

        return builder.add_mesh({"name": f"Mesh_{shape.material_index}", "primitives": [primitive]})

    def build_skin(self, builder: GLTFBuilder, model: ModelContainer) -> Tuple[Optional[int], Optional[int]]:
        """Add joint nodes, the Skeleton root and the skin. Returns (skin, skeleton root)."""
        if not model.joints:
            return None, None

        joint_nodes = [
            builder.add_node({
                "name": joint.name or "Joint",
                "translation": list(joint.transform.translation),
                "rotation": list(joint.transform.rotation),
                "scale": list(joint.transform.scale),
            })
            for joint in model.joints
        ]

        roots = []
        for i, parent in enumerate(joint_parents(model)):
            if parent is None:
                roots.append(joint_nodes[i])
            else:
                builder.nodes[joint_nodes[parent]].setdefault("children", []).append(joint_nodes[i])
        skeleton_root = builder.add_node({"name": "Skeleton", "children": roots})

        inverse_binds = []
        for i in range(len(model.joints)):
            if i < len(model.inverse_binds):
                inverse_binds += model.inverse_binds[i]
            else:
                inverse_binds += IDENTITY_MATRIX
        view = builder.add_buffer_data(pack_floats(inverse_binds))
        accessor = builder.add_accessor(view, GLTF_FLOAT, len(model.joints), "MAT4")

        skin = builder.add_skin({
            "inverseBindMatrices": accessor,
            "joints": joint_nodes,
            "skeleton": skeleton_root,
        })
        return skin, skeleton_root


def joint_parents(model: ModelContainer) -> List[Optional[int]]:
    """Parent joint per joint; bad references and cycles are cut to roots"""
    count = len(model.joints)
    parents: List[Optional[int]] = []
    for i, joint in enumerate(model.joints):
        parent = joint.parent
        if parent is not None and not (0 <= parent < count and parent != i):
            parent = None
        parents.append(parent)

    for i in range(count):
        seen = {i}
        current = parents[i]
        while current is not None:
            if current in seen:
                _log.warning("Joint hierarchy loops at joint %d, detaching it", i)
                parents[i] = None
                break
            seen.add(current)
            current = parents[current]
    return parents


def first_embedded_texture(model: ModelContainer, material_index: int,
                           texture_map: Dict[int, int]) -> Optional[int]:
    if material_index >= len(model.materials):
        return None
    for texture_index in model.materials[material_index].texture_indexes:
        if texture_index >= 0 and texture_index in texture_map:
            return texture_map[texture_index]
    return None


def make_material(model: ModelContainer, material_index: int, texture: Optional[int]) -> dict:
    if material_index < len(model.materials):
        name = model.materials[material_index].name
    else:
        name = f"Material_{material_index}"

    pbr = {
        "baseColorFactor": [1.0, 1.0, 1.0, 1.0],
        "metallicFactor": 0.0,
        "roughnessFactor": 0.9,
    }
    if texture is not None:
        pbr["baseColorTexture"] = {"index": texture, "texCoord": 0}

    return {
        "name": name,
        "pbrMetallicRoughness": pbr,
        "doubleSided": True,
        "alphaMode": "OPAQUE",
    }


def output_path_for(input_path: str, output_dir: Optional[str]) -> str:
    stem = os.path.splitext(os.path.basename(input_path))[0]
    directory = output_dir if output_dir is not None else os.path.dirname(input_path)
    return os.path.join(directory, stem + ".glb")


def convert_file(input_path: str, output_path: str, config: Optional[ExportConfig] = None,
                 converter: Optional[J3DToGLBConverter] = None) -> int:
    """Convert one model file. Returns the number of bytes written."""
    config = config or ExportConfig()
    converter = converter or J3DToGLBConverter(embed_textures=config.embed_textures)

    with open(input_path, 'rb') as f:
        data = f.read()
    _log.debug("Reading %s (%d bytes)", input_path, len(data))

    builder = converter.build(read_j3d(data))

    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    if output_path.lower().endswith('.gltf'):
        text = json.dumps(builder.build_gltf(), indent=2)
        with open(output_path, 'w') as f:
            f.write(text)
        written = len(text)
    else:
        glb = builder.build_glb()
        with open(output_path, 'wb') as f:
            f.write(glb)
        written = len(glb)

        if config.validate_output and not is_valid_glb(output_path):
            raise J3DError(f"Output failed GLB validation: {output_path}")

    _log.debug("Wrote %s (%d bytes)", output_path, written)
    return written


def convert_batch(paths: List[str], config: Optional[ExportConfig] = None,
                  converter: Optional[J3DToGLBConverter] = None) -> BatchResult:
    """Convert files one after another; a failing file doesn't stop the batch"""
    config = config or ExportConfig()
    result = BatchResult()

    for n, path in enumerate(paths):
        if os.path.basename(path) in config.exclude:
            _log.debug("Skipping excluded file: %s", path)
            result.skipped.append(path)
            continue

        _log.info("[%.1f%%] %s", (n + 1) / len(paths) * 100, path)
        try:
            convert_file(path, output_path_for(path, config.output_dir), config, converter)
        except (J3DError, OSError) as e:
            _log.error("Failed to convert %s: %s", path, e)
            result.failed.append((path, str(e)))
            continue
        result.converted.append(path)

    return result


def collect_inputs(inputs: List[str]) -> List[str]:
    """Expand directories to the model files inside them, sorted"""
    paths = []
    for item in inputs:
        if os.path.isdir(item):
            for root, dirs, files in os.walk(item):
                dirs.sort()
                for name in sorted(files):
                    if name.lower().endswith(MODEL_EXTENSIONS):
                        paths.append(os.path.join(root, name))
        else:
            paths.append(item)
    return paths


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Convert J3D models (.bmd/.bdl) to glTF 2.0 binary (.glb)")
    parser.add_argument('inputs', nargs='+', help='model files or directories containing them')
    parser.add_argument('-o', '--output-dir', default=None,
                        help='directory for the .glb files (default: next to each input)')
    parser.add_argument('--no-textures', action='store_true', help='do not embed TEX1 textures')
    parser.add_argument('--no-validate', action='store_true', help='skip the GLB header check after writing')
    parser.add_argument('--exclude', action='append', default=[], metavar='NAME',
                        help='file name to skip (may be repeated)')
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    args = parser.parse_args(argv)

    config = ExportConfig(
        output_dir=args.output_dir,
        validate_output=not args.no_validate,
        embed_textures=not args.no_textures,
        verbose=args.verbose,
        exclude=args.exclude,
    )
    logging.basicConfig(level=logging.DEBUG if config.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')

    paths = collect_inputs(args.inputs)
    if not paths:
        print("No input models found")
        return 1

    result = convert_batch(paths, config)

    print(f"\nConverted {len(result.converted)} of {len(paths)} models")
    if result.skipped:
        print(f"  Skipped: {len(result.skipped)}")
    for path, reason in result.failed:
        print(f"  FAILED {path}: {reason}")
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
