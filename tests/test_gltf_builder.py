import base64
import json
import struct

from gltf_builder import (
    ARRAY_BUFFER, GLB_CHUNK_BIN, GLB_CHUNK_JSON, GLB_MAGIC, GLTF_FLOAT, GLTF_UNSIGNED_BYTE,
    GLTFBuilder, is_valid_glb, pack_floats, pack_glb, unpack_glb,
)


def test_buffer_views_are_aligned_and_keep_unpadded_length():
    builder = GLTFBuilder()
    first = builder.add_buffer_data(b'\x01\x02\x03', ARRAY_BUFFER)
    second = builder.add_buffer_data(b'\x04' * 5)
    third = builder.add_buffer_data(b'\x05' * 8, byte_stride=8)

    assert (first, second, third) == (0, 1, 2)
    views = builder.buffer_views
    assert [v["byteOffset"] for v in views] == [0, 4, 12]
    assert [v["byteLength"] for v in views] == [3, 5, 8]
    assert views[0]["target"] == ARRAY_BUFFER
    assert "target" not in views[1]
    assert "byteStride" not in views[0]
    assert views[2]["byteStride"] == 8
    assert builder.binary_length == 20
    assert builder.build_json()["buffers"] == [{"byteLength": 20}]


def test_accessor_optional_fields():
    builder = GLTFBuilder()
    view = builder.add_buffer_data(pack_floats([0.0, 1.0, 2.0]))
    plain = builder.add_accessor(view, GLTF_FLOAT, 1, "VEC3")
    bounded = builder.add_accessor(view, GLTF_FLOAT, 1, "VEC3", [0.0, 1.0, 2.0], [0.0, 1.0, 2.0])
    colour = builder.add_accessor(view, GLTF_UNSIGNED_BYTE, 3, "VEC4", normalized=True)

    accessors = builder.accessors
    assert (plain, bounded, colour) == (0, 1, 2)
    assert set(accessors[0]) == {"bufferView", "componentType", "count", "type"}
    assert accessors[1]["min"] == [0.0, 1.0, 2.0]
    assert accessors[1]["max"] == [0.0, 1.0, 2.0]
    assert accessors[2]["normalized"] is True
    assert "min" not in accessors[2]


def test_add_methods_return_stable_indices():
    builder = GLTFBuilder()
    assert builder.add_node({"name": "a"}) == 0
    assert builder.add_node({"name": "b"}) == 1
    assert builder.add_mesh({"primitives": []}) == 0
    assert builder.add_material({"name": "m"}) == 0
    assert builder.add_sampler({}) == 0
    assert builder.add_texture({"source": 0}) == 0
    assert builder.add_skin({"joints": [0]}) == 0
    assert builder.add_scene({"nodes": [0]}) == 0
    assert builder.nodes[1] == {"name": "b"}


def test_empty_arrays_are_omitted():
    builder = GLTFBuilder()
    builder.add_node({"name": "only"})
    doc = builder.build_json()

    assert doc["asset"]["version"] == "2.0"
    assert "generator" in doc["asset"]
    assert doc["nodes"] == [{"name": "only"}]
    for key in ("scene", "scenes", "meshes", "materials", "images", "textures",
                "samplers", "skins", "buffers", "bufferViews", "accessors"):
        assert key not in doc


def test_scene_zero_is_default():
    builder = GLTFBuilder()
    builder.add_scene({"nodes": []})
    doc = builder.build_json()
    assert doc["scene"] == 0
    assert doc["scenes"] == [{"nodes": []}]


def test_image_png_is_stored_in_a_buffer_view():
    builder = GLTFBuilder()
    png = b'\x89PNG\r\n\x1a\n' + b'\x00' * 3
    image = builder.add_image_png("tex", png)

    assert image == 0
    assert builder.images[0] == {"name": "tex", "mimeType": "image/png", "bufferView": 0}
    assert builder.buffer_views[0]["byteLength"] == len(png)


def test_glb_without_binary_has_no_bin_chunk():
    builder = GLTFBuilder()
    builder.add_scene({"nodes": []})
    glb = builder.build_glb()

    magic, version, length = struct.unpack_from('<III', glb, 0)
    json_length, json_type = struct.unpack_from('<II', glb, 12)
    assert magic == GLB_MAGIC
    assert version == 2
    assert json_type == GLB_CHUNK_JSON
    assert json_length % 4 == 0
    assert length == len(glb) == 12 + 8 + json_length
    assert GLB_CHUNK_BIN.to_bytes(4, 'little') not in glb[20 + json_length:]


def test_glb_layout_with_binary():
    builder = GLTFBuilder()
    builder.add_buffer_data(b'\xAA' * 6)
    glb = builder.build_glb()

    assert glb[0:4] == b'glTF'
    length = struct.unpack_from('<I', glb, 8)[0]
    json_length = struct.unpack_from('<I', glb, 12)[0]
    assert glb[16:20] == b'JSON'

    doc = json.loads(glb[20:20 + json_length].decode('utf-8'))
    assert doc["buffers"] == [{"byteLength": 8}]
    # JSON padding is spaces
    assert glb[20:20 + json_length].rstrip(b' ') == glb[20:20 + json_length].rstrip()

    bin_offs = 20 + json_length
    bin_length, bin_type = struct.unpack_from('<II', glb, bin_offs)
    assert bin_type == GLB_CHUNK_BIN
    assert glb[bin_offs + 4:bin_offs + 8] == b'BIN\x00'
    assert bin_length == 8
    assert glb[bin_offs + 8:] == b'\xAA' * 6 + b'\x00\x00'
    assert length == len(glb) == 12 + 8 + json_length + 8 + bin_length


def test_packing_is_idempotent():
    builder = GLTFBuilder()
    view = builder.add_buffer_data(pack_floats([1.0, 2.0, 3.0]), ARRAY_BUFFER)
    builder.add_accessor(view, GLTF_FLOAT, 1, "VEC3", [1.0, 2.0, 3.0], [1.0, 2.0, 3.0])
    builder.add_scene({"nodes": []})
    assert builder.build_glb() == builder.build_glb()


def test_pack_glb_json_padding():
    for name in ("", "a", "ab", "abc", "abcd"):
        glb = pack_glb({"asset": {"version": "2.0"}, "x": name}, b'')
        json_length = struct.unpack_from('<I', glb, 12)[0]
        assert json_length % 4 == 0
        assert len(glb) == 20 + json_length


def test_unpack_glb_roundtrip():
    document = {"asset": {"version": "2.0"}, "buffers": [{"byteLength": 4}]}
    doc, binary = unpack_glb(pack_glb(document, b'\x01\x02\x03\x04'))
    assert doc == document
    assert binary == b'\x01\x02\x03\x04'


def test_build_gltf_embeds_data_uri():
    builder = GLTFBuilder()
    builder.add_buffer_data(b'\x01\x02')
    doc = builder.build_gltf()

    buffer = doc["buffers"][0]
    assert buffer["byteLength"] == 4
    prefix = "data:application/octet-stream;base64,"
    assert buffer["uri"].startswith(prefix)
    assert base64.b64decode(buffer["uri"][len(prefix):]) == b'\x01\x02\x00\x00'


def test_is_valid_glb(tmp_path):
    builder = GLTFBuilder()
    builder.add_scene({"nodes": []})
    good = tmp_path / "good.glb"
    good.write_bytes(builder.build_glb())
    assert is_valid_glb(str(good))


def test_is_valid_glb_rejects_bad_files(tmp_path):
    small = tmp_path / "small.glb"
    small.write_bytes(b'glTF\x02\x00\x00\x00')
    assert not is_valid_glb(str(small))

    wrong_magic = tmp_path / "magic.glb"
    wrong_magic.write_bytes(struct.pack('<III', 0x12345678, 2, 20) + bytes(8))
    assert not is_valid_glb(str(wrong_magic))

    wrong_version = tmp_path / "version.glb"
    wrong_version.write_bytes(struct.pack('<III', GLB_MAGIC, 1, 20) + bytes(8))
    assert not is_valid_glb(str(wrong_version))

    bad_length = tmp_path / "length.glb"
    bad_length.write_bytes(struct.pack('<III', GLB_MAGIC, 2, 12) + bytes(8))
    assert not is_valid_glb(str(bad_length))

    assert not is_valid_glb(str(tmp_path / "missing.glb"))
