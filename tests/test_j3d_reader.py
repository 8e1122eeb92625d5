import logging
import math
import struct

import pytest

from j3d_fixtures import (
    DEFAULT_HIERARCHY, assemble, build_chunks, build_j3d, simple_shape,
)
from j3d_reader import J3DReader, read_j3d
from j3d_types import Attr, HierarchyNode, MalformedContainerError, MatrixKind


def test_reads_minimal_model():
    model = read_j3d(build_j3d())

    assert model.magic == 'J3D2bdl4'
    assert model.subversion == 'SVR3'
    assert [c.tag for c in model.chunks] == ['INF1', 'VTX1', 'EVP1', 'DRW1', 'JNT1', 'SHP1', 'MAT3']
    assert len(model.joints) == 1
    assert model.joints[0].name == 'root'
    assert len(model.shapes) == 1

    shape = model.shapes[0]
    assert shape.material_index == 0
    assert len(shape.mtx_groups) == 1
    assert shape.mtx_groups[0].use_mtx_table == [0]
    assert shape.mtx_groups[0].vertex_data.vertex_count == 3
    assert shape.mtx_groups[0].vertex_data.indices == [0, 1, 2]


@pytest.mark.parametrize('magic', [b'J3D2bmd2', b'J3D2bmd3', b'J3D2bdl4'])
def test_accepts_all_model_magics(magic):
    assert read_j3d(build_j3d(magic=magic)).magic == magic.decode('ascii')


def test_rejects_unknown_magic():
    with pytest.raises(MalformedContainerError):
        read_j3d(build_j3d(magic=b'J3D2btk1'))


def test_rejects_truncated_header():
    with pytest.raises(MalformedContainerError):
        read_j3d(b'J3D2bdl4')


def test_chunk_directory_uses_declared_sizes():
    data = build_j3d()
    reader = J3DReader(data)

    offs = 0x20
    for entry in reader.chunks:
        assert entry.offset == offs
        assert data[offs:offs + 4].decode('ascii') == entry.tag
        assert struct.unpack_from('>I', data, offs + 4)[0] == entry.size
        offs += entry.size
    assert offs == len(data)


@pytest.mark.parametrize('missing', ['INF1', 'VTX1', 'EVP1', 'DRW1', 'JNT1', 'SHP1'])
def test_missing_mandatory_chunk_is_fatal(missing):
    chunks = [c for c in build_chunks() if c[0] != missing]
    with pytest.raises(MalformedContainerError):
        read_j3d(assemble(chunks))


def test_mandatory_chunks_out_of_order_is_fatal():
    chunks = build_chunks()
    chunks[2], chunks[3] = chunks[3], chunks[2]
    with pytest.raises(MalformedContainerError, match='EVP1'):
        read_j3d(assemble(chunks))


def test_material_chunk_is_optional():
    model = read_j3d(build_j3d(materials=None))
    assert model.materials == []
    assert model.shapes[0].material_index == 0


def test_shape_before_material_is_fatal():
    hierarchy = [(HierarchyNode.JOINT, 0), (HierarchyNode.OPEN, 0),
                 (HierarchyNode.SHAPE, 0), (HierarchyNode.CLOSE, 0)]
    with pytest.raises(MalformedContainerError, match='before any material'):
        read_j3d(build_j3d(hierarchy=hierarchy))


def test_shape_assigned_twice_is_fatal():
    hierarchy = DEFAULT_HIERARCHY + [(HierarchyNode.MATERIAL, 0), (HierarchyNode.SHAPE, 0)]
    with pytest.raises(MalformedContainerError, match='twice'):
        read_j3d(build_j3d(hierarchy=hierarchy))


def test_unassigned_shape_is_fatal():
    with pytest.raises(MalformedContainerError, match='no material'):
        read_j3d(build_j3d(shapes=[simple_shape(), simple_shape()]))


def test_shapes_take_the_enclosing_material():
    hierarchy = [
        (HierarchyNode.JOINT, 0),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.MATERIAL, 1),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.SHAPE, 1),
        (HierarchyNode.CLOSE, 0),
        (HierarchyNode.MATERIAL, 0),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.SHAPE, 0),
        (HierarchyNode.CLOSE, 0),
        (HierarchyNode.CLOSE, 0),
    ]
    model = read_j3d(build_j3d(
        shapes=[simple_shape(), simple_shape()],
        hierarchy=hierarchy,
        materials=[('a', [-1] * 8), ('b', [-1] * 8)],
    ))
    assert [s.material_index for s in model.shapes] == [0, 1]


def test_shape_remap_must_be_identity():
    with pytest.raises(MalformedContainerError, match='remap'):
        read_j3d(build_j3d(shapes=[simple_shape(), simple_shape()], shape_remap=[1, 0]))


def test_joint_parents_follow_hierarchy_nesting():
    hierarchy = [
        (HierarchyNode.JOINT, 0),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.JOINT, 1),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.JOINT, 2),
        (HierarchyNode.CLOSE, 0),
        (HierarchyNode.JOINT, 3),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.MATERIAL, 0),
        (HierarchyNode.OPEN, 0),
        (HierarchyNode.SHAPE, 0),
        (HierarchyNode.CLOSE, 0),
        (HierarchyNode.CLOSE, 0),
        (HierarchyNode.CLOSE, 0),
    ]
    joints = [{'name': f'j{i}'} for i in range(4)]
    model = read_j3d(build_j3d(hierarchy=hierarchy, joints=joints))
    assert [j.parent for j in model.joints] == [None, 0, 1, 0]


def test_joint_transform():
    joint = {
        'name': 'arm',
        'scale': (2.0, 2.0, 2.0),
        'rotation': (0, 0, 0x4000),
        'translation': (1.0, 2.0, 3.0),
    }
    model = read_j3d(build_j3d(joints=[joint]))
    transform = model.joints[0].transform

    assert transform.scale == (2.0, 2.0, 2.0)
    assert transform.translation == (1.0, 2.0, 3.0)
    # 0x4000 / 0x7FFF * pi is a quarter turn about Z
    half = 0x4000 / 0x7FFF * math.pi / 2
    assert transform.rotation == pytest.approx((0.0, 0.0, math.sin(half), math.cos(half)))


def test_euler_rotation_applies_x_first():
    joint = {'name': 'j', 'rotation': (0x4000, 0, 0x4000)}
    rotation = read_j3d(build_j3d(joints=[joint])).joints[0].transform.rotation

    a = 0x4000 / 0x7FFF * math.pi / 2
    # qz * qx
    expected = (math.sin(a) * math.cos(a), math.sin(a) * math.sin(a),
                math.cos(a) * math.sin(a), math.cos(a) * math.cos(a))
    assert rotation == pytest.approx(expected)


def test_envelopes_and_inverse_binds():
    envelopes = [[(0, 0.25), (1, 0.75)]]
    inverse_binds = [
        [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0],
        [1.0, 0.0, 0.0, 5.0, 0.0, 1.0, 0.0, 6.0, 0.0, 0.0, 1.0, 7.0],
    ]
    model = read_j3d(build_j3d(
        joints=[{'name': 'a'}, {'name': 'b'}],
        envelopes=envelopes,
        inverse_binds=inverse_binds,
        matrix_definitions=[(MatrixKind.JOINT, 0), (MatrixKind.ENVELOPE, 0)],
    ))

    assert len(model.envelopes) == 1
    bones = model.envelopes[0].weighted_bones
    assert [(b.joint_index, b.weight) for b in bones] == [(0, 0.25), (1, 0.75)]

    assert len(model.inverse_binds) == 2
    # Column-major: translation ends up in the last column
    assert model.inverse_binds[1][12:16] == [5.0, 6.0, 7.0, 1.0]
    assert model.inverse_binds[1][0:4] == [1.0, 0.0, 0.0, 0.0]

    assert [(d.kind, d.index) for d in model.matrix_definitions] == [
        (MatrixKind.JOINT, 0), (MatrixKind.ENVELOPE, 0)]
    assert model.matrix_definitions[0].is_joint
    assert not model.matrix_definitions[1].is_joint


def test_unknown_matrix_kind_is_skipped(caplog):
    with caplog.at_level(logging.WARNING):
        model = read_j3d(build_j3d(matrix_definitions=[(0, 2), (7, 0), (1, 0)]))

    assert [(d.kind, d.index) for d in model.matrix_definitions] == [
        (MatrixKind.JOINT, 2), (MatrixKind.ENVELOPE, 0)]
    assert "unknown kind 7" in caplog.text


def test_materials_map_slots_through_texture_table():
    textures = [
        {'name': 'grass', 'width': 8, 'height': 4, 'data': bytes(32)},
        {'name': 'rock', 'width': 8, 'height': 4, 'data': bytes(32)},
    ]
    model = read_j3d(build_j3d(
        materials=[('ground', [-1, 1, 0])],
        textures=textures,
    ))

    assert model.materials[0].name == 'ground'
    assert model.materials[0].texture_indexes == [-1, 1, 0, -1, -1, -1, -1, -1]
    assert [t.name for t in model.textures] == ['grass', 'rock']
    assert model.textures[0].width == 8
    assert model.textures[0].height == 4
    assert model.textures[0].data[:32] == bytes(32)


def test_vertex_attributes_are_loaded():
    model = read_j3d(build_j3d(
        normals=[(0.0, 0.0, 1.0)],
        texcoords=[(0.5, 0.25)],
        shapes=[simple_shape(
            attrs=(Attr.POS, Attr.NRM, Attr.TEX0),
            vertices=[(0, 0, 0), (1, 0, 0), (2, 0, 0)],
        )],
    ))
    layout = model.shapes[0].layout
    assert layout.stride == 12 + 12 + 8

    vb = model.shapes[0].mtx_groups[0].vertex_data.vertex_buffer
    assert struct.unpack_from('<3f', vb, layout.stride + 0) == (1.0, 0.0, 0.0)
    assert struct.unpack_from('<3f', vb, layout.stride + 12) == (0.0, 0.0, 1.0)
    assert struct.unpack_from('<2f', vb, layout.stride + 24) == (0.5, 0.25)


def test_truncated_chunk_payload_is_malformed():
    data = bytearray(build_j3d())
    # Point the SHP1 shape table far past the end of the chunk
    shp1 = J3DReader(bytes(data)).chunks[5]
    struct.pack_into('>I', data, shp1.offset + 0x0C, 0x7FFFFFF0)
    with pytest.raises(MalformedContainerError):
        read_j3d(bytes(data))
