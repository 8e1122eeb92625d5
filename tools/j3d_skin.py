"""Skin binding resolution for J3D matrix groups.

J3D binds skinning per matrix group, not per vertex: the first entry of a
group's matrix table selects a DRW1 definition, which is either a single
joint or an EVP1 envelope of weighted joints. The resolved four
(joint, weight) pairs are shared by every vertex of the group.
"""
from typing import List, Sequence, Tuple

from j3d_types import Envelope, MatrixDefinition, MatrixKind

MAX_INFLUENCES = 4

DEFAULT_JOINTS = (0, 0, 0, 0)
DEFAULT_WEIGHTS = (1.0, 0.0, 0.0, 0.0)


def resolve_envelope(envelope: Envelope) -> Tuple[Tuple[int, ...], Tuple[float, ...]]:
    """Keep the four heaviest bones, renormalised to sum to 1"""
    ranked = sorted(envelope.weighted_bones, key=lambda b: b.weight, reverse=True)[:MAX_INFLUENCES]
    joints = [b.joint_index for b in ranked] + [0] * (MAX_INFLUENCES - len(ranked))
    weights = [b.weight for b in ranked] + [0.0] * (MAX_INFLUENCES - len(ranked))

    total = sum(weights)
    if total > 0:
        weights = [w / total for w in weights]
    else:
        # Degenerate envelope
        joints = list(DEFAULT_JOINTS)
        weights = list(DEFAULT_WEIGHTS)
    return tuple(joints), tuple(weights)


def resolve_skin(use_mtx_table: Sequence[int],
                 matrix_definitions: List[MatrixDefinition],
                 envelopes: List[Envelope]) -> Tuple[Tuple[int, ...], Tuple[float, ...]]:
    """Resolve the (joints, weights) 4-tuples for one matrix group"""
    if not use_mtx_table:
        return DEFAULT_JOINTS, DEFAULT_WEIGHTS

    matrix_index = use_mtx_table[0]
    if matrix_index >= len(matrix_definitions):
        return DEFAULT_JOINTS, DEFAULT_WEIGHTS
    definition = matrix_definitions[matrix_index]

    if definition.kind == MatrixKind.JOINT:
        return (definition.index, 0, 0, 0), DEFAULT_WEIGHTS

    if definition.index >= len(envelopes) or not envelopes[definition.index].weighted_bones:
        return DEFAULT_JOINTS, DEFAULT_WEIGHTS
    return resolve_envelope(envelopes[definition.index])
