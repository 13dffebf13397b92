"""Rigid poses: translation + unit-quaternion rotation.

Poses are immutable. Rotations are stored as quaternions ``(x, y, z, w)``
normalised with a non-negative ``w`` so equal rotations serialize equally.
Roll-pitch-yaw uses the URDF convention (extrinsic X, then Y, then Z, i.e.
``R = Rz(yaw) @ Ry(pitch) @ Rx(roll)``).
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict, field_validator
from scipy.spatial.transform import Rotation

Vector3 = tuple[float, float, float]
Quaternion = tuple[float, float, float, float]

_IDENTITY_QUAT: Quaternion = (0.0, 0.0, 0.0, 1.0)


def _clean(value: float) -> float:
    """Squash negative zero so it never leaks into saved documents."""
    value = float(value)
    return 0.0 if value == 0.0 else value


class Pose(BaseModel):
    """A rigid transform relative to some parent frame.

    Attributes:
        translation: [x, y, z] in the owning workcell's length unit.
        rotation: Unit quaternion [x, y, z, w].
    """

    model_config = ConfigDict(frozen=True)

    translation: Vector3 = (0.0, 0.0, 0.0)
    rotation: Quaternion = _IDENTITY_QUAT

    @field_validator("translation")
    @classmethod
    def _finite_translation(cls, value: Vector3) -> Vector3:
        if not all(math.isfinite(v) for v in value):
            raise ValueError(f"translation must be finite, got {value}")
        return tuple(_clean(v) for v in value)  # type: ignore[return-value]

    @field_validator("rotation")
    @classmethod
    def _normalise_rotation(cls, value: Quaternion) -> Quaternion:
        norm = math.sqrt(sum(v * v for v in value))
        if not math.isfinite(norm) or norm < 1e-12:
            raise ValueError(f"rotation must be a non-zero quaternion, got {value}")
        q = [v / norm for v in value] if abs(norm - 1.0) > 1e-12 else [float(v) for v in value]
        if q[3] < 0:
            q = [-v for v in q]
        return tuple(_clean(v) for v in q)  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def identity(cls) -> Pose:
        return cls()

    @classmethod
    def from_translation(cls, x: float, y: float, z: float) -> Pose:
        return cls(translation=(x, y, z))

    @classmethod
    def from_xyz_rpy(cls, xyz: Sequence[float], rpy: Sequence[float]) -> Pose:
        """Build a pose from URDF-style ``xyz`` and ``rpy`` (radians)."""
        if not any(rpy):
            return cls(translation=tuple(xyz))
        quat = Rotation.from_euler("xyz", list(rpy)).as_quat()
        return cls(translation=tuple(xyz), rotation=tuple(quat))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> Pose:
        """Build a pose from a 4x4 homogeneous transform."""
        matrix = np.asarray(matrix, dtype=float)
        if matrix.shape != (4, 4):
            raise ValueError(f"Expected a 4x4 matrix, got shape {matrix.shape}")
        rot = matrix[:3, :3]
        if np.allclose(rot, np.eye(3), atol=1e-12):
            quat: Sequence[float] = _IDENTITY_QUAT
        else:
            quat = Rotation.from_matrix(rot).as_quat()
        return cls(translation=tuple(matrix[:3, 3]), rotation=tuple(quat))

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def rpy(self) -> Vector3:
        """Roll, pitch, yaw in radians (URDF convention)."""
        if self.rotation == _IDENTITY_QUAT:
            return (0.0, 0.0, 0.0)
        angles = Rotation.from_quat(self.rotation).as_euler("xyz")
        return tuple(_clean(a) for a in angles)  # type: ignore[return-value]

    @property
    def is_identity(self) -> bool:
        return self.translation == (0.0, 0.0, 0.0) and self.rotation == _IDENTITY_QUAT

    def rotation_matrix(self) -> np.ndarray:
        return Rotation.from_quat(self.rotation).as_matrix()

    def matrix(self) -> np.ndarray:
        """4x4 homogeneous transform."""
        out = np.eye(4)
        out[:3, :3] = self.rotation_matrix()
        out[:3, 3] = self.translation
        return out

    # ------------------------------------------------------------------
    # Algebra
    # ------------------------------------------------------------------

    def compose(self, other: Pose) -> Pose:
        """``self ∘ other``: ``other`` expressed in the frame of ``self``."""
        if other.is_identity:
            return self
        if self.is_identity:
            return other
        return Pose.from_matrix(self.matrix() @ other.matrix())

    def __matmul__(self, other: Pose) -> Pose:
        return self.compose(other)

    def inverse(self) -> Pose:
        if self.is_identity:
            return self
        rot_t = self.rotation_matrix().T
        out = np.eye(4)
        out[:3, :3] = rot_t
        out[:3, 3] = -rot_t @ np.asarray(self.translation)
        return Pose.from_matrix(out)

    def relative_to(self, frame: Pose) -> Pose:
        """Express this (world) pose in the coordinates of ``frame``."""
        return frame.inverse().compose(self)

    def transform_point(self, point: Sequence[float]) -> Vector3:
        p = self.rotation_matrix() @ np.asarray(point, dtype=float) + np.asarray(self.translation)
        return tuple(float(v) for v in p)  # type: ignore[return-value]

    def scaled(self, factor: float) -> Pose:
        """Same rotation, translation multiplied by ``factor`` (unit conversion)."""
        if factor == 1.0:
            return self
        return Pose(
            translation=tuple(v * factor for v in self.translation),
            rotation=self.rotation,
        )

    def is_close(self, other: Pose, atol: float = 1e-9) -> bool:
        """Numerical equality, treating ``q`` and ``-q`` as the same rotation."""
        if not np.allclose(self.translation, other.translation, atol=atol):
            return False
        dot = abs(float(np.dot(self.rotation, other.rotation)))
        return abs(1.0 - dot) <= atol
