"""Pose algebra and unit conventions shared by every workcell module."""

from .pose import Pose, Quaternion, Vector3
from .units import LengthUnit, UpAxis, unit_scale, up_axis_correction

__all__ = [
    "LengthUnit",
    "Pose",
    "Quaternion",
    "UpAxis",
    "Vector3",
    "unit_scale",
    "up_axis_correction",
]
