"""Length units and up-axis conventions for workcell scenes."""

from __future__ import annotations

import math
from enum import StrEnum

from workcell_editor.geometry.pose import Pose


class LengthUnit(StrEnum):
    """Canonical length unit of a workcell."""

    METRE = "m"
    CENTIMETRE = "cm"
    MILLIMETRE = "mm"

    @property
    def metres(self) -> float:
        """Length of one unit in metres."""
        return _METRES_PER_UNIT[self]


class UpAxis(StrEnum):
    """Which scene axis points up."""

    Y = "y"
    Z = "z"


_METRES_PER_UNIT = {
    LengthUnit.METRE: 1.0,
    LengthUnit.CENTIMETRE: 0.01,
    LengthUnit.MILLIMETRE: 0.001,
}


def unit_scale(source: LengthUnit | str, target: LengthUnit | str) -> float:
    """Factor that converts a length expressed in ``source`` into ``target``.

    Example:
        ``unit_scale("m", "mm") == 1000.0``
    """
    return LengthUnit(source).metres / LengthUnit(target).metres


def up_axis_correction(source: UpAxis | str, target: UpAxis | str) -> Pose:
    """Rotation that re-expresses a ``source``-up scene in a ``target``-up frame.

    Y-up to Z-up is +90 degrees about X (y maps onto z); the reverse is -90.
    """
    source, target = UpAxis(source), UpAxis(target)
    if source == target:
        return Pose.identity()
    angle = math.pi / 2 if (source, target) == (UpAxis.Y, UpAxis.Z) else -math.pi / 2
    return Pose.from_xyz_rpy((0.0, 0.0, 0.0), (angle, 0.0, 0.0))
