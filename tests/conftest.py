"""Shared fixtures: a small serial arm described in URDF."""

from __future__ import annotations

import pytest

ARM_URDF = """<?xml version="1.0"?>
<robot name="arm">
  <material name="grey">
    <color rgba="0.5 0.5 0.5 1"/>
  </material>
  <link name="base_link">
    <inertial>
      <origin xyz="0 0 0.05"/>
      <mass value="2.0"/>
      <inertia ixx="0.1" ixy="0" ixz="0" iyy="0.1" iyz="0" izz="0.2"/>
    </inertial>
    <visual>
      <origin xyz="0 0 0.05"/>
      <geometry><box size="0.2 0.2 0.1"/></geometry>
      <material name="grey"/>
    </visual>
    <collision>
      <geometry><box size="0.2 0.2 0.1"/></geometry>
    </collision>
  </link>
  <link name="upper_arm">
    <visual>
      <geometry><cylinder radius="0.03" length="0.4"/></geometry>
    </visual>
  </link>
  <link name="forearm">
    <visual>
      <geometry><sphere radius="0.05"/></geometry>
      <material name="undeclared"/>
    </visual>
  </link>
  <link name="tool">
    <visual>
      <geometry>
        <mesh filename="package://arm/meshes/tool.stl" scale="0.001 0.001 0.001"/>
      </geometry>
    </visual>
  </link>
  <joint name="shoulder" type="revolute">
    <origin xyz="0 0 0.1" rpy="0 0 1.5707963267948966"/>
    <parent link="base_link"/>
    <child link="upper_arm"/>
    <axis xyz="0 0 1"/>
    <limit lower="-1.5" upper="1.5" effort="10" velocity="2"/>
  </joint>
  <joint name="extend" type="prismatic">
    <origin xyz="0.4 0 0"/>
    <parent link="upper_arm"/>
    <child link="forearm"/>
    <limit lower="0" upper="0.25" effort="5" velocity="0.1"/>
  </joint>
  <joint name="tool_mount" type="fixed">
    <origin xyz="0.1 0 0"/>
    <parent link="forearm"/>
    <child link="tool"/>
  </joint>
</robot>
"""


@pytest.fixture()
def arm_urdf() -> str:
    """Four-link arm: revolute shoulder, prismatic forearm, fixed tool with a mesh."""
    return ARM_URDF
