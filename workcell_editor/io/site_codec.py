"""Site document codec: the editor's native JSON save format.

Every entity is keyed by its id as a string, and every cross reference is
such a string id, never an array position. Encoding is byte-stable for a
given workcell state so saved documents diff cleanly.

Decoding goes through the same integrity checks as interactive edits and is
all-or-nothing: a corrupt document raises and nothing is loaded.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from workcell_editor.errors import DuplicateIdentifierError, MalformedDocumentError
from workcell_editor.geometry import Pose, Vector3
from workcell_editor.model.changes import ProposedWorkcell
from workcell_editor.model.entities import (
    Anchor,
    Entity,
    EntityId,
    GeometryElement,
    Inertial,
    Joint,
    JointKind,
    JointLimits,
    Link,
    ModelInstance,
    WorkcellMetadata,
)
from workcell_editor.model.integrity import validate_workcell
from workcell_editor.model.workcell import Workcell, WorkcellView

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------------


class _Record(BaseModel):
    # Unknown fields are ignored so newer documents still load.
    model_config = ConfigDict(extra="ignore")


class AnchorRecord(_Record):
    name: str
    pose: Pose = Field(default_factory=Pose)
    parent: str | None = None


class LinkRecord(_Record):
    name: str
    anchor: str
    offset: Pose = Field(default_factory=Pose)
    visuals: list[GeometryElement] = Field(default_factory=list)
    collisions: list[GeometryElement] = Field(default_factory=list)
    inertial: Inertial | None = None


class JointRecord(_Record):
    name: str
    kind: JointKind
    parent: str
    child: str
    origin: str
    axis: Vector3 | None = None
    limits: JointLimits | None = None


class ModelInstanceRecord(_Record):
    name: str
    asset: str
    anchor: str
    offset: Pose = Field(default_factory=Pose)
    scale: Vector3 = (1.0, 1.0, 1.0)


class SiteDocument(_Record):
    """Top-level site document.

    Attributes:
        format_version: Schema version; newer major versions are rejected.
        metadata: Scene name, unit and up axis.
        anchors: Anchor records keyed by string id.
        links: Link records keyed by string id.
        joints: Joint records keyed by string id.
        model_instances: Model instance records keyed by string id.
    """

    format_version: int = FORMAT_VERSION
    metadata: WorkcellMetadata = Field(default_factory=WorkcellMetadata)
    anchors: dict[str, AnchorRecord] = Field(default_factory=dict)
    links: dict[str, LinkRecord] = Field(default_factory=dict)
    joints: dict[str, JointRecord] = Field(default_factory=dict)
    model_instances: dict[str, ModelInstanceRecord] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def to_document(workcell: WorkcellView) -> SiteDocument:
    """Convert a workcell into its document form."""

    def ref(entity_id: EntityId | None) -> str | None:
        return None if entity_id is None else str(entity_id)

    return SiteDocument(
        metadata=workcell.metadata,
        anchors={
            str(aid): AnchorRecord(name=a.name, pose=a.pose, parent=ref(a.parent))
            for aid, a in workcell.anchors.items()
        },
        links={
            str(lid): LinkRecord(
                name=link.name,
                anchor=str(link.anchor),
                offset=link.offset,
                visuals=list(link.visuals),
                collisions=list(link.collisions),
                inertial=link.inertial,
            )
            for lid, link in workcell.links.items()
        },
        joints={
            str(jid): JointRecord(
                name=j.name,
                kind=j.kind,
                parent=str(j.parent),
                child=str(j.child),
                origin=str(j.origin),
                axis=j.axis,
                limits=j.limits,
            )
            for jid, j in workcell.joints.items()
        },
        model_instances={
            str(mid): ModelInstanceRecord(
                name=m.name,
                asset=m.asset,
                anchor=str(m.anchor),
                offset=m.offset,
                scale=m.scale,
            )
            for mid, m in workcell.model_instances.items()
        },
    )


def encode(workcell: WorkcellView) -> str:
    """Serialize to JSON. Identical state always yields identical text."""
    data = to_document(workcell).model_dump(mode="json")
    return json.dumps(data, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def save(workcell: WorkcellView, path: Path) -> Path:
    """Write the encoded workcell to ``path``, creating parent directories."""
    text = encode(workcell)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    logger.info("Saved workcell '%s' to %s", workcell.metadata.name, path)
    return path


# ---------------------------------------------------------------------------
# Decode
# ---------------------------------------------------------------------------


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise DuplicateIdentifierError(f"Duplicate key '{key}' in site document", entity=key)
        out[key] = value
    return out


def _parse_id(key: str, where: str) -> EntityId:
    if not (key.isascii() and key.isdigit()) or str(int(key)) != key or int(key) <= 0:
        raise MalformedDocumentError(
            f"Invalid id '{key}' in {where}: ids are positive integers", entity=key
        )
    return int(key)


def _parse_ref(value: str | None, where: str) -> EntityId | None:
    return None if value is None else _parse_id(value, where)


def from_document(document: SiteDocument) -> Workcell:
    """Build a validated workcell from a parsed document.

    Raises:
        MalformedDocumentError: Unsupported version or invalid ids.
        DuplicateIdentifierError: One id used in two sections, or duplicate names.
        DanglingReferenceError: A reference to a missing entity.
        CyclicTopologyError: Cyclic joints or anchors, or a second parent joint.
    """
    if document.format_version > FORMAT_VERSION:
        raise MalformedDocumentError(
            f"Site document version {document.format_version} is newer than "
            f"supported version {FORMAT_VERSION}",
            entity=document.format_version,
        )

    entities: dict[EntityId, tuple[str, Entity]] = {}

    def add(section: str, key: str, entity: Entity) -> None:
        entity_id = _parse_id(key, section)
        if entity_id in entities:
            raise DuplicateIdentifierError(
                f"Id {entity_id} appears in both '{entities[entity_id][0]}' and '{section}'",
                entity=entity_id,
            )
        entities[entity_id] = (section, entity)

    for key, a in document.anchors.items():
        where = f"anchors.{key}"
        add("anchors", key, Anchor(name=a.name, pose=a.pose, parent=_parse_ref(a.parent, where)))
    for key, link in document.links.items():
        where = f"links.{key}"
        add("links", key, Link(
            name=link.name,
            anchor=_parse_id(link.anchor, where),
            offset=link.offset,
            visuals=tuple(link.visuals),
            collisions=tuple(link.collisions),
            inertial=link.inertial,
        ))
    for key, j in document.joints.items():
        where = f"joints.{key}"
        add("joints", key, Joint(
            name=j.name,
            kind=j.kind,
            parent=_parse_id(j.parent, where),
            child=_parse_id(j.child, where),
            origin=_parse_id(j.origin, where),
            axis=j.axis,
            limits=j.limits,
        ))
    for key, m in document.model_instances.items():
        where = f"model_instances.{key}"
        add("model_instances", key, ModelInstance(
            name=m.name,
            asset=m.asset,
            anchor=_parse_id(m.anchor, where),
            offset=m.offset,
            scale=m.scale,
        ))

    workcell = Workcell(document.metadata)
    proposed = ProposedWorkcell(workcell)
    for entity_id in sorted(entities):
        proposed.put(entity_id, entities[entity_id][1])
    validate_workcell(proposed)
    proposed.to_changeset("Load").apply_to(workcell)
    return workcell


def decode(text: str | bytes) -> Workcell:
    """Parse and validate a site document. Nothing is returned on any error."""
    try:
        data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedDocumentError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedDocumentError("Site document must be a JSON object")
    try:
        document = SiteDocument.model_validate(data)
    except ValidationError as e:
        raise MalformedDocumentError(f"Invalid site document: {e}") from e
    return from_document(document)


def load(path: Path) -> Workcell:
    """Read and decode a site document from ``path``."""
    workcell = decode(path.read_bytes())
    logger.info(
        "Loaded workcell '%s' from %s (%d entities)",
        workcell.metadata.name,
        path,
        workcell.entity_count(),
    )
    return workcell
