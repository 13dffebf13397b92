"""Workcell editor exception hierarchy.

All editor-specific exceptions inherit from WorkcellError. Catch specific
subclasses in business logic; only catch WorkcellError at top-level handlers
(the API layer, the job runner).

Every error names the offending entity and the violated rule so the editor
can tell the user exactly what was rejected.
"""

from __future__ import annotations

from typing import Any


class WorkcellError(Exception):
    """Base exception for all workcell editor errors.

    Args:
        message: Human-readable description.
        entity: Offending entity id, name, or a list of them.
        rule: Short machine-readable name of the violated rule.
    """

    rule = "workcell"

    def __init__(self, message: str, *, entity: Any = None, rule: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.entity = entity
        if rule is not None:
            self.rule = rule

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error payloads."""
        entity = self.entity
        if isinstance(entity, (set, frozenset, tuple)):
            entity = sorted(entity, key=str)
        return {
            "error": type(self).__name__,
            "rule": self.rule,
            "entity": entity,
            "message": self.message,
        }


class DanglingReferenceError(WorkcellError):
    """A referenced anchor, link, or joint does not exist."""

    rule = "reference_exists"


class CyclicTopologyError(WorkcellError):
    """A joint or anchor edit would create a cycle or a second parent."""

    rule = "acyclic"


class DuplicateIdentifierError(WorkcellError):
    """An entity name or document id collides with an existing one."""

    rule = "unique_identifier"


class UnresolvedNameError(WorkcellError):
    """A kinematic document refers to a link name that is not defined."""

    rule = "name_resolves"


class MalformedDocumentError(WorkcellError):
    """A URDF or site document cannot be parsed or violates its schema."""

    rule = "well_formed"


class UnsupportedTopologyError(WorkcellError):
    """The workcell has constructs with no representation in the export format."""

    rule = "representable"


class ReferencedEntityInUseError(WorkcellError):
    """An entity cannot be removed while other entities still reference it."""

    rule = "unreferenced_on_removal"


class UndoPreconditionError(WorkcellError):
    """An undo/redo record no longer applies to the current workcell state."""

    rule = "journal_precondition"


class InvalidJointError(WorkcellError):
    """Joint axis/limits do not match the rules of its kind."""

    rule = "joint_kind"


class JobError(WorkcellError):
    """Async import/export job lookup or lifecycle failure."""

    rule = "job"


class InvalidArgumentError(WorkcellError):
    """An operation argument is outside its allowed values (empty name, unknown mode)."""

    rule = "valid_argument"
