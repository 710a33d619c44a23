"""
Policy dispatch shared by the cascade executor and the orphan repairer.

Each relationship policy maps to one store operation. Redaction and reference
cleanup branch on the structured reference path, never on the raw string.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import RegistryError
from ..registry import ReferenceKind, ReferencePath, RelationshipPolicy, RelationshipRule
from ..storage import DocumentOperations, Update
from .models import PolicyAction


@dataclass(frozen=True)
class PolicyOutcome:
    """What one dispatch did to one relationship."""

    rule: RelationshipRule
    action: PolicyAction
    count: int

    @property
    def collection(self) -> str:
        return self.rule.referencing_collection


def resolve_action(rule: RelationshipRule, preserve: bool) -> PolicyAction:
    """Effective action for a rule; PRESERVE falls back to DELETE unless requested."""
    if rule.policy == RelationshipPolicy.CLEANUP:
        return PolicyAction.CLEANUP_REFERENCE
    if rule.policy == RelationshipPolicy.PRESERVE and preserve:
        return PolicyAction.PRESERVE
    return PolicyAction.DELETE


def redaction_stamp(
    primary_id: Any, operator_id: str, redacted_at: Optional[datetime] = None
) -> Dict[str, Any]:
    """Immutable marker that replaces a preserved reference."""
    return {
        "original_entity_id": primary_id,
        "redacted_at": redacted_at or datetime.utcnow(),
        "redacted_by": operator_id,
    }


def cleanup_update(path: ReferencePath, primary_id: Any) -> Update:
    """Update stripping a reference to ``primary_id`` and nothing else."""
    if path.kind == ReferenceKind.FIELD:
        return Update(unset=[path.field])
    if path.kind == ReferenceKind.ARRAY_ELEMENT:
        if path.match_field is None:
            raise RegistryError(
                f"Array element path {path.field!r} names no element field"
            )
        # An object container holds a single reference instead of an array
        return Update(
            pull={path.field: {path.match_field: primary_id}},
            unset=[path.dotted],
        )
    return Update(pull={path.field: primary_id})


def preserve_update(path: ReferencePath, primary_id: Any, stamp: Dict[str, Any]) -> Update:
    """Update replacing every reference to ``primary_id`` with a redaction stamp."""
    return Update(replace={path.dotted: (primary_id, stamp)})


async def apply_policy(
    ops: DocumentOperations,
    rule: RelationshipRule,
    primary_id: Any,
    preserve: bool,
    operator_id: str,
) -> PolicyOutcome:
    """
    Apply a rule's policy to every record referencing ``primary_id``.

    Args:
        ops: Store or transaction operations to write through
        rule: Relationship rule to apply
        primary_id: Id of the removed primary record
        preserve: Whether a PRESERVE rule redacts instead of deleting
        operator_id: Operator recorded in redaction stamps

    Returns:
        The action taken and the number of records it touched
    """
    match = rule.path.predicate(primary_id)
    action = resolve_action(rule, preserve)
    collection = rule.referencing_collection

    if action == PolicyAction.DELETE:
        count = await ops.delete_many(collection, match)
    elif action == PolicyAction.PRESERVE:
        stamp = redaction_stamp(primary_id, operator_id)
        count = await ops.update_many(
            collection, match, preserve_update(rule.path, primary_id, stamp)
        )
    else:
        count = await ops.update_many(
            collection, match, cleanup_update(rule.path, primary_id)
        )

    return PolicyOutcome(rule=rule, action=action, count=count)
