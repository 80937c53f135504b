"""
Assignment Authorization Engine

Decides whether an actor may view, change or delete an item. The actor's
relationship to the item (owner, assignee or neither) is resolved once per
request and every decision is made from that relationship, the set of fields
being changed and their proposed values.

Rules:
- Owners may change any recognised field.
- Assignees may change status and assignee_notes, and may set assignee_id to
  null (declining the item). Anything else rejects the whole mutation.
- Everyone else is rejected.
- Unknown field names are rejected for every relationship.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

from .errors import MalformedFieldSet, Unauthorized

logger = logging.getLogger(__name__)

ASSIGNEE_ALLOWED_FIELDS: FrozenSet[str] = frozenset({"status", "assignee_notes"})

MUTABLE_FIELDS: FrozenSet[str] = frozenset({
    "status",
    "assignee_notes",
    "assignee_id",
    "title",
    "description",
    "project_id",
    "due_date",
    "scheduled_date",
    "position",
    "recurrence_rule",
    "recurrence_strategy",
    "tag_ids",
})


class Relationship(str, Enum):
    OWNER = "owner"
    ASSIGNEE = "assignee"
    NONE = "none"


@dataclass(frozen=True)
class MutationDecision:
    """Result of evaluating a mutation attempt."""

    allowed: bool
    relationship: Relationship
    denied_fields: FrozenSet[str] = field(default_factory=frozenset)
    reason: Optional[str] = None

    def raise_for_denial(self) -> None:
        if not self.allowed:
            raise Unauthorized(self.reason or "Mutation not permitted", denied_fields=self.denied_fields)


def is_owner(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    owner_id = item.get("user_id")
    return actor_id is not None and owner_id is not None and str(actor_id) == str(owner_id)


def is_assignee(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    assignee_id = item.get("assignee_id")
    return actor_id is not None and assignee_id is not None and str(actor_id) == str(assignee_id)


def resolve_relationship(actor_id: Optional[str], item: Mapping[str, Any]) -> Relationship:
    """Owner takes precedence when the actor is also the assignee."""
    if is_owner(actor_id, item):
        return Relationship.OWNER
    if is_assignee(actor_id, item):
        return Relationship.ASSIGNEE
    return Relationship.NONE


def _assignee_field_permitted(name: str, proposed_values: Mapping[str, Any]) -> bool:
    if name in ASSIGNEE_ALLOWED_FIELDS:
        return True
    # Self-unassignment only; handing the item to someone else is an owner action
    return name == "assignee_id" and name in proposed_values and proposed_values[name] is None


def evaluate_mutation(relationship: Relationship, changed_fields: Iterable[str],
                      proposed_values: Optional[Mapping[str, Any]] = None) -> MutationDecision:
    """
    Evaluate a mutation for an already-resolved relationship.

    Each changed field is checked on its own; a denial of any field denies the
    whole request.
    """
    fields = frozenset(changed_fields)
    values = proposed_values or {}

    if relationship is Relationship.NONE:
        return MutationDecision(False, relationship, fields, "You do not have access to this item.")

    unknown = fields - MUTABLE_FIELDS
    if unknown:
        return MutationDecision(False, relationship, frozenset(unknown),
                                f"Unknown fields: {', '.join(sorted(unknown))}")

    if not fields or relationship is Relationship.OWNER:
        return MutationDecision(True, relationship)

    denied = frozenset(name for name in fields if not _assignee_field_permitted(name, values))
    if denied:
        return MutationDecision(False, relationship, denied,
                                "Assignees can only update status and notes.")
    return MutationDecision(True, relationship)


def can_mutate(actor_id: Optional[str], item: Mapping[str, Any], changed_fields: Iterable[str],
               proposed_values: Optional[Mapping[str, Any]] = None) -> bool:
    """Boolean form of the mutation check."""
    relationship = resolve_relationship(actor_id, item)
    return evaluate_mutation(relationship, changed_fields, proposed_values).allowed


def authorize_mutation(actor_id: Optional[str], item: Mapping[str, Any], changed_fields: Iterable[str],
                       proposed_values: Optional[Mapping[str, Any]] = None) -> Relationship:
    """
    Raise unless the mutation is permitted; return the actor's relationship.

    Raises:
        MalformedFieldSet: changed_fields contains names outside the schema
        Unauthorized: actor may not change one or more of the fields
    """
    fields = frozenset(changed_fields)
    unknown = fields - MUTABLE_FIELDS
    if unknown:
        raise MalformedFieldSet(unknown)

    relationship = resolve_relationship(actor_id, item)
    decision = evaluate_mutation(relationship, fields, proposed_values)
    if not decision.allowed:
        logger.info(
            f"Denied {relationship.value} {actor_id} changing {sorted(decision.denied_fields)} "
            f"on item {item.get('id')}"
        )
    decision.raise_for_denial()
    return relationship


def can_view_any(actor_id: Optional[str]) -> bool:
    # Listings are filtered by query scope, not by policy
    return True


def can_create(actor_id: Optional[str]) -> bool:
    return True


def can_view(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    return resolve_relationship(actor_id, item) is not Relationship.NONE


def can_delete(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    return is_owner(actor_id, item)


def can_restore(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    return is_owner(actor_id, item)


def can_force_delete(actor_id: Optional[str], item: Mapping[str, Any]) -> bool:
    return is_owner(actor_id, item)


def can_reorder(actor_id: Optional[str], items: Iterable[Mapping[str, Any]]) -> bool:
    """Reordering is owner-only; any assigned-but-not-owned item rejects the batch."""
    return not any(
        resolve_relationship(actor_id, item) is Relationship.ASSIGNEE for item in items
    )


def allowed_fields_for(relationship: Relationship) -> FrozenSet[str]:
    """Fields the relationship may change (assignee_id only to null for assignees)."""
    if relationship is Relationship.OWNER:
        return MUTABLE_FIELDS
    if relationship is Relationship.ASSIGNEE:
        return ASSIGNEE_ALLOWED_FIELDS | {"assignee_id"}
    return frozenset()


def describe_allowed(relationship: Relationship) -> str:
    return {
        Relationship.OWNER: "all fields",
        Relationship.ASSIGNEE: "status and assignee_notes only, or assignee_id set to null",
        Relationship.NONE: "nothing",
    }[relationship]


def proposed_from(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Drop the identifier key that MCP tools and routes carry alongside field values."""
    return {k: v for k, v in payload.items() if k != "id"}
