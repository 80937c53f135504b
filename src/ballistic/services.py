"""
Ballistic service layer.

Orchestrates a request from validated payload to stored result: re-reads
persisted state inside a write transaction, resolves the actor's relationship,
authorizes the field set, writes, runs recurrence expansion on completion and
builds the notifications the change implies. The REST API, the MCP tools and
the CLI all go through these classes.
"""

import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .abilities import TokenAbility, is_listed_as_mcp_token, is_wildcard_token, has_explicit_ability
from .database import BallisticDatabase
from .errors import BallisticError, InvalidRecurrenceRule, NotFound, Unauthorized, ValidationFailed
from .models import (
    CLOSED_STATUSES,
    OPEN_STATUSES,
    ConnectionStatus,
    GenerateRecurrencesRequest,
    ItemCreate,
    ItemUpdate,
    ListScope,
    ProjectCreate,
    ProjectUpdate,
    ReorderRequest,
    StatsQuery,
    TagCreate,
    TagUpdate,
    TokenCreate,
    UserCreate,
    UserUpdate,
    validate_payload,
)
from .notifications import NotificationService
from .policy import (
    Relationship,
    authorize_mutation,
    can_delete,
    can_force_delete,
    can_reorder,
    can_restore,
    can_view,
    resolve_relationship,
)
from .recurrence import (
    ExpansionPlan,
    RecurrenceExpander,
    RecurrenceStrategy,
    occurrences,
    resolve_incomplete_instance,
)

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
# How far ahead to look for a template's first occurrence
FIRST_OCCURRENCE_HORIZON_DAYS = 400

Payload = Union[Dict[str, Any], Any]


@dataclass
class MutationOutcome:
    """Result of an item write: the item plus everything the write caused."""

    item: Optional[Dict[str, Any]]
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    spawned: List[Dict[str, Any]] = field(default_factory=list)
    resolved: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SweepReport:
    templates: int = 0
    spawned: int = 0
    expired: int = 0
    carried_over: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "templates": self.templates,
            "spawned": self.spawned,
            "expired": self.expired,
            "carried_over": self.carried_over,
            "errors": self.errors,
        }


def _parse(model, payload: Payload):
    if isinstance(payload, model):
        return payload
    return validate_payload(model, payload).raise_for_errors()


def _first_date(rule: str, start: date) -> Optional[date]:
    found = occurrences(rule, start, start + timedelta(days=FIRST_OCCURRENCE_HORIZON_DAYS), max_occurrences=1)
    return found[0] if found else None


def _user_name(user: Optional[Dict[str, Any]]) -> str:
    return user["name"] if user else "Someone"


def _same_id(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and str(a) == str(b)


class ConnectionService:
    """User-to-user connections; an accepted connection is required for assignment."""

    def __init__(self, database: BallisticDatabase, notifications: NotificationService):
        self.db = database
        self.notifications = notifications

    def ensure_connection(self, owner_id: str, assignee_id: str) -> Dict[str, Any]:
        """
        Make sure an accepted connection exists between two users.

        A pending connection is accepted, a declined one is replaced with an
        accepted one, and a missing one is created accepted.
        """
        existing = self.db.get_connection_between(owner_id, assignee_id)
        if existing is not None and existing["status"] == ConnectionStatus.ACCEPTED.value:
            return existing

        if existing is not None and existing["status"] == ConnectionStatus.PENDING.value:
            self.db.update_connection_status(existing["id"], ConnectionStatus.ACCEPTED.value)
            logger.info(f"Auto-accepted pending connection {existing['id']}")
            return self.db.get_connection(existing["id"])

        if existing is not None:
            self.db.delete_connection(existing["id"])
        logger.info(f"Auto-created connection between {owner_id} and {assignee_id}")
        return self.db.create_connection(owner_id, assignee_id, ConnectionStatus.ACCEPTED.value)

    def request(self, requester_id: str, addressee_id: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        if _same_id(requester_id, addressee_id):
            raise ValidationFailed.single("addressee_id", "You cannot connect with yourself.")
        addressee = self.db.get_user(addressee_id)
        if addressee is None:
            raise NotFound("user", addressee_id)

        existing = self.db.get_connection_between(requester_id, addressee_id)
        if existing is not None and existing["status"] != ConnectionStatus.DECLINED.value:
            raise ValidationFailed.single("addressee_id", "A connection with this user already exists.")
        if existing is not None:
            self.db.delete_connection(existing["id"])

        connection = self.db.create_connection(requester_id, addressee_id)
        requester = self.db.get_user(requester_id)
        notification = self.notifications.notify_connection_request(
            addressee_id, _user_name(requester), connection["id"])
        return connection, [notification]

    def respond(self, actor_id: str, connection_id: str,
                accept: bool) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        connection = self.db.get_connection(connection_id)
        if connection is None:
            raise NotFound("connection", connection_id)
        if not _same_id(connection["addressee_id"], actor_id):
            raise Unauthorized("Only the addressee can respond to a connection request.")
        if connection["status"] != ConnectionStatus.PENDING.value:
            raise ValidationFailed.single("status", "This connection request has already been answered.")

        status = ConnectionStatus.ACCEPTED if accept else ConnectionStatus.DECLINED
        self.db.update_connection_status(connection_id, status.value)
        notifications = []
        if accept:
            addressee = self.db.get_user(actor_id)
            notifications.append(self.notifications.notify_connection_accepted(
                connection["requester_id"], _user_name(addressee), connection_id))
        return self.db.get_connection(connection_id), notifications


class ItemService:
    """
    Item operations.

    Every method takes the acting user's id first. Errors are raised as
    ``ballistic.errors`` exceptions; nothing is partially applied when one is
    raised from inside the write transaction.
    """

    def __init__(self, database: BallisticDatabase, notifications: NotificationService,
                 connections: Optional[ConnectionService] = None,
                 expander: Optional[RecurrenceExpander] = None,
                 today: Optional[Callable[[], date]] = None):
        self.db = database
        self.notifications = notifications
        self.connections = connections or ConnectionService(database, notifications)
        self.expander = expander or RecurrenceExpander()
        self._today = today or date.today

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_item(self, item_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        item = self.db.get_item(item_id, include_deleted=include_deleted)
        if item is None:
            raise NotFound("item", item_id)
        return item

    def _check_project(self, owner_id: str, project_id: Optional[str]) -> None:
        if project_id is None:
            return
        project = self.db.get_project(project_id)
        if project is None or not _same_id(project["user_id"], owner_id):
            raise ValidationFailed.single("project_id", "The selected project is invalid.")

    def _check_tags(self, owner_id: str, tag_ids: Optional[List[str]]) -> None:
        if not tag_ids:
            return
        if self.db.count_owned_tags(owner_id, tag_ids) != len(set(tag_ids)):
            raise ValidationFailed.single("tag_ids", "One or more selected tags are invalid.")

    def _check_assignee(self, owner_id: str, assignee_id: Optional[str], auto_connect: bool) -> None:
        if assignee_id is None or _same_id(owner_id, assignee_id):
            return
        if self.db.get_user(assignee_id) is None:
            raise ValidationFailed.single("assignee_id", "The selected assignee is invalid.")
        if auto_connect:
            self.connections.ensure_connection(owner_id, assignee_id)
        elif not self.db.are_connected(owner_id, assignee_id):
            raise Unauthorized(
                f"Cannot assign to user '{assignee_id}': no accepted connection exists."
            )

    def _spawn(self, template: Dict[str, Any], occurrence: date) -> Dict[str, Any]:
        fields = self.expander.spawn_fields(template, occurrence)
        fields["tag_ids"] = [tag["id"] for tag in template.get("tags", [])]
        return self.db.create_item(fields)

    def _apply_plan(self, template: Dict[str, Any], plan: ExpansionPlan,
                    outcome: MutationOutcome) -> None:
        for resolution in plan.resolutions:
            updated = self.db.update_item(resolution.instance_id, resolution.changes)
            if updated is not None:
                outcome.resolved.append(updated)
        if plan.spawn is not None:
            fields = dict(plan.spawn)
            fields["tag_ids"] = [tag["id"] for tag in template.get("tags", [])]
            outcome.spawned.append(self.db.create_item(fields))

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create_item(self, actor_id: str, payload: Payload, auto_connect: bool = True) -> MutationOutcome:
        """
        Create an item. A recurrence rule or preset makes it a template, and the
        template's first instance is spawned immediately.
        """
        data: ItemCreate = _parse(ItemCreate, payload)
        actor = self.db.get_user(actor_id)
        if actor is None:
            raise NotFound("user", actor_id)

        self._check_project(actor_id, data.project_id)
        self._check_tags(actor_id, data.tag_ids)

        fields: Dict[str, Any] = {
            "user_id": actor_id,
            "title": data.title,
            "description": data.description,
            "status": data.status.value,
            "project_id": data.project_id,
            "assignee_id": data.assignee_id,
            "position": data.position,
            "scheduled_date": data.scheduled_date,
            "due_date": data.due_date,
            "tag_ids": data.tag_ids,
        }
        if data.status.value == "done":
            fields["completed_at"] = datetime.now(timezone.utc).isoformat()

        if data.recurrence_rule:
            fields.update({
                "status": "todo",
                "completed_at": None,
                "recurrence_rule": data.recurrence_rule,
                "recurrence_strategy": data.recurrence_strategy.value if data.recurrence_strategy else None,
                "is_recurring_template": True,
                "scheduled_date": data.scheduled_date or self._today(),
            })

        outcome = MutationOutcome(item=None)
        with self.db.transaction():
            self._check_assignee(actor_id, data.assignee_id, auto_connect)
            item = self.db.create_item(fields)
            if item["is_recurring_template"]:
                first = _first_date(item["recurrence_rule"], date.fromisoformat(item["scheduled_date"]))
                if first is not None:
                    outcome.spawned.append(self._spawn(item, first))
        outcome.item = item
        logger.info(f"Item {item['id']} created by {actor_id}")

        if data.assignee_id and not _same_id(data.assignee_id, actor_id):
            outcome.notifications.append(self.notifications.notify_task_assigned(
                data.assignee_id, item["id"], item["title"], actor["name"]))
        return outcome

    def get_item(self, actor_id: str, item_id: str) -> Dict[str, Any]:
        item = self._require_item(item_id)
        if not can_view(actor_id, item):
            raise Unauthorized("You do not have access to this item.")
        return item

    def list_items(self, actor_id: str, assigned_to_me: bool = False, delegated: bool = False,
                   mode: Optional[str] = None, scope: Union[str, ListScope] = ListScope.ACTIVE,
                   limit: Optional[int] = None, **filters: Any) -> List[Dict[str, Any]]:
        """
        List the actor's items.

        Expired recurring instances are marked wontdo first so they drop out of
        the default listing.

        Args:
            assigned_to_me: Only items others assigned to the actor
            delegated: Only the actor's items assigned to others
            mode: Explicit listing mode (overrides the two flags)
            scope: active, planned or all; unknown values fall back to active
            limit: Capped at 100
            **filters: Passed to BallisticDatabase.list_items
        """
        today = self._today()
        expired = self.db.expire_overdue_instances(actor_id, today)
        if expired:
            logger.info(f"Expired {expired} overdue recurring instance(s) for {actor_id}")

        if mode is None:
            mode = "assigned_to_me" if assigned_to_me else "delegated" if delegated else "mine"
        try:
            scope_value = ListScope(scope).value
        except ValueError:
            scope_value = ListScope.ACTIVE.value

        status = filters.pop("status", None)
        if isinstance(status, str):
            status = [status]

        capped = min(int(limit), MAX_LIST_LIMIT) if limit else None
        return self.db.list_items(actor_id, mode=mode, scope=scope_value, today=today,
                                  status=status, limit=capped, **filters)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def _check_recurrence_change(self, item: Dict[str, Any], values: Dict[str, Any],
                                 writes: Dict[str, Any]) -> None:
        if item["is_recurring_template"]:
            if "status" in values:
                raise ValidationFailed.single(
                    "status", "A recurring template's status cannot be changed; update its instances instead.")
            if "recurrence_rule" in values and values["recurrence_rule"] is None:
                raise ValidationFailed.single(
                    "recurrence_rule", "A recurring template's rule cannot be cleared; delete the template instead.")
            return

        if values.get("recurrence_rule") is not None:
            if item["is_recurring_instance"]:
                raise ValidationFailed.single(
                    "recurrence_rule", "A recurring instance cannot have its own recurrence rule.")
            writes["is_recurring_template"] = True
            writes["status"] = "todo"
            writes["completed_at"] = None
            if not item.get("scheduled_date") and "scheduled_date" not in values:
                writes["scheduled_date"] = self._today()

    def _check_date_order(self, item: Dict[str, Any], values: Dict[str, Any]) -> None:
        scheduled = values.get("scheduled_date", item.get("scheduled_date"))
        due = values.get("due_date", item.get("due_date"))
        if scheduled and due and str(due) < str(scheduled):
            raise ValidationFailed.single("due_date", "due_date must be on or after scheduled_date")

    def update_item(self, actor_id: str, item_id: str, payload: Payload,
                    auto_connect: bool = True) -> MutationOutcome:
        """
        Apply a partial update.

        The item is re-read inside the write transaction and the relationship
        and field check are evaluated against that row.

        Raises:
            NotFound, Unauthorized, MalformedFieldSet, ValidationFailed
        """
        update: ItemUpdate = _parse(ItemUpdate, payload)
        changed = update.changed_fields()
        values = update.changes()
        actor = self.db.get_user(actor_id)

        with self.db.transaction():
            previous = self._require_item(item_id)
            relationship = authorize_mutation(actor_id, previous, changed, values)

            writes = dict(values)
            self._check_recurrence_change(previous, values, writes)
            self._check_date_order(previous, values)
            if relationship is Relationship.OWNER:
                self._check_project(previous["user_id"], values.get("project_id"))
                self._check_tags(previous["user_id"], values.get("tag_ids"))
                if "assignee_id" in values and not _same_id(values["assignee_id"], previous["assignee_id"]):
                    self._check_assignee(previous["user_id"], values["assignee_id"], auto_connect)

            new_status = writes.get("status", previous["status"])
            if new_status == "done" and previous["status"] != "done":
                writes["completed_at"] = datetime.now(timezone.utc).isoformat()
            elif "status" in writes and new_status != "done" and previous["status"] == "done":
                writes["completed_at"] = None

            item = self.db.update_item(item_id, writes)
            became_template = writes.get("is_recurring_template") and not previous["is_recurring_template"]

        outcome = MutationOutcome(item=item)
        if became_template:
            self._spawn_first_instance(item, outcome)
        if (item["is_recurring_instance"] and item["status"] == "done"
                and previous["status"] in OPEN_STATUSES):
            self._expand_after_completion(item, outcome)

        outcome.notifications = self._update_notifications(actor, relationship, previous, item, values)
        logger.info(f"Item {item_id} updated by {relationship.value} {actor_id}: {sorted(changed)}")
        return outcome

    def _spawn_first_instance(self, template: Dict[str, Any], outcome: MutationOutcome) -> None:
        try:
            first = _first_date(template["recurrence_rule"], date.fromisoformat(template["scheduled_date"]))
        except InvalidRecurrenceRule as e:
            logger.warning(f"Could not spawn first instance of {template['id']}: {e}")
            return
        if first is not None:
            outcome.spawned.append(self._spawn(template, first))

    def _expand_after_completion(self, instance: Dict[str, Any], outcome: MutationOutcome) -> None:
        """Resolve open instances left behind the next occurrence and spawn it unless one is already waiting."""
        template = self.db.get_item(instance.get("recurrence_parent_id"), include_deleted=True)
        if template is None or not template["is_recurring_template"] or template.get("deleted_at"):
            return

        anchor = instance.get("scheduled_date") or self._today()
        try:
            with self.db.transaction():
                open_instances = [
                    i for i in self.db.list_instances(template["id"], open_only=True)
                    if i["id"] != instance["id"]
                ]
                plan = self.expander.plan(template, anchor, open_instances,
                                          self.db.list_instance_dates(template["id"]))
                self._apply_plan(template, plan, outcome)
        except InvalidRecurrenceRule as e:
            # The completion itself stands; only the next instance is skipped
            logger.warning(f"Recurrence expansion failed for template {template['id']}: {e}")

    def _update_notifications(self, actor: Optional[Dict[str, Any]], relationship: Relationship,
                              previous: Dict[str, Any], item: Dict[str, Any],
                              values: Dict[str, Any]) -> List[Dict[str, Any]]:
        created: List[Dict[str, Any]] = []
        owner = self.db.get_user(item["user_id"])
        owner_name = _user_name(owner)
        actor_id = actor["id"] if actor else None
        is_owner = relationship is Relationship.OWNER

        previous_assignee = previous.get("assignee_id")
        new_assignee = item.get("assignee_id")
        previous_status = previous["status"]
        new_status = item["status"]
        newly_closed = new_status in CLOSED_STATUSES and previous_status not in CLOSED_STATUSES

        if previous_assignee and not _same_id(previous_assignee, new_assignee):
            if is_owner and not _same_id(previous_assignee, item["user_id"]):
                created.append(self.notifications.notify_task_unassigned(
                    previous_assignee, item["id"], item["title"], owner_name))
            elif not is_owner:
                created.append(self.notifications.notify_task_rejected(
                    item["user_id"], item["id"], item["title"], _user_name(actor)))

        newly_assigned = new_assignee and not _same_id(new_assignee, previous_assignee)
        if newly_assigned and not _same_id(new_assignee, actor_id):
            created.append(self.notifications.notify_task_assigned(
                new_assignee, item["id"], item["title"], owner_name))

        if is_owner and new_assignee and not _same_id(new_assignee, item["user_id"]):
            if newly_closed:
                created.append(self.notifications.notify_task_completed(
                    new_assignee, item["id"], item["title"], owner_name, new_status))
            elif not newly_assigned:
                changes: Dict[str, Any] = {}
                if "title" in values and values["title"] != previous["title"]:
                    changes["title"] = {"from": previous["title"], "to": item["title"]}
                if "description" in values and values["description"] != previous.get("description"):
                    changes["description"] = True
                if "due_date" in values and values["due_date"] != previous.get("due_date"):
                    changes["due_date"] = {"from": previous.get("due_date"), "to": item.get("due_date")}
                if changes:
                    created.append(self.notifications.notify_task_updated(
                        new_assignee, item["id"], item["title"], owner_name, changes))

        if relationship is Relationship.ASSIGNEE and newly_closed:
            created.append(self.notifications.notify_task_completed_by_assignee(
                item["user_id"], item["id"], item["title"], _user_name(actor), new_status))

        return created

    def complete_item(self, actor_id: str, item_id: str) -> MutationOutcome:
        return self.update_item(actor_id, item_id, {"status": "done"})

    # ------------------------------------------------------------------
    # Delete / restore / reorder
    # ------------------------------------------------------------------

    def delete_item(self, actor_id: str, item_id: str) -> Dict[str, Any]:
        """Soft delete. Deleting a template stops its series."""
        item = self._require_item(item_id)
        if not can_delete(actor_id, item):
            raise Unauthorized("Only the owner can delete this item.")
        self.db.soft_delete_item(item_id)
        logger.info(f"Item {item_id} deleted by {actor_id}")
        return self._require_item(item_id, include_deleted=True)

    def restore_item(self, actor_id: str, item_id: str) -> Dict[str, Any]:
        item = self._require_item(item_id, include_deleted=True)
        if not can_restore(actor_id, item):
            raise Unauthorized("Only the owner can restore this item.")
        if item.get("deleted_at") is None:
            return item
        self.db.restore_item(item_id)
        return self._require_item(item_id)

    def force_delete_item(self, actor_id: str, item_id: str) -> None:
        item = self._require_item(item_id, include_deleted=True)
        if not can_force_delete(actor_id, item):
            raise Unauthorized("Only the owner can permanently delete this item.")
        self.db.force_delete_item(item_id)
        logger.info(f"Item {item_id} permanently deleted by {actor_id}")

    def reorder_items(self, actor_id: str, payload: Payload) -> int:
        """Owner-only reorder; returns the number of items repositioned."""
        request: ReorderRequest = _parse(ReorderRequest, payload)
        entries = [(entry.id, entry.position) for entry in request.items]
        items = self.db.get_items_by_ids(item_id for item_id, _ in entries)
        if not can_reorder(actor_id, items):
            raise Unauthorized("Assignees cannot reorder items.")
        return self.db.reorder_items(actor_id, entries)

    # ------------------------------------------------------------------
    # Recurrence
    # ------------------------------------------------------------------

    def generate_recurrences(self, actor_id: str, item_id: str, payload: Payload) -> List[Dict[str, Any]]:
        """Create instances of a template for every occurrence in a date range."""
        request: GenerateRecurrencesRequest = _parse(GenerateRecurrencesRequest, payload)
        template = self._require_item(item_id)
        if resolve_relationship(actor_id, template) is Relationship.NONE:
            raise Unauthorized("You do not have access to this item.")
        if not template["is_recurring_template"]:
            raise BallisticError("This item is not a recurring template.")

        created = []
        with self.db.transaction():
            existing = set(self.db.list_instance_dates(template["id"]))
            for occurrence in occurrences(template["recurrence_rule"], request.start_date, request.end_date):
                if occurrence.isoformat() in existing:
                    continue
                created.append(self._spawn(template, occurrence))
        logger.info(f"Generated {len(created)} instance(s) of template {item_id}")
        return created

    def sweep_recurrences(self, today: Optional[date] = None) -> SweepReport:
        """
        Scheduled trigger for every live template.

        Stale open instances (scheduled before today) are resolved against the
        first occurrence on or after today; a new instance is spawned when none
        is left open. A template with no instances gets its first one.
        """
        today = today or self._today()
        report = SweepReport()

        for row in self.db.list_recurring_templates():
            report.templates += 1
            template = self.db.get_item(row["id"])
            if template is None:
                continue
            outcome = MutationOutcome(item=template)
            try:
                with self.db.transaction():
                    self._sweep_template(template, today, outcome)
            except InvalidRecurrenceRule as e:
                report.errors += 1
                logger.warning(f"Skipping template {template['id']} during sweep: {e}")
                continue

            report.spawned += len(outcome.spawned)
            for resolved in outcome.resolved:
                if resolved["status"] == "wontdo":
                    report.expired += 1
                else:
                    report.carried_over += 1

        logger.info(f"Recurrence sweep finished: {report.to_dict()}")
        return report

    def _sweep_template(self, template: Dict[str, Any], today: date, outcome: MutationOutcome) -> None:
        today_str = today.isoformat()
        instances = self.db.list_instances(template["id"])

        if not instances:
            start = max(date.fromisoformat(template["scheduled_date"]), today) if template.get("scheduled_date") else today
            first = _first_date(template["recurrence_rule"], start)
            if first is not None:
                outcome.spawned.append(self._spawn(template, first))
            return

        open_instances = [i for i in instances if i["status"] in OPEN_STATUSES]
        stale = [i for i in open_instances if i.get("scheduled_date") and i["scheduled_date"] < today_str]
        current = [i for i in open_instances if i not in stale]

        if current:
            # An instance is already open for today or later; older ones just expire
            plan = ExpansionPlan(template["id"], today)
            for instance in stale:
                plan.resolutions.append(resolve_incomplete_instance(RecurrenceStrategy.EXPIRES, instance))
            self._apply_plan(template, plan, outcome)
            return

        dated = [i["scheduled_date"] for i in instances if i.get("scheduled_date")]
        anchor = max(dated) if dated else today_str
        if anchor >= today_str:
            return
        plan = self.expander.plan(template, anchor, stale,
                                  self.db.list_instance_dates(template["id"]), not_before=today)
        self._apply_plan(template, plan, outcome)


class ProjectService:
    """Project CRUD scoped to the owner."""

    def __init__(self, database: BallisticDatabase):
        self.db = database

    def _owned(self, actor_id: str, project_id: str, include_deleted: bool = False) -> Dict[str, Any]:
        project = self.db.get_project(project_id, include_deleted=include_deleted)
        if project is None:
            raise NotFound("project", project_id)
        if not _same_id(project["user_id"], actor_id):
            raise Unauthorized("You do not have access to this project.")
        return project

    def list_projects(self, actor_id: str, include_archived: bool = False) -> List[Dict[str, Any]]:
        return self.db.list_projects(actor_id, include_archived=include_archived)

    def get_project(self, actor_id: str, project_id: str) -> Dict[str, Any]:
        return self._owned(actor_id, project_id)

    def create_project(self, actor_id: str, payload: Payload) -> Dict[str, Any]:
        data: ProjectCreate = _parse(ProjectCreate, payload)
        project = self.db.create_project(actor_id, data.name, data.color)
        logger.info(f"Project {project['id']} created by {actor_id}")
        return project

    def update_project(self, actor_id: str, project_id: str, payload: Payload) -> Dict[str, Any]:
        data: ProjectUpdate = _parse(ProjectUpdate, payload)
        self._owned(actor_id, project_id)
        changes: Dict[str, Any] = {}
        for name in data.model_fields_set:
            if name == "archived":
                if data.archived is not None:
                    changes["archived_at"] = datetime.now(timezone.utc).isoformat() if data.archived else None
            else:
                changes[name] = getattr(data, name)
        return self.db.update_project(project_id, changes)

    def delete_project(self, actor_id: str, project_id: str) -> None:
        self._owned(actor_id, project_id)
        self.db.soft_delete_project(project_id)

    def restore_project(self, actor_id: str, project_id: str) -> Dict[str, Any]:
        self._owned(actor_id, project_id, include_deleted=True)
        self.db.restore_project(project_id)
        return self.db.get_project(project_id)


class TagService:
    """Tag CRUD scoped to the owner; names are unique per user."""

    def __init__(self, database: BallisticDatabase):
        self.db = database

    def _owned(self, actor_id: str, tag_id: str) -> Dict[str, Any]:
        tag = self.db.get_tag(tag_id)
        if tag is None:
            raise NotFound("tag", tag_id)
        if not _same_id(tag["user_id"], actor_id):
            raise Unauthorized("You do not have access to this tag.")
        return tag

    def _check_unique(self, actor_id: str, name: str, tag_id: Optional[str] = None) -> None:
        existing = self.db.find_tag_by_name(actor_id, name)
        if existing is not None and existing["id"] != tag_id:
            raise ValidationFailed.single("name", "You already have a tag with this name.")

    def list_tags(self, actor_id: str) -> List[Dict[str, Any]]:
        return self.db.list_tags(actor_id)

    def create_tag(self, actor_id: str, payload: Payload) -> Dict[str, Any]:
        data: TagCreate = _parse(TagCreate, payload)
        self._check_unique(actor_id, data.name)
        try:
            return self.db.create_tag(actor_id, data.name, data.color)
        except sqlite3.IntegrityError:
            raise ValidationFailed.single("name", "You already have a tag with this name.") from None

    def update_tag(self, actor_id: str, tag_id: str, payload: Payload) -> Dict[str, Any]:
        data: TagUpdate = _parse(TagUpdate, payload)
        self._owned(actor_id, tag_id)
        changes = {name: getattr(data, name) for name in data.model_fields_set}
        if changes.get("name") is not None:
            self._check_unique(actor_id, changes["name"], tag_id)
        elif "name" in changes:
            changes.pop("name")
        return self.db.update_tag(tag_id, changes)

    def delete_tag(self, actor_id: str, tag_id: str) -> None:
        self._owned(actor_id, tag_id)
        self.db.delete_tag(tag_id)


def _streaks(days: List[str], end: date) -> Dict[str, int]:
    """
    Current and longest runs of consecutive completion days.

    The current streak may end yesterday, so a streak survives until the end of
    a day without completions.
    """
    active = set(days)
    current = 0
    cursor = end if end.isoformat() in active else end - timedelta(days=1)
    while cursor.isoformat() in active:
        current += 1
        cursor -= timedelta(days=1)

    longest = run = 0
    previous: Optional[date] = None
    for day in sorted(date.fromisoformat(d) for d in active):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        longest = max(longest, run)
        previous = day
    return {"current": current, "longest": longest}


class StatsService:
    """Per-user activity statistics: daily heatmap, totals, project split and streaks."""

    INBOX_COLOR = "#6b7280"

    def __init__(self, database: BallisticDatabase, today: Optional[Callable[[], date]] = None):
        self.db = database
        self._today = today or date.today

    def user_stats(self, user_id: str, payload: Payload = None) -> Dict[str, Any]:
        query: StatsQuery = _parse(StatsQuery, payload or {})
        end = query.to_date or self._today()
        start = query.from_date or end - timedelta(days=query.period.days - 1)
        if start > end:
            raise ValidationFailed.single("from", "from must be on or before to")

        activity = self.db.get_daily_activity(user_id, start.isoformat(), end.isoformat())
        heatmap = []
        day = start
        while day <= end:
            key = day.isoformat()
            heatmap.append({
                "date": key,
                "completed": activity["completed"].get(key, 0),
                "created": activity["created"].get(key, 0),
            })
            day += timedelta(days=1)

        distribution = [
            {
                "project_id": row["project_id"],
                "project_name": row["project_name"] or "Inbox",
                "project_color": row["project_color"] or self.INBOX_COLOR,
                "count": row["count"],
            }
            for row in self.db.get_completions_by_project(user_id, start.isoformat(), end.isoformat())
        ]

        return {
            "period": {"from": start.isoformat(), "to": end.isoformat()},
            "totals": {
                "completed": sum(activity["completed"].values()),
                "created": sum(activity["created"].values()),
            },
            "heatmap": heatmap,
            "project_distribution": distribution,
            "streaks": _streaks(self.db.list_completion_days(user_id, end.isoformat()), end),
        }


class AdminUserService:
    """
    User management for administrators.

    Every change is written to the audit log under the acting admin. Admins
    cannot delete or reset their own account.
    """

    def __init__(self, database: BallisticDatabase):
        self.db = database

    def _require_user(self, user_id: str) -> Dict[str, Any]:
        user = self.db.get_user(user_id)
        if user is None:
            raise NotFound("user", user_id)
        return user

    def _check_email_free(self, email: str, user_id: Optional[str] = None) -> None:
        existing = self.db.get_user_by_email(email)
        if existing is not None and existing["id"] != user_id:
            raise ValidationFailed.single("email", "The email has already been taken.")

    def list_users(self, search: Optional[str] = None, is_admin: Optional[bool] = None,
                   per_page: int = 25, page: int = 1) -> Dict[str, Any]:
        per_page = max(1, min(per_page, MAX_LIST_LIMIT))
        page = max(1, page)
        users, total = self.db.search_users(search, is_admin, limit=per_page, offset=(page - 1) * per_page)
        return {"users": users, "total": total, "page": page, "per_page": per_page}

    def get_user(self, user_id: str) -> Dict[str, Any]:
        user = self._require_user(user_id)
        return {"user": user, "statistics": self.db.get_user_counts(user_id)}

    def create_user(self, admin: Dict[str, Any], payload: Payload) -> Dict[str, Any]:
        data: UserCreate = _parse(UserCreate, payload)
        self._check_email_free(data.email)
        user = self.db.create_user(data.name, data.email, is_admin=data.is_admin)
        self.db.add_audit_log(admin["id"], "user.created", "user", user["id"], "success",
                              {"email": user["email"], "is_admin": user["is_admin"]})
        logger.info(f"User {user['id']} created by admin {admin['id']}")
        return user

    def update_user(self, admin: Dict[str, Any], user_id: str, payload: Payload) -> Dict[str, Any]:
        data: UserUpdate = _parse(UserUpdate, payload)
        user = self._require_user(user_id)
        changes = {name: getattr(data, name) for name in data.model_fields_set}
        changes = {name: value for name, value in changes.items() if value != user.get(name)}
        if not changes:
            return user
        if "email" in changes:
            self._check_email_free(changes["email"], user_id)

        with self.db.transaction():
            updated = self.db.update_user(user_id, changes)
            if "is_admin" in changes:
                self.db.add_audit_log(admin["id"], "user.role_changed", "user", user_id, "success",
                                      {"old_values": {"is_admin": user["is_admin"]},
                                       "new_values": {"is_admin": changes["is_admin"]}})
            profile = {name: value for name, value in changes.items() if name != "is_admin"}
            if profile:
                self.db.add_audit_log(admin["id"], "user.profile_updated", "user", user_id, "success",
                                      {"old_values": {name: user.get(name) for name in profile},
                                       "new_values": profile})
        logger.info(f"User {user_id} updated by admin {admin['id']}: {sorted(changes)}")
        return updated

    def delete_user(self, admin: Dict[str, Any], user_id: str) -> None:
        if _same_id(admin["id"], user_id):
            raise Unauthorized("You cannot delete your own account.")
        user = self._require_user(user_id)
        with self.db.transaction():
            self.db.add_audit_log(admin["id"], "user.deleted", "user", user_id, "success", {
                "actor_email": admin["email"],
                "deleted_user_email": user["email"],
                "deleted_user_name": user["name"],
            })
            self.db.delete_user(user_id)
        logger.info(f"User {user_id} deleted by admin {admin['id']}")

    def hard_reset(self, admin: Dict[str, Any], user_id: str) -> Dict[str, int]:
        """Wipe the user's data and tokens; the account itself stays."""
        if _same_id(admin["id"], user_id):
            raise Unauthorized("You cannot hard reset your own account.")
        user = self._require_user(user_id)
        with self.db.transaction():
            removed = self.db.reset_user_data(user_id)
            self.db.add_audit_log(admin["id"], "user.hard_reset", "user", user_id, "success", {
                "reset_user_email": user["email"],
                "removed": removed,
            })
        logger.info(f"User {user_id} hard reset by admin {admin['id']}: {removed}")
        return removed


def hash_token(plaintext: str) -> str:
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class TokenService:
    """
    Access token issuance and lookup.

    Plaintext tokens are returned once at creation; only their SHA-256 hash
    is stored.
    """

    TOKEN_PREFIX = "blt_"

    def __init__(self, database: BallisticDatabase, legacy_wildcard_cutoff_at: Optional[str] = None,
                 now: Optional[Callable[[], datetime]] = None):
        self.db = database
        self.legacy_wildcard_cutoff_at = legacy_wildcard_cutoff_at
        self._now = now or (lambda: datetime.now(timezone.utc))

    def create_token(self, user_id: str, payload: Payload) -> Tuple[Dict[str, Any], str]:
        data: TokenCreate = _parse(TokenCreate, payload)
        plaintext = self.TOKEN_PREFIX + secrets.token_urlsafe(32)
        token = self.db.create_token(user_id, data.name, hash_token(plaintext),
                                     [ability.value for ability in data.abilities])
        logger.info(f"Token {token['id']} created for {user_id} with {token['abilities']}")
        return token, plaintext

    def issue_legacy_wildcard_token(self, user_id: str, name: str) -> Tuple[Dict[str, Any], str]:
        """Issue a ``*`` token; only for migrations and tests of the legacy path."""
        plaintext = self.TOKEN_PREFIX + secrets.token_urlsafe(32)
        token = self.db.create_token(user_id, name, hash_token(plaintext), [TokenAbility.WILDCARD.value])
        return token, plaintext

    def authenticate(self, plaintext: Optional[str]) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        """Resolve a plaintext token to (token, user), or None."""
        if not plaintext:
            return None
        token = self.db.find_token_by_hash(hash_token(plaintext))
        if token is None:
            return None
        user = self.db.get_user(token["user_id"])
        if user is None:
            return None
        self.db.touch_token(token["id"])
        return token, user

    def to_payload(self, token: Dict[str, Any]) -> Dict[str, Any]:
        abilities = token.get("abilities", [])
        return {
            "id": token["id"],
            "name": token["name"],
            "abilities": abilities,
            "created_at": token["created_at"],
            "last_used_at": token.get("last_used_at"),
            "is_legacy_wildcard": is_wildcard_token(abilities) and not has_explicit_ability(abilities, TokenAbility.MCP),
        }

    def list_tokens(self, user_id: str) -> List[Dict[str, Any]]:
        return [self.to_payload(t) for t in self.db.list_tokens(user_id)]

    def list_mcp_tokens(self, user_id: str) -> List[Dict[str, Any]]:
        """MCP tokens, plus wildcard tokens while the legacy window is open."""
        now = self._now()
        return [
            self.to_payload(t) for t in self.db.list_tokens(user_id)
            if is_listed_as_mcp_token(t["abilities"], now, self.legacy_wildcard_cutoff_at)
        ]

    def revoke_token(self, user_id: str, token_id: str, mcp_only: bool = False) -> None:
        tokens = {t["id"]: t for t in self.db.list_tokens(user_id)}
        token = tokens.get(token_id)
        if token is None or (mcp_only and not is_listed_as_mcp_token(
                token["abilities"], self._now(), self.legacy_wildcard_cutoff_at)):
            raise NotFound("token", token_id)
        self.db.delete_token(user_id, token_id)
        logger.info(f"Token {token_id} revoked for {user_id}")

    def migrate_wildcard_tokens(self, scope: Union[str, TokenAbility] = TokenAbility.API,
                                execute: bool = False) -> List[Dict[str, Any]]:
        """
        Reassign legacy ``*`` tokens to an explicit scope.

        Dry run unless ``execute`` is true. Returns the affected tokens as they
        were before migration.

        Raises:
            ValueError: scope is not api:* or mcp:*
        """
        target = TokenAbility(scope)
        if target not in (TokenAbility.API, TokenAbility.MCP):
            raise ValueError(f'Invalid scope "{target.value}". Must be "api:*" or "mcp:*".')

        affected = [t for t in self.db.list_tokens() if is_wildcard_token(t["abilities"])]
        if execute:
            for token in affected:
                self.db.set_token_abilities(token["id"], [target.value])
            logger.info(f"Migrated {len(affected)} wildcard token(s) to {target.value}")
        return affected
