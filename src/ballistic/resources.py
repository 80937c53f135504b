"""
Read-only MCP resources for Ballistic.

Each resource is a JSON document describing part of the authenticated user's
data: visible items, projects, tags, connections and the user's own profile.
Item detail goes through the same visibility check as the ``get_item`` tool.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from .errors import BallisticError
from .services import ItemService, ProjectService, TagService
from .tools import McpAuthContext

logger = logging.getLogger(__name__)

RESOURCE_ITEM_LIMIT = 100

# (uri, name, description) for every static resource and template
RESOURCES = [
    ("ballistic://items", "items", "Items you own or are assigned, most relevant first"),
    ("ballistic://items/{item_id}", "item", "One item with its project, owner, assignee and your permissions"),
    ("ballistic://projects", "projects", "Your active and archived projects with item counts"),
    ("ballistic://projects/{project_id}", "project", "One project with its item counts and items"),
    ("ballistic://tags", "tags", "Your tags with item counts"),
    ("ballistic://connections", "connections", "Users you are connected with"),
    ("ballistic://users/me", "profile", "Your profile and activity counts"),
]


def to_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, default=str)


class BallisticResources:
    """Builds resource payloads for the user an MCP session acts as."""

    def __init__(self, context: McpAuthContext):
        self.context = context
        self.db = context.database
        # Lookups cached for one read
        self._users: Dict[str, Optional[Dict[str, Any]]] = {}
        self._projects: Dict[str, Optional[Dict[str, Any]]] = {}

    @property
    def user_id(self) -> str:
        return self.context.user_id

    def _user(self, user_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not user_id:
            return None
        if user_id not in self._users:
            self._users[user_id] = self.db.get_user(user_id)
        return self._users[user_id]

    def _project(self, project_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not project_id:
            return None
        if project_id not in self._projects:
            self._projects[project_id] = self.db.get_project(project_id)
        return self._projects[project_id]

    def _item_summary(self, item: Dict[str, Any]) -> Dict[str, Any]:
        project = self._project(item.get("project_id"))
        owner = self._user(item["user_id"])
        assignee = self._user(item.get("assignee_id"))
        return {
            "id": item["id"],
            "title": item["title"],
            "description": item.get("description"),
            "status": item["status"],
            "position": item["position"],
            "project_id": item.get("project_id"),
            "project_name": project["name"] if project else None,
            "owner_id": item["user_id"],
            "owner_name": owner["name"] if owner else None,
            "assignee_id": item.get("assignee_id"),
            "assignee_name": assignee["name"] if assignee else None,
            "is_owned": item["user_id"] == self.user_id,
            "is_assigned_to_me": item.get("assignee_id") == self.user_id,
            "scheduled_date": item.get("scheduled_date"),
            "due_date": item.get("due_date"),
            "completed_at": item.get("completed_at"),
            "recurrence_rule": item.get("recurrence_rule"),
            "tags": [tag["name"] for tag in item.get("tags", [])],
            "created_at": item["created_at"],
            "updated_at": item["updated_at"],
        }

    @staticmethod
    def _with_counts(rows: List[Dict[str, Any]], counts: Dict[str, Dict[str, int]]) -> List[Dict[str, Any]]:
        result = []
        for row in rows:
            count = counts.get(row["id"], {})
            result.append({**row, "items_count": count.get("total", 0),
                           "active_items_count": count.get("active", 0)})
        return result

    def items(self) -> Dict[str, Any]:
        found = ItemService(self.db, self.context.notifications()).list_items(
            self.user_id, mode="visible", scope="all", include_completed=True, limit=RESOURCE_ITEM_LIMIT)
        summaries = [self._item_summary(item) for item in found]
        return {"count": len(summaries), "items": summaries}

    def item(self, item_id: str) -> Dict[str, Any]:
        try:
            item = ItemService(self.db, self.context.notifications()).get_item(self.user_id, item_id)
        except BallisticError as e:
            logger.info(f"Item resource {item_id} refused for {self.user_id}: {e.message}")
            return {"error": f"Item not found or access denied: {item_id}"}

        detail = self._item_summary(item)
        detail.update({
            "assignee_notes": item.get("assignee_notes"),
            "is_recurring_template": item["is_recurring_template"],
            "recurrence_parent_id": item.get("recurrence_parent_id"),
            "project": self._project(item.get("project_id")),
            "owner": _public_user(self._user(item["user_id"])),
            "assignee": _public_user(self._user(item.get("assignee_id"))),
            "permissions": {
                "is_owner": detail["is_owned"],
                "is_assignee": detail["is_assigned_to_me"],
            },
        })
        return detail

    def projects(self) -> Dict[str, Any]:
        projects = ProjectService(self.db).list_projects(self.user_id, include_archived=True)
        counted = self._with_counts(projects, self.db.get_item_counts(self.user_id, by="project"))
        active = [p for p in counted if not p.get("archived_at")]
        archived = [p for p in counted if p.get("archived_at")]
        return {
            "active": {"count": len(active), "projects": active},
            "archived": {"count": len(archived), "projects": archived},
        }

    def project(self, project_id: str) -> Dict[str, Any]:
        try:
            project = ProjectService(self.db).get_project(self.user_id, project_id)
        except BallisticError as e:
            logger.info(f"Project resource {project_id} refused for {self.user_id}: {e.message}")
            return {"error": f"Project not found or access denied: {project_id}"}

        items = self.db.list_project_items(project_id)
        counts = {"total": len(items), "todo": 0, "doing": 0, "done": 0, "wontdo": 0}
        for item in items:
            counts[item["status"]] += 1
        return {**project, "item_counts": counts, "items": [self._item_summary(item) for item in items]}

    def tags(self) -> Dict[str, Any]:
        tags = TagService(self.db).list_tags(self.user_id)
        counted = self._with_counts(tags, self.db.get_item_counts(self.user_id, by="tag"))
        return {"count": len(counted), "tags": counted}

    def connections(self) -> Dict[str, Any]:
        users = self.db.list_connected_users(self.user_id)
        return {"count": len(users), "connections": users}

    def profile(self) -> Dict[str, Any]:
        user = self.db.get_user(self.user_id) or self.context.user
        return {**_public_user(user), "is_admin": user.get("is_admin", False),
                "created_at": user.get("created_at"), "counts": self.db.get_user_counts(self.user_id)}


def _public_user(user: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if user is None:
        return None
    return {"id": user["id"], "name": user["name"], "email": user["email"]}
