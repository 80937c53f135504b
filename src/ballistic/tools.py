"""
MCP Tools Implementation for Ballistic

Model Context Protocol tools that let AI agents work with a user's items,
projects and tags. Every tool runs as the user the MCP token belongs to and
goes through the same service layer as the REST API, so the assignment policy,
recurrence expansion and notifications behave identically.

Key Features:
- McpAuthContext carrying the authenticated user, rate limiting and audit logging
- BaseTool with standard JSON success/error responses
- Mutations are written to the audit log as ``mcp.<tool_name>``
- Item events are pushed to the owner's and assignee's WebSocket sessions
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .database import BallisticDatabase
from .errors import BallisticError, Unauthorized
from .notifications import NotificationService
from .policy import allowed_fields_for, describe_allowed, proposed_from, resolve_relationship
from .ratelimit import RateLimiter
from .services import ItemService, MAX_LIST_LIMIT, MutationOutcome, ProjectService, TagService

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 25


@dataclass
class McpAuthContext:
    """The user an MCP session acts as, and the collaborators its tools share."""

    user: Dict[str, Any]
    database: BallisticDatabase
    token: Optional[Dict[str, Any]] = None
    legacy_token: bool = False
    connection_manager: Optional[Any] = None
    rate_limiter: Optional[RateLimiter] = None

    @property
    def user_id(self) -> str:
        return self.user["id"]

    def notifications(self) -> NotificationService:
        return NotificationService(self.database, self.connection_manager)

    def items(self) -> ItemService:
        return ItemService(self.database, self.notifications())

    def check_rate_limit(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.hit("mcp", self.user_id)

    def audit(self, tool_name: str, status: str, resource_type: Optional[str] = None,
              resource_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> None:
        details = dict(metadata or {})
        if self.token is not None:
            details["token_id"] = self.token["id"]
        if self.legacy_token:
            details["legacy_token"] = True
        try:
            self.database.add_audit_log(self.user_id, f"mcp.{tool_name}", resource_type,
                                        resource_id, status, details)
        except Exception as e:
            logger.warning(f"Failed to write audit log for mcp.{tool_name}: {e}")


class BaseTool(ABC):
    """
    Abstract base class for MCP tools.

    Subclasses implement ``execute`` and return a message plus response fields.
    ``apply`` wraps it with rate limiting, error translation and, for tools
    that change data, audit logging.
    """

    name: str = ""
    mutates: bool = False
    resource_type: Optional[str] = None

    def __init__(self, context: McpAuthContext):
        self.context = context
        self.db = context.database

    @abstractmethod
    async def execute(self, **kwargs) -> Tuple[str, Dict[str, Any]]:
        """Run the tool; return (message, response fields)."""

    async def apply(self, **kwargs) -> str:
        resource_id = kwargs.get("id")
        try:
            self.context.check_rate_limit()
            message, data = await self.execute(**kwargs)
        except BallisticError as e:
            if self.mutates:
                self.context.audit(self.name, "error", self.resource_type, resource_id,
                                   {"error": type(e).__name__, "message": e.message})
            return self._format_error_response(e.message, **self._error_details(e, resource_id))
        except Exception as e:
            logger.error(f"Tool {self.name} failed: {e}")
            if self.mutates:
                self.context.audit(self.name, "error", self.resource_type, resource_id, {"error": str(e)})
            return self._format_error_response(f"Failed to run {self.name}", error_details=str(e))

        if self.mutates:
            target = data.get(self.resource_type) if self.resource_type else None
            self.context.audit(self.name, "success", self.resource_type,
                               (target or {}).get("id", resource_id), {"arguments": sorted(kwargs)})
        return self._format_success_response(message, **data)

    def _error_details(self, error: BallisticError, resource_id: Optional[str]) -> Dict[str, Any]:
        details = error.to_dict()
        details.pop("message", None)
        return details

    def _format_success_response(self, message: str, **kwargs) -> str:
        response = {"success": True, "message": message, **kwargs}
        return json.dumps(response, default=str)

    def _format_error_response(self, message: str, **kwargs) -> str:
        response = {"success": False, "message": message, **kwargs}
        return json.dumps(response, default=str)

    async def _broadcast_item(self, event_type: str, outcome: MutationOutcome) -> None:
        """Push the item to its owner and assignee; failures never fail the tool."""
        manager = self.context.connection_manager
        if manager is None or outcome.item is None:
            return
        try:
            event = {
                "type": event_type,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": outcome.item,
            }
            await manager.send_to_users([outcome.item["user_id"], outcome.item.get("assignee_id")], event)
            for resolved in outcome.resolved:
                await manager.send_to_users(
                    [resolved["user_id"], resolved.get("assignee_id")],
                    {"type": "item.updated", "timestamp": event["timestamp"], "data": resolved},
                )
            await self.context.notifications().publish(outcome.notifications)
        except Exception as e:
            logger.warning(f"Failed to broadcast event {event_type}: {e}")

    def _parse_boolean(self, value: Any, default: bool = False) -> bool:
        """Accept booleans or their common string spellings."""
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)


def _item_changes(outcome: MutationOutcome) -> Dict[str, Any]:
    data: Dict[str, Any] = {"item": outcome.item}
    if outcome.spawned:
        data["spawned"] = outcome.spawned
    if outcome.resolved:
        data["resolved"] = outcome.resolved
    return data


class SearchItemsTool(BaseTool):
    """Items the user owns or is assigned, ordered by position."""

    name = "search_items"

    async def execute(self, query: Optional[str] = None, status: Optional[str] = None,
                      project_id: Optional[str] = None, tag_id: Optional[str] = None,
                      scope: str = "all", include_completed: Any = False,
                      limit: Optional[int] = None) -> Tuple[str, Dict[str, Any]]:
        limit = DEFAULT_SEARCH_LIMIT if limit is None else max(1, min(int(limit), MAX_LIST_LIMIT))
        items = self.context.items().list_items(
            self.context.user_id,
            mode="visible",
            scope=scope,
            limit=limit,
            search=query,
            status=status,
            project_id=project_id,
            tag_id=tag_id,
            include_completed=self._parse_boolean(include_completed),
        )
        return f"Found {len(items)} item(s)", {"items": items, "count": len(items)}


class GetItemTool(BaseTool):
    name = "get_item"

    async def execute(self, id: str) -> Tuple[str, Dict[str, Any]]:
        item = self.context.items().get_item(self.context.user_id, id)
        return "Item retrieved", {"item": item}


class CreateItemTool(BaseTool):
    """
    Create an item owned by the token's user.

    Unlike the web app, assigning from MCP never creates connections; the
    assignee must already be an accepted connection.
    """

    name = "create_item"
    mutates = True
    resource_type = "item"

    async def execute(self, **fields) -> Tuple[str, Dict[str, Any]]:
        payload = {k: v for k, v in fields.items() if v is not None}
        outcome = self.context.items().create_item(self.context.user_id, payload, auto_connect=False)
        await self._broadcast_item("item.created", outcome)
        return f"Item '{outcome.item['title']}' created", _item_changes(outcome)


class ItemWriteTool(BaseTool):
    """Item mutations; a policy denial reports what the caller may change instead."""

    mutates = True
    resource_type = "item"

    def _error_details(self, error: BallisticError, resource_id: Optional[str]) -> Dict[str, Any]:
        details = super()._error_details(error, resource_id)
        if isinstance(error, Unauthorized) and resource_id:
            item = self.db.get_item(resource_id)
            if item is not None:
                relationship = resolve_relationship(self.context.user_id, item)
                details["relationship"] = relationship.value
                details["allowed_fields"] = sorted(allowed_fields_for(relationship))
                details["allowed"] = describe_allowed(relationship)
        return details


class UpdateItemTool(ItemWriteTool):
    """
    Partial update of an item.

    Assignees may only change status and assignee_notes.
    """

    name = "update_item"

    async def execute(self, id: str, **fields) -> Tuple[str, Dict[str, Any]]:
        payload = proposed_from(fields)
        if not payload:
            raise BallisticError("No fields to update were provided.")
        outcome = self.context.items().update_item(self.context.user_id, id, payload, auto_connect=False)
        await self._broadcast_item("item.updated", outcome)
        return "Item updated", _item_changes(outcome)


class CompleteItemTool(ItemWriteTool):
    name = "complete_item"

    async def execute(self, id: str) -> Tuple[str, Dict[str, Any]]:
        outcome = self.context.items().complete_item(self.context.user_id, id)
        await self._broadcast_item("item.updated", outcome)
        message = "Item completed"
        if outcome.spawned:
            message += f"; next occurrence scheduled for {outcome.spawned[0]['scheduled_date']}"
        return message, _item_changes(outcome)


class DeleteItemTool(BaseTool):
    name = "delete_item"
    mutates = True
    resource_type = "item"

    async def execute(self, id: str) -> Tuple[str, Dict[str, Any]]:
        item = self.context.items().delete_item(self.context.user_id, id)
        await self._broadcast_item("item.deleted", MutationOutcome(item=item))
        return "Item deleted", {"item": item}


class AssignItemTool(ItemWriteTool):
    """Assign an item to a connected user, or pass no assignee to unassign."""

    name = "assign_item"

    async def execute(self, id: str, assignee_id: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        outcome = self.context.items().update_item(
            self.context.user_id, id, {"assignee_id": assignee_id or None}, auto_connect=False)
        await self._broadcast_item("item.updated", outcome)
        message = f"Item assigned to {assignee_id}" if assignee_id else "Item unassigned"
        return message, _item_changes(outcome)


class ListProjectsTool(BaseTool):
    name = "list_projects"

    async def execute(self, include_archived: Any = False) -> Tuple[str, Dict[str, Any]]:
        projects = ProjectService(self.db).list_projects(
            self.context.user_id, self._parse_boolean(include_archived))
        return f"Found {len(projects)} project(s)", {"projects": projects, "count": len(projects)}


class CreateProjectTool(BaseTool):
    name = "create_project"
    mutates = True
    resource_type = "project"

    async def execute(self, name: str, color: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {"name": name}
        if color is not None:
            payload["color"] = color
        project = ProjectService(self.db).create_project(self.context.user_id, payload)
        return f"Project '{project['name']}' created", {"project": project}


class UpdateProjectTool(BaseTool):
    name = "update_project"
    mutates = True
    resource_type = "project"

    async def execute(self, id: str, name: Optional[str] = None, color: Optional[str] = None,
                      archived: Any = None) -> Tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {}
        if name is not None:
            payload["name"] = name
        if color is not None:
            payload["color"] = color
        if archived is not None:
            payload["archived"] = self._parse_boolean(archived)
        if not payload:
            raise BallisticError("No fields to update were provided.")
        project = ProjectService(self.db).update_project(self.context.user_id, id, payload)
        return "Project updated", {"project": project}


class ListTagsTool(BaseTool):
    name = "list_tags"

    async def execute(self) -> Tuple[str, Dict[str, Any]]:
        tags = TagService(self.db).list_tags(self.context.user_id)
        return f"Found {len(tags)} tag(s)", {"tags": tags, "count": len(tags)}


class CreateTagTool(BaseTool):
    name = "create_tag"
    mutates = True
    resource_type = "tag"

    async def execute(self, name: str, color: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        payload: Dict[str, Any] = {"name": name}
        if color is not None:
            payload["color"] = color
        tag = TagService(self.db).create_tag(self.context.user_id, payload)
        return f"Tag '{tag['name']}' created", {"tag": tag}


class LookupUsersTool(BaseTool):
    """Connected users, for picking an assignee; ``search`` matches name or email."""

    name = "lookup_users"

    async def execute(self, search: Optional[str] = None) -> Tuple[str, Dict[str, Any]]:
        users = self.db.list_connected_users(self.context.user_id)
        if search:
            needle = search.strip().lower()
            users = [u for u in users if needle in u["name"].lower() or needle in u["email"].lower()]
        return f"Found {len(users)} user(s)", {"users": users, "count": len(users)}


# Tool registry for MCP server integration
AVAILABLE_TOOLS = {
    "search_items": SearchItemsTool,
    "get_item": GetItemTool,
    "create_item": CreateItemTool,
    "update_item": UpdateItemTool,
    "complete_item": CompleteItemTool,
    "delete_item": DeleteItemTool,
    "assign_item": AssignItemTool,
    "list_projects": ListProjectsTool,
    "create_project": CreateProjectTool,
    "update_project": UpdateProjectTool,
    "list_tags": ListTagsTool,
    "create_tag": CreateTagTool,
    "lookup_users": LookupUsersTool,
}


def create_tool_instance(tool_name: str, context: McpAuthContext) -> BaseTool:
    """
    Factory function to create tool instances bound to an MCP session.

    Raises:
        KeyError: If tool_name is not found in AVAILABLE_TOOLS
    """
    if tool_name not in AVAILABLE_TOOLS:
        raise KeyError(f"Unknown tool '{tool_name}'. Available tools: {list(AVAILABLE_TOOLS.keys())}")
    return AVAILABLE_TOOLS[tool_name](context)


def tool_names() -> List[str]:
    return list(AVAILABLE_TOOLS)
