"""
FastMCP Server Implementation for Ballistic

Resolves the MCP access token once at startup, builds the tool context for
the token's user and registers the item, project, tag and user lookup tools
with FastMCP, plus read-only JSON resources under ``ballistic://``.
Supports stdio, SSE and streamable HTTP transports.

Token handling:
- ``mcp:*`` tokens are accepted.
- Legacy ``*`` tokens are accepted until MCP_LEGACY_WILDCARD_CUTOFF_AT; such
  sessions log a deprecation warning, flag their audit entries, and on the
  network transports every response carries ``X-Ballistic-MCP-Legacy-Token``.
- Everything else is refused before the server starts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import anyio
from fastmcp import FastMCP
from starlette.middleware import Middleware

from .abilities import LEGACY_TOKEN_HEADER, McpAccess, check_mcp_access
from .config import Settings
from .database import BallisticDatabase
from .errors import Unauthorized
from .ratelimit import RateLimiter
from .resources import RESOURCES, BallisticResources, to_json
from .services import TokenService
from .tools import McpAuthContext, create_tool_instance, tool_names

logger = logging.getLogger(__name__)


class ResponseHeaderMiddleware:
    """ASGI middleware adding fixed headers to every HTTP response."""

    def __init__(self, app, headers: Dict[str, str]):
        self.app = app
        self.headers = [(name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in headers.items()]

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_header(message):
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + self.headers
            await send(message)

        await self.app(scope, receive, send_with_header)


def resolve_mcp_context(database: BallisticDatabase, plaintext_token: Optional[str], settings: Settings,
                        connection_manager: Optional[Any] = None, now: Optional[datetime] = None) -> McpAuthContext:
    """
    Authenticate an MCP token and build the tool context for its user.

    Raises:
        Unauthorized: token missing, unknown, or without MCP access
    """
    tokens = TokenService(database, settings.legacy_wildcard_cutoff_at)
    result = tokens.authenticate(plaintext_token)
    if result is None:
        raise Unauthorized("A valid MCP token is required.")
    token, user = result

    access = check_mcp_access(token["abilities"], now or datetime.now(timezone.utc),
                              settings.legacy_wildcard_cutoff_at)
    if access is McpAccess.DENIED:
        raise Unauthorized("This token does not have MCP access. Create a token with the mcp:* ability.")
    if access is McpAccess.LEGACY:
        logger.warning(
            f"Token {token['id']} uses the legacy wildcard ability for MCP; this stops working at "
            f"{settings.legacy_wildcard_cutoff_at}. Migrate it with 'ballistic migrate-token-scopes --scope mcp:*'."
        )

    return McpAuthContext(
        user=user,
        database=database,
        token=token,
        legacy_token=access is McpAccess.LEGACY,
        connection_manager=connection_manager,
        rate_limiter=RateLimiter(settings.rate_limits),
    )


class BallisticMCPServer:
    """
    FastMCP server wrapper with tool registration for one authenticated user.
    """

    def __init__(self, context: McpAuthContext, server_name: str = "Ballistic MCP",
                 server_version: str = "1.0.0"):
        self.context = context
        self.server_name = server_name
        self.server_version = server_version
        self.mcp_server: Optional[FastMCP] = None
        self._server_instructions = (
            f"{server_name} gives access to {context.user['name']}'s Ballistic items, projects and tags. "
            "Items assigned to this user by others can only have their status or assignee_notes "
            "changed, or be unassigned."
        )

    def response_headers(self) -> Dict[str, str]:
        return {LEGACY_TOKEN_HEADER: "deprecated"} if self.context.legacy_token else {}

    async def _create_server(self) -> FastMCP:
        """Create the FastMCP instance and register every tool."""
        mcp = FastMCP(name=self.server_name, version=self.server_version,
                      instructions=self._server_instructions)
        tools = {name: create_tool_instance(name, self.context) for name in tool_names()}

        @mcp.tool
        async def search_items(
            query: Optional[str] = None,
            status: Optional[str] = None,
            project_id: Optional[str] = None,
            tag_id: Optional[str] = None,
            scope: str = "all",
            include_completed: bool = False,
            limit: Optional[int] = None,
        ) -> str:
            """
            Search items you own or are assigned.

            Args:
                query: Case-insensitive text matched against title and description
                status: todo, doing, done or wontdo
                project_id: Project id, or "inbox" for items without a project
                tag_id: Only items with this tag
                scope: active (due now), planned (scheduled later) or all
                include_completed: Include done and wontdo items
                limit: Maximum results (default 25, max 100)
            """
            return await tools["search_items"].apply(
                query=query, status=status, project_id=project_id, tag_id=tag_id,
                scope=scope, include_completed=include_completed, limit=limit,
            )

        @mcp.tool
        async def get_item(id: str) -> str:
            """Get one item by id, including its tags."""
            return await tools["get_item"].apply(id=id)

        @mcp.tool
        async def create_item(
            title: str,
            description: Optional[str] = None,
            status: Optional[str] = None,
            project_id: Optional[str] = None,
            assignee_id: Optional[str] = None,
            position: Optional[int] = None,
            scheduled_date: Optional[str] = None,
            due_date: Optional[str] = None,
            recurrence_rule: Optional[str] = None,
            recurrence_preset: Optional[str] = None,
            recurrence_strategy: Optional[str] = None,
            tag_ids: Optional[List[str]] = None,
        ) -> str:
            """
            Create an item. A recurrence rule or preset makes it a recurring template.

            Args:
                title: Item title
                assignee_id: Must be an accepted connection of yours
                scheduled_date: YYYY-MM-DD
                due_date: YYYY-MM-DD, not before scheduled_date
                recurrence_rule: e.g. FREQ=WEEKLY;BYDAY=MO,WE
                recurrence_preset: daily, weekdays, weekly or monthly
                recurrence_strategy: expires or carry_over
            """
            return await tools["create_item"].apply(
                title=title, description=description, status=status, project_id=project_id,
                assignee_id=assignee_id, position=position, scheduled_date=scheduled_date,
                due_date=due_date, recurrence_rule=recurrence_rule, recurrence_preset=recurrence_preset,
                recurrence_strategy=recurrence_strategy, tag_ids=tag_ids,
            )

        @mcp.tool
        async def update_item(
            id: str,
            title: Optional[str] = None,
            description: Optional[str] = None,
            status: Optional[str] = None,
            assignee_notes: Optional[str] = None,
            project_id: Optional[str] = None,
            position: Optional[int] = None,
            scheduled_date: Optional[str] = None,
            due_date: Optional[str] = None,
            recurrence_rule: Optional[str] = None,
            recurrence_strategy: Optional[str] = None,
            tag_ids: Optional[List[str]] = None,
        ) -> str:
            """
            Update fields of an item. Only the fields you pass are changed.

            Use assign_item to change or remove the assignee.
            """
            fields = {
                "title": title,
                "description": description,
                "status": status,
                "assignee_notes": assignee_notes,
                "project_id": project_id,
                "position": position,
                "scheduled_date": scheduled_date,
                "due_date": due_date,
                "recurrence_rule": recurrence_rule,
                "recurrence_strategy": recurrence_strategy,
                "tag_ids": tag_ids,
            }
            return await tools["update_item"].apply(
                id=id, **{name: value for name, value in fields.items() if value is not None})

        @mcp.tool
        async def complete_item(id: str) -> str:
            """Mark an item done. Completing a recurring instance schedules the next one."""
            return await tools["complete_item"].apply(id=id)

        @mcp.tool
        async def delete_item(id: str) -> str:
            """Delete an item you own (it can be restored from the web app)."""
            return await tools["delete_item"].apply(id=id)

        @mcp.tool
        async def assign_item(id: str, assignee_id: Optional[str] = None) -> str:
            """
            Assign an item to a connected user, or omit assignee_id to unassign.

            Assignees may unassign themselves but cannot hand the item to someone else.
            """
            return await tools["assign_item"].apply(id=id, assignee_id=assignee_id)

        @mcp.tool
        async def list_projects(include_archived: bool = False) -> str:
            """List your projects."""
            return await tools["list_projects"].apply(include_archived=include_archived)

        @mcp.tool
        async def create_project(name: str, color: Optional[str] = None) -> str:
            """Create a project. color is a hex code such as #FF5733."""
            return await tools["create_project"].apply(name=name, color=color)

        @mcp.tool
        async def update_project(id: str, name: Optional[str] = None, color: Optional[str] = None,
                                 archived: Optional[bool] = None) -> str:
            """Rename, recolour, archive or unarchive a project."""
            return await tools["update_project"].apply(id=id, name=name, color=color, archived=archived)

        @mcp.tool
        async def list_tags() -> str:
            """List your tags."""
            return await tools["list_tags"].apply()

        @mcp.tool
        async def create_tag(name: str, color: Optional[str] = None) -> str:
            """Create a tag; names are unique per user."""
            return await tools["create_tag"].apply(name=name, color=color)

        @mcp.tool
        async def lookup_users(search: Optional[str] = None) -> str:
            """Find users you are connected with (possible assignees) by name or email."""
            return await tools["lookup_users"].apply(search=search)

        self._register_resources(mcp)

        logger.info(f"FastMCP server '{self.server_name}' created with {len(tools)} tools "
                    f"and {len(RESOURCES)} resources for user {self.context.user_id}")
        return mcp

    def _register_resources(self, mcp: FastMCP) -> None:
        context = self.context
        descriptions = {name: (uri, description) for uri, name, description in RESOURCES}

        def register(name: str):
            uri, description = descriptions[name]
            return mcp.resource(uri, name=name, description=description, mime_type="application/json")

        @register("items")
        def items_resource() -> str:
            return to_json(BallisticResources(context).items())

        @register("item")
        def item_resource(item_id: str) -> str:
            return to_json(BallisticResources(context).item(item_id))

        @register("projects")
        def projects_resource() -> str:
            return to_json(BallisticResources(context).projects())

        @register("project")
        def project_resource(project_id: str) -> str:
            return to_json(BallisticResources(context).project(project_id))

        @register("tags")
        def tags_resource() -> str:
            return to_json(BallisticResources(context).tags())

        @register("connections")
        def connections_resource() -> str:
            return to_json(BallisticResources(context).connections())

        @register("profile")
        def profile_resource() -> str:
            return to_json(BallisticResources(context).profile())

    def start_server_sync(self, transport: str = "stdio", host: str = "localhost", port: int = 8001, **kwargs):
        """
        Start the MCP server; FastMCP owns the event loop.

        Raises:
            ValueError: unsupported transport
        """
        if not self.mcp_server:
            self.mcp_server = anyio.run(self._create_server)

        transport = transport.lower()
        if transport == "stdio":
            self.mcp_server.run()
        elif transport in ("sse", "http"):
            kwargs.setdefault("path", "/sse" if transport == "sse" else "/mcp")
            headers = self.response_headers()
            if headers:
                kwargs.setdefault("middleware", []).append(Middleware(ResponseHeaderMiddleware, headers=headers))
            self.mcp_server.run(transport=transport, host=host, port=port, **kwargs)
        else:
            raise ValueError(f"Unsupported transport mode: {transport}")

    def get_server_info(self) -> Dict[str, Any]:
        return {
            "name": self.server_name,
            "version": self.server_version,
            "instructions": self._server_instructions,
            "user_id": self.context.user_id,
            "legacy_token": self.context.legacy_token,
            "registered_tools": tool_names(),
            "registered_resources": [uri for uri, _, _ in RESOURCES],
            "server_created": self.mcp_server is not None,
        }


def create_mcp_server(database: BallisticDatabase, token: Optional[str], settings: Settings,
                      connection_manager: Optional[Any] = None,
                      server_name: str = "Ballistic MCP") -> BallisticMCPServer:
    """
    Authenticate ``token`` and return a server bound to its user.

    Raises:
        Unauthorized: the token cannot be used for MCP
    """
    context = resolve_mcp_context(database, token, settings, connection_manager)
    return BallisticMCPServer(context, server_name=server_name)
