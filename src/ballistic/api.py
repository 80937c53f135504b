"""
FastAPI Backend with WebSocket Manager for Ballistic

REST endpoints for items, projects, tags, notifications, connections,
access tokens, activity statistics and admin user management, plus a per-user
WebSocket event stream. Requests authenticate with a bearer token carrying the
``api:*`` ability (or the legacy wildcard). Domain errors from the service
layer are mapped to HTTP status codes by a single exception handler.
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .abilities import TokenAbility, check_api_access
from .config import Settings
from .database import BallisticDatabase
from .errors import BallisticError, NotFound, RateLimited
from .models import (
    ConnectionRequest,
    GenerateRecurrencesRequest,
    ItemCreate,
    ItemUpdate,
    ProjectCreate,
    ProjectUpdate,
    ReorderRequest,
    TagCreate,
    TagUpdate,
    TokenCreate,
    UserCreate,
    UserUpdate,
)
from .monitoring import background_tasks, performance_monitor
from .notifications import NotificationService
from .ratelimit import RateLimiter
from .services import (
    AdminUserService,
    ConnectionService,
    ItemService,
    MutationOutcome,
    ProjectService,
    StatsService,
    TagService,
    TokenService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Set by the lifespan, or by configure() when the CLI or tests own the database
db_instance: Optional[BallisticDatabase] = None
settings: Optional[Settings] = None
rate_limiter: Optional[RateLimiter] = None


class ConnectionManager:
    """
    Per-user WebSocket registry with parallel delivery.

    Each socket is registered under the user it authenticated as. Events are
    sent to every socket of the target users with asyncio.gather; a failed
    send drops that socket from the registry.
    """

    def __init__(self):
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        async with self._connection_lock:
            self.active_connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"WebSocket connected for {user_id}. Total connections: {self.get_connection_count()}")

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            for user_id in list(self.active_connections):
                sockets = self.active_connections[user_id]
                sockets.discard(websocket)
                if not sockets:
                    del self.active_connections[user_id]
        logger.info(f"WebSocket disconnected. Total connections: {self.get_connection_count()}")

    async def send_to_user(self, user_id: str, event_data: Dict[str, Any]) -> int:
        return await self.send_to_users([user_id], event_data)

    async def send_to_users(self, user_ids: Iterable[str], event_data: Dict[str, Any]) -> int:
        """
        Send an event to every open socket of the given users.

        Returns:
            Number of sockets the event was delivered to
        """
        message = json.dumps(event_data, default=str)
        async with self._connection_lock:
            targets = [
                websocket
                for user_id in set(str(u) for u in user_ids if u)
                for websocket in self.active_connections.get(user_id, set()).copy()
            ]
        if not targets:
            return 0

        start_time = time.time()
        results = await asyncio.gather(*(self._send_safe(ws, message) for ws in targets), return_exceptions=True)
        performance_monitor.record_broadcast_time(len(targets), (time.time() - start_time) * 1000)

        delivered = sum(1 for result in results if result is True)
        logger.debug(f"Delivered {event_data.get('type')} to {delivered}/{len(targets)} sockets")
        return delivered

    async def _send_safe(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to WebSocket: {e}")
            await self.disconnect(websocket)
            return False

    def get_connection_count(self) -> int:
        return sum(len(sockets) for sockets in self.active_connections.values())


connection_manager = ConnectionManager()


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


class McpTokenCreate(BaseModel):
    """Body for issuing an MCP-only token."""
    name: str = Field(min_length=1, max_length=255)


def configure(database: BallisticDatabase, app_settings: Optional[Settings] = None) -> None:
    """Install a database and settings for the app (used by the CLI and tests)."""
    global db_instance, settings, rate_limiter
    db_instance = database
    settings = app_settings or Settings.from_env()
    rate_limiter = RateLimiter(settings.rate_limits)


def get_settings() -> Settings:
    global settings
    if settings is None:
        settings = Settings.from_env()
    return settings


def get_rate_limiter() -> RateLimiter:
    global rate_limiter
    if rate_limiter is None:
        rate_limiter = RateLimiter(get_settings().rate_limits)
    return rate_limiter


def get_database() -> BallisticDatabase:
    """
    FastAPI dependency to provide database instance.

    Raises:
        HTTPException: If database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_notification_service(db: BallisticDatabase = Depends(get_database)) -> NotificationService:
    return NotificationService(db, connection_manager)


def get_item_service(db: BallisticDatabase = Depends(get_database),
                     notifications: NotificationService = Depends(get_notification_service)) -> ItemService:
    return ItemService(db, notifications)


def get_token_service(db: BallisticDatabase = Depends(get_database)) -> TokenService:
    return TokenService(db, get_settings().legacy_wildcard_cutoff_at)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_user(authorization: Optional[str] = Header(None),
                     tokens: TokenService = Depends(get_token_service)) -> Dict[str, Any]:
    """
    Resolve the bearer token to a user and apply the ``api`` rate limit.

    Raises:
        HTTPException: 401 without a valid token, 403 when the token lacks API access
    """
    result = tokens.authenticate(_bearer_token(authorization))
    if result is None:
        raise HTTPException(status_code=401, detail="Unauthenticated.")
    token, user = result
    if not check_api_access(token["abilities"]):
        raise HTTPException(status_code=403, detail="This token does not have API access.")
    get_rate_limiter().hit("api", user["id"])
    return user


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return user


async def _dispatch(event_type: str, item: Optional[Dict[str, Any]], outcome: Optional[MutationOutcome],
                    notifications: NotificationService) -> None:
    """Push an item event to its owner and assignee, then deliver notifications."""
    if item is not None:
        event = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": item,
        }
        await connection_manager.send_to_users([item["user_id"], item.get("assignee_id")], event)
    if outcome is not None:
        for spawned in outcome.spawned:
            await connection_manager.send_to_users(
                [spawned["user_id"]],
                {"type": "item.created", "timestamp": datetime.now(timezone.utc).isoformat(), "data": spawned},
            )
        # Expired or carried-over instances
        for resolved in outcome.resolved:
            await connection_manager.send_to_users(
                [resolved["user_id"], resolved.get("assignee_id")],
                {"type": "item.updated", "timestamp": datetime.now(timezone.utc).isoformat(), "data": resolved},
            )
        await notifications.publish(outcome.notifications)


def _outcome_payload(outcome: MutationOutcome) -> Dict[str, Any]:
    return {"item": outcome.item, "spawned": outcome.spawned, "resolved": outcome.resolved}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup/shutdown: open the database unless one was configured, start the
    background sweep, and close what was opened here on the way out.
    """
    global db_instance
    app_settings = get_settings()
    owns_database = db_instance is None

    try:
        if owns_database:
            db_instance = BallisticDatabase(app_settings.database_path)
            logger.info(f"Database initialized: {app_settings.database_path}")
        sweeper = ItemService(db_instance, NotificationService(db_instance, connection_manager))
        await background_tasks.start_background_tasks(sweeper, app_settings.sweep_interval_seconds)
        logger.info("Ballistic API starting up...")
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    yield

    try:
        await background_tasks.stop_background_tasks()
    except Exception as e:
        logger.error(f"Error stopping background tasks: {e}")

    if owns_database and db_instance is not None:
        db_instance.close()
        db_instance = None
        logger.info("Database connection closed")


app = FastAPI(
    title="Ballistic API",
    description="Tasks, projects, recurrence and delegation with a real-time event stream",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_time(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    performance_monitor.record_request_time(
        f"{request.method} {request.url.path}", (time.time() - start_time) * 1000)
    return response


@app.exception_handler(BallisticError)
async def ballistic_error_handler(request: Request, exc: BallisticError):
    headers = None
    if isinstance(exc, RateLimited):
        performance_monitor.increment_daily_stat("rate_limited")
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ----------------------------------------------------------------------
# Health, user and event stream
# ----------------------------------------------------------------------

@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: BallisticDatabase = Depends(get_database)):
    database_connected = True
    try:
        db.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=connection_manager.get_connection_count(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/api/user")
async def current_user(user: Dict[str, Any] = Depends(get_current_user),
                       notifications: NotificationService = Depends(get_notification_service)):
    return {"user": user, "unread_notifications": notifications.unread_count(user["id"])}


@app.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket, token: Optional[str] = None):
    """Event stream for one user; authenticate with ?token=<api token>."""
    if db_instance is None:
        await websocket.close(code=1011)
        return
    result = TokenService(db_instance, get_settings().legacy_wildcard_cutoff_at).authenticate(token)
    if result is None or not check_api_access(result[0]["abilities"]):
        await websocket.close(code=1008)
        return

    user = result[1]
    await connection_manager.connect(websocket, user["id"])
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await connection_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await connection_manager.disconnect(websocket)


# ----------------------------------------------------------------------
# Items
# ----------------------------------------------------------------------

@app.get("/api/items")
async def list_items(
    assigned_to_me: bool = False,
    delegated: bool = False,
    include_completed: bool = False,
    scope: str = "active",
    project_id: Optional[str] = None,
    status: Optional[List[str]] = Query(None),
    tag_id: Optional[str] = None,
    search: Optional[str] = None,
    scheduled_date: Optional[str] = None,
    scheduled_from: Optional[str] = None,
    scheduled_to: Optional[str] = None,
    due_from: Optional[str] = None,
    due_to: Optional[str] = None,
    overdue: bool = False,
    limit: Optional[int] = Query(None, ge=1),
    user: Dict[str, Any] = Depends(get_current_user),
    items: ItemService = Depends(get_item_service),
):
    results = items.list_items(
        user["id"],
        assigned_to_me=assigned_to_me,
        delegated=delegated,
        scope=scope,
        limit=limit,
        include_completed=include_completed,
        project_id=project_id,
        status=status,
        tag_id=tag_id,
        search=search,
        scheduled_date=scheduled_date,
        scheduled_from=scheduled_from,
        scheduled_to=scheduled_to,
        due_from=due_from,
        due_to=due_to,
        overdue=overdue,
    )
    return {"items": results, "count": len(results)}


@app.post("/api/items", status_code=201)
async def create_item(payload: ItemCreate,
                      user: Dict[str, Any] = Depends(get_current_user),
                      items: ItemService = Depends(get_item_service)):
    outcome = items.create_item(user["id"], payload)
    await _dispatch("item.created", outcome.item, outcome, items.notifications)
    return _outcome_payload(outcome)


@app.post("/api/items/reorder")
async def reorder_items(payload: ReorderRequest,
                        user: Dict[str, Any] = Depends(get_current_user),
                        items: ItemService = Depends(get_item_service)):
    updated = items.reorder_items(user["id"], payload)
    await connection_manager.send_to_user(user["id"], {
        "type": "items.reordered",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": {"count": updated},
    })
    return {"success": True, "updated": updated}


@app.get("/api/items/{item_id}")
async def get_item(item_id: str,
                   user: Dict[str, Any] = Depends(get_current_user),
                   items: ItemService = Depends(get_item_service)):
    return {"item": items.get_item(user["id"], item_id)}


@app.patch("/api/items/{item_id}")
async def update_item(item_id: str, payload: ItemUpdate,
                      user: Dict[str, Any] = Depends(get_current_user),
                      items: ItemService = Depends(get_item_service)):
    outcome = items.update_item(user["id"], item_id, payload)
    await _dispatch("item.updated", outcome.item, outcome, items.notifications)
    return _outcome_payload(outcome)


@app.post("/api/items/{item_id}/complete")
async def complete_item(item_id: str,
                        user: Dict[str, Any] = Depends(get_current_user),
                        items: ItemService = Depends(get_item_service)):
    outcome = items.complete_item(user["id"], item_id)
    await _dispatch("item.updated", outcome.item, outcome, items.notifications)
    return _outcome_payload(outcome)


@app.delete("/api/items/{item_id}", status_code=204)
async def delete_item(item_id: str,
                      user: Dict[str, Any] = Depends(get_current_user),
                      items: ItemService = Depends(get_item_service)):
    deleted = items.delete_item(user["id"], item_id)
    await _dispatch("item.deleted", deleted, None, items.notifications)
    return Response(status_code=204)


@app.post("/api/items/{item_id}/restore")
async def restore_item(item_id: str,
                       user: Dict[str, Any] = Depends(get_current_user),
                       items: ItemService = Depends(get_item_service)):
    item = items.restore_item(user["id"], item_id)
    await _dispatch("item.restored", item, None, items.notifications)
    return {"item": item}


@app.delete("/api/items/{item_id}/force", status_code=204)
async def force_delete_item(item_id: str,
                            user: Dict[str, Any] = Depends(get_current_user),
                            items: ItemService = Depends(get_item_service)):
    items.force_delete_item(user["id"], item_id)
    return Response(status_code=204)


@app.post("/api/items/{item_id}/generate-recurrences", status_code=201)
async def generate_recurrences(item_id: str, payload: GenerateRecurrencesRequest,
                               user: Dict[str, Any] = Depends(get_current_user),
                               items: ItemService = Depends(get_item_service)):
    created = items.generate_recurrences(user["id"], item_id, payload)
    for instance in created:
        await _dispatch("item.created", instance, None, items.notifications)
    return {"items": created, "count": len(created)}


# ----------------------------------------------------------------------
# Projects and tags
# ----------------------------------------------------------------------

@app.get("/api/projects")
async def list_projects(include_archived: bool = False,
                        user: Dict[str, Any] = Depends(get_current_user),
                        db: BallisticDatabase = Depends(get_database)):
    return {"projects": ProjectService(db).list_projects(user["id"], include_archived)}


@app.post("/api/projects", status_code=201)
async def create_project(payload: ProjectCreate,
                         user: Dict[str, Any] = Depends(get_current_user),
                         db: BallisticDatabase = Depends(get_database)):
    return {"project": ProjectService(db).create_project(user["id"], payload)}


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str,
                      user: Dict[str, Any] = Depends(get_current_user),
                      db: BallisticDatabase = Depends(get_database)):
    return {"project": ProjectService(db).get_project(user["id"], project_id)}


@app.patch("/api/projects/{project_id}")
async def update_project(project_id: str, payload: ProjectUpdate,
                         user: Dict[str, Any] = Depends(get_current_user),
                         db: BallisticDatabase = Depends(get_database)):
    return {"project": ProjectService(db).update_project(user["id"], project_id, payload)}


@app.delete("/api/projects/{project_id}", status_code=204)
async def delete_project(project_id: str,
                         user: Dict[str, Any] = Depends(get_current_user),
                         db: BallisticDatabase = Depends(get_database)):
    ProjectService(db).delete_project(user["id"], project_id)
    return Response(status_code=204)


@app.post("/api/projects/{project_id}/restore")
async def restore_project(project_id: str,
                          user: Dict[str, Any] = Depends(get_current_user),
                          db: BallisticDatabase = Depends(get_database)):
    return {"project": ProjectService(db).restore_project(user["id"], project_id)}


@app.get("/api/tags")
async def list_tags(user: Dict[str, Any] = Depends(get_current_user),
                    db: BallisticDatabase = Depends(get_database)):
    return {"tags": TagService(db).list_tags(user["id"])}


@app.post("/api/tags", status_code=201)
async def create_tag(payload: TagCreate,
                     user: Dict[str, Any] = Depends(get_current_user),
                     db: BallisticDatabase = Depends(get_database)):
    return {"tag": TagService(db).create_tag(user["id"], payload)}


@app.patch("/api/tags/{tag_id}")
async def update_tag(tag_id: str, payload: TagUpdate,
                     user: Dict[str, Any] = Depends(get_current_user),
                     db: BallisticDatabase = Depends(get_database)):
    return {"tag": TagService(db).update_tag(user["id"], tag_id, payload)}


@app.delete("/api/tags/{tag_id}", status_code=204)
async def delete_tag(tag_id: str,
                     user: Dict[str, Any] = Depends(get_current_user),
                     db: BallisticDatabase = Depends(get_database)):
    TagService(db).delete_tag(user["id"], tag_id)
    return Response(status_code=204)


# ----------------------------------------------------------------------
# Notifications and connections
# ----------------------------------------------------------------------

@app.get("/api/notifications")
async def list_notifications(unread_only: bool = False,
                             limit: int = Query(50, ge=1, le=100),
                             user: Dict[str, Any] = Depends(get_current_user),
                             db: BallisticDatabase = Depends(get_database)):
    return {
        "notifications": db.list_notifications(user["id"], unread_only=unread_only, limit=limit),
        "unread_count": db.count_unread_notifications(user["id"]),
    }


@app.post("/api/notifications/read-all")
async def mark_all_notifications_read(user: Dict[str, Any] = Depends(get_current_user),
                                      notifications: NotificationService = Depends(get_notification_service)):
    return {"marked": notifications.mark_all_read(user["id"])}


@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str,
                                 user: Dict[str, Any] = Depends(get_current_user),
                                 db: BallisticDatabase = Depends(get_database)):
    if not db.mark_notification_read(user["id"], notification_id):
        raise NotFound("notification", notification_id)
    return {"success": True}


@app.get("/api/connections")
async def list_connections(status: Optional[str] = None,
                           user: Dict[str, Any] = Depends(get_current_user),
                           db: BallisticDatabase = Depends(get_database)):
    return {"connections": db.list_connections(user["id"], status)}


@app.post("/api/connections", status_code=201)
async def request_connection(payload: ConnectionRequest,
                             user: Dict[str, Any] = Depends(get_current_user),
                             notifications: NotificationService = Depends(get_notification_service)):
    get_rate_limiter().hit("connections", user["id"])
    connection, created = ConnectionService(notifications.db, notifications).request(
        user["id"], payload.addressee_id)
    await notifications.publish(created)
    return {"connection": connection}


async def _respond_to_connection(user_id: str, connection_id: str, accept: bool,
                                 notifications: NotificationService) -> Dict[str, Any]:
    connection, created = ConnectionService(notifications.db, notifications).respond(
        user_id, connection_id, accept)
    await notifications.publish(created)
    return {"connection": connection}


@app.post("/api/connections/{connection_id}/accept")
async def accept_connection(connection_id: str,
                            user: Dict[str, Any] = Depends(get_current_user),
                            notifications: NotificationService = Depends(get_notification_service)):
    return await _respond_to_connection(user["id"], connection_id, True, notifications)


@app.post("/api/connections/{connection_id}/decline")
async def decline_connection(connection_id: str,
                             user: Dict[str, Any] = Depends(get_current_user),
                             notifications: NotificationService = Depends(get_notification_service)):
    return await _respond_to_connection(user["id"], connection_id, False, notifications)


# ----------------------------------------------------------------------
# Access tokens
# ----------------------------------------------------------------------

@app.get("/api/tokens")
async def list_tokens(user: Dict[str, Any] = Depends(get_current_user),
                      tokens: TokenService = Depends(get_token_service)):
    return {"tokens": tokens.list_tokens(user["id"])}


@app.post("/api/tokens", status_code=201)
async def create_token(payload: TokenCreate,
                       user: Dict[str, Any] = Depends(get_current_user),
                       tokens: TokenService = Depends(get_token_service)):
    token, plaintext = tokens.create_token(user["id"], payload)
    return {"token": tokens.to_payload(token), "plain_text_token": plaintext}


@app.delete("/api/tokens/{token_id}", status_code=204)
async def revoke_token(token_id: str,
                       user: Dict[str, Any] = Depends(get_current_user),
                       tokens: TokenService = Depends(get_token_service)):
    tokens.revoke_token(user["id"], token_id)
    return Response(status_code=204)


@app.get("/api/mcp-tokens")
async def list_mcp_tokens(user: Dict[str, Any] = Depends(get_current_user),
                          tokens: TokenService = Depends(get_token_service)):
    return {"tokens": tokens.list_mcp_tokens(user["id"])}


@app.post("/api/mcp-tokens", status_code=201)
async def create_mcp_token(payload: McpTokenCreate,
                           user: Dict[str, Any] = Depends(get_current_user),
                           tokens: TokenService = Depends(get_token_service)):
    token, plaintext = tokens.create_token(
        user["id"], {"name": payload.name, "abilities": [TokenAbility.MCP.value]})
    return {"token": tokens.to_payload(token), "plain_text_token": plaintext}


@app.delete("/api/mcp-tokens/{token_id}", status_code=204)
async def revoke_mcp_token(token_id: str,
                           user: Dict[str, Any] = Depends(get_current_user),
                           tokens: TokenService = Depends(get_token_service)):
    tokens.revoke_token(user["id"], token_id, mcp_only=True)
    return Response(status_code=204)


# ----------------------------------------------------------------------
# Statistics
# ----------------------------------------------------------------------

@app.get("/api/stats")
async def user_stats(period: Optional[str] = None,
                     from_date: Optional[str] = Query(None, alias="from"),
                     to_date: Optional[str] = Query(None, alias="to"),
                     user: Dict[str, Any] = Depends(get_current_user),
                     db: BallisticDatabase = Depends(get_database)):
    query = {"period": period, "from": from_date, "to": to_date}
    return StatsService(db).user_stats(user["id"], {k: v for k, v in query.items() if v is not None})


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------

@app.get("/api/admin/stats")
async def admin_stats(admin: Dict[str, Any] = Depends(require_admin),
                      db: BallisticDatabase = Depends(get_database)):
    try:
        system_metrics = performance_monitor.get_system_metrics(connection_manager, db)
    except Exception as e:
        logger.error(f"Failed to get performance metrics: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve performance metrics")

    return {
        "stats": db.get_admin_stats(),
        "system": system_metrics.to_dict(),
        "uptime_seconds": (datetime.now(timezone.utc) - performance_monitor.start_time).total_seconds(),
    }


@app.get("/api/admin/audit-logs")
async def admin_audit_logs(user_id: Optional[str] = None,
                           action: Optional[str] = None,
                           limit: int = Query(100, ge=1, le=500),
                           admin: Dict[str, Any] = Depends(require_admin),
                           db: BallisticDatabase = Depends(get_database)):
    return {"audit_logs": db.list_audit_logs(user_id=user_id, action=action, limit=limit)}


@app.get("/api/admin/users")
async def admin_list_users(search: Optional[str] = None,
                           is_admin: Optional[bool] = None,
                           per_page: int = Query(25, ge=1, le=100),
                           page: int = Query(1, ge=1),
                           admin: Dict[str, Any] = Depends(require_admin),
                           db: BallisticDatabase = Depends(get_database)):
    return AdminUserService(db).list_users(search, is_admin, per_page=per_page, page=page)


@app.post("/api/admin/users", status_code=201)
async def admin_create_user(payload: UserCreate,
                            admin: Dict[str, Any] = Depends(require_admin),
                            db: BallisticDatabase = Depends(get_database)):
    return {"user": AdminUserService(db).create_user(admin, payload)}


@app.get("/api/admin/users/{user_id}")
async def admin_get_user(user_id: str,
                         admin: Dict[str, Any] = Depends(require_admin),
                         db: BallisticDatabase = Depends(get_database)):
    return AdminUserService(db).get_user(user_id)


@app.patch("/api/admin/users/{user_id}")
async def admin_update_user(user_id: str, payload: UserUpdate,
                            admin: Dict[str, Any] = Depends(require_admin),
                            db: BallisticDatabase = Depends(get_database)):
    return {"user": AdminUserService(db).update_user(admin, user_id, payload)}


@app.delete("/api/admin/users/{user_id}", status_code=204)
async def admin_delete_user(user_id: str,
                            admin: Dict[str, Any] = Depends(require_admin),
                            db: BallisticDatabase = Depends(get_database)):
    AdminUserService(db).delete_user(admin, user_id)
    return Response(status_code=204)


@app.post("/api/admin/users/{user_id}/hard-reset")
async def admin_hard_reset_user(user_id: str,
                                admin: Dict[str, Any] = Depends(require_admin),
                                db: BallisticDatabase = Depends(get_database)):
    removed = AdminUserService(db).hard_reset(admin, user_id)
    return {"message": "User data has been reset.", "removed": removed}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ballistic.api:app", host="0.0.0.0", port=8000, log_level="info")
