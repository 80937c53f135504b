"""
In-app notification dispatcher.

Notifications are persisted synchronously by the ``notify_*`` methods, which
return the stored rows. Delivery to open WebSocket sessions is a separate async
step (``publish``) so that synchronous callers such as services and the CLI
never do network I/O.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from .database import BallisticDatabase

logger = logging.getLogger(__name__)

TASK_ASSIGNED = "task_assigned"
TASK_UNASSIGNED = "task_unassigned"
TASK_UPDATED = "task_updated"
TASK_COMPLETED = "task_completed"
TASK_COMPLETED_BY_ASSIGNEE = "task_completed_by_assignee"
TASK_REJECTED = "task_rejected"
CONNECTION_REQUEST = "connection_request"
CONNECTION_ACCEPTED = "connection_accepted"


def _status_label(new_status: str) -> str:
    return "completed" if new_status == "done" else "marked as won't do"


class NotificationService:
    """Creates notification rows and pushes them to connected clients."""

    def __init__(self, database: BallisticDatabase, connection_manager: Optional[Any] = None):
        """
        Args:
            database: Persistence layer
            connection_manager: Object with ``async send_to_user(user_id, event)``;
                                None disables live delivery
        """
        self.db = database
        self.connection_manager = connection_manager

    def _create(self, user_id: str, type_: str, title: str, message: str,
                data: Dict[str, Any]) -> Dict[str, Any]:
        notification = self.db.create_notification(user_id, type_, title, message, data)
        logger.info(f"Notification {type_} created for user {user_id}")
        return notification

    def notify_task_assigned(self, assignee_id: str, item_id: str, item_title: str,
                             assigner_name: str) -> Dict[str, Any]:
        return self._create(
            assignee_id, TASK_ASSIGNED, "New Task Assigned",
            f"{assigner_name} assigned you a task: {item_title}",
            {"item_id": item_id, "assigner_name": assigner_name},
        )

    def notify_task_unassigned(self, previous_assignee_id: str, item_id: str, item_title: str,
                               owner_name: str) -> Dict[str, Any]:
        return self._create(
            previous_assignee_id, TASK_UNASSIGNED, "Task Unassigned",
            f"{owner_name} removed your assignment from: {item_title}",
            {"item_id": item_id, "owner_name": owner_name},
        )

    def notify_task_updated(self, assignee_id: str, item_id: str, item_title: str,
                            owner_name: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._create(
            assignee_id, TASK_UPDATED, "Task Updated",
            f"{owner_name} updated the task: {item_title}",
            {"item_id": item_id, "owner_name": owner_name, "changes": changes},
        )

    def notify_task_completed(self, assignee_id: str, item_id: str, item_title: str,
                              owner_name: str, new_status: str) -> Dict[str, Any]:
        return self._create(
            assignee_id, TASK_COMPLETED, "Task Completed",
            f"{owner_name} {_status_label(new_status)}: {item_title}",
            {"item_id": item_id, "owner_name": owner_name, "new_status": new_status},
        )

    def notify_task_completed_by_assignee(self, owner_id: str, item_id: str, item_title: str,
                                          assignee_name: str, new_status: str) -> Dict[str, Any]:
        return self._create(
            owner_id, TASK_COMPLETED_BY_ASSIGNEE, "Task Completed by Assignee",
            f"{assignee_name} {_status_label(new_status)}: {item_title}",
            {"item_id": item_id, "assignee_name": assignee_name, "new_status": new_status},
        )

    def notify_task_rejected(self, owner_id: str, item_id: str, item_title: str,
                             assignee_name: str) -> Dict[str, Any]:
        return self._create(
            owner_id, TASK_REJECTED, "Task Rejected",
            f"{assignee_name} declined the task: {item_title}",
            {"item_id": item_id, "assignee_name": assignee_name},
        )

    def notify_connection_request(self, addressee_id: str, requester_name: str,
                                  connection_id: str) -> Dict[str, Any]:
        return self._create(
            addressee_id, CONNECTION_REQUEST, "Connection Request",
            f"{requester_name} wants to connect with you",
            {"connection_id": connection_id, "requester_name": requester_name},
        )

    def notify_connection_accepted(self, requester_id: str, addressee_name: str,
                                   connection_id: str) -> Dict[str, Any]:
        return self._create(
            requester_id, CONNECTION_ACCEPTED, "Connection Accepted",
            f"{addressee_name} accepted your connection request",
            {"connection_id": connection_id, "addressee_name": addressee_name},
        )

    def unread_count(self, user_id: str) -> int:
        return self.db.count_unread_notifications(user_id)

    def mark_all_read(self, user_id: str) -> int:
        return self.db.mark_all_notifications_read(user_id)

    async def publish(self, notifications: Iterable[Dict[str, Any]]) -> int:
        """
        Push stored notifications to their recipients' WebSocket sessions.

        Delivery failures are logged and do not propagate; the rows are already
        persisted and will be picked up on the next listing.

        Returns:
            Number of notifications handed to the connection manager
        """
        if self.connection_manager is None:
            return 0

        delivered = 0
        for notification in notifications:
            event = {"type": "notification.created", "notification": notification}
            try:
                await self.connection_manager.send_to_user(notification["user_id"], event)
                delivered += 1
            except Exception as e:
                logger.warning(f"Failed to deliver notification {notification.get('id')}: {e}")
        return delivered

