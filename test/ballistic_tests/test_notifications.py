"""Tests for notification persistence and WebSocket delivery."""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic.notifications import (
    CONNECTION_ACCEPTED,
    TASK_ASSIGNED,
    TASK_COMPLETED,
    TASK_COMPLETED_BY_ASSIGNEE,
    TASK_REJECTED,
    NotificationService,
)


class TestNotificationRows:

    def test_task_assigned(self, db, owner, assignee):
        service = NotificationService(db)
        notification = service.notify_task_assigned(assignee["id"], "item-1", "Write report", owner["name"])

        assert notification["type"] == TASK_ASSIGNED
        assert notification["user_id"] == assignee["id"]
        assert notification["message"] == "Olivia Owner assigned you a task: Write report"
        assert notification["data"] == {"item_id": "item-1", "assigner_name": "Olivia Owner"}
        assert service.unread_count(assignee["id"]) == 1

    @pytest.mark.parametrize("status,label", [("done", "completed"), ("wontdo", "marked as won't do")])
    def test_completion_wording(self, db, owner, assignee, status, label):
        service = NotificationService(db)

        by_owner = service.notify_task_completed(assignee["id"], "item-1", "Report", "Olivia", status)
        by_assignee = service.notify_task_completed_by_assignee(owner["id"], "item-1", "Report", "Alex", status)

        assert by_owner["type"] == TASK_COMPLETED
        assert by_owner["message"] == f"Olivia {label}: Report"
        assert by_assignee["type"] == TASK_COMPLETED_BY_ASSIGNEE
        assert by_assignee["data"]["new_status"] == status

    def test_rejection_and_connection_accepted(self, db, owner, assignee):
        service = NotificationService(db)

        rejected = service.notify_task_rejected(owner["id"], "item-1", "Report", "Alex")
        accepted = service.notify_connection_accepted(owner["id"], "Alex", "conn-1")

        assert rejected["type"] == TASK_REJECTED
        assert accepted["type"] == CONNECTION_ACCEPTED
        assert service.mark_all_read(owner["id"]) == 2
        assert service.unread_count(owner["id"]) == 0


class TestPublish:

    @pytest.mark.asyncio
    async def test_without_connection_manager(self, db, owner):
        service = NotificationService(db)
        notification = service.notify_task_rejected(owner["id"], "item-1", "Report", "Alex")

        assert await service.publish([notification]) == 0

    @pytest.mark.asyncio
    async def test_delivers_to_recipient(self, db, owner, assignee):
        manager = MagicMock()
        manager.send_to_user = AsyncMock(return_value=1)
        service = NotificationService(db, manager)
        notification = service.notify_task_assigned(assignee["id"], "item-1", "Report", "Olivia")

        assert await service.publish([notification]) == 1

        user_id, event = manager.send_to_user.call_args.args
        assert user_id == assignee["id"]
        assert event == {"type": "notification.created", "notification": notification}

    @pytest.mark.asyncio
    async def test_delivery_failure_is_not_raised(self, db, owner, assignee):
        manager = MagicMock()
        manager.send_to_user = AsyncMock(side_effect=[RuntimeError("socket closed"), 1])
        service = NotificationService(db, manager)
        first = service.notify_task_assigned(assignee["id"], "item-1", "Report", "Olivia")
        second = service.notify_task_rejected(owner["id"], "item-2", "Other", "Alex")

        assert await service.publish([first, second]) == 1
        assert manager.send_to_user.await_count == 2
