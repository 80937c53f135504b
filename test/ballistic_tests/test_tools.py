"""Tests for the MCP tools."""

import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic.ratelimit import RateLimiter
from ballistic.tools import AVAILABLE_TOOLS, McpAuthContext, create_tool_instance, tool_names


@pytest.fixture
def mcp_token(db, owner):
    return db.create_token(owner["id"], "assistant", "hash-owner", ["mcp:*"])


@pytest.fixture
def owner_context(db, owner, mcp_token):
    return McpAuthContext(user=owner, database=db, token=mcp_token)


@pytest.fixture
def assignee_context(db, assignee):
    return McpAuthContext(user=assignee, database=db)


async def run(context, tool_name, **kwargs):
    return json.loads(await create_tool_instance(tool_name, context).apply(**kwargs))


class TestRegistry:

    def test_all_tools_registered(self):
        assert len(AVAILABLE_TOOLS) == 13
        assert tool_names()[0] == "search_items"

    def test_unknown_tool(self, owner_context):
        with pytest.raises(KeyError):
            create_tool_instance("drop_database", owner_context)


class TestItemTools:

    @pytest.mark.asyncio
    async def test_create_item_is_audited(self, db, owner, owner_context, mcp_token):
        result = await run(owner_context, "create_item", title="Call the bank", description=None)

        assert result["success"] is True
        assert result["message"] == "Item 'Call the bank' created"

        log = db.list_audit_logs(user_id=owner["id"], action="mcp.create_item")[0]
        assert log["status"] == "success"
        assert log["resource_id"] == result["item"]["id"]
        assert log["metadata"]["token_id"] == mcp_token["id"]
        assert log["metadata"]["arguments"] == ["description", "title"]

    @pytest.mark.asyncio
    async def test_create_requires_existing_connection(self, db, owner, stranger, owner_context):
        result = await run(owner_context, "create_item", title="Delegate", assignee_id=stranger["id"])

        assert result["success"] is False
        assert "no accepted connection" in result["message"]
        assert not db.are_connected(owner["id"], stranger["id"])
        assert db.list_audit_logs(action="mcp.create_item")[0]["status"] == "error"

    @pytest.mark.asyncio
    async def test_search_is_visible_scope(self, owner_context, assignee_context, assigned_item):
        owner_result = await run(owner_context, "search_items")
        assignee_result = await run(assignee_context, "search_items", query="report")

        assert owner_result["count"] == 1
        assert [i["id"] for i in assignee_result["items"]] == [assigned_item["id"]]

    @pytest.mark.asyncio
    async def test_search_limit_is_capped(self, owner_context, items, owner):
        for n in range(3):
            items.create_item(owner["id"], {"title": f"Item {n}"})

        result = await run(owner_context, "search_items", limit=2)

        assert result["count"] == 2

    @pytest.mark.asyncio
    async def test_get_item_denied_for_stranger(self, db, stranger, assigned_item):
        context = McpAuthContext(user=stranger, database=db)

        result = await run(context, "get_item", id=assigned_item["id"])

        assert result["success"] is False
        assert result["error"] == "Unauthorized"

    @pytest.mark.asyncio
    async def test_assignee_denial_lists_allowed_fields(self, assignee_context, assigned_item):
        result = await run(assignee_context, "update_item", id=assigned_item["id"], title="Renamed")

        assert result["success"] is False
        assert result["denied_fields"] == ["title"]
        assert result["relationship"] == "assignee"
        assert result["allowed_fields"] == ["assignee_id", "assignee_notes", "status"]

    @pytest.mark.asyncio
    async def test_assignee_updates_status(self, assignee_context, assigned_item):
        result = await run(assignee_context, "update_item", id=assigned_item["id"],
                           status="doing", assignee_notes="On it")

        assert result["success"] is True
        assert result["item"]["status"] == "doing"
        assert result["item"]["assignee_notes"] == "On it"

    @pytest.mark.asyncio
    async def test_update_without_fields(self, owner_context, assigned_item):
        result = await run(owner_context, "update_item", id=assigned_item["id"])

        assert result["success"] is False
        assert result["message"] == "No fields to update were provided."

    @pytest.mark.asyncio
    async def test_complete_recurring_instance(self, owner_context):
        created = await run(owner_context, "create_item", title="Standup", recurrence_preset="daily")
        instance = created["spawned"][0]

        result = await run(owner_context, "complete_item", id=instance["id"])

        assert result["success"] is True
        assert result["item"]["status"] == "done"
        next_date = result["spawned"][0]["scheduled_date"]
        assert result["message"] == f"Item completed; next occurrence scheduled for {next_date}"

    @pytest.mark.asyncio
    async def test_assign_and_unassign(self, owner_context, items, owner, assignee, connected):
        item = items.create_item(owner["id"], {"title": "Hand over"}).item

        assigned = await run(owner_context, "assign_item", id=item["id"], assignee_id=assignee["id"])
        unassigned = await run(owner_context, "assign_item", id=item["id"])

        assert assigned["message"] == f"Item assigned to {assignee['id']}"
        assert assigned["item"]["assignee_id"] == assignee["id"]
        assert unassigned["message"] == "Item unassigned"
        assert unassigned["item"]["assignee_id"] is None

    @pytest.mark.asyncio
    async def test_delete_is_owner_only(self, owner_context, assignee_context, assigned_item):
        denied = await run(assignee_context, "delete_item", id=assigned_item["id"])
        deleted = await run(owner_context, "delete_item", id=assigned_item["id"])

        assert denied["success"] is False
        assert deleted["success"] is True
        assert deleted["item"]["deleted_at"] is not None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, owner_context):
        with patch("ballistic.tools.ItemService.get_item", side_effect=RuntimeError("disk I/O error")):
            result = await run(owner_context, "get_item", id="anything")

        assert result["success"] is False
        assert result["message"] == "Failed to run get_item"
        assert result["error_details"] == "disk I/O error"


class TestContext:

    @pytest.mark.asyncio
    async def test_rate_limited(self, db, owner):
        context = McpAuthContext(user=owner, database=db, rate_limiter=RateLimiter({"mcp": (1, 60)}))

        first = await run(context, "list_tags")
        second = await run(context, "list_tags")

        assert first["success"] is True
        assert second["success"] is False
        assert second["error"] == "RateLimited"

    @pytest.mark.asyncio
    async def test_legacy_token_flagged_in_audit(self, db, owner):
        token = db.create_token(owner["id"], "old", "hash-legacy", ["*"])
        context = McpAuthContext(user=owner, database=db, token=token, legacy_token=True)

        await run(context, "create_project", name="Garden")

        log = db.list_audit_logs(action="mcp.create_project")[0]
        assert log["metadata"]["legacy_token"] is True

    @pytest.mark.asyncio
    async def test_events_broadcast_to_owner_and_assignee(self, db, owner, assignee, connected):
        manager = MagicMock()
        manager.send_to_users = AsyncMock(return_value=2)
        manager.send_to_user = AsyncMock(return_value=1)
        context = McpAuthContext(user=owner, database=db, connection_manager=manager)

        result = await run(context, "create_item", title="Shared", assignee_id=assignee["id"])

        user_ids, event = manager.send_to_users.call_args.args
        assert user_ids == [owner["id"], assignee["id"]]
        assert event["type"] == "item.created"
        assert event["data"]["id"] == result["item"]["id"]
        assert manager.send_to_user.call_args.args[0] == assignee["id"]

    @pytest.mark.asyncio
    async def test_expired_instances_broadcast_as_updates(self, db, owner, items):
        template = items.create_item(owner["id"], {
            "title": "Standup", "recurrence_preset": "daily", "scheduled_date": "2025-01-25",
        })
        missed = template.spawned[0]
        yesterday = items.generate_recurrences(owner["id"], template.item["id"],
                                               {"start_date": "2025-01-26", "end_date": "2025-01-26"})[0]
        manager = MagicMock()
        manager.send_to_users = AsyncMock(return_value=1)
        context = McpAuthContext(user=owner, database=db, connection_manager=manager)

        result = await run(context, "complete_item", id=yesterday["id"])

        assert [i["id"] for i in result["resolved"]] == [missed["id"]]
        updates = [call.args[1]["data"]["id"] for call in manager.send_to_users.call_args_list
                   if call.args[1]["type"] == "item.updated"]
        assert missed["id"] in updates

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_tool(self, db, owner):
        manager = MagicMock()
        manager.send_to_users = AsyncMock(side_effect=RuntimeError("socket closed"))
        context = McpAuthContext(user=owner, database=db, connection_manager=manager)

        result = await run(context, "create_item", title="Quiet")

        assert result["success"] is True


class TestProjectAndTagTools:

    @pytest.mark.asyncio
    async def test_project_tools(self, owner_context):
        created = await run(owner_context, "create_project", name="Home", color="#00AA00")
        project_id = created["project"]["id"]

        archived = await run(owner_context, "update_project", id=project_id, archived="true")
        listed = await run(owner_context, "list_projects")
        with_archived = await run(owner_context, "list_projects", include_archived="yes")

        assert archived["project"]["archived_at"] is not None
        assert listed["count"] == 0
        assert with_archived["count"] == 1

    @pytest.mark.asyncio
    async def test_update_project_without_fields(self, owner_context):
        created = await run(owner_context, "create_project", name="Home")

        result = await run(owner_context, "update_project", id=created["project"]["id"])

        assert result["message"] == "No fields to update were provided."

    @pytest.mark.asyncio
    async def test_duplicate_tag(self, owner_context):
        first = await run(owner_context, "create_tag", name="urgent")
        second = await run(owner_context, "create_tag", name="urgent")
        listed = await run(owner_context, "list_tags")

        assert first["success"] is True
        assert second["success"] is False
        assert listed["count"] == 1


class TestLookupUsers:

    @pytest.mark.asyncio
    async def test_only_connected_users(self, owner_context, assignee, stranger, connected):
        result = await run(owner_context, "lookup_users")

        assert result["count"] == 1
        assert result["users"] == [{"id": assignee["id"], "name": "Alex Assignee", "email": "assignee@example.com"}]

    @pytest.mark.asyncio
    async def test_search_matches_name_or_email(self, db, owner, owner_context, stranger, connected):
        db.create_connection(stranger["id"], owner["id"], "accepted")

        by_name = await run(owner_context, "lookup_users", search="sam")
        by_email = await run(owner_context, "lookup_users", search="ASSIGNEE@")
        nobody = await run(owner_context, "lookup_users", search="zed")

        assert [u["id"] for u in by_name["users"]] == [stranger["id"]]
        assert by_email["users"][0]["name"] == "Alex Assignee"
        assert nobody["count"] == 0
        assert nobody["message"] == "Found 0 user(s)"
