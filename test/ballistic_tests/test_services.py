"""
Service layer tests.

Exercises the full path from payload to stored result: authorization against
the re-read item, connection requirements for assignment, recurrence
expansion on completion and in the scheduled sweep, notifications, and the
project, tag, token and connection services.
"""

import os
import sys
from datetime import date, datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic.errors import BallisticError, MalformedFieldSet, NotFound, Unauthorized, ValidationFailed
from ballistic.services import (
    AdminUserService,
    ConnectionService,
    ItemService,
    ProjectService,
    StatsService,
    TagService,
    TokenService,
    hash_token,
)


def _types(db, user_id):
    return [n["type"] for n in db.list_notifications(user_id)]


class TestCreateItem:

    def test_plain_item(self, items, owner):
        outcome = items.create_item(owner["id"], {"title": "Buy milk"})

        assert outcome.item["user_id"] == owner["id"]
        assert outcome.item["status"] == "todo"
        assert outcome.spawned == []
        assert outcome.notifications == []

    def test_done_item_records_completion(self, items, owner):
        outcome = items.create_item(owner["id"], {"title": "Already done", "status": "done"})
        assert outcome.item["completed_at"] is not None

    def test_assignment_to_connection_notifies(self, db, items, owner, assignee, connected):
        outcome = items.create_item(owner["id"], {"title": "Report", "assignee_id": assignee["id"]},
                                    auto_connect=False)

        assert outcome.item["assignee_id"] == assignee["id"]
        assert [n["type"] for n in outcome.notifications] == ["task_assigned"]
        assert _types(db, assignee["id"]) == ["task_assigned"]

    def test_assignment_without_connection_rejected(self, db, items, owner, stranger):
        with pytest.raises(Unauthorized):
            items.create_item(owner["id"], {"title": "Report", "assignee_id": stranger["id"]}, auto_connect=False)

        assert db.list_items(owner["id"], mode="visible", scope="all") == []

    def test_assignment_auto_connects(self, db, items, owner, stranger):
        items.create_item(owner["id"], {"title": "Report", "assignee_id": stranger["id"]})
        assert db.are_connected(owner["id"], stranger["id"])

    def test_auto_connect_accepts_pending_request(self, db, items, owner, stranger):
        pending = db.create_connection(stranger["id"], owner["id"])

        items.create_item(owner["id"], {"title": "Report", "assignee_id": stranger["id"]})

        assert db.get_connection(pending["id"])["status"] == "accepted"

    def test_self_assignment_needs_no_connection(self, items, owner):
        outcome = items.create_item(owner["id"], {"title": "Mine", "assignee_id": owner["id"]}, auto_connect=False)
        assert outcome.notifications == []

    def test_unknown_assignee(self, items, owner):
        with pytest.raises(ValidationFailed) as exc_info:
            items.create_item(owner["id"], {"title": "Report", "assignee_id": "nobody"})
        assert "assignee_id" in exc_info.value.errors

    def test_foreign_project_and_tags_rejected(self, db, items, owner, stranger):
        project = db.create_project(stranger["id"], "Theirs")
        tag = db.create_tag(stranger["id"], "theirs")

        with pytest.raises(ValidationFailed):
            items.create_item(owner["id"], {"title": "A", "project_id": project["id"]})
        with pytest.raises(ValidationFailed):
            items.create_item(owner["id"], {"title": "B", "tag_ids": [tag["id"]]})

    def test_invalid_payload(self, items, owner):
        with pytest.raises(ValidationFailed) as exc_info:
            items.create_item(owner["id"], {"title": ""})
        assert exc_info.value.status_code == 422

    def test_recurring_template_spawns_first_instance(self, items, owner, today):
        outcome = items.create_item(owner["id"], {
            "title": "Standup", "recurrence_preset": "weekdays", "status": "done",
        })

        template = outcome.item
        assert template["is_recurring_template"] is True
        assert template["status"] == "todo"
        assert template["scheduled_date"] == today.isoformat()
        assert len(outcome.spawned) == 1
        assert outcome.spawned[0]["scheduled_date"] == "2025-01-27"
        assert outcome.spawned[0]["recurrence_parent_id"] == template["id"]
        assert outcome.spawned[0]["is_recurring_instance"] is True


class TestUpdateItem:

    def test_owner_updates_any_field(self, items, owner, assigned_item):
        outcome = items.update_item(owner["id"], assigned_item["id"],
                                    {"title": "Final report", "due_date": "2025-02-01"})

        assert outcome.item["title"] == "Final report"
        assert outcome.item["due_date"] == "2025-02-01"

    def test_assignee_updates_status_and_notes(self, db, items, owner, assignee, assigned_item):
        outcome = items.update_item(assignee["id"], assigned_item["id"],
                                    {"status": "doing", "assignee_notes": "On it"})

        assert outcome.item["status"] == "doing"
        assert outcome.item["assignee_notes"] == "On it"
        assert outcome.notifications == []

    def test_assignee_completion_notifies_owner(self, db, items, owner, assignee, assigned_item):
        outcome = items.update_item(assignee["id"], assigned_item["id"], {"status": "done"})

        assert outcome.item["completed_at"] is not None
        assert [n["type"] for n in outcome.notifications] == ["task_completed_by_assignee"]
        assert outcome.notifications[0]["user_id"] == owner["id"]

    def test_assignee_cannot_change_title(self, db, items, assignee, assigned_item):
        with pytest.raises(Unauthorized) as exc_info:
            items.update_item(assignee["id"], assigned_item["id"], {"title": "Mine now"})

        assert exc_info.value.denied_fields == ["title"]
        assert db.get_item(assigned_item["id"])["title"] == "Write report"

    def test_mixed_request_is_not_partially_applied(self, db, items, assignee, assigned_item):
        with pytest.raises(Unauthorized):
            items.update_item(assignee["id"], assigned_item["id"], {"status": "done", "due_date": "2025-02-01"})

        stored = db.get_item(assigned_item["id"])
        assert stored["status"] == "todo"
        assert stored["due_date"] is None

    def test_assignee_declines(self, db, items, owner, assignee, assigned_item):
        outcome = items.update_item(assignee["id"], assigned_item["id"], {"assignee_id": None})

        assert outcome.item["assignee_id"] is None
        assert [n["type"] for n in outcome.notifications] == ["task_rejected"]
        assert outcome.notifications[0]["user_id"] == owner["id"]

    def test_assignee_cannot_reassign(self, items, assignee, stranger, assigned_item):
        with pytest.raises(Unauthorized):
            items.update_item(assignee["id"], assigned_item["id"], {"assignee_id": stranger["id"]})

    def test_stranger_rejected(self, items, stranger, assigned_item):
        with pytest.raises(Unauthorized):
            items.update_item(stranger["id"], assigned_item["id"], {"status": "done"})
        with pytest.raises(Unauthorized):
            items.get_item(stranger["id"], assigned_item["id"])

    def test_unknown_field_fails_closed(self, items, owner, assigned_item):
        with pytest.raises(MalformedFieldSet):
            items.update_item(owner["id"], assigned_item["id"], {"title": "x", "user_id": "someone"})

    def test_missing_item(self, items, owner):
        with pytest.raises(NotFound):
            items.update_item(owner["id"], "missing", {"title": "x"})

    def test_owner_unassigns(self, items, owner, assignee, assigned_item):
        outcome = items.update_item(owner["id"], assigned_item["id"], {"assignee_id": None})

        assert [n["type"] for n in outcome.notifications] == ["task_unassigned"]
        assert outcome.notifications[0]["user_id"] == assignee["id"]

    def test_owner_reassigns(self, items, owner, assignee, stranger, assigned_item):
        outcome = items.update_item(owner["id"], assigned_item["id"], {"assignee_id": stranger["id"]})

        types = {(n["type"], n["user_id"]) for n in outcome.notifications}
        assert types == {("task_unassigned", assignee["id"]), ("task_assigned", stranger["id"])}

    def test_owner_edit_notifies_assignee(self, items, owner, assignee, assigned_item):
        outcome = items.update_item(owner["id"], assigned_item["id"], {"title": "Final report"})

        assert [n["type"] for n in outcome.notifications] == ["task_updated"]
        assert outcome.notifications[0]["data"]["changes"]["title"] == {"from": "Write report", "to": "Final report"}

    def test_owner_completion_notifies_assignee(self, items, owner, assignee, assigned_item):
        outcome = items.complete_item(owner["id"], assigned_item["id"])

        assert [n["type"] for n in outcome.notifications] == ["task_completed"]
        assert outcome.notifications[0]["user_id"] == assignee["id"]

    def test_reopening_clears_completion(self, items, owner):
        item = items.create_item(owner["id"], {"title": "Toggle", "status": "done"}).item
        outcome = items.update_item(owner["id"], item["id"], {"status": "todo"})
        assert outcome.item["completed_at"] is None

    def test_date_order_checked_against_stored_values(self, items, owner):
        item = items.create_item(owner["id"], {"title": "Plan", "scheduled_date": "2025-02-01"}).item
        with pytest.raises(ValidationFailed):
            items.update_item(owner["id"], item["id"], {"due_date": "2025-01-30"})


class TestRecurrenceLifecycle:

    @pytest.fixture
    def series(self, items, owner):
        outcome = items.create_item(owner["id"], {
            "title": "Standup", "recurrence_preset": "daily", "scheduled_date": "2025-01-27",
        })
        return outcome.item, outcome.spawned[0]

    def test_completing_instance_spawns_next(self, items, owner, series):
        template, instance = series
        outcome = items.complete_item(owner["id"], instance["id"])

        assert outcome.item["status"] == "done"
        assert [i["scheduled_date"] for i in outcome.spawned] == ["2025-01-28"]
        assert outcome.spawned[0]["recurrence_parent_id"] == template["id"]

    def test_completing_twice_does_not_spawn_again(self, items, owner, series):
        _, instance = series
        items.complete_item(owner["id"], instance["id"])
        again = items.update_item(owner["id"], instance["id"], {"status": "done"})
        assert again.spawned == []

    def test_deleted_template_stops_series(self, items, owner, series):
        template, instance = series
        items.delete_item(owner["id"], template["id"])

        assert items.complete_item(owner["id"], instance["id"]).spawned == []

    def test_template_status_is_immutable(self, items, owner, series):
        template, _ = series
        with pytest.raises(ValidationFailed) as exc_info:
            items.update_item(owner["id"], template["id"], {"status": "done"})
        assert "status" in exc_info.value.errors

    def test_template_rule_cannot_be_cleared(self, items, owner, series):
        template, _ = series
        with pytest.raises(ValidationFailed):
            items.update_item(owner["id"], template["id"], {"recurrence_rule": None})

    def test_instance_cannot_get_rule(self, items, owner, series):
        _, instance = series
        with pytest.raises(ValidationFailed):
            items.update_item(owner["id"], instance["id"], {"recurrence_rule": "FREQ=WEEKLY"})

    def test_plain_item_becomes_template(self, items, owner):
        item = items.create_item(owner["id"], {"title": "Water plants"}).item
        outcome = items.update_item(owner["id"], item["id"], {"recurrence_rule": "FREQ=WEEKLY"})

        assert outcome.item["is_recurring_template"] is True
        assert [i["scheduled_date"] for i in outcome.spawned] == ["2025-01-27"]

    def test_listing_hides_templates(self, items, owner, series):
        template, instance = series
        listed = [i["id"] for i in items.list_items(owner["id"])]

        assert instance["id"] in listed
        assert template["id"] not in listed

    def test_listing_expires_overdue_instances(self, db, notifications, owner, series):
        _, instance = series
        later = ItemService(db, notifications, today=lambda: date(2025, 1, 29))
        later.list_items(owner["id"])

        assert db.get_item(instance["id"])["status"] == "wontdo"

    def test_generate_recurrences_skips_existing(self, items, owner, series):
        template, _ = series
        created = items.generate_recurrences(owner["id"], template["id"],
                                             {"start_date": "2025-01-27", "end_date": "2025-01-30"})

        assert [i["scheduled_date"] for i in created] == ["2025-01-28", "2025-01-29", "2025-01-30"]
        assert items.generate_recurrences(owner["id"], template["id"],
                                          {"start_date": "2025-01-27", "end_date": "2025-01-30"}) == []

    def test_generate_recurrences_access(self, items, owner, stranger, series):
        template, instance = series
        with pytest.raises(Unauthorized):
            items.generate_recurrences(stranger["id"], template["id"],
                                       {"start_date": "2025-01-27", "end_date": "2025-01-30"})
        with pytest.raises(BallisticError):
            items.generate_recurrences(owner["id"], instance["id"],
                                       {"start_date": "2025-01-27", "end_date": "2025-01-30"})


class TestCompletionExpansion:

    def _series(self, items, owner, strategy, scheduled_date):
        outcome = items.create_item(owner["id"], {
            "title": "Standup", "recurrence_preset": "daily", "scheduled_date": scheduled_date,
            "recurrence_strategy": strategy,
        })
        return outcome.item, outcome.spawned[0]

    def _open(self, db, template):
        return [(i["id"], i["scheduled_date"]) for i in db.list_instances(template["id"], open_only=True)]

    def test_expires_older_open_instance(self, db, items, owner):
        template, missed = self._series(items, owner, "expires", "2025-01-25")
        yesterday = items.generate_recurrences(owner["id"], template["id"],
                                               {"start_date": "2025-01-26", "end_date": "2025-01-26"})[0]

        outcome = items.update_item(owner["id"], yesterday["id"], {"status": "done"})

        assert [(i["id"], i["status"]) for i in outcome.resolved] == [(missed["id"], "wontdo")]
        assert [i["scheduled_date"] for i in outcome.spawned] == ["2025-01-27"]
        assert self._open(db, template) == [(outcome.spawned[0]["id"], "2025-01-27")]

    def test_carries_over_older_open_instance(self, db, items, owner):
        template, missed = self._series(items, owner, "carry_over", "2025-01-25")
        yesterday = items.generate_recurrences(owner["id"], template["id"],
                                               {"start_date": "2025-01-26", "end_date": "2025-01-26"})[0]

        outcome = items.update_item(owner["id"], yesterday["id"], {"status": "done"})

        assert [(i["id"], i["scheduled_date"]) for i in outcome.resolved] == [(missed["id"], "2025-01-27")]
        assert outcome.resolved[0]["status"] == "todo"
        assert outcome.spawned == []
        assert self._open(db, template) == [(missed["id"], "2025-01-27")]

    @pytest.mark.parametrize("strategy", ["expires", "carry_over"])
    def test_generated_future_instances_survive_completion(self, db, items, owner, strategy):
        template, first = self._series(items, owner, strategy, "2025-01-27")
        generated = items.generate_recurrences(owner["id"], template["id"],
                                               {"start_date": "2025-01-27", "end_date": "2025-01-31"})
        before = {i["id"]: i["scheduled_date"] for i in generated}

        outcome = items.complete_item(owner["id"], first["id"])

        assert outcome.resolved == []
        assert outcome.spawned == []
        remaining = self._open(db, template)
        assert [d for _, d in remaining] == ["2025-01-28", "2025-01-29", "2025-01-30", "2025-01-31"]
        assert {i: d for i, d in remaining} == before

    @pytest.mark.parametrize("strategy", ["expires", "carry_over"])
    def test_stale_instance_expires_when_next_is_already_generated(self, db, items, owner, strategy):
        template, missed = self._series(items, owner, strategy, "2025-01-25")
        generated = items.generate_recurrences(owner["id"], template["id"],
                                               {"start_date": "2025-01-26", "end_date": "2025-01-28"})

        outcome = items.complete_item(owner["id"], generated[0]["id"])

        assert [(i["id"], i["status"], i["scheduled_date"]) for i in outcome.resolved] == [
            (missed["id"], "wontdo", "2025-01-25"),
        ]
        assert outcome.spawned == []
        assert [d for _, d in self._open(db, template)] == ["2025-01-27", "2025-01-28"]


class TestSweep:

    def _template(self, items, owner, strategy):
        outcome = items.create_item(owner["id"], {
            "title": "Standup", "recurrence_preset": "daily", "scheduled_date": "2025-01-27",
            "recurrence_strategy": strategy,
        })
        return outcome.item, outcome.spawned[0]

    def test_expires_stale_instance_and_spawns_today(self, db, items, owner):
        template, instance = self._template(items, owner, "expires")

        report = items.sweep_recurrences(date(2025, 1, 29))

        assert report.to_dict() == {"templates": 1, "spawned": 1, "expired": 1, "carried_over": 0, "errors": 0}
        assert db.get_item(instance["id"])["status"] == "wontdo"
        assert "2025-01-29" in db.list_instance_dates(template["id"])

    def test_carries_over_stale_instance(self, db, items, owner):
        template, instance = self._template(items, owner, "carry_over")

        report = items.sweep_recurrences(date(2025, 1, 29))

        assert report.carried_over == 1
        assert report.spawned == 0
        carried = db.get_item(instance["id"])
        assert carried["scheduled_date"] == "2025-01-29"
        assert carried["status"] == "todo"

    def test_current_instance_left_alone(self, db, items, owner):
        template, instance = self._template(items, owner, "expires")

        report = items.sweep_recurrences(date(2025, 1, 27))

        assert report.spawned == 0
        assert report.expired == 0
        assert len(db.list_instances(template["id"])) == 1

    def test_template_without_instances_gets_one(self, db, items, owner):
        template = db.create_item({"user_id": owner["id"], "title": "Imported", "recurrence_rule": "FREQ=DAILY",
                                   "is_recurring_template": True, "scheduled_date": "2025-01-20"})

        report = items.sweep_recurrences(date(2025, 1, 27))

        assert report.spawned == 1
        assert db.list_instance_dates(template["id"]) == ["2025-01-27"]

    def test_broken_rule_counted_as_error(self, db, items, owner):
        db.create_item({"user_id": owner["id"], "title": "Broken", "recurrence_rule": "FREQ=SOMETIMES",
                        "is_recurring_template": True, "scheduled_date": "2025-01-20"})

        report = items.sweep_recurrences(date(2025, 1, 27))

        assert report.errors == 1


class TestDeleteAndReorder:

    def test_only_owner_deletes(self, items, owner, assignee, assigned_item):
        with pytest.raises(Unauthorized):
            items.delete_item(assignee["id"], assigned_item["id"])

        deleted = items.delete_item(owner["id"], assigned_item["id"])
        assert deleted["deleted_at"] is not None

    def test_restore_and_force_delete(self, db, items, owner, assignee, assigned_item):
        items.delete_item(owner["id"], assigned_item["id"])

        with pytest.raises(Unauthorized):
            items.restore_item(assignee["id"], assigned_item["id"])
        assert items.restore_item(owner["id"], assigned_item["id"])["deleted_at"] is None

        items.force_delete_item(owner["id"], assigned_item["id"])
        assert db.get_item(assigned_item["id"], include_deleted=True) is None

    def test_assignee_cannot_reorder_assigned_items(self, items, assignee, assigned_item):
        own = items.create_item(assignee["id"], {"title": "Own"}).item

        with pytest.raises(Unauthorized):
            items.reorder_items(assignee["id"], {"items": [
                {"id": own["id"], "position": 0}, {"id": assigned_item["id"], "position": 1},
            ]})
        assert items.reorder_items(assignee["id"], {"items": [{"id": own["id"], "position": 3}]}) == 1


class TestProjectsAndTags:

    def test_project_lifecycle(self, db, owner, stranger):
        projects = ProjectService(db)
        project = projects.create_project(owner["id"], {"name": "Work", "color": "#112233"})

        archived = projects.update_project(owner["id"], project["id"], {"archived": True})
        assert archived["archived_at"] is not None
        assert projects.list_projects(owner["id"]) == []

        unarchived = projects.update_project(owner["id"], project["id"], {"archived": False})
        assert unarchived["archived_at"] is None

        with pytest.raises(Unauthorized):
            projects.get_project(stranger["id"], project["id"])

        projects.delete_project(owner["id"], project["id"])
        with pytest.raises(NotFound):
            projects.get_project(owner["id"], project["id"])
        assert projects.restore_project(owner["id"], project["id"])["id"] == project["id"]

    def test_tag_names_unique(self, db, owner):
        tags = TagService(db)
        urgent = tags.create_tag(owner["id"], {"name": "urgent"})
        later = tags.create_tag(owner["id"], {"name": "later"})

        with pytest.raises(ValidationFailed):
            tags.create_tag(owner["id"], {"name": "urgent"})
        with pytest.raises(ValidationFailed):
            tags.update_tag(owner["id"], later["id"], {"name": "urgent"})

        assert tags.update_tag(owner["id"], urgent["id"], {"name": "urgent", "color": "#FF0000"})["color"] == "#FF0000"

    def test_tag_owner_only(self, db, owner, stranger):
        tags = TagService(db)
        tag = tags.create_tag(owner["id"], {"name": "urgent"})

        with pytest.raises(Unauthorized):
            tags.delete_tag(stranger["id"], tag["id"])
        with pytest.raises(NotFound):
            tags.delete_tag(owner["id"], "missing")


class TestConnections:

    def test_request_and_accept(self, db, notifications, owner, stranger):
        connections = ConnectionService(db, notifications)
        connection, created = connections.request(owner["id"], stranger["id"])

        assert connection["status"] == "pending"
        assert [n["type"] for n in created] == ["connection_request"]

        with pytest.raises(Unauthorized):
            connections.respond(owner["id"], connection["id"], True)

        accepted, created = connections.respond(stranger["id"], connection["id"], True)
        assert accepted["status"] == "accepted"
        assert created[0]["user_id"] == owner["id"]

        with pytest.raises(ValidationFailed):
            connections.respond(stranger["id"], connection["id"], False)

    def test_request_rules(self, db, notifications, owner, stranger):
        connections = ConnectionService(db, notifications)

        with pytest.raises(ValidationFailed):
            connections.request(owner["id"], owner["id"])
        with pytest.raises(NotFound):
            connections.request(owner["id"], "nobody")

        connections.request(owner["id"], stranger["id"])
        with pytest.raises(ValidationFailed):
            connections.request(stranger["id"], owner["id"])

    def test_declined_request_can_be_repeated(self, db, notifications, owner, stranger):
        connections = ConnectionService(db, notifications)
        connection, _ = connections.request(owner["id"], stranger["id"])
        connections.respond(stranger["id"], connection["id"], False)

        again, _ = connections.request(owner["id"], stranger["id"])
        assert again["status"] == "pending"


class TestTokens:

    NOW = datetime(2025, 1, 27, tzinfo=timezone.utc)

    def _service(self, db, cutoff=None):
        return TokenService(db, cutoff, now=lambda: self.NOW)

    def test_create_and_authenticate(self, db, owner):
        tokens = self._service(db)
        token, plaintext = tokens.create_token(owner["id"], {"name": "laptop", "abilities": ["api:*"]})

        assert plaintext.startswith("blt_")
        assert db.find_token_by_hash(hash_token(plaintext))["id"] == token["id"]
        found, user = tokens.authenticate(plaintext)
        assert user["id"] == owner["id"]
        assert tokens.authenticate("blt_wrong") is None
        assert tokens.authenticate(None) is None

    def test_wildcard_cannot_be_created(self, db, owner):
        with pytest.raises(ValidationFailed):
            self._service(db).create_token(owner["id"], {"name": "old", "abilities": ["*"]})

    def test_mcp_listing_includes_legacy_until_cutoff(self, db, owner):
        open_window = self._service(db, "2025-03-01T00:00:00Z")
        open_window.create_token(owner["id"], {"name": "api", "abilities": ["api:*"]})
        open_window.create_token(owner["id"], {"name": "mcp", "abilities": ["mcp:*"]})
        open_window.issue_legacy_wildcard_token(owner["id"], "legacy")

        assert {t["name"] for t in open_window.list_mcp_tokens(owner["id"])} == {"mcp", "legacy"}
        closed = self._service(db, "2025-01-01T00:00:00Z")
        assert {t["name"] for t in closed.list_mcp_tokens(owner["id"])} == {"mcp"}

        legacy = [t for t in open_window.list_tokens(owner["id"]) if t["name"] == "legacy"][0]
        assert legacy["is_legacy_wildcard"] is True

    def test_mcp_revoke_ignores_api_tokens(self, db, owner):
        tokens = self._service(db)
        api_token, _ = tokens.create_token(owner["id"], {"name": "api", "abilities": ["api:*"]})

        with pytest.raises(NotFound):
            tokens.revoke_token(owner["id"], api_token["id"], mcp_only=True)
        tokens.revoke_token(owner["id"], api_token["id"])
        assert tokens.list_tokens(owner["id"]) == []

    def test_migrate_wildcard_tokens(self, db, owner):
        tokens = self._service(db)
        legacy, _ = tokens.issue_legacy_wildcard_token(owner["id"], "legacy")

        assert [t["id"] for t in tokens.migrate_wildcard_tokens("mcp:*")] == [legacy["id"]]
        assert db.list_tokens(owner["id"])[0]["abilities"] == ["*"]

        tokens.migrate_wildcard_tokens("mcp:*", execute=True)
        assert db.list_tokens(owner["id"])[0]["abilities"] == ["mcp:*"]
        assert tokens.migrate_wildcard_tokens("mcp:*") == []

    def test_migrate_rejects_wildcard_scope(self, db):
        with pytest.raises(ValueError):
            self._service(db).migrate_wildcard_tokens("*")


class TestStats:

    @pytest.fixture
    def stats(self, db, today):
        return StatsService(db, today=lambda: today)

    def _done(self, db, user_id, day, project_id=None):
        return db.create_item({"user_id": user_id, "title": f"Done {day}", "status": "done",
                               "completed_at": f"{day}T09:30:00.000000Z", "project_id": project_id})

    def test_default_period_is_a_year(self, stats, owner):
        result = stats.user_stats(owner["id"])

        assert result["period"] == {"from": "2024-01-29", "to": "2025-01-27"}
        assert len(result["heatmap"]) == 365
        assert result["totals"] == {"completed": 0, "created": 0}
        assert result["streaks"] == {"current": 0, "longest": 0}

    def test_week_heatmap_fills_every_day(self, stats, db, owner):
        self._done(db, owner["id"], "2025-01-22")
        self._done(db, owner["id"], "2025-01-22")
        self._done(db, owner["id"], "2025-01-10")

        result = stats.user_stats(owner["id"], {"period": "week"})

        assert [day["date"] for day in result["heatmap"]][0] == "2025-01-21"
        assert len(result["heatmap"]) == 7
        assert {d["date"]: d["completed"] for d in result["heatmap"]}["2025-01-22"] == 2
        assert result["totals"]["completed"] == 2

    def test_from_overrides_period(self, stats, owner):
        result = stats.user_stats(owner["id"], {"period": "week", "from": "2025-01-01", "to": "2025-01-10"})

        assert result["period"] == {"from": "2025-01-01", "to": "2025-01-10"}
        assert len(result["heatmap"]) == 10

    def test_invalid_range(self, stats, owner):
        with pytest.raises(ValidationFailed):
            stats.user_stats(owner["id"], {"from": "2025-01-10", "to": "2025-01-01"})
        with pytest.raises(ValidationFailed):
            stats.user_stats(owner["id"], {"period": "decade"})

    def test_created_counts_use_creation_day(self, db, owner):
        now = datetime.now(timezone.utc).date()
        db.create_item({"user_id": owner["id"], "title": "Fresh"})

        result = StatsService(db, today=lambda: now).user_stats(owner["id"], {"period": "week"})

        assert result["totals"]["created"] == 1
        assert result["heatmap"][-1] == {"date": now.isoformat(), "completed": 0, "created": 1}

    def test_project_distribution(self, stats, db, owner):
        home = db.create_project(owner["id"], "Home", "#00AA00")
        self._done(db, owner["id"], "2025-01-20", home["id"])
        self._done(db, owner["id"], "2025-01-21", home["id"])
        self._done(db, owner["id"], "2025-01-21")

        distribution = stats.user_stats(owner["id"], {"period": "month"})["project_distribution"]

        assert distribution == [
            {"project_id": home["id"], "project_name": "Home", "project_color": "#00AA00", "count": 2},
            {"project_id": None, "project_name": "Inbox", "project_color": "#6b7280", "count": 1},
        ]

    def test_streak_survives_until_end_of_day(self, stats, db, owner):
        for day in ("2025-01-20", "2025-01-21", "2025-01-22", "2025-01-25", "2025-01-26"):
            self._done(db, owner["id"], day)

        assert stats.user_stats(owner["id"])["streaks"] == {"current": 2, "longest": 3}

        self._done(db, owner["id"], "2025-01-23")
        self._done(db, owner["id"], "2025-01-24")
        assert stats.user_stats(owner["id"])["streaks"] == {"current": 7, "longest": 7}

    def test_other_users_are_ignored(self, stats, db, owner, stranger):
        self._done(db, stranger["id"], "2025-01-27")

        assert stats.user_stats(owner["id"])["totals"]["completed"] == 0


class TestAdminUsers:

    @pytest.fixture
    def admin(self, db):
        return db.create_user("Ada Admin", "admin@example.com", is_admin=True)

    @pytest.fixture
    def users(self, db):
        return AdminUserService(db)

    def test_create_user_is_audited(self, db, users, admin):
        user = users.create_user(admin, {"name": "New Person", "email": "New@Example.com"})

        assert user["email"] == "new@example.com"
        assert user["is_admin"] is False
        log = db.list_audit_logs(action="user.created")[0]
        assert log["user_id"] == admin["id"]
        assert log["resource_id"] == user["id"]

    def test_create_rejects_taken_email(self, users, admin, owner):
        with pytest.raises(ValidationFailed) as exc_info:
            users.create_user(admin, {"name": "Copy", "email": "owner@example.com"})

        assert exc_info.value.errors == {"email": ["The email has already been taken."]}

    def test_list_and_search(self, users, admin, owner, stranger):
        everyone = users.list_users()
        found = users.list_users(search="STRANGER")
        admins = users.list_users(is_admin=True)

        assert everyone["total"] == 3
        assert [u["id"] for u in found["users"]] == [stranger["id"]]
        assert [u["id"] for u in admins["users"]] == [admin["id"]]
        assert found["users"][0]["items_count"] == 0

    def test_get_user_with_statistics(self, users, items, owner):
        items.create_item(owner["id"], {"title": "One"})

        detail = users.get_user(owner["id"])

        assert detail["user"]["id"] == owner["id"]
        assert detail["statistics"]["items"] == 1
        with pytest.raises(NotFound):
            users.get_user("nobody")

    def test_role_and_profile_changes_are_audited_separately(self, db, users, admin, owner):
        updated = users.update_user(admin, owner["id"], {"is_admin": True, "name": "Olivia O."})

        assert updated["is_admin"] is True
        assert updated["name"] == "Olivia O."
        role = db.list_audit_logs(action="user.role_changed")[0]
        profile = db.list_audit_logs(action="user.profile_updated")[0]
        assert role["metadata"] == {"old_values": {"is_admin": False}, "new_values": {"is_admin": True}}
        assert profile["metadata"]["old_values"] == {"name": "Olivia Owner"}

    def test_unchanged_update_writes_nothing(self, db, users, admin, owner):
        users.update_user(admin, owner["id"], {"name": "Olivia Owner"})

        assert db.list_audit_logs(user_id=admin["id"]) == []

    def test_update_rejects_taken_email(self, users, admin, owner, stranger):
        with pytest.raises(ValidationFailed):
            users.update_user(admin, owner["id"], {"email": "stranger@example.com"})

    def test_cannot_delete_or_reset_self(self, users, admin):
        with pytest.raises(Unauthorized, match="delete your own account"):
            users.delete_user(admin, admin["id"])
        with pytest.raises(Unauthorized, match="hard reset your own account"):
            users.hard_reset(admin, admin["id"])

    def test_delete_user(self, db, users, admin, owner):
        users.delete_user(admin, owner["id"])

        assert db.get_user(owner["id"]) is None
        log = db.list_audit_logs(action="user.deleted")[0]
        assert log["metadata"]["deleted_user_email"] == "owner@example.com"
        assert log["metadata"]["deleted_user_name"] == "Olivia Owner"

    def test_hard_reset_keeps_account(self, db, users, admin, owner, assigned_item):
        TokenService(db).create_token(owner["id"], {"name": "api", "abilities": ["api:*"]})
        db.create_project(owner["id"], "Work", None)

        removed = users.hard_reset(admin, owner["id"])

        assert db.get_user(owner["id"]) is not None
        assert removed["items"] == 1
        assert removed["projects"] == 1
        assert removed["connections"] == 1
        assert removed["tokens"] == 1
        assert db.get_item(assigned_item["id"]) is None
        assert db.list_audit_logs(action="user.hard_reset")[0]["metadata"]["removed"] == removed
