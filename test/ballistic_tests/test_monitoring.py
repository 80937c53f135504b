"""Tests for performance metrics and the background workers."""

import asyncio
import os
import sys
from datetime import date, timedelta
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ballistic import monitoring
from ballistic.monitoring import BackgroundTasks, PerformanceMonitor, run_recurrence_sweep
from ballistic.services import SweepReport


class TestPerformanceMonitor:

    def test_averages(self):
        monitor = PerformanceMonitor()
        assert monitor.get_average_request_time() == 0.0

        monitor.record_request_time("GET /api/items", 10.0)
        monitor.record_request_time("GET /api/items", 30.0)
        monitor.record_broadcast_time(4, 40.0)

        assert monitor.get_average_request_time() == 20.0
        assert monitor.get_average_broadcast_time() == 10.0

    def test_slow_request_logged(self, caplog):
        monitor = PerformanceMonitor()
        with caplog.at_level("WARNING", logger="ballistic.monitoring"):
            monitor.record_request_time("POST /api/items", monitoring.SLOW_REQUEST_MS + 1)
        assert "Slow request" in caplog.text

    def test_daily_stats_reset_on_new_day(self):
        monitor = PerformanceMonitor()
        monitor.increment_daily_stat("rate_limited", 3)
        assert monitor.daily_stats["rate_limited"] == 3

        monitor._last_reset_date = date.today() - timedelta(days=1)
        monitor._check_daily_reset()
        assert monitor.daily_stats["rate_limited"] == 0

    def test_system_metrics(self, db, owner):
        db.create_item({"user_id": owner["id"], "title": "One"})
        manager = MagicMock()
        manager.get_connection_count.return_value = 2
        monitor = PerformanceMonitor()

        with patch.object(monitor, "get_cpu_usage_percent", return_value=5.0):
            metrics = monitor.get_system_metrics(manager, db).to_dict()

        assert metrics["active_connections"] == 2
        assert metrics["total_items"] == 1
        assert metrics["recurring_templates"] == 0
        assert metrics["cpu_usage_percent"] == 5.0
        assert metrics["memory_usage_mb"] > 0
        assert metrics["last_sweep"] == "never"


def test_run_recurrence_sweep_records_counters():
    item_service = MagicMock()
    item_service.sweep_recurrences.return_value = SweepReport(templates=2, spawned=3, expired=1)
    spawned_before = monitoring.performance_monitor.daily_stats.get("instances_spawned", 0)

    report = run_recurrence_sweep(item_service)

    assert report == {"templates": 2, "spawned": 3, "expired": 1, "carried_over": 0, "errors": 0}
    assert monitoring.performance_monitor.daily_stats["instances_spawned"] == spawned_before + 3
    assert monitoring.performance_monitor.last_sweep_time is not None


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_zero_interval_disables_sweep(self):
        tasks = BackgroundTasks()
        item_service = MagicMock()

        await tasks.start_background_tasks(item_service, 0)
        assert len(tasks.tasks) == 1

        await tasks.stop_background_tasks()
        assert tasks.tasks == []
        item_service.sweep_recurrences.assert_not_called()

    @pytest.mark.asyncio
    async def test_sweep_runs_on_start(self):
        tasks = BackgroundTasks()
        item_service = MagicMock()
        item_service.sweep_recurrences.return_value = SweepReport(templates=1)

        await tasks.start_background_tasks(item_service, 3600)
        for _ in range(50):
            if item_service.sweep_recurrences.called:
                break
            await asyncio.sleep(0.05)
        await tasks.stop_background_tasks()

        assert len(item_service.sweep_recurrences.call_args_list) == 1

    @pytest.mark.asyncio
    async def test_sweep_errors_do_not_stop_worker(self):
        tasks = BackgroundTasks()
        item_service = MagicMock()
        item_service.sweep_recurrences.side_effect = RuntimeError("database is locked")

        await tasks.start_background_tasks(item_service, 3600)
        for _ in range(50):
            if item_service.sweep_recurrences.called:
                break
            await asyncio.sleep(0.05)

        assert not tasks.tasks[0].done()
        await tasks.stop_background_tasks()
