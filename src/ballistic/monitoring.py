"""
Performance Monitoring and Background Tasks

Collects request and broadcast timings, daily counters and process metrics
(psutil), and runs the background workers that sit alongside the API: the
periodic recurrence sweep and memory trend tracking.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import anyio
import psutil

METRICS_HISTORY_SIZE = 1000
MEMORY_MONITORING_INTERVAL = 60
SLOW_REQUEST_MS = 250

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


@dataclass
class SystemMetrics:
    """Current system performance metrics."""
    active_connections: int
    total_items: int
    recurring_templates: int
    avg_request_time_ms: float
    avg_broadcast_time_ms: float
    instances_spawned_today: int
    instances_expired_today: int
    rate_limited_today: int
    memory_usage_mb: float
    cpu_usage_percent: float
    last_sweep: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """
    Collects timings and counters for the admin dashboard.

    Features:
    - Request latency history per route
    - WebSocket broadcast latency per connection
    - Daily counters reset at UTC midnight
    - Process memory and CPU via psutil
    """

    def __init__(self):
        self.request_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.broadcast_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.last_sweep_time: Optional[datetime] = None
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = datetime.now(timezone.utc).date()

    def record_request_time(self, operation: str, duration_ms: float):
        self.request_times.append(PerformanceMetric(datetime.now(timezone.utc), duration_ms, operation))
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"Slow request: {operation} took {duration_ms:.2f}ms")

    def record_broadcast_time(self, connection_count: int, duration_ms: float):
        per_connection_ms = duration_ms / max(connection_count, 1)
        self.broadcast_times.append(PerformanceMetric(
            datetime.now(timezone.utc), per_connection_ms, f"broadcast_to_{connection_count}_connections"))

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_request_time(self) -> float:
        if not self.request_times:
            return 0.0
        return sum(m.value for m in self.request_times) / len(self.request_times)

    def get_average_broadcast_time(self) -> float:
        if not self.broadcast_times:
            return 0.0
        return sum(m.value for m in self.broadcast_times) / len(self.broadcast_times)

    def get_memory_usage_mb(self) -> float:
        """Current process RSS in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=0.1)
        except Exception as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def update_sweep_time(self):
        self.last_sweep_time = datetime.now(timezone.utc)

    def get_system_metrics(self, connection_manager, database) -> SystemMetrics:
        """
        Collect system metrics.

        Args:
            connection_manager: WebSocket connection manager instance
            database: BallisticDatabase instance
        """
        self._check_daily_reset()
        try:
            stats = database.get_admin_stats()
            total_items = stats["items"]["total"]
            recurring_templates = stats["recurring_templates"]
        except Exception as e:
            logger.error(f"Failed to collect item counts: {e}")
            total_items = recurring_templates = 0

        return SystemMetrics(
            active_connections=connection_manager.get_connection_count() if connection_manager else 0,
            total_items=total_items,
            recurring_templates=recurring_templates,
            avg_request_time_ms=self.get_average_request_time(),
            avg_broadcast_time_ms=self.get_average_broadcast_time(),
            instances_spawned_today=self.daily_stats.get("instances_spawned", 0),
            instances_expired_today=self.daily_stats.get("instances_expired", 0),
            rate_limited_today=self.daily_stats.get("rate_limited", 0),
            memory_usage_mb=self.get_memory_usage_mb(),
            cpu_usage_percent=self.get_cpu_usage_percent(),
            last_sweep=self.last_sweep_time.isoformat() if self.last_sweep_time else "never",
        )


performance_monitor = PerformanceMonitor()


def run_recurrence_sweep(item_service) -> Dict[str, int]:
    """Run one sweep and record its counters."""
    start_time = time.time()
    report = item_service.sweep_recurrences()
    performance_monitor.increment_daily_stat("instances_spawned", report.spawned)
    performance_monitor.increment_daily_stat("instances_expired", report.expired)
    performance_monitor.update_sweep_time()
    performance_monitor.record_request_time("recurrence_sweep", (time.time() - start_time) * 1000)
    return report.to_dict()


class BackgroundTasks:
    """
    Background workers running alongside the FastAPI application.

    The recurrence sweep runs in a worker thread so the event loop keeps
    serving requests while SQLite is busy.
    """

    def __init__(self):
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event: Optional[asyncio.Event] = None

    async def start_background_tasks(self, item_service, sweep_interval_seconds: int):
        """
        Start the sweep and memory workers.

        Args:
            item_service: ItemService used for recurrence sweeps
            sweep_interval_seconds: Seconds between sweeps; 0 disables the sweep worker
        """
        logger.info("Starting background tasks...")
        self.shutdown_event = asyncio.Event()
        self.tasks = []

        if sweep_interval_seconds > 0:
            self.tasks.append(asyncio.create_task(
                self._recurrence_sweep_worker(item_service, sweep_interval_seconds)))
        self.tasks.append(asyncio.create_task(self._memory_monitoring_worker()))

        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Stop all background tasks gracefully."""
        logger.info("Stopping background tasks...")
        if self.shutdown_event is not None:
            self.shutdown_event.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(asyncio.gather(*self.tasks, return_exceptions=True), timeout=10.0)
                logger.info("All background tasks stopped")
            except asyncio.TimeoutError:
                logger.warning("Background task shutdown timeout")
        self.tasks = []

    async def _wait_or_shutdown(self, timeout: float) -> bool:
        """Sleep for ``timeout`` seconds; True when shutdown was requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _recurrence_sweep_worker(self, item_service, interval: int):
        logger.info(f"Recurrence sweep worker started (every {interval}s)")

        while not self.shutdown_event.is_set():
            try:
                report = await anyio.to_thread.run_sync(run_recurrence_sweep, item_service)
                if report["spawned"] or report["expired"] or report["carried_over"]:
                    logger.info(f"Recurrence sweep: {report}")
            except Exception as e:
                logger.error(f"Recurrence sweep worker error: {e}")

            if await self._wait_or_shutdown(interval):
                break

    async def _memory_monitoring_worker(self):
        """Track memory trend and warn on sustained growth."""
        logger.info("Memory monitoring worker started")
        memory_history = deque(maxlen=60)

        while not self.shutdown_event.is_set():
            try:
                current_memory = performance_monitor.get_memory_usage_mb()
                memory_history.append(current_memory)

                if len(memory_history) >= 30:
                    avg_recent = sum(list(memory_history)[-10:]) / 10
                    avg_older = sum(list(memory_history)[-30:-10]) / 20
                    growth_rate = (avg_recent - avg_older) / avg_older * 100 if avg_older else 0.0
                    if growth_rate > 20:
                        logger.warning(
                            f"Potential memory leak detected: {growth_rate:.1f}% growth "
                            f"(current: {current_memory:.1f}MB)"
                        )
            except Exception as e:
                logger.error(f"Memory monitoring worker error: {e}")

            if await self._wait_or_shutdown(MEMORY_MONITORING_INTERVAL):
                break


background_tasks = BackgroundTasks()
