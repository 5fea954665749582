"""Health check utilities for TaskRelay."""

import shutil
from typing import Any

from loguru import logger

from taskrelay.core.config import Settings, get_settings
from taskrelay.core.models import TaskStatus, generate_id, now_ms
from taskrelay.execution.registry import AsyncTaskRegistry
from taskrelay.execution.tracker import TaskStatusTracker
from taskrelay.storage.base import DurableStore

HEALTH_KIND = "health"

# "unknown" ranks between healthy and degraded.
SEVERITY = {"healthy": 0, "unknown": 1, "degraded": 2, "unhealthy": 3}


class HealthChecker:
    """
    System health checker.

    Verifies that the durable store is writable, that no task has been
    running for suspiciously long, and that the async registry is not
    overloaded.

    Example:
        >>> checker = HealthChecker(store, tracker, registry)
        >>> health = await checker.check_all()
        >>> health["status"]
        'healthy'
    """

    def __init__(
        self,
        store: DurableStore,
        tracker: TaskStatusTracker | None = None,
        registry: AsyncTaskRegistry | None = None,
        settings: Settings | None = None,
        max_running_handles: int = 100,
        min_free_mb: int = 1024,
    ) -> None:
        self.store = store
        self.tracker = tracker or TaskStatusTracker(store)
        self.registry = registry
        self.settings = settings or get_settings()
        self.max_running_handles = max_running_handles
        self.min_free_mb = min_free_mb

    async def check_storage(self) -> dict[str, Any]:
        """
        Write, read back and delete a probe record.

        For stores rooted on disk, the free space under that root is
        reported as well and low space degrades the check.

        Returns:
            Health check result.
        """
        key = f"probe-{generate_id()}"
        try:
            await self.store.put(HEALTH_KIND, key, {"probe": key})
            value = await self.store.get(HEALTH_KIND, key)
            await self.store.delete(HEALTH_KIND, key)
        except Exception as e:
            logger.error(f"Storage health check failed: {e}")
            return {"name": "storage", "status": "unhealthy", "message": str(e)}

        if value != {"probe": key}:
            return {
                "name": "storage",
                "status": "unhealthy",
                "message": "Probe record did not round-trip",
            }

        check = {
            "name": "storage",
            "status": "healthy",
            "message": f"{type(self.store).__name__} read/write OK",
        }
        root = getattr(self.store, "root", None)
        if root is None:
            return check
        try:
            free_mb = shutil.disk_usage(root).free // (1024**2)
        except OSError as e:
            logger.warning(f"Could not read free space under {root}: {e}")
            return check
        check["details"] = {"root": str(root), "free_mb": free_mb}
        if free_mb < self.min_free_mb:
            check["status"] = "degraded"
            check["message"] = f"Only {free_mb}MB free under {root}"
        return check

    async def check_stale_tasks(self, now: int | None = None) -> dict[str, Any]:
        """
        Report tasks that have been running longer than the stale threshold.

        Returns:
            Health check result.
        """
        current = now if now is not None else now_ms()
        threshold = self.settings.relay_stale_task_threshold_ms
        try:
            running = [
                r for r in await self.tracker.list_active() if r.status == TaskStatus.RUNNING
            ]
            stale = [r.task_id for r in running if current - r.start_time_ms > threshold]

            if stale:
                return {
                    "name": "stale_tasks",
                    "status": "degraded",
                    "message": f"{len(stale)} task(s) running longer than {threshold}ms",
                    "details": {"task_ids": stale},
                }
            return {
                "name": "stale_tasks",
                "status": "healthy",
                "message": f"{len(running)} task(s) running",
            }

        except Exception as e:
            return {
                "name": "stale_tasks",
                "status": "unknown",
                "message": str(e),
            }

    async def check_registry(self) -> dict[str, Any]:
        """Number of in-flight async tasks."""
        if self.registry is None:
            return {
                "name": "registry",
                "status": "healthy",
                "message": "No async registry attached",
            }

        running = len(self.registry.running_tasks())
        if running > self.max_running_handles:
            status = "degraded"
            message = f"{running} async tasks in flight (limit {self.max_running_handles})"
        else:
            status = "healthy"
            message = f"{running} async tasks in flight"

        return {
            "name": "registry",
            "status": status,
            "message": message,
            "details": self.registry.get_statistics(),
        }

    async def check_all(self) -> dict[str, Any]:
        """Run every check; the overall status is the worst one reported."""
        logger.info("Running health checks")
        checks = [
            await self.check_storage(),
            await self.check_stale_tasks(),
            await self.check_registry(),
        ]
        overall = max((c["status"] for c in checks), key=SEVERITY.__getitem__)
        return {"status": overall, "checked_at_ms": now_ms(), "checks": checks}


async def check_health(store: DurableStore, settings: Settings | None = None) -> dict[str, Any]:
    """
    Convenience function to run health checks against ``store``.

    Returns:
        Health check results.
    """
    checker = HealthChecker(store, settings=settings)
    return await checker.check_all()
