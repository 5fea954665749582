"""Unit tests for health checks."""

from pathlib import Path

import pytest

from taskrelay.core.config import Settings
from taskrelay.core.models import now_ms
from taskrelay.monitoring.health_check import HealthChecker, check_health
from taskrelay.storage.file_store import FileStore
from taskrelay.storage.memory_store import MemoryStore


class BrokenStore(MemoryStore):
    """Store whose writes always fail."""

    async def put(self, kind, key, value):
        raise OSError("read-only file system")


class TestHealthChecker:
    """Tests for HealthChecker."""

    @pytest.mark.asyncio
    async def test_storage_probe(self, memory_store: MemoryStore, settings: Settings) -> None:
        check = await HealthChecker(memory_store, settings=settings).check_storage()

        assert check["status"] == "healthy"
        assert await memory_store.list("health") == []

    @pytest.mark.asyncio
    async def test_broken_storage_is_unhealthy(self, settings: Settings) -> None:
        health = await check_health(BrokenStore(), settings)

        assert health["status"] == "unhealthy"
        storage = next(c for c in health["checks"] if c["name"] == "storage")
        assert "read-only" in storage["message"]

    @pytest.mark.asyncio
    async def test_stale_task_degrades(
        self, memory_store: MemoryStore, tracker, settings: Settings
    ) -> None:
        await tracker.create("stuck")
        await tracker.mark_running("stuck")
        checker = HealthChecker(memory_store, tracker, settings=settings)

        fresh = await checker.check_stale_tasks()
        stale = await checker.check_stale_tasks(now=now_ms() + 2 * 60 * 60 * 1000)

        assert fresh["status"] == "healthy"
        assert stale["status"] == "degraded"
        assert stale["details"]["task_ids"] == ["stuck"]

    @pytest.mark.asyncio
    async def test_registry_check(self, memory_store: MemoryStore, registry, settings) -> None:
        check = await HealthChecker(memory_store, registry=registry, settings=settings).check_registry()

        assert check["status"] == "healthy"
        assert check["details"] == {"running": 0, "finished_cached": 0}

    @pytest.mark.asyncio
    async def test_file_backend_reports_free_space(self, tmp_path: Path) -> None:
        settings = Settings(relay_storage_backend="file", relay_data_dir=str(tmp_path / "data"))

        health = await check_health(FileStore(tmp_path / "data"), settings)

        storage = health["checks"][0]
        assert {c["name"] for c in health["checks"]} == {"storage", "stale_tasks", "registry"}
        assert storage["details"]["root"] == str(tmp_path / "data")
        assert storage["details"]["free_mb"] >= 0

    @pytest.mark.asyncio
    async def test_low_free_space_degrades(self, tmp_path: Path, settings: Settings) -> None:
        checker = HealthChecker(FileStore(tmp_path / "data"), settings=settings, min_free_mb=10**12)

        check = await checker.check_storage()
        health = await checker.check_all()

        assert check["status"] == "degraded"
        assert "MB free under" in check["message"]
        assert health["status"] == "degraded"

    @pytest.mark.asyncio
    async def test_memory_store_has_no_disk_details(self, memory_store: MemoryStore, settings) -> None:
        check = await HealthChecker(memory_store, settings=settings).check_storage()

        assert "details" not in check
