"""Tests for the collection service loop"""
from unittest.mock import AsyncMock, Mock
import pytest

from config import Config
from metrics.models import MetricDescriptor
from metrics.registry import ScrapeCycleResult
from app.service import ExporterService


UP = MetricDescriptor("ndb", "", "up", "Up")


def make_result(version=5.7, errors=None):
    return ScrapeCycleResult(version=version, metrics=[UP.sample(1.0)], errors=errors or {})


class TestExporterService:
    """Test collection and export orchestration"""

    def setup_method(self):
        self.config = Config(target_version=5.7)
        self.registry = Mock()
        self.registry.collect_all_async = AsyncMock(return_value=make_result())
        self.registry.get_scraper_status = Mock(return_value={})
        self.exporter = Mock()
        self.exporter.start = AsyncMock()
        self.exporter.export_metrics = AsyncMock()
        self.exporter.shutdown = AsyncMock()
        self.exporter.status = Mock(return_value={"format": "prometheus", "healthy": True})
        self.service = ExporterService(self.config, registry=self.registry, exporter=self.exporter)

    @pytest.mark.asyncio
    async def test_collect_once_exports_cycle_metrics(self):
        """Test one collection exports the cycle metrics"""
        result = await self.service.collect_once()

        self.exporter.export_metrics.assert_awaited_once_with(result.metrics)
        assert self.service.collection_count == 1
        assert self.service.collection_errors == 0
        assert self.service.last_result is result
        assert self.service.last_collection_time > 0

    @pytest.mark.asyncio
    async def test_collect_once_failure_is_counted(self):
        """Test a failed collection is counted"""
        self.registry.collect_all_async = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await self.service.collect_once()

        assert self.service.collection_errors == 1
        self.exporter.export_metrics.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_run_fixed_number_of_cycles(self):
        """Test running a fixed number of cycles"""
        self.service._sleep = AsyncMock()

        await self.service.run(cycles=3)

        assert self.registry.collect_all_async.await_count == 3
        assert self.service._sleep.await_count == 2
        self.exporter.start.assert_awaited_once()
        self.exporter.shutdown.assert_awaited_once()
        self.registry.cleanup.assert_called_once()

    @pytest.mark.asyncio
    async def test_run_survives_failed_cycle(self):
        """Test the loop survives a failed cycle"""
        self.service._sleep = AsyncMock()
        self.registry.collect_all_async = AsyncMock(side_effect=[RuntimeError("boom"), make_result()])

        await self.service.run(cycles=2)

        assert self.service.collection_count == 2
        assert self.service.collection_errors == 1
        assert self.exporter.export_metrics.await_count == 1

    @pytest.mark.asyncio
    async def test_stop_ends_loop(self):
        """Test stop ends the loop"""
        async def collect():
            self.service.stop()
            return make_result()

        self.registry.collect_all_async = AsyncMock(side_effect=collect)

        await self.service.run()

        assert self.service.collection_count == 1
        self.exporter.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_status(self):
        """Test status information"""
        await self.service.collect_once()
        self.registry.collect_all_async = AsyncMock(return_value=make_result(errors={"ndbinfo.threadstat": Exception()}))
        await self.service.collect_once()

        status = self.service.get_status()

        assert status["service"]["name"] == "ndb-metrics-exporter"
        assert status["collection"]["total_collections"] == 2
        assert status["collection"]["target_version"] == 5.7
        assert status["collection"]["up"] is True
        assert status["collection"]["failed_scrapers"] == ["ndbinfo.threadstat"]
        assert status["exporter"] == {"format": "prometheus", "healthy": True}

    def test_status_before_first_collection(self):
        """Test status before the first collection"""
        status = self.service.get_status()

        assert status["collection"]["last_collection_seconds_ago"] is None
        assert status["collection"]["up"] is None
