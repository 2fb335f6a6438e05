"""Collection loop tying the scraper registry to the configured exporter"""
import asyncio
import time
from typing import Any, Dict, Optional
from config import Config
from metrics.registry import ScraperRegistry, ScrapeCycleResult
from metrics.exporters.base import BaseExporter, ExporterFactory
from utils.database import create_pool
from logging_config import get_logger, log_metrics_collection, log_error


logger = get_logger(__name__)


class ExporterService:
    """Runs scrape cycles on an interval and hands each result to the exporter"""

    def __init__(self, config: Config, registry: Optional[ScraperRegistry] = None,
                 exporter: Optional[BaseExporter] = None):
        self.config = config
        self.registry = registry if registry is not None else ScraperRegistry(config, create_pool(config))
        self.exporter = exporter if exporter is not None else ExporterFactory.create_exporter(config)

        # Collection state
        self.start_time = time.time()
        self.last_collection_time = 0.0
        self.collection_count = 0
        self.collection_errors = 0
        self.last_result: Optional[ScrapeCycleResult] = None
        self._stop = asyncio.Event()

    async def start(self) -> None:
        await self.exporter.start()

    async def collect_once(self) -> ScrapeCycleResult:
        """Run one scrape cycle and export its samples"""
        start_time = time.time()
        self.collection_count += 1

        try:
            logger.debug("Starting metrics collection", event_type="collection_start")
            result = await self.registry.collect_all_async()
            await self.exporter.export_metrics(result.metrics)
        except Exception as e:
            log_error(logger, e, {"component": "metrics_collection", "collection_count": self.collection_count})
            self.collection_errors += 1
            raise

        self.last_result = result
        self.last_collection_time = time.time()
        log_metrics_collection(logger, len(result.metrics), self.last_collection_time - start_time,
                               errors=result.error_count, version=result.version)
        return result

    async def run(self, cycles: Optional[int] = None) -> None:
        """Collect until stopped, or for `cycles` iterations when given"""
        await self.start()
        completed = 0
        try:
            while not self._stop.is_set():
                try:
                    await self.collect_once()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # Already logged; keep the loop alive
                    pass

                completed += 1
                if cycles is not None and completed >= cycles:
                    break
                await self._sleep(self.config.collection_interval)
        finally:
            await self.shutdown()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        """Ask the loop to finish after the current cycle"""
        logger.info("Stop requested", event_type="service_stop")
        self._stop.set()

    async def shutdown(self) -> None:
        logger.info("Shutting down metrics exporter", event_type="service_shutdown")
        await self.exporter.shutdown()
        self.registry.cleanup()

    def get_status(self) -> Dict[str, Any]:
        """Detailed status information"""
        age = time.time() - self.last_collection_time if self.last_collection_time > 0 else None
        last = self.last_result

        return {
            "service": {
                "name": self.config.service_name,
                "version": self.config.service_version,
                "instance": self.config.get_instance_id(),
                "uptime_seconds": round(time.time() - self.start_time, 1)
            },
            "collection": {
                "interval_seconds": self.config.collection_interval,
                "last_collection_seconds_ago": round(age, 1) if age is not None else None,
                "total_collections": self.collection_count,
                "collection_errors": self.collection_errors,
                "target_version": last.version if last else None,
                "up": last.up if last else None,
                "failed_scrapers": sorted(last.errors) if last else []
            },
            "scrapers": self.registry.get_scraper_status(),
            "exporter": self.exporter.status()
        }
