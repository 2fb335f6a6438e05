"""Scraper registry and scrape-cycle harness"""
import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
from .descriptors import DescriptorConflictError, DescriptorRegistry, UnregisteredDescriptorError
from .models import LabelCardinalityError, MetricDescriptor, MetricType, MetricValue
from scrapers.base import Scraper, ScrapeContext
from scrapers.definitions import load_definitions
from scrapers.errors import ScrapeCancelled, ScrapeError
from scrapers.table import build_scrapers
from utils.database import detect_version
from logging_config import get_logger


logger = get_logger(__name__)

# Errors that mean a declaration is wrong; never isolated per scraper
INVARIANT_ERRORS = (LabelCardinalityError, DescriptorConflictError, UnregisteredDescriptorError)

CONNECTION_ERROR_KEY = "connection"


class CycleState(Enum):
    """Harness state within one scrape cycle"""
    IDLE = "idle"
    SELECTING = "selecting"
    RUNNING = "running"
    AGGREGATING = "aggregating"


@dataclass
class ScraperOutcome:
    """What one scraper produced in one cycle"""
    name: str
    metrics: List[MetricValue]
    error: Optional[Exception]
    duration: float

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class ScrapeCycleResult:
    """Aggregated output of one scrape cycle"""
    version: Optional[float] = None
    metrics: List[MetricValue] = field(default_factory=list)
    errors: Dict[str, Exception] = field(default_factory=dict)
    durations: Dict[str, float] = field(default_factory=dict)
    selected: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def up(self) -> bool:
        return self.version is not None

    @property
    def error_count(self) -> int:
        return len(self.errors)


class ScraperRegistry:
    """Central registry for all scrapers; runs scrape cycles against one connection pool"""

    def __init__(self, config=None, pool=None, scrapers: Optional[List[Scraper]] = None,
                 descriptors: Optional[DescriptorRegistry] = None):
        self.config = config
        self.pool = pool
        self.descriptors = descriptors if descriptors is not None else DescriptorRegistry()
        self.scrapers: Dict[str, Scraper] = {}
        self.state = CycleState.IDLE

        self.scrapes_total = 0
        self.scrape_errors_total: Dict[str, int] = {}
        self.last_errors: Dict[str, str] = {}

        max_workers = getattr(config, 'pool_size', None) or 4
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scraper")
        self._exporter_descriptors = self._register_exporter_descriptors()

        if scrapers is None:
            self._load_scrapers()
        else:
            for scraper in scrapers:
                self.register_scraper(scraper)

    def _register_exporter_descriptors(self) -> Dict[str, MetricDescriptor]:
        namespace = getattr(self.config, 'metric_namespace', None) or "ndb"
        declarations = {
            "up": ("", "up", "Whether the SQL node could be queried (1 = yes, 0 = no)", (), MetricType.GAUGE),
            "scrapes_total": ("exporter", "scrapes_total", "Total number of scrape cycles", (), MetricType.COUNTER),
            "scrape_errors_total": ("exporter", "scrape_errors_total",
                                    "Total number of failed scrapes per scraper", ("collector",), MetricType.COUNTER),
            "last_scrape_error": ("exporter", "last_scrape_error",
                                  "Whether the last scrape cycle had any error (1 = error, 0 = success)", (), MetricType.GAUGE),
            "collector_duration": ("exporter", "collector_duration_seconds",
                                   "Duration of each scraper in the last cycle", ("collector",), MetricType.GAUGE),
            "collector_success": ("exporter", "collector_success",
                                  "Whether each scraper succeeded in the last cycle", ("collector",), MetricType.GAUGE),
            "target_version": ("exporter", "target_version",
                               "Server version used to select scrapers", (), MetricType.GAUGE),
        }

        registered = {}
        for key, (subsystem, name, help_text, labels, metric_type) in declarations.items():
            registered[key] = self.descriptors.register(MetricDescriptor(
                namespace=namespace,
                subsystem=subsystem,
                name=name,
                help_text=help_text,
                label_names=labels,
                metric_type=metric_type,
                unit="s" if name.endswith("_seconds") else "1"
            ))
        return registered

    def _load_scrapers(self) -> None:
        """Build table scrapers from the configured definitions file"""
        path = getattr(self.config, 'scraper_definitions', None)
        batch_size = getattr(self.config, 'fetch_batch_size', None) or 500
        definitions = load_definitions(path)

        for scraper in build_scrapers(definitions, self.descriptors, fetch_batch_size=batch_size):
            self.register_scraper(scraper)

        if hasattr(self.config, 'enabled_scrapers'):
            unknown = [name for name in self.config.enabled_scrapers if name not in self.scrapers]
            if unknown:
                logger.warning("Enabled scrapers not defined", scrapers=unknown, available=self.list_scrapers())

    def register_scraper(self, scraper: Scraper) -> None:
        """Register a scraper and its descriptors"""
        if not isinstance(scraper, Scraper):
            raise ValueError("Scraper must inherit from Scraper")
        if scraper.name in self.scrapers:
            raise ValueError(f"Scraper {scraper.name} is already registered")

        for descriptor in scraper.descriptors():
            self.descriptors.register(descriptor)

        self.scrapers[scraper.name] = scraper
        logger.debug("Registered scraper", scraper=scraper.name, min_version=scraper.min_version)

    def get_scraper(self, name: str) -> Optional[Scraper]:
        return self.scrapers.get(name)

    def list_scrapers(self) -> List[str]:
        return list(self.scrapers.keys())

    def is_enabled(self, scraper: Scraper) -> bool:
        if hasattr(self.config, 'is_scraper_enabled'):
            return self.config.is_scraper_enabled(scraper.name)
        return True

    def select(self, version: float) -> List[Scraper]:
        """Enabled scrapers whose minimum version is at most `version`"""
        return [
            scraper for scraper in self.scrapers.values()
            if self.is_enabled(scraper) and scraper.supports(version)
        ]

    def collect_all(self) -> ScrapeCycleResult:
        """Run one scrape cycle (synchronous)"""
        return asyncio.run(self.collect_all_async())

    async def collect_all_async(self) -> ScrapeCycleResult:
        """Run one scrape cycle: select by version, run concurrently, aggregate.

        A failing scraper contributes no samples; the others are unaffected.
        The harness is back in IDLE when this returns or raises.
        """
        if self.state is not CycleState.IDLE:
            raise RuntimeError(f"Scrape cycle already in progress (state={self.state.value})")

        started = time.monotonic()
        timeout = getattr(self.config, 'scrape_timeout', None)
        ctx = ScrapeContext(timeout)
        result = ScrapeCycleResult()
        self.scrapes_total += 1

        try:
            self.state = CycleState.SELECTING
            result.version = await self._resolve_version(ctx, result)

            outcomes: List[ScraperOutcome] = []
            if result.version is not None:
                selected = self.select(result.version)
                result.selected = [scraper.name for scraper in selected]
                result.skipped = [name for name in self.scrapers if name not in result.selected]

                self.state = CycleState.RUNNING
                logger.debug("Starting scrape cycle", version=result.version, scrapers=result.selected,
                             event_type="cycle_start")
                outcomes = await self._run_scrapers(selected, ctx)

            self.state = CycleState.AGGREGATING
            self._aggregate(outcomes, result)
            result.duration = time.monotonic() - started
            result.metrics.extend(self._exporter_metrics(result, outcomes))
            return result
        finally:
            ctx.cancel()
            self.state = CycleState.IDLE

    async def _resolve_version(self, ctx: ScrapeContext, result: ScrapeCycleResult) -> Optional[float]:
        configured = getattr(self.config, 'target_version', None)
        if configured is not None:
            return float(configured)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, detect_version, self.pool, ctx.remaining())
        except ScrapeError as e:
            result.errors[CONNECTION_ERROR_KEY] = e
            logger.error("Version detection failed", error=str(e), event_type="connection_error")
            return None

    async def _run_scrapers(self, selected: List[Scraper], ctx: ScrapeContext) -> List[ScraperOutcome]:
        if not selected:
            return []

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        tasks = {
            asyncio.ensure_future(self._collect_single_async(loop, scraper, ctx)): scraper
            for scraper in selected
        }

        done, pending = await asyncio.wait(tasks.keys(), timeout=ctx.remaining())
        if pending:
            # Interrupts the queries still running; KILL QUERY blocks, so keep it off the loop
            await loop.run_in_executor(None, ctx.cancel)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for task, scraper in tasks.items():
            if task in done:
                outcomes.append(task.result())
            else:
                error = ScrapeCancelled("scrape deadline exceeded", scraper=scraper.name)
                logger.error("Scraper timed out", scraper=scraper.name, event_type="scrape_timeout")
                outcomes.append(ScraperOutcome(scraper.name, [], error, time.monotonic() - started))
        return outcomes

    async def _collect_single_async(self, loop, scraper: Scraper, ctx: ScrapeContext) -> ScraperOutcome:
        """Run one scraper in the executor and isolate its failure"""
        start = time.monotonic()
        try:
            metrics = await loop.run_in_executor(self._executor, scraper.scrape, self.pool, ctx)
            self._check_registered(metrics)
            duration = time.monotonic() - start
            logger.debug("Scraper completed", scraper=scraper.name, metrics_count=len(metrics),
                         duration_seconds=round(duration, 3), event_type="scrape_complete")
            return ScraperOutcome(scraper.name, metrics, None, duration)
        except INVARIANT_ERRORS:
            raise
        except ScrapeError as e:
            if e.scraper is None:
                e.scraper = scraper.name
            logger.error("Scraper failed", scraper=scraper.name, error=str(e),
                         error_type=type(e).__name__, event_type="scrape_error")
            return ScraperOutcome(scraper.name, [], e, time.monotonic() - start)
        except Exception as e:
            logger.error("Scraper raised unexpectedly", scraper=scraper.name, error=str(e),
                         event_type="scrape_error", exc_info=True)
            return ScraperOutcome(scraper.name, [], e, time.monotonic() - start)

    def _check_registered(self, metrics: List[MetricValue]) -> None:
        for metric in metrics:
            if metric.name not in self.descriptors:
                raise UnregisteredDescriptorError(f"Sample for unregistered metric {metric.name}")

    def _aggregate(self, outcomes: List[ScraperOutcome], result: ScrapeCycleResult) -> None:
        for outcome in outcomes:
            result.durations[outcome.name] = outcome.duration
            if outcome.success:
                result.metrics.extend(outcome.metrics)
            else:
                result.errors[outcome.name] = outcome.error
                self.scrape_errors_total[outcome.name] = self.scrape_errors_total.get(outcome.name, 0) + 1

        self.last_errors = {name: str(error) for name, error in result.errors.items()}

    def _exporter_metrics(self, result: ScrapeCycleResult, outcomes: List[ScraperOutcome]) -> List[MetricValue]:
        d = self._exporter_descriptors
        metrics = [
            d["up"].sample(1.0 if result.up else 0.0),
            d["scrapes_total"].sample(float(self.scrapes_total)),
            d["last_scrape_error"].sample(1.0 if result.errors else 0.0),
        ]
        if result.version is not None:
            metrics.append(d["target_version"].sample(result.version))

        for outcome in outcomes:
            metrics.append(d["collector_duration"].sample(outcome.duration, [outcome.name]))
            metrics.append(d["collector_success"].sample(1.0 if outcome.success else 0.0, [outcome.name]))
            metrics.append(d["scrape_errors_total"].sample(
                float(self.scrape_errors_total.get(outcome.name, 0)), [outcome.name]))
        return metrics

    def get_scraper_status(self) -> Dict[str, Dict]:
        """Get status information for all scrapers"""
        status = {}
        for name, scraper in self.scrapers.items():
            status[name] = {
                "enabled": self.is_enabled(scraper),
                "class": scraper.__class__.__name__,
                "help": scraper.help_text,
                "min_version": scraper.min_version,
                "metrics": [descriptor.fq_name for descriptor in scraper.descriptors()],
                "errors_total": self.scrape_errors_total.get(name, 0),
                "last_error": self.last_errors.get(name)
            }
        return status

    def cleanup(self):
        """Release the executor and the connection pool"""
        self._executor.shutdown(wait=False)
        if self.pool is not None:
            try:
                self.pool.close()
            except Exception as e:
                logger.error("Failed to close connection pool", error=str(e))
