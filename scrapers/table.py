"""Generic scraper driven by a declarative table definition"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Union
import pymysql
import pymysql.cursors
from metrics.descriptors import DescriptorRegistry
from metrics.models import MetricDescriptor, MetricValue
from logging_config import get_logger
from .base import Scraper, ScrapeContext
from .definitions import ScraperDefinition, validate_scraper
from .errors import DecodeError, QueryError, ScrapeCancelled, ScrapeError


logger = get_logger(__name__)

DEFAULT_FETCH_BATCH_SIZE = 500

# A label comes either from a column index or from a constant string
LabelSource = Union[int, str]


def format_label_value(value) -> str:
    """Render a column value as a label value"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def to_float(value) -> float:
    """Cast a numeric column value to float.

    Accepts integers, floats, decimals and numeric text; anything else
    raises ValueError or TypeError.
    """
    if isinstance(value, (bool, int, float, Decimal)):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8")
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"unsupported value type {type(value).__name__}")


def free_amount(total: float, used: float) -> float:
    """total - used, never below zero"""
    return max(0.0, total - used)


@dataclass(frozen=True)
class _Emit:
    descriptor: MetricDescriptor
    column: str
    index: int
    subtract_index: Optional[int]
    scale: float
    nullable: bool
    label_sources: Tuple[LabelSource, ...]


@dataclass(frozen=True)
class _QueryPlan:
    sql: str
    columns: Tuple[str, ...]
    emits: Tuple[_Emit, ...]


class TableScraper(Scraper):
    """Runs the queries of one ScraperDefinition and maps rows to samples"""

    def __init__(self, definition: ScraperDefinition, registry: DescriptorRegistry,
                 namespace: str = "ndb", fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE):
        super().__init__(definition.name, definition.help, definition.min_version)
        validate_scraper(definition)

        self.definition = definition
        self.fetch_batch_size = max(1, fetch_batch_size)

        namespace = definition.namespace if definition.namespace is not None else namespace
        self._descriptors = {}
        for metric_name, metric in definition.metrics.items():
            descriptor = MetricDescriptor(
                namespace=namespace,
                subsystem=definition.subsystem,
                name=metric_name,
                help_text=metric.help,
                label_names=tuple(metric.labels),
                metric_type=metric.type,
                unit=metric.unit
            )
            self._descriptors[metric_name] = registry.register(descriptor)

        self._plans = tuple(self._build_plan(query) for query in definition.queries)

    def _build_plan(self, query) -> _QueryPlan:
        index_of = {column: i for i, column in enumerate(query.columns)}
        emits = []

        for mapping in query.values:
            descriptor = self._descriptors[mapping.metric]
            sources = []
            for label in descriptor.label_names:
                if label in query.labels:
                    sources.append(index_of[query.labels[label]])
                else:
                    sources.append(query.constant_labels[label])

            emits.append(_Emit(
                descriptor=descriptor,
                column=mapping.column,
                index=index_of[mapping.column],
                subtract_index=index_of[mapping.subtract] if mapping.subtract else None,
                scale=mapping.scale,
                nullable=mapping.nullable,
                label_sources=tuple(sources)
            ))

        return _QueryPlan(sql=query.sql, columns=tuple(query.columns), emits=tuple(emits))

    def descriptors(self) -> List[MetricDescriptor]:
        return list(self._descriptors.values())

    def scrape(self, pool, ctx: ScrapeContext) -> List[MetricValue]:
        """Run every query of the definition in order"""
        samples = []
        for plan in self._plans:
            ctx.check(self.name)
            samples.extend(self._run_query(pool, ctx, plan))
        return samples

    def _run_query(self, pool, ctx: ScrapeContext, plan: _QueryPlan) -> List[MetricValue]:
        samples = []
        try:
            # One checkout per query, released when the cursor is exhausted or on error.
            # Unbuffered cursor: rows stream in batches and cancelling the context
            # interrupts the statement on the server.
            with pool.connection(timeout=ctx.remaining(), ctx=ctx) as conn:
                with conn.cursor(pymysql.cursors.SSCursor) as cursor:
                    cursor.execute(plan.sql)
                    while True:
                        ctx.check(self.name)
                        rows = cursor.fetchmany(self.fetch_batch_size)
                        if not rows:
                            break
                        for row in rows:
                            samples.extend(self.map_row(plan, row))
        except ScrapeError:
            raise
        except (pymysql.MySQLError, OSError) as e:
            if ctx.cancelled:
                raise ScrapeCancelled(f"query interrupted: {e}", scraper=self.name) from e
            raise QueryError(f"query failed: {e}", scraper=self.name) from e

        logger.debug("Query completed", scraper=self.name, samples=len(samples), event_type="scraper_query")
        return samples

    def map_row(self, plan: _QueryPlan, row: Sequence) -> List[MetricValue]:
        """Map one result row onto samples.

        NULL in a nullable value column skips that sample; NULL anywhere else
        in a value column is a DecodeError.
        """
        if len(row) != len(plan.columns):
            raise DecodeError(
                f"expected {len(plan.columns)} columns {list(plan.columns)}, got {len(row)}",
                scraper=self.name
            )

        samples = []
        for emit in plan.emits:
            value = self._column_value(row, emit.index, plan.columns, emit.nullable)
            if value is None:
                continue

            if emit.subtract_index is not None:
                subtrahend = self._column_value(row, emit.subtract_index, plan.columns, emit.nullable)
                if subtrahend is None:
                    continue
                value = free_amount(value, subtrahend)

            labels = [
                source if isinstance(source, str) else format_label_value(row[source])
                for source in emit.label_sources
            ]
            samples.append(emit.descriptor.sample(value * emit.scale, labels))

        return samples

    def _column_value(self, row: Sequence, index: int, columns: Sequence[str],
                      nullable: bool) -> Optional[float]:
        raw = row[index]
        if raw is None:
            if nullable:
                return None
            raise DecodeError(f"column {columns[index]} is NULL", scraper=self.name)
        try:
            return to_float(raw)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"column {columns[index]}: cannot convert {raw!r} to float", scraper=self.name) from e


def build_scrapers(definitions, registry: DescriptorRegistry,
                   fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE) -> List[TableScraper]:
    """Instantiate a TableScraper for every definition in a DefinitionFile"""
    return [
        TableScraper(definition, registry, namespace=definitions.namespace, fetch_batch_size=fetch_batch_size)
        for definition in definitions.scrapers
    ]
