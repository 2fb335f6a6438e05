"""Declarative scraper definitions loaded from YAML"""
from pathlib import Path
from typing import Dict, List, Optional, Union
import yaml
from pydantic import BaseModel, Field, ValidationError, validator
from metrics.models import MetricType
from .errors import DefinitionError


DEFAULT_DEFINITIONS_FILE = Path(__file__).parent / "ndbinfo.yaml"


class ValueMapping(BaseModel):
    """Maps one result column (optionally derived) onto a metric"""
    metric: str
    column: str
    subtract: Optional[str] = Field(default=None, description="Column subtracted from `column`, result clamped at zero")
    scale: float = Field(default=1.0, gt=0, description="Multiplier applied last, e.g. page size in bytes")
    nullable: bool = Field(default=False, description="Skip the sample instead of failing when the column is NULL")


class QueryDefinition(BaseModel):
    """One SQL query and the mapping of its columns"""
    sql: str
    columns: List[str]
    labels: Dict[str, str] = Field(default_factory=dict, description="Label name -> column")
    constant_labels: Dict[str, str] = Field(default_factory=dict, description="Label name -> fixed value")
    values: List[ValueMapping]

    @validator('columns')
    def columns_unique(cls, v):
        if len(set(v)) != len(v):
            raise ValueError(f"duplicate column names in {v}")
        return v


class MetricDefinition(BaseModel):
    """Descriptor declaration"""
    help: str
    labels: List[str] = Field(default_factory=list)
    type: MetricType = MetricType.GAUGE
    unit: str = "1"


class ScraperDefinition(BaseModel):
    """Everything one table scraper needs"""
    name: str
    help: str = ""
    min_version: float = 0.0
    namespace: Optional[str] = None
    subsystem: str = ""
    metrics: Dict[str, MetricDefinition]
    queries: List[QueryDefinition]

    @validator('name')
    def name_not_empty(cls, v):
        if not v.strip():
            raise ValueError("scraper name must not be empty")
        return v


class DefinitionFile(BaseModel):
    """Top-level document of a definitions file"""
    namespace: str = "ndb"
    scrapers: List[ScraperDefinition]


def validate_scraper(definition: ScraperDefinition) -> None:
    """Check cross references inside one scraper definition"""
    name = definition.name

    if not definition.queries:
        raise DefinitionError(f"{name}: at least one query is required")

    for index, query in enumerate(definition.queries):
        where = f"{name} query #{index}"
        columns = set(query.columns)

        overlap = set(query.labels) & set(query.constant_labels)
        if overlap:
            raise DefinitionError(f"{where}: labels {sorted(overlap)} bound both to a column and a constant")

        for label, column in query.labels.items():
            if column not in columns:
                raise DefinitionError(f"{where}: label {label} refers to unknown column {column}")

        bound = set(query.labels) | set(query.constant_labels)

        if not query.values:
            raise DefinitionError(f"{where}: no values mapped")

        for mapping in query.values:
            metric = definition.metrics.get(mapping.metric)
            if metric is None:
                raise DefinitionError(f"{where}: unknown metric {mapping.metric}")
            for column in filter(None, (mapping.column, mapping.subtract)):
                if column not in columns:
                    raise DefinitionError(f"{where}: metric {mapping.metric} refers to unknown column {column}")
            missing = [label for label in metric.labels if label not in bound]
            if missing:
                raise DefinitionError(f"{where}: metric {mapping.metric} has unbound labels {missing}")


def parse_definitions(document: dict) -> DefinitionFile:
    """Validate an already-parsed definitions document"""
    try:
        definitions = DefinitionFile(**(document or {}))
    except (ValidationError, TypeError) as e:
        raise DefinitionError(f"Invalid scraper definitions: {e}") from e

    seen = set()
    for definition in definitions.scrapers:
        if definition.name in seen:
            raise DefinitionError(f"Duplicate scraper name: {definition.name}")
        seen.add(definition.name)
        validate_scraper(definition)

    return definitions


def load_definitions(path: Optional[Union[str, Path]] = None) -> DefinitionFile:
    """Load and validate a YAML definitions file"""
    path = Path(path) if path else DEFAULT_DEFINITIONS_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise DefinitionError(f"Cannot read scraper definitions from {path}: {e}") from e

    return parse_definitions(document)
