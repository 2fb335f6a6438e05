"""Metric data models"""
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple
from enum import Enum


class MetricType(Enum):
    """Prometheus/OpenTelemetry metric types"""
    COUNTER = "counter"
    GAUGE = "gauge"


class ExportFormat(Enum):
    """Supported export formats"""
    PROMETHEUS = "prometheus"
    OTLP = "otlp"


class LabelCardinalityError(ValueError):
    """Label values do not match the descriptor's declared label names"""


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join non-empty name parts with underscores"""
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@dataclass
class MetricValue:
    """Single metric sample"""
    name: str
    value: float
    labels: Dict[str, str]
    help_text: str
    metric_type: MetricType = MetricType.GAUGE
    unit: str = "1"
    timestamp: Optional[float] = None

    def __post_init__(self):
        # Ensure labels is never None
        if self.labels is None:
            self.labels = {}

    def to_prometheus_line(self) -> str:
        """Convert to Prometheus exposition format"""
        labels_str = ""
        if self.labels:
            label_pairs = [f'{k}="{_escape_label_value(str(v))}"' for k, v in self.labels.items()]
            labels_str = "{" + ",".join(label_pairs) + "}"

        return f"{self.name}{labels_str} {_format_value(self.value)}"


def _format_value(value: float) -> str:
    if value != value:
        return "NaN"
    if value in (float("inf"), float("-inf")):
        return "+Inf" if value > 0 else "-Inf"
    return repr(float(value))


@dataclass(frozen=True)
class MetricDescriptor:
    """Name, help text, label names and kind shared by every sample of a metric"""
    namespace: str
    subsystem: str
    name: str
    help_text: str
    label_names: Tuple[str, ...] = field(default_factory=tuple)
    metric_type: MetricType = MetricType.GAUGE
    unit: str = "1"

    @property
    def fq_name(self) -> str:
        return build_fq_name(self.namespace, self.subsystem, self.name)

    def sample(self, value: float, label_values: Sequence[str] = (),
               timestamp: Optional[float] = None) -> MetricValue:
        """Build a sample for this descriptor.

        Raises LabelCardinalityError when the number of label values differs
        from the number of declared label names.
        """
        if len(label_values) != len(self.label_names):
            raise LabelCardinalityError(
                f"{self.fq_name}: expected {len(self.label_names)} label values "
                f"{list(self.label_names)}, got {len(label_values)}"
            )

        return MetricValue(
            name=self.fq_name,
            value=float(value),
            labels=OrderedDict(zip(self.label_names, label_values)),
            help_text=self.help_text,
            metric_type=self.metric_type,
            unit=self.unit,
            timestamp=timestamp
        )
