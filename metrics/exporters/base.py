"""Exporter interface and format-based factory"""
import abc
from typing import Any, Dict, List
from config import Config
from metrics.models import MetricValue, ExportFormat


class BaseExporter(abc.ABC):
    """Sink for the samples of one scrape cycle"""

    export_format: ExportFormat

    def __init__(self, config: Config):
        self.config = config
        self.exported_cycles = 0
        self.last_metric_count = 0

    @abc.abstractmethod
    async def start(self) -> None:
        """Open files or channels before the first cycle"""

    @abc.abstractmethod
    async def export_metrics(self, metrics: List[MetricValue]) -> None:
        """Publish one cycle's samples; failures mark the exporter unhealthy instead of raising"""

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release files or channels"""

    @abc.abstractmethod
    def is_healthy(self) -> bool:
        """Whether the last start or export succeeded"""

    @abc.abstractmethod
    def target(self) -> str:
        """Where samples go: a file path or an endpoint"""

    def _record_export(self, metrics: List[MetricValue]) -> None:
        self.exported_cycles += 1
        self.last_metric_count = len(metrics)

    def status(self) -> Dict[str, Any]:
        return {
            "format": self.export_format.value,
            "target": self.target(),
            "healthy": self.is_healthy(),
            "exported_cycles": self.exported_cycles,
            "last_metric_count": self.last_metric_count
        }


class ExporterFactory:
    """Creates the exporter for the configured export format"""

    @staticmethod
    def create_exporter(config: Config) -> BaseExporter:
        if config.export_format == ExportFormat.PROMETHEUS:
            from .prometheus import PrometheusFileExporter
            return PrometheusFileExporter(config)
        elif config.export_format == ExportFormat.OTLP:
            from .otlp import OTLPExporter
            return OTLPExporter(config)
        raise ValueError(f"Unsupported export format: {config.export_format}")
