"""Prometheus textfile exporter"""
from datetime import datetime
from typing import Dict, List
from .base import BaseExporter
from metrics.models import MetricValue, ExportFormat
from config import Config
from logging_config import get_logger


logger = get_logger(__name__)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def group_metrics_by_name(metrics: List[MetricValue]) -> Dict[str, List[MetricValue]]:
    """Group metrics by name, preserving first-seen order"""
    grouped = {}
    for metric in metrics:
        grouped.setdefault(metric.name, []).append(metric)
    return grouped


def render(metrics: List[MetricValue], instance: str = "") -> str:
    """Render samples in the Prometheus text exposition format"""
    if not metrics:
        return "# No metrics available\n"

    lines = []
    if instance:
        lines.append(f"# NDB cluster metrics for {instance}")
    lines.append(f"# Generated at {datetime.now().isoformat()}")

    for metric_name, metric_list in group_metrics_by_name(metrics).items():
        first = metric_list[0]
        lines.append(f"# HELP {metric_name} {_escape_help(first.help_text)}")
        lines.append(f"# TYPE {metric_name} {first.metric_type.value}")
        for metric in metric_list:
            lines.append(metric.to_prometheus_line())

    lines.append("")
    return "\n".join(lines)


class PrometheusFileExporter(BaseExporter):
    """Writes each cycle's samples to a textfile for node_exporter or a collector to pick up"""

    export_format = ExportFormat.PROMETHEUS

    def __init__(self, config: Config):
        super().__init__(config)
        self.metrics_file = config.prometheus_file
        self._healthy = False

    async def start(self) -> None:
        """Make sure the target directory exists and is writable"""
        try:
            self.metrics_file.parent.mkdir(parents=True, exist_ok=True)
            self._write("# No metrics available\n")
            self._healthy = True
            logger.info("Prometheus exporter started", metrics_file=str(self.metrics_file))
        except OSError as e:
            logger.error("Failed to start Prometheus exporter", error=str(e), metrics_file=str(self.metrics_file))
            self._healthy = False
            raise

    async def export_metrics(self, metrics: List[MetricValue]) -> None:
        """Write the samples atomically"""
        try:
            self._write(render(metrics, self.config.get_instance_id()))
            self._record_export(metrics)
            self._healthy = True
            logger.debug("Exported metrics to Prometheus file", metric_count=len(metrics),
                         event_type="prometheus_export")
        except OSError as e:
            logger.error("Failed to write Prometheus metrics", error=str(e), event_type="prometheus_export_error")
            self._healthy = False

    def _write(self, content: str) -> None:
        # Readers never see a half-written file
        temp_file = self.metrics_file.with_suffix('.tmp')
        temp_file.write_text(content, encoding='utf-8')
        temp_file.replace(self.metrics_file)

    async def shutdown(self) -> None:
        self._healthy = False
        logger.info("Prometheus exporter shutdown")

    def is_healthy(self) -> bool:
        return self._healthy

    def target(self) -> str:
        return str(self.metrics_file)
