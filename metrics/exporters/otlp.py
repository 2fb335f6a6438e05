"""OTLP exporter using direct gRPC communication"""
import time
import grpc
from typing import Dict, List, Optional
from opentelemetry.proto.metrics.v1 import metrics_pb2
from opentelemetry.proto.collector.metrics.v1 import metrics_service_pb2_grpc
from opentelemetry.proto.collector.metrics.v1 import metrics_service_pb2
from opentelemetry.proto.common.v1 import common_pb2
from opentelemetry.proto.resource.v1 import resource_pb2
from .base import BaseExporter
from .prometheus import group_metrics_by_name
from metrics.models import MetricValue, MetricType, ExportFormat
from config import Config
from logging_config import get_logger


logger = get_logger(__name__)

EXPORT_TIMEOUT_SECONDS = 10.0


def _to_attributes(values: Dict[str, str]) -> List[common_pb2.KeyValue]:
    return [
        common_pb2.KeyValue(key=key, value=common_pb2.AnyValue(string_value=str(value)))
        for key, value in values.items()
    ]


class OTLPExporter(BaseExporter):
    """Pushes each cycle's samples to an OTLP gRPC endpoint"""

    export_format = ExportFormat.OTLP

    def __init__(self, config: Config):
        super().__init__(config)
        self.channel = None
        self.stub = None
        self._healthy = False
        # Cumulative counters start when the exporter does
        self._start_time_ns = time.time_ns()

    async def start(self) -> None:
        """Initialize gRPC connection"""
        try:
            if self.config.otlp_insecure:
                self.channel = grpc.aio.insecure_channel(self.config.otlp_endpoint)
            else:
                credentials = grpc.ssl_channel_credentials()
                self.channel = grpc.aio.secure_channel(self.config.otlp_endpoint, credentials)

            self.stub = metrics_service_pb2_grpc.MetricsServiceStub(self.channel)
            self._healthy = True

            logger.info(
                "OTLP exporter started",
                endpoint=self.config.otlp_endpoint,
                insecure=self.config.otlp_insecure
            )
        except Exception as e:
            logger.error("Failed to start OTLP exporter", error=str(e), endpoint=self.config.otlp_endpoint)
            self._healthy = False
            raise

    def build_request(self, metrics: List[MetricValue]) -> Optional[metrics_service_pb2.ExportMetricsServiceRequest]:
        """Build the export request, or None when there is nothing to send"""
        otlp_metrics = [
            self._create_otlp_metric(metric_name, metric_list)
            for metric_name, metric_list in group_metrics_by_name(metrics).items()
        ]
        if not otlp_metrics:
            return None

        scope_metrics = metrics_pb2.ScopeMetrics(
            scope=common_pb2.InstrumentationScope(
                name=self.config.service_name,
                version=self.config.service_version
            ),
            metrics=otlp_metrics
        )
        resource_metrics = metrics_pb2.ResourceMetrics(
            resource=resource_pb2.Resource(attributes=_to_attributes(self.config.get_otlp_resource_attributes())),
            scope_metrics=[scope_metrics]
        )
        return metrics_service_pb2.ExportMetricsServiceRequest(resource_metrics=[resource_metrics])

    async def export_metrics(self, metrics: List[MetricValue]) -> None:
        """Export metrics via OTLP gRPC"""
        if not self.stub:
            return

        request = self.build_request(metrics)
        if request is None:
            return

        metadata = tuple((key.lower(), value) for key, value in self.config.otlp_headers.items())
        try:
            response = await self.stub.Export(request, timeout=EXPORT_TIMEOUT_SECONDS, metadata=metadata or None)
            self._healthy = True
            self._record_export(metrics)

            partial = response.partial_success if response.HasField('partial_success') else None
            logger.info(
                "Exported metrics via OTLP",
                metric_count=len(metrics),
                grouped_metrics=len(request.resource_metrics[0].scope_metrics[0].metrics),
                endpoint=self.config.otlp_endpoint,
                rejected_data_points=partial.rejected_data_points if partial else 0,
                event_type="otlp_export"
            )
        except grpc.RpcError as e:
            logger.error(
                "gRPC error during OTLP export",
                grpc_code=e.code().name if hasattr(e, 'code') else 'unknown',
                grpc_details=e.details() if hasattr(e, 'details') else str(e),
                endpoint=self.config.otlp_endpoint,
                event_type="otlp_grpc_error"
            )
            self._healthy = False

    async def shutdown(self) -> None:
        """Cleanup gRPC resources"""
        if self.channel:
            await self.channel.close()
        self._healthy = False
        logger.info("OTLP exporter shutdown")

    def is_healthy(self) -> bool:
        return self._healthy

    def target(self) -> str:
        return self.config.otlp_endpoint or ""

    def _create_otlp_metric(self, metric_name: str, metric_list: List[MetricValue]) -> metrics_pb2.Metric:
        template = metric_list[0]
        if template.metric_type == MetricType.COUNTER:
            return metrics_pb2.Metric(
                name=metric_name,
                description=template.help_text,
                unit=template.unit,
                sum=metrics_pb2.Sum(
                    data_points=[self._data_point(metric, self._start_time_ns) for metric in metric_list],
                    aggregation_temporality=metrics_pb2.AGGREGATION_TEMPORALITY_CUMULATIVE,
                    is_monotonic=True
                )
            )

        return metrics_pb2.Metric(
            name=metric_name,
            description=template.help_text,
            unit=template.unit,
            gauge=metrics_pb2.Gauge(data_points=[self._data_point(metric) for metric in metric_list])
        )

    @staticmethod
    def _data_point(metric: MetricValue, start_time_ns: int = 0) -> metrics_pb2.NumberDataPoint:
        return metrics_pb2.NumberDataPoint(
            attributes=_to_attributes(metric.labels),
            start_time_unix_nano=start_time_ns,
            time_unix_nano=int((metric.timestamp or time.time()) * 1_000_000_000),
            as_double=float(metric.value)
        )
